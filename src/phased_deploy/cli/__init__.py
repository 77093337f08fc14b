"""Command-line interface."""

from phased_deploy.cli.main import cli

__all__ = ['cli']
