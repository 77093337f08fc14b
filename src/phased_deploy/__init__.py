"""Phased, dependency-ordered deployments to Kubernetes."""

__version__ = "0.1.0"
