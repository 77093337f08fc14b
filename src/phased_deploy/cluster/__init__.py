"""Cluster handles."""

from phased_deploy.cluster.base import (
    ApplyOutcome,
    ClusterHandle,
    ExecResult,
    Instance,
    ResourceRef,
)

__all__ = [
    'ApplyOutcome',
    'ClusterHandle',
    'ExecResult',
    'Instance',
    'ResourceRef',
]
