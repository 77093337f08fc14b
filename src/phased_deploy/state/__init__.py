"""Run-scoped locks and report archive."""

from .lease import RunLease, FileRunLease, ClusterRunLease, holder_identity, safe_name
from .store import ReportStore, StateError

__all__ = [
    "RunLease",
    "FileRunLease",
    "ClusterRunLease",
    "holder_identity",
    "safe_name",
    "ReportStore",
    "StateError",
]
