"""Cluster handle interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class ResourceRef:
    """A named cluster object."""
    kind: str
    name: str
    namespace: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.kind}/{self.name}"


@dataclass(frozen=True)
class Instance:
    """One live runtime instance (a pod) of a descriptor."""
    name: str
    ready: bool
    phase: str = "Running"
    terminating: bool = False


@dataclass(frozen=True)
class ExecResult:
    """Result of running a command inside an instance."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class ApplyOutcome:
    """Resources accepted by one apply call."""
    resource: ResourceRef
    dry_run: bool = False
    warnings: List[str] = field(default_factory=list)


class ClusterHandle(ABC):
    """The only operations the orchestrator performs against a cluster.

    Implementations must make ``apply`` idempotent: re-applying an
    unchanged document is a no-op or a safe update.
    """

    @abstractmethod
    def apply(self, document: Dict[str, Any], dry_run: bool = False) -> ApplyOutcome:
        """Apply one configuration document.

        Args:
            document: Parsed manifest document
            dry_run: Validate on the server without persisting
        """
        pass

    @abstractmethod
    def list_instances(self, selector: Dict[str, str]) -> List[Instance]:
        """List live instances matching a label selector."""
        pass

    @abstractmethod
    def exec(
        self,
        instance: str,
        command: List[str],
        container: Optional[str] = None,
        timeout: float = 10.0
    ) -> ExecResult:
        """Run a health-check command inside an instance."""
        pass

    @abstractmethod
    def delete(self, selector: Dict[str, str], include_storage: bool = False) -> List[ResourceRef]:
        """Delete resources matching a label selector.

        Missing resources are not an error.

        Returns:
            Resources for which a delete was issued
        """
        pass

    def list_storage(self, selector: Dict[str, str]) -> List[ResourceRef]:
        """List persistent storage bound to a selector.

        Read-only. Handles without a storage concept report none.
        """
        return []
