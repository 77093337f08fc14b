"""Health probe interface and result types."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from phased_deploy.cluster.base import ClusterHandle

if TYPE_CHECKING:
    from phased_deploy.orchestrator.models import ResourceDescriptor


class HealthStatus(Enum):
    """Health of a deployed descriptor, weakest first."""
    NOT_FOUND = "NotFound"
    PARTIAL = "Partial"  # instances exist but the count is wrong
    SCHEDULED = "Scheduled"
    READY = "Ready"
    FUNCTIONAL = "Functional"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    def at_least(self, other: "HealthStatus") -> bool:
        return self.rank >= other.rank


_RANKS = {
    HealthStatus.NOT_FOUND: 0,
    HealthStatus.PARTIAL: 1,
    HealthStatus.SCHEDULED: 2,
    HealthStatus.READY: 3,
    HealthStatus.FUNCTIONAL: 4,
}


@dataclass
class ProbeResult:
    """Outcome of one probe check."""
    status: HealthStatus
    message: Optional[str] = None
    diagnostics: List[str] = field(default_factory=list)


class ProbeError(Exception):
    """Base for failures raised while probing."""
    pass


class TransientProbeError(ProbeError):
    """Not ready yet (connection refused, not scheduled). Retried silently."""
    pass


class StructuralProbeError(ProbeError):
    """Malformed response. Recorded as a diagnostic and retried."""
    pass


class HealthProbe(ABC):
    """Decides how healthy one descriptor is."""

    type_name: str = ""

    def __init__(self, config=None):
        """Initialize probe.

        Args:
            config: Probe configuration variant for this probe type
        """
        self.config = config

    @abstractmethod
    def check(self, descriptor: "ResourceDescriptor", cluster: ClusterHandle) -> ProbeResult:
        """Check a descriptor once.

        Raises:
            TransientProbeError: When the unit is simply not there yet
            StructuralProbeError: When the unit answers with something malformed
        """
        pass
