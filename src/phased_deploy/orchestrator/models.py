"""Run-time data model: descriptors, stage results and run reports."""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from phased_deploy.config.models import CountProbeConfig, Criticality, ProbeConfig


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResourceDescriptor(BaseModel):
    """One deployable unit. Immutable once loaded."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    configs: Tuple[Dict[str, Any], ...] = ()
    selector: Dict[str, str] = Field(..., min_length=1)
    depends_on: Tuple[str, ...] = ()
    expected_instance_count: int = Field(1, ge=1)
    probe: ProbeConfig = Field(default_factory=CountProbeConfig)
    criticality: Criticality = Criticality.STANDARD
    timeout: Optional[float] = Field(None, gt=0)
    continue_on_probe_timeout: bool = False

    @property
    def stage_timeout(self) -> float:
        """Explicit timeout, or the criticality default."""
        if self.timeout is not None:
            return self.timeout
        return self.criticality.default_timeout

    @property
    def selector_string(self) -> str:
        """Selector in ``k=v,k2=v2`` form."""
        return ",".join(f"{k}={v}" for k, v in sorted(self.selector.items()))

    def with_timeout(self, timeout: float) -> "ResourceDescriptor":
        return self.model_copy(update={"timeout": timeout})


class StageState(Enum):
    """Lifecycle state of one descriptor within a run."""
    PENDING = "Pending"
    APPLIED = "Applied"
    READY = "Ready"
    FUNCTIONAL = "Functional"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"


# Nothing reaches Ready or Functional without passing through Applied
ALLOWED_TRANSITIONS = {
    StageState.PENDING: {StageState.APPLIED, StageState.FAILED},
    StageState.APPLIED: {StageState.READY, StageState.FAILED, StageState.ROLLED_BACK},
    StageState.READY: {StageState.FUNCTIONAL, StageState.FAILED, StageState.ROLLED_BACK},
    StageState.FUNCTIONAL: {StageState.ROLLED_BACK},
    StageState.FAILED: {StageState.ROLLED_BACK},
    StageState.ROLLED_BACK: set(),
}


class RunState(Enum):
    """Overall state of a run."""
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    PARTIAL_ROLLBACK_FAILURE = "PartialRollbackFailure"

    @property
    def is_terminal(self) -> bool:
        return self is not RunState.RUNNING

    @property
    def exit_code(self) -> int:
        return {
            RunState.SUCCEEDED: 0,
            RunState.FAILED: 1,
            RunState.PARTIAL_ROLLBACK_FAILURE: 2,
        }.get(self, 1)


@dataclass(frozen=True)
class StageResult:
    """One append-only history entry for a descriptor."""

    descriptor: str
    state: StageState
    applied_at: Optional[datetime] = None
    last_error: Optional[str] = None
    recorded_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'descriptor': self.descriptor,
            'state': self.state.value,
            'applied_at': self.applied_at.isoformat() if self.applied_at else None,
            'last_error': self.last_error,
            'recorded_at': self.recorded_at.isoformat(),
        }


class VerificationStatus(Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class VerificationCheck:
    """Outcome of one smoke check."""

    name: str
    status: VerificationStatus
    message: Optional[str] = None
    cleanup: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'status': self.status.value,
            'message': self.message,
            'cleanup': self.cleanup,
        }


@dataclass
class VerificationReport:
    """Ordered pass/fail list from the verification runner."""

    descriptor: Optional[str] = None
    unit: Optional[str] = None
    checks: List[VerificationCheck] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(c.status is not VerificationStatus.FAILED for c in self.checks)

    def failures(self) -> List[VerificationCheck]:
        return [c for c in self.checks if c.status is VerificationStatus.FAILED]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'descriptor': self.descriptor,
            'unit': self.unit,
            'passed': self.passed,
            'checks': [c.to_dict() for c in self.checks],
        }


@dataclass
class RemovalResult:
    """Summary of a rollback or teardown pass."""

    attempted: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    stuck: Dict[str, List[str]] = field(default_factory=dict)  # descriptor -> still-present resources
    retained_storage: Dict[str, List[str]] = field(default_factory=dict)
    removed_storage: Dict[str, List[str]] = field(default_factory=dict)
    include_storage: bool = False

    @property
    def complete(self) -> bool:
        return not self.stuck

    def to_dict(self) -> Dict[str, Any]:
        return {
            'attempted': list(self.attempted),
            'removed': list(self.removed),
            'stuck': dict(self.stuck),
            'retained_storage': dict(self.retained_storage),
            'removed_storage': dict(self.removed_storage),
            'include_storage': self.include_storage,
            'complete': self.complete,
        }


@dataclass
class RunReport:
    """Aggregates stage results for one invocation.

    The stage history is append-only and every entry is checked against
    ``ALLOWED_TRANSITIONS``. The terminal state can be set exactly once.
    """

    operation: str
    target: str
    plan: List[str] = field(default_factory=list)
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    dry_run: bool = False
    state: RunState = RunState.RUNNING
    history: List[StageResult] = field(default_factory=list)
    failed_stage: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    removal: Optional[RemovalResult] = None
    verification: Optional[VerificationReport] = None
    validated: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def latest(self, descriptor: str) -> Optional[StageResult]:
        for entry in reversed(self.history):
            if entry.descriptor == descriptor:
                return entry
        return None

    def stage_state(self, descriptor: str) -> StageState:
        entry = self.latest(descriptor)
        return entry.state if entry else StageState.PENDING

    def stages(self) -> Dict[str, StageResult]:
        """Latest result per descriptor, in plan order."""
        result = {}
        for name in self.plan:
            entry = self.latest(name)
            if entry is not None:
                result[name] = entry
        for entry in self.history:
            if entry.descriptor not in result:
                result[entry.descriptor] = self.latest(entry.descriptor)
        return result

    def record_stage(
        self,
        descriptor: str,
        state: StageState,
        error: Optional[str] = None
    ) -> StageResult:
        """Append a stage transition.

        Raises:
            ValueError: If the transition is not allowed
            RuntimeError: If the report is already finalized
        """
        if self.state.is_terminal:
            raise RuntimeError(f"Run {self.run_id} is already {self.state.value}")

        previous = self.latest(descriptor)
        current = previous.state if previous else StageState.PENDING
        if state not in ALLOWED_TRANSITIONS[current]:
            raise ValueError(
                f"Illegal stage transition for '{descriptor}': {current.value} -> {state.value}"
            )

        applied_at = previous.applied_at if previous else None
        if state is StageState.APPLIED:
            applied_at = utcnow()

        entry = StageResult(
            descriptor=descriptor,
            state=state,
            applied_at=applied_at,
            last_error=error,
        )
        self.history.append(entry)
        return entry

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def finish(self, state: RunState, error: Optional[Any] = None) -> None:
        """Set the terminal state.

        Args:
            state: Terminal run state
            error: Optional DeploymentError describing the failure
        """
        if self.state.is_terminal:
            raise RuntimeError(f"Run {self.run_id} is already {self.state.value}")
        if not state.is_terminal:
            raise ValueError("finish() requires a terminal state")

        self.state = state
        self.finished_at = utcnow()
        if error is not None:
            self.error = error.to_dict()

    @property
    def duration(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def exit_code(self) -> int:
        return self.state.exit_code

    def to_dict(self) -> Dict[str, Any]:
        return {
            'run_id': self.run_id,
            'operation': self.operation,
            'target': self.target,
            'dry_run': self.dry_run,
            'state': self.state.value,
            'plan': list(self.plan),
            'stages': {name: entry.to_dict() for name, entry in self.stages().items()},
            'history': [entry.to_dict() for entry in self.history],
            'failed_stage': self.failed_stage,
            'error': self.error,
            'removal': self.removal.to_dict() if self.removal else None,
            'verification': self.verification.to_dict() if self.verification else None,
            'validated': list(self.validated),
            'warnings': list(self.warnings),
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration': self.duration,
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str)
