"""Stage executor: apply one descriptor and gate on its health probe."""

import copy
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from phased_deploy.cluster.base import ClusterHandle
from phased_deploy.orchestrator.models import ResourceDescriptor, RunReport, StageState
from phased_deploy.probes.base import HealthProbe, HealthStatus, ProbeResult
from phased_deploy.probes.poller import HealthPoller
from phased_deploy.probes.registry import build_probe
from phased_deploy.utils.cancellation import CancellationToken
from phased_deploy.utils.errors import (
    ApplyError,
    DeploymentError,
    ErrorContext,
    OperationCancelled,
    ProbeTimeout,
    error_handler,
)
from phased_deploy.utils.logging import LogContext, get_logger
from phased_deploy.utils.retry import RetryStrategy

logger = get_logger(__name__)


@dataclass
class StageOutcome:
    """Result of executing a single stage."""

    descriptor: str
    state: StageState
    error: Optional[DeploymentError] = None
    touched: bool = False  # at least one document was accepted by the cluster
    duration: float = 0.0

    @property
    def failed(self) -> bool:
        return self.state is StageState.FAILED


class StageExecutor:
    """Executes stages one at a time against a cluster handle."""

    def __init__(
        self,
        cluster: ClusterHandle,
        poller: HealthPoller,
        retry: Optional[RetryStrategy] = None,
        probe_factory: Callable[..., HealthProbe] = build_probe,
        clock: Callable[[], float] = time.monotonic
    ):
        """Initialize stage executor.

        Args:
            cluster: Cluster to apply to
            poller: Health poller used to gate each stage
            retry: Retry strategy for transient apply failures
            probe_factory: Builds a probe from a descriptor's probe config
            clock: Monotonic time source for durations
        """
        self.cluster = cluster
        self.poller = poller
        self.retry = retry or RetryStrategy(max_retries=3, backoff=poller.backoff)
        self.probe_factory = probe_factory
        self.clock = clock
        self._probes: Dict[str, HealthProbe] = {}

    def probe_for(self, descriptor: ResourceDescriptor) -> HealthProbe:
        if descriptor.name not in self._probes:
            self._probes[descriptor.name] = self.probe_factory(descriptor.probe)
        return self._probes[descriptor.name]

    def apply_documents(
        self,
        descriptor: ResourceDescriptor,
        cancel: Optional[CancellationToken] = None,
        dry_run: bool = False,
        accepted: Optional[List[str]] = None
    ) -> List[str]:
        """Apply every document of a descriptor in order.

        Args:
            descriptor: Descriptor to apply
            cancel: Checked between documents
            dry_run: Server-side validation only
            accepted: Filled with ``Kind/name`` of each accepted document as it goes

        Returns:
            ``Kind/name`` of every accepted document

        Raises:
            ApplyError: If a document is rejected or retries are exhausted
            OperationCancelled: If cancelled between documents
        """
        accepted = [] if accepted is None else accepted
        for document in descriptor.configs:
            if cancel is not None and cancel.cancelled:
                raise OperationCancelled(f"Cancelled while applying '{descriptor.name}': {cancel.reason}")

            kind = document.get("kind")
            name = document.get("metadata", {}).get("name")
            try:
                # Each attempt gets its own copy; the descriptor's documents stay as loaded
                self.retry.execute_with_retry(lambda: self.cluster.apply(copy.deepcopy(document), dry_run=dry_run))
            except Exception as e:
                cause = error_handler.handle_exception(
                    e,
                    ErrorContext(descriptor=descriptor.name, operation="apply", kind=kind, resource_name=name)
                )
                raise ApplyError(
                    f"Failed to apply {kind}/{name}: {cause.message}",
                    context=cause.context,
                    cause=e,
                    suggestions=cause.suggestions
                )
            accepted.append(f"{kind}/{name}")
        return accepted

    def run_stage(
        self,
        descriptor: ResourceDescriptor,
        report: RunReport,
        cancel: CancellationToken
    ) -> StageOutcome:
        """Apply a descriptor and poll it until Functional or timeout.

        Every transition is recorded on ``report``. Errors are returned on
        the outcome, never raised.
        """
        start = self.clock()
        name = descriptor.name

        with LogContext(logger, descriptor=name, run_id=report.run_id, target=report.target):
            logger.info(f"Applying {len(descriptor.configs)} document(s)")

            accepted: List[str] = []
            try:
                self.apply_documents(descriptor, cancel=cancel, accepted=accepted)
            except DeploymentError as e:
                report.record_stage(name, StageState.FAILED, e.message)
                logger.error(f"Stage failed during apply: {e.message}")
                return StageOutcome(name, StageState.FAILED, e, touched=bool(accepted),
                                    duration=self.clock() - start)

            report.record_stage(name, StageState.APPLIED)

            def on_result(result: ProbeResult) -> None:
                if result.status.at_least(HealthStatus.READY) and report.stage_state(name) is StageState.APPLIED:
                    report.record_stage(name, StageState.READY)

            try:
                self.poller.wait_for(
                    self.probe_for(descriptor),
                    descriptor,
                    self.cluster,
                    HealthStatus.FUNCTIONAL,
                    descriptor.stage_timeout,
                    cancel,
                    on_result=on_result
                )
            except ProbeTimeout as e:
                if descriptor.continue_on_probe_timeout:
                    state = report.stage_state(name)
                    report.add_warning(f"{name}: {e.message}; continuing at {state.value}")
                    logger.warning(f"Probe timed out, continuing at {state.value} (continue_on_probe_timeout)")
                    return StageOutcome(name, state, e, touched=True, duration=self.clock() - start)
                return self._fail(report, name, e, start)
            except DeploymentError as e:
                return self._fail(report, name, e, start)

            if report.stage_state(name) is StageState.APPLIED:
                report.record_stage(name, StageState.READY)
            report.record_stage(name, StageState.FUNCTIONAL)

            duration = self.clock() - start
            logger.info(f"Stage functional in {duration:.1f}s", extra={'duration': duration})
            return StageOutcome(name, StageState.FUNCTIONAL, touched=True, duration=duration)

    def _fail(self, report: RunReport, name: str, error: DeploymentError, start: float) -> StageOutcome:
        report.record_stage(name, StageState.FAILED, error.message)
        logger.error(error.message)
        return StageOutcome(name, StageState.FAILED, error, touched=True, duration=self.clock() - start)

    def validate_stage(self, descriptor: ResourceDescriptor, report: RunReport) -> StageOutcome:
        """Server-side dry-run apply of every document; nothing is persisted."""
        start = self.clock()
        with LogContext(logger, descriptor=descriptor.name, run_id=report.run_id, target=report.target):
            try:
                self.apply_documents(descriptor, dry_run=True)
            except DeploymentError as e:
                logger.error(f"Dry run rejected: {e.message}")
                return StageOutcome(descriptor.name, StageState.FAILED, e, duration=self.clock() - start)

            report.validated.append(descriptor.name)
            logger.info(f"Dry run accepted {len(descriptor.configs)} document(s)")
            return StageOutcome(descriptor.name, StageState.PENDING, duration=self.clock() - start)
