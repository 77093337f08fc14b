"""Main orchestrator that coordinates planning, stage execution and rollback."""

import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Callable, Iterator, List, Optional

from phased_deploy.cluster.base import ClusterHandle
from phased_deploy.config.models import VerificationConfig
from phased_deploy.orchestrator.executor import StageExecutor
from phased_deploy.orchestrator.models import (
    ResourceDescriptor,
    RunReport,
    RunState,
    StageState,
    VerificationCheck,
    VerificationStatus,
)
from phased_deploy.orchestrator.planner import DeploymentPlan, DeploymentPlanner
from phased_deploy.orchestrator.rollback import RollbackManager, rollback_error
from phased_deploy.orchestrator.teardown import TeardownController
from phased_deploy.orchestrator.verification import VerificationRunner
from phased_deploy.probes.base import HealthStatus
from phased_deploy.probes.poller import HealthPoller, Sleeper, _token_sleep
from phased_deploy.utils.cancellation import CancellationToken
from phased_deploy.utils.errors import (
    ConfigurationError,
    DeploymentError,
    ErrorContext,
    OperationCancelled,
    VerificationFailure,
    error_handler,
)
from phased_deploy.utils.logging import LogContext, get_logger
from phased_deploy.utils.retry import BackoffPolicy, RetryStrategy

if TYPE_CHECKING:
    from phased_deploy.state.lease import RunLease
    from phased_deploy.state.store import ReportStore

logger = get_logger(__name__)


class DeploymentOrchestrator:
    """Coordinates deployment planning, execution, rollback, teardown and verification.

    Every mutating operation runs under ``lease``; one orchestrator per
    target, so several targets can be driven from one process.
    """

    def __init__(
        self,
        cluster: ClusterHandle,
        lease: "RunLease",
        target: str,
        backoff: Optional[BackoffPolicy] = None,
        removal_timeout: float = 120.0,
        verification: Optional[VerificationConfig] = None,
        store: Optional["ReportStore"] = None,
        retry: Optional[RetryStrategy] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleeper = _token_sleep,
        unit_factory: Optional[Callable[[str], str]] = None
    ):
        """Initialize deployment orchestrator.

        Args:
            cluster: Cluster handle for the target
            lease: Run-scoped lock for the target
            target: Target identity recorded in reports
            backoff: Polling back-off policy
            removal_timeout: Per-descriptor bound on absence polling
            verification: Post-deploy smoke checks, if any
            store: Archive for finished reports
            retry: Retry strategy for transient apply failures
            clock: Monotonic time source
            sleep: Interruptible sleep used between polls
            unit_factory: Generates the per-run verification unit name
        """
        self.cluster = cluster
        self.lease = lease
        self.target = target
        self.store = store
        self.verification = verification

        self.planner = DeploymentPlanner()
        self.poller = HealthPoller(backoff or BackoffPolicy(), clock=clock, sleep=sleep, heartbeat=lease.heartbeat)
        self.executor = StageExecutor(cluster, self.poller, retry=retry, clock=clock)
        self.rollback_manager = RollbackManager(cluster, self.poller, removal_timeout=removal_timeout)
        self.teardown_controller = TeardownController(self.rollback_manager)

        self.verifier = None
        if verification is not None:
            kwargs = {'unit_factory': unit_factory} if unit_factory else {}
            self.verifier = VerificationRunner(cluster, verification, **kwargs)

        self.logger = get_logger(__name__)

    def plan(
        self,
        descriptors: List[ResourceDescriptor],
        timeout_override: Optional[float] = None
    ) -> DeploymentPlan:
        """Create a deployment plan. Raises PlanError before any cluster call."""
        return self.planner.create_deployment_plan(descriptors, timeout_override=timeout_override)

    def deploy(
        self,
        descriptors: List[ResourceDescriptor],
        dry_run: bool = False,
        timeout_override: Optional[float] = None,
        cancel: Optional[CancellationToken] = None
    ) -> RunReport:
        """Plan and execute a deployment.

        Args:
            descriptors: All descriptors of the project
            dry_run: Validate every document server-side; no lease, no probing
            timeout_override: Replaces every stage's timeout
            cancel: External cancellation signal

        Returns:
            Finalized RunReport

        Raises:
            PlanError: If the descriptors cannot be planned
            LeaseHeldError: If another run holds the target
        """
        plan = self.plan(descriptors, timeout_override=timeout_override)
        cancel = cancel or CancellationToken()
        report = RunReport(operation="deploy", target=self.target, plan=plan.names, dry_run=dry_run)

        with self._operation(report, locked=not dry_run):
            if dry_run:
                self._validate(plan, report)
            else:
                self._execute(plan, report, cancel)
        return report

    def _validate(self, plan: DeploymentPlan, report: RunReport) -> None:
        self.logger.info(f"Dry run of {len(plan)} stage(s)")
        rejected = []
        for descriptor in plan:
            outcome = self.executor.validate_stage(descriptor, report)
            if outcome.failed:
                rejected.append(outcome)

        if not rejected:
            report.finish(RunState.SUCCEEDED)
            return

        for outcome in rejected[1:]:
            report.add_warning(f"{outcome.descriptor}: {outcome.error.message}")
        report.failed_stage = rejected[0].descriptor
        report.finish(RunState.FAILED, rejected[0].error)

    def _execute(self, plan: DeploymentPlan, report: RunReport, cancel: CancellationToken) -> None:
        self.logger.info(f"Deploying {len(plan)} stage(s): {' -> '.join(plan.names)}")
        touched: List[ResourceDescriptor] = []
        failure: Optional[DeploymentError] = None

        for descriptor in plan:
            if cancel.cancelled:
                failure = OperationCancelled(
                    f"Cancelled before '{descriptor.name}': {cancel.reason}",
                    context=ErrorContext(descriptor=descriptor.name, operation="deploy")
                )
                report.record_stage(descriptor.name, StageState.FAILED, failure.message)
                report.failed_stage = descriptor.name
                break

            try:
                self.lease.renew()
            except Exception as e:
                failure = error_handler.handle_exception(e, ErrorContext(descriptor=descriptor.name, operation="lease"))
                report.record_stage(descriptor.name, StageState.FAILED, failure.message)
                report.failed_stage = descriptor.name
                break

            outcome = self.executor.run_stage(descriptor, report, cancel)
            if outcome.touched:
                touched.append(descriptor)
            if outcome.failed:
                failure = outcome.error
                report.failed_stage = descriptor.name
                break

        if failure is not None:
            self._roll_back(touched, report, failure)
            return

        self.logger.info("All stages functional")
        if self.verifier is not None:
            self._post_deploy_verification(plan, report)
        report.finish(RunState.SUCCEEDED)

    def _roll_back(self, touched: List[ResourceDescriptor], report: RunReport, failure: DeploymentError) -> None:
        self.logger.error(f"Stage '{report.failed_stage}' failed: {failure.message}")
        if touched:
            self.logger.warning(f"Rolling back: {' -> '.join(d.name for d in reversed(touched))}")
        report.removal = self.rollback_manager.remove(touched, report=report)

        if report.removal.complete:
            report.finish(RunState.FAILED, failure)
        else:
            report.finish(RunState.PARTIAL_ROLLBACK_FAILURE, rollback_error(report.removal, cause=failure))

    def _post_deploy_verification(self, plan: DeploymentPlan, report: RunReport) -> None:
        descriptor = plan.get(self.verification.descriptor)
        if descriptor is None:
            report.add_warning(f"verification skipped: '{self.verification.descriptor}' is not in the plan")
            return

        report.verification = self.verifier.run(descriptor)
        if not report.verification.passed:
            names = ", ".join(c.name for c in report.verification.failures())
            report.add_warning(f"verification failed: {names}")
            self.logger.warning(f"Verification failed ({names}); deployment is left in place")

    def rollback_to(self, descriptors: List[ResourceDescriptor], stage: str) -> RunReport:
        """Remove every descriptor planned after ``stage``, in reverse order.

        Raises:
            PlanError: If the plan is invalid or ``stage`` is not in it
            LeaseHeldError: If another run holds the target
        """
        plan = self.plan(descriptors)
        to_remove = plan.after(stage)
        report = RunReport(operation="rollback", target=self.target, plan=[d.name for d in to_remove])

        with self._operation(report):
            self.logger.info(f"Rolling back to '{stage}'")
            report.removal = self.rollback_manager.remove(to_remove)
            self._finish_removal(report)
        return report

    def teardown(
        self,
        descriptors: List[ResourceDescriptor],
        include_storage: bool = False,
        confirmed: bool = False
    ) -> RunReport:
        """Remove every descriptor in reverse dependency order.

        Raises:
            ConfigurationError: If storage removal is not confirmed
            PlanError: If the descriptors cannot be planned
            LeaseHeldError: If another run holds the target
        """
        plan = self.plan(descriptors)
        if include_storage and not confirmed:
            raise ConfigurationError("Removing persistent storage requires --confirm-data-loss")
        report = RunReport(operation="teardown", target=self.target, plan=list(reversed(plan.names)))

        with self._operation(report):
            report.removal = self.teardown_controller.teardown(plan, include_storage, confirmed)
            for name, storage in report.removal.retained_storage.items():
                report.add_warning(f"{name}: retained {', '.join(storage)}")
            self._finish_removal(report)
        return report

    def verify(self, descriptors: List[ResourceDescriptor]) -> RunReport:
        """Check every descriptor is Functional, then run the smoke checks.

        Raises:
            ConfigurationError: If no verification is configured
        """
        if self.verifier is None:
            raise ConfigurationError(
                "No verification configured",
                suggestions=["Add a 'verification' section to the project file"]
            )
        plan = self.plan(descriptors)
        descriptor = plan.get(self.verification.descriptor)
        if descriptor is None:
            raise ConfigurationError(f"Verification descriptor '{self.verification.descriptor}' is not defined")

        report = RunReport(operation="verify", target=self.target, plan=plan.names)
        with self._operation(report):
            preflight = [self._health_check(d) for d in plan]
            report.verification = self.verifier.run(descriptor, preflight=preflight)
            if report.verification.passed:
                report.finish(RunState.SUCCEEDED)
            else:
                names = ", ".join(c.name for c in report.verification.failures())
                report.finish(RunState.FAILED, VerificationFailure(f"Verification failed: {names}"))
        return report

    def _health_check(self, descriptor: ResourceDescriptor) -> VerificationCheck:
        """One probe, no waiting."""
        name = f"health:{descriptor.name}"
        try:
            result = self.executor.probe_for(descriptor).check(descriptor, self.cluster)
        except Exception as e:
            error = error_handler.handle_exception(e, ErrorContext(descriptor=descriptor.name, operation="probe"))
            return VerificationCheck(name, VerificationStatus.FAILED, error.message)

        if result.status is HealthStatus.FUNCTIONAL:
            return VerificationCheck(name, VerificationStatus.PASSED, result.message)
        return VerificationCheck(name, VerificationStatus.FAILED, f"{result.status.value}: {result.message}")

    def _finish_removal(self, report: RunReport) -> None:
        if report.removal.complete:
            report.finish(RunState.SUCCEEDED)
        else:
            report.finish(RunState.PARTIAL_ROLLBACK_FAILURE, rollback_error(report.removal))

    @contextmanager
    def _operation(self, report: RunReport, locked: bool = True) -> Iterator[RunReport]:
        """Run a block under the lease, finalizing and archiving the report on every exit path."""
        try:
            with LogContext(self.logger, run_id=report.run_id, target=report.target):
                if locked:
                    with self.lease.hold(report.run_id):
                        yield report
                else:
                    yield report
        except Exception as e:
            if not report.state.is_terminal:
                report.finish(
                    RunState.FAILED,
                    error_handler.handle_exception(e, ErrorContext(operation=report.operation))
                )
            raise
        finally:
            self._archive(report)

    def _archive(self, report: RunReport) -> None:
        if self.store is None:
            return
        try:
            path = self.store.save(report)
            self.logger.debug(f"Report archived to {path}")
        except Exception as e:
            self.logger.warning(f"Could not archive report {report.run_id}: {e}")

