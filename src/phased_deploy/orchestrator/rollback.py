"""Best-effort removal of applied descriptors in reverse order."""

from typing import Callable, List, Optional

from phased_deploy.cluster.base import ClusterHandle
from phased_deploy.orchestrator.models import (
    ALLOWED_TRANSITIONS,
    RemovalResult,
    ResourceDescriptor,
    RunReport,
    StageState,
)
from phased_deploy.probes.base import HealthProbe, HealthStatus
from phased_deploy.probes.poller import HealthPoller
from phased_deploy.probes.registry import build_probe
from phased_deploy.utils.errors import ErrorContext, RollbackError, error_handler
from phased_deploy.utils.logging import LogContext, get_logger

logger = get_logger(__name__)


class RollbackManager:
    """Removes descriptors in reverse order and confirms their absence.

    A removal that fails or never reaches NotFound is recorded and the
    remaining descriptors are still processed. Not cancellable.
    """

    def __init__(
        self,
        cluster: ClusterHandle,
        poller: HealthPoller,
        removal_timeout: float = 120.0,
        probe_factory: Callable[..., HealthProbe] = build_probe
    ):
        """Initialize rollback manager.

        Args:
            cluster: Cluster to remove from
            poller: Poller used for absence checks
            removal_timeout: Per-descriptor bound on waiting for absence
            probe_factory: Builds a probe from a descriptor's probe config
        """
        self.cluster = cluster
        self.poller = poller
        self.removal_timeout = removal_timeout
        self.probe_factory = probe_factory

    def remove(
        self,
        descriptors: List[ResourceDescriptor],
        report: Optional[RunReport] = None,
        include_storage: bool = False
    ) -> RemovalResult:
        """Remove ``descriptors`` (given in forward plan order) in reverse.

        Args:
            descriptors: Descriptors in forward order
            report: Run report; descriptors with a stage history are marked RolledBack
            include_storage: Also delete persistent storage (teardown only)

        Returns:
            RemovalResult listing removed, stuck and retained resources
        """
        result = RemovalResult(include_storage=include_storage)
        run_fields = {'run_id': report.run_id, 'target': report.target} if report else {}

        for descriptor in reversed(descriptors):
            result.attempted.append(descriptor.name)
            with LogContext(logger, descriptor=descriptor.name, **run_fields):
                if self._remove_one(descriptor, result, include_storage):
                    result.removed.append(descriptor.name)
                    if report is not None:
                        self._mark_rolled_back(report, descriptor.name)
                self._account_storage(descriptor, result, include_storage)

        if result.stuck:
            logger.error(f"Removal incomplete, still present: {', '.join(result.stuck)}")
        else:
            logger.info(f"Removed {len(result.removed)} descriptor(s)")
        return result

    def _remove_one(self, descriptor: ResourceDescriptor, result: RemovalResult, include_storage: bool) -> bool:
        logger.info("Removing")
        try:
            deleted = self.cluster.delete(descriptor.selector, include_storage=include_storage)
        except Exception as e:
            error = error_handler.handle_exception(e, ErrorContext(descriptor=descriptor.name, operation="delete"))
            logger.error(f"Delete failed: {error.message}")
            result.stuck[descriptor.name] = self._still_present(descriptor) + [f"delete failed: {error.message}"]
            return False

        logger.debug(f"Delete issued for {len(deleted)} object(s)")
        outcome = self.poller.wait_for_absence(
            self.probe_factory(descriptor.probe),
            descriptor,
            self.cluster,
            self.removal_timeout
        )
        if outcome.result.status is HealthStatus.NOT_FOUND:
            logger.info(f"Absent after {outcome.elapsed:.1f}s")
            return True

        still_present = self._still_present(descriptor) or [outcome.result.message or "unknown"]
        logger.error(f"Still present after {self.removal_timeout:g}s: {', '.join(still_present)}")
        result.stuck[descriptor.name] = still_present
        return False

    def _still_present(self, descriptor: ResourceDescriptor) -> List[str]:
        try:
            return [f"pod/{i.name}" for i in self.cluster.list_instances(descriptor.selector)]
        except Exception as e:
            error = error_handler.handle_exception(e, ErrorContext(descriptor=descriptor.name, operation="list"))
            return [f"unknown (listing failed: {error.message})"]

    def _account_storage(self, descriptor: ResourceDescriptor, result: RemovalResult, include_storage: bool) -> None:
        """Record storage retained, or confirm storage removal when included."""
        try:
            storage = [str(ref) for ref in self.cluster.list_storage(descriptor.selector)]
        except Exception as e:
            error = error_handler.handle_exception(e, ErrorContext(descriptor=descriptor.name, operation="list"))
            logger.warning(f"Could not list storage: {error.message}")
            if include_storage:
                result.stuck.setdefault(descriptor.name, []).append(f"storage unknown: {error.message}")
            return

        if not include_storage:
            if storage:
                result.retained_storage[descriptor.name] = storage
                logger.info(f"Retained storage: {', '.join(storage)}")
            return

        if not storage:
            return
        try:
            gone = self.poller.wait_until(lambda: not self.cluster.list_storage(descriptor.selector),
                                          self.removal_timeout)
            remaining = [] if gone else [str(ref) for ref in self.cluster.list_storage(descriptor.selector)]
        except Exception as e:
            error = error_handler.handle_exception(e, ErrorContext(descriptor=descriptor.name, operation="list"))
            logger.error(f"Could not confirm storage removal: {error.message}")
            result.stuck.setdefault(descriptor.name, []).append(f"storage unknown: {error.message}")
            return

        if remaining:
            result.stuck.setdefault(descriptor.name, []).extend(remaining)
            logger.error(f"Storage still present: {', '.join(remaining)}")
        else:
            result.removed_storage[descriptor.name] = storage
            logger.warning(f"Removed storage: {', '.join(storage)}")

    @staticmethod
    def _mark_rolled_back(report: RunReport, name: str) -> None:
        current = report.stage_state(name)
        if StageState.ROLLED_BACK in ALLOWED_TRANSITIONS[current]:
            report.record_stage(name, StageState.ROLLED_BACK)


def rollback_error(result: RemovalResult, cause: Optional[Exception] = None) -> RollbackError:
    """Build the error surfaced when a removal pass left resources behind."""
    return RollbackError(
        f"Removal incomplete for {len(result.stuck)} descriptor(s): {', '.join(result.stuck)}",
        still_present=dict(result.stuck),
        cause=cause
    )
