"""Back-off polling of health probes."""

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, List, Optional

from phased_deploy.cluster.base import ClusterHandle
from phased_deploy.probes.base import (
    HealthProbe,
    HealthStatus,
    ProbeResult,
    StructuralProbeError,
    TransientProbeError,
)
from phased_deploy.utils.cancellation import CancellationToken
from phased_deploy.utils.errors import (
    ClusterError,
    ErrorContext,
    OperationCancelled,
    ProbeTimeout,
    error_handler,
)
from phased_deploy.utils.logging import get_logger
from phased_deploy.utils.retry import BackoffPolicy

if TYPE_CHECKING:
    from phased_deploy.orchestrator.models import ResourceDescriptor

logger = get_logger(__name__)

MAX_DIAGNOSTICS = 10

# (token, seconds) -> True when cancelled during the sleep
Sleeper = Callable[[CancellationToken, float], bool]


def _token_sleep(token: CancellationToken, seconds: float) -> bool:
    return token.wait(seconds)


@dataclass
class PollOutcome:
    """Final state of a polling loop."""
    result: ProbeResult
    attempts: int
    elapsed: float
    diagnostics: List[str] = field(default_factory=list)


class HealthPoller:
    """Polls a probe with exponential back-off until a status or a deadline."""

    def __init__(
        self,
        backoff: BackoffPolicy,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleeper = _token_sleep,
        heartbeat: Optional[Callable[[], None]] = None
    ):
        """Initialize poller.

        Args:
            backoff: Delay policy between checks
            clock: Monotonic time source
            sleep: Interruptible sleep; returns True if cancelled meanwhile
            heartbeat: Called at every poll boundary, e.g. to keep a lease alive
        """
        self.backoff = backoff
        self.clock = clock
        self.sleep = sleep
        self.heartbeat = heartbeat

    def _beat(self, strict: bool) -> None:
        """Run the heartbeat. Failures raise when ``strict``, otherwise they are logged."""
        if self.heartbeat is None:
            return
        try:
            self.heartbeat()
        except Exception as e:
            error = error_handler.handle_exception(e, ErrorContext(operation="heartbeat"))
            if strict:
                raise error
            logger.warning(f"Heartbeat failed: {error.message}")

    def _check(self, probe: HealthProbe, descriptor: "ResourceDescriptor", cluster: ClusterHandle,
               diagnostics: List[str]) -> Optional[ProbeResult]:
        """Run one check; failures become diagnostics and return None."""
        try:
            return probe.check(descriptor, cluster)
        except TransientProbeError as e:
            logger.debug(f"{descriptor.name}: not yet: {e}")
        except StructuralProbeError as e:
            self._note(diagnostics, str(e))
            logger.debug(f"{descriptor.name}: malformed probe response: {e}")
        except Exception as e:
            error = error_handler.handle_exception(
                e, ErrorContext(descriptor=descriptor.name, operation="probe")
            )
            if isinstance(error, ClusterError) and error.transient:
                logger.debug(f"{descriptor.name}: transient probe failure: {error.message}")
            else:
                self._note(diagnostics, error.message)
                logger.debug(f"{descriptor.name}: probe failure: {error.message}")
        return None

    @staticmethod
    def _note(diagnostics: List[str], message: str) -> None:
        if not diagnostics or diagnostics[-1] != message:
            diagnostics.append(message)
        del diagnostics[:-MAX_DIAGNOSTICS]

    def wait_for(
        self,
        probe: HealthProbe,
        descriptor: "ResourceDescriptor",
        cluster: ClusterHandle,
        target: HealthStatus,
        timeout: float,
        cancel: CancellationToken,
        on_result: Optional[Callable[[ProbeResult], None]] = None
    ) -> PollOutcome:
        """Poll until the probe reports at least ``target``.

        Cancellation is honored at every poll boundary, including during
        the back-off sleep.

        Raises:
            ProbeTimeout: If ``target`` is not reached within ``timeout``
            OperationCancelled: If ``cancel`` fires first
            DeploymentError: If the heartbeat fails, e.g. the lease was lost
        """
        start = self.clock()
        deadline = start + timeout
        diagnostics: List[str] = []
        last = ProbeResult(HealthStatus.NOT_FOUND, "not probed yet")
        attempt = 0

        while True:
            cancel.raise_if_cancelled()
            self._beat(strict=True)

            result = self._check(probe, descriptor, cluster, diagnostics)
            attempt += 1
            if result is not None:
                if result.status is not last.status:
                    logger.info(f"{descriptor.name}: {result.status.value} ({result.message})")
                last = result
                if on_result:
                    on_result(result)
                if result.status.at_least(target):
                    return PollOutcome(last, attempt, self.clock() - start, diagnostics)

            now = self.clock()
            if now >= deadline:
                raise ProbeTimeout(
                    f"'{descriptor.name}' did not reach {target.value} within {timeout:g}s "
                    f"(last status: {last.status.value}: {last.message})",
                    last_status=last.status.value,
                    diagnostics=list(diagnostics),
                    context=ErrorContext(descriptor=descriptor.name, operation="probe"),
                    suggestions=[
                        f"Inspect the instances: kubectl get pods -l {descriptor.selector_string}",
                        "Raise the stage timeout with --timeout-per-stage or the descriptor's timeout",
                    ]
                )

            delay = min(self.backoff.delay(attempt - 1), deadline - now)
            if self.sleep(cancel, delay):
                raise OperationCancelled(f"Cancelled while waiting for '{descriptor.name}': {cancel.reason}")

    def wait_until(self, predicate: Callable[[], bool], timeout: float) -> bool:
        """Poll ``predicate`` with back-off until it holds or ``timeout`` passes. Not cancellable."""
        token = CancellationToken()
        deadline = self.clock() + timeout
        attempt = 0
        while True:
            self._beat(strict=False)
            if predicate():
                return True
            now = self.clock()
            if now >= deadline:
                return False
            self.sleep(token, min(self.backoff.delay(attempt), deadline - now))
            attempt += 1

    def wait_for_absence(
        self,
        probe: HealthProbe,
        descriptor: "ResourceDescriptor",
        cluster: ClusterHandle,
        timeout: float
    ) -> PollOutcome:
        """Poll until no instance of ``descriptor`` remains.

        Not cancellable. Never raises on timeout; check
        ``outcome.result.status``.
        """
        token = CancellationToken()
        start = self.clock()
        deadline = start + timeout
        diagnostics: List[str] = []
        last = ProbeResult(HealthStatus.NOT_FOUND, "not probed yet")
        attempt = 0

        while True:
            self._beat(strict=False)
            result = self._check(probe, descriptor, cluster, diagnostics)
            attempt += 1
            if result is not None:
                last = result
                if result.status is HealthStatus.NOT_FOUND:
                    return PollOutcome(last, attempt, self.clock() - start, diagnostics)

            now = self.clock()
            if now >= deadline:
                if result is None:
                    last = ProbeResult(HealthStatus.PARTIAL, diagnostics[-1] if diagnostics else "unknown")
                return PollOutcome(last, attempt, now - start, diagnostics)

            self.sleep(token, min(self.backoff.delay(attempt - 1), deadline - now))
