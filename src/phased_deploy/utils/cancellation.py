"""Cooperative cancellation for long-running runs."""

import signal
import threading
from typing import Optional

from phased_deploy.utils.errors import OperationCancelled
from phased_deploy.utils.logging import get_logger

logger = get_logger(__name__)


class CancellationToken:
    """Cancellation flag checked at every poll boundary.

    ``wait`` doubles as the back-off sleep so a cancel request wakes a
    sleeping poller immediately instead of after the current interval.
    """

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; return True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(f"Operation cancelled: {self.reason}")


def install_signal_handlers(token: CancellationToken) -> None:
    """Route the first SIGINT or SIGTERM to ``token`` instead of raising KeyboardInterrupt.

    Rollback ignores the token, so after the first signal the default
    handlers come back and a second signal stops the process outright.
    Must be called from the main thread.
    """
    def _handler(signum, frame):
        name = signal.Signals(signum).name
        logger.warning(f"Received {name}, cancelling at the next poll boundary (repeat to abort)...")
        token.cancel(name)
        signal.signal(signal.SIGINT, signal.default_int_handler)
        signal.signal(signal.SIGTERM, signal.SIG_DFL)

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
