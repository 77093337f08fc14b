"""Run-scoped locks keyed by target identity."""

import fcntl
import getpass
import json
import os
import re
import socket
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from phased_deploy.utils.errors import ErrorContext, LeaseHeldError, error_handler
from phased_deploy.utils.logging import get_logger
from phased_deploy.utils.retry import with_retry

logger = get_logger(__name__)


def safe_name(value: str) -> str:
    """Filesystem- and label-safe form of a target identity."""
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", value).strip("_") or "default"


def holder_identity(run_id: str) -> str:
    return f"{getpass.getuser()}@{socket.gethostname()}:{os.getpid()}/{run_id}"


class RunLease(ABC):
    """Mutual exclusion for runs against one target.

    A held lease is rejected immediately, never waited for.
    """

    def __init__(self, target_identity: str):
        self.target_identity = target_identity
        self.holder: Optional[str] = None

    @abstractmethod
    def acquire(self, holder: str) -> None:
        """Take the lease.

        Raises:
            LeaseHeldError: If another run holds it
        """
        pass

    @abstractmethod
    def release(self) -> None:
        """Give the lease back. Safe to call when not held."""
        pass

    def renew(self) -> None:
        """Extend the lease; a no-op for backends without expiry."""
        pass

    def heartbeat(self) -> None:
        """Renew if the lease is due; called at every poll boundary."""
        pass

    @contextmanager
    def hold(self, run_id: str) -> Iterator["RunLease"]:
        """Hold the lease for the duration of a ``with`` block, releasing on every exit path."""
        self.acquire(holder_identity(run_id))
        try:
            yield self
        finally:
            self.release()


class FileRunLease(RunLease):
    """Advisory ``fcntl`` lock file under the state directory."""

    def __init__(self, target_identity: str, state_dir: str = ".phased"):
        super().__init__(target_identity)
        self.lock_path = Path(state_dir) / "locks" / f"{safe_name(target_identity)}.lock"
        self._fd: Optional[int] = None

    def acquire(self, holder: str) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.lock_path), os.O_CREAT | os.O_RDWR)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            current = os.read(fd, 4096).decode(errors="replace")
            os.close(fd)
            try:
                current_holder = json.loads(current).get("holder")
            except ValueError:
                current_holder = None
            raise LeaseHeldError(self.target_identity, current_holder)

        os.ftruncate(fd, 0)
        os.write(fd, json.dumps({
            "holder": holder,
            "target": self.target_identity,
            "acquired_at": datetime.now(timezone.utc).isoformat(),
        }).encode())
        self._fd = fd
        self.holder = holder
        logger.debug(f"Acquired lock {self.lock_path}")

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            os.ftruncate(self._fd, 0)
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
            self.holder = None
        logger.debug(f"Released lock {self.lock_path}")


class ClusterRunLease(RunLease):
    """``coordination.k8s.io/v1`` Lease in the target namespace.

    The lease expires after ``duration`` seconds without renewal, so a
    crashed holder does not block the target forever.
    """

    def __init__(
        self,
        target_identity: str,
        api_client: client.ApiClient,
        namespace: str,
        duration: float = 900.0,
        name: str = "phased-deploy-lock",
        clock: Callable[[], float] = time.monotonic
    ):
        super().__init__(target_identity)
        self.api = client.CoordinationV1Api(api_client)
        self.namespace = namespace
        self.duration = int(duration)
        self.name = name
        self.clock = clock
        self._renewed_at: Optional[float] = None

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _expired(self, spec: client.V1LeaseSpec) -> bool:
        renewed = spec.renew_time or spec.acquire_time
        if renewed is None:
            return True
        if renewed.tzinfo is None:
            renewed = renewed.replace(tzinfo=timezone.utc)
        duration = spec.lease_duration_seconds or self.duration
        return renewed + timedelta(seconds=duration) < self._now()

    @with_retry(max_retries=3, base_interval=0.5, max_interval=4.0)
    def _read(self) -> client.V1Lease:
        return self.api.read_namespaced_lease(self.name, self.namespace)

    def _spec(self, holder: Optional[str]) -> client.V1LeaseSpec:
        now = self._now()
        return client.V1LeaseSpec(
            holder_identity=holder,
            lease_duration_seconds=self.duration,
            acquire_time=now,
            renew_time=now
        )

    def acquire(self, holder: str) -> None:
        try:
            lease = self._read()
        except ApiException as e:
            if e.status != 404:
                raise error_handler.handle_exception(e, ErrorContext(operation="lease", resource_name=self.name))
            body = client.V1Lease(
                metadata=client.V1ObjectMeta(name=self.name, namespace=self.namespace),
                spec=self._spec(holder)
            )
            try:
                self.api.create_namespaced_lease(self.namespace, body)
            except ApiException as create_error:
                if create_error.status == 409:
                    raise LeaseHeldError(self.target_identity)
                raise error_handler.handle_exception(create_error, ErrorContext(operation="lease"))
            self.holder = holder
            self._renewed_at = self.clock()
            return

        spec = lease.spec or client.V1LeaseSpec()
        if spec.holder_identity and not self._expired(spec):
            raise LeaseHeldError(self.target_identity, spec.holder_identity)
        if spec.holder_identity:
            logger.warning(f"Taking over expired lease from {spec.holder_identity}")

        lease.spec = self._spec(holder)
        try:
            # resourceVersion on the read object makes this a compare-and-swap
            self.api.replace_namespaced_lease(self.name, self.namespace, lease)
        except ApiException as e:
            if e.status == 409:
                raise LeaseHeldError(self.target_identity)
            raise error_handler.handle_exception(e, ErrorContext(operation="lease"))
        self.holder = holder
        self._renewed_at = self.clock()

    def renew(self) -> None:
        if self.holder is None:
            return
        lease = self._read()
        if lease.spec is None or lease.spec.holder_identity != self.holder:
            raise LeaseHeldError(self.target_identity, lease.spec.holder_identity if lease.spec else None)
        lease.spec.renew_time = self._now()
        self.api.replace_namespaced_lease(self.name, self.namespace, lease)
        self._renewed_at = self.clock()

    def heartbeat(self) -> None:
        """Renew once a third of the lease duration has passed since the last renewal."""
        if self.holder is None or self._renewed_at is None:
            return
        if self.clock() - self._renewed_at >= self.duration / 3:
            logger.debug(f"Renewing lease {self.name}")
            self.renew()

    def release(self) -> None:
        if self.holder is None:
            return
        holder, self.holder = self.holder, None
        try:
            lease = self._read()
            if lease.spec is not None and lease.spec.holder_identity == holder:
                lease.spec.holder_identity = None
                self.api.replace_namespaced_lease(self.name, self.namespace, lease)
        except Exception as e:
            # The lease still expires on its own
            error = error_handler.handle_exception(e, ErrorContext(operation="lease", resource_name=self.name))
            logger.warning(f"Could not release lease {self.name}: {error.message}")
        finally:
            self._renewed_at = None
