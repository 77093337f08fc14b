import pytest
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from kubernetes.client.rest import ApiException

from phased_deploy.cluster.base import ApplyOutcome, ClusterHandle, ExecResult, Instance, ResourceRef
from phased_deploy.config.models import CountProbeConfig
from phased_deploy.orchestrator.models import ResourceDescriptor
from phased_deploy.orchestrator.orchestrator import DeploymentOrchestrator
from phased_deploy.state.lease import FileRunLease
from phased_deploy.state.store import ReportStore
from phased_deploy.utils.retry import BackoffPolicy, RetryStrategy

TARGET = "test/default"


@dataclass
class Behavior:
    """How one app (selector ``app=<name>``) behaves in the fake cluster."""
    instances: int = 1
    ready_after: int = 0  # list_instances calls after the first apply before pods are ready
    never_ready: bool = False
    never_scheduled: bool = False
    stuck: bool = False  # pods survive delete
    delete_error: Optional[int] = None  # HTTP status raised by delete
    storage: List[str] = field(default_factory=list)


class FakeCluster(ClusterHandle):
    """In-memory cluster handle keyed by the ``app`` label."""

    def __init__(self):
        self.behaviors: Dict[str, Behavior] = {}
        self.deployed: Dict[str, int] = {}  # app -> list_instances calls since first apply
        self.storage: Dict[str, List[str]] = {}
        self.applied: List[str] = []
        self.dry_run_applied: List[str] = []
        self.deleted: List[str] = []
        self.exec_calls: List[tuple] = []
        self.rejected: Dict[str, int] = {}  # document name -> HTTP status
        self.exec_handler: Callable[[str, List[str]], ExecResult] = lambda instance, command: ExecResult(0, "imok")

    def behave(self, app: str, **kwargs) -> Behavior:
        self.behaviors[app] = Behavior(**kwargs)
        return self.behaviors[app]

    def behavior(self, app: str) -> Behavior:
        return self.behaviors.setdefault(app, Behavior())

    @staticmethod
    def _app(document) -> str:
        return document["metadata"]["labels"]["app"]

    def apply(self, document, dry_run=False):
        name = document["metadata"]["name"]
        if name in self.rejected:
            raise ApiException(status=self.rejected[name], reason="Invalid")

        ref = ResourceRef(document["kind"], name, "default")
        if dry_run:
            self.dry_run_applied.append(name)
            return ApplyOutcome(ref, dry_run=True)

        app = self._app(document)
        self.applied.append(name)
        if app not in self.deployed:
            self.deployed[app] = 0
            behavior = self.behavior(app)
            if behavior.storage:
                self.storage.setdefault(app, list(behavior.storage))
        return ApplyOutcome(ref)

    def list_instances(self, selector):
        app = selector["app"]
        if app not in self.deployed:
            return []

        behavior = self.behavior(app)
        if behavior.never_scheduled:
            return []
        polls = self.deployed[app]
        self.deployed[app] = polls + 1
        ready = not behavior.never_ready and polls >= behavior.ready_after
        return [Instance(f"{app}-{i}", ready) for i in range(behavior.instances)]

    def exec(self, instance, command, container=None, timeout=10.0):
        self.exec_calls.append((instance, list(command)))
        return self.exec_handler(instance, list(command))

    def delete(self, selector, include_storage=False):
        app = selector["app"]
        self.deleted.append(app)
        behavior = self.behavior(app)
        if behavior.delete_error:
            raise ApiException(status=behavior.delete_error, reason="Forbidden")

        refs = []
        if app in self.deployed:
            refs.append(ResourceRef("StatefulSet", app, "default"))
            if not behavior.stuck:
                del self.deployed[app]
        if include_storage:
            refs.extend(ResourceRef("PersistentVolumeClaim", n, "default") for n in self.storage.pop(app, []))
        return refs

    def list_storage(self, selector):
        return [ResourceRef("PersistentVolumeClaim", n, "default") for n in self.storage.get(selector["app"], [])]


class FakeLeaseApi:
    """Just enough of CoordinationV1Api for one Lease object."""

    def __init__(self):
        self.lease = None
        self.conflict_on_replace = False
        self.replaced = 0
        self.read_errors: List[Exception] = []  # raised once each, in order
        self.read_failure: Optional[Exception] = None  # raised on every read while set

    def read_namespaced_lease(self, name, namespace):
        if self.read_errors:
            raise self.read_errors.pop(0)
        if self.read_failure is not None:
            raise self.read_failure
        if self.lease is None:
            raise ApiException(status=404, reason="Not Found")
        return self.lease

    def create_namespaced_lease(self, namespace, body):
        if self.lease is not None:
            raise ApiException(status=409, reason="AlreadyExists")
        self.lease = body
        return body

    def replace_namespaced_lease(self, name, namespace, body):
        if self.conflict_on_replace:
            raise ApiException(status=409, reason="Conflict")
        self.replaced += 1
        self.lease = body
        return body


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []
        self.on_sleep: Optional[Callable[[], None]] = None

    def __call__(self) -> float:
        return self.now

    def sleep(self, token, seconds: float) -> bool:
        if token.cancelled:
            return True
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep:
            self.on_sleep()
        return token.cancelled


def manifest(name: str, kind: str = "StatefulSet", app: Optional[str] = None) -> dict:
    return {
        "apiVersion": "apps/v1",
        "kind": kind,
        "metadata": {"name": name, "labels": {"app": app or name}},
    }


def make_descriptor(
    name: str,
    depends_on=(),
    instances: int = 1,
    probe=None,
    timeout: float = 10.0,
    continue_on_probe_timeout: bool = False,
    documents=None
) -> ResourceDescriptor:
    return ResourceDescriptor(
        name=name,
        configs=tuple(documents or [manifest(name)]),
        selector={"app": name},
        depends_on=tuple(depends_on),
        expected_instance_count=instances,
        probe=probe or CountProbeConfig(),
        timeout=timeout,
        continue_on_probe_timeout=continue_on_probe_timeout,
    )


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backoff():
    return BackoffPolicy(base_interval=1.0, max_interval=4.0, multiplier=2.0)


@pytest.fixture
def stack():
    """coord <- broker <- ui"""
    return [
        make_descriptor("ui", depends_on=["broker"]),
        make_descriptor("coord"),
        make_descriptor("broker", depends_on=["coord"]),
    ]


@pytest.fixture
def make_orchestrator(cluster, clock, backoff, tmp_path):
    def _make(verification=None, lease=None, store=True, removal_timeout=20.0):
        return DeploymentOrchestrator(
            cluster=cluster,
            lease=lease or FileRunLease(TARGET, str(tmp_path)),
            target=TARGET,
            backoff=backoff,
            removal_timeout=removal_timeout,
            verification=verification,
            store=ReportStore(str(tmp_path)) if store else None,
            retry=RetryStrategy(max_retries=2, backoff=backoff, sleep=lambda seconds: None),
            clock=clock,
            sleep=clock.sleep,
            unit_factory=lambda prefix: f"{prefix}-test",
        )
    return _make
