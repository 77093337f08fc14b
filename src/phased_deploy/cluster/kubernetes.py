"""Kubernetes implementation of the cluster handle."""

from typing import Any, Dict, List, Optional, Tuple

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError
from kubernetes.stream import stream

from phased_deploy.cluster.base import ApplyOutcome, ClusterHandle, ExecResult, Instance, ResourceRef
from phased_deploy.utils.errors import ApplyError, ErrorContext, error_handler
from phased_deploy.utils.logging import get_logger

logger = get_logger(__name__)

FIELD_MANAGER = "phased-deploy"

# Kinds removed by label selector, dependents before the things they use
WORKLOAD_KINDS: List[Tuple[str, str]] = [
    ("apps/v1", "Deployment"),
    ("apps/v1", "StatefulSet"),
    ("apps/v1", "DaemonSet"),
    ("batch/v1", "Job"),
    ("policy/v1", "PodDisruptionBudget"),
    ("networking.k8s.io/v1", "NetworkPolicy"),
    ("v1", "Service"),
    ("v1", "ConfigMap"),
    ("v1", "Secret"),
    ("v1", "ServiceAccount"),
    ("v1", "Pod"),
]

STORAGE_KIND: Tuple[str, str] = ("v1", "PersistentVolumeClaim")


def selector_string(selector: Dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(selector.items()))


def load_api_client(context: Optional[str] = None, kubeconfig: Optional[str] = None) -> client.ApiClient:
    """Build an API client for a kubeconfig context, falling back to in-cluster config.

    Raises:
        ConfigurationError: If no usable configuration is found
    """
    try:
        return config.new_client_from_config(config_file=kubeconfig, context=context)
    except ConfigException as e:
        if kubeconfig or context:
            raise error_handler.handle_exception(e)
        try:
            config.load_incluster_config()
        except ConfigException:
            raise error_handler.handle_exception(e)
        logger.debug("Using in-cluster configuration")
        return client.ApiClient()


class KubernetesCluster(ClusterHandle):
    """Cluster handle backed by the Kubernetes API of one namespace."""

    def __init__(
        self,
        namespace: str,
        context: Optional[str] = None,
        kubeconfig: Optional[str] = None,
        api_client: Optional[client.ApiClient] = None
    ):
        """Initialize the handle.

        Args:
            namespace: Namespace that namespaced documents default to
            context: kubeconfig context name
            kubeconfig: Path to kubeconfig file
            api_client: Pre-built API client (skips config loading)
        """
        self.namespace = namespace
        self.api_client = api_client or load_api_client(context=context, kubeconfig=kubeconfig)
        self.core = client.CoreV1Api(self.api_client)
        self._dynamic: Optional[DynamicClient] = None

    @property
    def dynamic(self) -> DynamicClient:
        """Dynamic client; created on first use because it runs API discovery."""
        if self._dynamic is None:
            self._dynamic = DynamicClient(self.api_client)
        return self._dynamic

    def _resource(self, api_version: str, kind: str):
        return self.dynamic.resources.get(api_version=api_version, kind=kind)

    def apply(self, document: Dict[str, Any], dry_run: bool = False) -> ApplyOutcome:
        """Server-side apply of one document."""
        api_version = document["apiVersion"]
        kind = document["kind"]
        name = document["metadata"]["name"]

        try:
            resource = self._resource(api_version, kind)
        except ResourceNotFoundError as e:
            raise ApplyError(
                f"{api_version}/{kind} is not served by this cluster",
                context=ErrorContext(operation="apply", kind=kind, resource_name=name),
                cause=e
            )

        namespace = None
        if resource.namespaced:
            namespace = document["metadata"].get("namespace") or self.namespace

        kwargs = {"field_manager": FIELD_MANAGER}
        if dry_run:
            kwargs["dry_run"] = "All"

        self.dynamic.server_side_apply(
            resource,
            body=document,
            name=name,
            namespace=namespace,
            force_conflicts=True,
            **kwargs
        )
        logger.debug(f"Applied {kind}/{name}{' (dry run)' if dry_run else ''}")
        return ApplyOutcome(resource=ResourceRef(kind, name, namespace), dry_run=dry_run)

    def list_instances(self, selector: Dict[str, str]) -> List[Instance]:
        pods = self.core.list_namespaced_pod(self.namespace, label_selector=selector_string(selector))
        instances = []
        for pod in pods.items:
            conditions = (pod.status.conditions or []) if pod.status else []
            ready = any(c.type == "Ready" and c.status == "True" for c in conditions)
            instances.append(Instance(
                name=pod.metadata.name,
                ready=ready,
                phase=(pod.status.phase if pod.status else None) or "Unknown",
                terminating=pod.metadata.deletion_timestamp is not None,
            ))
        return sorted(instances, key=lambda i: i.name)

    def exec(
        self,
        instance: str,
        command: List[str],
        container: Optional[str] = None,
        timeout: float = 10.0
    ) -> ExecResult:
        kwargs = {}
        if container:
            kwargs["container"] = container

        resp = stream(
            self.core.connect_get_namespaced_pod_exec,
            instance,
            self.namespace,
            command=command,
            stderr=True,
            stdin=False,
            stdout=True,
            tty=False,
            _preload_content=False,
            **kwargs
        )
        try:
            resp.run_forever(timeout=timeout)
            if resp.is_open():
                return ExecResult(exit_code=-1, stderr=f"command timed out after {timeout:g}s")
            stdout = resp.read_stdout(timeout=0) or ""
            stderr = resp.read_stderr(timeout=0) or ""
            code = resp.returncode
            return ExecResult(exit_code=code if code is not None else -1, stdout=stdout, stderr=stderr)
        finally:
            resp.close()

    def _list_named(self, api_version: str, kind: str, selector: Dict[str, str]) -> List[ResourceRef]:
        try:
            resource = self._resource(api_version, kind)
        except ResourceNotFoundError:
            return []
        items = resource.get(namespace=self.namespace, label_selector=selector_string(selector)).items
        return [ResourceRef(kind, item.metadata.name, self.namespace) for item in items]

    def _delete_named(self, api_version: str, kind: str, name: str) -> None:
        resource = self._resource(api_version, kind)
        try:
            resource.delete(name=name, namespace=self.namespace, body={"propagationPolicy": "Foreground"})
        except ApiException as e:
            if e.status != 404:
                raise

    def delete(self, selector: Dict[str, str], include_storage: bool = False) -> List[ResourceRef]:
        kinds = list(WORKLOAD_KINDS)
        if include_storage:
            kinds.append(STORAGE_KIND)

        deleted = []
        for api_version, kind in kinds:
            for ref in self._list_named(api_version, kind, selector):
                self._delete_named(api_version, kind, ref.name)
                deleted.append(ref)

        if deleted:
            logger.debug(f"Deleted {', '.join(str(r) for r in deleted)}")
        return deleted

    def list_storage(self, selector: Dict[str, str]) -> List[ResourceRef]:
        return self._list_named(*STORAGE_KIND, selector)
