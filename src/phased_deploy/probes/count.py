"""Instance count and readiness probe."""

from typing import TYPE_CHECKING, List

from phased_deploy.cluster.base import ClusterHandle, Instance
from phased_deploy.probes.base import HealthProbe, HealthStatus, ProbeResult

if TYPE_CHECKING:
    from phased_deploy.orchestrator.models import ResourceDescriptor


class CountProbe(HealthProbe):
    """Scheduled when the instance count matches, Ready when every instance is.

    There is no stronger check, so Ready is reported as Functional.
    """

    type_name = "count"

    def check(self, descriptor: "ResourceDescriptor", cluster: ClusterHandle) -> ProbeResult:
        result = self.infrastructure_status(descriptor, cluster.list_instances(descriptor.selector))
        if result.status is HealthStatus.READY:
            return ProbeResult(HealthStatus.FUNCTIONAL, result.message)
        return result

    def infrastructure_status(self, descriptor: "ResourceDescriptor", instances: List[Instance]) -> ProbeResult:
        """Classify instances up to Ready."""
        if not instances:
            return ProbeResult(HealthStatus.NOT_FOUND, "no instances")

        live = self.live_instances(instances)
        expected = descriptor.expected_instance_count
        if len(live) != expected:
            return ProbeResult(HealthStatus.PARTIAL, f"{len(live)}/{expected} instances")

        not_ready = [i.name for i in live if not i.ready]
        if not_ready:
            return ProbeResult(
                HealthStatus.SCHEDULED,
                f"{expected - len(not_ready)}/{expected} ready, waiting for {', '.join(not_ready)}"
            )

        return ProbeResult(HealthStatus.READY, f"{expected}/{expected} ready")

    @staticmethod
    def live_instances(instances: List[Instance]) -> List[Instance]:
        return [i for i in instances if not i.terminating]
