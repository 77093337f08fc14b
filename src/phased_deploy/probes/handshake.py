"""Application-level handshake probes.

Each probe first requires the count probe's Ready state, then runs a
command in every live instance. A non-zero exit means the service is not
answering yet; a zero exit with unexpected output is a malformed response.
"""

from typing import TYPE_CHECKING, List, Optional

from phased_deploy.cluster.base import ClusterHandle
from phased_deploy.probes.base import HealthStatus, ProbeResult, StructuralProbeError
from phased_deploy.probes.count import CountProbe

if TYPE_CHECKING:
    from phased_deploy.orchestrator.models import ResourceDescriptor


def _snippet(text: str, limit: int = 120) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[:limit] + "..."


class HandshakeProbe(CountProbe):
    """Functional only once every instance answers the handshake."""

    type_name = "exec"

    def command(self) -> List[str]:
        return list(self.config.command)

    def expected_output(self) -> Optional[str]:
        return self.config.expect

    def check(self, descriptor: "ResourceDescriptor", cluster: ClusterHandle) -> ProbeResult:
        instances = cluster.list_instances(descriptor.selector)
        result = self.infrastructure_status(descriptor, instances)
        if result.status is not HealthStatus.READY:
            return result

        instances = self.live_instances(instances)
        expect = self.expected_output()
        for instance in instances:
            outcome = cluster.exec(
                instance.name,
                self.command(),
                container=self.config.container,
                timeout=self.config.command_timeout
            )
            if not outcome.ok:
                detail = _snippet(outcome.stderr or outcome.stdout)
                return ProbeResult(
                    HealthStatus.READY,
                    f"{instance.name}: handshake not answered (exit {outcome.exit_code})"
                    + (f": {detail}" if detail else "")
                )
            if expect is not None and expect not in outcome.stdout:
                raise StructuralProbeError(
                    f"{instance.name}: expected {expect!r}, got {_snippet(outcome.stdout)!r}"
                )

        return ProbeResult(HealthStatus.FUNCTIONAL, f"{len(instances)} instance(s) answered")


class ZookeeperProbe(HandshakeProbe):
    """Coordination service "are you ok" check, run inside each instance."""

    type_name = "zookeeper-ruok"

    def command(self) -> List[str]:
        return ["sh", "-c", f"echo ruok | nc localhost {self.config.port}"]

    def expected_output(self) -> Optional[str]:
        return "imok"


class KafkaProbe(HandshakeProbe):
    """Broker metadata handshake; success is a zero exit status."""

    type_name = "kafka-api-versions"

    def command(self) -> List[str]:
        return [self.config.binary, "--bootstrap-server", self.config.bootstrap_server]

    def expected_output(self) -> Optional[str]:
        return None
