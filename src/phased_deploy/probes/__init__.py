"""Health probes and polling."""

from phased_deploy.probes.base import (
    HealthProbe,
    HealthStatus,
    ProbeResult,
    ProbeError,
    TransientProbeError,
    StructuralProbeError,
)
from phased_deploy.probes.count import CountProbe
from phased_deploy.probes.handshake import HandshakeProbe, ZookeeperProbe, KafkaProbe
from phased_deploy.probes.registry import PROBE_TYPES, build_probe, register_probe
from phased_deploy.probes.poller import HealthPoller, PollOutcome

__all__ = [
    'HealthProbe',
    'HealthStatus',
    'ProbeResult',
    'ProbeError',
    'TransientProbeError',
    'StructuralProbeError',
    'CountProbe',
    'HandshakeProbe',
    'ZookeeperProbe',
    'KafkaProbe',
    'PROBE_TYPES',
    'build_probe',
    'register_probe',
    'HealthPoller',
    'PollOutcome',
]
