"""Probe registry keyed by probe type tag."""

from typing import Dict, Type

from phased_deploy.probes.base import HealthProbe
from phased_deploy.probes.count import CountProbe
from phased_deploy.probes.handshake import HandshakeProbe, KafkaProbe, ZookeeperProbe
from phased_deploy.utils.errors import ConfigurationError

PROBE_TYPES: Dict[str, Type[HealthProbe]] = {
    probe.type_name: probe
    for probe in (CountProbe, HandshakeProbe, ZookeeperProbe, KafkaProbe)
}


def register_probe(probe_class: Type[HealthProbe]) -> Type[HealthProbe]:
    """Register an additional probe class under its ``type_name``."""
    PROBE_TYPES[probe_class.type_name] = probe_class
    return probe_class


def build_probe(config) -> HealthProbe:
    """Instantiate the probe for a probe configuration variant.

    Raises:
        ConfigurationError: If no probe is registered for the variant's type
    """
    try:
        probe_class = PROBE_TYPES[config.type]
    except KeyError:
        raise ConfigurationError(
            f"No probe registered for type '{config.type}'",
            suggestions=[f"Known probe types: {', '.join(sorted(PROBE_TYPES))}"]
        )
    return probe_class(config)
