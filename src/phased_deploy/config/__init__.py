"""Configuration management for phased-deploy."""

from .models import (
    Criticality,
    CountProbeConfig,
    ExecProbeConfig,
    ZookeeperProbeConfig,
    KafkaProbeConfig,
    ProbeConfig,
    DescriptorConfig,
    TargetConfig,
    PollingConfig,
    LeaseConfig,
    VerificationStepConfig,
    VerificationConfig,
    ProjectConfig,
    parse_duration,
)
from .parser import Config, ConfigValidationError, load_manifest_documents

__all__ = [
    "Criticality",
    "CountProbeConfig",
    "ExecProbeConfig",
    "ZookeeperProbeConfig",
    "KafkaProbeConfig",
    "ProbeConfig",
    "DescriptorConfig",
    "TargetConfig",
    "PollingConfig",
    "LeaseConfig",
    "VerificationStepConfig",
    "VerificationConfig",
    "ProjectConfig",
    "parse_duration",
    "Config",
    "ConfigValidationError",
    "load_manifest_documents",
]
