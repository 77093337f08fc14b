"""Pydantic models for configuration schema."""

import re
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, BeforeValidator, Field, field_validator, model_validator


_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_duration(value: Union[str, int, float]) -> float:
    """Parse a duration such as ``90``, ``45s``, ``5m`` or ``1h30m`` into seconds.

    Raises:
        ValueError: If the value is not a valid, positive duration
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip().lower()
        try:
            seconds = float(text)
        except ValueError:
            pos = 0
            seconds = 0.0
            for match in _DURATION_PART.finditer(text):
                if match.start() != pos:
                    break
                seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
                pos = match.end()
            if not text or pos != len(text):
                raise ValueError(f"Invalid duration: {value!r} (expected e.g. 90s, 5m, 1h30m)")
    if seconds <= 0:
        raise ValueError(f"Duration must be positive: {value!r}")
    return seconds


# Seconds as float; accepts "30s", "5m", "1h30m" or plain numbers in YAML
Duration = Annotated[float, BeforeValidator(parse_duration)]


class Criticality(str, Enum):
    """How important a descriptor is; drives its default stage timeout."""

    CRITICAL = "critical"
    STANDARD = "standard"
    AUXILIARY = "auxiliary"

    @property
    def default_timeout(self) -> float:
        return DEFAULT_STAGE_TIMEOUTS[self]


DEFAULT_STAGE_TIMEOUTS = {
    Criticality.CRITICAL: 300.0,
    Criticality.STANDARD: 180.0,
    Criticality.AUXILIARY: 120.0,
}


class CountProbeConfig(BaseModel):
    """Instance count and pod readiness only."""

    type: Literal["count"] = "count"


class ExecProbeConfig(BaseModel):
    """Run a command in every instance; Functional when it succeeds."""

    type: Literal["exec"] = "exec"
    command: List[str] = Field(..., min_length=1)
    expect: Optional[str] = Field(None, description="Substring required in stdout")
    container: Optional[str] = None
    command_timeout: Duration = 10.0


class ZookeeperProbeConfig(BaseModel):
    """Coordination-service four-letter-word check (ruok -> imok)."""

    type: Literal["zookeeper-ruok"] = "zookeeper-ruok"
    port: int = Field(2181, ge=1, le=65535)
    container: Optional[str] = None
    command_timeout: Duration = 10.0


class KafkaProbeConfig(BaseModel):
    """Broker metadata handshake via kafka-broker-api-versions."""

    type: Literal["kafka-api-versions"] = "kafka-api-versions"
    bootstrap_server: str = "localhost:9092"
    binary: str = "kafka-broker-api-versions"
    container: Optional[str] = None
    command_timeout: Duration = 20.0


ProbeConfig = Annotated[
    Union[CountProbeConfig, ExecProbeConfig, ZookeeperProbeConfig, KafkaProbeConfig],
    Field(discriminator="type"),
]


class DescriptorConfig(BaseModel):
    """One deployable unit as written in deploy.yaml."""

    name: str = Field(..., min_length=1, max_length=63, pattern="^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")
    manifests: List[str] = Field(..., min_length=1)
    selector: Dict[str, str] = Field(..., min_length=1)
    depends_on: List[str] = Field(default_factory=list)
    instances: int = Field(1, ge=1)
    criticality: Criticality = Criticality.STANDARD
    timeout: Optional[Duration] = None
    continue_on_probe_timeout: bool = False
    probe: ProbeConfig = Field(default_factory=CountProbeConfig)

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: List[str]) -> List[str]:
        """Reject duplicate dependency names."""
        if len(set(v)) != len(v):
            raise ValueError(f"Duplicate entries in depends_on: {v}")
        return v


class TargetConfig(BaseModel):
    """A cluster context plus namespace to deploy into."""

    name: str = Field(..., min_length=1)
    namespace: str = Field("default", min_length=1)
    context: Optional[str] = None
    kubeconfig: Optional[str] = None

    @property
    def identity(self) -> str:
        """Key used for the run-scoped lock."""
        return f"{self.context or 'default'}/{self.namespace}"


class PollingConfig(BaseModel):
    """Back-off policy for health polling and removal polling."""

    base_interval: Duration = 2.0
    max_interval: Duration = 30.0
    multiplier: float = Field(2.0, ge=1.0)
    jitter: bool = False
    removal_timeout: Duration = 120.0

    @model_validator(mode="after")
    def validate_intervals(self):
        """max_interval may not be below base_interval."""
        if self.max_interval < self.base_interval:
            raise ValueError("max_interval must be greater than or equal to base_interval")
        return self


class LeaseConfig(BaseModel):
    """Run-scoped lock backend."""

    backend: Literal["file", "kubernetes"] = "file"
    duration: Duration = 900.0
    state_dir: str = ".phased"


class VerificationStepConfig(BaseModel):
    """One ordered smoke check; ``{unit}`` is replaced by a per-run unique name."""

    name: str = Field(..., min_length=1)
    command: List[str] = Field(..., min_length=1)
    expect: Optional[str] = None
    cleanup: bool = False
    timeout: Duration = 30.0


class VerificationConfig(BaseModel):
    """Post-deploy smoke checks run against one descriptor's first instance."""

    descriptor: str = Field(..., min_length=1)
    container: Optional[str] = None
    unit_prefix: str = Field("phased-verify", pattern="^[a-z0-9-]+$")
    steps: List[VerificationStepConfig] = Field(default_factory=list)


class ProjectConfig(BaseModel):
    """Project-level configuration."""

    name: str = Field(..., min_length=1, max_length=64, pattern="^[a-z0-9-]+$")
