"""YAML configuration parser for phased-deploy."""

from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from phased_deploy.config.models import (
    DescriptorConfig,
    LeaseConfig,
    PollingConfig,
    ProjectConfig,
    TargetConfig,
    VerificationConfig,
)
from phased_deploy.utils.errors import ConfigurationError
from phased_deploy.utils.retry import BackoffPolicy

if TYPE_CHECKING:
    from phased_deploy.orchestrator.models import ResourceDescriptor


class ConfigValidationError(ConfigurationError):
    """Exception raised when configuration validation fails."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        self.errors = errors or []
        super().__init__(message)

    def __str__(self) -> str:
        """Format validation errors for display."""
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  • {location}: {msg}")

        return "\n".join(error_lines)

    def to_user_message(self) -> str:
        return str(self)


def load_manifest_documents(path: Path) -> List[Dict[str, Any]]:
    """Load every document from a multi-document YAML manifest.

    Empty documents are skipped. Each remaining document must be a mapping
    carrying ``apiVersion``, ``kind`` and ``metadata.name``; nothing beyond
    that is checked.

    Raises:
        ConfigValidationError: If the file is missing, unparsable or a document
            is not a well-formed object
    """
    if not path.exists():
        raise ConfigValidationError(f"Manifest file not found: {path}")

    try:
        with open(path, "r") as f:
            raw_documents = [doc for doc in yaml.safe_load_all(f) if doc is not None]
    except yaml.YAMLError as e:
        raise ConfigValidationError(f"Failed to parse manifest {path}: {e}")

    errors = []
    for idx, doc in enumerate(raw_documents):
        if not isinstance(doc, dict):
            errors.append({"loc": [str(path), idx], "msg": "Document must be a mapping"})
            continue
        for key in ("apiVersion", "kind"):
            if not doc.get(key):
                errors.append({"loc": [str(path), idx, key], "msg": f"Missing '{key}'"})
        metadata = doc.get("metadata")
        if not isinstance(metadata, dict) or not metadata.get("name"):
            errors.append({"loc": [str(path), idx, "metadata", "name"], "msg": "Missing 'metadata.name'"})

    if errors:
        raise ConfigValidationError(f"Manifest {path} is invalid", errors)
    if not raw_documents:
        raise ConfigValidationError(f"Manifest {path} contains no documents")

    return raw_documents


class Config:
    """Configuration manager for phased-deploy."""

    def __init__(self, config_path: str):
        """Initialize configuration manager.

        Args:
            config_path: Path to deploy.yaml configuration file
        """
        self.config_path = Path(config_path)
        self.base_dir = self.config_path.resolve().parent
        self.data: Dict = {}
        self.project: Optional[ProjectConfig] = None
        self.targets: Dict[str, TargetConfig] = {}
        self.polling: PollingConfig = PollingConfig()
        self.lease: LeaseConfig = LeaseConfig()
        self.descriptors: List[DescriptorConfig] = []
        self.verification: Optional[VerificationConfig] = None

    def load(self) -> "Config":
        """Load and validate configuration from YAML file.

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If configuration is invalid
            FileNotFoundError: If configuration file doesn't exist
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                self.data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}")

        if not isinstance(self.data, dict):
            raise ConfigValidationError("Configuration root must be a mapping")

        validation_errors = self.validate()
        if validation_errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(validation_errors)} error(s)",
                validation_errors,
            )

        self._parse()
        return self

    def validate(self) -> List[Dict]:
        """Validate configuration against schema.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: List[Dict] = []

        if "project" not in self.data:
            errors.append({"loc": ["project"], "msg": "Required field 'project' is missing"})
        else:
            errors.extend(self._check(ProjectConfig, self.data["project"], ["project"]))

        targets = self.data.get("targets")
        if targets is None:
            errors.append({"loc": ["targets"], "msg": "Required field 'targets' is missing"})
        elif not isinstance(targets, dict) or not targets:
            errors.append({"loc": ["targets"], "msg": "At least one target must be defined"})
        else:
            for target_name, target_data in targets.items():
                data = {"name": target_name, **(target_data or {})}
                errors.extend(self._check(TargetConfig, data, ["targets", target_name]))

        for section, model in (("polling", PollingConfig), ("lease", LeaseConfig)):
            if section in self.data:
                errors.extend(self._check(model, self.data[section], [section]))

        descriptors = self.data.get("descriptors")
        descriptor_names = set()
        if descriptors is None:
            errors.append({"loc": ["descriptors"], "msg": "Required field 'descriptors' is missing"})
        elif not isinstance(descriptors, list) or not descriptors:
            errors.append({"loc": ["descriptors"], "msg": "At least one descriptor must be defined"})
        else:
            for idx, descriptor_data in enumerate(descriptors):
                descriptor_errors = self._check(DescriptorConfig, descriptor_data, ["descriptors", idx])
                errors.extend(descriptor_errors)
                if not descriptor_errors:
                    descriptor_names.add(descriptor_data["name"])
                    for m_idx, manifest in enumerate(descriptor_data["manifests"]):
                        if not self.resolve_path(manifest).exists():
                            errors.append({
                                "loc": ["descriptors", idx, "manifests", m_idx],
                                "msg": f"Manifest file not found: {manifest}",
                            })

        if "verification" in self.data:
            verification_errors = self._check(VerificationConfig, self.data["verification"], ["verification"])
            errors.extend(verification_errors)
            if not verification_errors and descriptor_names:
                name = self.data["verification"]["descriptor"]
                if name not in descriptor_names:
                    errors.append({
                        "loc": ["verification", "descriptor"],
                        "msg": f"Unknown descriptor '{name}'",
                    })

        return errors

    def _check(self, model, data: Any, loc: List) -> List[Dict]:
        """Run pydantic validation and prefix every error with ``loc``."""
        if not isinstance(data, dict):
            return [{"loc": loc, "msg": "Section must be a mapping"}]
        try:
            model(**data)
        except ValidationError as e:
            return [
                {"loc": loc + list(error["loc"]), "msg": error["msg"]}
                for error in e.errors()
            ]
        return []

    def _parse(self):
        """Parse validated sections into models."""
        self.project = ProjectConfig(**self.data["project"])
        self.targets = {
            name: TargetConfig(name=name, **(data or {}))
            for name, data in self.data["targets"].items()
        }
        if "polling" in self.data:
            self.polling = PollingConfig(**self.data["polling"])
        if "lease" in self.data:
            self.lease = LeaseConfig(**self.data["lease"])
        self.descriptors = [DescriptorConfig(**d) for d in self.data["descriptors"]]
        if "verification" in self.data:
            self.verification = VerificationConfig(**self.data["verification"])

    def resolve_path(self, path: str) -> Path:
        """Resolve a path from the config file relative to its directory."""
        candidate = Path(path)
        if candidate.is_absolute():
            return candidate
        return self.base_dir / candidate

    def get_target(self, target_name: Optional[str] = None) -> TargetConfig:
        """Get a target by name.

        With no name, the only configured target is returned.

        Raises:
            ConfigurationError: If the target doesn't exist or the choice is ambiguous
        """
        available = ", ".join(sorted(self.targets))
        if target_name is None:
            if len(self.targets) == 1:
                return next(iter(self.targets.values()))
            raise ConfigurationError(
                f"Several targets are configured; choose one with --target ({available})"
            )

        if target_name not in self.targets:
            raise ConfigurationError(
                f"Target '{target_name}' not found. Available targets: {available}"
            )
        return self.targets[target_name]

    def backoff_policy(self) -> BackoffPolicy:
        """Back-off policy for health and removal polling."""
        return BackoffPolicy(
            base_interval=self.polling.base_interval,
            max_interval=self.polling.max_interval,
            multiplier=self.polling.multiplier,
            jitter=self.polling.jitter,
        )

    def build_descriptors(self) -> List["ResourceDescriptor"]:
        """Load manifests and build immutable descriptors in declaration order.

        Raises:
            ConfigValidationError: If any manifest is missing or malformed
        """
        # orchestrator.models imports config.models, so import at call time
        from phased_deploy.orchestrator.models import ResourceDescriptor

        descriptors = []
        for descriptor_config in self.descriptors:
            documents: List[Dict[str, Any]] = []
            for manifest in descriptor_config.manifests:
                documents.extend(load_manifest_documents(self.resolve_path(manifest)))

            descriptors.append(ResourceDescriptor(
                name=descriptor_config.name,
                configs=tuple(documents),
                selector=descriptor_config.selector,
                depends_on=tuple(descriptor_config.depends_on),
                expected_instance_count=descriptor_config.instances,
                probe=descriptor_config.probe,
                criticality=descriptor_config.criticality,
                timeout=descriptor_config.timeout,
                continue_on_probe_timeout=descriptor_config.continue_on_probe_timeout,
            ))
        return descriptors

    def to_dict(self) -> Dict:
        """Convert configuration to dictionary.

        Returns:
            Dictionary representation of configuration
        """
        return {
            "project": self.project.model_dump() if self.project else {},
            "targets": {name: t.model_dump() for name, t in self.targets.items()},
            "polling": self.polling.model_dump(),
            "lease": self.lease.model_dump(),
            "descriptors": [d.model_dump(mode="json") for d in self.descriptors],
            "verification": self.verification.model_dump() if self.verification else None,
        }
