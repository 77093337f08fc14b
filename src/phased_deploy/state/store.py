"""Archive of run reports under the state directory."""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from phased_deploy.orchestrator.models import RunReport
from phased_deploy.state.lease import safe_name


class StateError(Exception):
    """Raised when a report cannot be written or read."""
    pass


class ReportStore:
    """Stores every RunReport as JSON in ``<state_dir>/reports/<target>/``."""

    def __init__(self, state_dir: str = ".phased"):
        self.root = Path(state_dir) / "reports"

    def _target_dir(self, target: str) -> Path:
        return self.root / safe_name(target)

    def save(self, report: RunReport) -> Path:
        """Write a report atomically.

        Raises:
            StateError: If the report cannot be saved
        """
        directory = self._target_dir(report.target)
        directory.mkdir(parents=True, exist_ok=True)
        stamp = report.started_at.strftime("%Y%m%dT%H%M%SZ")
        path = directory / f"{stamp}-{report.run_id}.json"

        try:
            # Write to temporary file first
            temp_path = path.with_suffix(".tmp")
            with open(temp_path, "w") as f:
                f.write(report.to_json())

            # Atomic rename
            temp_path.replace(path)
        except OSError as e:
            raise StateError(f"Failed to save report: {e}")
        return path

    def list(self, target: str) -> List[Path]:
        directory = self._target_dir(target)
        if not directory.exists():
            return []
        return sorted(directory.glob("*.json"))

    def latest(self, target: str, operation: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Most recent report for a target, optionally of one operation."""
        for path in reversed(self.list(target)):
            try:
                with open(path, "r") as f:
                    data = json.load(f)
            except json.JSONDecodeError as e:
                raise StateError(f"Failed to parse report {path}: {e}")
            if operation is None or data.get("operation") == operation:
                return data
        return None
