"""Post-deploy functional smoke checks."""

import uuid
from typing import Callable, List, Optional

from phased_deploy.cluster.base import ClusterHandle, Instance
from phased_deploy.config.models import VerificationConfig, VerificationStepConfig
from phased_deploy.orchestrator.models import (
    ResourceDescriptor,
    VerificationCheck,
    VerificationReport,
    VerificationStatus,
)
from phased_deploy.utils.errors import ErrorContext, error_handler
from phased_deploy.utils.logging import get_logger

logger = get_logger(__name__)

UNIT_PLACEHOLDER = "{unit}"


def _default_unit_name(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


class VerificationRunner:
    """Runs an ordered battery of checks inside one instance.

    Never mutates orchestration state and never triggers rollback. After the
    first failure, remaining non-cleanup steps are skipped; cleanup steps
    always run.
    """

    def __init__(
        self,
        cluster: ClusterHandle,
        config: VerificationConfig,
        unit_factory: Callable[[str], str] = _default_unit_name
    ):
        self.cluster = cluster
        self.config = config
        self.unit_factory = unit_factory

    def _pick_instance(self, descriptor: ResourceDescriptor) -> Optional[Instance]:
        instances = [
            i for i in self.cluster.list_instances(descriptor.selector)
            if i.ready and not i.terminating
        ]
        return instances[0] if instances else None

    def run(
        self,
        descriptor: ResourceDescriptor,
        preflight: Optional[List[VerificationCheck]] = None
    ) -> VerificationReport:
        """Run every configured step against the first ready instance.

        Args:
            descriptor: Descriptor whose instance runs the commands
            preflight: Checks already performed; any failure skips the steps
        """
        unit = self.unit_factory(self.config.unit_prefix)
        report = VerificationReport(descriptor=descriptor.name, unit=unit, checks=list(preflight or []))
        failed = not report.passed

        instance = None
        if not failed:
            try:
                instance = self._pick_instance(descriptor)
            except Exception as e:
                error = error_handler.handle_exception(e, ErrorContext(descriptor=descriptor.name, operation="verify"))
                report.checks.append(VerificationCheck("select instance", VerificationStatus.FAILED, error.message))
                failed = True
            else:
                if instance is None:
                    report.checks.append(VerificationCheck(
                        "select instance", VerificationStatus.FAILED,
                        f"no ready instance of '{descriptor.name}'"
                    ))
                    failed = True

        for step in self.config.steps:
            if instance is None or (failed and not step.cleanup):
                report.checks.append(VerificationCheck(
                    step.name, VerificationStatus.SKIPPED, "skipped after earlier failure", cleanup=step.cleanup
                ))
                continue

            check = self._run_step(instance, step, unit)
            report.checks.append(check)
            if check.status is VerificationStatus.FAILED:
                failed = True
                logger.warning(f"Verification step '{step.name}' failed: {check.message}")
            else:
                logger.info(f"Verification step '{step.name}' passed")

        return report

    def _run_step(self, instance: Instance, step: VerificationStepConfig, unit: str) -> VerificationCheck:
        command = [part.replace(UNIT_PLACEHOLDER, unit) for part in step.command]
        expect = step.expect.replace(UNIT_PLACEHOLDER, unit) if step.expect else None

        try:
            outcome = self.cluster.exec(instance.name, command, container=self.config.container, timeout=step.timeout)
        except Exception as e:
            error = error_handler.handle_exception(e, ErrorContext(operation="verify", resource_name=instance.name))
            return VerificationCheck(step.name, VerificationStatus.FAILED, error.message, cleanup=step.cleanup)

        if not outcome.ok:
            detail = (outcome.stderr or outcome.stdout).strip()
            return VerificationCheck(
                step.name, VerificationStatus.FAILED,
                f"exit {outcome.exit_code}" + (f": {detail}" if detail else ""),
                cleanup=step.cleanup
            )
        if expect is not None and expect not in outcome.stdout:
            return VerificationCheck(
                step.name, VerificationStatus.FAILED, f"expected {expect!r} in output", cleanup=step.cleanup
            )
        return VerificationCheck(step.name, VerificationStatus.PASSED, cleanup=step.cleanup)
