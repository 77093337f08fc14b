"""Full teardown in reverse dependency order."""

from phased_deploy.orchestrator.models import RemovalResult
from phased_deploy.orchestrator.planner import DeploymentPlan
from phased_deploy.orchestrator.rollback import RollbackManager
from phased_deploy.utils.errors import ConfigurationError
from phased_deploy.utils.logging import get_logger

logger = get_logger(__name__)


class TeardownController:
    """Removes every descriptor of a plan regardless of its last known state.

    Removing something already absent counts as success. Persistent storage
    is only removed when ``include_storage`` is set and separately confirmed.
    """

    def __init__(self, rollback_manager: RollbackManager):
        self.rollback_manager = rollback_manager

    def teardown(
        self,
        plan: DeploymentPlan,
        include_storage: bool = False,
        confirmed: bool = False
    ) -> RemovalResult:
        """Remove all descriptors of ``plan``.

        Raises:
            ConfigurationError: If storage removal was requested without confirmation
        """
        if include_storage and not confirmed:
            raise ConfigurationError(
                "Removing persistent storage is irreversible and requires explicit confirmation",
                suggestions=["Pass --confirm-data-loss together with --include-data"]
            )

        if include_storage:
            logger.warning("Teardown includes persistent storage")
        logger.info(f"Tearing down: {' -> '.join(reversed(plan.names))}")
        return self.rollback_manager.remove(plan.descriptors, include_storage=include_storage)
