"""Deployment planner: turns descriptors into an ordered plan."""

from typing import Dict, Iterator, List, Optional
from dataclasses import dataclass, field
from datetime import datetime

from phased_deploy.orchestrator.dependency_graph import DependencyGraph
from phased_deploy.orchestrator.models import ResourceDescriptor, utcnow
from phased_deploy.utils.errors import PlanError
from phased_deploy.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class DeploymentPlan:
    """Descriptors in a valid topological order.

    Every descriptor appears exactly once and after all of its dependencies.
    """

    descriptors: List[ResourceDescriptor]
    dependency_graph: Optional[DependencyGraph] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def names(self) -> List[str]:
        return [d.name for d in self.descriptors]

    def __iter__(self) -> Iterator[ResourceDescriptor]:
        return iter(self.descriptors)

    def __len__(self) -> int:
        return len(self.descriptors)

    def get(self, name: str) -> Optional[ResourceDescriptor]:
        for descriptor in self.descriptors:
            if descriptor.name == name:
                return descriptor
        return None

    def index_of(self, name: str) -> int:
        """Position of a stage in the plan.

        Raises:
            PlanError: If no stage has that name
        """
        for idx, descriptor in enumerate(self.descriptors):
            if descriptor.name == name:
                return idx
        raise PlanError(
            f'unknown stage "{name}"',
            suggestions=[f"Planned stages: {', '.join(self.names)}"]
        )

    def after(self, name: str) -> List[ResourceDescriptor]:
        """Descriptors planned strictly after ``name``, in forward order."""
        return self.descriptors[self.index_of(name) + 1:]

    def destruction_order(self) -> List[ResourceDescriptor]:
        return list(reversed(self.descriptors))

    def get_summary(self) -> Dict[str, int]:
        summary: Dict[str, int] = {}
        for descriptor in self.descriptors:
            key = descriptor.criticality.value
            summary[key] = summary.get(key, 0) + 1
        return summary


class DeploymentPlanner:
    """Creates deployment plans."""

    def __init__(self):
        """Initialize deployment planner."""
        self.logger = get_logger(__name__)

    def create_deployment_plan(
        self,
        descriptors: List[ResourceDescriptor],
        timeout_override: Optional[float] = None
    ) -> DeploymentPlan:
        """Create a deployment plan from a set of descriptors.

        Pure: touches nothing outside the returned plan.

        Args:
            descriptors: All descriptors of the project
            timeout_override: Optional per-stage timeout replacing every descriptor's own

        Returns:
            DeploymentPlan in dependency order

        Raises:
            PlanError: On duplicate names, unknown dependencies or cycles
        """
        self.logger.debug(f"Creating deployment plan for {len(descriptors)} descriptors...")

        graph = DependencyGraph(descriptors)
        order = graph.topological_sort()

        ordered = []
        for name in order:
            descriptor = graph.get_descriptor(name)
            if timeout_override is not None:
                descriptor = descriptor.with_timeout(timeout_override)
            ordered.append(descriptor)

        plan = DeploymentPlan(descriptors=ordered, dependency_graph=graph)
        self.logger.info(f"Deployment plan created: {' -> '.join(plan.names)}")
        return plan
