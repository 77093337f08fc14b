"""Dependency graph builder for descriptor deployment ordering."""

import heapq
from typing import Dict, List, Set, Optional, Iterable
from dataclasses import dataclass
from collections import defaultdict

from phased_deploy.orchestrator.models import ResourceDescriptor
from phased_deploy.utils.errors import (
    CyclicDependencyError,
    ErrorContext,
    PlanError,
    UnknownDependencyError,
)


@dataclass
class DependencyNode:
    """Node in the dependency graph."""

    name: str
    descriptor: ResourceDescriptor
    dependencies: Set[str]  # Names this node depends on


class DependencyGraph:
    """Directed graph of descriptor dependencies."""

    def __init__(self, descriptors: Optional[Iterable[ResourceDescriptor]] = None):
        """Initialize dependency graph.

        Args:
            descriptors: Optional descriptors to add immediately
        """
        self.nodes: Dict[str, DependencyNode] = {}
        self._adjacency_list: Dict[str, Set[str]] = defaultdict(set)  # name -> dependents

        for descriptor in descriptors or []:
            self.add_descriptor(descriptor)

    def add_descriptor(self, descriptor: ResourceDescriptor) -> None:
        """Add a descriptor to the graph.

        Raises:
            PlanError: If a descriptor with the same name was already added
        """
        if descriptor.name in self.nodes:
            raise PlanError(
                f'duplicate descriptor name "{descriptor.name}"',
                context=ErrorContext(descriptor=descriptor.name)
            )

        dependencies = set(descriptor.depends_on)
        self.nodes[descriptor.name] = DependencyNode(
            name=descriptor.name,
            descriptor=descriptor,
            dependencies=dependencies
        )
        for dep in dependencies:
            self._adjacency_list[dep].add(descriptor.name)

    def get_dependencies(self, name: str) -> Set[str]:
        """Get direct dependencies of a descriptor."""
        if name not in self.nodes:
            return set()
        return self.nodes[name].dependencies.copy()

    def get_dependents(self, name: str) -> Set[str]:
        """Get direct dependents of a descriptor."""
        return self._adjacency_list[name].copy()

    def detect_circular_dependencies(self) -> Optional[List[str]]:
        """Detect circular dependencies in the graph.

        Returns:
            Names forming a cycle with the first name repeated at the end,
            or None if no cycle exists
        """
        # White (0): unvisited, Gray (1): visiting, Black (2): visited
        color = {name: 0 for name in self.nodes}
        stack: List[str] = []

        def dfs(name: str) -> Optional[List[str]]:
            color[name] = 1
            stack.append(name)

            for dep in sorted(self.nodes[name].dependencies):
                if dep not in self.nodes:
                    continue
                if color[dep] == 1:
                    # Back edge: the cycle is the stack segment from dep onwards
                    return stack[stack.index(dep):] + [dep]
                if color[dep] == 0:
                    cycle = dfs(dep)
                    if cycle:
                        return cycle

            stack.pop()
            color[name] = 2
            return None

        for name in sorted(self.nodes):
            if color[name] == 0:
                cycle = dfs(name)
                if cycle:
                    return cycle

        return None

    def validate(self) -> None:
        """Validate the dependency graph.

        Raises:
            UnknownDependencyError: If a descriptor depends on a name not in the graph
            CyclicDependencyError: If the graph contains a cycle
        """
        for name in sorted(self.nodes):
            for dep in sorted(self.nodes[name].dependencies):
                if dep not in self.nodes:
                    raise UnknownDependencyError(descriptor=name, dependency=dep)

        cycle = self.detect_circular_dependencies()
        if cycle:
            raise CyclicDependencyError(cycle, context=ErrorContext(descriptor=cycle[0]))

    def topological_sort(self) -> List[str]:
        """Perform topological sort on the dependency graph.

        Kahn's algorithm; among descriptors that are ready at the same time
        the lexicographically smallest name goes first, so the order is
        deterministic.

        Returns:
            Names in dependency order (dependencies before dependents)

        Raises:
            PlanError: If the graph is invalid
        """
        self.validate()

        in_degree = {name: len(node.dependencies) for name, node in self.nodes.items()}
        ready = [name for name, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        result = []

        while ready:
            name = heapq.heappop(ready)
            result.append(name)

            for dependent in self._adjacency_list[name]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(result) != len(self.nodes):
            remaining = sorted(set(self.nodes) - set(result))
            raise CyclicDependencyError(remaining)

        return result

    def get_destruction_order(self) -> List[str]:
        """Get destruction order (reverse of deployment order)."""
        return list(reversed(self.topological_sort()))

    def get_descriptor(self, name: str) -> Optional[ResourceDescriptor]:
        node = self.nodes.get(name)
        return node.descriptor if node else None
