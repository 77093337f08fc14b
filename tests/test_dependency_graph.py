"""Tests for dependency ordering and plan construction."""

import random

import pytest

from conftest import make_descriptor
from phased_deploy.orchestrator.dependency_graph import DependencyGraph
from phased_deploy.orchestrator.planner import DeploymentPlanner
from phased_deploy.utils.errors import CyclicDependencyError, PlanError, UnknownDependencyError


def _order(descriptors):
    return DependencyGraph(descriptors).topological_sort()


class TestTopologicalSort:
    """Kahn's algorithm with name tie-breaks."""

    def test_coord_broker_ui(self):
        """Dependencies come first regardless of input order."""
        descriptors = [
            make_descriptor("ui", depends_on=["broker"]),
            make_descriptor("broker", depends_on=["coord"]),
            make_descriptor("coord"),
        ]
        assert _order(descriptors) == ["coord", "broker", "ui"]

    def test_ties_broken_by_name(self):
        """Independent descriptors come out in lexicographic order."""
        descriptors = [make_descriptor(n) for n in ("zeta", "alpha", "mid")]
        assert _order(descriptors) == ["alpha", "mid", "zeta"]

    def test_tie_break_applies_as_nodes_become_ready(self):
        """A dependent that becomes ready competes by name with waiting roots."""
        descriptors = [
            make_descriptor("a"),
            make_descriptor("c"),
            make_descriptor("b", depends_on=["a"]),
        ]
        assert _order(descriptors) == ["a", "b", "c"]

    def test_every_descriptor_after_its_dependencies(self):
        """Ordering holds for a wider diamond-shaped graph."""
        descriptors = [
            make_descriptor("base"),
            make_descriptor("left", depends_on=["base"]),
            make_descriptor("right", depends_on=["base"]),
            make_descriptor("top", depends_on=["left", "right"]),
            make_descriptor("extra", depends_on=["right"]),
        ]
        order = _order(descriptors)
        assert sorted(order) == sorted(d.name for d in descriptors)
        for descriptor in descriptors:
            for dep in descriptor.depends_on:
                assert order.index(dep) < order.index(descriptor.name)

    def test_deterministic_across_input_orders(self):
        """Shuffling the input never changes the plan."""
        descriptors = [
            make_descriptor("kafka", depends_on=["zookeeper"]),
            make_descriptor("zookeeper"),
            make_descriptor("akhq", depends_on=["kafka"]),
            make_descriptor("exporter", depends_on=["kafka"]),
        ]
        expected = _order(descriptors)
        rng = random.Random(7)
        for _ in range(10):
            shuffled = list(descriptors)
            rng.shuffle(shuffled)
            assert _order(shuffled) == expected
        assert expected == ["zookeeper", "kafka", "akhq", "exporter"]


class TestValidation:
    """Plan errors raised before anything is deployed."""

    def test_unknown_dependency(self):
        """A dependency outside the set names the missing descriptor."""
        descriptors = [make_descriptor("coord"), make_descriptor("broker", depends_on=["missing"])]
        with pytest.raises(UnknownDependencyError) as exc_info:
            _order(descriptors)
        assert 'unknown dependency "missing"' in str(exc_info.value)
        assert exc_info.value.dependency == "missing"
        assert isinstance(exc_info.value, PlanError)

    def test_cycle_names_members(self):
        """A cycle is reported with its members."""
        descriptors = [
            make_descriptor("a", depends_on=["c"]),
            make_descriptor("b", depends_on=["a"]),
            make_descriptor("c", depends_on=["b"]),
            make_descriptor("free"),
        ]
        with pytest.raises(CyclicDependencyError) as exc_info:
            _order(descriptors)
        assert set(exc_info.value.cycle) == {"a", "b", "c"}
        assert "free" not in exc_info.value.cycle
        assert isinstance(exc_info.value, PlanError)

    def test_self_dependency_is_a_cycle(self):
        with pytest.raises(CyclicDependencyError) as exc_info:
            _order([make_descriptor("loop", depends_on=["loop"])])
        assert "loop" in exc_info.value.cycle

    def test_duplicate_name(self):
        with pytest.raises(PlanError, match='duplicate descriptor name "coord"'):
            DependencyGraph([make_descriptor("coord"), make_descriptor("coord")])

    def test_detect_returns_none_without_cycle(self):
        graph = DependencyGraph([make_descriptor("a"), make_descriptor("b", depends_on=["a"])])
        assert graph.detect_circular_dependencies() is None
        assert graph.get_dependents("a") == {"b"}
        assert graph.get_dependencies("b") == {"a"}
        assert graph.get_destruction_order() == ["b", "a"]


class TestDeploymentPlanner:
    """Plans carry descriptors in order and answer stage queries."""

    def test_plan_order_and_queries(self, stack):
        plan = DeploymentPlanner().create_deployment_plan(stack)
        assert plan.names == ["coord", "broker", "ui"]
        assert len(plan) == 3
        assert plan.index_of("broker") == 1
        assert [d.name for d in plan.after("coord")] == ["broker", "ui"]
        assert plan.after("ui") == []
        assert [d.name for d in plan.destruction_order()] == ["ui", "broker", "coord"]

    def test_unknown_stage(self, stack):
        plan = DeploymentPlanner().create_deployment_plan(stack)
        with pytest.raises(PlanError, match='unknown stage "nope"'):
            plan.index_of("nope")

    def test_timeout_override(self, stack):
        """The override replaces every stage timeout without touching the input."""
        plan = DeploymentPlanner().create_deployment_plan(stack, timeout_override=42.0)
        assert all(d.stage_timeout == 42.0 for d in plan)
        assert all(d.timeout == 10.0 for d in stack)

    def test_summary_by_criticality(self, stack):
        plan = DeploymentPlanner().create_deployment_plan(stack)
        assert plan.get_summary() == {"standard": 3}
