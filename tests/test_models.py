"""Tests for stage transitions and run reports."""

import json

import pytest
from pydantic import ValidationError

from conftest import make_descriptor
from phased_deploy.config.models import Criticality
from phased_deploy.orchestrator.models import (
    RemovalResult,
    ResourceDescriptor,
    RunReport,
    RunState,
    StageState,
)
from phased_deploy.utils.errors import ProbeTimeout


class TestResourceDescriptor:
    def test_is_immutable(self):
        descriptor = make_descriptor("kafka")
        with pytest.raises(ValidationError):
            descriptor.name = "other"

    def test_timeout_defaults_by_criticality(self):
        descriptor = ResourceDescriptor(name="akhq", selector={"app": "akhq"}, criticality=Criticality.AUXILIARY)
        assert descriptor.stage_timeout == 120.0
        assert descriptor.with_timeout(5.0).stage_timeout == 5.0
        assert descriptor.stage_timeout == 120.0

    def test_selector_string(self):
        descriptor = ResourceDescriptor(name="kafka", selector={"tier": "data", "app": "kafka"})
        assert descriptor.selector_string == "app=kafka,tier=data"

    def test_selector_required(self):
        with pytest.raises(ValidationError):
            ResourceDescriptor(name="kafka", selector={})


class TestStageTransitions:
    """Stage history is append-only and monotonic."""

    def test_happy_path(self):
        report = RunReport(operation="deploy", target="t", plan=["kafka"])
        for state in (StageState.APPLIED, StageState.READY, StageState.FUNCTIONAL, StageState.ROLLED_BACK):
            report.record_stage("kafka", state)
        assert report.stage_state("kafka") is StageState.ROLLED_BACK
        assert len(report.history) == 4

    @pytest.mark.parametrize("path", [
        [StageState.READY],
        [StageState.FUNCTIONAL],
        [StageState.APPLIED, StageState.FUNCTIONAL],
        [StageState.APPLIED, StageState.READY, StageState.APPLIED],
        [StageState.FAILED, StageState.APPLIED],
    ])
    def test_illegal_transitions(self, path):
        report = RunReport(operation="deploy", target="t")
        with pytest.raises(ValueError, match="Illegal stage transition"):
            for state in path:
                report.record_stage("kafka", state)

    def test_applied_at_carried_forward(self):
        report = RunReport(operation="deploy", target="t")
        applied = report.record_stage("kafka", StageState.APPLIED)
        failed = report.record_stage("kafka", StageState.FAILED, "timed out")
        assert failed.applied_at == applied.applied_at
        assert failed.last_error == "timed out"


class TestRunReport:
    def test_finish_exactly_once(self):
        report = RunReport(operation="deploy", target="t")
        report.finish(RunState.SUCCEEDED)
        with pytest.raises(RuntimeError):
            report.finish(RunState.FAILED)
        with pytest.raises(RuntimeError):
            report.record_stage("kafka", StageState.APPLIED)

    def test_finish_requires_terminal_state(self):
        with pytest.raises(ValueError):
            RunReport(operation="deploy", target="t").finish(RunState.RUNNING)

    @pytest.mark.parametrize("state, code", [
        (RunState.SUCCEEDED, 0),
        (RunState.FAILED, 1),
        (RunState.PARTIAL_ROLLBACK_FAILURE, 2),
    ])
    def test_exit_codes(self, state, code):
        report = RunReport(operation="deploy", target="t")
        report.finish(state)
        assert report.exit_code == code

    def test_serialization(self):
        report = RunReport(operation="deploy", target="kind/kafka", plan=["zookeeper", "kafka"])
        report.record_stage("zookeeper", StageState.APPLIED)
        report.record_stage("zookeeper", StageState.READY)
        report.record_stage("zookeeper", StageState.FUNCTIONAL)
        report.record_stage("kafka", StageState.APPLIED)
        report.record_stage("kafka", StageState.FAILED, "no handshake")
        report.removal = RemovalResult(attempted=["kafka", "zookeeper"], removed=["kafka", "zookeeper"])
        report.failed_stage = "kafka"
        report.finish(RunState.FAILED, ProbeTimeout("no handshake", last_status="Ready"))

        data = json.loads(report.to_json())

        assert data["state"] == "Failed"
        assert list(data["stages"]) == ["zookeeper", "kafka"]
        assert data["stages"]["kafka"]["last_error"] == "no handshake"
        assert len(data["history"]) == 5
        assert data["error"]["type"] == "ProbeTimeout"
        assert data["error"]["last_status"] == "Ready"
        assert data["removal"]["complete"] is True
        assert data["duration"] >= 0
