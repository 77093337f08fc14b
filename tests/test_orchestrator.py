"""End-to-end orchestration runs against the fake cluster."""

import pytest
from kubernetes import client
from urllib3.exceptions import MaxRetryError

from conftest import TARGET, FakeLeaseApi, make_descriptor, manifest
from phased_deploy.cluster.base import ExecResult
from phased_deploy.config.models import KafkaProbeConfig
from phased_deploy.orchestrator.models import RunState, StageState
from phased_deploy.state.lease import ClusterRunLease, FileRunLease
from phased_deploy.state.store import ReportStore
from phased_deploy.utils.cancellation import CancellationToken
from phased_deploy.utils.errors import LeaseHeldError, PlanError


def states(report, name):
    return [entry.state for entry in report.history if entry.descriptor == name]


HAPPY_PATH = [StageState.APPLIED, StageState.READY, StageState.FUNCTIONAL]


class TestSuccessfulDeploy:
    def test_all_stages_functional(self, make_orchestrator, stack, cluster):
        report = make_orchestrator().deploy(stack)

        assert report.state is RunState.SUCCEEDED
        assert report.exit_code == 0
        assert report.plan == ["coord", "broker", "ui"]
        assert cluster.applied == ["coord", "broker", "ui"]
        for name in report.plan:
            assert states(report, name) == HAPPY_PATH
        assert report.removal is None
        assert report.error is None

    def test_applied_is_never_skipped(self, make_orchestrator, stack, cluster):
        """Pods that take a while still pass through Applied and Ready in order."""
        cluster.behave("broker", ready_after=3)
        report = make_orchestrator().deploy(stack)
        assert states(report, "broker") == HAPPY_PATH

    def test_idempotent_redeploy(self, make_orchestrator, stack, cluster):
        """A second deploy of a succeeded plan succeeds again without failures."""
        orchestrator = make_orchestrator()
        first = orchestrator.deploy(stack)
        second = orchestrator.deploy(stack)

        assert first.state is RunState.SUCCEEDED
        assert second.state is RunState.SUCCEEDED
        assert StageState.FAILED not in [entry.state for entry in second.history]
        assert second.run_id != first.run_id
        assert cluster.deleted == []

    def test_report_archived(self, make_orchestrator, stack, tmp_path):
        report = make_orchestrator().deploy(stack)
        latest = ReportStore(str(tmp_path)).latest(TARGET)
        assert latest["run_id"] == report.run_id
        assert latest["state"] == "Succeeded"
        assert latest["stages"]["ui"]["state"] == "Functional"

    def test_plan_error_touches_nothing(self, make_orchestrator, cluster, tmp_path):
        """An unknown dependency fails before any apply and before the lock."""
        descriptors = [make_descriptor("coord"), make_descriptor("broker", depends_on=["missing"])]
        holder = FileRunLease(TARGET, str(tmp_path))
        holder.acquire("someone-else")
        try:
            with pytest.raises(PlanError, match='unknown dependency "missing"'):
                make_orchestrator().deploy(descriptors)
        finally:
            holder.release()
        assert cluster.applied == []
        assert ReportStore(str(tmp_path)).latest(TARGET) is None


class TestFailedDeploy:
    def test_probe_timeout_rolls_back_in_reverse(self, make_orchestrator, stack, cluster):
        """coord Functional, broker times out, rollback removes broker then coord."""
        cluster.behave("broker", never_ready=True)
        report = make_orchestrator().deploy(stack)

        assert report.state is RunState.FAILED
        assert report.exit_code == 1
        assert report.failed_stage == "broker"
        assert states(report, "coord") == HAPPY_PATH + [StageState.ROLLED_BACK]
        assert states(report, "broker") == [StageState.APPLIED, StageState.FAILED, StageState.ROLLED_BACK]
        assert states(report, "ui") == []
        assert cluster.deleted == ["broker", "coord"]
        assert report.removal.complete
        assert report.error["type"] == "ProbeTimeout"
        assert "ui" not in cluster.applied

    def test_timeout_on_first_stage_removes_only_it(self, make_orchestrator, stack, cluster):
        cluster.behave("coord", never_scheduled=True)
        report = make_orchestrator().deploy(stack)
        assert report.failed_stage == "coord"
        assert cluster.deleted == ["coord"]

    def test_rejected_stage_with_nothing_accepted_is_not_removed(self, make_orchestrator, stack, cluster):
        """ApplyError on the first document: the stage never reached Applied."""
        cluster.rejected["broker"] = 422
        report = make_orchestrator().deploy(stack)

        assert report.state is RunState.FAILED
        assert states(report, "broker") == [StageState.FAILED]
        assert report.error["type"] == "ApplyError"
        assert "StatefulSet/broker" in report.error["message"]
        assert cluster.deleted == ["coord"]

    def test_partially_accepted_stage_is_removed(self, make_orchestrator, cluster):
        """ApplyError after some documents were accepted still rolls that stage back."""
        descriptors = [
            make_descriptor("coord"),
            make_descriptor("broker", depends_on=["coord"], documents=[
                manifest("broker-config", kind="ConfigMap", app="broker"),
                manifest("broker"),
            ]),
        ]
        cluster.rejected["broker"] = 422
        report = make_orchestrator().deploy(descriptors)

        assert "broker-config" in cluster.applied
        assert states(report, "broker") == [StageState.FAILED, StageState.ROLLED_BACK]
        assert cluster.deleted == ["broker", "coord"]

    def test_transient_apply_errors_are_retried(self, make_orchestrator, stack, cluster):
        calls = {"n": 0}
        original = cluster.apply

        def flaky(document, dry_run=False):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ConnectionError("connection reset")
            return original(document, dry_run=dry_run)

        cluster.apply = flaky
        report = make_orchestrator().deploy(stack)
        assert report.state is RunState.SUCCEEDED

    def test_stuck_removal_is_partial_rollback_failure(self, make_orchestrator, stack, cluster):
        """A stuck resource is reported and earlier stages are still removed."""
        cluster.behave("broker", never_ready=True, stuck=True)
        report = make_orchestrator().deploy(stack)

        assert report.state is RunState.PARTIAL_ROLLBACK_FAILURE
        assert report.exit_code == 2
        assert cluster.deleted == ["broker", "coord"]
        assert report.removal.stuck == {"broker": ["pod/broker-0"]}
        assert report.removal.removed == ["coord"]
        assert report.error["type"] == "RollbackError"
        assert report.error["still_present"] == {"broker": ["pod/broker-0"]}
        assert states(report, "broker")[-1] is StageState.FAILED

    def test_delete_error_does_not_halt_rollback(self, make_orchestrator, stack, cluster):
        cluster.behave("broker", never_ready=True, delete_error=403)
        report = make_orchestrator().deploy(stack)

        assert report.state is RunState.PARTIAL_ROLLBACK_FAILURE
        assert cluster.deleted == ["broker", "coord"]
        assert "coord" in report.removal.removed
        assert any("delete failed" in item for item in report.removal.stuck["broker"])


class TestCancellation:
    def test_cancel_mid_stage_rolls_back(self, make_orchestrator, stack, cluster, clock):
        """Cancelling while the broker is polled fails it and rolls back."""
        cluster.behave("broker", never_ready=True)
        token = CancellationToken()
        clock.on_sleep = lambda: token.cancel("SIGINT")

        report = make_orchestrator().deploy(stack, cancel=token)

        assert report.state is RunState.FAILED
        assert report.failed_stage == "broker"
        assert report.error["type"] == "OperationCancelled"
        assert cluster.deleted == ["broker", "coord"]

    def test_cancel_before_start(self, make_orchestrator, stack, cluster):
        token = CancellationToken()
        token.cancel("SIGTERM")

        report = make_orchestrator().deploy(stack, cancel=token)

        assert report.state is RunState.FAILED
        assert report.failed_stage == "coord"
        assert states(report, "coord") == [StageState.FAILED]
        assert cluster.applied == []
        assert cluster.deleted == []


class TestProbeTimeoutPolicy:
    def test_continue_on_probe_timeout(self, make_orchestrator, cluster):
        """Opted-in stages keep their highest state and the plan continues."""
        descriptors = [
            make_descriptor("coord"),
            make_descriptor("broker", depends_on=["coord"], probe=KafkaProbeConfig(),
                            continue_on_probe_timeout=True),
            make_descriptor("ui", depends_on=["broker"]),
        ]
        cluster.exec_handler = lambda instance, command: ExecResult(1, "", "not answering")

        report = make_orchestrator().deploy(descriptors)

        assert report.state is RunState.SUCCEEDED
        assert states(report, "broker") == [StageState.APPLIED, StageState.READY]
        assert states(report, "ui") == HAPPY_PATH
        assert any(w.startswith("broker:") for w in report.warnings)


class TestLease:
    def test_second_run_rejected(self, make_orchestrator, stack, cluster, tmp_path):
        """A held lock rejects the run immediately with a distinct error."""
        holder = FileRunLease(TARGET, str(tmp_path))
        holder.acquire("other-run")
        try:
            with pytest.raises(LeaseHeldError) as exc_info:
                make_orchestrator().deploy(stack)
        finally:
            holder.release()

        assert "other-run" in str(exc_info.value)
        assert cluster.applied == []
        archived = ReportStore(str(tmp_path)).latest(TARGET)
        assert archived["state"] == "Failed"
        assert archived["error"]["type"] == "LeaseHeldError"

    def test_lease_released_after_failure(self, make_orchestrator, stack, cluster, tmp_path):
        cluster.behave("broker", never_ready=True)
        make_orchestrator().deploy(stack)

        lease = FileRunLease(TARGET, str(tmp_path))
        lease.acquire("next-run")
        lease.release()


class TestAppliedDocuments:
    def test_manifests_are_not_mutated_by_apply(self, make_orchestrator, stack, cluster, monkeypatch):
        apply = cluster.apply

        def mutating_apply(document, dry_run=False):
            document["metadata"]["labels"]["app.kubernetes.io/managed-by"] = "phased-deploy"
            document.setdefault("status", {})["replicas"] = 1
            return apply(document, dry_run=dry_run)

        monkeypatch.setattr(cluster, "apply", mutating_apply)
        make_orchestrator().deploy(stack)

        for descriptor in stack:
            assert descriptor.configs == (manifest(descriptor.name),)


class TestLeaseHeartbeat:
    """A cluster lease stays alive through long polls and removals."""

    def make_lease(self, clock, duration):
        lease = ClusterRunLease(TARGET, client.ApiClient(), "default", duration=duration, clock=clock)
        lease.api = FakeLeaseApi()
        return lease

    def track_renewals(self, lease, clock, monkeypatch):
        renewed_at = []
        renew = lease.renew

        def recording_renew():
            renew()
            renewed_at.append(clock.now)

        monkeypatch.setattr(lease, "renew", recording_renew)
        return renewed_at

    def test_long_stage_renews_before_expiry(self, make_orchestrator, stack, cluster, clock, monkeypatch):
        cluster.behave("broker", ready_after=40)
        lease = self.make_lease(clock, duration=60)
        renewed_at = self.track_renewals(lease, clock, monkeypatch)

        report = make_orchestrator(lease=lease).deploy([d.with_timeout(600.0) for d in stack])

        assert report.state is RunState.SUCCEEDED
        assert clock.now > 2 * lease.duration
        checkpoints = [0.0] + renewed_at + [clock.now]
        assert max(b - a for a, b in zip(checkpoints, checkpoints[1:])) < lease.duration

    def test_removal_renews(self, make_orchestrator, stack, cluster, clock, monkeypatch):
        cluster.behave("ui", stuck=True)
        lease = self.make_lease(clock, duration=30)
        orchestrator = make_orchestrator(lease=lease, removal_timeout=20.0)
        orchestrator.deploy(stack)
        renewed_at = self.track_renewals(lease, clock, monkeypatch)

        report = orchestrator.teardown(stack)

        assert report.state is RunState.PARTIAL_ROLLBACK_FAILURE
        assert renewed_at

    def test_lost_lease_fails_the_stage(self, make_orchestrator, stack, cluster, clock):
        """Losing the lease mid-stage rolls back; removal carries on without it."""
        cluster.behave("broker", never_ready=True)
        lease = self.make_lease(clock, duration=30)

        def steal():
            if clock.now > 15 and lease.api.lease.spec.holder_identity != "thief":
                lease.api.lease.spec.holder_identity = "thief"
        clock.on_sleep = steal

        report = make_orchestrator(lease=lease).deploy([d.with_timeout(300.0) for d in stack])

        assert report.state is RunState.FAILED
        assert report.failed_stage == "broker"
        assert report.to_dict()["error"]["type"] == "LeaseHeldError"
        assert cluster.deleted == ["broker", "coord"]
        assert lease.api.lease.spec.holder_identity == "thief"

    def test_release_failure_keeps_the_outcome(self, make_orchestrator, stack, cluster, clock, monkeypatch):
        monkeypatch.setattr("time.sleep", lambda seconds: None)
        cluster.behave("ui", stuck=True)
        lease = self.make_lease(clock, duration=900)
        orchestrator = make_orchestrator(lease=lease)
        orchestrator.deploy(stack)

        def drop_connection():
            lease.api.read_failure = MaxRetryError(None, "/apis/coordination.k8s.io/v1", reason="connection reset")
        clock.on_sleep = drop_connection

        report = orchestrator.teardown(stack)

        assert report.state is RunState.PARTIAL_ROLLBACK_FAILURE
        assert report.exit_code == 2
        assert lease.holder is None


class TestDryRun:
    def test_validates_without_lock_or_probing(self, make_orchestrator, stack, cluster, tmp_path):
        holder = FileRunLease(TARGET, str(tmp_path))
        holder.acquire("other-run")
        try:
            report = make_orchestrator().deploy(stack, dry_run=True)
        finally:
            holder.release()

        assert report.state is RunState.SUCCEEDED
        assert report.dry_run
        assert report.validated == ["coord", "broker", "ui"]
        assert cluster.dry_run_applied == ["coord", "broker", "ui"]
        assert cluster.applied == []
        assert report.history == []

    def test_rejection_fails_without_rollback(self, make_orchestrator, stack, cluster):
        cluster.rejected["broker"] = 422
        report = make_orchestrator().deploy(stack, dry_run=True)

        assert report.state is RunState.FAILED
        assert report.failed_stage == "broker"
        assert report.validated == ["coord", "ui"]
        assert cluster.deleted == []
