"""Tests for vllm_eks.ui - console rendering helpers."""

from __future__ import annotations

from vllm_eks import ui
from vllm_eks.errors import CreationFailed
from vllm_eks.probe.models import ManagedResource, ResourceKind, ResourceState
from vllm_eks.stages.models import FailureReason, PlanReport, StageOutcome, StageState


class TestElapsed:
    def test_seconds(self):
        assert ui.elapsed_str(42.7) == "42s"

    def test_minutes(self):
        assert ui.elapsed_str(125) == "2m 5s"


class TestTables:
    def test_stage_table(self, capsys):
        report = PlanReport(target="demo-cluster", region="us-west-2", outcomes=[
            StageOutcome(stage="cluster", state=StageState.READY, skipped=True),
        ])
        ui.stage_table(report)
        out = capsys.readouterr().out
        assert "cluster" in out
        assert "skipped" in out

    def test_resource_table(self, capsys):
        ui.resource_table([
            ManagedResource(
                kind=ResourceKind.FILESYSTEM, name="fsx", current_state=ResourceState.READY,
                identifiers={"fileSystemId": "fs-1"},
            ),
        ])
        assert "fileSystemId=fs-1" in capsys.readouterr().out

    def test_plan_failure_shows_remediation(self, capsys):
        err = CreationFailed("node group CREATE_FAILED", resource="nodegroup/gpu", remediation="Check quota.")
        report = PlanReport(target="demo-cluster", region="us-west-2", outcomes=[
            StageOutcome(
                stage="nodegroup", state=StageState.FAILED,
                reason=FailureReason.CREATION_FAILED, error=err,
            ),
        ])
        ui.plan_failure(report)
        out = capsys.readouterr().out
        assert "nodegroup/gpu" in out
        assert "Check quota." in out
