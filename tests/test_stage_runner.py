"""Tests for vllm_eks.stages.runner - the per-stage state machine and plan loop."""

from __future__ import annotations

import dataclasses
import shutil
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from vllm_eks.config.models import DeploymentTarget
from vllm_eks.errors import AlreadyExists, CommandError, MissingIdentifier, ProbeError
from vllm_eks.probe.models import ManagedResource, ResourceKind, ResourceState
from vllm_eks.render import Templater
from vllm_eks.stages import (
    STAGE_ORDER,
    DeploymentPlan,
    FailureReason,
    Stage,
    StageContext,
    StageRunner,
    StageState,
    build_plan,
)

TEMPLATES_DIR = Path(__file__).resolve().parents[1] / "templates"

NS, C, P, R, F = (
    StageState.NOT_STARTED, StageState.CREATING, StageState.POLLING,
    StageState.READY, StageState.FAILED,
)


# ── helpers ──────────────────────────────────────────────────────────────


class FakeClock:
    """Monotonic clock advanced only by ``sleep``."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _res(state: ResourceState, status: str = "") -> ManagedResource:
    return ManagedResource(kind=ResourceKind.CLUSTER, name="demo-cluster", current_state=state, status=status)


def _script(*results):
    """Probe returning (or raising) each item in turn; the last one repeats."""
    items = list(results)

    def probe(_ctx):
        item = items.pop(0) if len(items) > 1 else items[0]
        if isinstance(item, BaseException):
            raise item
        return item

    return probe


def _stage(probe, action=None, on_ready=None, **kwargs) -> Stage:
    defaults = dict(
        name="cluster", kind=ResourceKind.CLUSTER, selector="demo-cluster",
        phase="provision-cluster", timeout=60, poll_interval=10,
    )
    defaults.update(kwargs)
    return Stage(probe=probe, action=action or MagicMock(), on_ready=on_ready, **defaults)


def _ctx(target=None) -> StageContext:
    return StageContext(
        target=target or DeploymentTarget(cluster_name="demo-cluster"),
        client_factory=MagicMock(), prober=MagicMock(), templater=MagicMock(),
        kubectl=MagicMock(), helm=MagicMock(), eksctl=MagicMock(),
    )


def _runner(ctx=None, **kwargs):
    clock = FakeClock()
    runner = StageRunner(ctx or _ctx(), clock=clock, sleep=clock.sleep, **kwargs)
    return runner, clock


# ── TestInitialProbe ─────────────────────────────────────────────────────


class TestInitialProbe:
    def test_ready_skips_action(self):
        action, on_ready = MagicMock(), MagicMock()
        runner, _ = _runner()
        outcome = runner.run_stage(_stage(_script(_res(ResourceState.READY)), action, on_ready))
        assert outcome.ready
        assert outcome.skipped
        assert outcome.transitions == [NS, R]
        action.assert_not_called()
        on_ready.assert_called_once()

    def test_provider_failed_state(self):
        action = MagicMock()
        runner, _ = _runner()
        outcome = runner.run_stage(_stage(_script(_res(ResourceState.FAILED, "CREATE_FAILED")), action))
        assert outcome.failed
        assert outcome.reason == FailureReason.CREATION_FAILED
        assert "CREATE_FAILED" in outcome.error.message
        action.assert_not_called()

    def test_pending_resumes_polling_without_action(self):
        action = MagicMock()
        runner, _ = _runner()
        outcome = runner.run_stage(_stage(
            _script(_res(ResourceState.PENDING), _res(ResourceState.PENDING), _res(ResourceState.READY)),
            action,
        ))
        assert outcome.ready
        assert outcome.transitions == [NS, P, R]
        action.assert_not_called()


# ── TestCreateAndPoll ────────────────────────────────────────────────────


class TestCreateAndPoll:
    def test_create_then_ready(self):
        action = MagicMock()
        runner, clock = _runner()
        outcome = runner.run_stage(_stage(
            _script(
                _res(ResourceState.NOT_FOUND),
                _res(ResourceState.PENDING, "CREATING"),
                _res(ResourceState.PENDING, "CREATING"),
                _res(ResourceState.READY, "ACTIVE"),
            ),
            action,
        ))
        assert outcome.ready
        assert outcome.created
        assert outcome.transitions == [NS, C, P, R]
        assert outcome.polls == 3
        assert clock.sleeps == [10, 10]
        action.assert_called_once()

    def test_already_exists_is_normalised(self):
        action = MagicMock(side_effect=AlreadyExists("exists", resource="cluster/demo-cluster"))
        runner, _ = _runner()
        outcome = runner.run_stage(_stage(
            _script(_res(ResourceState.NOT_FOUND), _res(ResourceState.READY)), action,
        ))
        assert outcome.ready
        assert outcome.already_existed
        assert not outcome.created
        assert outcome.transitions == [NS, C, P, R]

    def test_rejected_creation(self):
        action = MagicMock(side_effect=CommandError("eksctl create cluster", 1, stderr="quota"))
        runner, _ = _runner()
        outcome = runner.run_stage(_stage(_script(_res(ResourceState.NOT_FOUND)), action))
        assert outcome.failed
        assert outcome.reason == FailureReason.CREATION_FAILED
        assert outcome.transitions == [NS, C, F]
        assert isinstance(outcome.error.cause, CommandError)
        assert outcome.error.stage == "cluster"

    def test_client_error_in_action(self):
        err = ClientError({"Error": {"Code": "ServiceQuotaExceeded", "Message": "no"}}, "CreateFileSystem")
        runner, _ = _runner()
        outcome = runner.run_stage(_stage(_script(_res(ResourceState.NOT_FOUND)), MagicMock(side_effect=err)))
        assert outcome.reason == FailureReason.CREATION_FAILED

    def test_failed_while_polling(self):
        runner, _ = _runner()
        outcome = runner.run_stage(_stage(_script(
            _res(ResourceState.NOT_FOUND), _res(ResourceState.PENDING), _res(ResourceState.FAILED, "FAILED"),
        )))
        assert outcome.reason == FailureReason.CREATION_FAILED
        assert outcome.transitions == [NS, C, P, F]

    def test_poll_timeout_is_distinct(self):
        runner, clock = _runner()
        outcome = runner.run_stage(_stage(
            _script(_res(ResourceState.NOT_FOUND), _res(ResourceState.PENDING, "CREATING")),
            timeout=30, poll_interval=10,
        ))
        assert outcome.failed
        assert outcome.reason == FailureReason.POLL_TIMEOUT
        assert outcome.error.elapsed >= 30
        assert outcome.polls == 4
        assert clock.now == 30

    def test_remediation_from_stage(self):
        runner, _ = _runner()
        outcome = runner.run_stage(_stage(
            _script(_res(ResourceState.FAILED)), remediation="Check the console.",
        ))
        assert outcome.error.remediation == "Check the console."

    def test_on_ready_missing_identifier(self):
        on_ready = MagicMock(side_effect=MissingIdentifier("cluster", ["subnetId"]))
        runner, _ = _runner()
        outcome = runner.run_stage(_stage(_script(_res(ResourceState.READY)), on_ready=on_ready))
        assert outcome.reason == FailureReason.MISSING_IDENTIFIER


# ── TestProbeErrors ──────────────────────────────────────────────────────


class TestProbeErrors:
    def test_transient_errors_retried(self):
        runner, clock = _runner()
        outcome = runner.run_stage(_stage(_script(
            ProbeError("throttled"), ProbeError("throttled"), _res(ResourceState.READY),
        )))
        assert outcome.ready
        assert outcome.probe_errors == 2
        assert clock.sleeps == [10, 10]

    def test_consecutive_budget(self):
        runner, _ = _runner()
        outcome = runner.run_stage(_stage(_script(ProbeError("throttled"))))
        assert outcome.failed
        assert outcome.reason == FailureReason.PROBE_ERROR
        assert outcome.probe_errors == 5

    def test_counter_resets_after_success(self):
        runner, _ = _runner(max_probe_errors=2)
        outcome = runner.run_stage(_stage(_script(
            _res(ResourceState.NOT_FOUND),
            ProbeError("x"), _res(ResourceState.PENDING),
            ProbeError("x"), _res(ResourceState.READY),
        )))
        assert outcome.ready
        assert outcome.probe_errors == 2

    def test_non_transient_client_error_not_retried(self):
        err = ClientError({"Error": {"Code": "AccessDeniedException", "Message": "no"}}, "DescribeCluster")
        runner, clock = _runner()
        outcome = runner.run_stage(_stage(_script(err)))
        assert outcome.reason == FailureReason.PROBE_ERROR
        assert clock.sleeps == []


# ── TestVerifyOnly ───────────────────────────────────────────────────────


class TestVerifyOnly:
    def test_ready_passes(self):
        on_ready = MagicMock()
        runner, _ = _runner()
        outcome = runner.run_stage(_stage(_script(_res(ResourceState.READY)), on_ready=on_ready), verify_only=True)
        assert outcome.ready
        assert outcome.verify_only
        on_ready.assert_called_once()

    def test_not_ready_fails_without_action(self):
        action = MagicMock()
        runner, _ = _runner()
        outcome = runner.run_stage(
            _stage(_script(_res(ResourceState.NOT_FOUND)), action), verify_only=True,
        )
        assert outcome.reason == FailureReason.PRECONDITION_FAILED
        assert outcome.error.remediation == "Run 'vllm-eks provision-cluster' first."
        assert outcome.transitions == [NS, F]
        action.assert_not_called()


# ── TestListener ─────────────────────────────────────────────────────────


class TestListener:
    def test_every_transition_reported(self):
        listener = MagicMock()
        runner, _ = _runner(listener=listener)
        runner.run_stage(_stage(_script(_res(ResourceState.NOT_FOUND), _res(ResourceState.READY))))
        states = [c.args[1] for c in listener.call_args_list]
        assert states == [C, P, R]


# ── TestRunPlan ──────────────────────────────────────────────────────────


class TestRunPlan:
    def _plan(self, *stages):
        return DeploymentPlan(target=DeploymentTarget(cluster_name="demo-cluster"), stages=tuple(stages))

    def test_halts_at_first_failure(self):
        later = MagicMock()
        plan = self._plan(
            _stage(_script(_res(ResourceState.READY)), name="a"),
            _stage(_script(_res(ResourceState.FAILED)), name="b", precondition=("a",)),
            _stage(later, name="c", precondition=("b",)),
        )
        runner, _ = _runner()
        report = runner.run_plan(plan)
        assert [o.stage for o in report.outcomes] == ["a", "b"]
        assert not report.success
        assert report.failed_outcome.stage == "b"
        later.assert_not_called()

    def test_unmet_precondition(self):
        probe = MagicMock()
        plan = self._plan(_stage(probe, name="b", precondition=("a",)))
        runner, _ = _runner()
        report = runner.run_plan(plan)
        outcome = report.outcomes[0]
        assert outcome.reason == FailureReason.PRECONDITION_FAILED
        probe.assert_not_called()

    def test_execute_subset(self):
        first_action, second_action = MagicMock(), MagicMock()
        plan = self._plan(
            _stage(_script(_res(ResourceState.READY)), first_action, name="a"),
            _stage(_script(_res(ResourceState.NOT_FOUND), _res(ResourceState.READY)),
                   second_action, name="b", precondition=("a",)),
        )
        runner, _ = _runner()
        report = runner.run_plan(plan, execute={"b"})
        assert report.success
        assert report.outcomes[0].verify_only
        assert not report.outcomes[1].verify_only
        second_action.assert_called_once()

    def test_report_carries_context(self):
        ctx = _ctx()

        def on_ready(c, _res_):
            c.bind(vpcId="vpc-1", subnetId="")
            c.endpoint = "http://lb.example"
            c.warn("low cpu")

        plan = self._plan(_stage(_script(_res(ResourceState.READY)), on_ready=on_ready, name="a"))
        runner, _ = _runner(ctx)
        report = runner.run_plan(plan)
        assert report.identifiers == {"vpcId": "vpc-1"}
        assert report.endpoint == "http://lb.example"
        assert report.notices == ["low cpu"]
        assert report.to_dict()["stages"][0]["state"] == "Ready"


# ── TestWorkingDirectoryFiles ────────────────────────────────────────────


class TestWorkingDirectoryFiles:
    """Broken or missing operator files end the stage in Failed, never a traceback."""

    @pytest.fixture
    def file_ctx(self, tmp_path):
        for path in TEMPLATES_DIR.iterdir():
            if path.name != "deployment.yaml":
                shutil.copy(path, tmp_path / path.name)
        target = DeploymentTarget(cluster_name="demo-cluster")
        ctx = _ctx(target)
        ctx.templater = Templater(target, tmp_path)
        ctx.workdir = tmp_path
        ctx.account_id = "123456789012"
        return ctx

    def _run(self, ctx, name):
        stage = dataclasses.replace(
            build_plan(ctx.target).stage(name), probe=_script(_res(ResourceState.NOT_FOUND)),
        )
        runner, _ = _runner(ctx)
        return runner.run_stage(stage)

    def test_malformed_policy_fails_controllers(self, file_ctx):
        (file_ctx.workdir / "iam-policy.json").write_text("{not json")
        outcome = self._run(file_ctx, "controllers")
        assert outcome.state == StageState.FAILED
        assert outcome.reason == FailureReason.INVALID_TEMPLATE
        assert outcome.error.stage == "controllers"
        assert outcome.error.resource.endswith("iam-policy.json")
        assert "Fix the syntax" in outcome.error.remediation

    def test_missing_policy_fails_controllers(self, file_ctx):
        (file_ctx.workdir / "iam-policy.json").unlink()
        outcome = self._run(file_ctx, "controllers")
        assert outcome.state == StageState.FAILED
        assert outcome.reason == FailureReason.MISSING_TEMPLATE_FILES
        assert outcome.error.missing == ["iam-policy.json"]

    def test_malformed_template_fails_workload(self, file_ctx):
        (file_ctx.workdir / "fsx-storage-class.yaml").write_text("a: [unclosed\n")
        file_ctx.bind(
            subnetId="subnet-a", fsxSecurityGroupId="sg-fsx",
            fileSystemId="fs-1", fileSystemDnsName="fs-1.fsx", mountName="abcd",
        )
        outcome = self._run(file_ctx, "workload")
        assert outcome.state == StageState.FAILED
        assert outcome.reason == FailureReason.INVALID_TEMPLATE
        assert outcome.error.resource.endswith("fsx-storage-class.yaml")
        file_ctx.kubectl.apply.assert_not_called()


# ── TestFullDeployment ───────────────────────────────────────────────────


class FakeWorld:
    """Each stage's resource appears PENDING once created, then READY after two polls."""

    def __init__(self) -> None:
        self.state = {name: ResourceState.NOT_FOUND for name in STAGE_ORDER}
        self.polls = {name: 0 for name in STAGE_ORDER}
        self.created = []

    def probe(self, name):
        def _probe(_ctx):
            if self.state[name] == ResourceState.PENDING:
                self.polls[name] += 1
                if self.polls[name] >= 2:
                    self.state[name] = ResourceState.READY
            return ManagedResource(kind=ResourceKind.CLUSTER, name=name, current_state=self.state[name])
        return _probe

    def action(self, name):
        def _action(_ctx):
            self.created.append(name)
            self.state[name] = ResourceState.PENDING
        return _action


def _fake_plan(world: FakeWorld, target: DeploymentTarget) -> DeploymentPlan:
    plan = build_plan(target)
    return DeploymentPlan(target=target, stages=tuple(
        dataclasses.replace(s, probe=world.probe(s.name), action=world.action(s.name), on_ready=None)
        for s in plan.stages
    ))


class TestFullDeployment:
    def test_fresh_then_rerun(self):
        target = DeploymentTarget(cluster_name="demo-cluster")
        world = FakeWorld()
        plan = _fake_plan(world, target)

        runner, _ = _runner(_ctx(target))
        first = runner.run_plan(plan)
        assert first.success
        assert world.created == list(STAGE_ORDER)
        assert first.creation_calls == 6
        assert all(o.transitions == [NS, C, P, R] for o in first.outcomes)

        runner, _ = _runner(_ctx(target))
        second = runner.run_plan(plan)
        assert second.success
        assert second.creation_calls == 0
        assert all(o.skipped for o in second.outcomes)
        assert world.created == list(STAGE_ORDER)

    def test_stage_order_invariant(self):
        target = DeploymentTarget(cluster_name="demo-cluster")
        world = FakeWorld()
        world.state["storage"] = ResourceState.FAILED
        runner, _ = _runner(_ctx(target))
        report = runner.run_plan(_fake_plan(world, target))
        assert [o.stage for o in report.outcomes] == ["cluster", "nodegroup", "storage"]
        assert world.created == ["cluster", "nodegroup"]

    @pytest.mark.parametrize("phase_stages,verified", [
        ({"storage"}, ["cluster", "nodegroup"]),
    ])
    def test_later_phase_verifies_earlier(self, phase_stages, verified):
        target = DeploymentTarget(cluster_name="demo-cluster")
        world = FakeWorld()
        world.state.update(cluster=ResourceState.READY, nodegroup=ResourceState.READY)
        plan = _fake_plan(world, target).through("storage")
        runner, _ = _runner(_ctx(target))
        report = runner.run_plan(plan, execute=phase_stages)
        assert report.success
        assert [o.stage for o in report.outcomes if o.verify_only] == verified
        assert world.created == ["storage"]
