"""Tests for vllm_eks.teardown - best-effort reverse-order deletion."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from vllm_eks.config.models import DeploymentTarget
from vllm_eks.probe.models import ManagedResource, ResourceKind, ResourceState
from vllm_eks.teardown import DeletionStatus, TeardownDriver
from vllm_eks.teardown import driver as driver_mod
from vllm_eks.tools.runner import CommandResult


def _ok(stdout: str = "") -> CommandResult:
    return CommandResult(command="cmd", returncode=0, stdout=stdout)


def _client_error(code: str, op: str = "Op") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, op)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class World:
    """Prober stand-in: resources exist until deleted."""

    def __init__(self, *, cluster=ResourceState.READY, present=True) -> None:
        self.cluster = cluster
        self.present = present
        self.clients = {}
        self.lb_checks = 0

    def client(self, service):
        return self.clients.setdefault(service, MagicMock())

    def describe(self, kind, selector):
        state = ResourceState.READY if self.present else ResourceState.NOT_FOUND
        identifiers = {}
        if kind == ResourceKind.CLUSTER:
            state = self.cluster
        elif kind == ResourceKind.INGRESS and self.present:
            identifiers = {"loadBalancerDnsName": "lb.example"}
        elif kind == ResourceKind.FILESYSTEM and self.present:
            identifiers = {"fileSystemId": "fs-1"}
        elif kind == ResourceKind.LOAD_BALANCER:
            self.lb_checks += 1
            state = ResourceState.READY if self.lb_checks < 2 else ResourceState.NOT_FOUND
        return ManagedResource(kind=kind, name=selector, current_state=state, identifiers=identifiers)


@pytest.fixture
def network(monkeypatch):
    fns = {
        "find_security_group": MagicMock(return_value="sg-1"),
        "find_nodegroup_security_group": MagicMock(return_value="sg-node"),
        "revoke_ingress": MagicMock(return_value=True),
        "delete_security_group": MagicMock(return_value=True),
    }
    for name, fn in fns.items():
        monkeypatch.setattr(driver_mod, name, fn)
    return fns


def _driver(world, kubectl=None, eksctl=None):
    clock = FakeClock()
    kubectl = kubectl or MagicMock()
    if not isinstance(kubectl.delete.return_value, CommandResult):
        kubectl.delete.return_value = _ok("deleted")
    eksctl = eksctl or MagicMock()
    for name in ("write_kubeconfig", "delete_nodegroup", "delete_cluster"):
        if not isinstance(getattr(eksctl, name).return_value, CommandResult):
            getattr(eksctl, name).return_value = _ok()
    fsx = world.client("fsx")
    fsx.describe_file_systems.side_effect = _client_error("FileSystemNotFound")
    return TeardownDriver(
        DeploymentTarget(cluster_name="demo-cluster"), world,
        kubectl=kubectl, eksctl=eksctl, clock=clock, sleep=clock.sleep,
        wait_timeout=100, poll_interval=10,
    )


# ── TestTeardown ─────────────────────────────────────────────────────────


class TestTeardown:
    def test_full_teardown_order(self, network):
        world = World()
        d = _driver(world)
        report = d.teardown()
        assert report.success
        assert report.attempted == [
            "deployment/vllm-qwen-25b",
            "service/vllm-qwen-25b-service",
            "ingress/vllm-qwen-25b-ingress",
            "load-balancer/lb.example",
            "sg-rule/8000-from-alb",
            "security-group/vllm-qwen-alb-sg",
            "pvc/fsx-lustre-pvc",
            "pv/fsx-lustre-pv",
            "storageclass/fsx-sc",
            "filesystem/vllm-qwen-model-storage",
            "security-group/fsx-lustre-qwen-sg",
            "nodegroup/vllm-g5-nodes-west2",
            "cluster/demo-cluster",
        ]
        world.client("fsx").delete_file_system.assert_called_once_with(FileSystemId="fs-1")
        d.eksctl.delete_nodegroup.assert_called_once_with("demo-cluster", "vllm-g5-nodes-west2")
        d.eksctl.delete_cluster.assert_called_once_with("demo-cluster")

    def test_nothing_left(self, network):
        network["find_security_group"].return_value = ""
        world = World(cluster=ResourceState.NOT_FOUND, present=False)
        d = _driver(world)
        report = d.teardown()
        assert report.success
        assert all(r.status == DeletionStatus.ABSENT for r in report.results)
        d.kubectl.delete.assert_not_called()
        d.eksctl.delete_cluster.assert_not_called()

    def test_partial_failure_still_attempts_everything(self, network):
        world = World()
        kubectl = MagicMock()
        kubectl.delete.return_value = _ok("deleted")
        d = _driver(world, kubectl=kubectl)
        world.client("fsx").delete_file_system.side_effect = _client_error("BadRequest")
        report = d.teardown()
        assert not report.success
        assert [f.resource for f in report.failures] == ["filesystem/vllm-qwen-model-storage"]
        assert "cluster/demo-cluster" in report.attempted
        d.eksctl.delete_cluster.assert_called_once()
        assert report.to_dict()["success"] is False

    def test_unreachable_cluster_records_kube_failures(self, network):
        world = World()
        eksctl = MagicMock()
        eksctl.write_kubeconfig.return_value = CommandResult(command="eksctl", returncode=1, stderr="denied")
        d = _driver(world, eksctl=eksctl)
        report = d.teardown()
        failed = [f.resource for f in report.failures]
        assert "deployment/vllm-qwen-25b" in failed
        assert "pvc/fsx-lustre-pvc" in failed
        assert "cluster/demo-cluster" not in failed
        d.kubectl.delete.assert_not_called()
        eksctl.delete_cluster.assert_called_once()

    def test_security_group_dependency_retry(self, network):
        network["delete_security_group"].side_effect = [
            _client_error("DependencyViolation"), True, True,
        ]
        report = _driver(World()).teardown()
        assert report.success

    def test_load_balancer_wait_timeout(self, network):
        world = World()
        original = world.describe

        def never_gone(kind, selector):
            if kind == ResourceKind.LOAD_BALANCER:
                return ManagedResource(kind=kind, name=selector, current_state=ResourceState.READY)
            return original(kind, selector)

        world.describe = never_gone
        report = _driver(world).teardown()
        assert [f.resource for f in report.failures] == ["load-balancer/lb.example"]
        assert "still present" in report.failures[0].error

    def test_already_deleted_kube_object(self, network):
        kubectl = MagicMock()
        kubectl.delete.return_value = _ok("")
        report = _driver(World(), kubectl=kubectl).teardown()
        statuses = {r.resource: r.status for r in report.results}
        assert statuses["deployment/vllm-qwen-25b"] == DeletionStatus.ABSENT
