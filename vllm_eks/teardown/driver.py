"""Teardown Driver: best-effort reverse-order deletion.

Order: workload → ingress / load balancer → claim, volume, storage class →
filesystem → node group → cluster.  Every deletion tolerates "already
gone".  A failed deletion is recorded and the sweep carries on; nothing is
rolled back.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from vllm_eks.aws.errors import error_code, is_not_found
from vllm_eks.aws.network import (
    delete_security_group,
    find_nodegroup_security_group,
    find_security_group,
    revoke_ingress,
)
from vllm_eks.config.models import DeploymentTarget
from vllm_eks.errors import PollTimeout, ProvisionError
from vllm_eks.probe.models import ResourceKind, ResourceState
from vllm_eks.probe.prober import Prober
from vllm_eks.tools.eksctl import Eksctl
from vllm_eks.tools.kubectl import Kubectl
from vllm_eks.tools.runner import CommandResult

logger = logging.getLogger(__name__)

#: Seconds to wait for a load balancer or filesystem to disappear.
DEFAULT_WAIT_TIMEOUT: float = 900.0
DEFAULT_POLL_INTERVAL: float = 15.0

#: Attempts at deleting a security group still referenced by a dying resource.
SG_DELETE_ATTEMPTS: int = 10


class DeletionStatus(str, Enum):
    DELETED = "deleted"
    ABSENT = "absent"
    FAILED = "failed"


@dataclass
class DeletionResult:
    step: str
    resource: str
    status: DeletionStatus
    error: str = ""


@dataclass
class TeardownReport:
    """Aggregated outcome of every attempted deletion."""

    target: str
    region: str
    results: List[DeletionResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failures

    @property
    def failures(self) -> List[DeletionResult]:
        return [r for r in self.results if r.status == DeletionStatus.FAILED]

    @property
    def attempted(self) -> List[str]:
        return [r.resource for r in self.results]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "region": self.region,
            "success": self.success,
            "results": [
                {"step": r.step, "resource": r.resource, "status": r.status.value, "error": r.error}
                for r in self.results
            ],
        }


def _kubectl_deleted(result: CommandResult) -> bool:
    """Interpret ``kubectl delete --ignore-not-found``: True deleted, False absent."""
    result.raise_for_status()
    return "deleted" in result.stdout.lower()


class TeardownDriver:
    """Deletes everything a deployment created, newest first.

    Args:
        target: Deployment to tear down.
        prober: Used to discover what still exists.
        kubectl: Orchestrator deletions.
        eksctl: Node group and cluster deletions.
        clock: Monotonic seconds source for bounded waits.
        sleep: Sleep function for bounded waits.
        wait_timeout: Upper bound on each "wait until gone" loop.
    """

    def __init__(
        self,
        target: DeploymentTarget,
        prober: Prober,
        *,
        kubectl: Kubectl,
        eksctl: Eksctl,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        wait_timeout: float = DEFAULT_WAIT_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.target = target
        self.prober = prober
        self.kubectl = kubectl
        self.eksctl = eksctl
        self.clock = clock
        self.sleep = sleep
        self.wait_timeout = wait_timeout
        self.poll_interval = poll_interval
        self._report: Optional[TeardownReport] = None
        self._cluster_reachable = False
        self._kube_error = ""

    # -- plumbing -----------------------------------------------------------

    def _attempt(self, step: str, resource: str, fn: Callable[[], bool]) -> DeletionResult:
        try:
            status = DeletionStatus.DELETED if fn() else DeletionStatus.ABSENT
            result = DeletionResult(step, resource, status)
        except (ProvisionError, ClientError, BotoCoreError) as exc:
            message = exc.message if isinstance(exc, ProvisionError) else str(exc)
            logger.error("Failed to delete %s: %s", resource, message)
            result = DeletionResult(step, resource, DeletionStatus.FAILED, message)
        logger.info("%s: %s", resource, result.status.value)
        self._report.results.append(result)
        return result

    def _skip(self, step: str, resource: str) -> None:
        self._report.results.append(DeletionResult(step, resource, DeletionStatus.ABSENT))

    def _wait_until(self, what: str, gone: Callable[[], bool]) -> None:
        started = self.clock()
        while not gone():
            elapsed = self.clock() - started
            if elapsed >= self.wait_timeout:
                raise PollTimeout(
                    f"{what} still present after {int(elapsed)}s", resource=what, elapsed=elapsed,
                )
            self.sleep(self.poll_interval)

    def _delete_group(self, group_name: str) -> bool:
        ec2 = self.prober.client("ec2")
        group_id = find_security_group(ec2, group_name)
        if not group_id:
            return False
        for attempt in range(1, SG_DELETE_ATTEMPTS + 1):
            try:
                return delete_security_group(ec2, group_id)
            except ClientError as exc:
                if error_code(exc) != "DependencyViolation" or attempt == SG_DELETE_ATTEMPTS:
                    raise
                logger.info(
                    "Security group %s still in use (%d/%d); retrying",
                    group_name, attempt, SG_DELETE_ATTEMPTS,
                )
                self.sleep(self.poll_interval)
        return False

    def _kube_delete(self, step: str, kind: str, name: str, namespace: Optional[str] = None) -> None:
        label = f"{kind}/{name}"
        if not self._cluster_reachable:
            if self._kube_error:
                self._report.results.append(
                    DeletionResult(step, label, DeletionStatus.FAILED, self._kube_error),
                )
            else:
                self._skip(step, label)
            return
        self._attempt(step, label, lambda: _kubectl_deleted(
            self.kubectl.delete(kind, name, namespace=namespace, timeout=300),
        ))

    # -- steps --------------------------------------------------------------

    def _connect(self) -> None:
        cluster = self.prober.describe(ResourceKind.CLUSTER, self.target.cluster_name)
        if cluster.current_state != ResourceState.READY:
            logger.info("Cluster %s is %s; skipping orchestrator deletions",
                        self.target.cluster_name, cluster.current_state.value)
            return
        result = self.eksctl.write_kubeconfig(self.target.cluster_name)
        if result.success:
            self._cluster_reachable = True
        else:
            self._kube_error = f"cluster unreachable: {result.stderr or result.stdout or 'kubeconfig not written'}"
            logger.warning("Could not write kubeconfig: %s", self._kube_error)

    def _delete_workload(self) -> None:
        ns = self.target.namespace
        self._kube_delete("workload", "deployment", self.target.workload_name, ns)
        self._kube_delete("workload", "service", self.target.service_name, ns)

    def _delete_ingress(self) -> None:
        t = self.target
        dns_name = ""
        if self._cluster_reachable:
            try:
                ingress = self.prober.describe(ResourceKind.INGRESS, t.ingress_name)
                dns_name = ingress.identifiers.get("loadBalancerDnsName", "")
            except ProvisionError as exc:
                logger.warning("Could not read ingress %s: %s", t.ingress_name, exc.message)
        self._kube_delete("ingress", "ingress", t.ingress_name, t.namespace)

        if dns_name:
            self._attempt("ingress", f"load-balancer/{dns_name}", lambda: self._await_lb_gone(dns_name))

        def revoke_node_rule() -> bool:
            ec2 = self.prober.client("ec2")
            alb_sg = find_security_group(ec2, t.alb_security_group_name)
            node_sg = find_nodegroup_security_group(ec2, t.nodegroup_name)
            if not alb_sg or not node_sg:
                return False
            return revoke_ingress(ec2, node_sg, port=t.container_port, source_group_id=alb_sg)

        self._attempt("ingress", f"sg-rule/{t.container_port}-from-alb", revoke_node_rule)
        self._attempt(
            "ingress", f"security-group/{t.alb_security_group_name}",
            lambda: self._delete_group(t.alb_security_group_name),
        )

    def _await_lb_gone(self, dns_name: str) -> bool:
        self._wait_until(
            f"load-balancer/{dns_name}",
            lambda: not self.prober.describe(ResourceKind.LOAD_BALANCER, dns_name).exists,
        )
        return True

    def _delete_storage_objects(self) -> None:
        t = self.target
        self._kube_delete("storage", "pvc", t.claim_name, t.namespace)
        self._kube_delete("storage", "pv", t.volume_name)
        self._kube_delete("storage", "storageclass", t.storage_class_name)

    def _delete_filesystem(self) -> None:
        t = self.target

        def delete_fs() -> bool:
            fs = self.prober.describe(ResourceKind.FILESYSTEM, t.filesystem_name)
            if not fs.exists:
                return False
            fs_id = fs.identifiers["fileSystemId"]
            fsx = self.prober.client("fsx")
            try:
                fsx.delete_file_system(FileSystemId=fs_id)
            except ClientError as exc:
                if is_not_found(exc):
                    return False
                raise
            logger.info("Deleting FSx filesystem %s", fs_id)
            self._wait_until(f"filesystem/{fs_id}", lambda: self._filesystem_gone(fs_id))
            return True

        self._attempt("filesystem", f"filesystem/{t.filesystem_name}", delete_fs)
        self._attempt(
            "filesystem", f"security-group/{t.fsx_security_group_name}",
            lambda: self._delete_group(t.fsx_security_group_name),
        )

    def _filesystem_gone(self, fs_id: str) -> bool:
        fsx = self.prober.client("fsx")
        try:
            fsx.describe_file_systems(FileSystemIds=[fs_id])
        except ClientError as exc:
            if is_not_found(exc):
                return True
            raise
        return False

    def _delete_nodegroup(self) -> None:
        t = self.target

        def delete() -> bool:
            if not self.prober.describe(ResourceKind.NODE_GROUP, t.nodegroup_name).exists:
                return False
            result = self.eksctl.delete_nodegroup(t.cluster_name, t.nodegroup_name)
            if result.not_found:
                return False
            result.raise_for_status(resource=f"nodegroup/{t.nodegroup_name}")
            return True

        self._attempt("nodegroup", f"nodegroup/{t.nodegroup_name}", delete)

    def _delete_cluster(self) -> None:
        t = self.target

        def delete() -> bool:
            if not self.prober.describe(ResourceKind.CLUSTER, t.cluster_name).exists:
                return False
            result = self.eksctl.delete_cluster(t.cluster_name)
            if result.not_found:
                return False
            result.raise_for_status(resource=f"cluster/{t.cluster_name}")
            return True

        self._attempt("cluster", f"cluster/{t.cluster_name}", delete)

    # -- public API ---------------------------------------------------------

    def teardown(self) -> TeardownReport:
        """Attempt every deletion in reverse dependency order."""
        self._report = TeardownReport(target=self.target.cluster_name, region=self.target.region)
        try:
            self._connect()
        except (ProvisionError, ClientError, BotoCoreError) as exc:
            self._kube_error = f"cluster state unknown: {exc}"
            logger.warning("Could not probe cluster %s: %s", self.target.cluster_name, exc)

        for step in (
            self._delete_workload,
            self._delete_ingress,
            self._delete_storage_objects,
            self._delete_filesystem,
            self._delete_nodegroup,
            self._delete_cluster,
        ):
            step()
        report, self._report = self._report, None
        return report
