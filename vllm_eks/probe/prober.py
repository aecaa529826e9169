"""Resource Prober: read-only "does X exist, and in what state?" queries.

Every query is keyed by a stable selector (a name or ``Name`` tag) rather
than an opaque ID returned by an earlier run, so probing works across
process restarts.  Absence is a normal outcome (``ResourceState.NOT_FOUND``);
transient query failures raise :class:`ProbeError` so callers can retry.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from vllm_eks.aws.errors import is_not_found, is_transient
from vllm_eks.config.models import DeploymentTarget
from vllm_eks.errors import ProbeError
from vllm_eks.probe.models import ManagedResource, ResourceKind, ResourceState
from vllm_eks.tools.helm import Helm
from vllm_eks.tools.kubectl import Kubectl

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Status maps
# ---------------------------------------------------------------------------

CLUSTER_STATUS: Dict[str, ResourceState] = {
    "PENDING": ResourceState.PENDING,
    "CREATING": ResourceState.PENDING,
    "ACTIVE": ResourceState.READY,
    "UPDATING": ResourceState.READY,
    "FAILED": ResourceState.FAILED,
    "DELETING": ResourceState.FAILED,
}

NODEGROUP_STATUS: Dict[str, ResourceState] = {
    "CREATING": ResourceState.PENDING,
    "ACTIVE": ResourceState.READY,
    "UPDATING": ResourceState.READY,
    "CREATE_FAILED": ResourceState.FAILED,
    "DEGRADED": ResourceState.FAILED,
    "DELETE_FAILED": ResourceState.FAILED,
    "DELETING": ResourceState.FAILED,
}

FILESYSTEM_STATUS: Dict[str, ResourceState] = {
    "CREATING": ResourceState.PENDING,
    "AVAILABLE": ResourceState.READY,
    "UPDATING": ResourceState.READY,
    "FAILED": ResourceState.FAILED,
    "MISCONFIGURED": ResourceState.FAILED,
    "MISCONFIGURED_UNAVAILABLE": ResourceState.FAILED,
}

LOAD_BALANCER_STATUS: Dict[str, ResourceState] = {
    "provisioning": ResourceState.PENDING,
    "active": ResourceState.READY,
    "active_impaired": ResourceState.READY,
    "failed": ResourceState.FAILED,
}

HELM_RELEASE_STATUS: Dict[str, ResourceState] = {
    "deployed": ResourceState.READY,
    "failed": ResourceState.FAILED,
    "pending-install": ResourceState.PENDING,
    "pending-upgrade": ResourceState.PENDING,
    "pending-rollback": ResourceState.PENDING,
    "uninstalling": ResourceState.PENDING,
    "superseded": ResourceState.PENDING,
}

CLAIM_PHASE: Dict[str, ResourceState] = {
    "Pending": ResourceState.PENDING,
    "Bound": ResourceState.READY,
    "Lost": ResourceState.FAILED,
}

#: Controller releases (name → namespace) that make up the controllers stage.
CONTROLLER_RELEASES: Dict[str, str] = {
    "aws-fsx-csi-driver": "kube-system",
    "aws-load-balancer-controller": "kube-system",
    "lws": "lws-system",
}

LB_CONTROLLER_DEPLOYMENT = "aws-load-balancer-controller"
LB_WEBHOOK_SERVICE = "aws-load-balancer-webhook-service"


def _tag(tags: List[Dict[str, str]], key: str) -> str:
    for tag in tags or []:
        if tag.get("Key") == key:
            return tag.get("Value", "")
    return ""


def deployment_state(obj: Dict[str, Any]) -> ResourceState:
    """Map a Deployment object to a resource state."""
    spec = obj.get("spec", {}) or {}
    status = obj.get("status", {}) or {}
    wanted = int(spec.get("replicas", 1) or 0)
    available = int(status.get("availableReplicas", 0) or 0)
    for cond in status.get("conditions", []) or []:
        if (
            cond.get("type") == "Progressing"
            and cond.get("status") == "False"
            and cond.get("reason") == "ProgressDeadlineExceeded"
        ):
            return ResourceState.FAILED
    if wanted > 0 and available >= wanted:
        return ResourceState.READY
    return ResourceState.PENDING


class Prober:
    """Read-only discovery for every managed resource kind.

    Args:
        target: The deployment being probed; supplies cluster name, region
            and namespace so selectors can stay plain names.
        client_factory: ``service -> boto3 client`` (usually ``AWSContext.client``).
        kubectl: Adapter used for orchestrator-side objects.
        helm: Adapter used for controller releases.
    """

    def __init__(
        self,
        target: DeploymentTarget,
        client_factory: Callable[[str], Any],
        *,
        kubectl: Optional[Kubectl] = None,
        helm: Optional[Helm] = None,
    ) -> None:
        self.target = target
        self._client_factory = client_factory
        self._clients: Dict[str, Any] = {}
        self.kubectl = kubectl or Kubectl(profile=target.profile, region=target.region)
        self.helm = helm or Helm(profile=target.profile, region=target.region)
        self._dispatch: Dict[ResourceKind, Callable[[str], ManagedResource]] = {
            ResourceKind.CLUSTER: self.describe_cluster,
            ResourceKind.NODE_GROUP: self.describe_nodegroup,
            ResourceKind.FILESYSTEM: self.describe_filesystem,
            ResourceKind.SECURITY_GROUP: self.describe_security_group,
            ResourceKind.CONTROLLERS: self.describe_controllers,
            ResourceKind.WORKLOAD: self.describe_workload,
            ResourceKind.VOLUME_CLAIM: self.describe_volume_claim,
            ResourceKind.INGRESS: self.describe_ingress,
            ResourceKind.LOAD_BALANCER: self.describe_load_balancer,
        }

    # -- plumbing ---------------------------------------------------------

    def client(self, service: str) -> Any:
        if service not in self._clients:
            self._clients[service] = self._client_factory(service)
        return self._clients[service]

    def _resource(self, kind: ResourceKind, name: str, **kwargs: Any) -> ManagedResource:
        return ManagedResource(kind=kind, name=name, region=self.target.region, **kwargs)

    def _call(self, kind: ResourceKind, name: str, fn: Callable[[], Any]) -> Any:
        """Run an AWS describe call; returns None on not-found.

        Transient failures become :class:`ProbeError`; anything else
        propagates untouched.
        """
        try:
            return fn()
        except (ClientError, BotoCoreError) as exc:
            if is_not_found(exc):
                return None
            if is_transient(exc):
                raise ProbeError(
                    f"Transient error probing {kind.value}/{name}: {exc}",
                    resource=f"{kind.value}/{name}",
                    cause=exc,
                ) from exc
            raise

    # -- public entry point ----------------------------------------------

    def describe(self, kind: ResourceKind, selector: str) -> ManagedResource:
        """Return the current state of the *kind* resource named *selector*."""
        resource = self._dispatch[kind](selector)
        logger.debug(
            "Probed %s: %s (%s)", resource.label, resource.current_state.value, resource.status,
        )
        return resource

    # -- cloud resources --------------------------------------------------

    def describe_cluster(self, name: str) -> ManagedResource:
        eks = self.client("eks")
        resp = self._call(ResourceKind.CLUSTER, name, lambda: eks.describe_cluster(name=name))
        if resp is None:
            return self._resource(ResourceKind.CLUSTER, name)
        cluster = resp.get("cluster", {})
        status = cluster.get("status", "")
        vpc_cfg = cluster.get("resourcesVpcConfig", {}) or {}
        identifiers = {
            "clusterArn": cluster.get("arn", ""),
            "vpcId": vpc_cfg.get("vpcId", ""),
            "clusterSecurityGroupId": vpc_cfg.get("clusterSecurityGroupId", ""),
            "clusterSubnetIds": ",".join(vpc_cfg.get("subnetIds", []) or []),
        }
        return self._resource(
            ResourceKind.CLUSTER, name,
            current_state=CLUSTER_STATUS.get(status, ResourceState.PENDING),
            status=status,
            identifiers={k: v for k, v in identifiers.items() if v},
        )

    def describe_nodegroup(self, name: str) -> ManagedResource:
        eks = self.client("eks")
        cluster = self.target.cluster_name
        resp = self._call(
            ResourceKind.NODE_GROUP, name,
            lambda: eks.describe_nodegroup(clusterName=cluster, nodegroupName=name),
        )
        if resp is None:
            return self._resource(ResourceKind.NODE_GROUP, name)
        nodegroup = resp.get("nodegroup", {})
        status = nodegroup.get("status", "")
        issues = (nodegroup.get("health", {}) or {}).get("issues", []) or []
        return self._resource(
            ResourceKind.NODE_GROUP, name,
            current_state=NODEGROUP_STATUS.get(status, ResourceState.PENDING),
            status=status,
            identifiers={
                k: v for k, v in {
                    "nodegroupArn": nodegroup.get("nodegroupArn", ""),
                    "nodeRoleArn": nodegroup.get("nodeRole", ""),
                }.items() if v
            },
            details={"issues": [i.get("message", "") for i in issues]},
        )

    def describe_filesystem(self, name: str) -> ManagedResource:
        """Find the FSx filesystem whose ``Name`` tag equals *name*.

        Filesystems already being deleted are ignored.
        """
        fsx = self.client("fsx")

        def _scan() -> Optional[Dict[str, Any]]:
            paginator = fsx.get_paginator("describe_file_systems")
            for page in paginator.paginate():
                for fs in page.get("FileSystems", []):
                    if fs.get("Lifecycle") == "DELETING":
                        continue
                    if _tag(fs.get("Tags", []), "Name") == name:
                        return fs
            return None

        fs = self._call(ResourceKind.FILESYSTEM, name, _scan)
        if fs is None:
            return self._resource(ResourceKind.FILESYSTEM, name)
        status = fs.get("Lifecycle", "")
        lustre = fs.get("LustreConfiguration", {}) or {}
        identifiers = {
            "fileSystemId": fs.get("FileSystemId", ""),
            "fileSystemDnsName": fs.get("DNSName", ""),
            "mountName": lustre.get("MountName", ""),
        }
        return self._resource(
            ResourceKind.FILESYSTEM, name,
            current_state=FILESYSTEM_STATUS.get(status, ResourceState.PENDING),
            status=status,
            identifiers={k: v for k, v in identifiers.items() if v},
            details={"failure": (fs.get("FailureDetails", {}) or {}).get("Message", "")},
        )

    def describe_security_group(self, name: str) -> ManagedResource:
        ec2 = self.client("ec2")
        resp = self._call(
            ResourceKind.SECURITY_GROUP, name,
            lambda: ec2.describe_security_groups(
                Filters=[{"Name": "group-name", "Values": [name]}],
            ),
        )
        groups = (resp or {}).get("SecurityGroups", [])
        if not groups:
            return self._resource(ResourceKind.SECURITY_GROUP, name)
        group = groups[0]
        return self._resource(
            ResourceKind.SECURITY_GROUP, name,
            current_state=ResourceState.READY,
            status="exists",
            identifiers={"securityGroupId": group["GroupId"], "vpcId": group.get("VpcId", "")},
        )

    def describe_load_balancer(self, dns_name: str) -> ManagedResource:
        """Find the ELBv2 load balancer serving *dns_name*."""
        elbv2 = self.client("elbv2")

        def _scan() -> Optional[Dict[str, Any]]:
            paginator = elbv2.get_paginator("describe_load_balancers")
            for page in paginator.paginate():
                for lb in page.get("LoadBalancers", []):
                    if lb.get("DNSName", "").lower() == dns_name.lower():
                        return lb
            return None

        lb = self._call(ResourceKind.LOAD_BALANCER, dns_name, _scan)
        if lb is None:
            return self._resource(ResourceKind.LOAD_BALANCER, dns_name)
        state = (lb.get("State", {}) or {})
        code = state.get("Code", "")
        return self._resource(
            ResourceKind.LOAD_BALANCER, dns_name,
            current_state=LOAD_BALANCER_STATUS.get(code, ResourceState.PENDING),
            status=code,
            identifiers={
                "loadBalancerArn": lb.get("LoadBalancerArn", ""),
                "loadBalancerDnsName": lb.get("DNSName", ""),
            },
            details={"reason": state.get("Reason", "")},
        )

    # -- orchestrator resources ------------------------------------------

    def describe_controllers(self, name: str) -> ManagedResource:
        """State of the controller set; *name* is the load-balancer controller deployment."""
        releases = {
            (r.get("name"), r.get("namespace")): str(r.get("status", "")).lower()
            for r in self.helm.list_releases()
        }
        statuses = {
            release: releases.get((release, ns), "")
            for release, ns in CONTROLLER_RELEASES.items()
        }
        details: Dict[str, Any] = {"releases": statuses}
        present = [s for s in statuses.values() if s]
        if not present:
            return self._resource(ResourceKind.CONTROLLERS, name, details=details)

        states = [HELM_RELEASE_STATUS.get(s, ResourceState.PENDING) for s in present]
        if ResourceState.FAILED in states:
            return self._resource(
                ResourceKind.CONTROLLERS, name,
                current_state=ResourceState.FAILED, status="release-failed", details=details,
            )
        if len(present) < len(CONTROLLER_RELEASES):
            return self._resource(
                ResourceKind.CONTROLLERS, name, status="partial", details=details,
            )
        if ResourceState.PENDING in states:
            return self._resource(
                ResourceKind.CONTROLLERS, name,
                current_state=ResourceState.PENDING, status="release-pending", details=details,
            )

        deployment = self.kubectl.get("deployment", name, namespace="kube-system")
        if deployment is None or deployment_state(deployment) != ResourceState.READY:
            return self._resource(
                ResourceKind.CONTROLLERS, name,
                current_state=ResourceState.PENDING, status="controller-starting", details=details,
            )

        endpoints = self.kubectl.get("endpoints", LB_WEBHOOK_SERVICE, namespace="kube-system")
        addresses = [
            addr.get("ip", "")
            for subset in (endpoints or {}).get("subsets", []) or []
            for addr in subset.get("addresses", []) or []
        ]
        details["webhook_endpoints"] = addresses
        if not addresses:
            return self._resource(
                ResourceKind.CONTROLLERS, name,
                current_state=ResourceState.PENDING, status="webhook-pending", details=details,
            )
        return self._resource(
            ResourceKind.CONTROLLERS, name,
            current_state=ResourceState.READY, status="deployed", details=details,
        )

    def describe_workload(self, name: str) -> ManagedResource:
        obj = self.kubectl.get("deployment", name, namespace=self.target.namespace)
        if obj is None:
            return self._resource(ResourceKind.WORKLOAD, name)
        status = obj.get("status", {}) or {}
        state = deployment_state(obj)
        return self._resource(
            ResourceKind.WORKLOAD, name,
            current_state=state,
            status=f"{int(status.get('availableReplicas', 0) or 0)}/"
                   f"{int((obj.get('spec', {}) or {}).get('replicas', 1) or 0)} available",
            details={"conditions": status.get("conditions", [])},
        )

    def describe_volume_claim(self, name: str) -> ManagedResource:
        obj = self.kubectl.get("pvc", name, namespace=self.target.namespace)
        if obj is None:
            return self._resource(ResourceKind.VOLUME_CLAIM, name)
        phase = (obj.get("status", {}) or {}).get("phase", "")
        return self._resource(
            ResourceKind.VOLUME_CLAIM, name,
            current_state=CLAIM_PHASE.get(phase, ResourceState.PENDING),
            status=phase,
            identifiers={"volumeName": (obj.get("spec", {}) or {}).get("volumeName", "")},
        )

    def describe_ingress(self, name: str) -> ManagedResource:
        obj = self.kubectl.get("ingress", name, namespace=self.target.namespace)
        if obj is None:
            return self._resource(ResourceKind.INGRESS, name)
        lb_ingress = (
            ((obj.get("status", {}) or {}).get("loadBalancer", {}) or {}).get("ingress", []) or []
        )
        hostname = lb_ingress[0].get("hostname", "") if lb_ingress else ""
        if not hostname:
            return self._resource(
                ResourceKind.INGRESS, name,
                current_state=ResourceState.PENDING, status="awaiting-address",
            )
        return self._resource(
            ResourceKind.INGRESS, name,
            current_state=ResourceState.READY,
            status="addressed",
            identifiers={"loadBalancerDnsName": hostname},
        )
