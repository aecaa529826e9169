"""Probe, action and on-ready hooks for the six provisioning stages.

Actions are create-or-no-op.  Provider "already exists" answers surface as
:class:`AlreadyExists` from the top-level creation call, and are swallowed
by the helper that made them for secondary mutations (security group rules,
policies, repos) so a re-run never fails on work a prior run finished.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from botocore.exceptions import ClientError

from vllm_eks.aws.errors import is_already_exists
from vllm_eks.aws.iam import ensure_managed_policy, read_policy_document
from vllm_eks.aws.network import (
    LUSTRE_PORT_RANGE,
    authorize_ingress,
    ensure_security_group,
    find_nodegroup_security_group,
    find_private_subnet,
    find_security_group,
)
from vllm_eks.endpoint import OPEN_CIDR, check_endpoint, detect_public_cidr
from vllm_eks.errors import AlreadyExists, CreationFailed
from vllm_eks.probe.models import ManagedResource, ResourceKind, ResourceState
from vllm_eks.probe.prober import LB_CONTROLLER_DEPLOYMENT
from vllm_eks.render import blueprints as bp
from vllm_eks.stages.models import StageContext
from vllm_eks.tools.resolver import IAM_POLICY_FILE, raise_for_missing_files
from vllm_eks.tools.runner import CommandResult

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FSX_CSI_REPO = ("aws-fsx-csi-driver", "https://kubernetes-sigs.github.io/aws-fsx-csi-driver/")
EKS_CHARTS_REPO = ("eks", "https://aws.github.io/eks-charts")
LB_CONTROLLER_CRDS_URL = (
    "https://raw.githubusercontent.com/aws/eks-charts/master/"
    "stable/aws-load-balancer-controller/crds/crds.yaml"
)
LWS_CHART = "oci://registry.k8s.io/lws/charts/lws"

#: Seconds to block on the load-balancer controller deployment becoming available.
LB_CONTROLLER_WAIT_TIMEOUT = 300

#: Minimum allocatable CPU (cores) the inference server needs on a node.
MIN_NODE_CPU = 2.0

HTTP_PORT = 80


def _raise_for_create(result: CommandResult, resource: str) -> None:
    """Map a creation command result onto the error taxonomy."""
    if result.success:
        return
    if result.already_exists:
        raise AlreadyExists(f"{resource} already exists", resource=resource)
    raise CreationFailed(
        f"'{result.command}' failed (rc={result.returncode}): "
        f"{result.stderr or result.stdout or '(no output)'}",
        resource=resource,
    )


def parse_cpu(quantity: str) -> float:
    """Kubernetes CPU quantity → cores (``"1930m"`` → 1.93)."""
    quantity = str(quantity or "0").strip()
    try:
        if quantity.endswith("m"):
            return float(quantity[:-1]) / 1000.0
        return float(quantity)
    except ValueError:
        return 0.0


def _node_ready(node: Dict[str, Any]) -> bool:
    for cond in (node.get("status", {}) or {}).get("conditions", []) or []:
        if cond.get("type") == "Ready":
            return cond.get("status") == "True"
    return False


# ---------------------------------------------------------------------------
# Stage 1: cluster
# ---------------------------------------------------------------------------


def probe_cluster(ctx: StageContext) -> ManagedResource:
    return ctx.prober.describe(ResourceKind.CLUSTER, ctx.target.cluster_name)


def create_cluster(ctx: StageContext) -> None:
    config = ctx.templater.render("cluster-config", ctx.identifiers)
    logger.info("Creating EKS cluster %s (this takes 15-20 minutes)", ctx.target.cluster_name)
    result = ctx.eksctl.create_cluster(config)
    _raise_for_create(result, f"cluster/{ctx.target.cluster_name}")


def cluster_ready(ctx: StageContext, resource: ManagedResource) -> None:
    """Write kubeconfig and discover the network identifiers later stages need."""
    ctx.eksctl.write_kubeconfig(ctx.target.cluster_name).raise_for_status(
        resource=f"cluster/{ctx.target.cluster_name}",
    )
    ids = resource.identifiers
    ctx.bind(
        vpcId=ids.get(bp.VPC_ID, ""),
        clusterSecurityGroupId=ids.get(bp.CLUSTER_SECURITY_GROUP_ID, ""),
    )
    (vpc_id,) = ctx.require("cluster", bp.VPC_ID)
    cluster_subnets = [s for s in ids.get("clusterSubnetIds", "").split(",") if s]
    subnet = find_private_subnet(ctx.client("ec2"), vpc_id, cluster_subnets)
    if subnet is None:
        raise CreationFailed(
            f"No private subnet found in {vpc_id}",
            resource=f"vpc/{vpc_id}",
            remediation="Check the cluster VPC has private subnets (eksctl creates them by default).",
        )
    ctx.bind(subnetId=subnet.subnet_id, availabilityZone=subnet.availability_zone)
    logger.info("VPC %s, private subnet %s (%s)", vpc_id, subnet.subnet_id, subnet.availability_zone)


# ---------------------------------------------------------------------------
# Stage 2: node group
# ---------------------------------------------------------------------------


def probe_nodegroup(ctx: StageContext) -> ManagedResource:
    """Node group state, held at PENDING until its nodes have joined and are Ready."""
    resource = ctx.prober.describe(ResourceKind.NODE_GROUP, ctx.target.nodegroup_name)
    if not resource.ready or ctx.target.desired_capacity == 0:
        return resource
    nodes = ctx.kubectl.list_items(
        "nodes", selector=f"eks.amazonaws.com/nodegroup={ctx.target.nodegroup_name}",
    )
    ready_nodes = [n for n in nodes if _node_ready(n)]
    resource.details["nodes"] = [n.get("metadata", {}).get("name", "") for n in ready_nodes]
    resource.details["allocatable_cpu"] = {
        n.get("metadata", {}).get("name", ""): (n.get("status", {}) or {}).get("allocatable", {}).get("cpu", "0")
        for n in ready_nodes
    }
    if not ready_nodes:
        resource.current_state = ResourceState.PENDING
        resource.status = f"{resource.status} (waiting for nodes: {len(nodes)} registered, 0 ready)"
    return resource


def create_nodegroup(ctx: StageContext) -> None:
    config = ctx.templater.render("nodegroup-config", ctx.identifiers)
    logger.info("Creating node group %s", ctx.target.nodegroup_name)
    result = ctx.eksctl.create_nodegroup(config)
    _raise_for_create(result, f"nodegroup/{ctx.target.nodegroup_name}")


def nodegroup_ready(ctx: StageContext, resource: ManagedResource) -> None:
    """Label nodes for scheduling, record the node security group, check CPU."""
    target = ctx.target
    for node in resource.details.get("nodes", []):
        ctx.kubectl.label_node(node, "role", target.node_role_label)
        logger.info("Labeled node %s with role=%s", node, target.node_role_label)

    for node, cpu in resource.details.get("allocatable_cpu", {}).items():
        if parse_cpu(cpu) < MIN_NODE_CPU:
            ctx.warn(
                f"Node {node} has less than {MIN_NODE_CPU:g} CPU cores allocatable ({cpu}); "
                "the inference server may not schedule. Consider a larger instance type."
            )

    node_sg = find_nodegroup_security_group(ctx.client("ec2"), target.nodegroup_name)
    if node_sg:
        ctx.bind(nodeSecurityGroupId=node_sg)
    elif target.desired_capacity > 0:
        ctx.warn(f"Could not determine the security group of node group {target.nodegroup_name}")


# ---------------------------------------------------------------------------
# Stage 3: storage
# ---------------------------------------------------------------------------


def probe_filesystem(ctx: StageContext) -> ManagedResource:
    return ctx.prober.describe(ResourceKind.FILESYSTEM, ctx.target.filesystem_name)


def filesystem_request_token(ctx: StageContext) -> str:
    """Idempotency token for ``CreateFileSystem``, stable across runs."""
    return f"{ctx.target.cluster_name}-{ctx.target.filesystem_name}"[:63]


def ensure_fsx_security_group(ctx: StageContext) -> str:
    """Create (or find) the FSx security group and open the Lustre ports."""
    target = ctx.target
    vpc_id, cluster_sg = ctx.require("storage", bp.VPC_ID, bp.CLUSTER_SECURITY_GROUP_ID)
    ec2 = ctx.client("ec2")
    sg_id = ensure_security_group(
        ec2, target.fsx_security_group_name, vpc_id,
        "Security group for FSx Lustre (Qwen)",
        tags={"Name": target.fsx_security_group_name},
    )
    ctx.bind(fsxSecurityGroupId=sg_id)
    low, high = LUSTRE_PORT_RANGE
    authorize_ingress(ec2, sg_id, port_from=low, port_to=high, source_group_id=cluster_sg)
    authorize_ingress(ec2, sg_id, port_from=low, port_to=high, source_group_id=sg_id)
    return sg_id


def create_filesystem(ctx: StageContext) -> None:
    target = ctx.target
    sg_id = ensure_fsx_security_group(ctx)
    (subnet_id,) = ctx.require("storage", bp.SUBNET_ID)
    fsx = ctx.client("fsx")
    try:
        resp = fsx.create_file_system(
            ClientRequestToken=filesystem_request_token(ctx),
            FileSystemType="LUSTRE",
            StorageCapacity=target.storage_capacity_gib,
            SubnetIds=[subnet_id],
            SecurityGroupIds=[sg_id],
            LustreConfiguration={"DeploymentType": target.fsx_deployment_type},
            Tags=[{"Key": "Name", "Value": target.filesystem_name}],
        )
    except ClientError as exc:
        if is_already_exists(exc):
            raise AlreadyExists(
                f"Filesystem {target.filesystem_name} already exists",
                resource=f"filesystem/{target.filesystem_name}",
            ) from exc
        raise CreationFailed(
            f"CreateFileSystem rejected: {exc}",
            resource=f"filesystem/{target.filesystem_name}",
            cause=exc,
        ) from exc
    fs_id = resp.get("FileSystem", {}).get("FileSystemId", "")
    logger.info("Creating FSx filesystem %s (%s)", target.filesystem_name, fs_id)


def storage_ready(ctx: StageContext, resource: ManagedResource) -> None:
    ids = resource.identifiers
    ctx.bind(
        fileSystemId=ids.get(bp.FILE_SYSTEM_ID, ""),
        fileSystemDnsName=ids.get(bp.FILE_SYSTEM_DNS_NAME, ""),
        mountName=ids.get(bp.MOUNT_NAME, ""),
    )
    if not ctx.identifiers.get(bp.FSX_SECURITY_GROUP_ID):
        sg_id = find_security_group(
            ctx.client("ec2"), ctx.target.fsx_security_group_name,
            ctx.identifiers.get(bp.VPC_ID, ""),
        )
        ctx.bind(fsxSecurityGroupId=sg_id)


# ---------------------------------------------------------------------------
# Stage 4: controllers
# ---------------------------------------------------------------------------


def probe_controllers(ctx: StageContext) -> ManagedResource:
    return ctx.prober.describe(ResourceKind.CONTROLLERS, LB_CONTROLLER_DEPLOYMENT)


def _account_id(ctx: StageContext) -> str:
    if not ctx.account_id:
        ctx.account_id = ctx.client("sts").get_caller_identity()["Account"]
    return ctx.account_id


def install_controllers(ctx: StageContext) -> None:
    """FSx CSI driver, load-balancer controller (with IAM wiring) and LeaderWorkerSet."""
    target = ctx.target
    helm, kubectl, eksctl = ctx.helm, ctx.kubectl, ctx.eksctl

    helm.repo_add(*FSX_CSI_REPO)
    helm.repo_update()
    helm.upgrade_install(
        "aws-fsx-csi-driver", "aws-fsx-csi-driver/aws-fsx-csi-driver", namespace="kube-system",
    )

    eksctl.associate_oidc_provider(target.cluster_name).raise_for_status(
        resource=f"oidc/{target.cluster_name}",
    )
    raise_for_missing_files(ctx.workdir, (IAM_POLICY_FILE,))
    document = read_policy_document(ctx.workdir / IAM_POLICY_FILE)
    policy = ensure_managed_policy(
        ctx.client("iam"), target.lb_controller_policy_name, document,
        account_id=_account_id(ctx),
    )
    result = eksctl.create_iam_service_account(
        target.cluster_name,
        namespace="kube-system",
        name=LB_CONTROLLER_DEPLOYMENT,
        policy_arn=policy,
    )
    if not result.already_exists:
        result.raise_for_status(resource=f"serviceaccount/{LB_CONTROLLER_DEPLOYMENT}")

    helm.repo_add(*EKS_CHARTS_REPO)
    helm.repo_update()
    kubectl.apply_url(LB_CONTROLLER_CRDS_URL)
    values = {
        "clusterName": target.cluster_name,
        "serviceAccount.create": "false",
        "serviceAccount.name": LB_CONTROLLER_DEPLOYMENT,
        "region": target.region,
    }
    vpc_id = ctx.identifiers.get(bp.VPC_ID)
    if vpc_id:
        values["vpcId"] = vpc_id
    helm.upgrade_install(
        LB_CONTROLLER_DEPLOYMENT, "eks/aws-load-balancer-controller",
        namespace="kube-system", values=values,
    )
    # The controller webhook must answer before LWS (or any Service) is created.
    kubectl.wait(
        "available", f"deployment/{LB_CONTROLLER_DEPLOYMENT}",
        namespace="kube-system", timeout=LB_CONTROLLER_WAIT_TIMEOUT,
    )

    helm.upgrade_install(
        "lws", LWS_CHART,
        namespace="lws-system",
        version=target.lws_chart_version,
        create_namespace=True,
        wait=True,
        timeout=300,
    )


# ---------------------------------------------------------------------------
# Stage 5: workload
# ---------------------------------------------------------------------------


WORKLOAD_BLUEPRINTS: List[str] = [
    "namespace",
    "storage-class",
    "persistent-volume",
    "volume-claim",
    "workload",
]


def probe_workload(ctx: StageContext) -> ManagedResource:
    return ctx.prober.describe(ResourceKind.WORKLOAD, ctx.target.workload_name)


def deploy_workload(ctx: StageContext) -> None:
    # Render everything first so a missing identifier applies nothing.
    manifests = [ctx.templater.render(name, ctx.identifiers) for name in WORKLOAD_BLUEPRINTS]
    for name, manifest in zip(WORKLOAD_BLUEPRINTS, manifests):
        ctx.kubectl.apply(manifest)
        logger.info("Applied %s", name)


def workload_ready(ctx: StageContext, resource: ManagedResource) -> None:
    claim = ctx.prober.describe(ResourceKind.VOLUME_CLAIM, ctx.target.claim_name)
    if not claim.ready:
        ctx.warn(f"Volume claim {ctx.target.claim_name} is {claim.status or claim.current_state.value}")


# ---------------------------------------------------------------------------
# Stage 6: ingress
# ---------------------------------------------------------------------------


def probe_ingress(ctx: StageContext) -> ManagedResource:
    """Ingress state, ready only once its load balancer reports ``active``."""
    ingress = ctx.prober.describe(ResourceKind.INGRESS, ctx.target.ingress_name)
    if not ingress.ready:
        return ingress
    dns_name = ingress.identifiers[bp.LOAD_BALANCER_DNS_NAME]
    lb = ctx.prober.describe(ResourceKind.LOAD_BALANCER, dns_name)
    ingress.identifiers.update(lb.identifiers)
    ingress.details["load_balancer"] = lb.status
    if lb.current_state == ResourceState.NOT_FOUND:
        ingress.current_state = ResourceState.PENDING
        ingress.status = "load balancer not yet visible"
    else:
        ingress.current_state = lb.current_state
        ingress.status = f"load balancer {lb.status}"
    return ingress


def resolve_allowed_cidr(ctx: StageContext) -> str:
    """Source CIDR for the ALB rule: configured, else the caller's public IP, else open."""
    if ctx.target.allowed_cidr:
        return ctx.target.allowed_cidr
    cidr = detect_public_cidr()
    if cidr:
        logger.info("Restricting load balancer access to %s", cidr)
        return cidr
    ctx.warn(
        f"Could not determine your public IP; the load balancer accepts traffic from {OPEN_CIDR}. "
        "Set allowed_cidr in the deployment config to restrict it."
    )
    return OPEN_CIDR


def create_ingress(ctx: StageContext) -> None:
    target = ctx.target
    vpc_id, node_sg = ctx.require("ingress", bp.VPC_ID, bp.NODE_SECURITY_GROUP_ID)
    ec2 = ctx.client("ec2")
    alb_sg = ensure_security_group(
        ec2, target.alb_security_group_name, vpc_id,
        "Security group for vLLM Qwen ALB",
        tags={"Name": target.alb_security_group_name},
    )
    ctx.bind(albSecurityGroupId=alb_sg)
    authorize_ingress(ec2, alb_sg, port_from=HTTP_PORT, cidr=resolve_allowed_cidr(ctx))
    authorize_ingress(ec2, node_sg, port_from=target.container_port, source_group_id=alb_sg)
    ctx.kubectl.apply(ctx.templater.render("ingress", ctx.identifiers))
    logger.info("Applied ingress %s", target.ingress_name)


def ingress_ready(ctx: StageContext, resource: ManagedResource) -> None:
    dns_name = resource.identifiers.get(bp.LOAD_BALANCER_DNS_NAME, "")
    ctx.bind(loadBalancerDnsName=dns_name)
    if not dns_name:
        return
    ctx.endpoint = f"http://{dns_name}"
    check = check_endpoint(ctx.endpoint, ctx.target.model_id)
    if not check.healthy:
        ctx.warn(
            f"{ctx.endpoint} is not serving yet ({check.detail}); "
            "new load balancers can take 2-5 minutes to route traffic."
        )
    elif not check.completion_ok:
        ctx.warn(
            f"{ctx.endpoint}/v1/completions did not answer a test prompt ({check.detail}); "
            "the model may still be loading."
        )
