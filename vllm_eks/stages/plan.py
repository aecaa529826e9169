"""DeploymentPlan construction and the phase → stage mapping."""

from __future__ import annotations

from typing import Dict, Tuple

from vllm_eks.config.models import DeploymentTarget
from vllm_eks.probe.models import ResourceKind
from vllm_eks.probe.prober import LB_CONTROLLER_DEPLOYMENT
from vllm_eks.stages import actions
from vllm_eks.stages.models import DeploymentPlan, Stage
from vllm_eks.tools.resolver import ALL_REQUIRED_FILES, IAM_POLICY_FILE, STORAGE_TEMPLATE_FILES

STAGE_ORDER: Tuple[str, ...] = (
    "cluster", "nodegroup", "storage", "controllers", "workload", "ingress",
)

#: CLI phase → stages it converges.  Earlier stages are verified only.
PHASES: Dict[str, Tuple[str, ...]] = {
    "provision-cluster": ("cluster", "nodegroup"),
    "provision-storage": ("storage",),
    "install-controllers": ("controllers",),
    "deploy-workload": ("workload", "ingress"),
    "deploy": STAGE_ORDER,
}

#: Working-directory files each phase reads.
PHASE_FILES: Dict[str, Tuple[str, ...]] = {
    "provision-cluster": (),
    "provision-storage": (),
    "install-controllers": (IAM_POLICY_FILE,),
    "deploy-workload": STORAGE_TEMPLATE_FILES,
    "deploy": ALL_REQUIRED_FILES,
}


def phase_of(stage: str) -> str:
    for phase, stages in PHASES.items():
        if phase != "deploy" and stage in stages:
            return phase
    return "deploy"


def build_plan(target: DeploymentTarget) -> DeploymentPlan:
    """Return the six-stage plan for *target*."""

    def stage(name: str, kind: ResourceKind, selector: str, **hooks) -> Stage:
        timing = target.timing(name)
        idx = STAGE_ORDER.index(name)
        return Stage(
            name=name,
            kind=kind,
            selector=selector,
            phase=phase_of(name),
            precondition=STAGE_ORDER[idx - 1: idx] if idx else (),
            timeout=timing.timeout,
            poll_interval=timing.poll_interval,
            **hooks,
        )

    stages = (
        stage(
            "cluster", ResourceKind.CLUSTER, target.cluster_name,
            probe=actions.probe_cluster,
            action=actions.create_cluster,
            on_ready=actions.cluster_ready,
            remediation="Check the CloudFormation stacks for the cluster in the AWS console.",
        ),
        stage(
            "nodegroup", ResourceKind.NODE_GROUP, target.nodegroup_name,
            probe=actions.probe_nodegroup,
            action=actions.create_nodegroup,
            on_ready=actions.nodegroup_ready,
            remediation="Check provider console for node group status and GPU instance quota.",
        ),
        stage(
            "storage", ResourceKind.FILESYSTEM, target.filesystem_name,
            probe=actions.probe_filesystem,
            action=actions.create_filesystem,
            on_ready=actions.storage_ready,
            remediation="Check the FSx console for the filesystem's failure details.",
        ),
        stage(
            "controllers", ResourceKind.CONTROLLERS, LB_CONTROLLER_DEPLOYMENT,
            probe=actions.probe_controllers,
            action=actions.install_controllers,
            remediation=(
                "Inspect 'helm list -A' and "
                "'kubectl -n kube-system describe deployment aws-load-balancer-controller'."
            ),
        ),
        stage(
            "workload", ResourceKind.WORKLOAD, target.workload_name,
            probe=actions.probe_workload,
            action=actions.deploy_workload,
            on_ready=actions.workload_ready,
            remediation=(
                f"Inspect 'kubectl -n {target.namespace} describe pods -l app={target.workload_name}' "
                "and the pod logs."
            ),
        ),
        stage(
            "ingress", ResourceKind.INGRESS, target.ingress_name,
            probe=actions.probe_ingress,
            action=actions.create_ingress,
            on_ready=actions.ingress_ready,
            remediation=(
                f"Check 'kubectl -n {target.namespace} describe ingress {target.ingress_name}' "
                "and the load-balancer controller logs."
            ),
        ),
    )
    return DeploymentPlan(target=target, stages=stages)
