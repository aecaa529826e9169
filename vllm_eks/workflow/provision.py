"""Orchestration behind every CLI subcommand.

Execution model for a phase::

    1. Load the DeploymentTarget (flags, env, optional YAML).
    2. Pre-flight, in strict order:
         a. required working-directory files  (no cloud call)
         b. toolchain                         (may install)
         c. AWS identity                      (STS)
       A single FAIL aborts before any cloud mutation.
    3. Run the plan through the phase's last stage.  Stages owned by the
       phase converge; earlier stages are verified only.

Every entry point returns one of the ``EXIT_*`` constants.
"""

from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from vllm_eks import ui
from vllm_eks.aws.context import AWSContext
from vllm_eks.config.loader import load_target
from vllm_eks.config.models import DeploymentTarget
from vllm_eks.errors import ProvisionError
from vllm_eks.probe.models import ManagedResource, ResourceKind, ResourceState
from vllm_eks.probe.prober import Prober
from vllm_eks.render.renderer import Templater
from vllm_eks.reports import Gate, PreflightReport
from vllm_eks.stages.models import PlanReport, StageContext
from vllm_eks.stages.plan import PHASE_FILES, PHASES, build_plan
from vllm_eks.stages.runner import StageRunner
from vllm_eks.teardown.driver import TeardownDriver, TeardownReport
from vllm_eks.tools.eksctl import Eksctl
from vllm_eks.tools.helm import Helm
from vllm_eks.tools.kubectl import Kubectl
from vllm_eks.tools.resolver import (
    REQUIRED_TOOLS,
    check_identity,
    check_required_files,
    check_toolchain,
)

logger = logging.getLogger(__name__)

# Exit codes
EXIT_SUCCESS = 0
EXIT_VALIDATION_FAILURE = 1
EXIT_AWS_FAILURE = 2
EXIT_STAGE_FAILURE = 3
EXIT_TOOLCHAIN = 4
EXIT_TEARDOWN_PARTIAL = 5

GATE_EXIT_CODES = {
    Gate.FILES: EXIT_VALIDATION_FAILURE,
    Gate.TOOLCHAIN: EXIT_TOOLCHAIN,
    Gate.AWS: EXIT_AWS_FAILURE,
}

#: Tools teardown needs; helm releases go away with the cluster.
TEARDOWN_TOOLS: Tuple[str, ...] = ("aws", "eksctl", "kubectl")

Confirm = Callable[[str], bool]


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------


def _load(
    config_path: Optional[str], *, region: Optional[str], profile: Optional[str], workdir: Path,
) -> Optional[DeploymentTarget]:
    try:
        return load_target(config_path, region=region, profile=profile, workdir=workdir)
    except ValueError as exc:
        ui.error_msg(str(exc))
        return None


def run_preflight(
    target: DeploymentTarget,
    *,
    workdir: Path,
    files: Sequence[str] = (),
    tools: Sequence[str] = REQUIRED_TOOLS,
    auto_install: bool = True,
    interactive: bool = True,
    confirm: Optional[Confirm] = None,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> Tuple[PreflightReport, Optional[AWSContext], int]:
    """Run the ordered pre-flight gate.

    Returns ``(report, aws_ctx, exit_code)``; *aws_ctx* is None unless every
    check passed.
    """
    report = PreflightReport(
        cluster_name=target.cluster_name, region=target.region, aws_profile=target.profile,
    )

    aws_ctx = None
    check_required_files(report, workdir, files)
    if report.passed:
        check_toolchain(report, tools=tools, auto_install=auto_install, which=which)
    if report.passed:
        report, aws_ctx = check_identity(
            report, region=target.region, profile=target.profile,
            interactive=interactive, confirm=confirm,
        )
    if aws_ctx is None:
        gate = report.failed_gate or Gate.AWS
        logger.info("Pre-flight stopped at the %s gate", gate.value)
        return report, None, GATE_EXIT_CODES[gate]

    logger.info("Pre-flight passed: %d checks", len(report.checks))
    return report, aws_ctx, EXIT_SUCCESS


def build_context(target: DeploymentTarget, aws_ctx: AWSContext, workdir: Path) -> StageContext:
    """Wire the adapters, prober and templater for one run."""
    kubectl = Kubectl(profile=target.profile, region=target.region)
    helm = Helm(profile=target.profile, region=target.region)
    eksctl = Eksctl(profile=target.profile, region=target.region)
    prober = Prober(target, aws_ctx.client, kubectl=kubectl, helm=helm)
    return StageContext(
        target=target,
        client_factory=aws_ctx.client,
        prober=prober,
        templater=Templater(target, workdir),
        kubectl=kubectl,
        helm=helm,
        eksctl=eksctl,
        workdir=workdir,
        account_id=aws_ctx.account_id,
    )


def _report_preflight(report: PreflightReport, rc: int) -> None:
    ui.phase("PREFLIGHT")
    ui.preflight_report(report)
    if rc != EXIT_SUCCESS:
        ui.error_msg("Pre-flight failed; no cloud resources were touched.")


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------


def execute_phase(phase: str, ctx: StageContext, runner: StageRunner) -> PlanReport:
    """Run the plan through *phase*'s last stage, converging only its own stages."""
    owned = PHASES[phase]
    plan = build_plan(ctx.target).through(owned[-1])
    return runner.run_plan(plan, execute=set(owned))


def run_phase(
    phase: str,
    *,
    region: Optional[str] = None,
    profile: Optional[str] = None,
    config_path: Optional[str] = None,
    workdir: str | Path = ".",
    auto_install: bool = True,
    interactive: bool = True,
    confirm: Optional[Confirm] = None,
) -> int:
    """Pre-flight then run one CLI phase (``deploy`` runs all six stages)."""
    if phase not in PHASES:
        raise ValueError(f"Unknown phase '{phase}' (known: {', '.join(PHASES)})")
    workdir = Path(workdir)

    target = _load(config_path, region=region, profile=profile, workdir=workdir)
    if target is None:
        return EXIT_VALIDATION_FAILURE

    report, aws_ctx, rc = run_preflight(
        target, workdir=workdir, files=PHASE_FILES[phase],
        auto_install=auto_install, interactive=interactive, confirm=confirm,
    )
    _report_preflight(report, rc)
    if rc != EXIT_SUCCESS or aws_ctx is None:
        return rc

    ui.phase(phase.upper())
    ui.info(f"Target {target.cluster_name} in {target.region} (account {aws_ctx.account_id})")
    ctx = build_context(target, aws_ctx, workdir)
    runner = StageRunner(ctx, listener=ui.stage_transition)
    result = execute_phase(phase, ctx, runner)

    ui.stage_table(result)
    for notice in result.notices:
        ui.warn(notice)
    if not result.success:
        ui.plan_failure(result)
        return EXIT_STAGE_FAILURE

    body = [f"[bold]Stages[/]: {', '.join(PHASES[phase])}"]
    if result.endpoint:
        body.append(f"[bold]Endpoint[/]: {result.endpoint}")
        body.append(f"[bold]Health[/]: {result.endpoint}/health")
        body.append(f"[bold]Model[/]: {target.model_id}")
    ui.success_panel(f"{phase} complete", "\n".join(body))
    return EXIT_SUCCESS


def run_preflight_only(
    *,
    region: Optional[str] = None,
    profile: Optional[str] = None,
    config_path: Optional[str] = None,
    workdir: str | Path = ".",
    auto_install: bool = False,
    interactive: bool = True,
    confirm: Optional[Confirm] = None,
    json_output: bool = False,
) -> int:
    """Pre-flight for a full deploy, without touching any resource."""
    workdir = Path(workdir)
    target = _load(config_path, region=region, profile=profile, workdir=workdir)
    if target is None:
        return EXIT_VALIDATION_FAILURE
    report, _aws_ctx, rc = run_preflight(
        target, workdir=workdir, files=PHASE_FILES["deploy"],
        auto_install=auto_install, interactive=interactive, confirm=confirm,
    )
    if json_output:
        ui.console.print_json(report.to_sorted_json())
    else:
        _report_preflight(report, rc)
    return rc


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


def collect_status(ctx: StageContext) -> List[ManagedResource]:
    """Probe every managed resource read-only.

    Orchestrator-side resources are only probed when the cluster is ready.
    A describe call that fails, including a raw AWS API or connection
    error, is reported with its message rather than aborting.
    """
    t = ctx.target
    prober = ctx.prober

    def safe(kind: ResourceKind, name: str) -> ManagedResource:
        try:
            return prober.describe(kind, name)
        except (ProvisionError, ClientError, BotoCoreError) as exc:
            message = exc.message if isinstance(exc, ProvisionError) else str(exc)
            res = ManagedResource(kind=kind, name=name, region=t.region, status=f"error: {message}")
            res.details["error"] = message
            return res

    resources = [safe(ResourceKind.CLUSTER, t.cluster_name)]
    cluster_ready = resources[0].current_state == ResourceState.READY
    resources.append(safe(ResourceKind.NODE_GROUP, t.nodegroup_name))
    resources.append(safe(ResourceKind.SECURITY_GROUP, t.fsx_security_group_name))
    resources.append(safe(ResourceKind.FILESYSTEM, t.filesystem_name))
    resources.append(safe(ResourceKind.SECURITY_GROUP, t.alb_security_group_name))

    if cluster_ready and ctx.eksctl.write_kubeconfig(t.cluster_name).success:
        resources.append(safe(ResourceKind.CONTROLLERS, "aws-load-balancer-controller"))
        resources.append(safe(ResourceKind.VOLUME_CLAIM, t.claim_name))
        resources.append(safe(ResourceKind.WORKLOAD, t.workload_name))
        ingress = safe(ResourceKind.INGRESS, t.ingress_name)
        resources.append(ingress)
        dns_name = ingress.identifiers.get("loadBalancerDnsName")
        if dns_name:
            resources.append(safe(ResourceKind.LOAD_BALANCER, dns_name))
    return resources


def run_status(
    *,
    region: Optional[str] = None,
    profile: Optional[str] = None,
    config_path: Optional[str] = None,
    workdir: str | Path = ".",
    json_output: bool = False,
) -> int:
    workdir = Path(workdir)
    target = _load(config_path, region=region, profile=profile, workdir=workdir)
    if target is None:
        return EXIT_VALIDATION_FAILURE
    report, aws_ctx, rc = run_preflight(
        target, workdir=workdir, auto_install=False, interactive=False,
    )
    if rc != EXIT_SUCCESS or aws_ctx is None:
        _report_preflight(report, rc)
        return rc

    resources = collect_status(build_context(target, aws_ctx, workdir))
    if json_output:
        ui.console.print_json(json.dumps([r.to_dict() for r in resources], sort_keys=True))
    else:
        ui.resource_table(resources)
    return EXIT_SUCCESS


# ---------------------------------------------------------------------------
# Teardown
# ---------------------------------------------------------------------------


def execute_teardown(ctx: StageContext) -> TeardownReport:
    driver = TeardownDriver(ctx.target, ctx.prober, kubectl=ctx.kubectl, eksctl=ctx.eksctl)
    return driver.teardown()


def run_teardown(
    *,
    region: Optional[str] = None,
    profile: Optional[str] = None,
    config_path: Optional[str] = None,
    workdir: str | Path = ".",
    assume_yes: bool = False,
    auto_install: bool = True,
    interactive: bool = True,
    confirm: Optional[Confirm] = None,
) -> int:
    """Delete everything for the target; partial failures exit 5."""
    workdir = Path(workdir)
    target = _load(config_path, region=region, profile=profile, workdir=workdir)
    if target is None:
        return EXIT_VALIDATION_FAILURE

    report, aws_ctx, rc = run_preflight(
        target, workdir=workdir, tools=TEARDOWN_TOOLS,
        auto_install=auto_install, interactive=interactive, confirm=confirm,
    )
    _report_preflight(report, rc)
    if rc != EXIT_SUCCESS or aws_ctx is None:
        return rc

    if not assume_yes:
        question = (
            f"Delete cluster {target.cluster_name}, its node group, filesystem, "
            f"load balancer and workload in {target.region}?"
        )
        if not interactive or confirm is None or not confirm(question):
            ui.warn("Teardown cancelled.")
            return EXIT_VALIDATION_FAILURE

    ui.phase("TEARDOWN")
    result = execute_teardown(build_context(target, aws_ctx, workdir))
    ui.teardown_table(result)
    if not result.success:
        ui.error_panel(
            "Teardown incomplete",
            "\n".join(f"{f.resource}: {f.error}" for f in result.failures)
            + "\n\nRe-run 'vllm-eks teardown' once the errors are resolved.",
        )
        return EXIT_TEARDOWN_PARTIAL
    ui.success_panel("Teardown complete", f"All resources for {target.cluster_name} are gone.")
    return EXIT_SUCCESS
