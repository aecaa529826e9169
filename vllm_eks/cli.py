"""CLI entry point for vllm-eks, built on typer.

Each provisioning phase is its own command; ``deploy`` runs all of them.

Usage::

    python -m vllm_eks --help
    vllm-eks provision-cluster --profile vllm-profile --region us-west-2
    vllm-eks deploy --config deployment.yaml
    vllm-eks status --json
    vllm-eks teardown --yes
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import typer

from vllm_eks import __version__

app = typer.Typer(
    name="vllm-eks",
    help=(
        "Provision a GPU EKS cluster with FSx for Lustre model storage and "
        "serve a vLLM model behind an ALB."
    ),
    no_args_is_help=True,
    add_completion=False,
)


# ── Shared options ───────────────────────────────────────────────────────────

_REGION = typer.Option(
    None, "--region", help="AWS region. Defaults to AWS_REGION, the config file, then us-west-2.",
)
_PROFILE = typer.Option(
    None, "--profile", help="AWS CLI profile. Defaults to AWS_PROFILE, the config file, then vllm-profile.",
)
_CONFIG = typer.Option(
    None, "--config", help="Path to a deployment YAML. Default: ./deployment.yaml if present.",
)
_WORKDIR = typer.Option(
    ".", "--workdir", help="Directory holding iam-policy.json and the FSx manifests.",
)
_DEBUG = typer.Option(False, "--debug", help="Enable debug logging.")
_NON_INTERACTIVE = typer.Option(
    False, "--non-interactive", help="Disable interactive prompts; fail instead of asking.",
)
_NO_INSTALL = typer.Option(
    False, "--no-install", help="Report missing tools instead of installing them.",
)


def _setup_logging(debug: bool) -> None:
    if debug:
        logging.basicConfig(level=logging.DEBUG)


def _confirm(question: str) -> bool:
    return typer.confirm(question, default=False)


def _phase(
    phase: str,
    region: Optional[str],
    profile: Optional[str],
    config: Optional[str],
    workdir: str,
    debug: bool,
    non_interactive: bool,
    no_install: bool,
) -> None:
    from vllm_eks.workflow.provision import run_phase

    _setup_logging(debug)
    rc = run_phase(
        phase,
        region=region,
        profile=profile,
        config_path=config,
        workdir=workdir,
        auto_install=not no_install,
        interactive=not non_interactive,
        confirm=_confirm,
    )
    raise typer.Exit(rc)


@app.callback(invoke_without_command=True)
def _root_callback(
    version: bool = typer.Option(False, "--version", help="Print the version and exit."),
) -> None:
    """vLLM on EKS control plane."""
    if version:
        typer.echo(__version__)
        raise typer.Exit(0)


# ── Phase commands ───────────────────────────────────────────────────────────


@app.command("provision-cluster")
def provision_cluster(
    region: Optional[str] = _REGION,
    profile: Optional[str] = _PROFILE,
    config: Optional[str] = _CONFIG,
    workdir: str = _WORKDIR,
    debug: bool = _DEBUG,
    non_interactive: bool = _NON_INTERACTIVE,
    no_install: bool = _NO_INSTALL,
) -> None:
    """Create the EKS control plane and the GPU node group."""
    _phase("provision-cluster", region, profile, config, workdir, debug, non_interactive, no_install)


@app.command("provision-storage")
def provision_storage(
    region: Optional[str] = _REGION,
    profile: Optional[str] = _PROFILE,
    config: Optional[str] = _CONFIG,
    workdir: str = _WORKDIR,
    debug: bool = _DEBUG,
    non_interactive: bool = _NON_INTERACTIVE,
    no_install: bool = _NO_INSTALL,
) -> None:
    """Create the FSx for Lustre filesystem and its security group."""
    _phase("provision-storage", region, profile, config, workdir, debug, non_interactive, no_install)


@app.command("install-controllers")
def install_controllers(
    region: Optional[str] = _REGION,
    profile: Optional[str] = _PROFILE,
    config: Optional[str] = _CONFIG,
    workdir: str = _WORKDIR,
    debug: bool = _DEBUG,
    non_interactive: bool = _NON_INTERACTIVE,
    no_install: bool = _NO_INSTALL,
) -> None:
    """Install the FSx CSI driver, the load-balancer controller and LWS.

    Requires iam-policy.json in the working directory.
    """
    _phase("install-controllers", region, profile, config, workdir, debug, non_interactive, no_install)


@app.command("deploy-workload")
def deploy_workload(
    region: Optional[str] = _REGION,
    profile: Optional[str] = _PROFILE,
    config: Optional[str] = _CONFIG,
    workdir: str = _WORKDIR,
    debug: bool = _DEBUG,
    non_interactive: bool = _NON_INTERACTIVE,
    no_install: bool = _NO_INSTALL,
) -> None:
    """Deploy the vLLM server and expose it through an ALB ingress.

    Requires fsx-storage-class.yaml, fsx-lustre-pv.yaml and fsx-lustre-pvc.yaml
    in the working directory.
    """
    _phase("deploy-workload", region, profile, config, workdir, debug, non_interactive, no_install)


@app.command()
def deploy(
    region: Optional[str] = _REGION,
    profile: Optional[str] = _PROFILE,
    config: Optional[str] = _CONFIG,
    workdir: str = _WORKDIR,
    debug: bool = _DEBUG,
    non_interactive: bool = _NON_INTERACTIVE,
    no_install: bool = _NO_INSTALL,
) -> None:
    """Run every stage, skipping whatever is already ready.

    Exit codes: 0 = ready, 1 = pre-flight/files, 2 = AWS auth,
    3 = stage failure, 4 = toolchain.
    """
    _phase("deploy", region, profile, config, workdir, debug, non_interactive, no_install)


# ── teardown command ─────────────────────────────────────────────────────────


@app.command()
def teardown(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    region: Optional[str] = _REGION,
    profile: Optional[str] = _PROFILE,
    config: Optional[str] = _CONFIG,
    workdir: str = _WORKDIR,
    debug: bool = _DEBUG,
    non_interactive: bool = _NON_INTERACTIVE,
    no_install: bool = _NO_INSTALL,
) -> None:
    """Delete every resource of the deployment, newest first.

    Exits 5 when some deletions failed; re-running is safe.
    """
    from vllm_eks.workflow.provision import run_teardown

    _setup_logging(debug)
    rc = run_teardown(
        region=region,
        profile=profile,
        config_path=config,
        workdir=workdir,
        assume_yes=yes,
        auto_install=not no_install,
        interactive=not non_interactive,
        confirm=_confirm,
    )
    raise typer.Exit(rc)


# ── preflight / status commands ──────────────────────────────────────────────


@app.command()
def preflight(
    json_flag: bool = typer.Option(False, "--json", "-j", help="Output the report as JSON."),
    region: Optional[str] = _REGION,
    profile: Optional[str] = _PROFILE,
    config: Optional[str] = _CONFIG,
    workdir: str = _WORKDIR,
    debug: bool = _DEBUG,
    non_interactive: bool = _NON_INTERACTIVE,
) -> None:
    """Run the pre-flight checks for a full deploy without changing anything."""
    from vllm_eks.workflow.provision import run_preflight_only

    _setup_logging(debug)
    rc = run_preflight_only(
        region=region,
        profile=profile,
        config_path=config,
        workdir=workdir,
        interactive=not non_interactive,
        confirm=_confirm,
        json_output=json_flag,
    )
    raise typer.Exit(rc)


@app.command()
def status(
    json_flag: bool = typer.Option(False, "--json", "-j", help="Output resources as JSON."),
    region: Optional[str] = _REGION,
    profile: Optional[str] = _PROFILE,
    config: Optional[str] = _CONFIG,
    workdir: str = _WORKDIR,
    debug: bool = _DEBUG,
) -> None:
    """Show the current state of every managed resource (read-only)."""
    from vllm_eks.workflow.provision import run_status

    _setup_logging(debug)
    rc = run_status(
        region=region,
        profile=profile,
        config_path=config,
        workdir=workdir,
        json_output=json_flag,
    )
    raise typer.Exit(rc)


# ── Entry point ──────────────────────────────────────────────────────────────


def main() -> int:
    """Run the CLI and return an exit code."""
    try:
        app()
        return 0
    except SystemExit as exc:
        return exc.code if isinstance(exc.code, int) else 0


if __name__ == "__main__":
    sys.exit(main())
