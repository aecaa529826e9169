"""Dependency Resolver: required CLIs, template files, and AWS identity.

Every check appends a :class:`CheckResult` to the pre-flight report.  Any
FAIL is fatal - no stage may run without validated tooling and credentials.
Checks that make no cloud call (files, tools) run before the identity
check so a broken working directory is reported without touching AWS.
"""

from __future__ import annotations

import logging
import platform
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from vllm_eks.errors import AuthError, MissingTemplateFiles, ToolMissing
from vllm_eks.reports import CheckResult, CheckStatus, PreflightReport

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

REQUIRED_TOOLS: tuple[str, ...] = ("aws", "eksctl", "kubectl", "helm")

#: Shell snippets used to install a missing tool, keyed by ``platform.system()``.
INSTALLERS: Dict[str, Dict[str, str]] = {
    "eksctl": {
        "Darwin": "brew tap weaveworks/tap && brew install weaveworks/tap/eksctl",
        "Linux": (
            "curl --silent --location "
            "https://github.com/eksctl-io/eksctl/releases/latest/download/"
            "eksctl_Linux_amd64.tar.gz | tar xz -C /tmp && "
            "sudo mv /tmp/eksctl /usr/local/bin && sudo chmod +x /usr/local/bin/eksctl"
        ),
    },
    "kubectl": {
        "Darwin": "brew install kubectl",
        "Linux": (
            'curl -LO "https://dl.k8s.io/release/$(curl -L -s '
            'https://dl.k8s.io/release/stable.txt)/bin/linux/amd64/kubectl" && '
            "chmod +x kubectl && sudo mv kubectl /usr/local/bin/"
        ),
    },
    "helm": {
        "Darwin": "brew install helm",
        "Linux": "curl https://raw.githubusercontent.com/helm/helm/main/scripts/get-helm-3 | bash",
    },
}

#: Manual instructions for tools we never install ourselves.
MANUAL_INSTALL_HINTS: Dict[str, Dict[str, str]] = {
    "aws": {
        "Darwin": "brew install awscli, or download https://awscli.amazonaws.com/AWSCLIV2.pkg",
        "Linux": (
            'curl "https://awscli.amazonaws.com/awscli-exe-linux-x86_64.zip" '
            '-o "awscliv2.zip" && unzip awscliv2.zip && sudo ./aws/install'
        ),
    },
}

VERSION_COMMANDS: Dict[str, List[str]] = {
    "aws": ["aws", "--version"],
    "eksctl": ["eksctl", "version"],
    "kubectl": ["kubectl", "version", "--client"],
    "helm": ["helm", "version", "--short"],
}

#: Files each CLI phase reads from the working directory.
IAM_POLICY_FILE = "iam-policy.json"
STORAGE_CLASS_FILE = "fsx-storage-class.yaml"
PERSISTENT_VOLUME_FILE = "fsx-lustre-pv.yaml"
VOLUME_CLAIM_FILE = "fsx-lustre-pvc.yaml"

STORAGE_TEMPLATE_FILES: tuple[str, ...] = (
    STORAGE_CLASS_FILE,
    PERSISTENT_VOLUME_FILE,
    VOLUME_CLAIM_FILE,
)

ALL_REQUIRED_FILES: tuple[str, ...] = (IAM_POLICY_FILE, *STORAGE_TEMPLATE_FILES)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


def tool_version(tool: str) -> str:
    """Return the first line of the tool's version output, or ``""``."""
    cmd = VERSION_COMMANDS.get(tool, [tool, "--version"])
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=30)
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return ""
    text = (proc.stdout or proc.stderr or "").strip()
    return text.splitlines()[0] if text else ""


def install_tool(tool: str, system: str) -> None:
    """Install *tool* for *system*.  Raises :class:`ToolMissing` on failure."""
    recipe = INSTALLERS.get(tool, {}).get(system)
    if recipe is None:
        hint = MANUAL_INSTALL_HINTS.get(tool, {}).get(system, "")
        raise ToolMissing(
            tool,
            f"cannot be installed automatically on {system or 'this OS'}",
            remediation=f"Please install {tool} manually. {hint}".strip(),
        )
    if system == "Darwin" and recipe.startswith("brew") and shutil.which("brew") is None:
        raise ToolMissing(
            tool,
            "Homebrew not found",
            remediation="Install Homebrew first (https://brew.sh), then re-run.",
        )
    logger.info("Installing %s: %s", tool, recipe)
    proc = subprocess.run(["bash", "-c", recipe], capture_output=True, text=True)
    if proc.returncode != 0:
        raise ToolMissing(
            tool,
            f"installer exited {proc.returncode}: {(proc.stderr or proc.stdout).strip()}",
        )


def ensure_tool(
    tool: str,
    *,
    auto_install: bool = True,
    system: Optional[str] = None,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> CheckResult:
    """Return a PASS check when *tool* is (or becomes) available, FAIL otherwise."""
    system = system if system is not None else platform.system()
    check_id = f"toolchain.{tool}"

    if which(tool):
        return CheckResult(
            id=check_id,
            status=CheckStatus.PASS,
            details={"installed": True, "version": tool_version(tool)},
        )

    if not auto_install:
        hint = MANUAL_INSTALL_HINTS.get(tool, INSTALLERS.get(tool, {})).get(system, "")
        return CheckResult(
            id=check_id,
            status=CheckStatus.FAIL,
            details={"installed": False},
            remediation=f"{tool} not found on PATH. {hint}".strip(),
        )

    try:
        install_tool(tool, system)
    except ToolMissing as exc:
        return CheckResult(
            id=check_id,
            status=CheckStatus.FAIL,
            details={"installed": False, "reason": exc.reason},
            remediation=exc.remediation,
        )

    if not which(tool):
        return CheckResult(
            id=check_id,
            status=CheckStatus.FAIL,
            details={"installed": False, "reason": "not on PATH after install"},
            remediation=f"{tool} was installed but is not on PATH; check your PATH.",
        )
    return CheckResult(
        id=check_id,
        status=CheckStatus.PASS,
        details={"installed": True, "auto_installed": True, "version": tool_version(tool)},
    )


def check_toolchain(
    report: PreflightReport,
    *,
    tools: Sequence[str] = REQUIRED_TOOLS,
    auto_install: bool = True,
    system: Optional[str] = None,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> PreflightReport:
    for tool in tools:
        report.checks.append(
            ensure_tool(tool, auto_install=auto_install, system=system, which=which)
        )
    return report


# ---------------------------------------------------------------------------
# Required files
# ---------------------------------------------------------------------------


def find_missing_files(workdir: str | Path, files: Iterable[str]) -> List[str]:
    """Return every entry of *files* absent from *workdir*, in order."""
    root = Path(workdir)
    return [name for name in files if not (root / name).is_file()]


def check_required_files(
    report: PreflightReport, workdir: str | Path, files: Sequence[str],
) -> PreflightReport:
    missing = find_missing_files(workdir, files)
    if missing:
        report.checks.append(CheckResult(
            id="files.required",
            status=CheckStatus.FAIL,
            details={"workdir": str(workdir), "missing": missing, "required": list(files)},
            remediation=(
                "Please ensure you have the complete project files before running "
                f"this command. Missing: {', '.join(missing)}"
            ),
        ))
    else:
        report.checks.append(CheckResult(
            id="files.required",
            status=CheckStatus.PASS,
            details={"workdir": str(workdir), "required": list(files)},
        ))
    return report


def raise_for_missing_files(workdir: str | Path, files: Sequence[str]) -> None:
    missing = find_missing_files(workdir, files)
    if missing:
        raise MissingTemplateFiles(missing, str(workdir))


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


def check_identity(
    report: PreflightReport,
    *,
    region: str,
    profile: str,
    interactive: bool = True,
    confirm: Optional[Callable[[str], bool]] = None,
):
    """Validate credentials; returns ``(report, aws_ctx_or_None)``."""
    from vllm_eks.aws.context import validate_identity

    try:
        aws_ctx = validate_identity(
            region, profile, interactive=interactive, confirm=confirm,
        )
    except AuthError as exc:
        report.checks.append(CheckResult(
            id="aws.identity",
            status=CheckStatus.FAIL,
            details={"profile": profile, "region": region, "error": exc.message},
            remediation=exc.remediation,
        ))
        return report, None

    report.account_id = aws_ctx.account_id
    report.caller_arn = aws_ctx.caller_arn
    report.checks.append(CheckResult(
        id="aws.identity",
        status=CheckStatus.PASS,
        details={"account_id": aws_ctx.account_id, "profile": profile},
    ))
    if aws_ctx.region_mismatch:
        report.checks.append(CheckResult(
            id="aws.region",
            status=CheckStatus.WARN,
            details={"profile_region": aws_ctx.profile_region, "target_region": region},
            remediation=(
                f"Profile default region ({aws_ctx.profile_region}) differs from "
                f"target region ({region}). This is OK - using {region} for all operations."
            ),
        ))
    return report, aws_ctx
