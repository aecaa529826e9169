"""External CLI adapters and the dependency resolver."""

from vllm_eks.tools.eksctl import Eksctl
from vllm_eks.tools.helm import Helm
from vllm_eks.tools.kubectl import Kubectl
from vllm_eks.tools.resolver import (
    ALL_REQUIRED_FILES,
    IAM_POLICY_FILE,
    REQUIRED_TOOLS,
    STORAGE_TEMPLATE_FILES,
    check_identity,
    check_required_files,
    check_toolchain,
    ensure_tool,
    find_missing_files,
)
from vllm_eks.tools.runner import CommandResult, run_command

__all__ = [
    "ALL_REQUIRED_FILES",
    "CommandResult",
    "Eksctl",
    "Helm",
    "IAM_POLICY_FILE",
    "Kubectl",
    "REQUIRED_TOOLS",
    "STORAGE_TEMPLATE_FILES",
    "check_identity",
    "check_required_files",
    "check_toolchain",
    "ensure_tool",
    "find_missing_files",
    "run_command",
]
