"""End-to-end workflows behind the CLI subcommands."""

from vllm_eks.workflow.provision import (
    EXIT_AWS_FAILURE,
    EXIT_STAGE_FAILURE,
    EXIT_SUCCESS,
    EXIT_TEARDOWN_PARTIAL,
    EXIT_TOOLCHAIN,
    EXIT_VALIDATION_FAILURE,
    run_phase,
    run_preflight_only,
    run_status,
    run_teardown,
)

__all__ = [
    "EXIT_AWS_FAILURE",
    "EXIT_STAGE_FAILURE",
    "EXIT_SUCCESS",
    "EXIT_TEARDOWN_PARTIAL",
    "EXIT_TOOLCHAIN",
    "EXIT_VALIDATION_FAILURE",
    "run_phase",
    "run_preflight_only",
    "run_status",
    "run_teardown",
]
