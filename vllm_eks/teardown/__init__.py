"""Reverse-order, NotFound-tolerant teardown."""

from vllm_eks.teardown.driver import (
    DeletionResult,
    DeletionStatus,
    TeardownDriver,
    TeardownReport,
)

__all__ = [
    "DeletionResult",
    "DeletionStatus",
    "TeardownDriver",
    "TeardownReport",
]
