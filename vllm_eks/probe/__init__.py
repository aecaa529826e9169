"""Read-only discovery of managed resource state."""

from vllm_eks.probe.models import ManagedResource, ResourceKind, ResourceState
from vllm_eks.probe.prober import (
    CONTROLLER_RELEASES,
    Prober,
    deployment_state,
)

__all__ = [
    "CONTROLLER_RELEASES",
    "ManagedResource",
    "Prober",
    "ResourceKind",
    "ResourceState",
    "deployment_state",
]
