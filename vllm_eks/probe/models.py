"""Managed resource models returned by the Prober."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


class ResourceKind(str, Enum):
    """Every infrastructure object the orchestrator manages."""

    CLUSTER = "cluster"
    NODE_GROUP = "nodegroup"
    FILESYSTEM = "filesystem"
    SECURITY_GROUP = "security-group"
    CONTROLLERS = "controllers"
    WORKLOAD = "workload"
    VOLUME_CLAIM = "volume-claim"
    INGRESS = "ingress"
    LOAD_BALANCER = "load-balancer"


class ResourceState(str, Enum):
    """Discovered lifecycle state, collapsed from provider-specific status strings."""

    NOT_FOUND = "NOT_FOUND"
    PENDING = "PENDING"
    READY = "READY"
    FAILED = "FAILED"


@dataclass
class ManagedResource:
    """A cloud or orchestrator object tracked by kind + name + state.

    Attributes:
        kind: What sort of object this is.
        name: The stable selector (name or tag value) it was probed by.
        region: AWS region it lives in.
        desired_state: What the plan wants; always READY for provisioning.
        current_state: What the provider reports right now.
        status: Raw provider status string (e.g. ``CREATING``, ``AVAILABLE``).
        identifiers: Role → external ID discovered alongside the resource.
        details: Extra raw facts for reporting (failure reasons, counts).
    """

    kind: ResourceKind
    name: str
    region: str = ""
    desired_state: ResourceState = ResourceState.READY
    current_state: ResourceState = ResourceState.NOT_FOUND
    status: str = ""
    identifiers: Dict[str, str] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def exists(self) -> bool:
        return self.current_state != ResourceState.NOT_FOUND

    @property
    def ready(self) -> bool:
        return self.current_state == ResourceState.READY

    @property
    def label(self) -> str:
        return f"{self.kind.value}/{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "name": self.name,
            "region": self.region,
            "desired_state": self.desired_state.value,
            "current_state": self.current_state.value,
            "status": self.status,
            "identifiers": dict(sorted(self.identifiers.items())),
        }
