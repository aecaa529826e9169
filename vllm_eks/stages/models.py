"""Stage, plan and outcome models for the Stage Runner."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from vllm_eks.config.models import DeploymentTarget
from vllm_eks.errors import MissingIdentifier, ProvisionError
from vllm_eks.probe.models import ManagedResource, ResourceKind, ResourceState

logger = logging.getLogger(__name__)


class StageState(str, Enum):
    """Per-stage state machine positions."""

    NOT_STARTED = "NotStarted"
    CREATING = "Creating"
    POLLING = "Polling"
    READY = "Ready"
    FAILED = "Failed"


class PollVerdict(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Why a stage ended in ``Failed``; named after the error that caused it."""

    CREATION_FAILED = "CreationFailed"
    POLL_TIMEOUT = "PollTimeout"
    PROBE_ERROR = "ProbeError"
    PRECONDITION_FAILED = "PreconditionFailed"
    MISSING_IDENTIFIER = "MissingIdentifier"
    MISSING_TEMPLATE_FILES = "MissingTemplateFiles"
    INVALID_TEMPLATE = "InvalidTemplate"


def default_predicate(resource: ManagedResource) -> PollVerdict:
    """READY → ready, FAILED → failed, anything else keeps polling."""
    if resource.current_state == ResourceState.READY:
        return PollVerdict.READY
    if resource.current_state == ResourceState.FAILED:
        return PollVerdict.FAILED
    return PollVerdict.PENDING


# ---------------------------------------------------------------------------
# Context threaded through stage callables
# ---------------------------------------------------------------------------


@dataclass
class StageContext:
    """Everything a stage's probe / action / on_ready hooks may touch.

    ``identifiers`` accumulates role → external ID bindings discovered by
    earlier stages in the same run; it is rebuilt from scratch every run.
    """

    target: DeploymentTarget
    client_factory: Callable[[str], Any]
    prober: Any
    templater: Any
    kubectl: Any
    helm: Any
    eksctl: Any
    workdir: Path = field(default_factory=lambda: Path("."))
    account_id: str = ""
    identifiers: Dict[str, str] = field(default_factory=dict)
    notices: List[str] = field(default_factory=list)
    endpoint: str = ""

    def client(self, service: str) -> Any:
        return self.prober.client(service)

    def bind(self, **identifiers: str) -> None:
        """Record discovered identifiers; empty values are ignored."""
        for key, value in identifiers.items():
            if value:
                self.identifiers[key] = value

    def require(self, stage: str, *keys: str) -> Tuple[str, ...]:
        """Return the bound values of *keys* or raise :class:`MissingIdentifier`."""
        missing = [k for k in keys if not self.identifiers.get(k)]
        if missing:
            raise MissingIdentifier(stage, missing)
        return tuple(self.identifiers[k] for k in keys)

    def warn(self, message: str) -> None:
        logger.warning(message)
        self.notices.append(message)


ProbeFn = Callable[[StageContext], ManagedResource]
ActionFn = Callable[[StageContext], None]
ReadyFn = Callable[[StageContext, ManagedResource], None]
PredicateFn = Callable[[ManagedResource], PollVerdict]


@dataclass(frozen=True)
class Stage:
    """One idempotent provisioning step with create + poll semantics.

    Attributes:
        name: Stage identifier (``cluster``, ``nodegroup``, ...).
        kind: Kind of the ManagedResource the stage converges.
        selector: Stable name or tag value the resource is probed by.
        phase: CLI subcommand that owns this stage.
        probe: Read-only discovery of the stage's resource.
        action: Idempotent create-or-no-op.  May raise ``AlreadyExists``.
        on_ready: Runs once the resource is ready (also on skips); binds
            identifiers for later stages.
        predicate: Maps discovered state to pending / ready / failed.
        precondition: Stages that must be Ready before this one may act.
        timeout: Seconds the Polling state may last.
        poll_interval: Seconds between describe calls.
        remediation: Hint printed when the stage fails.
    """

    name: str
    kind: ResourceKind
    selector: str
    phase: str
    probe: ProbeFn
    action: ActionFn
    on_ready: Optional[ReadyFn] = None
    predicate: PredicateFn = default_predicate
    precondition: Tuple[str, ...] = ()
    timeout: float = 600.0
    poll_interval: float = 15.0
    remediation: str = ""


@dataclass(frozen=True)
class DeploymentPlan:
    """Ordered, immutable stage sequence for one target."""

    target: DeploymentTarget
    stages: Tuple[Stage, ...]

    @property
    def names(self) -> List[str]:
        return [s.name for s in self.stages]

    def stage(self, name: str) -> Stage:
        for s in self.stages:
            if s.name == name:
                return s
        raise KeyError(name)

    def through(self, last: str) -> "DeploymentPlan":
        """The prefix of this plan ending with stage *last*."""
        idx = self.names.index(last)
        return DeploymentPlan(target=self.target, stages=self.stages[: idx + 1])


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass
class StageOutcome:
    """Result of running (or verifying) one stage."""

    stage: str
    state: StageState = StageState.NOT_STARTED
    transitions: List[StageState] = field(default_factory=lambda: [StageState.NOT_STARTED])
    resource: Optional[ManagedResource] = None
    verify_only: bool = False
    skipped: bool = False
    created: bool = False
    already_existed: bool = False
    polls: int = 0
    probe_errors: int = 0
    elapsed: float = 0.0
    reason: Optional[FailureReason] = None
    error: Optional[ProvisionError] = None

    @property
    def ready(self) -> bool:
        return self.state == StageState.READY

    @property
    def failed(self) -> bool:
        return self.state == StageState.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "state": self.state.value,
            "transitions": [t.value for t in self.transitions],
            "verify_only": self.verify_only,
            "skipped": self.skipped,
            "created": self.created,
            "elapsed": round(self.elapsed, 1),
            "reason": self.reason.value if self.reason else None,
            "resource": self.resource.to_dict() if self.resource else None,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class PlanReport:
    """Terminal report of one plan run."""

    target: str
    region: str
    outcomes: List[StageOutcome] = field(default_factory=list)
    identifiers: Dict[str, str] = field(default_factory=dict)
    notices: List[str] = field(default_factory=list)
    endpoint: str = ""

    @property
    def success(self) -> bool:
        return bool(self.outcomes) and all(o.ready for o in self.outcomes)

    @property
    def failed_outcome(self) -> Optional[StageOutcome]:
        for outcome in self.outcomes:
            if outcome.failed:
                return outcome
        return None

    @property
    def creation_calls(self) -> int:
        return sum(1 for o in self.outcomes if o.created)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "region": self.region,
            "success": self.success,
            "endpoint": self.endpoint,
            "identifiers": dict(sorted(self.identifiers.items())),
            "notices": list(self.notices),
            "stages": [o.to_dict() for o in self.outcomes],
        }
