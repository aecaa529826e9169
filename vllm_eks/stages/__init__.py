"""Deployment plan, stage models and the Stage Runner state machine."""

from vllm_eks.stages.models import (
    DeploymentPlan,
    FailureReason,
    PlanReport,
    PollVerdict,
    Stage,
    StageContext,
    StageOutcome,
    StageState,
    default_predicate,
)
from vllm_eks.stages.plan import PHASE_FILES, PHASES, STAGE_ORDER, build_plan
from vllm_eks.stages.runner import MAX_CONSECUTIVE_PROBE_ERRORS, StageRunner

__all__ = [
    "DeploymentPlan",
    "FailureReason",
    "MAX_CONSECUTIVE_PROBE_ERRORS",
    "PHASES",
    "PHASE_FILES",
    "PlanReport",
    "PollVerdict",
    "STAGE_ORDER",
    "Stage",
    "StageContext",
    "StageOutcome",
    "StageRunner",
    "StageState",
    "build_plan",
    "default_predicate",
]
