"""Deployment target configuration."""

from vllm_eks.config.loader import (
    DEFAULT_CONFIG_FILENAME,
    load_target,
    read_config_file,
    resolve_profile,
    resolve_region,
)
from vllm_eks.config.models import (
    DEFAULT_PROFILE,
    DEFAULT_REGION,
    DEFAULT_STAGE_TIMINGS,
    DeploymentTarget,
    StageTiming,
)

__all__ = [
    "DEFAULT_CONFIG_FILENAME",
    "DEFAULT_PROFILE",
    "DEFAULT_REGION",
    "DEFAULT_STAGE_TIMINGS",
    "DeploymentTarget",
    "StageTiming",
    "load_target",
    "read_config_file",
    "resolve_profile",
    "resolve_region",
]
