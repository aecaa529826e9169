"""Deployment target loading.

Builds a :class:`DeploymentTarget` from an optional YAML file plus the
documented environment fallbacks.  The YAML layout is::

    deployment:
      cluster_name: demo-cluster
      instance_types: [g5.xlarge, g5.2xlarge]
      stage_timings:
        cluster: {timeout: 3000, poll_interval: 30}

Region resolution precedence:
1. Explicit ``--region`` flag
2. ``AWS_REGION`` / ``AWS_DEFAULT_REGION`` env vars
3. ``region`` key in the YAML file
4. Hardcoded fallback (``us-west-2``)

Profile resolution precedence:
1. Explicit ``--profile`` flag
2. ``AWS_PROFILE`` env var
3. ``profile`` key in the YAML file
4. Hardcoded fallback (``vllm-profile``)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError

from vllm_eks.config.models import DEFAULT_PROFILE, DEFAULT_REGION, DeploymentTarget

logger = logging.getLogger(__name__)

#: Config file picked up from the working directory when ``--config`` is omitted.
DEFAULT_CONFIG_FILENAME = "deployment.yaml"


def resolve_region(region: Optional[str] = None, file_value: str = "") -> str:
    """Return the target region."""
    return (
        region
        or os.environ.get("AWS_REGION")
        or os.environ.get("AWS_DEFAULT_REGION")
        or file_value
        or DEFAULT_REGION
    )


def resolve_profile(profile: Optional[str] = None, file_value: str = "") -> str:
    """Return the AWS credentials profile name."""
    return profile or os.environ.get("AWS_PROFILE") or file_value or DEFAULT_PROFILE


def read_config_file(path: str | Path) -> Dict[str, Any]:
    """Return the ``deployment:`` mapping of a YAML config file.

    A missing file yields an empty mapping; a malformed one raises
    :class:`ValueError`.
    """
    path = Path(path)
    if not path.is_file():
        return {}
    with open(path, encoding="utf-8") as fh:
        try:
            raw = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Config file {path} is not valid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    section = raw.get("deployment", {}) or {}
    if not isinstance(section, dict):
        raise ValueError(f"'deployment' in {path} must be a mapping")
    return dict(section)


def load_target(
    config_path: Optional[str | Path] = None,
    *,
    region: Optional[str] = None,
    profile: Optional[str] = None,
    workdir: Optional[str | Path] = None,
) -> DeploymentTarget:
    """Build the immutable :class:`DeploymentTarget` for this invocation.

    Raises:
        ValueError: If the config file is malformed or fails validation.
    """
    if config_path is None:
        config_path = Path(workdir or ".") / DEFAULT_CONFIG_FILENAME
        if Path(config_path).is_file():
            logger.info("Using config file %s", config_path)

    values = read_config_file(config_path)
    values["region"] = resolve_region(region, str(values.get("region", "") or ""))
    values["profile"] = resolve_profile(profile, str(values.get("profile", "") or ""))

    try:
        return DeploymentTarget.model_validate(values)
    except ValidationError as exc:
        raise ValueError(f"Invalid deployment config: {exc}") from exc
