"""Pre-flight report models.

Every check belongs to one of three gates, run in this order: ``files``
(working-directory templates), ``toolchain`` (aws, eksctl, kubectl, helm)
and ``aws`` (credentials and region).  The gate is the prefix of the check
id, so ``toolchain.helm`` fails the toolchain gate.

``vllm-eks preflight --json`` prints::

    {
      "run_id": "YYYYMMDDHHMMSS",
      "cluster_name": "vllm-cluster-west2",
      "region": "us-west-2",
      "aws_profile": "vllm-profile",
      "account_id": "123456789012",
      "caller_arn": "arn:aws:iam::123456789012:user/ops",
      "checks": [
        {"id": "files.required", "status": "PASS", "details": {...}, "remediation": ""},
        {"id": "toolchain.helm", "status": "FAIL", "details": {...}, "remediation": "..."}
      ]
    }
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class CheckStatus(str, Enum):
    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"


class Gate(str, Enum):
    """Pre-flight gates, in the order they run."""

    FILES = "files"
    TOOLCHAIN = "toolchain"
    AWS = "aws"


class CheckResult(BaseModel):
    """One pre-flight check.

    Attributes:
        id: ``<gate>.<subject>``, e.g. ``toolchain.helm`` or ``aws.region``.
        status: PASS, WARN, or FAIL.  WARN never blocks a deployment.
        details: Structured data (tool versions, missing files, account ID).
        remediation: What the operator should do.  Empty when status is PASS.
    """

    id: str
    status: CheckStatus
    details: Dict[str, Any] = Field(default_factory=dict)
    remediation: str = ""

    @property
    def gate(self) -> Gate:
        return Gate(self.id.split(".", 1)[0])


class PreflightReport(BaseModel):
    """Everything checked before the first cloud mutation of a run."""

    run_id: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S"),
    )
    cluster_name: Optional[str] = None
    region: str = ""
    aws_profile: str = ""
    account_id: str = ""
    caller_arn: str = ""
    checks: List[CheckResult] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.failed_checks

    @property
    def failed_checks(self) -> List[CheckResult]:
        return [c for c in self.checks if c.status == CheckStatus.FAIL]

    @property
    def failed_gate(self) -> Optional[Gate]:
        """Gate of the first failed check, or None when every gate passed."""
        failed = self.failed_checks
        return failed[0].gate if failed else None

    def to_sorted_json(self, indent: int = 2) -> str:
        """Serialise with sorted keys for deterministic output."""
        return json.dumps(self.model_dump(mode="json"), indent=indent, sort_keys=True)
