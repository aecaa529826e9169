"""IAM policy ensurer for the load-balancer controller service account."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from botocore.exceptions import ClientError

from vllm_eks.aws.errors import is_already_exists
from vllm_eks.errors import CreationFailed, InvalidTemplate

logger = logging.getLogger(__name__)


def policy_arn(account_id: str, policy_name: str) -> str:
    return f"arn:aws:iam::{account_id}:policy/{policy_name}"


def read_policy_document(path: str | Path) -> str:
    """Return the policy document at *path* as compact JSON.

    Raises:
        InvalidTemplate: If the file is not valid JSON.
    """
    path = Path(path)
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise InvalidTemplate(str(path), f"not valid JSON ({exc})") from exc
    return json.dumps(document)


def ensure_managed_policy(
    iam_client: Any,
    policy_name: str,
    document: str,
    *,
    account_id: str,
) -> str:
    """Create *policy_name* from *document*, or reuse the existing one.

    Returns the policy ARN either way.
    """
    try:
        resp = iam_client.create_policy(PolicyName=policy_name, PolicyDocument=document)
    except ClientError as exc:
        if is_already_exists(exc):
            arn = policy_arn(account_id, policy_name)
            logger.info("IAM policy %s already exists (%s)", policy_name, arn)
            return arn
        raise CreationFailed(
            f"Failed to create IAM policy '{policy_name}': {exc}",
            resource=f"iam-policy/{policy_name}",
            remediation="Create the policy manually or check IAM permissions.",
            cause=exc,
        ) from exc
    arn = resp.get("Policy", {}).get("Arn", "") or policy_arn(account_id, policy_name)
    logger.info("Created IAM policy %s: %s", policy_name, arn)
    return arn
