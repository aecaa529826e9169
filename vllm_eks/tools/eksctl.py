"""eksctl adapter: cluster / node group lifecycle and IAM wiring.

Cluster configs are streamed on stdin (``-f -``) so nothing rendered is
left behind in the working directory.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from vllm_eks.tools.runner import CommandResult, run_command

logger = logging.getLogger(__name__)

#: eksctl creation calls block until CloudFormation settles.
CREATE_TIMEOUT = 3600.0


class Eksctl:
    """Wrapper around the ``eksctl`` binary."""

    def __init__(
        self,
        *,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        binary: str = "eksctl",
    ) -> None:
        self.profile = profile
        self.region = region
        self.binary = binary

    def _run(self, args: List[str], **kwargs: Any) -> CommandResult:
        return run_command(
            [self.binary, *args], profile=self.profile, region=self.region, **kwargs,
        )

    # -- creation (callers normalise already-exists) ----------------------

    def create_cluster(self, config: str) -> CommandResult:
        return self._run(["create", "cluster", "-f", "-"], input_text=config, timeout=CREATE_TIMEOUT)

    def create_nodegroup(self, config: str) -> CommandResult:
        return self._run(["create", "nodegroup", "-f", "-"], input_text=config, timeout=CREATE_TIMEOUT)

    def associate_oidc_provider(self, cluster: str) -> CommandResult:
        return self._run([
            "utils", "associate-iam-oidc-provider",
            "--region", self.region or "",
            "--cluster", cluster,
            "--approve",
        ])

    def create_iam_service_account(
        self,
        cluster: str,
        *,
        namespace: str,
        name: str,
        policy_arn: str,
    ) -> CommandResult:
        return self._run([
            "create", "iamserviceaccount",
            "--cluster", cluster,
            "--region", self.region or "",
            "--namespace", namespace,
            "--name", name,
            "--attach-policy-arn", policy_arn,
            "--override-existing-serviceaccounts",
            "--approve",
        ], timeout=900)

    def write_kubeconfig(self, cluster: str) -> CommandResult:
        return self._run([
            "utils", "write-kubeconfig",
            "--cluster", cluster,
            "--region", self.region or "",
        ])

    # -- deletion (callers tolerate not-found) ----------------------------

    def delete_nodegroup(self, cluster: str, name: str) -> CommandResult:
        return self._run([
            "delete", "nodegroup",
            "--cluster", cluster,
            "--name", name,
            "--region", self.region or "",
            "--wait",
        ], timeout=CREATE_TIMEOUT)

    def delete_cluster(self, cluster: str) -> CommandResult:
        return self._run([
            "delete", "cluster",
            "--name", cluster,
            "--region", self.region or "",
            "--wait",
        ], timeout=CREATE_TIMEOUT)
