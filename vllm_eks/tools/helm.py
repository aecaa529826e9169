"""helm adapter: repo management and install-or-upgrade of named charts."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from vllm_eks.errors import ProbeError
from vllm_eks.tools.runner import CommandResult, run_command

logger = logging.getLogger(__name__)


class Helm:
    """Wrapper around the ``helm`` binary.  Installs are idempotent by release name."""

    def __init__(
        self,
        *,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        binary: str = "helm",
    ) -> None:
        self.profile = profile
        self.region = region
        self.binary = binary

    def _run(self, args: List[str], **kwargs: Any) -> CommandResult:
        return run_command(
            [self.binary, *args], profile=self.profile, region=self.region, **kwargs,
        )

    def repo_add(self, name: str, url: str) -> bool:
        """Register a chart repository.  Returns False when it was already present."""
        result = self._run(["repo", "add", name, url])
        if result.success:
            return True
        if result.already_exists:
            logger.debug("Helm repo %s already registered", name)
            return False
        result.raise_for_status(resource=f"helm-repo/{name}")
        return False

    def repo_update(self) -> CommandResult:
        return self._run(["repo", "update"]).raise_for_status()

    def upgrade_install(
        self,
        release: str,
        chart: str,
        *,
        namespace: str,
        values: Optional[Dict[str, str]] = None,
        version: str = "",
        create_namespace: bool = False,
        wait: bool = False,
        timeout: float = 300,
    ) -> CommandResult:
        """``helm upgrade --install`` one release."""
        args = ["upgrade", "--install", release, chart, "--namespace", namespace]
        if version:
            args.append(f"--version={version}")
        if create_namespace:
            args.append("--create-namespace")
        for key, value in sorted((values or {}).items()):
            args += ["--set", f"{key}={value}"]
        if wait:
            args += ["--wait", "--timeout", f"{int(timeout)}s"]
        return self._run(args, timeout=timeout + 60).raise_for_status(
            resource=f"helm-release/{release}",
        )

    def list_releases(self) -> List[Dict[str, Any]]:
        """Return every release in every namespace (``helm list -A -a``)."""
        result = self._run(["list", "--all-namespaces", "--all", "-o", "json"], parse_json=True)
        if not result.success or not isinstance(result.json_body, list):
            raise ProbeError(
                f"helm list failed: {result.stderr or result.stdout}",
                resource="helm-releases",
            )
        return list(result.json_body)
