"""kubectl adapter: apply / get / delete / wait over declarative manifests."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from vllm_eks.errors import PollTimeout, ProbeError
from vllm_eks.tools.runner import CommandResult, run_command

logger = logging.getLogger(__name__)


class Kubectl:
    """Thin wrapper around the ``kubectl`` binary for one kubeconfig context."""

    def __init__(
        self,
        *,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        binary: str = "kubectl",
    ) -> None:
        self.profile = profile
        self.region = region
        self.binary = binary

    def _run(self, args: List[str], **kwargs: Any) -> CommandResult:
        return run_command(
            [self.binary, *args], profile=self.profile, region=self.region, **kwargs,
        )

    # -- reads ------------------------------------------------------------

    def get(
        self, kind: str, name: str = "", *, namespace: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Return the object as a dict, or None when it does not exist.

        Raises :class:`ProbeError` on any other failure so callers can retry.
        """
        args = ["get", kind]
        if name:
            args.append(name)
        if namespace:
            args += ["-n", namespace]
        args += ["-o", "json"]
        result = self._run(args, parse_json=True)
        if result.not_found:
            return None
        if not result.success or not isinstance(result.json_body, dict):
            raise ProbeError(
                f"kubectl get {kind} {name} failed: {result.stderr or result.stdout}",
                resource=f"{kind}/{name}" if name else kind,
            )
        return result.json_body

    def list_items(
        self, kind: str, *, namespace: Optional[str] = None, selector: str = "",
    ) -> List[Dict[str, Any]]:
        """Return the ``items`` of a list query (empty when nothing matches)."""
        args = ["get", kind]
        if namespace:
            args += ["-n", namespace]
        if selector:
            args += ["-l", selector]
        args += ["-o", "json"]
        result = self._run(args, parse_json=True)
        if not result.success or not isinstance(result.json_body, dict):
            raise ProbeError(
                f"kubectl get {kind} failed: {result.stderr or result.stdout}",
                resource=kind,
            )
        return list(result.json_body.get("items", []))

    # -- writes -----------------------------------------------------------

    def apply(self, manifest: str, *, namespace: Optional[str] = None) -> CommandResult:
        """``kubectl apply -f -`` with *manifest* on stdin."""
        args = ["apply", "-f", "-"]
        if namespace:
            args += ["-n", namespace]
        return self._run(args, input_text=manifest).raise_for_status()

    def apply_url(self, url: str) -> CommandResult:
        return self._run(["apply", "-f", url]).raise_for_status()

    def delete(
        self,
        kind: str,
        name: str,
        *,
        namespace: Optional[str] = None,
        force: bool = False,
        wait: bool = True,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Delete an object; a missing object is not an error."""
        args = ["delete", kind, name, "--ignore-not-found"]
        if namespace:
            args += ["-n", namespace]
        if force:
            args += ["--force", "--grace-period=0"]
        if not wait:
            args.append("--wait=false")
        return self._run(args, timeout=timeout)

    def label_node(self, node: str, key: str, value: str) -> CommandResult:
        return self._run(
            ["label", "node", node, f"{key}={value}", "--overwrite"],
        ).raise_for_status()

    # -- blocking waits ---------------------------------------------------

    def wait(
        self,
        condition: str,
        target: str,
        *,
        namespace: Optional[str] = None,
        timeout: float = 600,
    ) -> CommandResult:
        """``kubectl wait --for=condition=<condition>`` with a caller timeout.

        Raises :class:`PollTimeout` when the condition is not met in time.
        """
        args = ["wait", f"--for=condition={condition}", target]
        if namespace:
            args += ["-n", namespace]
        args.append(f"--timeout={int(timeout)}s")
        # Give kubectl its own timeout first; the subprocess guard is a backstop.
        result = self._run(args, timeout=timeout + 30)
        if result.success:
            return result
        if result.timed_out or "timed out" in result.output:
            raise PollTimeout(
                f"Condition {condition} not met for {target} within {int(timeout)}s",
                resource=target,
                elapsed=timeout,
            )
        return result.raise_for_status(resource=target)
