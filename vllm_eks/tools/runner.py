"""Subprocess wrapper shared by the eksctl, kubectl and helm adapters.

The control plane never reimplements those tools; it shells out and parses
their output, the same way for every tool.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from vllm_eks.errors import CommandError

logger = logging.getLogger(__name__)

#: Return code reported when the executable itself is missing.
RC_NOT_FOUND = 127

#: Return code reported when the command exceeded its timeout.
RC_TIMEOUT = 124

_ALREADY_EXISTS_MARKERS = (
    "already exists",
    "alreadyexists",
    "entityalreadyexists",
)

_NOT_FOUND_MARKERS = (
    "not found",
    "notfound",
    "resourcenotfoundexception",
    "does not exist",
    "no nodegroups found",
)


@dataclass
class CommandResult:
    """Parsed outcome of one CLI invocation."""

    command: str
    returncode: int
    stdout: str = ""
    stderr: str = ""
    json_body: Any = field(default=None)

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def timed_out(self) -> bool:
        return self.returncode == RC_TIMEOUT

    @property
    def output(self) -> str:
        return f"{self.stderr}\n{self.stdout}".lower()

    @property
    def already_exists(self) -> bool:
        return not self.success and any(m in self.output for m in _ALREADY_EXISTS_MARKERS)

    @property
    def not_found(self) -> bool:
        if self.success or self.returncode == RC_NOT_FOUND:
            return False
        return any(m in self.output for m in _NOT_FOUND_MARKERS)

    def raise_for_status(self, **kwargs: Any) -> "CommandResult":
        """Raise :class:`CommandError` when the command exited non-zero."""
        if not self.success:
            raise CommandError(
                self.command, self.returncode, self.stderr, self.stdout, **kwargs,
            )
        return self


def run_command(
    args: Sequence[str],
    *,
    profile: Optional[str] = None,
    region: Optional[str] = None,
    input_text: Optional[str] = None,
    timeout: Optional[float] = None,
    extra_env: Optional[Dict[str, str]] = None,
    parse_json: bool = False,
) -> CommandResult:
    """Run *args* and return a :class:`CommandResult`.

    *profile* and *region* are injected as ``AWS_PROFILE`` / ``AWS_REGION``
    so every tool talks to the same account and region.
    """
    cmd: List[str] = list(args)
    env = {**os.environ}
    if profile:
        env["AWS_PROFILE"] = profile
    if region:
        env["AWS_REGION"] = region
        env["AWS_DEFAULT_REGION"] = region
    if extra_env:
        env.update(extra_env)

    command = " ".join(cmd)
    logger.info("Running: %s", command)

    try:
        proc = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            env=env,
            input=input_text,
            timeout=timeout,
        )
    except FileNotFoundError:
        return CommandResult(
            command=command,
            returncode=RC_NOT_FOUND,
            stderr=f"{cmd[0]} CLI not found on PATH",
        )
    except subprocess.TimeoutExpired:
        return CommandResult(
            command=command,
            returncode=RC_TIMEOUT,
            stderr=f"timed out after {timeout}s",
        )

    result = CommandResult(
        command=command,
        returncode=proc.returncode,
        stdout=(proc.stdout or "").strip(),
        stderr=(proc.stderr or "").strip(),
    )

    if parse_json and result.stdout:
        try:
            result.json_body = json.loads(result.stdout)
        except json.JSONDecodeError:
            result.json_body = None

    if not result.success:
        logger.debug(
            "Command failed (rc=%d): %s", result.returncode, result.stderr or result.stdout,
        )
    return result
