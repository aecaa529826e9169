"""Error taxonomy for the provisioning control plane.

Every failure the orchestrator can stop on is a :class:`ProvisionError`.
The Stage Runner maps them onto stage outcomes:

* ``ToolMissing`` / ``AuthError`` / ``MissingTemplateFiles`` - fatal pre-flight.
* ``ProbeError`` - transient, retried with a bounded count.
* ``AlreadyExists`` - not an error; creation calls normalise it to success.
* ``NotFound`` - normal outcome that drives the create path.
* ``CreationFailed`` / ``PollTimeout`` - fatal for the stage, halt the plan.
* ``MissingIdentifier`` - a manifest was rendered before its dependency stage.
* ``InvalidTemplate`` - a working-directory file is present but unparseable.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class ProvisionError(Exception):
    """Base exception carrying the stage, resource and a remediation hint."""

    def __init__(
        self,
        message: str,
        *,
        stage: str = "",
        resource: str = "",
        remediation: str = "",
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.resource = resource
        self.remediation = remediation
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "stage": self.stage,
            "resource": self.resource,
            "remediation": self.remediation,
            "cause": str(self.cause) if self.cause else "",
        }


class ToolMissing(ProvisionError):
    """A required CLI is absent and could not be installed."""

    def __init__(self, tool: str, reason: str, *, remediation: str = "") -> None:
        super().__init__(
            f"Required tool '{tool}' is not available: {reason}",
            resource=tool,
            remediation=remediation or f"Install '{tool}' and make sure it is on PATH.",
        )
        self.tool = tool
        self.reason = reason


class AuthError(ProvisionError):
    """Credentials for the selected profile are missing or invalid."""


class MissingTemplateFiles(ProvisionError):
    """One or more required template files are absent from the working directory."""

    def __init__(self, missing: List[str], workdir: str) -> None:
        super().__init__(
            f"Missing {len(missing)} required file(s) in {workdir}: {', '.join(missing)}",
            remediation=(
                "Ensure you have the complete project files in the working "
                "directory (see templates/) before running this command."
            ),
        )
        self.missing = list(missing)
        self.workdir = workdir


class InvalidTemplate(ProvisionError):
    """A working-directory template or policy file cannot be parsed."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(
            f"{path} is not valid: {reason}",
            resource=path,
            remediation=(
                "Fix the syntax of the file (or restore it from templates/) "
                "and re-run the same command."
            ),
        )
        self.path = path
        self.reason = reason


class ProbeError(ProvisionError):
    """A read-only describe call failed transiently (throttling, network)."""


class AlreadyExists(ProvisionError):
    """The provider reported that the resource already exists."""


class NotFound(ProvisionError):
    """The provider reported that the resource does not exist."""


class CreationFailed(ProvisionError):
    """A creation call was rejected, or the provider reported a failed resource."""


class PollTimeout(ProvisionError):
    """The resource did not reach a ready state within the stage timeout.

    Distinct from :class:`CreationFailed`: the resource may still converge,
    and a re-run can pick it up without re-creating anything.
    """

    def __init__(self, message: str, *, elapsed: float = 0.0, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.elapsed = elapsed


class PreconditionFailed(ProvisionError):
    """An earlier stage is not ready, so this stage may not run."""


class MissingIdentifier(ProvisionError):
    """A blueprint slot has no bound identifier at render time."""

    def __init__(self, blueprint: str, missing: List[str]) -> None:
        super().__init__(
            f"Blueprint '{blueprint}' is missing identifier(s): {', '.join(missing)}",
            resource=blueprint,
            remediation=(
                "The stage that discovers these identifiers has not completed. "
                "Re-run the earlier provisioning phases first."
            ),
        )
        self.blueprint = blueprint
        self.missing = list(missing)


class CommandError(ProvisionError):
    """An external CLI (eksctl, kubectl, helm, aws) exited non-zero."""

    def __init__(
        self,
        command: str,
        returncode: int,
        stderr: str = "",
        stdout: str = "",
        **kwargs: Any,
    ) -> None:
        detail = stderr or stdout or "(no output)"
        super().__init__(f"'{command}' failed (rc={returncode}): {detail}", **kwargs)
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
