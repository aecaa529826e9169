"""AWS context: session, identity, and profile validation.

Wraps boto3 session creation and STS ``get-caller-identity`` into a single
:class:`AWSContext` that every downstream module can depend on.  Building
the context is the identity half of the Dependency Resolver: no stage may
run until it succeeds.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, ProfileNotFound

from vllm_eks.errors import AuthError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Profile helpers
# ---------------------------------------------------------------------------

def list_profiles() -> List[str]:
    """Return the credential profiles configured on this machine."""
    return list(boto3.Session().available_profiles)


def configure_profile(profile: str) -> bool:
    """Run ``aws configure --profile <profile>`` attached to the terminal.

    Returns True when the command exits 0.
    """
    logger.info("Running: aws configure --profile %s", profile)
    try:
        proc = subprocess.run(["aws", "configure", "--profile", profile])
    except FileNotFoundError:
        return False
    return proc.returncode == 0


def ensure_profile(
    profile: str,
    *,
    interactive: bool = True,
    confirm: Optional[Callable[[str], bool]] = None,
) -> None:
    """Make sure *profile* exists, offering to create it when interactive.

    Raises :class:`AuthError` when the profile is absent and not created.
    """
    available = list_profiles()
    if profile in available:
        return

    remediation = (
        f"Create the profile: aws configure --profile {profile}; "
        "or export AWS_PROFILE=<existing-profile>. "
        f"Available profiles: {', '.join(available) or '(none)'}"
    )
    if interactive and confirm is not None:
        if confirm(f"AWS profile '{profile}' not found. Create it now?"):
            if configure_profile(profile) and profile in list_profiles():
                return
            raise AuthError(
                f"Creating AWS profile '{profile}' failed", remediation=remediation,
            )
    raise AuthError(f"AWS profile '{profile}' not found", remediation=remediation)


# ---------------------------------------------------------------------------
# AWSContext
# ---------------------------------------------------------------------------

@dataclass
class AWSContext:
    """Bag of validated AWS identity + session factory.

    Attributes:
        profile: Resolved AWS profile name.
        region: Target AWS region (e.g. ``us-west-2``).
        account_id: 12-digit AWS account ID.
        caller_arn: Full ARN from ``sts:GetCallerIdentity``.
        profile_region: Default region configured on the profile, if any.
    """

    profile: str
    region: str
    account_id: str = ""
    caller_arn: str = ""
    profile_region: str = ""
    _session: Any = field(default=None, repr=False, compare=False)

    # -- factory ----------------------------------------------------------

    @classmethod
    def build(cls, region: str, profile: str) -> "AWSContext":
        """Construct an :class:`AWSContext` by calling STS.

        Raises :class:`AuthError` on credential / network failures.
        """
        try:
            session = boto3.Session(profile_name=profile, region_name=region)
        except ProfileNotFound as exc:
            raise AuthError(
                f"AWS profile '{profile}' not found",
                remediation=f"Run: aws configure --profile {profile}",
                cause=exc,
            ) from exc

        try:
            identity = session.client("sts").get_caller_identity()
        except (BotoCoreError, ClientError) as exc:
            raise AuthError(
                f"AWS profile '{profile}' exists but credentials are invalid "
                f"or inaccessible in region {region}: {exc}",
                remediation=f"Please reconfigure: aws configure --profile {profile}",
                cause=exc,
            ) from exc

        profile_region = ""
        try:
            profile_region = boto3.Session(profile_name=profile).region_name or ""
        except ProfileNotFound:
            pass

        return cls(
            profile=profile,
            region=region,
            account_id=identity["Account"],
            caller_arn=identity["Arn"],
            profile_region=profile_region,
            _session=session,
        )

    # -- session accessor -------------------------------------------------

    @property
    def session(self) -> boto3.Session:
        """Return the cached :class:`boto3.Session`."""
        if self._session is None:
            self._session = boto3.Session(
                profile_name=self.profile, region_name=self.region
            )
        return self._session

    def client(self, service: str, **kwargs: Any) -> Any:
        """Create a boto3 client for *service*."""
        return self.session.client(service, **kwargs)

    @property
    def region_mismatch(self) -> bool:
        """True when the profile's default region differs from the target."""
        return bool(self.profile_region) and self.profile_region != self.region


def validate_identity(
    region: str,
    profile: str,
    *,
    interactive: bool = True,
    confirm: Optional[Callable[[str], bool]] = None,
) -> AWSContext:
    """Ensure the profile exists, then resolve the caller identity."""
    ensure_profile(profile, interactive=interactive, confirm=confirm)
    ctx = AWSContext.build(region, profile)
    logger.info(
        "AWS context: account=%s arn=%s region=%s",
        ctx.account_id, ctx.caller_arn, ctx.region,
    )
    return ctx
