"""Tests for vllm_eks.aws.context - AWS context, identity, profile validation."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, ProfileNotFound

from vllm_eks.aws.context import AWSContext, ensure_profile, validate_identity
from vllm_eks.errors import AuthError


def _mock_session(account="123456789012", arn="arn:aws:iam::123456789012:user/dev", region=None):
    session = MagicMock()
    session.client.return_value.get_caller_identity.return_value = {
        "Account": account, "Arn": arn,
    }
    session.region_name = region
    return session


# ── AWSContext.build ─────────────────────────────────────────────────


class TestAWSContextBuild:
    @patch("vllm_eks.aws.context.boto3.Session")
    def test_identity(self, mock_session_cls):
        mock_session_cls.return_value = _mock_session(region="us-west-2")
        ctx = AWSContext.build("us-west-2", "vllm-profile")
        assert ctx.account_id == "123456789012"
        assert ctx.caller_arn.endswith(":user/dev")
        assert ctx.region == "us-west-2"
        assert not ctx.region_mismatch

    @patch("vllm_eks.aws.context.boto3.Session")
    def test_assumed_role(self, mock_session_cls):
        arn = "arn:aws:sts::123456789012:assumed-role/Admin/session"
        mock_session_cls.return_value = _mock_session(arn=arn)
        assert AWSContext.build("us-west-2", "p").caller_arn == arn

    @patch("vllm_eks.aws.context.boto3.Session")
    def test_region_mismatch(self, mock_session_cls):
        mock_session_cls.return_value = _mock_session(region="us-east-1")
        ctx = AWSContext.build("us-west-2", "p")
        assert ctx.profile_region == "us-east-1"
        assert ctx.region_mismatch

    @patch("vllm_eks.aws.context.boto3.Session", side_effect=ProfileNotFound(profile="nope"))
    def test_profile_not_found(self, _cls):
        with pytest.raises(AuthError, match="not found"):
            AWSContext.build("us-west-2", "nope")

    @patch("vllm_eks.aws.context.boto3.Session")
    def test_invalid_credentials(self, mock_session_cls):
        session = _mock_session()
        session.client.return_value.get_caller_identity.side_effect = ClientError(
            {"Error": {"Code": "InvalidClientTokenId", "Message": "bad"}}, "GetCallerIdentity",
        )
        mock_session_cls.return_value = session
        with pytest.raises(AuthError) as excinfo:
            AWSContext.build("us-west-2", "p")
        assert "aws configure --profile p" in excinfo.value.remediation

    def test_client_uses_session(self):
        session = MagicMock()
        ctx = AWSContext(profile="p", region="us-west-2", _session=session)
        ctx.client("eks")
        session.client.assert_called_once_with("eks")


# ── ensure_profile ───────────────────────────────────────────────────


class TestEnsureProfile:
    @patch("vllm_eks.aws.context.list_profiles", return_value=["default", "vllm-profile"])
    def test_present(self, _lp):
        ensure_profile("vllm-profile")

    @patch("vllm_eks.aws.context.list_profiles", return_value=["default"])
    def test_missing_non_interactive(self, _lp):
        with pytest.raises(AuthError) as excinfo:
            ensure_profile("vllm-profile", interactive=False)
        assert "default" in excinfo.value.remediation

    @patch("vllm_eks.aws.context.configure_profile", return_value=True)
    @patch("vllm_eks.aws.context.list_profiles")
    def test_create_interactively(self, mock_lp, mock_configure):
        mock_lp.side_effect = [["default"], ["default", "vllm-profile"]]
        ensure_profile("vllm-profile", confirm=lambda _q: True)
        mock_configure.assert_called_once_with("vllm-profile")

    @patch("vllm_eks.aws.context.configure_profile")
    @patch("vllm_eks.aws.context.list_profiles", return_value=["default"])
    def test_declined(self, _lp, mock_configure):
        with pytest.raises(AuthError):
            ensure_profile("vllm-profile", confirm=lambda _q: False)
        mock_configure.assert_not_called()

    @patch("vllm_eks.aws.context.configure_profile", return_value=False)
    @patch("vllm_eks.aws.context.list_profiles", return_value=["default"])
    def test_configure_fails(self, _lp, _configure):
        with pytest.raises(AuthError, match="Creating AWS profile"):
            ensure_profile("vllm-profile", confirm=lambda _q: True)


class TestValidateIdentity:
    @patch("vllm_eks.aws.context.AWSContext.build")
    @patch("vllm_eks.aws.context.ensure_profile")
    def test_order(self, mock_ensure, mock_build):
        mock_build.return_value = AWSContext(profile="p", region="r", account_id="1", caller_arn="a")
        ctx = validate_identity("r", "p", interactive=False)
        mock_ensure.assert_called_once()
        mock_build.assert_called_once_with("r", "p")
        assert ctx.account_id == "1"
