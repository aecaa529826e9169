"""Tests for vllm_eks.aws.errors and the ProvisionError taxonomy."""

from __future__ import annotations

from botocore.exceptions import ClientError, EndpointConnectionError

from vllm_eks.aws.errors import error_code, is_already_exists, is_not_found, is_transient
from vllm_eks.errors import (
    CommandError,
    MissingIdentifier,
    MissingTemplateFiles,
    PollTimeout,
    ProvisionError,
    ToolMissing,
)


def _client_error(code: str, op: str = "Describe") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, op)


# ── TestClassification ───────────────────────────────────────────────────


class TestClassification:
    def test_error_code(self):
        assert error_code(_client_error("Throttling")) == "Throttling"

    def test_error_code_non_client_error(self):
        assert error_code(ValueError("x")) == ""

    def test_not_found(self):
        assert is_not_found(_client_error("ResourceNotFoundException"))
        assert is_not_found(_client_error("FileSystemNotFound"))
        assert not is_not_found(_client_error("AccessDenied"))

    def test_already_exists(self):
        assert is_already_exists(_client_error("InvalidGroup.Duplicate"))
        assert is_already_exists(_client_error("EntityAlreadyExists"))
        assert not is_already_exists(_client_error("ResourceNotFoundException"))

    def test_transient_codes(self):
        assert is_transient(_client_error("ThrottlingException"))
        assert is_transient(_client_error("RequestLimitExceeded"))
        assert not is_transient(_client_error("AccessDenied"))

    def test_connection_errors_are_transient(self):
        assert is_transient(EndpointConnectionError(endpoint_url="https://eks"))


# ── TestProvisionErrors ──────────────────────────────────────────────────


class TestProvisionErrors:
    def test_to_dict(self):
        cause = RuntimeError("boom")
        err = ProvisionError(
            "it broke", stage="storage", resource="filesystem/x",
            remediation="fix it", cause=cause,
        )
        d = err.to_dict()
        assert d["error"] == "ProvisionError"
        assert d["stage"] == "storage"
        assert d["resource"] == "filesystem/x"
        assert d["cause"] == "boom"
        assert str(err) == "it broke"

    def test_tool_missing(self):
        err = ToolMissing("helm", "install failed")
        assert err.tool == "helm"
        assert "helm" in err.message
        assert "PATH" in err.remediation

    def test_missing_template_files(self):
        err = MissingTemplateFiles(["iam-policy.json", "fsx-lustre-pv.yaml"], "/work")
        assert err.missing == ["iam-policy.json", "fsx-lustre-pv.yaml"]
        assert "Missing 2 required file(s)" in err.message
        assert "complete project files" in err.remediation

    def test_missing_identifier(self):
        err = MissingIdentifier("persistent-volume", ["fileSystemId"])
        assert err.blueprint == "persistent-volume"
        assert err.missing == ["fileSystemId"]
        assert "fileSystemId" in err.message

    def test_poll_timeout_elapsed(self):
        err = PollTimeout("too slow", elapsed=12.5, stage="cluster")
        assert err.elapsed == 12.5
        assert err.stage == "cluster"

    def test_command_error_prefers_stderr(self):
        err = CommandError("eksctl create", 1, stderr="bad", stdout="ignored")
        assert "rc=1" in err.message
        assert "bad" in err.message
        assert "ignored" not in err.message

    def test_command_error_no_output(self):
        err = CommandError("kubectl get", 2)
        assert "(no output)" in err.message
