"""Tests for vllm_eks.reports - pre-flight check results and JSON output."""

from __future__ import annotations

import json

import pytest

from vllm_eks.reports import CheckResult, CheckStatus, Gate, PreflightReport


# ── CheckStatus enum ────────────────────────────────────────────────────


class TestCheckStatus:
    def test_values(self):
        assert CheckStatus.PASS.value == "PASS"
        assert CheckStatus.WARN.value == "WARN"
        assert CheckStatus.FAIL.value == "FAIL"

    def test_from_string(self):
        assert CheckStatus("FAIL") is CheckStatus.FAIL


# ── PreflightReport ─────────────────────────────────────────────────────


class TestPreflightReport:
    def test_empty_report_passes(self):
        report = PreflightReport()
        assert report.passed
        assert report.failed_gate is None
        assert len(report.run_id) == 14

    def test_warn_does_not_fail(self):
        report = PreflightReport(checks=[
            CheckResult(id="aws.region", status=CheckStatus.WARN, remediation="r"),
        ])
        assert report.passed
        assert report.failed_gate is None

    def test_any_fail_fails(self):
        report = PreflightReport(checks=[
            CheckResult(id="files.required", status=CheckStatus.PASS),
            CheckResult(id="toolchain.helm", status=CheckStatus.FAIL),
        ])
        assert not report.passed
        assert [c.id for c in report.failed_checks] == ["toolchain.helm"]
        assert report.failed_gate == Gate.TOOLCHAIN

    def test_first_failure_names_the_gate(self):
        report = PreflightReport(checks=[
            CheckResult(id="files.required", status=CheckStatus.FAIL),
            CheckResult(id="aws.identity", status=CheckStatus.FAIL),
        ])
        assert report.failed_gate == Gate.FILES


class TestCheckResult:
    @pytest.mark.parametrize("check_id, gate", [
        ("files.required", Gate.FILES),
        ("toolchain.kubectl", Gate.TOOLCHAIN),
        ("aws.region", Gate.AWS),
    ])
    def test_gate_from_id(self, check_id, gate):
        assert CheckResult(id=check_id, status=CheckStatus.PASS).gate == gate

    def test_unknown_gate(self):
        with pytest.raises(ValueError):
            CheckResult(id="network.vpc", status=CheckStatus.FAIL).gate


class TestSortedJson:
    def test_keys_sorted_and_order_kept(self):
        report = PreflightReport(
            run_id="20260101000000",
            cluster_name="demo-cluster",
            region="us-west-2",
            checks=[
                CheckResult(id="toolchain.kubectl", status=CheckStatus.PASS, details={"version": "v1", "installed": True}),
                CheckResult(id="aws.identity", status=CheckStatus.FAIL, remediation="run aws configure"),
            ],
        )
        text = report.to_sorted_json()
        data = json.loads(text)
        assert list(data) == sorted(data)
        assert [c["id"] for c in data["checks"]] == ["toolchain.kubectl", "aws.identity"]
        assert data["checks"][1]["status"] == "FAIL"
        assert text.index('"installed"') < text.index('"version"')

    def test_deterministic(self):
        report = PreflightReport(run_id="x", checks=[CheckResult(id="a", status=CheckStatus.PASS)])
        assert report.to_sorted_json() == report.to_sorted_json(indent=2)
