"""Tests for vllm_eks.endpoint - caller IP lookup and the served-endpoint check."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests

from vllm_eks.endpoint import (
    CHECKIP_URL,
    EndpointCheck,
    check_endpoint,
    detect_public_cidr,
)


# ── helpers ──────────────────────────────────────────────────────────────


def _response(status: int = 200, text: str = "", body=None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.text = text
    if isinstance(body, Exception):
        resp.json.side_effect = body
    else:
        resp.json.return_value = body
    if not resp.ok:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    return resp


def _session(health, completion=None) -> MagicMock:
    session = MagicMock()
    if isinstance(health, Exception):
        session.get.side_effect = health
    else:
        session.get.return_value = health
    if isinstance(completion, Exception):
        session.post.side_effect = completion
    else:
        session.post.return_value = completion
    return session


# ── TestDetectPublicCidr ─────────────────────────────────────────────────


class TestDetectPublicCidr:
    @patch("vllm_eks.endpoint.requests.get")
    def test_ipv4_becomes_host_cidr(self, mock_get):
        mock_get.return_value = _response(text="198.51.100.23\n")
        assert detect_public_cidr() == "198.51.100.23/32"
        assert mock_get.call_args[0][0] == CHECKIP_URL

    @patch("vllm_eks.endpoint.requests.get")
    def test_network_error(self, mock_get):
        mock_get.side_effect = requests.ConnectionError("no route")
        assert detect_public_cidr() == ""

    @patch("vllm_eks.endpoint.requests.get")
    def test_http_error(self, mock_get):
        mock_get.return_value = _response(status=503)
        assert detect_public_cidr() == ""

    @pytest.mark.parametrize("text", ["<html>captive portal</html>", "", "2001:db8::1"])
    @patch("vllm_eks.endpoint.requests.get")
    def test_unusable_answer(self, mock_get, text):
        mock_get.return_value = _response(text=text)
        assert detect_public_cidr() == ""


# ── TestCheckEndpoint ────────────────────────────────────────────────────


class TestCheckEndpoint:
    def test_health_unreachable(self):
        session = _session(requests.ConnectTimeout("timed out"))
        check = check_endpoint("http://lb.example", "m", session=session)
        assert not check.healthy
        assert not check.completion_ok
        assert "unreachable" in check.detail
        session.post.assert_not_called()

    def test_health_not_ok(self):
        session = _session(_response(status=503))
        check = check_endpoint("http://lb.example", "m", session=session)
        assert not check.healthy
        assert check.detail == "/health answered 503"
        session.post.assert_not_called()

    def test_completion_with_choices(self):
        session = _session(_response(), _response(body={"choices": [{"text": " there"}]}))
        check = check_endpoint("http://lb.example", "Qwen/Qwen2.5-0.5B-Instruct", session=session)
        assert check == EndpointCheck("http://lb.example", healthy=True, completion_ok=True)
        session.get.assert_called_once_with("http://lb.example/health", timeout=10.0)
        url = session.post.call_args[0][0]
        payload = session.post.call_args[1]["json"]
        assert url == "http://lb.example/v1/completions"
        assert payload["model"] == "Qwen/Qwen2.5-0.5B-Instruct"
        assert payload["max_tokens"] == 10

    def test_completion_without_choices(self):
        session = _session(_response(), _response(status=500, body={"error": "loading"}))
        check = check_endpoint("http://lb.example", "m", session=session)
        assert check.healthy
        assert not check.completion_ok
        assert check.detail == "completion answered 500 without choices"

    def test_completion_not_json(self):
        session = _session(_response(), _response(body=ValueError("Expecting value")))
        check = check_endpoint("http://lb.example", "m", session=session)
        assert check.healthy
        assert not check.completion_ok
        assert "Expecting value" in check.detail

    def test_completion_timeout(self):
        session = _session(_response(), requests.ReadTimeout("read timed out"))
        check = check_endpoint("http://lb.example", "m", session=session)
        assert check.healthy
        assert "completion request failed" in check.detail

    @patch("vllm_eks.endpoint.requests.post")
    @patch("vllm_eks.endpoint.requests.get")
    def test_defaults_to_module_level_requests(self, mock_get, mock_post):
        mock_get.return_value = _response()
        mock_post.return_value = _response(body={"choices": []})
        assert check_endpoint("http://lb.example", "m").completion_ok
