"""HTTP calls against the public internet: caller IP lookup and endpoint checks.

Both are best-effort.  Neither raises; callers turn an unsuccessful result
into a warning notice.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

CHECKIP_URL = "https://checkip.amazonaws.com"
OPEN_CIDR = "0.0.0.0/0"

HEALTH_TIMEOUT: float = 10.0
COMPLETION_TIMEOUT: float = 30.0


def detect_public_cidr(*, url: str = CHECKIP_URL, timeout: float = 10.0) -> str:
    """Return ``<caller-ipv4>/32``, or ``""`` when it cannot be determined."""
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as exc:
        logger.warning("Public IP lookup via %s failed: %s", url, exc)
        return ""
    text = resp.text.strip()
    try:
        addr = ipaddress.ip_address(text)
    except ValueError:
        logger.warning("Public IP lookup returned %r", text[:64])
        return ""
    if addr.version != 4:
        logger.warning("Public IP %s is not IPv4", addr)
        return ""
    return f"{addr}/32"


@dataclass
class EndpointCheck:
    """Outcome of :func:`check_endpoint`."""

    endpoint: str
    healthy: bool = False
    completion_ok: bool = False
    detail: str = ""


def _completion_payload(model_id: str) -> Dict[str, Any]:
    return {"model": model_id, "prompt": "Hello", "max_tokens": 10, "temperature": 0.7}


def check_endpoint(
    endpoint: str,
    model_id: str,
    *,
    session: Optional[requests.Session] = None,
    health_timeout: float = HEALTH_TIMEOUT,
    completion_timeout: float = COMPLETION_TIMEOUT,
) -> EndpointCheck:
    """Call ``<endpoint>/health``, then send one completion request.

    The completion is only attempted once ``/health`` answers 2xx.  A
    response counts as working when its JSON body has ``choices``.
    """
    http = session or requests
    check = EndpointCheck(endpoint=endpoint)

    try:
        resp = http.get(f"{endpoint}/health", timeout=health_timeout)
    except requests.RequestException as exc:
        check.detail = f"/health unreachable: {exc}"
        return check
    if not resp.ok:
        check.detail = f"/health answered {resp.status_code}"
        return check
    check.healthy = True

    try:
        resp = http.post(
            f"{endpoint}/v1/completions",
            json=_completion_payload(model_id),
            timeout=completion_timeout,
        )
        body = resp.json()
    except (requests.RequestException, ValueError) as exc:
        check.detail = f"completion request failed: {exc}"
        return check
    if not resp.ok or not isinstance(body, dict) or "choices" not in body:
        check.detail = f"completion answered {resp.status_code} without choices"
        return check
    check.completion_ok = True
    logger.info("Endpoint %s served a completion for %s", endpoint, model_id)
    return check
