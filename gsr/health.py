from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Mapping

import httpx


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    message: str
    latency_ms: float | None = None


def probe_url(workload_spec: Mapping[str, Any], host: str | None) -> str | None:
    """URL of a Workload's health endpoint, if it declares one and we know where to reach it.

    ``health`` is ``{"port": <published port>, "path": "/health"}``.
    """
    health = workload_spec.get("health")
    if not host or not isinstance(health, Mapping) or not health.get("port"):
        return None
    path = str(health.get("path") or "/health")
    if not path.startswith("/"):
        path = "/" + path
    return f"http://{host}:{int(health['port'])}{path}"


def check_health(url: str, timeout_s: float = 2.0) -> ProbeResult:
    """Call a game server's health endpoint.

    Any 2xx is healthy unless the body is JSON with a ``status`` other than
    "healthy"/"ok".
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
    except (httpx.ConnectError, httpx.TimeoutException):
        return ProbeResult(False, "no response", round((time.time() - start) * 1000.0, 2))
    except httpx.HTTPError as e:
        return ProbeResult(False, f"probe error: {type(e).__name__}: {e}", round((time.time() - start) * 1000.0, 2))

    latency_ms = round((time.time() - start) * 1000.0, 2)
    if not 200 <= resp.status_code < 300:
        return ProbeResult(False, f"HTTP {resp.status_code}", latency_ms)
    try:
        data = resp.json()
    except ValueError:
        return ProbeResult(True, f"HTTP {resp.status_code}", latency_ms)
    if isinstance(data, dict) and "status" in data and str(data["status"]).lower() not in {"healthy", "ok"}:
        return ProbeResult(False, f"unhealthy payload: {data!r}", latency_ms)
    return ProbeResult(True, "healthy", latency_ms)
