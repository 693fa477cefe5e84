from __future__ import annotations

import logging
import time
from collections import Counter
from threading import Lock
from typing import Optional

from fastapi import Request

logger = logging.getLogger("referral_relay")

REFERRAL_OUTCOMES = (
    "succeeded",
    "misconfigured",
    "rate_limited",
    "invalid_request",
    "contact_not_found",
    "upstream_auth_failed",
    "upstream_access_denied",
    "upstream_not_found",
    "upstream_rate_limited",
    "upstream_failed",
)


class RelayMetrics:
    def __init__(self) -> None:
        self._lock = Lock()
        self._responses: Counter[tuple[str, int]] = Counter()
        self._latency_ms_sum = 0.0
        self._referrals: Counter[str] = Counter({outcome: 0 for outcome in REFERRAL_OUTCOMES})

    def observe_response(self, *, path: str, status_code: int, latency_ms: float) -> None:
        with self._lock:
            self._responses[(path, status_code)] += 1
            self._latency_ms_sum += latency_ms

    def observe_referral(self, outcome: str) -> None:
        if outcome not in REFERRAL_OUTCOMES:
            raise ValueError(f"unknown referral outcome: {outcome}")
        with self._lock:
            self._referrals[outcome] += 1

    def render(self, *, tracked_clients: Optional[int] = None) -> str:
        with self._lock:
            responses = sorted(self._responses.items())
            referrals = sorted(self._referrals.items())
            latency_ms_sum = self._latency_ms_sum
        total = sum(count for _, count in responses)
        lines = [
            "# HELP referral_relay_http_responses_total HTTP responses by path and status",
            "# TYPE referral_relay_http_responses_total counter",
        ]
        lines.extend(
            f'referral_relay_http_responses_total{{path="{path}",status="{status_code}"}} {count}'
            for (path, status_code), count in responses
        )
        lines += [
            "# HELP referral_relay_http_latency_ms_sum Summed request latency in ms",
            "# TYPE referral_relay_http_latency_ms_sum counter",
            f"referral_relay_http_latency_ms_sum {latency_ms_sum:.2f}",
            "# HELP referral_relay_http_requests_total HTTP requests served",
            "# TYPE referral_relay_http_requests_total counter",
            f"referral_relay_http_requests_total {total}",
            "# HELP referral_relay_referral_increments_total Referral increments by outcome",
            "# TYPE referral_relay_referral_increments_total counter",
        ]
        lines.extend(
            f'referral_relay_referral_increments_total{{outcome="{outcome}"}} {count}'
            for outcome, count in referrals
        )
        if tracked_clients is not None:
            lines += [
                "# HELP referral_relay_rate_limit_clients Client keys held by the rate limiter",
                "# TYPE referral_relay_rate_limit_clients gauge",
                f"referral_relay_rate_limit_clients {tracked_clients}",
            ]
        return "\n".join(lines) + "\n"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


async def observe_request(request: Request, call_next, *, metrics: RelayMetrics):
    start = time.perf_counter()
    path = request.url.path
    try:
        response = await call_next(request)
    except Exception:
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.observe_response(path=path, status_code=500, latency_ms=latency_ms)
        logger.exception(
            "request_failed method=%s path=%s latency_ms=%.2f", request.method, path, latency_ms
        )
        raise
    latency_ms = (time.perf_counter() - start) * 1000.0
    metrics.observe_response(path=path, status_code=response.status_code, latency_ms=latency_ms)
    logger.info(
        "request_complete method=%s path=%s status=%s latency_ms=%.2f",
        request.method,
        path,
        response.status_code,
        latency_ms,
    )
    return response
