from __future__ import annotations

"""Prometheus metrics for the chat service.

Adds an HTTP middleware that records request latency per method/path/status,
plus counters for streamed turns and deltas.
"""

import time
from typing import Callable, Awaitable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "chatstream_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

TURNS = Counter(
    "chatstream_turns_total",
    "Chat turns by outcome (completed, discarded, or a generation error code)",
    labelnames=("outcome",),
)

DELTAS = Counter(
    "chatstream_stream_deltas_total",
    "Text deltas received from generation providers",
)


def record_turn(outcome: str) -> None:
    TURNS.labels(outcome=outcome).inc()


def record_delta() -> None:
    DELTAS.inc()


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g., /chat/conversations/{id}) to a coarse label."""
    if not path:
        return "/"
    segs = [s for s in path.split("?")[0].split("/") if s]
    if not segs:
        return "/"
    return "/" + "/".join(segs[:2])


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        # Avoid observing the metrics endpoint itself
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        REQUEST_LATENCY.labels(
            method=request.method,
            path=sanitize_path(request.url.path),
            status=str(response.status_code),
        ).observe(elapsed)
        return response

    return middleware
