from __future__ import annotations

import time

from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


_UP_GAUGE = Gauge("rewardsync_up", "Application availability")

# Economy and synchronization counters consumed by the sync dashboards.
REWARDS = Counter(
    "rewardsync_rewards_total",
    "Reward applications by outcome",
    ("outcome",),
)
WRITES = Counter(
    "rewardsync_authoritative_writes_total",
    "Authoritative patches by result",
    ("result",),
)
ROLLBACKS = Counter(
    "rewardsync_rollbacks_total",
    "Optimistic updates rolled back after a failed write",
    ("reason",),
)
RECONNECTS = Counter(
    "rewardsync_reconnect_attempts_total",
    "Subscription reconnect attempts",
    ("trigger",),
)
ACTIVE_SUBSCRIPTIONS = Gauge(
    "rewardsync_active_subscriptions",
    "Keys with an open store subscription",
)
WRITE_LATENCY = Histogram(
    "rewardsync_write_duration_seconds",
    "Authoritative write latency in seconds",
)

_REQUEST_COUNTER = Counter(
    "rewardsync_http_requests_total",
    "HTTP requests processed by the aiohttp server",
    ("method", "path", "status"),
)
_REQUEST_LATENCY = Histogram(
    "rewardsync_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ("method", "path"),
)


def mark_app_ready() -> None:
    """Mark the aiohttp application as ready for scraping."""

    _UP_GAUGE.set(1)


def _route_label(request: web.Request) -> str:
    # route template, not the raw path
    route = request.match_info.route
    resource = route.resource if route is not None else None
    return resource.canonical if resource is not None else "unmatched"


@web.middleware
async def metrics_middleware(request: web.Request, handler):
    if request.path == "/metrics":
        return await handler(request)

    path = _route_label(request)
    started = time.perf_counter()
    status = 500
    try:
        response = await handler(request)
        status = response.status
        return response
    except web.HTTPException as exc:
        status = exc.status
        raise
    finally:
        _REQUEST_LATENCY.labels(request.method, path).observe(time.perf_counter() - started)
        _REQUEST_COUNTER.labels(request.method, path, str(status)).inc()


async def metrics_handler(_: web.Request) -> web.Response:
    return web.Response(body=generate_latest(), headers={"Content-Type": CONTENT_TYPE_LATEST})
