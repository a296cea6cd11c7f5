from __future__ import annotations

import errno
import json
import logging

from aiohttp import web

from rewardsync.config import settings
from rewardsync.errors import (
    Conflict,
    Denied,
    InvalidKey,
    InvariantViolation,
    MalformedWrite,
    NotEligible,
    NotFound,
    SyncError,
    Unavailable,
    WriteTimeout,
)
from rewardsync.metrics import mark_app_ready, metrics_handler, metrics_middleware
from rewardsync.payments import PaymentEvent, verify_body
from rewardsync.service import RewardSyncService

log = logging.getLogger("rewardsync.web")

SERVICE_KEY = web.AppKey("rewardsync_service", RewardSyncService)
SIGNATURE_HEADER = "X-Payment-Signature"

_STATUS_BY_ERROR: tuple[tuple[type[SyncError], int, str], ...] = (
    (InvalidKey, 400, "invalid_key"),
    (MalformedWrite, 400, "malformed"),
    (NotEligible, 409, "not_eligible"),
    (InvariantViolation, 409, "invariant_violation"),
    (NotFound, 404, "not_found"),
    (Denied, 403, "denied"),
    (WriteTimeout, 503, "timeout"),
    (Unavailable, 503, "unavailable"),
    (Conflict, 503, "conflict"),
)


def error_response(exc: SyncError) -> web.Response:
    for error_type, status, reason in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return web.json_response({"status": "error", "reason": reason, "detail": str(exc)}, status=status)
    return web.json_response({"status": "error", "reason": "sync_error", "detail": str(exc)}, status=500)


async def ping_handler(_: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


async def sync_status_handler(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    payload = service.sync_status()
    payload["status"] = "ok" if payload["online"] else "degraded"
    return web.json_response(payload)


async def payments_webhook(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    secret = settings.PAYMENTS_WEBHOOK_SECRET
    raw_body = await request.text()
    if secret:
        signature = request.headers.get(SIGNATURE_HEADER, "")
        if not verify_body(raw_body, signature, secret):
            log.warning("payment webhook rejected: invalid signature")
            return web.json_response({"status": "error", "reason": "invalid_signature"}, status=403)

    try:
        data = json.loads(raw_body)
    except json.JSONDecodeError:
        return web.json_response({"status": "error", "reason": "invalid_json"}, status=400)
    if not isinstance(data, dict):
        return web.json_response({"status": "error", "reason": "missing_payload"}, status=400)

    try:
        event = PaymentEvent.from_webhook(data)
        result = await service.credit_payment(event)
    except SyncError as exc:
        log.warning("payment webhook failed: %s", exc)
        return error_response(exc)

    if result is None:
        return web.json_response({"status": "ignored", "payment_status": event.status})
    return web.json_response(
        {
            "status": "ok",
            "outcome": result.outcome.value,
            "event_id": event.event_id,
            "balance": result.record.balance,
            "tier": result.record.tier.value,
        }
    )


def create_web_app(service: RewardSyncService) -> web.Application:
    app_web = web.Application(middlewares=[metrics_middleware])
    app_web[SERVICE_KEY] = service
    app_web.router.add_get("/ping", ping_handler)
    app_web.router.add_get("/sync/status", sync_status_handler)
    app_web.router.add_post(settings.PAYMENTS_WEBHOOK_PATH, payments_webhook)
    app_web.router.add_get("/metrics", metrics_handler)
    mark_app_ready()
    return app_web


async def start_web_app(service: RewardSyncService) -> tuple[web.AppRunner, web.BaseSite]:
    runner = web.AppRunner(create_web_app(service))
    await runner.setup()
    startup_log = logging.getLogger("startup")
    try:
        site = web.TCPSite(runner, host=settings.WEB_HOST, port=settings.WEB_PORT)
        await site.start()
    except OSError as exc:
        if getattr(exc, "errno", None) in (errno.EADDRINUSE, 10048) and settings.WEB_PORT != 0:
            startup_log.warning("port %s busy, use ephemeral 0", settings.WEB_PORT)
            site = web.TCPSite(runner, host=settings.WEB_HOST, port=0)
            await site.start()
        else:
            await runner.cleanup()
            raise
    startup_log.info(
        "service server at http://%s:%s (webhook=%s)",
        settings.WEB_HOST,
        settings.WEB_PORT,
        settings.PAYMENTS_WEBHOOK_PATH,
    )
    return runner, site


async def stop_web_app(runner: web.AppRunner | None, site: web.BaseSite | None) -> None:
    if site is not None:
        await site.stop()
    if runner is not None:
        await runner.cleanup()


__all__ = [
    "SERVICE_KEY",
    "SIGNATURE_HEADER",
    "create_web_app",
    "error_response",
    "start_web_app",
    "stop_web_app",
]
