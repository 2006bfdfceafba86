"""Public HTTP entrypoint: booking, payment polling, webhooks and galleries.

Staff endpoints require the configured API key. Booking and purchase
submissions are rate limited per phone number with a Redis token bucket.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from time import perf_counter, time
from uuid import uuid4

import redis
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from studioflow.common.config import settings
from studioflow.common.db import SessionLocal
from studioflow.common.errors import (
    GalleryExpiredError,
    GatewayError,
    InvalidWebhookError,
    NotConfiguredError,
    NotFoundError,
    StudioError,
    TransientError,
    ValidationError,
)
from studioflow.common.events import KafkaBus
from studioflow.common.logging import configure_logging, logger, trace_id_ctx
from studioflow.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from studioflow.common.outbox import outbox_publisher
from studioflow.common.startup import log_startup_config
from studioflow.common.tracing import instrument_app, setup_tracing
from studioflow.services.booking.schemas import BookingForm
from studioflow.services.booking.service import BookingService
from studioflow.services.gallery.schemas import CommentRequest, PurchaseRequest, SelectionRequest
from studioflow.services.gallery.service import GalleryService
from studioflow.services.notification.whatsapp import normalize_phone
from studioflow.services.reconciler.service import ReconcilerService
from studioflow.services.studio.models import OutboxEvent

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "REDIS_URL",
        "KAFKA_BOOTSTRAP_SERVERS",
        "MERCADOPAGO_API_URL",
        "PUBLIC_BASE_URL",
        "RATE_LIMIT_PER_MINUTE",
        "CHARGE_EXPIRY_MINUTES",
    ],
)

kafka = KafkaBus()
booking_service = BookingService(SessionLocal, service_name=settings.service_name)
reconciler_service = ReconcilerService(SessionLocal, service_name=settings.service_name)
gallery_service = GalleryService(SessionLocal, service_name=settings.service_name)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Publish calendar outbox events for the lifetime of the app."""

    publisher_task = asyncio.create_task(
        outbox_publisher(SessionLocal, OutboxEvent, kafka, settings.service_name)
    )
    yield
    publisher_task.cancel()
    await kafka.close()


app = FastAPI(title="StudioFlow API", lifespan=lifespan)
instrument_app(app)
rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    trace_id_ctx.set(request.headers.get("x-correlation-id") or str(uuid4()))
    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


def status_for(exc: StudioError) -> int:
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, GalleryExpiredError):
        return 410
    if isinstance(exc, InvalidWebhookError):
        return 400
    if isinstance(exc, GatewayError):
        return 502
    if isinstance(exc, NotConfiguredError):
        return 409
    return 500


@app.exception_handler(StudioError)
async def studio_error_handler(request: Request, exc: StudioError):
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("request_failed path=%s error=%s", request.url.path, exc)
    detail = exc.provider_message if isinstance(exc, GatewayError) else str(exc)
    return JSONResponse(status_code=status_code, content={"detail": detail, "error": type(exc).__name__})


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def enforce_token_bucket(subject: str) -> None:
    # Redis token bucket (capacity = refill rate = limit per minute).
    key = f"tokenbucket:{subject}"
    now = time()
    capacity = float(settings.rate_limit_per_minute)
    refill_per_sec = capacity / 60.0

    try:
        values = rdb.hmget(key, "tokens", "updated_at")
    except redis.RedisError as exc:
        logger.warning("rate_limit_unavailable error=%s", exc)
        return
    tokens = float(values[0]) if values[0] is not None else capacity
    updated_at = float(values[1]) if values[1] is not None else now
    elapsed = max(0.0, now - updated_at)
    tokens = min(capacity, tokens + elapsed * refill_per_sec)

    allowed = tokens >= 1.0
    if allowed:
        tokens -= 1.0
    try:
        rdb.hset(key, mapping={"tokens": tokens, "updated_at": now})
        rdb.expire(key, 120)
    except redis.RedisError as exc:
        logger.warning("rate_limit_write_failed error=%s", exc)
    if not allowed:
        raise HTTPException(status_code=429, detail="rate limit exceeded")


@app.get("/tenants/{tenant_id}/slots")
def list_slots(tenant_id: str, horizon_days: int = 30):
    """Available session slots with their prices."""

    return booking_service.list_available_slots(tenant_id, horizon_days=min(max(horizon_days, 1), 90))


@app.post("/tenants/{tenant_id}/bookings")
def submit_booking(tenant_id: str, form: BookingForm):
    """Book a slot: immediate manual-PIX booking or a gateway PIX charge."""

    enforce_token_bucket(f"{tenant_id}:{normalize_phone(form.client_phone)}")
    return booking_service.submit_booking(tenant_id, form)


@app.get("/tenants/{tenant_id}/payments/{charge_id}")
def payment_status(tenant_id: str, charge_id: str):
    """Client-side polling target for a PIX charge."""

    return reconciler_service.check_payment_status(tenant_id, charge_id)


@app.post("/webhooks/mercadopago/{tenant_id}")
async def mercadopago_webhook(tenant_id: str, request: Request):
    """Provider notification; 200 unless malformed (400) or retryable (500)."""

    raw = await request.body()
    body = None
    if raw:
        try:
            body = json.loads(raw)
        except ValueError:
            body = raw.decode("utf-8", errors="replace").strip()
    try:
        result = await run_in_threadpool(
            reconciler_service.handle_event, tenant_id, body, dict(request.query_params)
        )
    except TransientError as exc:
        logger.error("webhook_retry_requested tenant_id=%s error=%s", tenant_id, exc)
        return JSONResponse(status_code=500, content={"detail": "temporary failure, retry"})
    return {"ok": True, "outcome": result.outcome}


@app.post("/payments/{payment_id}/confirm")
def confirm_payment(payment_id: str, x_api_key: str | None = Header(default=None)):
    """Staff confirmation of a manual PIX payment."""

    enforce_api_key(x_api_key)
    return reconciler_service.confirm_manual_payment(payment_id)


@app.post("/staff/galleries/{gallery_id}/ready")
def gallery_ready(gallery_id: str, x_api_key: str | None = Header(default=None)):
    """Queue the "photos are ready" message for a gallery's client."""

    enforce_api_key(x_api_key)
    return {"notification_id": gallery_service.notify_gallery_ready(gallery_id)}


@app.get("/galleries/{token}")
def get_gallery(token: str):
    return gallery_service.get_gallery(token)


@app.post("/galleries/{token}/photos/{photo_id}/toggle")
def toggle_photo(token: str, photo_id: str):
    return {"photos_selected": gallery_service.toggle_selection(token, photo_id)}


@app.put("/galleries/{token}/photos/{photo_id}/comment")
def comment_photo(token: str, photo_id: str, req: CommentRequest):
    return {"photo_comments": gallery_service.comment_photo(token, photo_id, req.comment)}


@app.post("/galleries/{token}/selection")
def submit_selection(token: str, req: SelectionRequest):
    """Finalize the selection or open an extra-photos charge."""

    return gallery_service.submit_selection(token, req.photo_ids)


@app.post("/galleries/{token}/purchase")
def purchase_photos(token: str, req: PurchaseRequest):
    """Buy photos from a public gallery."""

    enforce_token_bucket(f"purchase:{normalize_phone(req.client_phone)}")
    return gallery_service.purchase_public_photos(token, req)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
