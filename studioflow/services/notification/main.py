"""Notification worker lifecycle and lightweight read endpoints."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from studioflow.common.config import settings
from studioflow.common.db import SessionLocal
from studioflow.common.logging import configure_logging
from studioflow.common.metrics import metrics_response
from studioflow.common.startup import log_startup_config
from studioflow.common.tracing import instrument_app, setup_tracing
from studioflow.services.notification.service import NotificationDispatcher

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "NOTIFICATION_MAX_ATTEMPTS", "NOTIFICATION_POLL_SECONDS"],
)
dispatcher = NotificationDispatcher(SessionLocal)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the delivery loop with the FastAPI application lifecycle."""

    delivery_task = asyncio.create_task(dispatcher.run_forever())
    yield
    delivery_task.cancel()


app = FastAPI(title="StudioFlow Notification Worker", lifespan=lifespan)
instrument_app(app)


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
