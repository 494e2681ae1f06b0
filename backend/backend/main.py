from __future__ import annotations

import asyncio

import structlog
from fastapi import FastAPI

from app.core.config import EVENT_DISPATCH_ENABLED, EVENT_DISPATCH_POLL_SECONDS
from app.core.logging import configure_logging
from app.db.base import Base
from app.db.session import SessionLocal, engine

# Register models
from app.db import models  # noqa: F401

from services.admin.events_api import router as events_router
from services.operations.api import router as operations_router

configure_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(title="Order Fulfillment & Production")
app.include_router(operations_router)
app.include_router(events_router)

_dispatcher_stop = asyncio.Event()


@app.on_event("startup")
async def _startup():
    # Dev-friendly schema creation (migrations are available for real upgrades)
    Base.metadata.create_all(bind=engine)

    if EVENT_DISPATCH_ENABLED:
        from app.events.dispatcher import run_dispatcher_forever

        asyncio.create_task(run_dispatcher_forever(SessionLocal, poll_interval_seconds=EVENT_DISPATCH_POLL_SECONDS,
                                                   stop=_dispatcher_stop))
    logger.info("app.started", event_dispatch=EVENT_DISPATCH_ENABLED)


@app.on_event("shutdown")
async def _shutdown():
    _dispatcher_stop.set()


@app.get("/health")
def health():
    return {"ok": True}
