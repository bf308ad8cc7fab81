from __future__ import annotations
from contextlib import asynccontextmanager
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from .db import init_db, dispose_db
from .deps import hub, issuers
from .routers import checkins
from .core.config import get_settings
from .core.logging import setup_logging
from .core.redis import ping_redis
from .core.nats import nats_close, subscribe_checkins

settings = get_settings()
logger = logging.getLogger(__name__)

async def handle_checkin(evt: dict):
    # another replica recorded a check-in; push fresh counts to local displays
    event_id = evt.get("event_id")
    if not isinstance(event_id, str):
        logger.warning("check-in event without event_id: %r", evt)
        return
    await hub.refresh(event_id)

@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    await init_db()
    # best-effort connect to infra; service still runs if these fail
    if settings.nats_enabled:
        try:
            await subscribe_checkins(handle_checkin)
        except Exception:
            logger.warning("NATS unavailable, live counts limited to this replica", exc_info=True)
    if settings.rl_enabled and not await ping_redis():
        logger.warning("rate limiting will fail open until Redis is reachable")
    yield
    await issuers.close_all()
    if settings.nats_enabled:
        await nats_close()
    await dispose_db()

app = FastAPI(title="festify-checkin", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(checkins.router)

@app.get("/health")
async def health():
    return {"status": "ok", "service": "festify-checkin"}

Instrumentator().instrument(app).expose(app)
