import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis

from config import settings
from models import async_session, engine, ensure_tables
from api.alarms import router as alarms_router
from api.sources import router as sources_router
from core.websocket import router as ws_router, redis_to_ws_bridge
from services.alarm_triage import AlarmTriageEngine

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("triage.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Alarm triage backend starting... DEBUG=%s", settings.DEBUG)

    # Local store
    await ensure_tables()

    # Redis (optional - only feeds the WebSocket bridge)
    redis = None
    if settings.REDIS_ENABLED:
        redis = Redis.from_url(settings.REDIS_URL, decode_responses=False)
        logger.info("Redis connected: %s", settings.REDIS_URL)
    else:
        logger.info("Redis DISABLED (REDIS_ENABLED=false) - no live WS events")
    app.state.redis = redis

    # Triage engine
    triage = AlarmTriageEngine(async_session, redis)
    app.state.triage_engine = triage
    await triage.registry.seed(settings.ALARM_SOURCES)
    await triage.start()

    # Redis → WebSocket bridge
    bridge_task = asyncio.create_task(redis_to_ws_bridge(redis)) if redis else None

    yield

    # Shutdown
    logger.info("Alarm triage backend shutting down...")
    await triage.stop()

    if bridge_task:
        bridge_task.cancel()
        try:
            await bridge_task
        except asyncio.CancelledError:
            pass

    if redis:
        await redis.close()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Alarm Triage API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(alarms_router)
app.include_router(sources_router)
app.include_router(ws_router)


@app.get("/health")
async def health():
    return {"status": "ok", "version": "0.1.0"}
