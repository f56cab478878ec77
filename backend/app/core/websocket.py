"""
WebSocket endpoint + Redis PubSub bridge for alarm triage events.

WS /ws/alarms         - snapshot of current lineages, then live events
redis_to_ws_bridge    - background task: alarms:cycles / alarms:triage → broadcast
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from redis.asyncio import Redis

from services.alarm_triage.config import REDIS_CHANNEL_CYCLES, REDIS_CHANNEL_TRIAGE

logger = logging.getLogger("triage.websocket")

router = APIRouter()


# ---------------------------------------------------------------------------
# Connection Manager
# ---------------------------------------------------------------------------

class ConnectionManager:
    """Manages active WebSocket connections and broadcasts messages."""

    def __init__(self) -> None:
        self.connections: list[WebSocket] = []

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self.connections.append(ws)
        logger.info("WS client connected (%d total)", len(self.connections))

    def disconnect(self, ws: WebSocket) -> None:
        if ws in self.connections:
            self.connections.remove(ws)
        logger.info("WS client disconnected (%d remaining)", len(self.connections))

    async def broadcast(self, message: str) -> None:
        dead: list[WebSocket] = []
        for ws in self.connections:
            try:
                await ws.send_text(message)
            except Exception:
                dead.append(ws)
        for ws in dead:
            if ws in self.connections:
                self.connections.remove(ws)
        if dead:
            logger.debug("Removed %d dead WS connections", len(dead))


manager = ConnectionManager()


def lineage_snapshot(engine) -> list[dict]:
    """Compact view of the engine's current lineages for a fresh client."""
    return [
        {
            **view.key.as_dict(),
            "status": view.status.value,
            "count": view.count,
            "priority": view.representative.priority,
            "acknowledged": view.representative.acknowledged,
            "discarded": view.representative.discarded,
            "created_at_adjusted": view.representative.created_at_adjusted.isoformat(),
        }
        for view in engine.get_lineages()
    ]


# ---------------------------------------------------------------------------
# WebSocket Endpoint
# ---------------------------------------------------------------------------

@router.websocket("/ws/alarms")
async def ws_alarms(websocket: WebSocket) -> None:
    await manager.connect(websocket)
    try:
        engine = websocket.app.state.triage_engine
        await websocket.send_json({
            "type": "snapshot",
            "seconds_left": engine.get_countdown(),
            "data": lineage_snapshot(engine),
        })

        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception as exc:
        logger.debug("WS error: %s", exc)
        manager.disconnect(websocket)


# ---------------------------------------------------------------------------
# Redis → WebSocket Bridge (background task)
# ---------------------------------------------------------------------------

async def redis_to_ws_bridge(redis: Redis) -> None:
    """Subscribe to the triage channels and broadcast to all WS clients."""
    channels = (REDIS_CHANNEL_CYCLES, REDIS_CHANNEL_TRIAGE)
    logger.info("Redis→WS bridge started, subscribing to %s", ", ".join(channels))
    pubsub = redis.pubsub()
    await pubsub.subscribe(*channels)

    try:
        async for message in pubsub.listen():
            if message["type"] == "message":
                payload = message["data"]
                if isinstance(payload, bytes):
                    payload = payload.decode("utf-8")
                await manager.broadcast(payload)
    except Exception as exc:
        logger.error("Redis→WS bridge error: %s", exc)
    finally:
        await pubsub.unsubscribe(*channels)
        await pubsub.close()
