"""Real-time match updates over WebSocket."""

import asyncio
import logging
from datetime import timedelta

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from playsplit.database.db import AsyncSessionLocal
from playsplit.services import match_repository
from playsplit.services.notification_service import match_topic
from playsplit.services.websocket_manager import WEBSOCKET_TIMEOUT_SECONDS, get_websocket_manager
from playsplit.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)
router = APIRouter()


@router.websocket("/api/ws/matches/{match_code}")
async def websocket_match_updates(websocket: WebSocket, match_code: str):
    """
    Subscribe to live events for one match.

    Messages are JSON objects ``{type, match_code, data, timestamp}``. The
    client may send "ping" and gets "pong" back; a silent connection is
    pinged once and closed after a further timeout.
    """
    await websocket.accept()

    match_code = match_code.upper()
    async with AsyncSessionLocal() as session:
        exists = await match_repository.match_code_exists(session, match_code)
    if not exists:
        await websocket.close(code=1008, reason="Match not found")
        return

    topic = match_topic(match_code)
    manager = get_websocket_manager()
    await manager.connect(topic, websocket)

    try:
        last_activity = utcnow()
        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_text(), timeout=WEBSOCKET_TIMEOUT_SECONDS)

                last_activity = utcnow()
                await manager.update_activity(websocket)

                if data == "ping":
                    await websocket.send_text("pong")
            except asyncio.TimeoutError:
                if utcnow() - last_activity > timedelta(seconds=WEBSOCKET_TIMEOUT_SECONDS):
                    logger.info(f"WebSocket timeout on {topic}, closing connection")
                    await websocket.close(code=1000, reason="Connection timeout")
                    break
                try:
                    await websocket.send_text("ping")
                except Exception:
                    # Connection is dead
                    break
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected from {topic}")
    except Exception as e:
        logger.error(f"WebSocket error on {topic}: {e}")
    finally:
        await manager.disconnect(topic, websocket)
