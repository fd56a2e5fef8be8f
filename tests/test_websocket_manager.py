"""
Unit tests for WebSocket manager.
Tests topic subscriptions, broadcasting, and stale connection cleanup.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from playsplit.services import notification_service
from playsplit.services.websocket_manager import (
    WebSocketManager,
    get_websocket_manager,
    WEBSOCKET_TIMEOUT_SECONDS,
)
from playsplit.utils.datetime_utils import utcnow

TOPIC = "match-ABCD1234"


@pytest_asyncio.fixture
async def ws_manager():
    """Create a fresh WebSocket manager for each test."""
    return WebSocketManager()


@pytest.fixture
def mock_websocket():
    """Create a mock WebSocket connection."""
    ws = AsyncMock()
    ws.send_text = AsyncMock()
    ws.close = AsyncMock()
    return ws


async def test_connect(ws_manager, mock_websocket):
    await ws_manager.connect(TOPIC, mock_websocket)

    assert await ws_manager.get_connection_count(TOPIC) == 1
    assert mock_websocket in ws_manager.connection_timestamps


async def test_multiple_subscribers_on_one_topic(ws_manager):
    await ws_manager.connect(TOPIC, AsyncMock())
    await ws_manager.connect(TOPIC, AsyncMock())

    assert await ws_manager.get_connection_count(TOPIC) == 2


async def test_disconnect_removes_empty_topic(ws_manager, mock_websocket):
    await ws_manager.connect(TOPIC, mock_websocket)

    await ws_manager.disconnect(TOPIC, mock_websocket)

    assert await ws_manager.get_connection_count(TOPIC) == 0
    assert TOPIC not in ws_manager.active_connections
    assert mock_websocket not in ws_manager.connection_timestamps


async def test_disconnect_unknown_topic_is_harmless(ws_manager, mock_websocket):
    await ws_manager.disconnect("match-NOPE0000", mock_websocket)

    assert ws_manager.active_connections == {}


async def test_broadcast_reaches_only_topic_subscribers(ws_manager):
    subscriber = AsyncMock()
    other = AsyncMock()
    await ws_manager.connect(TOPIC, subscriber)
    await ws_manager.connect("match-OTHER000", other)

    delivered = await ws_manager.broadcast(TOPIC, {"type": "playerJoined"})

    assert delivered == 1
    subscriber.send_text.assert_awaited_once_with('{"type": "playerJoined"}')
    other.send_text.assert_not_called()


async def test_broadcast_without_subscribers(ws_manager):
    assert await ws_manager.broadcast(TOPIC, {"type": "matchStarted"}) == 0


async def test_broadcast_drops_failing_socket(ws_manager):
    healthy = AsyncMock()
    broken = AsyncMock()
    broken.send_text = AsyncMock(side_effect=RuntimeError("connection closed"))
    await ws_manager.connect(TOPIC, healthy)
    await ws_manager.connect(TOPIC, broken)

    delivered = await ws_manager.broadcast(TOPIC, {"type": "matchUpdated"})

    assert delivered == 1
    assert await ws_manager.get_connection_count(TOPIC) == 1
    assert broken not in ws_manager.connection_timestamps


async def test_update_activity(ws_manager, mock_websocket):
    await ws_manager.connect(TOPIC, mock_websocket)
    earlier = utcnow() - timedelta(seconds=10)
    ws_manager.connection_timestamps[mock_websocket] = earlier

    await ws_manager.update_activity(mock_websocket)

    assert ws_manager.connection_timestamps[mock_websocket] > earlier


async def test_cleanup_stale_connections(ws_manager):
    stale = AsyncMock()
    fresh = AsyncMock()
    await ws_manager.connect(TOPIC, stale)
    await ws_manager.connect(TOPIC, fresh)
    ws_manager.connection_timestamps[stale] = utcnow() - timedelta(seconds=WEBSOCKET_TIMEOUT_SECONDS + 5)

    await ws_manager.cleanup_stale_connections()

    assert await ws_manager.get_connection_count(TOPIC) == 1
    assert stale not in ws_manager.connection_timestamps
    assert fresh in ws_manager.connection_timestamps


def test_get_websocket_manager_singleton():
    assert get_websocket_manager() is get_websocket_manager()


async def test_notify_match_builds_event_payload(monkeypatch):
    manager = WebSocketManager()
    socket = AsyncMock()
    await manager.connect(notification_service.match_topic("ABCD1234"), socket)
    monkeypatch.setattr(notification_service, "get_websocket_manager", lambda: manager)

    task = notification_service.notify_match("ABCD1234", notification_service.MATCH_STARTED, {"by": 1})
    await asyncio.wait_for(task, timeout=1)

    sent = socket.send_text.await_args.args[0]
    assert '"type": "matchStarted"' in sent
    assert '"match_code": "ABCD1234"' in sent
    assert '"by": 1' in sent
