"""
WebSocket connection manager for real-time match updates.

Manages active WebSocket connections per topic (one topic per match,
``match-<code>``) and broadcasts messages to every subscriber of a topic.
"""

import asyncio
import json
import logging
from typing import Dict, Set, Optional
from datetime import datetime, timedelta
from fastapi import WebSocket

from playsplit.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

# Timeout for WebSocket connections (30 seconds of inactivity)
WEBSOCKET_TIMEOUT_SECONDS = 30


class WebSocketManager:
    """Manages topic-scoped WebSocket subscriptions."""

    def __init__(self):
        # Topic -> set of subscribed sockets
        self.active_connections: Dict[str, Set[WebSocket]] = {}
        # Socket -> last activity timestamp
        self.connection_timestamps: Dict[WebSocket, datetime] = {}
        self._lock = asyncio.Lock()

    async def connect(self, topic: str, websocket: WebSocket):
        """
        Subscribe a WebSocket connection to a topic.

        Args:
            topic: Topic name, e.g. ``match-AB12CD34``
            websocket: WebSocket connection object
        """
        async with self._lock:
            if topic not in self.active_connections:
                self.active_connections[topic] = set()
            self.active_connections[topic].add(websocket)
            self.connection_timestamps[websocket] = utcnow()
            logger.info(f"WebSocket subscribed to {topic} (total subscribers: {len(self.active_connections[topic])})")

    async def disconnect(self, topic: str, websocket: WebSocket):
        """
        Unsubscribe a WebSocket connection from a topic.

        Args:
            topic: Topic name
            websocket: WebSocket connection object
        """
        async with self._lock:
            if topic in self.active_connections:
                self.active_connections[topic].discard(websocket)
                if not self.active_connections[topic]:
                    del self.active_connections[topic]
            self.connection_timestamps.pop(websocket, None)
            logger.info(f"WebSocket unsubscribed from {topic}")

    async def broadcast(self, topic: str, message: dict) -> int:
        """
        Send a message to every subscriber of a topic.

        Sockets that fail to receive are dropped from the topic.

        Args:
            topic: Topic name
            message: Message dict to send (serialized to JSON)

        Returns:
            Number of connections the message was delivered to
        """
        async with self._lock:
            connections = self.active_connections.get(topic, set()).copy()

        if not connections:
            return 0

        message_json = json.dumps(message, default=str)
        delivered = 0
        disconnected_connections = []

        # Send outside the lock so a slow client does not block subscribers
        for websocket in connections:
            try:
                await websocket.send_text(message_json)
                delivered += 1
            except Exception as e:
                logger.warning(f"Error sending WebSocket message on {topic}: {e}")
                disconnected_connections.append(websocket)

        if disconnected_connections:
            async with self._lock:
                if topic in self.active_connections:
                    for ws in disconnected_connections:
                        self.active_connections[topic].discard(ws)
                        self.connection_timestamps.pop(ws, None)
                    if not self.active_connections[topic]:
                        del self.active_connections[topic]

        return delivered

    async def get_connection_count(self, topic: str) -> int:
        """Number of sockets subscribed to a topic."""
        async with self._lock:
            return len(self.active_connections.get(topic, ()))

    async def update_activity(self, websocket: WebSocket):
        """
        Update the last activity timestamp for a connection.
        Called when receiving ping or other messages from the client.
        """
        async with self._lock:
            if websocket in self.connection_timestamps:
                self.connection_timestamps[websocket] = utcnow()

    async def cleanup_stale_connections(self):
        """
        Drop connections with no activity within the timeout period.
        """
        timeout_threshold = utcnow() - timedelta(seconds=WEBSOCKET_TIMEOUT_SECONDS)

        async with self._lock:
            stale_connections = [
                websocket
                for websocket, last_activity in self.connection_timestamps.items()
                if last_activity < timeout_threshold
            ]
            stale_topics = {
                websocket: topic
                for topic, conn_set in self.active_connections.items()
                for websocket in conn_set
                if websocket in stale_connections
            }

        for websocket in stale_connections:
            topic = stale_topics.get(websocket)
            if topic:
                await self.disconnect(topic, websocket)
                logger.info(f"Cleaned up stale WebSocket connection on {topic}")
            else:
                async with self._lock:
                    self.connection_timestamps.pop(websocket, None)


# Global WebSocket manager instance
_websocket_manager: Optional[WebSocketManager] = None


def get_websocket_manager() -> WebSocketManager:
    """
    Get the global WebSocket manager instance.

    Returns:
        WebSocketManager instance
    """
    global _websocket_manager
    if _websocket_manager is None:
        _websocket_manager = WebSocketManager()
    return _websocket_manager
