"""
Notification service for real-time match events.

Events are pushed to every client subscribed to the match's topic. Delivery
is best-effort and never blocks or fails the request that produced the
event: ``broadcast`` only schedules a background task.
"""

import asyncio
import logging
from typing import Dict, Optional, Set

from playsplit.services.websocket_manager import get_websocket_manager
from playsplit.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

# Match event names sent to clients
PLAYER_JOINED = "playerJoined"
PLAYER_LEFT = "playerLeft"
PLAYER_REMOVED = "playerRemoved"
MATCH_STARTED = "matchStarted"
MATCH_COMPLETED = "matchCompleted"
MATCH_CANCELLED = "matchCancelled"
MATCH_UPDATED = "matchUpdated"
PAYMENT_REQUESTED = "paymentRequested"
PAYMENT_COMPLETED = "paymentCompleted"
PAYMENT_FAILED = "paymentFailed"
REFUND_UPDATED = "refundUpdated"

# Strong references to in-flight deliveries so they are not garbage collected
_pending_deliveries: Set[asyncio.Task] = set()


def match_topic(match_code: str) -> str:
    """Topic name for a match's subscribers."""
    return f"match-{match_code}"


async def _deliver(topic: str, payload: Dict) -> None:
    try:
        manager = get_websocket_manager()
        await manager.broadcast(topic, payload)
    except Exception as e:
        # Log error but never surface it; the mutation is already committed
        logger.warning(f"Failed to broadcast {payload.get('type')} on {topic}: {e}")


def broadcast(topic: str, payload: Dict) -> Optional[asyncio.Task]:
    """
    Schedule delivery of ``payload`` to subscribers of ``topic``.

    Returns immediately. Returns the delivery task, or None when no event
    loop is running (nothing to deliver to).
    """
    try:
        task = asyncio.get_running_loop().create_task(_deliver(topic, payload))
    except RuntimeError as e:
        logger.warning(f"Cannot schedule broadcast on {topic}: {e}")
        return None
    _pending_deliveries.add(task)
    task.add_done_callback(_pending_deliveries.discard)
    return task


def notify_match(match_code: str, event: str, data: Optional[Dict] = None) -> Optional[asyncio.Task]:
    """
    Broadcast a match event.

    Args:
        match_code: Match the event belongs to
        event: Event name, e.g. ``playerJoined``
        data: Event-specific fields
    """
    payload = {
        "type": event,
        "match_code": match_code,
        "data": data or {},
        "timestamp": utcnow().isoformat(),
    }
    return broadcast(match_topic(match_code), payload)
