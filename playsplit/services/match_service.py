"""
Match orchestration: load the aggregate, apply one engine operation, save
it under the version check, commit, then broadcast.

A save that loses the version race is retried from a fresh load, so the
engine's preconditions (capacity, status) are always evaluated against the
committed state. Broadcasts are scheduled only after the commit and never
fail the request.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from playsplit.database.models import MatchStatus, PlayerPaymentStatus
from playsplit.services import match_engine, match_repository, notification_service, user_service
from playsplit.services.match_engine import Actor, MatchState
from playsplit.services.match_repository import MatchConflictError
from playsplit.utils.constants import MATCH_CODE_LENGTH, MATCH_SAVE_MAX_ATTEMPTS
from playsplit.utils.datetime_utils import isoformat_or_none, utcnow
from playsplit.utils.exceptions import ConcurrencyConflictError, DuplicateError, NotFoundError

logger = logging.getLogger(__name__)

# Attempts at drawing an unused match code
MATCH_CODE_ATTEMPTS = 5


def generate_match_code() -> str:
    return uuid.uuid4().hex[:MATCH_CODE_LENGTH].upper()


def match_to_dict(match: MatchState, users: Optional[Dict[int, Dict]] = None, now: Optional[datetime] = None) -> Dict:
    """
    Serialize the aggregate for API responses, including derived fields.

    Args:
        users: Optional user id -> public profile, used to decorate the roster
        now: Reference time for is_upcoming / is_live
    """
    users = users or {}
    now = now or utcnow()
    return {
        "match_code": match.match_code,
        "title": match.title,
        "description": match.description,
        "organizer": users.get(match.organizer_id, {"id": match.organizer_id}),
        "venue": {
            "name": match.venue.name,
            "address": match.venue.address,
            "latitude": match.venue.latitude,
            "longitude": match.venue.longitude,
        },
        "date_time": isoformat_or_none(match.date_time),
        "duration": match.duration,
        "turf_type": match.turf_type,
        "capacity": match.capacity,
        "total_cost": match.total_cost,
        "cost_per_player": match.cost_per_player,
        "status": match.status,
        "is_quick_match": match.is_quick_match,
        "details_completed_at": isoformat_or_none(match.details_completed_at),
        "quick_match_data": {
            "actual_start_time": isoformat_or_none(match.actual_start_time),
            "actual_end_time": isoformat_or_none(match.actual_end_time),
            "actual_duration": match.actual_duration,
            "notes": match.notes,
        } if match.is_quick_match else None,
        "payment_settings": match.payment_settings,
        "game_settings": match.game_settings,
        "players": [
            {
                "user": users.get(p.user_id, {"id": p.user_id}),
                "joined_at": isoformat_or_none(p.joined_at),
                "status": p.status,
                "payment_status": p.payment_status,
                "payment_method": p.payment_method,
                "amount_to_pay": p.amount_to_pay,
                "paid_amount": p.paid_amount,
                "payment_id": p.payment_id,
                "paid_at": isoformat_or_none(p.paid_at),
                "left_early": p.left_early,
                "left_at": isoformat_or_none(p.left_at),
            }
            for p in match.players.values()
        ],
        "joined_count": len(match_engine.joined_players(match)),
        "paid_count": len(match_engine.paid_players(match)),
        "available_spots": match_engine.available_spots(match),
        "total_collected": match_engine.total_collected(match),
        "is_upcoming": match_engine.is_upcoming(match, now),
        "is_live": match_engine.is_live(match, now),
        "share_link": match_engine.share_link(match),
        "version": match.version,
        "created_at": isoformat_or_none(match.created_at),
        "updated_at": isoformat_or_none(match.updated_at),
    }


async def render_match(session: AsyncSession, match: MatchState) -> Dict:
    """match_to_dict with organizer and roster names resolved."""
    users = await user_service.get_user_summaries(session, [match.organizer_id, *match.players.keys()])
    return match_to_dict(match, users)


async def render_matches(session: AsyncSession, matches: List[MatchState]) -> List[Dict]:
    ids = set()
    for match in matches:
        ids.add(match.organizer_id)
        ids.update(match.players.keys())
    users = await user_service.get_user_summaries(session, ids)
    now = utcnow()
    return [match_to_dict(match, users, now) for match in matches]


async def get_match(session: AsyncSession, match_code: str) -> MatchState:
    """
    Raises:
        NotFoundError: If no match has this code
    """
    match = await match_repository.load_match_by_code(session, match_code)
    if match is None:
        raise NotFoundError("Match not found")
    return match


async def list_active_matches(session: AsyncSession, limit: int = 50, offset: int = 0) -> List[MatchState]:
    """Open and started matches that have not started yet, soonest first."""
    return await match_repository.list_matches(
        session,
        statuses=(MatchStatus.OPEN.value, MatchStatus.STARTED.value),
        starts_after=utcnow(),
        limit=limit,
        offset=offset,
    )


async def mutate_match(
    session: AsyncSession,
    match_code: str,
    operation: Callable[[MatchState], Any],
) -> Tuple[MatchState, Any]:
    """
    Load, apply ``operation`` and save, retrying on version conflicts.

    ``operation`` must be a pure engine call; it is re-run against a fresh
    copy on every attempt. Does not commit.

    Returns:
        (saved match, operation result)

    Raises:
        NotFoundError: If the match does not exist
        ConcurrencyConflictError: If every attempt lost the version race
    """
    for attempt in range(1, MATCH_SAVE_MAX_ATTEMPTS + 1):
        match = await get_match(session, match_code)
        result = operation(match)
        try:
            await match_repository.save_match(session, match)
            return match, result
        except MatchConflictError as e:
            logger.warning(f"{e} (attempt {attempt}/{MATCH_SAVE_MAX_ATTEMPTS})")
    raise ConcurrencyConflictError(
        "The match was updated by someone else, please try again", code="version_conflict"
    )


async def create_match(session: AsyncSession, payload, actor: Actor) -> MatchState:
    """
    Create a regular or quick match organized by ``actor``.

    Raises:
        DuplicateError: If no unused match code could be drawn
    """
    for _ in range(MATCH_CODE_ATTEMPTS):
        match_code = generate_match_code()
        if not await match_repository.match_code_exists(session, match_code):
            break
    else:
        raise DuplicateError("Could not allocate a match code, please retry", code="duplicate_match_code")

    now = utcnow()
    match = match_engine.create_match(payload, actor.user_id, match_code, now)
    await match_repository.insert_match(session, match)
    await session.commit()
    match.created_at = match.updated_at = now
    logger.info(
        f"Match {match.match_code} created by user {actor.user_id} "
        f"({'quick' if match.is_quick_match else 'regular'}, status {match.status})"
    )
    return match


async def publish_match(session: AsyncSession, match_code: str, actor: Actor) -> MatchState:
    match, _ = await mutate_match(session, match_code, lambda m: match_engine.publish_match(m, actor))
    await session.commit()
    notification_service.notify_match(match.match_code, notification_service.MATCH_UPDATED, {"status": match.status})
    return match


async def start_match(session: AsyncSession, match_code: str, actor: Actor) -> MatchState:
    match, _ = await mutate_match(session, match_code, lambda m: match_engine.start_match(m, actor))
    await session.commit()
    logger.info(f"Match {match.match_code} started by user {actor.user_id}")
    notification_service.notify_match(
        match.match_code,
        notification_service.MATCH_STARTED,
        {"message": "The match has started! Payments are now open."},
    )
    return match


async def complete_match(session: AsyncSession, match_code: str, actor: Actor) -> MatchState:
    """
    End a started match. Regular matches are done; quick matches move to
    pending-details and wait for complete_match_details.
    """
    now = utcnow()
    match, _ = await mutate_match(session, match_code, lambda m: match_engine.complete_match(m, actor, now))
    if match.status == MatchStatus.COMPLETED.value:
        await user_service.increment_match_stats(
            session, [p.user_id for p in match_engine.joined_players(match)], match.organizer_id
        )
    await session.commit()
    logger.info(f"Match {match.match_code} ended by user {actor.user_id} (status {match.status})")

    message = (
        "Match ended! Admin will now set the final details and costs."
        if match.is_quick_match
        else "The match has ended. Thanks for playing!"
    )
    notification_service.notify_match(
        match.match_code, notification_service.MATCH_COMPLETED, {"status": match.status, "message": message}
    )
    return match


async def complete_match_details(session: AsyncSession, match_code: str, actor: Actor, details) -> MatchState:
    """Finalize a quick match and request payment from every joined player."""
    now = utcnow()
    match, cost_per_player = await mutate_match(
        session, match_code, lambda m: match_engine.complete_match_details(m, actor, details, now)
    )
    await user_service.increment_match_stats(
        session, [p.user_id for p in match_engine.joined_players(match)], match.organizer_id
    )
    await session.commit()
    logger.info(f"Match {match.match_code} details completed, {cost_per_player} per player")

    notification_service.notify_match(
        match.match_code,
        notification_service.PAYMENT_REQUESTED,
        {
            "cost_per_player": cost_per_player,
            "message": f"Match details completed! Payment of ₹{cost_per_player} is now due.",
        },
    )
    return match


async def cancel_match(session: AsyncSession, match_code: str, actor: Actor) -> MatchState:
    match, _ = await mutate_match(session, match_code, lambda m: match_engine.cancel_match(m, actor))
    await session.commit()
    logger.info(f"Match {match.match_code} cancelled by user {actor.user_id}")
    notification_service.notify_match(
        match.match_code,
        notification_service.MATCH_CANCELLED,
        {"message": "This match has been cancelled by the organizer."},
    )
    return match


async def update_match(session: AsyncSession, match_code: str, actor: Actor, changes: Dict) -> Tuple[MatchState, List[str]]:
    match, changed = await mutate_match(
        session, match_code, lambda m: match_engine.update_match_details(m, actor, changes)
    )
    await session.commit()
    if changed:
        notification_service.notify_match(
            match.match_code,
            notification_service.MATCH_UPDATED,
            {"changed": changed, "cost_per_player": match.cost_per_player},
        )
    return match, changed


async def join_match(session: AsyncSession, match_code: str, user_id: int) -> MatchState:
    now = utcnow()
    match, _ = await mutate_match(session, match_code, lambda m: match_engine.join_match(m, user_id, now))
    await session.commit()

    users = await user_service.get_user_summaries(session, [user_id])
    notification_service.notify_match(
        match.match_code,
        notification_service.PLAYER_JOINED,
        {
            "player": users.get(user_id, {"id": user_id}),
            "joined_count": len(match_engine.joined_players(match)),
            "available_spots": match_engine.available_spots(match),
        },
    )
    return match


async def leave_match(session: AsyncSession, match_code: str, user_id: int) -> MatchState:
    now = utcnow()
    match, retained = await mutate_match(session, match_code, lambda m: match_engine.leave_match(m, user_id, now))
    await session.commit()
    notification_service.notify_match(
        match.match_code,
        notification_service.PLAYER_LEFT,
        {"user_id": user_id, "retained": retained, "available_spots": match_engine.available_spots(match)},
    )
    return match


async def remove_player(session: AsyncSession, match_code: str, actor: Actor, user_id: int) -> MatchState:
    now = utcnow()
    match, retained = await mutate_match(
        session, match_code, lambda m: match_engine.remove_player(m, actor, user_id, now)
    )
    await session.commit()
    logger.info(f"User {user_id} removed from match {match.match_code} by user {actor.user_id}")
    notification_service.notify_match(
        match.match_code,
        notification_service.PLAYER_REMOVED,
        {"user_id": user_id, "retained": retained, "available_spots": match_engine.available_spots(match)},
    )
    return match


async def apply_payment_status(
    session: AsyncSession,
    match_code: str,
    user_id: int,
    status: str,
    amount: Optional[float] = None,
    method: Optional[str] = None,
    payment_id: Optional[str] = None,
) -> Tuple[MatchState, bool]:
    """
    Record a payment outcome on the roster. Does not commit: the caller
    commits it together with its Payment record.

    Returns:
        (match, whether the participation changed)
    """
    now = utcnow()
    match, changed = await mutate_match(
        session,
        match_code,
        lambda m: match_engine.update_payment_status(
            m, user_id, status, now, amount=amount, method=method, payment_id=payment_id
        ),
    )
    if changed and status == PlayerPaymentStatus.PAID.value:
        await user_service.add_total_paid(session, user_id, match.players[user_id].paid_amount)
    return match, changed
