"""
Persistence for the match aggregate (``matches`` + ``match_players``).

The aggregate is always written whole. ``save_match`` is a compare-and-swap
on ``matches.version``: when another request saved the match since it was
loaded, zero rows are updated and ``MatchConflictError`` is raised so the
caller can reload and retry.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import delete, insert, select, update, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from playsplit.database.models import Match, MatchPlayer
from playsplit.services.match_engine import MatchState, PlayerParticipation, Venue
from playsplit.utils.datetime_utils import ensure_utc
from playsplit.utils.exceptions import DuplicateError, InfrastructureError

logger = logging.getLogger(__name__)


class MatchConflictError(Exception):
    """The match changed between load and save."""

    def __init__(self, match_code: str, expected_version: int):
        super().__init__(f"Match {match_code} was modified concurrently (expected version {expected_version})")
        self.match_code = match_code
        self.expected_version = expected_version


def _to_state(row: Match) -> MatchState:
    players = {}
    for p in sorted(row.players, key=lambda p: p.position):
        players[p.user_id] = PlayerParticipation(
            user_id=p.user_id,
            joined_at=ensure_utc(p.joined_at),
            status=p.status,
            payment_status=p.payment_status,
            payment_method=p.payment_method,
            amount_to_pay=p.amount_to_pay,
            paid_amount=p.paid_amount,
            payment_id=p.payment_id,
            paid_at=ensure_utc(p.paid_at),
            left_early=p.left_early,
            left_at=ensure_utc(p.left_at),
        )
    return MatchState(
        id=row.id,
        match_code=row.match_code,
        title=row.title,
        description=row.description or "",
        organizer_id=row.organizer_id,
        venue=Venue(row.venue_name, row.venue_address, row.venue_latitude, row.venue_longitude),
        date_time=ensure_utc(row.date_time),
        duration=row.duration,
        turf_type=row.turf_type,
        capacity=row.capacity,
        total_cost=row.total_cost,
        cost_per_player=row.cost_per_player,
        status=row.status,
        is_quick_match=row.is_quick_match,
        details_completed_at=ensure_utc(row.details_completed_at),
        actual_start_time=ensure_utc(row.actual_start_time),
        actual_end_time=ensure_utc(row.actual_end_time),
        actual_duration=row.actual_duration,
        notes=row.notes,
        payment_settings=dict(row.payment_settings or {}),
        game_settings=dict(row.game_settings or {}),
        players=players,
        version=row.version,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def _match_values(state: MatchState) -> dict:
    return {
        "title": state.title,
        "description": state.description,
        "organizer_id": state.organizer_id,
        "venue_name": state.venue.name,
        "venue_address": state.venue.address,
        "venue_latitude": state.venue.latitude,
        "venue_longitude": state.venue.longitude,
        "date_time": state.date_time,
        "duration": state.duration,
        "turf_type": state.turf_type,
        "capacity": state.capacity,
        "total_cost": state.total_cost,
        "cost_per_player": state.cost_per_player,
        "status": state.status,
        "is_quick_match": state.is_quick_match,
        "details_completed_at": state.details_completed_at,
        "actual_start_time": state.actual_start_time,
        "actual_end_time": state.actual_end_time,
        "actual_duration": state.actual_duration,
        "notes": state.notes,
        "payment_settings": state.payment_settings or None,
        "game_settings": state.game_settings or None,
    }


def _player_rows(state: MatchState) -> List[dict]:
    return [
        {
            "match_id": state.id,
            "user_id": p.user_id,
            "position": position,
            "joined_at": p.joined_at,
            "status": p.status,
            "payment_status": p.payment_status,
            "payment_method": p.payment_method,
            "amount_to_pay": p.amount_to_pay,
            "paid_amount": p.paid_amount,
            "payment_id": p.payment_id,
            "paid_at": p.paid_at,
            "left_early": p.left_early,
            "left_at": p.left_at,
        }
        for position, p in enumerate(state.players.values())
    ]


def _select_matches():
    # populate_existing so a reload after a conflict sees fresh rows
    return (
        select(Match)
        .options(selectinload(Match.players))
        .execution_options(populate_existing=True)
    )


async def load_match_by_code(session: AsyncSession, match_code: str) -> Optional[MatchState]:
    """
    Load the match aggregate by its public code.

    Returns:
        MatchState, or None if no such match

    Raises:
        InfrastructureError: On database failure
    """
    try:
        result = await session.execute(_select_matches().where(Match.match_code == match_code.upper()))
        row = result.scalar_one_or_none()
    except SQLAlchemyError as e:
        logger.error(f"Failed to load match {match_code}: {e}", exc_info=True)
        raise InfrastructureError("Could not load match") from e
    return _to_state(row) if row else None


async def insert_match(session: AsyncSession, state: MatchState) -> MatchState:
    """
    Persist a newly created match at version 1.

    Raises:
        DuplicateError: If the match code is already taken
        InfrastructureError: On any other database failure
    """
    try:
        row = Match(match_code=state.match_code, version=1, **_match_values(state))
        session.add(row)
        await session.flush()
        state.id = row.id
        rows = _player_rows(state)
        if rows:
            await session.execute(insert(MatchPlayer), rows)
    except IntegrityError as e:
        raise DuplicateError(f"Match code {state.match_code} already exists", code="duplicate_match_code") from e
    except SQLAlchemyError as e:
        logger.error(f"Failed to insert match {state.match_code}: {e}", exc_info=True)
        raise InfrastructureError("Could not save match") from e

    state.version = 1
    return state


async def match_code_exists(session: AsyncSession, match_code: str) -> bool:
    try:
        result = await session.execute(select(Match.id).where(Match.match_code == match_code))
    except SQLAlchemyError as e:
        raise InfrastructureError("Could not load match") from e
    return result.first() is not None


async def save_match(session: AsyncSession, state: MatchState) -> MatchState:
    """
    Write the whole aggregate back if nobody else has since.

    Raises:
        MatchConflictError: The stored version no longer matches state.version
        InfrastructureError: On database failure
    """
    try:
        result = await session.execute(
            update(Match)
            .where(Match.id == state.id, Match.version == state.version)
            .values(version=Match.version + 1, **_match_values(state))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise MatchConflictError(state.match_code, state.version)

        await session.execute(
            delete(MatchPlayer)
            .where(MatchPlayer.match_id == state.id)
            .execution_options(synchronize_session=False)
        )
        rows = _player_rows(state)
        if rows:
            await session.execute(insert(MatchPlayer), rows)
    except SQLAlchemyError as e:
        logger.error(f"Failed to save match {state.match_code}: {e}", exc_info=True)
        raise InfrastructureError("Could not save match") from e

    state.version += 1
    return state


async def list_matches(
    session: AsyncSession,
    statuses: Optional[Iterable[str]] = None,
    starts_after: Optional[datetime] = None,
    organizer_id: Optional[int] = None,
    search: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[MatchState]:
    """List matches ordered by start time, with optional filters."""
    query = _select_matches()
    if statuses:
        query = query.where(Match.status.in_(list(statuses)))
    if starts_after is not None:
        query = query.where(Match.date_time >= starts_after)
    if organizer_id is not None:
        query = query.where(Match.organizer_id == organizer_id)
    if search:
        pattern = f"%{search}%"
        query = query.where(
            or_(Match.title.ilike(pattern), Match.venue_name.ilike(pattern), Match.match_code.ilike(pattern))
        )
    query = query.order_by(Match.date_time.asc()).limit(limit).offset(offset)
    try:
        result = await session.execute(query)
    except SQLAlchemyError as e:
        logger.error(f"Failed to list matches: {e}", exc_info=True)
        raise InfrastructureError("Could not load matches") from e
    return [_to_state(row) for row in result.scalars().all()]


async def list_user_matches(
    session: AsyncSession,
    user_id: int,
    statuses: Optional[Iterable[str]] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[MatchState]:
    """Matches the user organized or has a roster record in, newest first."""
    member_ids = select(MatchPlayer.match_id).where(MatchPlayer.user_id == user_id)
    query = _select_matches().where(or_(Match.organizer_id == user_id, Match.id.in_(member_ids)))
    if statuses:
        query = query.where(Match.status.in_(list(statuses)))
    query = query.order_by(Match.date_time.desc()).limit(limit).offset(offset)
    try:
        result = await session.execute(query)
    except SQLAlchemyError as e:
        logger.error(f"Failed to list matches for user {user_id}: {e}", exc_info=True)
        raise InfrastructureError("Could not load matches") from e
    return [_to_state(row) for row in result.scalars().all()]
