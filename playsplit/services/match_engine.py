"""
Match lifecycle and settlement engine.

Owns the match state machine, roster mutations and the cost-per-player
arithmetic. Every function works on an in-memory ``MatchState``; nothing here
touches the database or the network. Callers load the aggregate, apply one
operation and save the whole aggregate back (see ``match_service``).

State machine::

    draft --publish--> open --start--> started --complete--> completed
                                          |                   (regular)
                                          +--complete--> pending-details --complete-details--> completed
                                          |   (quick)
    open, started --cancel--> cancelled
"""

import math
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from playsplit.database.models import MatchStatus, ParticipationStatus, PlayerPaymentStatus
from playsplit.utils.constants import (
    QUICK_MATCH_DEFAULT_CAPACITY,
    QUICK_MATCH_DEFAULT_DURATION,
    QUICK_MATCH_VENUE_ADDRESS,
    QUICK_MATCH_VENUE_NAME,
    QUICK_MAX_PLAYERS,
    REGULAR_MAX_PLAYERS,
    REGULAR_MIN_PLAYERS,
)
from playsplit.utils.datetime_utils import ensure_utc, minutes_between
from playsplit.utils.exceptions import AuthorizationError, BusinessRuleError, ValidationError

CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:3000")

EDITABLE_STATUSES = (MatchStatus.DRAFT.value, MatchStatus.OPEN.value, MatchStatus.STARTED.value)
TERMINAL_STATUSES = (MatchStatus.COMPLETED.value, MatchStatus.CANCELLED.value)


@dataclass
class Venue:
    name: str
    address: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None


@dataclass
class PlayerParticipation:
    """One player's roster entry and payment bookkeeping."""

    user_id: int
    joined_at: datetime
    status: str = ParticipationStatus.JOINED.value
    payment_status: str = PlayerPaymentStatus.PENDING.value
    payment_method: Optional[str] = None
    amount_to_pay: float = 0
    paid_amount: float = 0
    payment_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    left_early: bool = False
    left_at: Optional[datetime] = None


@dataclass
class MatchState:
    """
    The match aggregate: match fields plus the roster.

    ``players`` is keyed by user id; dict order is join order. ``version`` is
    the optimistic-concurrency counter read at load time.
    """

    match_code: str
    title: str
    organizer_id: int
    venue: Venue
    date_time: datetime
    duration: int
    capacity: int
    total_cost: float
    cost_per_player: int
    status: str
    is_quick_match: bool = False
    description: str = ""
    turf_type: str = "full"
    players: Dict[int, PlayerParticipation] = field(default_factory=dict)
    details_completed_at: Optional[datetime] = None
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    actual_duration: Optional[int] = None
    notes: Optional[str] = None
    payment_settings: Dict = field(default_factory=dict)
    game_settings: Dict = field(default_factory=dict)
    id: Optional[int] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class Actor:
    """The authenticated user performing an operation."""

    user_id: int
    is_admin: bool = False


# ============================================================================
# Cost arithmetic
# ============================================================================

def compute_cost_per_player(total_cost: float, capacity: int) -> int:
    """ceil(total_cost / capacity), computed in decimal to avoid float drift."""
    if capacity <= 0:
        return 0
    return int(math.ceil(Decimal(str(total_cost)) / Decimal(capacity)))


def reprice(match: MatchState) -> int:
    """
    Recompute cost_per_player and sync every pending player's amount owed.

    Must be called after any change to total_cost or capacity.
    """
    match.cost_per_player = compute_cost_per_player(match.total_cost, match.capacity)
    for player in match.players.values():
        if player.payment_status == PlayerPaymentStatus.PENDING.value:
            player.amount_to_pay = match.cost_per_player
    return match.cost_per_player


# ============================================================================
# Derived read-only fields
# ============================================================================

def joined_players(match: MatchState) -> List[PlayerParticipation]:
    return [p for p in match.players.values() if p.status == ParticipationStatus.JOINED.value]


def paid_players(match: MatchState) -> List[PlayerParticipation]:
    return [p for p in match.players.values() if p.payment_status == PlayerPaymentStatus.PAID.value]


def available_spots(match: MatchState) -> int:
    return match.capacity - len(joined_players(match))


def total_collected(match: MatchState) -> float:
    return sum(p.paid_amount for p in paid_players(match))


def is_upcoming(match: MatchState, now: datetime) -> bool:
    return ensure_utc(now) < ensure_utc(match.date_time)


def is_live(match: MatchState, now: datetime) -> bool:
    start = ensure_utc(match.date_time)
    end = start + timedelta(minutes=match.duration)
    return start <= ensure_utc(now) <= end


def share_link(match: MatchState) -> str:
    return f"{CLIENT_URL.rstrip('/')}/match/{match.match_code}"


# ============================================================================
# Guards
# ============================================================================

def is_organizer_or_admin(match: MatchState, actor: Actor) -> bool:
    return actor.is_admin or actor.user_id == match.organizer_id


def require_organizer_or_admin(match: MatchState, actor: Actor) -> None:
    if not is_organizer_or_admin(match, actor):
        raise AuthorizationError(
            "Access denied. Only match organizer or admin can perform this action.",
            code="not_organizer",
        )


def _transition(match: MatchState, allowed_from: Iterable[str], target: str, message: str) -> None:
    if match.status not in allowed_from:
        raise BusinessRuleError(message, code="invalid_transition")
    match.status = target


def _find_player(match: MatchState, user_id: int) -> PlayerParticipation:
    player = match.players.get(user_id)
    if player is None:
        raise BusinessRuleError("Player not found in match", code="player_not_found")
    return player


# ============================================================================
# Lifecycle
# ============================================================================

def create_match(payload, organizer_id: int, match_code: str, now: datetime) -> MatchState:
    """
    Build a new match from a validated RegularMatchInput or QuickMatchInput.

    Quick matches skip ``open``: they start immediately with defaults for
    everything not supplied.
    """
    now = ensure_utc(now)
    payment_settings = payload.payment_settings.model_dump(mode="json") if payload.payment_settings else {}
    game_settings = payload.game_settings.model_dump(mode="json") if payload.game_settings else {}

    if payload.is_quick_match:
        venue = payload.venue
        if venue is not None:
            match_venue = Venue(venue.name, venue.address, venue.latitude, venue.longitude)
        else:
            match_venue = Venue(QUICK_MATCH_VENUE_NAME, QUICK_MATCH_VENUE_ADDRESS)
        match = MatchState(
            match_code=match_code,
            title=(payload.title or "").strip() or f"Quick Match {match_code}",
            description=payload.description or "",
            organizer_id=organizer_id,
            venue=match_venue,
            date_time=ensure_utc(payload.date_time) or now,
            duration=payload.duration or QUICK_MATCH_DEFAULT_DURATION,
            capacity=payload.capacity or QUICK_MATCH_DEFAULT_CAPACITY,
            total_cost=payload.total_cost or 0,
            cost_per_player=0,
            turf_type=payload.turf_type or "full",
            status=MatchStatus.STARTED.value,
            is_quick_match=True,
            actual_start_time=now,
            payment_settings=payment_settings,
            game_settings=game_settings,
        )
    else:
        venue = payload.venue
        match = MatchState(
            match_code=match_code,
            title=payload.title,
            description=payload.description or "",
            organizer_id=organizer_id,
            venue=Venue(venue.name, venue.address, venue.latitude, venue.longitude),
            date_time=ensure_utc(payload.date_time),
            duration=payload.duration,
            capacity=payload.capacity,
            total_cost=payload.total_cost,
            cost_per_player=0,
            turf_type=payload.turf_type,
            status=payload.status,
            is_quick_match=False,
            payment_settings=payment_settings,
            game_settings=game_settings,
        )

    reprice(match)
    return match


def publish_match(match: MatchState, actor: Actor) -> None:
    """draft -> open."""
    require_organizer_or_admin(match, actor)
    _transition(match, (MatchStatus.DRAFT.value,), MatchStatus.OPEN.value, "Only a draft match can be published")


def start_match(match: MatchState, actor: Actor) -> None:
    """open -> started. Closes joining for regular matches."""
    require_organizer_or_admin(match, actor)
    _transition(match, (MatchStatus.OPEN.value,), MatchStatus.STARTED.value, "Match cannot be started")


def complete_match(match: MatchState, actor: Actor, now: datetime) -> None:
    """
    started -> completed (regular) or started -> pending-details (quick).

    Quick matches record when play ended and how long it lasted; the
    organizer then supplies final details via complete_match_details.
    """
    require_organizer_or_admin(match, actor)
    if match.is_quick_match:
        _transition(
            match,
            (MatchStatus.STARTED.value,),
            MatchStatus.PENDING_DETAILS.value,
            "Only a started match can be completed",
        )
        match.actual_end_time = ensure_utc(now)
        match.actual_duration = minutes_between(match.date_time, now)
    else:
        _transition(
            match,
            (MatchStatus.STARTED.value,),
            MatchStatus.COMPLETED.value,
            "Only a started match can be completed",
        )


def complete_match_details(match: MatchState, actor: Actor, details, now: datetime) -> int:
    """
    Apply the final details of a quick match and redistribute its cost.

    Capacity becomes the actual player count (default: the joined count) and
    every joined player is reset to ``pending`` at the new per-player amount,
    re-opening collection now that the true cost is known. Payments already
    recorded against the provisional amount keep their paid_amount.

    Returns:
        The new cost per player
    """
    require_organizer_or_admin(match, actor)
    if not match.is_quick_match or match.status != MatchStatus.PENDING_DETAILS.value:
        raise BusinessRuleError(
            "This operation is only allowed for quick matches pending details completion",
            code="invalid_transition",
        )

    joined = joined_players(match)
    actual_players = details.actual_players or len(joined)
    if actual_players <= 0:
        raise BusinessRuleError("Cannot split the cost of a match with no players", code="no_players")
    if actual_players < len(joined):
        raise ValidationError(
            f"Actual players ({actual_players}) cannot be fewer than joined players ({len(joined)})",
            code="capacity_below_roster",
        )

    match.title = details.title
    match.venue = Venue(
        details.venue.name, details.venue.address, details.venue.latitude, details.venue.longitude
    )
    if details.description is not None:
        match.description = details.description
    match.total_cost = details.total_cost
    match.duration = details.duration or match.actual_duration or QUICK_MATCH_DEFAULT_DURATION
    match.capacity = actual_players

    for player in joined:
        player.payment_status = PlayerPaymentStatus.PENDING.value

    reprice(match)
    match.status = MatchStatus.COMPLETED.value
    match.details_completed_at = ensure_utc(now)
    return match.cost_per_player


def cancel_match(match: MatchState, actor: Actor) -> None:
    """open, started -> cancelled. Terminal."""
    require_organizer_or_admin(match, actor)
    _transition(
        match,
        (MatchStatus.OPEN.value, MatchStatus.STARTED.value),
        MatchStatus.CANCELLED.value,
        "Only an open or started match can be cancelled",
    )


def update_match_details(match: MatchState, actor: Actor, changes: Dict) -> List[str]:
    """
    Edit match fields while the match is still in play.

    Args:
        changes: Field -> new value; ``venue`` is a dict of venue fields

    Returns:
        Names of the fields that changed
    """
    require_organizer_or_admin(match, actor)
    if match.status not in EDITABLE_STATUSES:
        raise BusinessRuleError(f"A {match.status} match cannot be edited", code="match_not_editable")

    changed = []
    capacity = changes.get("capacity")
    if capacity is not None:
        if match.is_quick_match:
            low, high = 1, QUICK_MAX_PLAYERS
        else:
            low, high = REGULAR_MIN_PLAYERS, REGULAR_MAX_PLAYERS
        if not low <= capacity <= high:
            raise ValidationError(
                f"Capacity must be between {low} and {high} players", code="capacity_out_of_range"
            )
        joined_count = len(joined_players(match))
        if capacity < joined_count:
            raise ValidationError(
                f"Capacity ({capacity}) cannot be lower than the number of joined players ({joined_count})",
                code="capacity_below_roster",
            )

    for name in ("title", "description", "date_time", "duration", "turf_type", "capacity", "total_cost"):
        value = changes.get(name)
        if value is None:
            continue
        if name == "date_time":
            value = ensure_utc(value)
        if getattr(match, name) != value:
            setattr(match, name, value)
            changed.append(name)

    venue = changes.get("venue")
    if venue is not None:
        new_venue = Venue(
            venue["name"], venue["address"], venue.get("latitude"), venue.get("longitude")
        )
        if new_venue != match.venue:
            match.venue = new_venue
            changed.append("venue")

    for name in ("payment_settings", "game_settings"):
        value = changes.get(name)
        if value is not None and value != getattr(match, name):
            setattr(match, name, dict(value))
            changed.append(name)

    if "capacity" in changed or "total_cost" in changed:
        reprice(match)
    return changed


# ============================================================================
# Roster
# ============================================================================

def _is_joinable(match: MatchState) -> bool:
    if match.status == MatchStatus.OPEN.value:
        return True
    # Quick matches are created already started and take players during play
    return match.is_quick_match and match.status == MatchStatus.STARTED.value


def join_match(match: MatchState, user_id: int, now: datetime) -> PlayerParticipation:
    """
    Add a player to the roster, or reactivate an opted-out record.

    Raises:
        BusinessRuleError: match_not_open, already_joined, player_removed
            or match_full
    """
    if not _is_joinable(match):
        raise BusinessRuleError("This match is not open for joining", code="match_not_open")

    existing = match.players.get(user_id)
    if existing is not None:
        if existing.status == ParticipationStatus.JOINED.value:
            raise BusinessRuleError("Player already joined", code="already_joined")
        if existing.status == ParticipationStatus.REMOVED.value:
            raise BusinessRuleError("Player was removed from this match", code="player_removed")

    if len(joined_players(match)) >= match.capacity:
        raise BusinessRuleError("Match is full", code="match_full", status_code=409)

    now = ensure_utc(now)
    if existing is not None:
        existing.status = ParticipationStatus.JOINED.value
        existing.joined_at = now
        existing.left_early = False
        existing.left_at = None
        if existing.payment_status == PlayerPaymentStatus.PENDING.value:
            existing.amount_to_pay = match.cost_per_player
        return existing

    player = PlayerParticipation(user_id=user_id, joined_at=now, amount_to_pay=match.cost_per_player)
    match.players[user_id] = player
    return player


def _drop_player(match: MatchState, player: PlayerParticipation, now: datetime) -> bool:
    """Soft-remove a paid player, delete anyone else. Returns True if retained."""
    if player.payment_status == PlayerPaymentStatus.PAID.value:
        player.status = ParticipationStatus.REMOVED.value
        player.left_early = True
        player.left_at = ensure_utc(now)
        return True
    del match.players[player.user_id]
    return False


def leave_match(match: MatchState, user_id: int, now: datetime) -> bool:
    """
    Remove the caller from the roster.

    A paid record is kept (status removed, left_early) so the payment trail
    survives; an unpaid one is deleted.

    Returns:
        True if the record was retained
    """
    if match.status in TERMINAL_STATUSES:
        raise BusinessRuleError("Cannot leave a completed or cancelled match", code="match_closed")
    player = _find_player(match, user_id)
    if player.status == ParticipationStatus.REMOVED.value:
        raise BusinessRuleError("Player not found in match", code="player_not_found")
    return _drop_player(match, player, now)


def remove_player(match: MatchState, actor: Actor, user_id: int, now: datetime) -> bool:
    """Organizer/admin removes a player; same retention rule as leave."""
    require_organizer_or_admin(match, actor)
    if match.status in TERMINAL_STATUSES:
        raise BusinessRuleError("Cannot remove players from a completed or cancelled match", code="match_closed")
    player = _find_player(match, user_id)
    if player.status == ParticipationStatus.REMOVED.value:
        raise BusinessRuleError("Player not found in match", code="player_not_found")
    return _drop_player(match, player, now)


# ============================================================================
# Settlement
# ============================================================================

def update_payment_status(
    match: MatchState,
    user_id: int,
    status: str,
    now: datetime,
    amount: Optional[float] = None,
    method: Optional[str] = None,
    payment_id: Optional[str] = None,
) -> bool:
    """
    Record a payment outcome on a player's participation.

    Safe to re-apply: a repeated ``paid`` with the same reference changes
    nothing, and a late ``failed`` never downgrades a paid record.

    Returns:
        True if the participation changed

    Raises:
        BusinessRuleError: player_not_found, or already_paid when a paid
            record receives a different payment reference
    """
    if status not in {s.value for s in PlayerPaymentStatus}:
        raise ValidationError(f"Invalid payment status: {status}", code="invalid_payment_status")

    player = _find_player(match, user_id)

    if player.payment_status == PlayerPaymentStatus.PAID.value:
        if status == PlayerPaymentStatus.PAID.value:
            if player.payment_id == payment_id:
                return False
            raise BusinessRuleError("Player has already paid for this match", code="already_paid")
        if status == PlayerPaymentStatus.FAILED.value:
            return False

    if status == PlayerPaymentStatus.PAID.value:
        player.payment_status = status
        player.paid_amount = amount if amount is not None else player.amount_to_pay
        player.payment_method = method
        player.payment_id = payment_id
        player.paid_at = ensure_utc(now)
        return True

    if player.payment_status == status:
        return False
    player.payment_status = status
    if status == PlayerPaymentStatus.PENDING.value:
        player.amount_to_pay = match.cost_per_player
    return True
