"""Match lifecycle and roster route handlers."""

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from playsplit.api.auth_dependencies import actor_for, require_user
from playsplit.api.routes import envelope
from playsplit.database.db import get_db_session
from playsplit.models.schemas import CompleteDetailsRequest, MatchInput, UpdateMatchRequest
from playsplit.services import match_service

logger = logging.getLogger(__name__)
router = APIRouter()


# ---------------------------------------------------------------------------
# Match CRUD
# ---------------------------------------------------------------------------


@router.post("/api/matches", status_code=201)
async def create_match(
    payload: MatchInput,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Create a regular match, or a quick match that starts immediately."""
    match = await match_service.create_match(session, payload, actor_for(user))
    message = "Quick match started" if match.is_quick_match else "Match created successfully"
    return envelope({"match": await match_service.render_match(session, match)}, message)


@router.get("/api/matches")
async def list_matches(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_db_session),
):
    """Upcoming open or started matches, soonest first."""
    matches = await match_service.list_active_matches(session, limit=limit, offset=offset)
    return envelope({"matches": await match_service.render_matches(session, matches)})


@router.get("/api/matches/{match_code}")
async def get_match(match_code: str, session: AsyncSession = Depends(get_db_session)):
    match = await match_service.get_match(session, match_code)
    return envelope({"match": await match_service.render_match(session, match)})


@router.put("/api/matches/{match_code}")
async def update_match(
    match_code: str,
    payload: UpdateMatchRequest,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Edit a draft, open or started match (organizer or admin)."""
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    match, changed = await match_service.update_match(session, match_code, actor_for(user), changes)
    message = "Match updated successfully" if changed else "No changes to apply"
    return envelope({"match": await match_service.render_match(session, match), "changed": changed}, message)


@router.delete("/api/matches/{match_code}")
async def cancel_match(
    match_code: str,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Cancel a match. Matches are never hard-deleted."""
    match = await match_service.cancel_match(session, match_code, actor_for(user))
    return envelope({"match": await match_service.render_match(session, match)}, "Match cancelled successfully")


# ---------------------------------------------------------------------------
# Lifecycle transitions
# ---------------------------------------------------------------------------


@router.post("/api/matches/{match_code}/publish")
async def publish_match(
    match_code: str,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    match = await match_service.publish_match(session, match_code, actor_for(user))
    return envelope({"match": await match_service.render_match(session, match)}, "Match published")


@router.post("/api/matches/{match_code}/start")
async def start_match(
    match_code: str,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    match = await match_service.start_match(session, match_code, actor_for(user))
    return envelope({"match": await match_service.render_match(session, match)}, "Match started successfully")


@router.post("/api/matches/{match_code}/complete")
async def complete_match(
    match_code: str,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """End a started match; quick matches then wait for their final details."""
    match = await match_service.complete_match(session, match_code, actor_for(user))
    message = (
        "Match ended. Please complete the match details."
        if match.is_quick_match
        else "Match completed successfully"
    )
    return envelope({"match": await match_service.render_match(session, match)}, message)


@router.post("/api/matches/{match_code}/complete-details")
async def complete_match_details(
    match_code: str,
    payload: CompleteDetailsRequest,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Set the real title, venue and cost of an ended quick match and bill the players."""
    match = await match_service.complete_match_details(session, match_code, actor_for(user), payload)
    return envelope(
        {"match": await match_service.render_match(session, match), "cost_per_player": match.cost_per_player},
        "Match details completed successfully",
    )


# ---------------------------------------------------------------------------
# Roster
# ---------------------------------------------------------------------------


@router.post("/api/matches/{match_code}/join")
async def join_match(
    match_code: str,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    match = await match_service.join_match(session, match_code, user["id"])
    return envelope({"match": await match_service.render_match(session, match)}, "Successfully joined the match")


@router.post("/api/matches/{match_code}/leave")
async def leave_match(
    match_code: str,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    match = await match_service.leave_match(session, match_code, user["id"])
    return envelope({"match": await match_service.render_match(session, match)}, "Successfully left the match")


@router.delete("/api/matches/{match_code}/players/{user_id}")
async def remove_player(
    match_code: str,
    user_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Remove a player from the roster (organizer or admin)."""
    match = await match_service.remove_player(session, match_code, actor_for(user), user_id)
    return envelope({"match": await match_service.render_match(session, match)}, "Player removed from match")


@router.get("/api/matches/{match_code}/share")
async def share_match(match_code: str, session: AsyncSession = Depends(get_db_session)):
    """Shareable link and a short summary for messaging apps."""
    match = await match_service.get_match(session, match_code)
    data = await match_service.render_match(session, match)
    summary = (
        f"{data['title']} at {data['venue']['name']}, "
        f"{data['available_spots']} spots left, {data['cost_per_player']} per player"
    )
    return envelope({"share_link": data["share_link"], "summary": summary})
