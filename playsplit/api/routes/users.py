"""User-facing history, stats and lookup route handlers."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from playsplit.api.auth_dependencies import require_user
from playsplit.api.routes import envelope
from playsplit.database.db import get_db_session
from playsplit.services import match_repository, match_service, payment_service, user_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/users/matches")
async def get_user_matches(
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Matches the caller organized or played in, newest first."""
    matches = await match_repository.list_user_matches(
        session,
        user["id"],
        statuses=(status,) if status else None,
        limit=limit,
        offset=offset,
    )
    return envelope({"matches": await match_service.render_matches(session, matches)})


@router.get("/api/users/payments")
async def get_user_payments(
    status: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    data = await payment_service.list_user_payments(session, user["id"], status=status, limit=limit, offset=offset)
    return envelope(data)


@router.get("/api/users/stats")
async def get_user_stats(
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    return envelope({"stats": await user_service.get_user_stats(session, user["id"])})


@router.get("/api/users/search")
async def search_users(
    q: str = Query(..., min_length=2, max_length=100),
    limit: int = Query(10, ge=1, le=50),
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Find players by name or email, e.g. to add them to a match."""
    users = await user_service.search_users(session, q, limit=limit)
    return envelope({"users": [u for u in users if u["id"] != user["id"]]})


@router.get("/api/users/notifications")
async def get_notifications(
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    notifications = await user_service.get_user_notifications(session, user["id"])
    return envelope({"notifications": notifications, "unread_count": len(notifications)})


@router.get("/api/users/{user_id}/public")
async def get_public_profile(user_id: int, session: AsyncSession = Depends(get_db_session)):
    return envelope({"user": await user_service.get_public_profile(session, user_id)})
