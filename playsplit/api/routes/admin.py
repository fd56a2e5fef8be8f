"""Admin route handlers: dashboard, user management, listings and analytics."""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from playsplit.api.auth_dependencies import actor_for, require_admin
from playsplit.api.routes import envelope
from playsplit.database.db import get_db_session
from playsplit.models.schemas import AdminUpdateUserRequest
from playsplit.services import admin_service, identity_service, match_service, user_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/admin/dashboard")
async def get_dashboard(
    timeframe: str = Query("30d"),
    user: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    return envelope(await admin_service.get_dashboard(session, timeframe))


@router.get("/api/admin/users")
async def list_users(
    search: Optional[str] = Query(None),
    status: Optional[Literal["active", "inactive"]] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    return envelope(await admin_service.list_users(session, search=search, status=status, limit=limit, offset=offset))


@router.put("/api/admin/users/{user_id}")
async def update_user(
    user_id: int,
    payload: AdminUpdateUserRequest,
    user: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    """Change a user's role, active flag, name or email."""
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    updated = await user_service.admin_update_user(session, user_id, changes)
    if "role" in changes:
        await identity_service.set_custom_user_claims(updated["firebase_uid"], {"role": updated["role"]})
    logger.info(f"Admin {user['id']} updated user {user_id}: {sorted(changes)}")
    return envelope({"user": updated}, "User updated successfully")


@router.get("/api/admin/matches")
async def list_matches(
    status: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    return envelope(
        await admin_service.list_matches(session, status=status, search=search, limit=limit, offset=offset)
    )


@router.delete("/api/admin/matches/{match_code}")
async def cancel_match(
    match_code: str,
    user: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    match = await match_service.cancel_match(session, match_code, actor_for(user))
    return envelope({"match": await match_service.render_match(session, match)}, "Match cancelled successfully")


@router.get("/api/admin/payments")
async def list_payments(
    status: Optional[str] = Query(None),
    method: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    return envelope(
        await admin_service.list_payments(session, status=status, method=method, limit=limit, offset=offset)
    )


@router.get("/api/admin/analytics")
async def get_analytics(
    period: str = Query("30d"),
    user: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    return envelope(await admin_service.get_analytics(session, period))
