"""Authentication route handlers.

Sign-in itself happens against Firebase on the client; these endpoints
exchange a Firebase ID token for the local PlaySplit profile.
"""

import logging

from fastapi import APIRouter, Depends, Request
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from playsplit.api.auth_dependencies import get_current_user
from playsplit.api.routes import envelope
from playsplit.database.db import get_db_session
from playsplit.models.schemas import (
    DeleteAccountRequest,
    LoginRequest,
    RegisterRequest,
    UpdateProfileRequest,
)
from playsplit.services import identity_service, rate_limiting_service, user_service
from playsplit.utils.exceptions import AuthenticationError, ValidationError

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/api/auth/register", status_code=201)
async def register(
    request: Request,
    payload: RegisterRequest,
    session: AsyncSession = Depends(get_db_session),
):
    """
    Create the local profile for a Firebase account.

    The token's email, when present, must match the submitted one.
    """
    await rate_limiting_service.check_rate_limit(
        "register", get_remote_address(request), rate_limiting_service.REGISTER_LIMIT
    )
    claims = await identity_service.verify_id_token(payload.id_token)

    token_email = (claims.get("email") or "").strip().lower()
    if token_email and token_email != payload.email.strip().lower():
        raise ValidationError("Email does not match the signed-in account", code="email_mismatch")

    user = await user_service.create_user(
        session,
        firebase_uid=claims["uid"],
        name=payload.name,
        email=payload.email,
        auth_provider=payload.auth_provider,
        phone=payload.phone,
        profile_picture=claims.get("picture"),
    )
    await identity_service.set_custom_user_claims(claims["uid"], {"role": user["role"]})
    logger.info(f"User {user['id']} registered via {payload.auth_provider}")
    return envelope({"user": user}, "User registered successfully")


@router.post("/api/auth/login")
async def login(
    request: Request,
    payload: LoginRequest,
    session: AsyncSession = Depends(get_db_session),
):
    await rate_limiting_service.check_rate_limit(
        "login", get_remote_address(request), rate_limiting_service.LOGIN_LIMIT
    )
    claims = await identity_service.verify_id_token(payload.id_token)

    user = await user_service.get_user_by_firebase_uid(session, claims["uid"])
    if user is None:
        raise AuthenticationError("User not found. Please register first.", code="user_not_registered")
    if not user["is_active"]:
        raise AuthenticationError("Account is disabled. Please contact support.", code="account_disabled")
    return envelope({"user": user}, "Login successful")


@router.get("/api/auth/profile")
async def get_profile(user: dict = Depends(get_current_user)):
    return envelope({"user": user})


@router.put("/api/auth/profile")
async def update_profile(
    payload: UpdateProfileRequest,
    user: dict = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    updated = await user_service.update_profile(session, user["id"], changes)
    return envelope({"user": updated}, "Profile updated successfully")


@router.post("/api/auth/refresh")
async def refresh(user: dict = Depends(get_current_user)):
    """
    Re-read the profile for a freshly issued ID token and re-sync the
    role claim, so role changes take effect on the next token.
    """
    await identity_service.set_custom_user_claims(user["firebase_uid"], {"role": user["role"]})
    return envelope({"user": user}, "Session refreshed")


@router.post("/api/auth/logout")
async def logout(user: dict = Depends(get_current_user)):
    """Revoke the user's refresh tokens on every device."""
    await identity_service.revoke_refresh_tokens(user["firebase_uid"])
    logger.info(f"User {user['id']} logged out")
    return envelope(message="Logged out successfully")


@router.delete("/api/auth/account")
async def delete_account(
    payload: DeleteAccountRequest,
    user: dict = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Soft-delete the caller's account. Refused while they have active matches."""
    await user_service.deactivate_user(session, user["id"])
    await identity_service.revoke_refresh_tokens(user["firebase_uid"])
    return envelope(message="Account deleted successfully")
