"""
Authentication dependencies for FastAPI routes.

Bearer tokens are Firebase ID tokens; the local user record is looked up by
Firebase UID.
"""

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from playsplit.services import identity_service, user_service
from playsplit.services.match_engine import Actor
from playsplit.database.db import get_db_session
from playsplit.database.models import UserRole
from playsplit.utils.exceptions import AuthenticationError, AuthorizationError

security = HTTPBearer(auto_error=False)


async def get_current_user(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> dict:
    """
    Dependency to get the current authenticated user from a Firebase ID token.

    Returns:
        User dictionary

    Raises:
        AuthenticationError: If the token is missing or invalid, the user is
            not registered, or the account is disabled
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Access token required", code="missing_token")

    claims = await identity_service.verify_id_token(credentials.credentials)

    user = await user_service.get_user_by_firebase_uid(session, claims["uid"])
    if user is None:
        raise AuthenticationError("User not found. Please register first.", code="user_not_registered")
    if not user["is_active"]:
        raise AuthenticationError("Account is disabled. Please contact support.", code="account_disabled")

    # Rate limiting keys on the user when one is known
    request.state.user_id = user["id"]
    return user


async def require_user(user: dict = Depends(get_current_user)) -> dict:
    """Require any authenticated user."""
    return user


def is_admin(user: Optional[dict]) -> bool:
    return bool(user) and user.get("role") == UserRole.ADMIN.value


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    """
    Require an authenticated admin.

    Raises:
        AuthorizationError: If the user is not an admin
    """
    if not is_admin(user):
        raise AuthorizationError("Admin access required", code="admin_required")
    return user


def actor_for(user: dict) -> Actor:
    """The engine's view of the caller."""
    return Actor(user_id=user["id"], is_admin=is_admin(user))
