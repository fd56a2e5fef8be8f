"""
Identity provider integration (Firebase Authentication).

Firebase issues and validates the ID tokens; this module only initializes
the Admin SDK and turns a bearer token into verified claims.
"""

import asyncio
import base64
import json
import logging
import os
from typing import Dict, Optional

import firebase_admin
from firebase_admin import auth, credentials, exceptions as firebase_exceptions

from playsplit.utils.exceptions import AuthenticationError, InfrastructureError

logger = logging.getLogger(__name__)

# Base64-encoded service account JSON; falls back to application default credentials
FIREBASE_CREDENTIALS_B64 = os.getenv("FIREBASE_CREDENTIALS_B64")


def init_firebase() -> bool:
    """
    Initialize the Firebase Admin app once per process.

    Returns:
        True if an app is initialized, False if initialization failed
    """
    if firebase_admin._apps:
        return True
    try:
        if FIREBASE_CREDENTIALS_B64:
            sa_json = json.loads(base64.b64decode(FIREBASE_CREDENTIALS_B64).decode("utf-8"))
            cred = credentials.Certificate(sa_json)
            firebase_admin.initialize_app(cred)
        else:
            firebase_admin.initialize_app()
        logger.info("Firebase Admin initialized")
        return True
    except Exception as e:
        # Firebase optional for local dev; requests needing auth will fail with 503
        logger.warning(f"Firebase init warning: {e}")
        return False


def is_configured() -> bool:
    return bool(firebase_admin._apps)


async def verify_id_token(token: str) -> Dict:
    """
    Verify a Firebase ID token.

    Returns:
        Dict with uid, email, name, picture and email_verified

    Raises:
        AuthenticationError: If the token is missing, expired, revoked or invalid
        InfrastructureError: If Firebase is not configured
    """
    if not token:
        raise AuthenticationError("Access token required", code="missing_token")
    if not is_configured() and not init_firebase():
        raise InfrastructureError("Authentication service not configured")

    try:
        decoded = await asyncio.to_thread(auth.verify_id_token, token)
    except auth.ExpiredIdTokenError as e:
        raise AuthenticationError("Token expired", code="token_expired") from e
    except auth.RevokedIdTokenError as e:
        raise AuthenticationError("Token revoked", code="token_revoked") from e
    except (auth.InvalidIdTokenError, ValueError) as e:
        raise AuthenticationError("Invalid token", code="invalid_token") from e
    except firebase_exceptions.FirebaseError as e:
        logger.warning(f"Firebase token verification failed: {e}")
        raise InfrastructureError("Could not verify token") from e

    return {
        "uid": decoded.get("uid"),
        "email": decoded.get("email"),
        "name": decoded.get("name"),
        "picture": decoded.get("picture"),
        "email_verified": decoded.get("email_verified", False),
    }


async def set_custom_user_claims(uid: str, claims: Optional[Dict]) -> bool:
    """
    Mirror the user's role into their Firebase custom claims.

    Failures are logged; the local role stays authoritative.
    """
    if not is_configured():
        return False
    try:
        await asyncio.to_thread(auth.set_custom_user_claims, uid, claims)
        return True
    except Exception as e:
        logger.warning(f"Failed to set custom claims for {uid}: {e}")
        return False


async def revoke_refresh_tokens(uid: str) -> bool:
    """Sign the user out of every device."""
    if not is_configured():
        return False
    try:
        await asyncio.to_thread(auth.revoke_refresh_tokens, uid)
        return True
    except Exception as e:
        logger.warning(f"Failed to revoke refresh tokens for {uid}: {e}")
        return False
