"""
API routes - combined router from all domain modules.

Shared infrastructure (limiter, response envelope) lives here; every
sub-router imports what it needs from this package.
"""

import os
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

# ---------------------------------------------------------------------------
# Shared rate limiter
# ---------------------------------------------------------------------------
# memory:// keeps counters per process; point at redis:// to share them
RATE_LIMIT_STORAGE_URI = os.getenv("RATE_LIMIT_STORAGE_URI", "memory://")


def rate_limit_key(request: Request) -> str:
    """Authenticated requests are limited per user, anonymous ones per address."""
    user_id = getattr(request.state, "user_id", None)
    if user_id is not None:
        return f"user:{user_id}"
    return get_remote_address(request)


IS_TEST_ENV = os.getenv("ENV", "").lower() == "test"
if IS_TEST_ENV:
    limiter = Limiter(key_func=rate_limit_key)

    def no_op_limit(*args, **kwargs):
        """No-op decorator for test mode - doesn't apply any rate limiting."""
        def decorator(func):
            return func
        return decorator

    limiter.limit = lambda *args, **kwargs: no_op_limit()
else:
    limiter = Limiter(key_func=rate_limit_key, storage_uri=RATE_LIMIT_STORAGE_URI)

# ---------------------------------------------------------------------------
# Shared response envelope
# ---------------------------------------------------------------------------


def envelope(data: Optional[Dict[str, Any]] = None, message: str = "") -> Dict[str, Any]:
    """Standard success body: {"success": true, "message": ..., "data": ...}."""
    body: Dict[str, Any] = {"success": True, "message": message}
    if data is not None:
        body["data"] = data
    return body


# ---------------------------------------------------------------------------
# Import sub-routers and combine
# ---------------------------------------------------------------------------
from playsplit.api.routes.matches import router as matches_router  # noqa: E402
from playsplit.api.routes.payments import router as payments_router  # noqa: E402
from playsplit.api.routes.auth import router as auth_router  # noqa: E402
from playsplit.api.routes.users import router as users_router  # noqa: E402
from playsplit.api.routes.admin import router as admin_router  # noqa: E402
from playsplit.api.routes.realtime import router as realtime_router  # noqa: E402

router = APIRouter()
router.include_router(matches_router)
router.include_router(payments_router)
router.include_router(auth_router)
router.include_router(users_router)
router.include_router(admin_router)
router.include_router(realtime_router)
