"""
Rate limiting service for per-identity request limits.

Counters live in Redis as fixed windows so every API instance shares them.
When Redis is unavailable the check is skipped with a warning rather than
locking users out.
"""

import logging
import time
from typing import Tuple

from fastapi import HTTPException

from playsplit.services.redis_service import redis_incr_window

logger = logging.getLogger(__name__)

PERIOD_SECONDS = {
    "second": 1,
    "minute": 60,
    "hour": 3600,
    "day": 86400,
}

# Auth endpoint limits
REGISTER_LIMIT = "5/15minutes"
LOGIN_LIMIT = "10/15minutes"


def parse_limit(limit_str: str) -> Tuple[int, int]:
    """
    Parse a limit string into (count, window_seconds).

    Accepts "10/minute", "5/hour" and multiples such as "5/15minutes".

    Raises:
        ValueError: If the string is malformed
    """
    parts = limit_str.split("/")
    if len(parts) != 2:
        raise ValueError(f"Invalid rate limit format: {limit_str}")

    count = int(parts[0])
    period_part = parts[1].strip().lower()
    digits = ""
    while period_part and period_part[0].isdigit():
        digits += period_part[0]
        period_part = period_part[1:]
    multiplier = int(digits) if digits else 1
    period_str = period_part.rstrip("s")  # Remove trailing 's' if present

    if period_str not in PERIOD_SECONDS:
        raise ValueError(f"Invalid time period: {parts[1]}")

    return count, multiplier * PERIOD_SECONDS[period_str]


def get_rate_limit_key(scope: str, identity: str, window_seconds: int, now: float) -> str:
    """Build the counter key for the window containing ``now``."""
    window = int(now // window_seconds)
    return f"ratelimit:{scope}:{identity.strip().lower()}:{window}"


async def check_rate_limit(scope: str, identity: str, limit_str: str) -> int:
    """
    Count one request for ``identity`` and enforce the limit.

    Args:
        scope: Logical operation, e.g. "register" or "login"
        identity: Caller identity (uid, email or remote address)
        limit_str: Rate limit string (e.g. "10/minute", "5/15minutes")

    Returns:
        Requests counted in the current window (0 if Redis is unavailable)

    Raises:
        HTTPException: With status code 429 if the limit is exceeded
    """
    count, window_seconds = parse_limit(limit_str)
    key = get_rate_limit_key(scope, identity, window_seconds, time.time())

    hits = await redis_incr_window(key, window_seconds)
    if hits is None:
        logger.warning(f"Rate limit check skipped for {scope}: Redis unavailable")
        return 0

    if hits > count:
        raise HTTPException(
            status_code=429,
            detail="Too many requests from this account, please try again later",
        )
    return hits
