"""
Admin reporting: dashboard counters, paginated listings and analytics.
"""

import logging
from datetime import timedelta
from typing import Dict, Optional

from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from playsplit.database.models import Match, MatchStatus, Payment, PaymentStatus, User
from playsplit.services import match_repository, match_service, user_service
from playsplit.services.payment_service import payment_to_dict
from playsplit.utils.datetime_utils import isoformat_or_none, utcnow
from playsplit.utils.exceptions import ValidationError

logger = logging.getLogger(__name__)

PERIOD_DAYS = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}


def period_start(period: str):
    """
    Start of a reporting period ending now.

    Raises:
        ValidationError: If the period is not one of 7d, 30d, 90d, 1y
    """
    if period not in PERIOD_DAYS:
        raise ValidationError(f"Invalid period: {period}", code="invalid_period")
    return utcnow() - timedelta(days=PERIOD_DAYS[period])


async def get_dashboard(session: AsyncSession, timeframe: str = "30d") -> Dict:
    start = period_start(timeframe)
    now = utcnow()

    total_users = (await session.execute(
        select(func.count(User.id)).where(User.is_active.is_(True))
    )).scalar() or 0
    new_users = (await session.execute(
        select(func.count(User.id)).where(User.is_active.is_(True), User.created_at >= start)
    )).scalar() or 0
    total_matches = (await session.execute(select(func.count(Match.id)))).scalar() or 0
    active_matches = (await session.execute(
        select(func.count(Match.id)).where(
            Match.status.in_((MatchStatus.OPEN.value, MatchStatus.STARTED.value)),
            Match.date_time >= now,
        )
    )).scalar() or 0
    completed_matches = (await session.execute(
        select(func.count(Match.id)).where(
            Match.status == MatchStatus.COMPLETED.value, Match.created_at >= start
        )
    )).scalar() or 0
    revenue = (await session.execute(
        select(func.coalesce(func.sum(Payment.amount), 0)).where(
            Payment.status == PaymentStatus.PAID.value, Payment.created_at >= start
        )
    )).scalar() or 0

    result = await session.execute(
        select(Payment.status, func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0))
        .where(Payment.created_at >= start)
        .group_by(Payment.status)
    )
    payments = {status: {"count": count, "amount": float(amount)} for status, count, amount in result.all()}

    recent_matches = await match_repository.list_matches(session, limit=5)
    result = await session.execute(
        select(User).where(User.is_active.is_(True)).order_by(User.created_at.desc(), User.id.desc()).limit(5)
    )
    recent_users = [user_service.user_to_dict(u) for u in result.scalars().all()]

    return {
        "users": {"total": total_users, "new": new_users},
        "matches": {"total": total_matches, "active": active_matches, "completed": completed_matches},
        "revenue": {"total": float(revenue), "period": timeframe},
        "payments": payments,
        "recent": {
            "matches": await match_service.render_matches(session, recent_matches),
            "users": recent_users,
        },
    }


async def list_users(
    session: AsyncSession,
    search: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
) -> Dict:
    query = select(User)
    count_query = select(func.count(User.id))
    filters = []
    if status is not None:
        filters.append(User.is_active.is_(status == "active"))
    if search:
        pattern = f"%{search}%"
        filters.append(or_(User.name.ilike(pattern), User.email.ilike(pattern)))
    if filters:
        query = query.where(*filters)
        count_query = count_query.where(*filters)

    result = await session.execute(
        query.order_by(User.created_at.desc(), User.id.desc()).limit(limit).offset(offset)
    )
    total = (await session.execute(count_query)).scalar() or 0
    return {"users": [user_service.user_to_dict(u) for u in result.scalars().all()], "total": total}


async def list_matches(
    session: AsyncSession,
    status: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
) -> Dict:
    matches = await match_repository.list_matches(
        session,
        statuses=(status,) if status else None,
        search=search,
        limit=limit,
        offset=offset,
    )
    count_query = select(func.count(Match.id))
    if status:
        count_query = count_query.where(Match.status == status)
    if search:
        pattern = f"%{search}%"
        count_query = count_query.where(
            or_(Match.title.ilike(pattern), Match.venue_name.ilike(pattern), Match.match_code.ilike(pattern))
        )
    total = (await session.execute(count_query)).scalar() or 0
    return {"matches": await match_service.render_matches(session, matches), "total": total}


async def list_payments(
    session: AsyncSession,
    status: Optional[str] = None,
    method: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
) -> Dict:
    query = select(Payment, Match.match_code).join(Match, Match.id == Payment.match_id)
    count_query = select(func.count(Payment.id))
    if status:
        query = query.where(Payment.status == status)
        count_query = count_query.where(Payment.status == status)
    if method:
        query = query.where(Payment.method == method)
        count_query = count_query.where(Payment.method == method)

    result = await session.execute(
        query.order_by(Payment.created_at.desc(), Payment.id.desc()).limit(limit).offset(offset)
    )
    total = (await session.execute(count_query)).scalar() or 0
    return {"payments": [payment_to_dict(p, code) for p, code in result.all()], "total": total}


async def get_analytics(session: AsyncSession, period: str = "30d") -> Dict:
    """Revenue per day, matches by status, payments by method, top organizers, user growth."""
    start = period_start(period)

    day = func.date(Payment.created_at)
    result = await session.execute(
        select(day, func.sum(Payment.amount), func.count(Payment.id))
        .where(Payment.status == PaymentStatus.PAID.value, Payment.created_at >= start)
        .group_by(day)
        .order_by(day)
    )
    revenue = [{"date": str(d), "revenue": float(total), "count": count} for d, total, count in result.all()]

    result = await session.execute(
        select(Match.status, func.count(Match.id)).where(Match.created_at >= start).group_by(Match.status)
    )
    matches = [{"status": status, "count": count} for status, count in result.all()]

    result = await session.execute(
        select(Payment.method, func.count(Payment.id), func.sum(Payment.amount))
        .where(Payment.status == PaymentStatus.PAID.value, Payment.created_at >= start)
        .group_by(Payment.method)
    )
    payments = [{"method": method, "count": count, "amount": float(amount)} for method, count, amount in result.all()]

    match_count = func.count(Match.id).label("match_count")
    result = await session.execute(
        select(User.id, User.name, User.email, match_count, func.sum(Match.total_cost))
        .join(Match, Match.organizer_id == User.id)
        .where(Match.created_at >= start)
        .group_by(User.id, User.name, User.email)
        .order_by(match_count.desc())
        .limit(10)
    )
    top_organizers = [
        {"organizer": {"id": uid, "name": name, "email": email}, "match_count": count, "total_revenue": float(total or 0)}
        for uid, name, email, count, total in result.all()
    ]

    signup_day = func.date(User.created_at)
    result = await session.execute(
        select(signup_day, func.count(User.id))
        .where(User.created_at >= start)
        .group_by(signup_day)
        .order_by(signup_day)
    )
    user_growth = [{"date": str(d), "new_users": count} for d, count in result.all()]

    return {
        "analytics": {
            "revenue": revenue,
            "matches": matches,
            "payments": payments,
            "top_organizers": top_organizers,
            "user_growth": user_growth,
        },
        "period": period,
        "generated_at": isoformat_or_none(utcnow()),
    }
