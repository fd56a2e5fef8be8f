"""
User service layer for profiles, roles and aggregate stats.

Credentials live with the identity provider; this module owns the local
user record keyed by Firebase UID.
"""

from typing import Dict, Iterable, List, Optional
from datetime import timedelta
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func, or_, and_
from playsplit.database.models import (
    User,
    Match,
    MatchPlayer,
    Payment,
    MatchStatus,
    ParticipationStatus,
    PlayerPaymentStatus,
    PaymentStatus,
    UserRole,
)
from playsplit.utils.datetime_utils import utcnow, isoformat_or_none
from playsplit.utils.exceptions import BusinessRuleError, DuplicateError, NotFoundError
import logging

logger = logging.getLogger(__name__)

ACTIVE_MATCH_STATUSES = (MatchStatus.OPEN.value, MatchStatus.STARTED.value)

DEFAULT_PREFERENCES = {
    "notifications": {"email": True, "push": True},
    "preferred_payment_method": "upi",
}


def user_to_dict(user: User) -> Dict:
    """Full profile, for the user themselves and admins."""
    return {
        "id": user.id,
        "firebase_uid": user.firebase_uid,
        "name": user.name,
        "email": user.email,
        "phone": user.phone,
        "profile_picture": user.profile_picture,
        "role": user.role,
        "auth_provider": user.auth_provider,
        "is_active": user.is_active,
        "preferences": user.preferences or dict(DEFAULT_PREFERENCES),
        "stats": {
            "matches_played": user.matches_played,
            "matches_organized": user.matches_organized,
            "total_paid": user.total_paid,
            "average_rating": user.average_rating,
        },
        "created_at": isoformat_or_none(user.created_at),
        "updated_at": isoformat_or_none(user.updated_at),
    }


def public_user_dict(user: User) -> Dict:
    """Fields safe to show other players."""
    return {
        "id": user.id,
        "name": user.name,
        "profile_picture": user.profile_picture,
    }


async def get_user_by_firebase_uid(session: AsyncSession, firebase_uid: str) -> Optional[Dict]:
    """
    Get user by Firebase UID.

    Returns:
        User dictionary or None if not found
    """
    result = await session.execute(select(User).where(User.firebase_uid == firebase_uid).limit(1))
    user = result.scalar_one_or_none()
    return user_to_dict(user) if user else None


async def create_user(
    session: AsyncSession,
    firebase_uid: str,
    name: str,
    email: str,
    auth_provider: str,
    phone: Optional[str] = None,
    profile_picture: Optional[str] = None,
) -> Dict:
    """
    Create the local record for a newly registered Firebase user.

    Raises:
        DuplicateError: If the UID or email is already registered
    """
    email = email.strip().lower()
    result = await session.execute(
        select(User.id).where(or_(User.firebase_uid == firebase_uid, User.email == email)).limit(1)
    )
    if result.scalar_one_or_none():
        raise DuplicateError("User already exists", code="user_exists")

    new_user = User(
        firebase_uid=firebase_uid,
        name=name.strip(),
        email=email,
        phone=phone,
        auth_provider=auth_provider,
        profile_picture=profile_picture,
        role=UserRole.PLAYER.value,
        is_active=True,
        preferences=dict(DEFAULT_PREFERENCES),
        matches_played=0,
        matches_organized=0,
        total_paid=0,
        average_rating=0,
    )
    session.add(new_user)
    await session.flush()
    await session.refresh(new_user)
    logger.info(f"Registered user {new_user.id} ({auth_provider})")
    return user_to_dict(new_user)


async def update_profile(session: AsyncSession, user_id: int, changes: Dict) -> Dict:
    """
    Update name, phone, picture or preferences.

    Raises:
        NotFoundError: If the user does not exist
    """
    result = await session.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise NotFoundError("User not found")

    for name in ("name", "phone", "profile_picture"):
        if changes.get(name) is not None:
            setattr(user, name, changes[name].strip() if name == "name" else changes[name])
    if changes.get("preferences") is not None:
        preferences = dict(user.preferences or DEFAULT_PREFERENCES)
        preferences.update(changes["preferences"])
        user.preferences = preferences

    await session.flush()
    await session.refresh(user)
    return user_to_dict(user)


async def has_active_matches(session: AsyncSession, user_id: int) -> bool:
    """True if the user organizes an open/started match or is joined to any match in play."""
    organizing = select(Match.id).where(
        Match.organizer_id == user_id, Match.status.in_(ACTIVE_MATCH_STATUSES)
    )
    playing = (
        select(Match.id)
        .join(MatchPlayer, MatchPlayer.match_id == Match.id)
        .where(
            MatchPlayer.user_id == user_id,
            MatchPlayer.status == ParticipationStatus.JOINED.value,
            Match.status.in_(ACTIVE_MATCH_STATUSES + (MatchStatus.PENDING_DETAILS.value,)),
        )
    )
    result = await session.execute(organizing.union(playing).limit(1))
    return result.first() is not None


async def deactivate_user(session: AsyncSession, user_id: int) -> Dict:
    """
    Soft-delete an account: mark inactive and free the email address.

    Raises:
        NotFoundError: If the user does not exist
        BusinessRuleError: If the user still has active matches
    """
    result = await session.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise NotFoundError("User not found")
    if await has_active_matches(session, user_id):
        raise BusinessRuleError(
            "Cannot delete account with active matches. Please complete or leave all matches first.",
            code="active_matches",
        )

    user.is_active = False
    user.email = f"deleted_{int(utcnow().timestamp() * 1000)}_{user.email}"[:320]
    await session.flush()
    await session.refresh(user)
    logger.info(f"Deactivated user {user_id}")
    return user_to_dict(user)


async def admin_update_user(session: AsyncSession, user_id: int, changes: Dict) -> Dict:
    """
    Admin edit of role, active flag, name or email.

    Raises:
        NotFoundError: If the user does not exist
        DuplicateError: If the new email belongs to another user
    """
    result = await session.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise NotFoundError("User not found")

    email = changes.get("email")
    if email is not None:
        email = email.strip().lower()
        taken = await session.execute(select(User.id).where(User.email == email, User.id != user_id))
        if taken.scalar_one_or_none():
            raise DuplicateError("Email is already in use", code="email_exists")
        user.email = email
    for name in ("role", "is_active", "name"):
        if changes.get(name) is not None:
            setattr(user, name, changes[name])

    await session.flush()
    await session.refresh(user)
    return user_to_dict(user)


async def get_user_summaries(session: AsyncSession, user_ids: Iterable[int]) -> Dict[int, Dict]:
    """Public name/picture for each id, for rendering rosters."""
    ids = list(set(user_ids))
    if not ids:
        return {}
    result = await session.execute(select(User).where(User.id.in_(ids)))
    return {user.id: public_user_dict(user) for user in result.scalars().all()}


async def increment_match_stats(
    session: AsyncSession, player_ids: List[int], organizer_id: Optional[int] = None
) -> None:
    """Count a completed match for its joined players and its organizer."""
    if player_ids:
        await session.execute(
            update(User)
            .where(User.id.in_(player_ids))
            .values(matches_played=User.matches_played + 1)
        )
    if organizer_id is not None:
        await session.execute(
            update(User)
            .where(User.id == organizer_id)
            .values(matches_organized=User.matches_organized + 1)
        )


async def add_total_paid(session: AsyncSession, user_id: int, amount: float) -> None:
    await session.execute(
        update(User).where(User.id == user_id).values(total_paid=User.total_paid + amount)
    )


async def search_users(session: AsyncSession, query: str, limit: int = 10) -> List[Dict]:
    """Active users whose name or email contains ``query``."""
    pattern = f"%{query.strip()}%"
    result = await session.execute(
        select(User)
        .where(User.is_active.is_(True), or_(User.name.ilike(pattern), User.email.ilike(pattern)))
        .order_by(User.name)
        .limit(limit)
    )
    return [
        {**public_user_dict(user), "email": user.email}
        for user in result.scalars().all()
    ]


async def _count_played(session: AsyncSession, user_id: int) -> int:
    result = await session.execute(
        select(func.count(func.distinct(Match.id)))
        .join(MatchPlayer, MatchPlayer.match_id == Match.id)
        .where(
            MatchPlayer.user_id == user_id,
            MatchPlayer.status == ParticipationStatus.JOINED.value,
            Match.status == MatchStatus.COMPLETED.value,
        )
    )
    return result.scalar() or 0


async def _count_organized(session: AsyncSession, user_id: int) -> int:
    result = await session.execute(
        select(func.count(Match.id)).where(
            Match.organizer_id == user_id, Match.status == MatchStatus.COMPLETED.value
        )
    )
    return result.scalar() or 0


async def get_user_stats(session: AsyncSession, user_id: int) -> Dict:
    """
    Recompute the user's stats from matches and payments, store them and
    return them with upcoming-match and recent-payment context.

    Raises:
        NotFoundError: If the user does not exist
    """
    result = await session.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise NotFoundError("User not found")

    now = utcnow()
    matches_played = await _count_played(session, user_id)
    matches_organized = await _count_organized(session, user_id)

    result = await session.execute(
        select(func.coalesce(func.sum(Payment.amount), 0)).where(
            Payment.user_id == user_id, Payment.status == PaymentStatus.PAID.value
        )
    )
    total_paid = float(result.scalar() or 0)

    joined_ids = select(MatchPlayer.match_id).where(
        MatchPlayer.user_id == user_id, MatchPlayer.status == ParticipationStatus.JOINED.value
    )
    result = await session.execute(
        select(func.count(Match.id)).where(
            or_(Match.organizer_id == user_id, Match.id.in_(joined_ids)),
            Match.date_time >= now,
            Match.status.in_(ACTIVE_MATCH_STATUSES),
        )
    )
    upcoming = result.scalar() or 0

    result = await session.execute(
        select(Payment, Match.title, Match.match_code, Match.date_time)
        .join(Match, Match.id == Payment.match_id)
        .where(Payment.user_id == user_id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .limit(5)
    )
    recent = [
        {
            "payment_code": payment.payment_code,
            "amount": payment.amount,
            "status": payment.status,
            "method": payment.method,
            "match": {"title": title, "match_code": code, "date_time": isoformat_or_none(date_time)},
            "created_at": isoformat_or_none(payment.created_at),
        }
        for payment, title, code, date_time in result.all()
    ]

    user.matches_played = matches_played
    user.matches_organized = matches_organized
    user.total_paid = total_paid
    await session.flush()

    return {
        "matches": {"played": matches_played, "organized": matches_organized, "upcoming": upcoming},
        "payments": {"total_paid": total_paid, "recent": recent},
        "avg_rating": user.average_rating or 0,
        "profile": {
            "name": user.name,
            "email": user.email,
            "profile_picture": user.profile_picture,
            "preferences": user.preferences or dict(DEFAULT_PREFERENCES),
        },
    }


async def get_public_profile(session: AsyncSession, user_id: int) -> Dict:
    """
    Public profile with match counts.

    Raises:
        NotFoundError: If the user does not exist or is deactivated
    """
    result = await session.execute(select(User).where(User.id == user_id, User.is_active.is_(True)))
    user = result.scalar_one_or_none()
    if not user:
        raise NotFoundError("User not found")

    return {
        **public_user_dict(user),
        "stats": {
            "matches_played": await _count_played(session, user_id),
            "matches_organized": await _count_organized(session, user_id),
            "average_rating": user.average_rating,
        },
        "member_since": isoformat_or_none(user.created_at),
    }


async def get_user_notifications(session: AsyncSession, user_id: int) -> List[Dict]:
    """
    Reminders derived from current state: matches starting within 24 hours
    and outstanding payments for matches in play.
    """
    now = utcnow()
    joined_ids = select(MatchPlayer.match_id).where(
        MatchPlayer.user_id == user_id, MatchPlayer.status == ParticipationStatus.JOINED.value
    )
    result = await session.execute(
        select(Match)
        .where(
            or_(Match.organizer_id == user_id, Match.id.in_(joined_ids)),
            Match.date_time >= now,
            Match.date_time <= now + timedelta(hours=24),
            Match.status.in_(ACTIVE_MATCH_STATUSES),
        )
        .order_by(Match.date_time)
    )
    notifications = [
        {
            "id": f"match-{match.match_code}",
            "type": "match_reminder",
            "title": "Upcoming Match",
            "message": f"{match.title} starts soon at {match.venue_name}",
            "data": {"match_code": match.match_code},
            "created_at": now.isoformat(),
        }
        for match in result.scalars().all()
    ]

    result = await session.execute(
        select(Match.match_code, Match.title, MatchPlayer.amount_to_pay)
        .join(MatchPlayer, MatchPlayer.match_id == Match.id)
        .where(
            and_(
                MatchPlayer.user_id == user_id,
                MatchPlayer.status == ParticipationStatus.JOINED.value,
                MatchPlayer.payment_status == PlayerPaymentStatus.PENDING.value,
                MatchPlayer.amount_to_pay > 0,
                Match.status.in_((MatchStatus.STARTED.value, MatchStatus.COMPLETED.value)),
            )
        )
    )
    for code, title, amount in result.all():
        notifications.append({
            "id": f"payment-{code}",
            "type": "payment_reminder",
            "title": "Payment Pending",
            "message": f"Payment of ₹{amount:g} is pending for {title}",
            "data": {"match_code": code},
            "created_at": now.isoformat(),
        })
    return notifications
