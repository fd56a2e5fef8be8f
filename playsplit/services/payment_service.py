"""
Payment service: settlement attempts, verification, cash marking, refunds
and idempotent webhook ingestion.

Every path that settles a player goes through
``match_service.apply_payment_status`` so the roster and the Payment record
are committed together. Gateway calls always complete before the roster is
touched. For online payments the roster's payment reference is the gateway
payment id; for cash it is the Payment's own code.
"""

import logging
import uuid
from typing import Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from playsplit.database.models import (
    Match,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentWebhookEvent,
    ParticipationStatus,
    PlayerPaymentStatus,
    RefundStatus,
)
from playsplit.services import match_engine, match_service, notification_service, payment_gateway
from playsplit.services.match_engine import Actor
from playsplit.utils.datetime_utils import isoformat_or_none, utcnow
from playsplit.utils.exceptions import (
    BusinessRuleError,
    DuplicateError,
    InfrastructureError,
    NotFoundError,
    PaymentError,
    PlaySplitError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Gateway payment methods we record as-is; anything else (emi, paylater) is stored as card
GATEWAY_METHODS = {m.value for m in PaymentMethod}

OPEN_PAYMENT_STATUSES = (PaymentStatus.CREATED.value, PaymentStatus.ATTEMPTED.value, PaymentStatus.FAILED.value)


def payment_to_dict(payment: Payment, match_code: Optional[str] = None) -> Dict:
    return {
        "payment_code": payment.payment_code,
        "match_code": match_code,
        "user_id": payment.user_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "method": payment.method,
        "status": payment.status,
        "gateway_payment_id": payment.gateway_payment_id,
        "gateway_order_id": payment.gateway_order_id,
        "failure_reason": payment.failure_reason,
        "refund": payment.refund,
        "timeline": payment.timeline or [],
        "verified": payment.verified,
        "verified_at": isoformat_or_none(payment.verified_at),
        "payment_link": (payment.details or {}).get("payment_link"),
        "created_at": isoformat_or_none(payment.created_at),
        "updated_at": isoformat_or_none(payment.updated_at),
    }


def _set_status(payment: Payment, status: str, notes: Optional[str] = None) -> None:
    """Change status and append to the timeline (assigned anew so JSON changes are tracked)."""
    payment.status = status
    payment.timeline = [
        *(payment.timeline or []),
        {
            "status": status,
            "timestamp": utcnow().isoformat(),
            "notes": notes or f"Status changed to {status}",
        },
    ]


def _gateway_method(entity: Dict) -> str:
    method = (entity or {}).get("method")
    if method in GATEWAY_METHODS:
        return method
    return PaymentMethod.CARD.value if method else PaymentMethod.UPI.value


def _new_payment_code(prefix: str = "pay") -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


async def _match_code_for(session: AsyncSession, match_id: int) -> str:
    result = await session.execute(select(Match.match_code).where(Match.id == match_id))
    code = result.scalar_one_or_none()
    if code is None:
        raise NotFoundError("Match not found")
    return code


async def _open_payment(session: AsyncSession, match_id: int, user_id: int) -> Optional[Payment]:
    """Latest unsettled online payment for (match, user), to reuse instead of piling up records."""
    result = await session.execute(
        select(Payment)
        .where(
            Payment.match_id == match_id,
            Payment.user_id == user_id,
            Payment.method != PaymentMethod.CASH.value,
            Payment.status.in_(OPEN_PAYMENT_STATUSES),
        )
        .order_by(Payment.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


def _amount_due(match: match_engine.MatchState, user_id: int) -> float:
    """
    Raises:
        BusinessRuleError: If the user is not on the roster, already paid or owes nothing
    """
    player = match.players.get(user_id)
    if player is None or player.status != ParticipationStatus.JOINED.value:
        raise BusinessRuleError("You are not part of this match", code="not_in_match")
    if player.payment_status == PlayerPaymentStatus.PAID.value:
        raise BusinessRuleError("Payment already completed", code="already_paid")
    if player.amount_to_pay <= 0:
        raise BusinessRuleError("No payment is due for this match yet", code="nothing_due")
    if match.payment_settings.get("allow_online_payment") is False:
        raise BusinessRuleError("Online payment is disabled for this match", code="online_payment_disabled")
    return player.amount_to_pay


async def _prepare_payment(
    session: AsyncSession, match: match_engine.MatchState, user_id: int, amount: float, meta: Optional[Dict]
) -> Payment:
    payment = await _open_payment(session, match.id, user_id)
    if payment is None:
        payment = Payment(
            payment_code=_new_payment_code(),
            match_id=match.id,
            user_id=user_id,
            currency=payment_gateway.PAYMENT_CURRENCY,
            method=PaymentMethod.UPI.value,
            verified=False,
            timeline=[],
        )
        session.add(payment)
    payment.amount = amount
    payment.details = {**(payment.details or {}), **(meta or {})}
    return payment


async def create_order(session: AsyncSession, match_code: str, user: Dict, meta: Optional[Dict] = None) -> Dict:
    """
    Create a gateway order for the caller's share of a match.

    Returns:
        Dict with the payment record and what checkout needs (order id,
        amount in paise, currency, public key)
    """
    match = await match_service.get_match(session, match_code)
    amount = _amount_due(match, user["id"])
    payment = await _prepare_payment(session, match, user["id"], amount, meta)

    order = await payment_gateway.create_order(
        amount,
        receipt=payment.payment_code,
        notes={"match_code": match.match_code, "user_id": str(user["id"]), "payment_code": payment.payment_code},
    )

    payment.gateway_order_id = order["id"]
    _set_status(payment, PaymentStatus.CREATED.value, f"Order {order['id']} created")
    await session.commit()
    logger.info(f"Order {order['id']} created for user {user['id']} on match {match.match_code}")

    return {
        "payment": payment_to_dict(payment, match.match_code),
        "order_id": order["id"],
        "amount": order.get("amount", payment_gateway.to_paise(amount)),
        "currency": order.get("currency", payment.currency),
        "key_id": payment_gateway.RAZORPAY_KEY_ID,
    }


async def create_payment_link(
    session: AsyncSession,
    match_code: str,
    user: Dict,
    description: Optional[str] = None,
    meta: Optional[Dict] = None,
) -> Dict:
    """Create a shareable payment link for the caller's share of a match."""
    match = await match_service.get_match(session, match_code)
    amount = _amount_due(match, user["id"])
    payment = await _prepare_payment(session, match, user["id"], amount, meta)

    customer = {"name": user["name"], "email": user["email"]}
    if user.get("phone"):
        customer["contact"] = user["phone"]
    link = await payment_gateway.create_payment_link(
        amount,
        description=description or f"Payment for PlaySplit Match {match.match_code}",
        customer=customer,
        reference_id=payment.payment_code,
        notes={"match_code": match.match_code, "user_id": str(user["id"]), "payment_code": payment.payment_code},
    )

    payment.gateway_link_id = link["id"]
    payment.details = {**(payment.details or {}), "payment_link": link.get("short_url")}
    _set_status(payment, PaymentStatus.CREATED.value, f"Payment link {link['id']} created")
    await session.commit()
    logger.info(f"Payment link {link['id']} created for user {user['id']} on match {match.match_code}")

    return {
        "payment": payment_to_dict(payment, match.match_code),
        "payment_link": link.get("short_url"),
        "link_id": link["id"],
        "amount": amount,
        "expires_at": link.get("expire_by"),
    }


async def _get_payment_by_code(session: AsyncSession, payment_code: str) -> Payment:
    result = await session.execute(select(Payment).where(Payment.payment_code == payment_code))
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFoundError("Payment record not found")
    return payment


async def _ensure_unclaimed(session: AsyncSession, payment: Payment, gateway_payment_id: str) -> None:
    result = await session.execute(
        select(Payment.id).where(Payment.gateway_payment_id == gateway_payment_id, Payment.id != payment.id)
    )
    if result.scalar_one_or_none() is not None:
        raise DuplicateError("This payment reference is already recorded", code="duplicate_payment_reference")


async def verify_payment(
    session: AsyncSession,
    user: Dict,
    payment_code: str,
    order_id: str,
    gateway_payment_id: str,
    signature: str,
) -> Dict:
    """
    Verify a checkout callback and settle the player.

    Safe to call again for the same payment: the second call reports the
    existing result without changing anything.
    """
    payment = await _get_payment_by_code(session, payment_code)
    if payment.user_id != user["id"]:
        raise NotFoundError("Payment record not found")
    if payment.gateway_order_id != order_id:
        raise ValidationError("Order does not match this payment", code="order_mismatch")

    payment_gateway.verify_payment_signature(order_id, gateway_payment_id, signature)
    match_code = await _match_code_for(session, payment.match_id)

    if payment.status == PaymentStatus.PAID.value and payment.gateway_payment_id == gateway_payment_id:
        return {"payment": payment_to_dict(payment, match_code), "changed": False}

    await _ensure_unclaimed(session, payment, gateway_payment_id)
    entity = await payment_gateway.fetch_payment(gateway_payment_id)
    if entity.get("status") not in ("captured", "authorized"):
        raise PaymentError(f"Payment is {entity.get('status', 'unknown')} at the gateway", code="payment_not_captured")

    amount = payment_gateway.from_paise(entity.get("amount")) or payment.amount
    method = _gateway_method(entity)
    _, changed = await match_service.apply_payment_status(
        session, match_code, payment.user_id, PlayerPaymentStatus.PAID.value,
        amount=amount, method=method, payment_id=gateway_payment_id,
    )

    payment.gateway_payment_id = gateway_payment_id
    payment.gateway_response = entity
    payment.method = method
    payment.signature = signature
    payment.verified = True
    payment.verified_at = utcnow()
    _set_status(payment, PaymentStatus.PAID.value, "Payment verified")
    await session.commit()
    logger.info(f"Payment {payment.payment_code} verified for match {match_code}")

    if changed:
        notification_service.notify_match(
            match_code,
            notification_service.PAYMENT_COMPLETED,
            {"user_id": payment.user_id, "amount": amount, "method": method},
        )
    return {"payment": payment_to_dict(payment, match_code), "changed": changed}


async def mark_cash_payment(
    session: AsyncSession,
    match_code: str,
    actor: Actor,
    user_id: int,
    amount: Optional[float] = None,
    notes: Optional[str] = None,
) -> Dict:
    """
    Record a cash payment collected by the organizer or an admin.

    Raises:
        AuthorizationError: If the actor is not the organizer or an admin
        BusinessRuleError: If the player is not on the roster or already paid online
    """
    match = await match_service.get_match(session, match_code)
    match_engine.require_organizer_or_admin(match, actor)
    player = match.players.get(user_id)
    if player is None:
        raise BusinessRuleError("Player not found in match", code="player_not_found")

    if player.payment_status == PlayerPaymentStatus.PAID.value:
        if player.payment_method == PaymentMethod.CASH.value:
            payment = await _get_payment_by_code(session, player.payment_id)
            return {"payment": payment_to_dict(payment, match.match_code), "changed": False}
        raise BusinessRuleError("Player has already paid for this match", code="already_paid")

    amount = amount or player.amount_to_pay
    payment = Payment(
        payment_code=_new_payment_code("cash"),
        match_id=match.id,
        user_id=user_id,
        amount=amount,
        currency=payment_gateway.PAYMENT_CURRENCY,
        method=PaymentMethod.CASH.value,
        verified=True,
        verified_at=utcnow(),
        details={"marked_by": actor.user_id, "notes": notes or "Manually marked as cash payment"},
        timeline=[],
    )

    _, changed = await match_service.apply_payment_status(
        session, match.match_code, user_id, PlayerPaymentStatus.PAID.value,
        amount=amount, method=PaymentMethod.CASH.value, payment_id=payment.payment_code,
    )

    session.add(payment)
    _set_status(payment, PaymentStatus.PAID.value, payment.details["notes"])
    await session.commit()
    logger.info(f"Cash payment of {amount} for user {user_id} on match {match.match_code} marked by {actor.user_id}")

    notification_service.notify_match(
        match.match_code,
        notification_service.PAYMENT_COMPLETED,
        {"user_id": user_id, "amount": amount, "method": PaymentMethod.CASH.value},
    )
    return {"payment": payment_to_dict(payment, match.match_code), "changed": changed}


async def refund_payment(
    session: AsyncSession,
    payment_code: str,
    actor: Actor,
    amount: Optional[float] = None,
    reason: str = "Refund requested",
) -> Dict:
    """
    Start a gateway refund. The refund completes when the gateway sends
    ``refund.processed``.
    """
    payment = await _get_payment_by_code(session, payment_code)
    if payment.status != PaymentStatus.PAID.value:
        raise BusinessRuleError("Can only refund completed payments", code="not_refundable")
    if payment.method == PaymentMethod.CASH.value:
        raise BusinessRuleError("Cannot process online refund for cash payments", code="cash_payment")
    if payment.refund and payment.refund.get("status") in (RefundStatus.PENDING.value, RefundStatus.PROCESSED.value):
        raise BusinessRuleError("A refund has already been initiated for this payment", code="refund_exists")

    refund_amount = amount or payment.amount
    if refund_amount > payment.amount:
        raise ValidationError("Refund amount exceeds the amount paid", code="refund_too_large")

    refund = await payment_gateway.create_refund(
        payment.gateway_payment_id, refund_amount, notes={"reason": reason, "payment_code": payment.payment_code}
    )

    payment.refund = {
        "refund_id": refund["id"],
        "amount": refund_amount,
        "status": RefundStatus.PENDING.value,
        "reason": reason,
        "refunded_at": utcnow().isoformat(),
        "refunded_by": actor.user_id,
    }
    payment.timeline = [
        *(payment.timeline or []),
        {"status": payment.status, "timestamp": utcnow().isoformat(), "notes": f"Refund {refund['id']} initiated"},
    ]
    await session.commit()
    match_code = await _match_code_for(session, payment.match_id)
    logger.info(f"Refund {refund['id']} of {refund_amount} initiated on {payment.payment_code} by {actor.user_id}")

    notification_service.notify_match(
        match_code,
        notification_service.REFUND_UPDATED,
        {"user_id": payment.user_id, "refund_id": refund["id"], "amount": refund_amount, "status": RefundStatus.PENDING.value},
    )
    return {"refund_id": refund["id"], "amount": refund_amount, "status": refund.get("status", RefundStatus.PENDING.value)}


async def list_match_payments(session: AsyncSession, match_code: str, actor: Actor) -> Dict:
    """All payment records for a match, with collection totals. Organizer/admin only."""
    match = await match_service.get_match(session, match_code)
    match_engine.require_organizer_or_admin(match, actor)
    result = await session.execute(
        select(Payment).where(Payment.match_id == match.id).order_by(Payment.created_at.desc(), Payment.id.desc())
    )
    payments = [payment_to_dict(p, match.match_code) for p in result.scalars().all()]
    return {
        "payments": payments,
        "summary": {
            "total_expected": match.cost_per_player * len(match_engine.joined_players(match)),
            "total_collected": match_engine.total_collected(match),
            "paid_count": len(match_engine.paid_players(match)),
            "joined_count": len(match_engine.joined_players(match)),
        },
    }


async def list_user_payments(
    session: AsyncSession, user_id: int, status: Optional[str] = None, limit: int = 20, offset: int = 0
) -> Dict:
    query = (
        select(Payment, Match.match_code, Match.title, Match.date_time)
        .join(Match, Match.id == Payment.match_id)
        .where(Payment.user_id == user_id)
    )
    count_query = select(func.count(Payment.id)).where(Payment.user_id == user_id)
    if status:
        query = query.where(Payment.status == status)
        count_query = count_query.where(Payment.status == status)
    result = await session.execute(
        query.order_by(Payment.created_at.desc(), Payment.id.desc()).limit(limit).offset(offset)
    )
    payments = [
        {**payment_to_dict(payment, code), "match": {"title": title, "date_time": isoformat_or_none(date_time)}}
        for payment, code, title, date_time in result.all()
    ]
    total = (await session.execute(count_query)).scalar() or 0
    return {"payments": payments, "total": total}


# ============================================================================
# Webhooks
# ============================================================================

async def _find_payment_for_event(session: AsyncSession, event: payment_gateway.WebhookEvent) -> Optional[Payment]:
    """Match a webhook to a Payment by gateway payment id, then order id, then our own code."""
    gateway_payment_id = event.payment.get("id") or event.refund.get("payment_id")
    if gateway_payment_id:
        result = await session.execute(select(Payment).where(Payment.gateway_payment_id == gateway_payment_id))
        payment = result.scalar_one_or_none()
        if payment:
            return payment
    order_id = event.payment.get("order_id") or event.order.get("id")
    if order_id:
        result = await session.execute(
            select(Payment).where(Payment.gateway_order_id == order_id).order_by(Payment.id.desc()).limit(1)
        )
        payment = result.scalar_one_or_none()
        if payment:
            return payment
    payment_code = event.notes.get("payment_code")
    if payment_code:
        result = await session.execute(select(Payment).where(Payment.payment_code == payment_code))
        return result.scalar_one_or_none()
    return None


async def _handle_captured(session: AsyncSession, payment: Payment, event: payment_gateway.WebhookEvent) -> List:
    entity = event.payment
    gateway_payment_id = entity.get("id")
    if not gateway_payment_id:
        raise ValidationError("Webhook carries no payment entity", code="invalid_payload")
    if payment.status == PaymentStatus.PAID.value and payment.gateway_payment_id == gateway_payment_id:
        return []

    await _ensure_unclaimed(session, payment, gateway_payment_id)
    match_code = await _match_code_for(session, payment.match_id)
    amount = payment_gateway.from_paise(entity.get("amount")) or payment.amount
    method = _gateway_method(entity)
    _, changed = await match_service.apply_payment_status(
        session, match_code, payment.user_id, PlayerPaymentStatus.PAID.value,
        amount=amount, method=method, payment_id=gateway_payment_id,
    )

    payment.gateway_payment_id = gateway_payment_id
    payment.gateway_response = entity
    payment.method = method
    payment.verified = True
    payment.verified_at = utcnow()
    _set_status(payment, PaymentStatus.PAID.value, f"Captured via {event.event_type}")
    if not changed:
        return []
    return [(match_code, notification_service.PAYMENT_COMPLETED, {"user_id": payment.user_id, "amount": amount, "method": method})]


async def _handle_failed(session: AsyncSession, payment: Payment, event: payment_gateway.WebhookEvent) -> List:
    if payment.status in (PaymentStatus.PAID.value, PaymentStatus.REFUNDED.value, PaymentStatus.FAILED.value):
        return []
    entity = event.payment
    match_code = await _match_code_for(session, payment.match_id)
    await match_service.apply_payment_status(session, match_code, payment.user_id, PlayerPaymentStatus.FAILED.value)

    reason = entity.get("error_description") or "Payment failed"
    payment.failure_reason = reason
    payment.gateway_response = entity
    _set_status(payment, PaymentStatus.FAILED.value, reason)
    return [(match_code, notification_service.PAYMENT_FAILED, {"user_id": payment.user_id, "error": reason})]


async def _handle_refund(session: AsyncSession, payment: Payment, event: payment_gateway.WebhookEvent) -> List:
    entity = event.refund
    processed = event.event_type == "refund.processed"
    status = RefundStatus.PROCESSED.value if processed else RefundStatus.PENDING.value
    refund = dict(payment.refund or {})
    if refund.get("refund_id") == entity.get("id") and refund.get("status") == status:
        return []
    if payment.status == PaymentStatus.REFUNDED.value:
        return []

    match_code = await _match_code_for(session, payment.match_id)
    if processed:
        await match_service.apply_payment_status(session, match_code, payment.user_id, PlayerPaymentStatus.REFUNDED.value)

    refund.update({
        "refund_id": entity.get("id"),
        "amount": payment_gateway.from_paise(entity.get("amount")) or refund.get("amount") or payment.amount,
        "status": status,
    })
    refund.setdefault("refunded_at", utcnow().isoformat())
    payment.refund = refund
    if processed:
        _set_status(payment, PaymentStatus.REFUNDED.value, f"Refund {entity.get('id')} processed")
    return [(
        match_code,
        notification_service.REFUND_UPDATED,
        {"user_id": payment.user_id, "refund_id": entity.get("id"), "amount": refund["amount"], "status": status},
    )]


WEBHOOK_HANDLERS = {
    "payment.captured": _handle_captured,
    "order.paid": _handle_captured,
    "payment.failed": _handle_failed,
    "refund.created": _handle_refund,
    "refund.processed": _handle_refund,
}


async def process_webhook(
    session: AsyncSession, body: bytes, signature: Optional[str], event_id: Optional[str] = None
) -> Dict:
    """
    Ingest one gateway webhook delivery.

    Deliveries are at-least-once: an event id seen before is acknowledged
    as a duplicate without touching state. Business failures (unknown
    payment, rule violations) are logged and acknowledged; infrastructure
    failures propagate so the gateway retries.

    Raises:
        ValidationError: If the signature or payload is invalid
        InfrastructureError: On persistence failure
    """
    payment_gateway.verify_webhook_signature(body, signature)
    event = payment_gateway.parse_webhook_event(body, event_id)

    existing = await session.execute(
        select(PaymentWebhookEvent.id).where(PaymentWebhookEvent.event_id == event.event_id)
    )
    if existing.scalar_one_or_none() is not None:
        logger.info(f"Duplicate webhook {event.event_id} ({event.event_type}) acknowledged")
        return {"event": event.event_type, "duplicate": True, "processed": False}

    session.add(PaymentWebhookEvent(event_id=event.event_id, event_type=event.event_type, payload=event.raw))
    try:
        await session.flush()
    except IntegrityError:
        # A concurrent delivery of the same event won the insert
        await session.rollback()
        logger.info(f"Duplicate webhook {event.event_id} ({event.event_type}) acknowledged")
        return {"event": event.event_type, "duplicate": True, "processed": False}

    handler = WEBHOOK_HANDLERS.get(event.event_type)
    notifications = []
    processed = False
    if handler is None:
        logger.info(f"Ignoring unhandled webhook event {event.event_type}")
    else:
        payment = await _find_payment_for_event(session, event)
        if payment is None:
            logger.warning(f"Webhook {event.event_type} ({event.event_id}) references an unknown payment")
        else:
            try:
                notifications = await handler(session, payment, event)
                processed = True
            except InfrastructureError:
                raise
            except PlaySplitError as e:
                logger.warning(f"Webhook {event.event_type} ({event.event_id}) not applied: {e.message}")

    await session.commit()
    logger.info(f"Webhook {event.event_type} ({event.event_id}) ingested, processed={processed}")

    for match_code, name, data in notifications:
        notification_service.notify_match(match_code, name, data)
    return {"event": event.event_type, "duplicate": False, "processed": processed}
