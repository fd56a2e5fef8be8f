"""Payment route handlers: checkout, verification, gateway webhooks, cash and refunds."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from playsplit.api.auth_dependencies import actor_for, require_admin, require_user
from playsplit.api.routes import envelope, limiter
from playsplit.database.db import get_db_session
from playsplit.models.schemas import (
    CreateOrderRequest,
    CreatePaymentLinkRequest,
    MarkCashPaymentRequest,
    RefundRequest,
    VerifyPaymentRequest,
)
from playsplit.services import payment_service

logger = logging.getLogger(__name__)
router = APIRouter()


def _client_meta(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


# ---------------------------------------------------------------------------
# Online checkout
# ---------------------------------------------------------------------------


@router.post("/api/payments/create-order")
@limiter.limit("20/minute")
async def create_order(
    request: Request,
    payload: CreateOrderRequest,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Open a gateway order for the caller's share of a match."""
    data = await payment_service.create_order(session, payload.match_code, user, _client_meta(request))
    return envelope(data, "Payment order created successfully")


@router.post("/api/payments/create-payment-link")
@limiter.limit("20/minute")
async def create_payment_link(
    request: Request,
    payload: CreatePaymentLinkRequest,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    data = await payment_service.create_payment_link(
        session, payload.match_code, user, payload.description, _client_meta(request)
    )
    return envelope(data, "Payment link created successfully")


@router.post("/api/payments/verify")
async def verify_payment(
    payload: VerifyPaymentRequest,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Verify the checkout callback signature and settle the payment."""
    data = await payment_service.verify_payment(
        session,
        user,
        payload.payment_code,
        payload.razorpay_order_id,
        payload.razorpay_payment_id,
        payload.razorpay_signature,
    )
    return envelope(data, "Payment verified successfully")


@router.post("/api/payments/webhook")
async def payment_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(default=None),
    x_razorpay_event_id: Optional[str] = Header(default=None),
    session: AsyncSession = Depends(get_db_session),
):
    """
    Gateway webhook receiver.

    The signature covers the raw body, so it is read before any parsing.
    A 200 tells the gateway to stop retrying.
    """
    body = await request.body()
    data = await payment_service.process_webhook(session, body, x_razorpay_signature, x_razorpay_event_id)
    return envelope(data, "Webhook processed")


# ---------------------------------------------------------------------------
# Organizer / admin operations
# ---------------------------------------------------------------------------


@router.post("/api/payments/matches/{match_code}/cash")
async def mark_cash_payment(
    match_code: str,
    payload: MarkCashPaymentRequest,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Record cash collected from a player (organizer or admin)."""
    data = await payment_service.mark_cash_payment(
        session, match_code, actor_for(user), payload.user_id, payload.amount, payload.notes
    )
    return envelope(data, "Cash payment recorded")


@router.post("/api/payments/{payment_code}/refund")
async def refund_payment(
    payment_code: str,
    payload: RefundRequest,
    user: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    """Start a gateway refund (admin only)."""
    data = await payment_service.refund_payment(
        session, payment_code, actor_for(user), payload.amount, payload.reason
    )
    return envelope(data, "Refund initiated successfully")


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------


@router.get("/api/payments/match/{match_code}")
async def list_match_payments(
    match_code: str,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    data = await payment_service.list_match_payments(session, match_code, actor_for(user))
    return envelope(data)


@router.get("/api/payments/user")
async def list_user_payments(
    status: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    data = await payment_service.list_user_payments(session, user["id"], status=status, limit=limit, offset=offset)
    return envelope(data)
