"""
Razorpay payment gateway wrapper.

The SDK is synchronous, so every network call runs in a worker thread.
Amounts cross this boundary in rupees and are converted to paise here.
Gateway failures surface as ``PaymentError``; signature problems as
``ValidationError``.
"""

import asyncio
import hashlib
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import razorpay
from razorpay.errors import BadRequestError, GatewayError, ServerError, SignatureVerificationError

from playsplit.utils.constants import DEFAULT_CURRENCY
from playsplit.utils.exceptions import InfrastructureError, PaymentError, ValidationError

logger = logging.getLogger(__name__)

RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", DEFAULT_CURRENCY)
CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:3000")

# Payment links stay valid for 24 hours
PAYMENT_LINK_TTL_SECONDS = 24 * 60 * 60

_client: Optional[razorpay.Client] = None


def get_razorpay_client() -> razorpay.Client:
    """Shared Razorpay client built from the configured key pair."""
    global _client
    if not RAZORPAY_KEY_ID or not RAZORPAY_KEY_SECRET:
        raise InfrastructureError("Payment gateway not configured")
    if _client is None:
        _client = razorpay.Client(auth=(RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET))
    return _client


def to_paise(amount: float) -> int:
    return int(round(float(amount) * 100))


def from_paise(amount: Optional[int]) -> float:
    return (amount or 0) / 100


async def _call(description: str, func, *args) -> Dict:
    try:
        return await asyncio.to_thread(func, *args)
    except BadRequestError as e:
        logger.warning(f"Razorpay rejected {description}: {e}")
        raise PaymentError(f"Payment gateway rejected the request: {e}", code="gateway_bad_request", status_code=400) from e
    except (GatewayError, ServerError) as e:
        logger.error(f"Razorpay {description} failed: {e}")
        raise PaymentError("Payment gateway error, please retry", code="gateway_error", status_code=502) from e
    except Exception as e:
        logger.error(f"Razorpay {description} failed: {e}", exc_info=True)
        raise PaymentError("Payment gateway unavailable", code="gateway_unavailable", status_code=503) from e


async def create_order(amount: float, receipt: str, notes: Optional[Dict] = None, currency: Optional[str] = None) -> Dict:
    """Create an auto-captured order for ``amount`` rupees."""
    client = get_razorpay_client()
    data = {
        "amount": to_paise(amount),
        "currency": currency or PAYMENT_CURRENCY,
        "receipt": receipt[:40],
        "notes": notes or {},
        "payment_capture": 1,
    }
    return await _call("order creation", client.order.create, data)


async def create_payment_link(
    amount: float,
    description: str,
    customer: Dict,
    reference_id: str,
    notes: Optional[Dict] = None,
    currency: Optional[str] = None,
) -> Dict:
    """Create a shareable payment link that expires in 24 hours."""
    client = get_razorpay_client()
    data = {
        "amount": to_paise(amount),
        "currency": currency or PAYMENT_CURRENCY,
        "accept_partial": False,
        "expire_by": int(time.time()) + PAYMENT_LINK_TTL_SECONDS,
        "reference_id": reference_id[:40],
        "description": description,
        "customer": customer,
        "notify": {"sms": True, "email": True},
        "reminder_enable": True,
        "notes": notes or {},
        "callback_url": f"{CLIENT_URL.rstrip('/')}/payment/callback",
        "callback_method": "get",
    }
    return await _call("payment link creation", client.payment_link.create, data)


async def fetch_payment(payment_id: str) -> Dict:
    client = get_razorpay_client()
    return await _call("payment fetch", client.payment.fetch, payment_id)


async def create_refund(payment_id: str, amount: float, notes: Optional[Dict] = None) -> Dict:
    client = get_razorpay_client()
    data = {"amount": to_paise(amount), "notes": notes or {}}
    return await _call("refund creation", client.payment.refund, payment_id, data)


def verify_payment_signature(order_id: str, payment_id: str, signature: str) -> None:
    """
    Check the checkout signature HMAC-SHA256(order_id|payment_id).

    Raises:
        ValidationError: If the signature does not match
    """
    client = get_razorpay_client()
    try:
        client.utility.verify_payment_signature({
            "razorpay_order_id": order_id,
            "razorpay_payment_id": payment_id,
            "razorpay_signature": signature,
        })
    except SignatureVerificationError as e:
        raise ValidationError("Invalid payment signature", code="invalid_signature") from e


def verify_webhook_signature(body: bytes, signature: Optional[str]) -> None:
    """
    Check the X-Razorpay-Signature header against the raw request body.

    Raises:
        ValidationError: If the signature is missing or does not match
        InfrastructureError: If no webhook secret is configured
    """
    if not RAZORPAY_WEBHOOK_SECRET:
        raise InfrastructureError("Webhook secret not configured")
    if not signature:
        raise ValidationError("Missing webhook signature", code="invalid_signature")
    client = razorpay.Client(auth=(RAZORPAY_KEY_ID or "", RAZORPAY_KEY_SECRET or ""))
    try:
        client.utility.verify_webhook_signature(body.decode("utf-8"), signature, RAZORPAY_WEBHOOK_SECRET)
    except (SignatureVerificationError, UnicodeDecodeError) as e:
        raise ValidationError("Invalid webhook signature", code="invalid_signature") from e


@dataclass
class WebhookEvent:
    """The parts of a Razorpay webhook delivery the payment service needs."""

    event_id: str
    event_type: str
    payment: Dict[str, Any] = field(default_factory=dict)
    order: Dict[str, Any] = field(default_factory=dict)
    refund: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def notes(self) -> Dict[str, Any]:
        for entity in (self.payment, self.order, self.refund):
            notes = entity.get("notes")
            if isinstance(notes, dict) and notes:
                return notes
        return {}


def parse_webhook_event(body: bytes, event_id: Optional[str] = None) -> WebhookEvent:
    """
    Parse a webhook body.

    ``event_id`` is the X-Razorpay-Event-Id header; without it the event is
    identified by a hash of the body so redeliveries still deduplicate.

    Raises:
        ValidationError: If the body is not a JSON event
    """
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise ValidationError("Malformed webhook payload", code="invalid_payload") from e
    if not isinstance(data, dict) or not data.get("event"):
        raise ValidationError("Malformed webhook payload", code="invalid_payload")

    payload = data.get("payload") or {}

    def entity(name: str) -> Dict:
        wrapper = payload.get(name) or {}
        return wrapper.get("entity") or {}

    return WebhookEvent(
        event_id=event_id or hashlib.sha256(body).hexdigest(),
        event_type=data["event"],
        payment=entity("payment"),
        order=entity("order"),
        refund=entity("refund"),
        raw=data,
    )
