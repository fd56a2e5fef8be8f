"""
Pydantic models for API request validation.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    field_validator,
)

from playsplit.utils.constants import (
    MAX_DURATION_MINUTES,
    MIN_DURATION_MINUTES,
    QUICK_MAX_PLAYERS,
    REGULAR_MAX_PLAYERS,
    REGULAR_MIN_PLAYERS,
)

TurfTypeLiteral = Literal["full", "half", "7v7", "5v5"]
PaymentMethodLiteral = Literal["upi", "cash", "card", "wallet", "netbanking", "bank_transfer"]


class VenueInput(BaseModel):
    """Venue name, address and optional coordinates."""

    name: str = Field(min_length=1, max_length=200)
    address: str = Field(min_length=1, max_length=500)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)

    @field_validator("name", "address")
    @classmethod
    def strip_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class PaymentSettings(BaseModel):
    allow_cash_payment: bool = True
    allow_online_payment: bool = True
    payment_deadline: Optional[datetime] = None
    late_join_allowed: bool = True
    refund_policy: Literal["full", "partial", "none"] = "partial"


class GameSettings(BaseModel):
    team_formation: Literal["auto", "manual", "captain_pick"] = "auto"
    match_type: Literal["casual", "competitive", "tournament"] = "casual"
    rules: str = ""


class RegularMatchInput(BaseModel):
    """A fully specified match. Every scheduling field is required."""

    model_config = ConfigDict(extra="ignore")

    is_quick_match: Literal[False] = False
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=2000)
    venue: VenueInput
    date_time: datetime
    duration: int = Field(ge=MIN_DURATION_MINUTES, le=MAX_DURATION_MINUTES)
    capacity: int = Field(ge=REGULAR_MIN_PLAYERS, le=REGULAR_MAX_PLAYERS)
    total_cost: float = Field(ge=0)
    turf_type: TurfTypeLiteral
    status: Literal["draft", "open"] = "open"
    payment_settings: Optional[PaymentSettings] = None
    game_settings: Optional[GameSettings] = None

    @field_validator("title")
    @classmethod
    def strip_title(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Title is required for regular matches")
        return value


class QuickMatchInput(BaseModel):
    """A match created with minimal detail; the rest is filled in after play."""

    model_config = ConfigDict(extra="ignore")

    is_quick_match: Literal[True]
    title: Optional[str] = Field(default=None, max_length=200)
    description: str = Field(default="", max_length=2000)
    venue: Optional[VenueInput] = None
    date_time: Optional[datetime] = None
    duration: Optional[int] = Field(default=None, ge=MIN_DURATION_MINUTES, le=MAX_DURATION_MINUTES)
    capacity: Optional[int] = Field(default=None, ge=REGULAR_MIN_PLAYERS, le=QUICK_MAX_PLAYERS)
    total_cost: Optional[float] = Field(default=None, ge=0)
    turf_type: Optional[TurfTypeLiteral] = None
    payment_settings: Optional[PaymentSettings] = None
    game_settings: Optional[GameSettings] = None


def _match_input_tag(value: Any) -> str:
    """Select the match-creation variant from the ``is_quick_match`` flag."""
    if isinstance(value, dict):
        flag = value.get("is_quick_match", False)
    else:
        flag = getattr(value, "is_quick_match", False)
    if isinstance(flag, str):
        flag = flag.strip().lower() in ("true", "1", "yes")
    return "quick" if flag else "regular"


MatchInput = Annotated[
    Union[
        Annotated[RegularMatchInput, Tag("regular")],
        Annotated[QuickMatchInput, Tag("quick")],
    ],
    Discriminator(_match_input_tag),
]


class UpdateMatchRequest(BaseModel):
    """Editable match fields. Omitted fields are left unchanged."""

    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    venue: Optional[VenueInput] = None
    date_time: Optional[datetime] = None
    duration: Optional[int] = Field(default=None, ge=MIN_DURATION_MINUTES, le=MAX_DURATION_MINUTES)
    turf_type: Optional[TurfTypeLiteral] = None
    capacity: Optional[int] = Field(default=None, ge=1, le=QUICK_MAX_PLAYERS)
    total_cost: Optional[float] = Field(default=None, ge=0)
    payment_settings: Optional[PaymentSettings] = None
    game_settings: Optional[GameSettings] = None


class CompleteDetailsRequest(BaseModel):
    """Final details of a quick match, supplied after play."""

    title: str = Field(min_length=1, max_length=200)
    venue: VenueInput
    total_cost: float = Field(ge=0)
    duration: Optional[int] = Field(default=None, ge=MIN_DURATION_MINUTES, le=MAX_DURATION_MINUTES)
    description: Optional[str] = Field(default=None, max_length=2000)
    actual_players: Optional[int] = Field(default=None, ge=1, le=QUICK_MAX_PLAYERS)

    @field_validator("title")
    @classmethod
    def strip_title(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Title is required")
        return value


# ============================================================================
# Payments
# ============================================================================

class CreateOrderRequest(BaseModel):
    match_code: str = Field(min_length=1, max_length=16)


class CreatePaymentLinkRequest(BaseModel):
    match_code: str = Field(min_length=1, max_length=16)
    description: Optional[str] = Field(default=None, max_length=500)


class VerifyPaymentRequest(BaseModel):
    razorpay_order_id: str = Field(min_length=1)
    razorpay_payment_id: str = Field(min_length=1)
    razorpay_signature: str = Field(min_length=1)
    payment_code: str = Field(min_length=1)


class MarkCashPaymentRequest(BaseModel):
    user_id: int
    amount: Optional[float] = Field(default=None, gt=0)
    notes: Optional[str] = Field(default=None, max_length=500)


class RefundRequest(BaseModel):
    amount: Optional[float] = Field(default=None, gt=0)
    reason: str = Field(default="Refund requested", max_length=500)


# ============================================================================
# Auth & users
# ============================================================================

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
PHONE_PATTERN = r"^\+?[0-9]{10,15}$"


class RegisterRequest(BaseModel):
    id_token: str = Field(min_length=1)
    name: str = Field(min_length=2, max_length=100)
    email: str = Field(max_length=320, pattern=EMAIL_PATTERN)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    auth_provider: Literal["google", "email"]

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 2:
            raise ValueError("Name must be at least 2 characters")
        return value


class LoginRequest(BaseModel):
    id_token: str = Field(min_length=1)


class NotificationPreferences(BaseModel):
    email: bool = True
    push: bool = True


class UserPreferences(BaseModel):
    notifications: NotificationPreferences = Field(default_factory=NotificationPreferences)
    preferred_payment_method: Literal["upi", "cash", "card"] = "upi"


class UpdateProfileRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    profile_picture: Optional[str] = Field(default=None, max_length=1000)
    preferences: Optional[UserPreferences] = None


class DeleteAccountRequest(BaseModel):
    confirm_delete: Literal["DELETE"]


class AdminUpdateUserRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: Optional[Literal["player", "admin"]] = None
    is_active: Optional[bool] = None
    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    email: Optional[str] = Field(default=None, max_length=320, pattern=EMAIL_PATTERN)

