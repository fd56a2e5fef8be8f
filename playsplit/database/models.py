"""
SQLAlchemy ORM models for the PlaySplit match and payment system.
"""

import enum
from sqlalchemy import (
    JSON,
    Column,
    Integer,
    String,
    Text,
    Boolean,
    Float,
    DateTime,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from playsplit.database.db import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class MatchStatus(str, enum.Enum):
    """Match lifecycle status."""

    DRAFT = "draft"
    OPEN = "open"
    STARTED = "started"
    PENDING_DETAILS = "pending-details"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ParticipationStatus(str, enum.Enum):
    """Roster status of a player within a match."""

    JOINED = "joined"
    OPTED_OUT = "opted-out"
    REMOVED = "removed"


class PlayerPaymentStatus(str, enum.Enum):
    """Settlement status of a player's share."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentStatus(str, enum.Enum):
    """Status of a single settlement attempt."""

    CREATED = "created"
    ATTEMPTED = "attempted"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    """How a player paid."""

    UPI = "upi"
    CASH = "cash"
    CARD = "card"
    WALLET = "wallet"
    NETBANKING = "netbanking"
    BANK_TRANSFER = "bank_transfer"


class RefundStatus(str, enum.Enum):
    """Refund sub-record status."""

    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class UserRole(str, enum.Enum):
    """User role."""

    PLAYER = "player"
    ADMIN = "admin"


class TurfType(str, enum.Enum):
    """Pitch size."""

    FULL = "full"
    HALF = "half"
    SEVEN_A_SIDE = "7v7"
    FIVE_A_SIDE = "5v5"


class User(Base):
    """Player/organizer profile. Credentials live in Firebase."""

    __tablename__ = "users"
    # Fetch server-generated timestamps on flush; async sessions cannot lazy-load them
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    firebase_uid = Column(String(128), nullable=False, unique=True)
    name = Column(String(200), nullable=False)
    email = Column(String(320), nullable=False, unique=True)
    phone = Column(String(30), nullable=True)
    profile_picture = Column(String(1000), nullable=True)
    role = Column(String(20), nullable=False, default=UserRole.PLAYER.value)
    auth_provider = Column(String(20), nullable=False, default="email")  # google | email
    is_active = Column(Boolean, nullable=False, default=True)
    preferences = Column(JSONType, nullable=True)
    matches_played = Column(Integer, nullable=False, default=0)
    matches_organized = Column(Integer, nullable=False, default=0)
    total_paid = Column(Float, nullable=False, default=0)
    average_rating = Column(Float, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_users_role_active", "role", "is_active"),
    )


class Match(Base):
    """
    A football match. The roster lives in ``match_players``; the pair is
    loaded and saved as one aggregate guarded by ``version``.
    """

    __tablename__ = "matches"
    # Fetch server-generated timestamps on flush; async sessions cannot lazy-load them
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    match_code = Column(String(16), nullable=False, unique=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, default="")
    organizer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    venue_name = Column(String(200), nullable=False)
    venue_address = Column(String(500), nullable=False)
    venue_latitude = Column(Float, nullable=True)
    venue_longitude = Column(Float, nullable=True)
    date_time = Column(DateTime(timezone=True), nullable=False)
    duration = Column(Integer, nullable=False, default=90)  # minutes
    turf_type = Column(String(10), nullable=False, default=TurfType.FULL.value)
    capacity = Column(Integer, nullable=False)
    total_cost = Column(Float, nullable=False, default=0)
    cost_per_player = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=MatchStatus.OPEN.value)
    is_quick_match = Column(Boolean, nullable=False, default=False)
    details_completed_at = Column(DateTime(timezone=True), nullable=True)
    actual_start_time = Column(DateTime(timezone=True), nullable=True)
    actual_end_time = Column(DateTime(timezone=True), nullable=True)
    actual_duration = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)
    payment_settings = Column(JSONType, nullable=True)
    game_settings = Column(JSONType, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    organizer = relationship("User", foreign_keys=[organizer_id])
    players = relationship(
        "MatchPlayer",
        back_populates="match",
        order_by="MatchPlayer.position",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("capacity > 0", name="ck_matches_capacity_positive"),
        CheckConstraint("total_cost >= 0", name="ck_matches_total_cost_non_negative"),
        Index("idx_matches_organizer_status", "organizer_id", "status"),
        Index("idx_matches_date_status", "date_time", "status"),
    )


class MatchPlayer(Base):
    """One player's participation in a match."""

    __tablename__ = "match_players"

    id = Column(Integer, primary_key=True, autoincrement=True)
    match_id = Column(Integer, ForeignKey("matches.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    joined_at = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(20), nullable=False, default=ParticipationStatus.JOINED.value)
    payment_status = Column(String(20), nullable=False, default=PlayerPaymentStatus.PENDING.value)
    payment_method = Column(String(20), nullable=True)
    amount_to_pay = Column(Float, nullable=False, default=0)
    paid_amount = Column(Float, nullable=False, default=0)
    payment_id = Column(String(100), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    left_early = Column(Boolean, nullable=False, default=False)
    left_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    match = relationship("Match", back_populates="players")
    user = relationship("User")

    __table_args__ = (
        UniqueConstraint("match_id", "user_id", name="uq_match_players_match_user"),
        Index("idx_match_players_user_status", "user_id", "status"),
    )


class Payment(Base):
    """A settlement attempt for one (match, user) pair."""

    __tablename__ = "payments"
    # Fetch server-generated timestamps on flush; async sessions cannot lazy-load them
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_code = Column(String(64), nullable=False, unique=True)
    gateway_payment_id = Column(String(100), nullable=True, unique=True)
    gateway_order_id = Column(String(100), nullable=True)
    gateway_link_id = Column(String(100), nullable=True)
    match_id = Column(Integer, ForeignKey("matches.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False, default="INR")
    method = Column(String(20), nullable=False, default=PaymentMethod.UPI.value)
    status = Column(String(20), nullable=False, default=PaymentStatus.CREATED.value)
    gateway_response = Column(JSONType, nullable=True)
    failure_reason = Column(Text, nullable=True)
    refund = Column(JSONType, nullable=True)
    details = Column(JSONType, nullable=True)  # user agent, ip, payment link, notes, marked_by
    timeline = Column(JSONType, nullable=True)
    signature = Column(String(256), nullable=True)
    verified = Column(Boolean, nullable=False, default=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    match = relationship("Match")
    user = relationship("User")

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payments_amount_non_negative"),
        Index("idx_payments_match_user", "match_id", "user_id"),
        Index("idx_payments_status_created", "status", "created_at"),
        Index("idx_payments_order", "gateway_order_id"),
    )


class PaymentWebhookEvent(Base):
    """Ledger of ingested gateway webhook deliveries (at-least-once dedup)."""

    __tablename__ = "payment_webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(128), nullable=False, unique=True)
    event_type = Column(String(64), nullable=False)
    payload = Column(JSONType, nullable=True)
    received_at = Column(DateTime(timezone=True), server_default=func.now())
