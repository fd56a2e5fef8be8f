"""
Shared pytest configuration for PlaySplit tests.

Uses a throwaway SQLite file per test (aiosqlite) so the suite runs without a
database server. Route tests go through the real FastAPI app with the
session dependency pointed at the test database and Firebase token
verification replaced by a fake.

SAFETY: This module REFUSES to run against any database whose name does not
contain the substring "test".
"""

import os

# Must be set before playsplit.api.routes builds its limiter
os.environ["ENV"] = "test"
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./playsplit_test.db")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from playsplit.database.db import Base, get_db_session
from playsplit.database.models import User, UserRole
from playsplit.services import (
    identity_service,
    notification_service,
    payment_gateway,
    rate_limiting_service,
    redis_service,
)
from playsplit.utils.exceptions import AuthenticationError, ValidationError


def _resolve_test_database_url(tmp_path) -> str:
    """Build the test database URL with a safety check on the database name."""
    url = os.getenv("TEST_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'playsplit_test.db'}")
    db_name = url.rsplit("/", 1)[-1].split("?")[0]
    if "test" not in db_name.lower():
        raise RuntimeError(
            f"SAFETY: Refusing to run tests against database '{db_name}'. "
            f"The database name must contain 'test'."
        )
    return url


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """A fresh schema per test."""
    engine = create_async_engine(_resolve_test_database_url(tmp_path), poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def sent_events(monkeypatch):
    """Record match broadcasts as (topic, payload) instead of delivering them."""
    sent = []

    def fake_broadcast(topic, payload):
        sent.append((topic, payload))
        return None

    monkeypatch.setattr(notification_service, "broadcast", fake_broadcast)
    return sent


@pytest_asyncio.fixture
async def make_user(session_maker):
    """Factory: insert a user and return its id. Firebase UID is ``uid-<name>``."""
    counter = {"n": 0}

    async def _make(name=None, role=UserRole.PLAYER.value, is_active=True):
        counter["n"] += 1
        name = name or f"player{counter['n']}"
        async with session_maker() as s:
            user = User(
                firebase_uid=f"uid-{name}",
                name=name.title(),
                email=f"{name}@example.com",
                role=role,
                auth_provider="email",
                is_active=is_active,
                preferences={},
                matches_played=0,
                matches_organized=0,
                total_paid=0,
                average_rating=0,
            )
            s.add(user)
            await s.commit()
            return user.id

    return _make


@pytest.fixture
def fake_tokens(monkeypatch):
    """
    Replace Firebase verification: a bearer token ``token-<name>`` verifies
    as uid ``uid-<name>``; anything else is rejected.
    """
    async def fake_verify_id_token(token):
        if not token or not token.startswith("token-"):
            raise AuthenticationError("Invalid token", code="invalid_token")
        name = token[len("token-"):]
        return {
            "uid": f"uid-{name}",
            "email": f"{name}@example.com",
            "name": name.title(),
            "picture": None,
            "email_verified": True,
        }

    async def fake_set_claims(uid, claims):
        return True

    async def fake_revoke(uid):
        return True

    monkeypatch.setattr(identity_service, "verify_id_token", fake_verify_id_token)
    monkeypatch.setattr(identity_service, "set_custom_user_claims", fake_set_claims)
    monkeypatch.setattr(identity_service, "revoke_refresh_tokens", fake_revoke)


@pytest_asyncio.fixture
async def client(session_maker, fake_tokens, monkeypatch):
    """HTTP client against the app, with sessions on the test database and no Redis."""
    from playsplit.api.main import app

    async def no_redis(*args, **kwargs):
        return None

    async def redis_down():
        return False

    monkeypatch.setattr(rate_limiting_service, "redis_incr_window", no_redis)
    monkeypatch.setattr(redis_service, "is_redis_available", redis_down)

    async def override_get_db_session():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db_session] = override_get_db_session
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def gateway(monkeypatch):
    """Fake gateway: records calls and hands back canned entities."""
    state = {
        "orders": [],
        "refunds": [],
        "payment": {"id": "pay_1", "status": "captured", "amount": 10000, "method": "upi"},
    }

    async def fake_create_order(amount, receipt, notes=None, currency=None):
        order_id = f"order_{len(state['orders']) + 1}"
        state["orders"].append({"id": order_id, "amount": amount, "receipt": receipt, "notes": notes})
        return {"id": order_id, "amount": payment_gateway.to_paise(amount), "currency": "INR"}

    async def fake_create_payment_link(amount, description, customer, reference_id, notes=None, currency=None):
        return {"id": "plink_1", "short_url": "https://rzp.io/i/abc", "expire_by": 1893456000}

    async def fake_fetch_payment(payment_id):
        return {**state["payment"], "id": payment_id}

    async def fake_create_refund(payment_id, amount, notes=None):
        state["refunds"].append((payment_id, amount))
        return {"id": "rfnd_1", "status": "pending"}

    def fake_verify_payment_signature(order_id, payment_id, signature):
        if signature != "good":
            raise ValidationError("Invalid payment signature", code="invalid_signature")

    def fake_verify_webhook_signature(body, signature):
        if signature != "good":
            raise ValidationError("Invalid webhook signature", code="invalid_signature")

    monkeypatch.setattr(payment_gateway, "create_order", fake_create_order)
    monkeypatch.setattr(payment_gateway, "create_payment_link", fake_create_payment_link)
    monkeypatch.setattr(payment_gateway, "fetch_payment", fake_fetch_payment)
    monkeypatch.setattr(payment_gateway, "create_refund", fake_create_refund)
    monkeypatch.setattr(payment_gateway, "verify_payment_signature", fake_verify_payment_signature)
    monkeypatch.setattr(payment_gateway, "verify_webhook_signature", fake_verify_webhook_signature)
    return state
