"""
Tests for admin reporting and per-user summaries over a seeded history:
a completed Sunday League match settled with one online and one cash
payment (a third player still owes), and an open match later today.
"""

from datetime import timedelta

import pytest
import pytest_asyncio

from playsplit.database.models import UserRole
from playsplit.models.schemas import RegularMatchInput
from playsplit.services import admin_service, match_service, payment_service, user_service
from playsplit.services.match_engine import Actor
from playsplit.utils.datetime_utils import utcnow
from playsplit.utils.exceptions import BusinessRuleError, NotFoundError, ValidationError


def auth(name):
    return {"Authorization": f"Bearer token-{name}"}


def payer(user_id, name):
    return {"id": user_id, "name": name.title(), "email": f"{name}@example.com", "phone": None}


def match_input(title, starts_in, total_cost):
    return RegularMatchInput(
        title=title,
        venue={"name": "Arena", "address": "Indiranagar"},
        date_time=utcnow() + starts_in,
        duration=90,
        capacity=10,
        total_cost=total_cost,
        turf_type="7v7",
    )


@pytest_asyncio.fixture
async def history(session, make_user, gateway, sent_events):
    org = await make_user("org")
    p1 = await make_user("p1")
    p2 = await make_user("p2")
    p3 = await make_user("p3")

    league = await match_service.create_match(
        session, match_input("Sunday League", timedelta(days=3), 1000), Actor(org)
    )
    for user_id in (p1, p2, p3):
        await match_service.join_match(session, league.match_code, user_id)

    created = await payment_service.create_order(session, league.match_code, payer(p1, "p1"))
    await payment_service.verify_payment(
        session, payer(p1, "p1"), created["payment"]["payment_code"], created["order_id"], "pay_1", "good"
    )
    await payment_service.mark_cash_payment(session, league.match_code, Actor(org), p2)
    await match_service.start_match(session, league.match_code, Actor(org))
    await match_service.complete_match(session, league.match_code, Actor(org))

    evening = await match_service.create_match(
        session, match_input("Evening Five", timedelta(hours=2), 600), Actor(org)
    )
    await match_service.join_match(session, evening.match_code, p1)

    return {
        "org": org,
        "p1": p1,
        "p2": p2,
        "p3": p3,
        "league": league.match_code,
        "evening": evening.match_code,
    }


class TestAdminListings:
    async def test_list_matches(self, session, history):
        result = await admin_service.list_matches(session)

        assert result["total"] == 2
        codes = {m["match_code"] for m in result["matches"]}
        assert codes == {history["league"], history["evening"]}

    async def test_list_matches_by_status_and_search(self, session, history):
        completed = await admin_service.list_matches(session, status="completed")
        searched = await admin_service.list_matches(session, search="evening")

        assert completed["total"] == 1
        assert [m["match_code"] for m in completed["matches"]] == [history["league"]]
        assert searched["total"] == 1
        assert searched["matches"][0]["title"] == "Evening Five"

    async def test_list_payments(self, session, history):
        result = await admin_service.list_payments(session)

        assert result["total"] == 2
        assert {p["method"] for p in result["payments"]} == {"upi", "cash"}
        assert all(p["match_code"] == history["league"] for p in result["payments"])
        assert all(p["updated_at"] is not None for p in result["payments"])

    async def test_list_payments_by_method(self, session, history):
        result = await admin_service.list_payments(session, status="paid", method="cash")

        assert result["total"] == 1
        payment = result["payments"][0]
        assert payment["user_id"] == history["p2"]
        assert float(payment["amount"]) == 100

    async def test_list_payments_pagination(self, session, history):
        result = await admin_service.list_payments(session, limit=1, offset=1)

        assert result["total"] == 2
        assert len(result["payments"]) == 1


class TestAnalytics:
    async def test_revenue_and_breakdowns(self, session, history):
        result = await admin_service.get_analytics(session, "7d")

        assert result["period"] == "7d"
        analytics = result["analytics"]
        assert sum(day["revenue"] for day in analytics["revenue"]) == 200
        assert sum(day["count"] for day in analytics["revenue"]) == 2
        assert {m["status"]: m["count"] for m in analytics["matches"]} == {"completed": 1, "open": 1}
        by_method = {p["method"]: (p["count"], p["amount"]) for p in analytics["payments"]}
        assert by_method == {"upi": (1, 100.0), "cash": (1, 100.0)}

    async def test_top_organizers_and_growth(self, session, history):
        analytics = (await admin_service.get_analytics(session, "30d"))["analytics"]

        top = analytics["top_organizers"][0]
        assert top["organizer"]["id"] == history["org"]
        assert top["match_count"] == 2
        assert top["total_revenue"] == 1600
        assert sum(day["new_users"] for day in analytics["user_growth"]) == 4

    async def test_invalid_period(self, session):
        with pytest.raises(ValidationError) as exc:
            await admin_service.get_analytics(session, "2w")
        assert exc.value.code == "invalid_period"

    async def test_analytics_route(self, client, make_user, history):
        await make_user("boss", role=UserRole.ADMIN.value)

        response = await client.get("/api/admin/analytics", params={"period": "90d"}, headers=auth("boss"))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["period"] == "90d"
        assert len(data["analytics"]["payments"]) == 2


class TestUserSummaries:
    async def test_player_stats(self, session, history):
        stats = await user_service.get_user_stats(session, history["p1"])

        assert stats["matches"] == {"played": 1, "organized": 0, "upcoming": 1}
        assert stats["payments"]["total_paid"] == 100
        recent = stats["payments"]["recent"]
        assert len(recent) == 1
        assert recent[0]["method"] == "upi"
        assert recent[0]["match"]["match_code"] == history["league"]
        assert stats["profile"]["email"] == "p1@example.com"

    async def test_organizer_stats(self, session, history):
        stats = await user_service.get_user_stats(session, history["org"])

        assert stats["matches"] == {"played": 0, "organized": 1, "upcoming": 1}
        assert stats["payments"] == {"total_paid": 0, "recent": []}

    async def test_stats_unknown_user(self, session):
        with pytest.raises(NotFoundError):
            await user_service.get_user_stats(session, 404)

    async def test_upcoming_match_reminder(self, session, history):
        notifications = await user_service.get_user_notifications(session, history["p1"])

        assert [n["type"] for n in notifications] == ["match_reminder"]
        assert notifications[0]["data"] == {"match_code": history["evening"]}

    async def test_outstanding_payment_reminder(self, session, history):
        notifications = await user_service.get_user_notifications(session, history["p3"])

        assert len(notifications) == 1
        assert notifications[0]["type"] == "payment_reminder"
        assert notifications[0]["id"] == f"payment-{history['league']}"

    async def test_settled_player_has_no_notifications(self, session, history):
        assert await user_service.get_user_notifications(session, history["p2"]) == []

    async def test_public_profile(self, session, history):
        profile = await user_service.get_public_profile(session, history["p1"])

        assert profile["name"] == "P1"
        assert profile["stats"]["matches_played"] == 1
        assert profile["stats"]["matches_organized"] == 0
        assert profile["member_since"] is not None
        assert "email" not in profile

    async def test_public_profile_hides_inactive_users(self, session, make_user):
        ghost = await make_user("ghost", is_active=False)

        with pytest.raises(NotFoundError):
            await user_service.get_public_profile(session, ghost)


class TestAccountDeletion:
    async def test_organizer_of_open_match_cannot_delete(self, session, history):
        with pytest.raises(BusinessRuleError) as exc:
            await user_service.deactivate_user(session, history["org"])
        assert exc.value.code == "active_matches"

    async def test_player_in_open_match_cannot_delete(self, session, history):
        with pytest.raises(BusinessRuleError) as exc:
            await user_service.deactivate_user(session, history["p1"])
        assert exc.value.code == "active_matches"

    async def test_player_with_only_finished_matches_can_delete(self, session, history):
        user = await user_service.deactivate_user(session, history["p3"])

        assert user["is_active"] is False
        assert user["email"].startswith("deleted_")

    async def test_delete_route_refuses_active_player(self, client, history):
        response = await client.request(
            "DELETE", "/api/auth/account", json={"confirm_delete": "DELETE"}, headers=auth("p1")
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "active_matches"
        follow_up = await client.get("/api/auth/profile", headers=auth("p1"))
        assert follow_up.status_code == 200
