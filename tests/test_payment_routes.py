"""
Route tests for payment endpoints. Gateway calls are faked by the
``gateway`` fixture.
"""

import json
from datetime import timedelta

from playsplit.database.models import UserRole
from playsplit.utils.datetime_utils import utcnow


def auth(name):
    return {"Authorization": f"Bearer token-{name}"}


async def open_match_with_player(client, make_user):
    """Organizer ``org`` with player ``p1`` joined; p1 owes 100."""
    await make_user("org")
    player_id = await make_user("p1")
    body = {
        "title": "Weekend Game",
        "venue": {"name": "Arena", "address": "Whitefield"},
        "date_time": (utcnow() + timedelta(days=2)).isoformat(),
        "duration": 60,
        "capacity": 10,
        "total_cost": 1000,
        "turf_type": "5v5",
    }
    created = await client.post("/api/matches", json=body, headers=auth("org"))
    code = created.json()["data"]["match"]["match_code"]
    await client.post(f"/api/matches/{code}/join", headers=auth("p1"))
    return code, player_id


async def pay_online(client, code):
    order = (await client.post("/api/payments/create-order", json={"match_code": code}, headers=auth("p1"))).json()
    verify = {
        "razorpay_order_id": order["data"]["order_id"],
        "razorpay_payment_id": "pay_1",
        "razorpay_signature": "good",
        "payment_code": order["data"]["payment"]["payment_code"],
    }
    return await client.post("/api/payments/verify", json=verify, headers=auth("p1"))


class TestCheckout:
    async def test_create_order(self, client, make_user, gateway):
        code, _ = await open_match_with_player(client, make_user)

        response = await client.post("/api/payments/create-order", json={"match_code": code}, headers=auth("p1"))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["order_id"] == "order_1"
        assert data["amount"] == 10000
        assert data["payment"]["status"] == "created"

    async def test_verify_settles_roster(self, client, make_user, gateway):
        code, _ = await open_match_with_player(client, make_user)

        response = await pay_online(client, code)

        assert response.status_code == 200
        assert response.json()["data"]["changed"] is True
        match = (await client.get(f"/api/matches/{code}")).json()["data"]["match"]
        assert match["total_collected"] == 100
        assert match["players"][0]["payment_status"] == "paid"

    async def test_forged_signature(self, client, make_user, gateway):
        code, _ = await open_match_with_player(client, make_user)
        order = (await client.post("/api/payments/create-order", json={"match_code": code}, headers=auth("p1"))).json()

        response = await client.post(
            "/api/payments/verify",
            json={
                "razorpay_order_id": order["data"]["order_id"],
                "razorpay_payment_id": "pay_1",
                "razorpay_signature": "forged",
                "payment_code": order["data"]["payment"]["payment_code"],
            },
            headers=auth("p1"),
        )

        assert response.status_code == 400
        assert response.json()["error"] == {"name": "ValidationError", "code": "invalid_signature"}

    async def test_outsider_cannot_order(self, client, make_user, gateway):
        code, _ = await open_match_with_player(client, make_user)
        await make_user("outsider")

        response = await client.post(
            "/api/payments/create-order", json={"match_code": code}, headers=auth("outsider")
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "not_in_match"


class TestWebhook:
    async def test_webhook_acknowledges_duplicates(self, client, make_user, gateway):
        code, _ = await open_match_with_player(client, make_user)
        order = (await client.post("/api/payments/create-order", json={"match_code": code}, headers=auth("p1"))).json()
        body = json.dumps({
            "event": "payment.captured",
            "payload": {"payment": {"entity": {
                "id": "pay_7", "order_id": order["data"]["order_id"], "amount": 10000, "method": "upi",
            }}},
        })
        headers = {"X-Razorpay-Signature": "good", "X-Razorpay-Event-Id": "evt_1", "Content-Type": "application/json"}

        first = await client.post("/api/payments/webhook", content=body, headers=headers)
        second = await client.post("/api/payments/webhook", content=body, headers=headers)

        assert first.status_code == 200
        assert first.json()["data"] == {"event": "payment.captured", "duplicate": False, "processed": True}
        assert second.status_code == 200
        assert second.json()["data"]["duplicate"] is True

    async def test_webhook_bad_signature(self, client, gateway):
        response = await client.post(
            "/api/payments/webhook",
            content=b'{"event": "payment.captured", "payload": {}}',
            headers={"X-Razorpay-Signature": "forged"},
        )

        assert response.status_code == 400
        assert response.json()["success"] is False


class TestOrganizerOperations:
    async def test_cash_and_match_summary(self, client, make_user, gateway):
        code, player_id = await open_match_with_player(client, make_user)

        marked = await client.post(
            f"/api/payments/matches/{code}/cash", json={"user_id": player_id}, headers=auth("org")
        )
        assert marked.status_code == 200
        assert marked.json()["data"]["payment"]["method"] == "cash"

        listing = await client.get(f"/api/payments/match/{code}", headers=auth("org"))
        summary = listing.json()["data"]["summary"]
        assert summary["paid_count"] == 1
        assert summary["total_collected"] == 100

    async def test_player_cannot_see_match_payments(self, client, make_user, gateway):
        code, _ = await open_match_with_player(client, make_user)

        response = await client.get(f"/api/payments/match/{code}", headers=auth("p1"))

        assert response.status_code == 403

    async def test_refund_is_admin_only(self, client, make_user, gateway):
        code, _ = await open_match_with_player(client, make_user)
        await make_user("boss", role=UserRole.ADMIN.value)
        payment_code = (await pay_online(client, code)).json()["data"]["payment"]["payment_code"]

        denied = await client.post(f"/api/payments/{payment_code}/refund", json={}, headers=auth("org"))
        assert denied.status_code == 403

        refunded = await client.post(
            f"/api/payments/{payment_code}/refund", json={"reason": "Match abandoned"}, headers=auth("boss")
        )
        assert refunded.status_code == 200
        assert refunded.json()["data"]["refund_id"] == "rfnd_1"

    async def test_user_payment_history(self, client, make_user, gateway):
        code, _ = await open_match_with_player(client, make_user)
        await pay_online(client, code)

        response = await client.get("/api/payments/user", headers=auth("p1"))

        data = response.json()["data"]
        assert data["total"] == 1
        assert data["payments"][0]["match_code"] == code
        assert data["payments"][0]["match"]["title"] == "Weekend Game"
