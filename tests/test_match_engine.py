"""
Unit tests for the match engine: state machine, roster rules, cost
arithmetic and payment bookkeeping. No database involved.
"""

from datetime import datetime, timedelta

import pytest
import pytz

from playsplit.models.schemas import CompleteDetailsRequest, QuickMatchInput, RegularMatchInput
from playsplit.services import match_engine
from playsplit.services.match_engine import Actor
from playsplit.utils.exceptions import AuthorizationError, BusinessRuleError, ValidationError

NOW = datetime(2026, 5, 1, 18, 0, tzinfo=pytz.UTC)
ORGANIZER = Actor(user_id=1)
ADMIN = Actor(user_id=99, is_admin=True)
STRANGER = Actor(user_id=50)


def regular_input(**overrides):
    data = {
        "title": "Sunday Football",
        "venue": {"name": "City Turf", "address": "12 MG Road"},
        "date_time": NOW + timedelta(days=1),
        "duration": 90,
        "capacity": 10,
        "total_cost": 1000,
        "turf_type": "full",
    }
    data.update(overrides)
    return RegularMatchInput(**data)


def make_regular(**overrides):
    return match_engine.create_match(regular_input(**overrides), ORGANIZER.user_id, "ABCD1234", NOW)


def make_quick(**overrides):
    payload = QuickMatchInput(is_quick_match=True, **overrides)
    return match_engine.create_match(payload, ORGANIZER.user_id, "QUICK001", NOW)


def join_many(match, user_ids, now=NOW):
    for user_id in user_ids:
        match_engine.join_match(match, user_id, now)


def mark_paid(match, user_id, payment_id="pay_1", amount=None):
    return match_engine.update_payment_status(
        match, user_id, "paid", NOW, amount=amount, method="upi", payment_id=payment_id
    )


def details(**overrides):
    data = {
        "title": "Evening Kickabout",
        "venue": {"name": "Park Ground", "address": "Sector 5"},
        "total_cost": 500,
    }
    data.update(overrides)
    return CompleteDetailsRequest(**data)


# ============================================================================
# Creation and cost arithmetic
# ============================================================================


class TestCreateMatch:
    def test_regular_match_cost_per_player(self):
        match = make_regular()
        assert match.status == "open"
        assert match.cost_per_player == 100
        assert not match.is_quick_match

    def test_regular_match_can_start_as_draft(self):
        match = make_regular(status="draft")
        assert match.status == "draft"

    def test_cost_per_player_rounds_up(self):
        match = make_regular(total_cost=1001, capacity=10)
        assert match.cost_per_player == 101

    def test_quick_match_defaults(self):
        match = make_quick()
        assert match.status == "started"
        assert match.title == "Quick Match QUICK001"
        assert match.venue.name == "TBD"
        assert match.venue.address == "To be determined"
        assert match.date_time == NOW
        assert match.actual_start_time == NOW
        assert match.duration == 90
        assert match.capacity == 100
        assert match.total_cost == 0
        assert match.cost_per_player == 0

    def test_quick_match_keeps_supplied_fields(self):
        match = make_quick(title="Lunch game", capacity=12, total_cost=1200)
        assert match.title == "Lunch game"
        assert match.cost_per_player == 100

    @pytest.mark.parametrize("total_cost,capacity,expected", [(0, 10, 0), (999, 22, 46), (1200, 6, 200)])
    def test_compute_cost_per_player(self, total_cost, capacity, expected):
        assert match_engine.compute_cost_per_player(total_cost, capacity) == expected


# ============================================================================
# State machine
# ============================================================================


class TestLifecycle:
    def test_publish_draft(self):
        match = make_regular(status="draft")
        match_engine.publish_match(match, ORGANIZER)
        assert match.status == "open"

    def test_publish_requires_draft(self):
        match = make_regular()
        with pytest.raises(BusinessRuleError) as exc:
            match_engine.publish_match(match, ORGANIZER)
        assert exc.value.code == "invalid_transition"

    def test_start_and_complete_regular(self):
        match = make_regular()
        match_engine.start_match(match, ORGANIZER)
        assert match.status == "started"
        match_engine.complete_match(match, ORGANIZER, NOW)
        assert match.status == "completed"

    def test_start_completed_match_fails_and_keeps_status(self):
        match = make_regular()
        match_engine.start_match(match, ORGANIZER)
        match_engine.complete_match(match, ORGANIZER, NOW)

        with pytest.raises(BusinessRuleError):
            match_engine.start_match(match, ORGANIZER)
        assert match.status == "completed"

    def test_only_organizer_or_admin_can_start(self):
        match = make_regular()
        with pytest.raises(AuthorizationError) as exc:
            match_engine.start_match(match, STRANGER)
        assert exc.value.code == "not_organizer"
        assert match.status == "open"

        match_engine.start_match(match, ADMIN)
        assert match.status == "started"

    def test_cancel_open_and_started(self):
        match = make_regular()
        match_engine.cancel_match(match, ORGANIZER)
        assert match.status == "cancelled"

        started = make_regular()
        match_engine.start_match(started, ORGANIZER)
        match_engine.cancel_match(started, ORGANIZER)
        assert started.status == "cancelled"

    def test_cannot_cancel_completed(self):
        match = make_regular()
        match_engine.start_match(match, ORGANIZER)
        match_engine.complete_match(match, ORGANIZER, NOW)
        with pytest.raises(BusinessRuleError):
            match_engine.cancel_match(match, ORGANIZER)

    def test_complete_details_only_for_pending_quick_match(self):
        match = make_regular()
        match_engine.start_match(match, ORGANIZER)
        match_engine.complete_match(match, ORGANIZER, NOW)
        with pytest.raises(BusinessRuleError):
            match_engine.complete_match_details(match, ORGANIZER, details(), NOW)


# ============================================================================
# Roster
# ============================================================================


class TestRoster:
    def test_join_sets_amount_to_pay(self):
        match = make_regular()
        player = match_engine.join_match(match, 2, NOW)
        assert player.status == "joined"
        assert player.payment_status == "pending"
        assert player.amount_to_pay == 100
        assert match_engine.available_spots(match) == 9

    def test_join_twice_fails(self):
        match = make_regular()
        match_engine.join_match(match, 2, NOW)
        with pytest.raises(BusinessRuleError) as exc:
            match_engine.join_match(match, 2, NOW)
        assert exc.value.code == "already_joined"

    def test_join_requires_open_regular_match(self):
        match = make_regular(status="draft")
        with pytest.raises(BusinessRuleError) as exc:
            match_engine.join_match(match, 2, NOW)
        assert exc.value.code == "match_not_open"

        started = make_regular()
        match_engine.start_match(started, ORGANIZER)
        with pytest.raises(BusinessRuleError):
            match_engine.join_match(started, 2, NOW)

    def test_started_quick_match_accepts_players(self):
        match = make_quick()
        match_engine.join_match(match, 2, NOW)
        assert len(match_engine.joined_players(match)) == 1

    def test_join_leave_rejoin_keeps_single_record(self):
        match = make_regular()
        match_engine.join_match(match, 2, NOW)
        match_engine.leave_match(match, 2, NOW)
        match_engine.join_match(match, 2, NOW)

        assert list(match.players) == [2]
        assert match.players[2].status == "joined"

    def test_leave_unpaid_deletes_record(self):
        match = make_regular()
        match_engine.join_match(match, 2, NOW)
        retained = match_engine.leave_match(match, 2, NOW)
        assert retained is False
        assert 2 not in match.players

    def test_leave_unknown_player_fails(self):
        match = make_regular()
        with pytest.raises(BusinessRuleError) as exc:
            match_engine.leave_match(match, 2, NOW)
        assert exc.value.code == "player_not_found"

    def test_leave_after_paid_retains_history(self):
        match = make_regular()
        match_engine.join_match(match, 2, NOW)
        mark_paid(match, 2)

        retained = match_engine.leave_match(match, 2, NOW + timedelta(minutes=5))

        assert retained is True
        player = match.players[2]
        assert player.status == "removed"
        assert player.left_early is True
        assert player.left_at == NOW + timedelta(minutes=5)
        assert player.paid_amount == 100
        assert match_engine.available_spots(match) == 10

    def test_removed_player_cannot_rejoin(self):
        match = make_regular()
        match_engine.join_match(match, 2, NOW)
        mark_paid(match, 2)
        match_engine.remove_player(match, ORGANIZER, 2, NOW)

        with pytest.raises(BusinessRuleError) as exc:
            match_engine.join_match(match, 2, NOW)
        assert exc.value.code == "player_removed"

    def test_remove_player_requires_organizer(self):
        match = make_regular()
        match_engine.join_match(match, 2, NOW)
        with pytest.raises(AuthorizationError):
            match_engine.remove_player(match, STRANGER, 2, NOW)
        assert match_engine.remove_player(match, ORGANIZER, 2, NOW) is False

    def test_cannot_leave_completed_match(self):
        match = make_regular()
        match_engine.join_match(match, 2, NOW)
        match_engine.start_match(match, ORGANIZER)
        match_engine.complete_match(match, ORGANIZER, NOW)
        with pytest.raises(BusinessRuleError) as exc:
            match_engine.leave_match(match, 2, NOW)
        assert exc.value.code == "match_closed"

    def test_joined_count_never_exceeds_capacity(self):
        match = make_regular(capacity=6, total_cost=600)
        for user_id in range(2, 20):
            try:
                match_engine.join_match(match, user_id, NOW)
            except BusinessRuleError:
                pass
            assert len(match_engine.joined_players(match)) <= match.capacity
        assert match_engine.available_spots(match) == 0


# ============================================================================
# Editing
# ============================================================================


class TestUpdateMatchDetails:
    def test_total_cost_change_reprices_pending_players(self):
        match = make_regular()
        join_many(match, [2, 3])
        mark_paid(match, 2)

        changed = match_engine.update_match_details(match, ORGANIZER, {"total_cost": 2000})

        assert changed == ["total_cost"]
        assert match.cost_per_player == 200
        assert match.players[3].amount_to_pay == 200
        # Paid player's bookkeeping is left alone
        assert match.players[2].amount_to_pay == 100
        assert match.players[2].paid_amount == 100

    def test_capacity_change_reprices(self):
        match = make_regular()
        match_engine.update_match_details(match, ORGANIZER, {"capacity": 20})
        assert match.cost_per_player == match_engine.compute_cost_per_player(1000, 20) == 50

    def test_capacity_below_joined_count_fails(self):
        match = make_regular(capacity=10)
        join_many(match, range(2, 10))
        with pytest.raises(ValidationError) as exc:
            match_engine.update_match_details(match, ORGANIZER, {"capacity": 7})
        assert exc.value.code == "capacity_below_roster"
        assert match.capacity == 10

    @pytest.mark.parametrize("capacity", [3, 23, 1000])
    def test_regular_capacity_must_stay_in_range(self, capacity):
        match = make_regular()
        with pytest.raises(ValidationError) as exc:
            match_engine.update_match_details(match, ORGANIZER, {"capacity": capacity})
        assert exc.value.code == "capacity_out_of_range"
        assert match.capacity == 10

    def test_quick_match_capacity_can_exceed_regular_bounds(self):
        match = make_quick()
        changed = match_engine.update_match_details(match, ORGANIZER, {"capacity": 30})
        assert changed == ["capacity"]
        assert match.capacity == 30

    def test_quick_match_capacity_upper_bound(self):
        match = make_quick()
        with pytest.raises(ValidationError) as exc:
            match_engine.update_match_details(match, ORGANIZER, {"capacity": 1001})
        assert exc.value.code == "capacity_out_of_range"

    def test_venue_and_settings_change(self):
        match = make_regular()
        changed = match_engine.update_match_details(
            match,
            ORGANIZER,
            {
                "venue": {"name": "New Turf", "address": "Ring Road"},
                "payment_settings": {"allow_cash_payment": False},
                "title": "Sunday Football",
            },
        )
        assert changed == ["venue", "payment_settings"]
        assert match.venue.name == "New Turf"

    def test_completed_match_is_not_editable(self):
        match = make_regular()
        match_engine.start_match(match, ORGANIZER)
        match_engine.complete_match(match, ORGANIZER, NOW)
        with pytest.raises(BusinessRuleError) as exc:
            match_engine.update_match_details(match, ORGANIZER, {"title": "Renamed"})
        assert exc.value.code == "match_not_editable"


# ============================================================================
# Payment bookkeeping
# ============================================================================


class TestPaymentStatus:
    def test_paid_stamps_details(self):
        match = make_regular()
        match_engine.join_match(match, 2, NOW)

        assert mark_paid(match, 2, payment_id="pay_abc") is True

        player = match.players[2]
        assert player.payment_status == "paid"
        assert player.paid_amount == 100
        assert player.payment_method == "upi"
        assert player.payment_id == "pay_abc"
        assert player.paid_at == NOW
        assert match_engine.total_collected(match) == 100

    def test_repeated_paid_with_same_reference_is_noop(self):
        match = make_regular()
        match_engine.join_match(match, 2, NOW)
        mark_paid(match, 2, payment_id="pay_abc")

        assert mark_paid(match, 2, payment_id="pay_abc", amount=500) is False
        assert match.players[2].paid_amount == 100
        assert match_engine.total_collected(match) == 100
        assert len(match_engine.paid_players(match)) == 1

    def test_paid_with_different_reference_fails(self):
        match = make_regular()
        match_engine.join_match(match, 2, NOW)
        mark_paid(match, 2, payment_id="pay_abc")
        with pytest.raises(BusinessRuleError) as exc:
            mark_paid(match, 2, payment_id="pay_other")
        assert exc.value.code == "already_paid"

    def test_late_failure_does_not_downgrade_paid(self):
        match = make_regular()
        match_engine.join_match(match, 2, NOW)
        mark_paid(match, 2)
        assert match_engine.update_payment_status(match, 2, "failed", NOW) is False
        assert match.players[2].payment_status == "paid"

    def test_refunded_after_paid(self):
        match = make_regular()
        match_engine.join_match(match, 2, NOW)
        mark_paid(match, 2)
        assert match_engine.update_payment_status(match, 2, "refunded", NOW) is True
        assert match.players[2].payment_status == "refunded"

    def test_unknown_player(self):
        match = make_regular()
        with pytest.raises(BusinessRuleError) as exc:
            mark_paid(match, 42)
        assert exc.value.code == "player_not_found"

    def test_invalid_status(self):
        match = make_regular()
        match_engine.join_match(match, 2, NOW)
        with pytest.raises(ValidationError):
            match_engine.update_payment_status(match, 2, "settled", NOW)


# ============================================================================
# Derived fields
# ============================================================================


class TestDerivedFields:
    def test_upcoming_and_live(self):
        match = make_regular()
        start = match.date_time
        assert match_engine.is_upcoming(match, start - timedelta(minutes=1))
        assert not match_engine.is_live(match, start - timedelta(minutes=1))
        assert match_engine.is_live(match, start + timedelta(minutes=45))
        assert not match_engine.is_live(match, start + timedelta(minutes=91))

    def test_share_link(self):
        match = make_regular()
        assert match_engine.share_link(match).endswith("/match/ABCD1234")


# ============================================================================
# Example scenarios
# ============================================================================


class TestScenarios:
    def test_regular_match_fills_up(self):
        match = make_regular(capacity=10, total_cost=1000)
        assert match.cost_per_player == 100

        join_many(match, range(2, 12))
        assert match_engine.available_spots(match) == 0

        with pytest.raises(BusinessRuleError) as exc:
            match_engine.join_match(match, 12, NOW)
        assert exc.value.message == "Match is full"
        assert exc.value.status_code == 409

    def test_quick_match_complete_details(self):
        match = make_quick()
        join_many(match, [2, 3, 4, 5])

        match_engine.complete_match(match, ORGANIZER, NOW + timedelta(minutes=75))
        assert match.status == "pending-details"
        assert match.actual_duration == 75
        assert match.actual_end_time == NOW + timedelta(minutes=75)

        cost = match_engine.complete_match_details(match, ORGANIZER, details(total_cost=500), NOW)

        assert cost == 125
        assert match.capacity == 4
        assert match.cost_per_player == 125
        assert match.status == "completed"
        assert match.details_completed_at == NOW
        for player in match_engine.joined_players(match):
            assert player.payment_status == "pending"
            assert player.amount_to_pay == 125

    def test_complete_details_resets_provisional_payments(self):
        match = make_quick(total_cost=400, capacity=8)
        join_many(match, [2, 3])
        mark_paid(match, 2)
        match_engine.complete_match(match, ORGANIZER, NOW)

        match_engine.complete_match_details(match, ORGANIZER, details(total_cost=300), NOW)

        assert match.players[2].payment_status == "pending"
        assert match.players[2].amount_to_pay == 150
        assert match.players[2].paid_amount == 50

    def test_complete_details_rejects_fewer_players_than_joined(self):
        match = make_quick()
        join_many(match, [2, 3, 4])
        match_engine.complete_match(match, ORGANIZER, NOW)
        with pytest.raises(ValidationError):
            match_engine.complete_match_details(match, ORGANIZER, details(actual_players=2), NOW)
        assert match.status == "pending-details"

    def test_complete_details_with_empty_roster_fails(self):
        match = make_quick()
        match_engine.complete_match(match, ORGANIZER, NOW)
        with pytest.raises(BusinessRuleError) as exc:
            match_engine.complete_match_details(match, ORGANIZER, details(), NOW)
        assert exc.value.code == "no_players"

    def test_paid_player_leaves(self):
        match = make_regular()
        match_engine.join_match(match, 2, NOW)
        mark_paid(match, 2, amount=100)
        match_engine.leave_match(match, 2, NOW)

        player = match.players[2]
        assert (player.status, player.left_early, player.paid_amount) == ("removed", True, 100)

    def test_join_after_cancel_fails(self):
        match = make_regular()
        match_engine.start_match(match, ORGANIZER)
        match_engine.cancel_match(match, ORGANIZER)
        assert match.status == "cancelled"

        with pytest.raises(BusinessRuleError) as exc:
            match_engine.join_match(match, 2, NOW)
        assert exc.value.code == "match_not_open"
