"""
test_models.py — Tests for the alert pipeline data model.

Covers:
    • Status enum and the forward-only transition table
    • DeliveryStats arithmetic and serialisation
    • Final status derivation from push counters
    • Alert / AlertBlock / UserTarget helpers

Run with:
    pytest tests/test_models.py -v
"""

from __future__ import annotations

import pytest

from backend.app.alerts.models import (
    ALLOWED_TRANSITIONS,
    Alert,
    AlertBlock,
    AlertStatus,
    Audience,
    DeliveryStats,
    MODULE_BY_AUDIENCE,
    TERMINAL_STATUSES,
    UserTarget,
    can_transition,
    final_status_for,
)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Status Machine
# ═══════════════════════════════════════════════════════════════════════════

class TestAlertStatus:
    def test_terminal_statuses(self):
        assert TERMINAL_STATUSES == {
            AlertStatus.SENT, AlertStatus.FAILED, AlertStatus.PARTIALLY_SENT,
        }
        assert AlertStatus.SENT.is_terminal
        assert not AlertStatus.PENDING.is_terminal
        assert not AlertStatus.IN_PROGRESS.is_terminal

    def test_every_status_has_transition_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(AlertStatus)

    def test_forward_moves_allowed(self):
        assert can_transition(AlertStatus.PENDING, AlertStatus.IN_PROGRESS)
        for status in TERMINAL_STATUSES:
            assert can_transition(AlertStatus.IN_PROGRESS, status)

    def test_redelivery_keeps_in_progress(self):
        assert can_transition(AlertStatus.IN_PROGRESS, AlertStatus.IN_PROGRESS)

    def test_dead_letter_can_fail_pending(self):
        assert can_transition(AlertStatus.PENDING, AlertStatus.FAILED)

    def test_pending_cannot_skip_to_sent(self):
        assert not can_transition(AlertStatus.PENDING, AlertStatus.SENT)
        assert not can_transition(AlertStatus.PENDING, AlertStatus.PARTIALLY_SENT)

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_is_final(self, terminal):
        for target in AlertStatus:
            assert not can_transition(terminal, target)

    def test_no_move_back_to_pending(self):
        for status in AlertStatus:
            assert not can_transition(status, AlertStatus.PENDING)


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Delivery Stats
# ═══════════════════════════════════════════════════════════════════════════

class TestDeliveryStats:
    def test_addition_is_field_wise(self):
        a = DeliveryStats(total_targets=3, sent=2, failed=1, invalid_tokens=1)
        b = DeliveryStats(total_targets=2, sent=0, failed=2, in_app_created=4)
        total = a + b
        assert total == DeliveryStats(
            total_targets=5, sent=2, failed=3, invalid_tokens=1, in_app_created=4,
        )

    def test_addition_rejects_other_types(self):
        with pytest.raises(TypeError):
            DeliveryStats() + 1

    def test_consistency(self):
        assert DeliveryStats(total_targets=3, sent=2, failed=1).is_consistent
        assert not DeliveryStats(total_targets=3, sent=1, failed=1).is_consistent
        assert DeliveryStats().is_consistent

    def test_round_trip_through_dict(self):
        stats = DeliveryStats(total_targets=4, sent=3, failed=1, invalid_tokens=1,
                              in_app_created=5, in_app_errors=1)
        assert DeliveryStats.from_dict(stats.to_dict()) == stats

    def test_from_dict_tolerates_missing_keys(self):
        assert DeliveryStats.from_dict(None) == DeliveryStats()
        assert DeliveryStats.from_dict({"sent": 2}).sent == 2


class TestFinalStatus:
    def test_no_failures_is_sent(self):
        assert final_status_for(DeliveryStats(total_targets=2, sent=2)) is AlertStatus.SENT

    def test_zero_targets_is_sent(self):
        assert final_status_for(DeliveryStats()) is AlertStatus.SENT

    def test_all_failed_is_failed(self):
        stats = DeliveryStats(total_targets=500, failed=500)
        assert final_status_for(stats) is AlertStatus.FAILED

    def test_mixed_is_partially_sent(self):
        stats = DeliveryStats(total_targets=2, sent=1, failed=1, invalid_tokens=1)
        assert final_status_for(stats) is AlertStatus.PARTIALLY_SENT

    def test_in_app_counters_do_not_affect_status(self):
        stats = DeliveryStats(total_targets=1, sent=1, in_app_errors=10)
        assert final_status_for(stats) is AlertStatus.SENT


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Aggregate Helpers
# ═══════════════════════════════════════════════════════════════════════════

class TestAlert:
    def test_defaults(self):
        alert = Alert(created_by="admin-1")
        assert alert.status is AlertStatus.PENDING
        assert alert.audience is Audience.ALL
        assert alert.stats == DeliveryStats()
        assert alert.id

    def test_ids_are_unique(self):
        assert Alert(created_by="a").id != Alert(created_by="a").id

    def test_primary_block_is_first(self):
        alert = Alert(
            created_by="a",
            blocks=[AlertBlock(title="first"), AlertBlock(title="second")],
        )
        assert alert.primary_block.title == "first"

    def test_primary_block_none_when_empty(self):
        assert Alert(created_by="a").primary_block is None

    def test_module_follows_audience(self):
        assert Alert(created_by="a", audience=Audience.DRIVERS).module == "driver_management"
        assert Alert(created_by="a", audience=Audience.PASSENGERS).module == "passenger_management"
        assert set(MODULE_BY_AUDIENCE) == set(Audience)

    def test_to_dict(self):
        alert = Alert(created_by="a", blocks=[AlertBlock(title="t", body="b", data={"k": 1})])
        d = alert.to_dict()
        assert d["status"] == "PENDING"
        assert d["audience"] == "all"
        assert d["blocks"] == [{"title": "t", "body": "b", "data": {"k": 1}}]
        assert d["stats"]["total_targets"] == 0


class TestAlertBlock:
    def test_from_dict_strips_whitespace(self):
        block = AlertBlock.from_dict({"title": "  Hi ", "body": " there\n"})
        assert block.title == "Hi"
        assert block.body == "there"
        assert block.data == {}

    def test_from_dict_handles_none(self):
        block = AlertBlock.from_dict({"title": None, "data": None})
        assert block.title == ""
        assert block.data == {}


class TestUserTarget:
    def test_device_token_presence(self):
        assert UserTarget(id="u1", device_token="tok").has_device_token
        assert not UserTarget(id="u2").has_device_token
        assert not UserTarget(id="u3", device_token="   ").has_device_token
