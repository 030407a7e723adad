"""
test_processor.py — End-to-end tests for one "deliver this alert" job.

Covers:
    • Scenario: broadcast to everyone, some users without device tokens
    • Scenario: custom audience with one dead token (partial delivery)
    • Push counters always satisfy sent + failed == total_targets
    • Store outage, missing alert and late redelivery of a terminal alert
    • Crash recovery: an IN_PROGRESS alert is processed again
    • Delivery ledger: redelivery does not re-notify users

Run with:
    pytest tests/test_processor.py -v
"""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

import pytest

from backend.app.alerts.channels.push import REGISTRATION_TOKEN_NOT_REGISTERED
from backend.app.alerts.container import PipelineContainer, build_container
from backend.app.alerts.models import (
    Alert,
    AlertBlock,
    AlertStatus,
    Audience,
    DeliveryChannel,
    DeliveryStats,
    PushOutcome,
    UserTarget,
)
from backend.app.alerts.store import (
    InMemoryAlertStore,
    InMemoryDeliveryLedger,
    InMemoryNotificationStore,
    InMemoryUserStore,
)
from backend.app.core.config import Settings
from backend.app.core.errors import NotFoundError, StoreUnavailableError


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

class RecordingPushProvider:
    def __init__(self, errors: Optional[Dict[str, str]] = None):
        self.errors = errors or {}
        self.tokens: List[str] = []

    async def send_multicast(self, tokens, title, body, data):
        self.tokens.extend(tokens)
        return [
            PushOutcome(success=False, error_code=self.errors[t]) if t in self.errors
            else PushOutcome(success=True)
            for t in tokens
        ]

    async def close(self):
        return None


class BrokenUserStore(InMemoryUserStore):
    async def find_targets(self, *, role=None, ids=None):
        raise ConnectionError("user store unreachable")


def _make_pipeline(
    users: List[UserTarget],
    *,
    errors: Optional[Dict[str, str]] = None,
    dedupe: bool = False,
    user_store: Optional[InMemoryUserStore] = None,
) -> PipelineContainer:
    settings = Settings(
        STORE_BACKEND="memory",
        ALERT_SYNC_PROCESSING=True,
        INAPP_BATCH_DELAY_MS=0,
        DELIVERY_DEDUPE_ENABLED=dedupe,
    )
    return build_container(
        settings,
        alerts=InMemoryAlertStore(),
        users=user_store or InMemoryUserStore(users),
        notifications=InMemoryNotificationStore(),
        push=RecordingPushProvider(errors),
    )


def _make_alert(audience=Audience.ALL, recipients=(), status=AlertStatus.PENDING) -> Alert:
    return Alert(
        created_by="admin-1",
        audience=audience,
        recipients=list(recipients),
        blocks=[AlertBlock(title="Service update", body="Lines 3 and 4 delayed")],
        status=status,
    )


def _process(container: PipelineContainer, alert: Alert) -> Alert:
    async def _run():
        await container.alerts.create(alert)
        return await container.processor.process(alert.id, job_id="job-1")
    return asyncio.run(_run())


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Delivery Scenarios
# ═══════════════════════════════════════════════════════════════════════════

class TestDeliveryScenarios:
    def test_broadcast_to_all(self):
        users = [
            UserTarget(id="u1", device_token="t1"),
            UserTarget(id="u2", device_token="t2"),
            UserTarget(id="u3"),
        ]
        container = _make_pipeline(users)
        alert = _process(container, _make_alert())

        assert alert.status is AlertStatus.SENT
        assert alert.stats.total_targets == 2
        assert alert.stats.sent == 2
        assert alert.stats.failed == 0
        assert alert.stats.invalid_tokens == 0
        assert alert.stats.in_app_created == 3
        assert sorted(d.user_id for d in container.notifications.records) == ["u1", "u2", "u3"]
        assert sorted(container.push.tokens) == ["t1", "t2"]

    def test_custom_audience_with_dead_token(self):
        users = [
            UserTarget(id="A", device_token="tA"),
            UserTarget(id="B", device_token="tB"),
            UserTarget(id="C", device_token="tC"),
        ]
        container = _make_pipeline(users, errors={"tA": REGISTRATION_TOKEN_NOT_REGISTERED})
        alert = _process(container, _make_alert(Audience.CUSTOM, ["A", "B"]))

        assert alert.status is AlertStatus.PARTIALLY_SENT
        assert (alert.stats.total_targets, alert.stats.sent,
                alert.stats.failed, alert.stats.invalid_tokens) == (2, 1, 1, 1)
        assert container.users.get("A").device_token is None
        assert container.users.get("B").device_token == "tB"
        assert sorted(d.user_id for d in container.notifications.records) == ["A", "B"]

    def test_every_push_fails(self):
        users = [UserTarget(id="u1", device_token="t1")]
        container = _make_pipeline(users, errors={"t1": "messaging/unavailable"})
        alert = _process(container, _make_alert())
        assert alert.status is AlertStatus.FAILED
        assert alert.stats.in_app_created == 1

    def test_no_push_targets_is_sent(self):
        container = _make_pipeline([UserTarget(id="u1"), UserTarget(id="u2")])
        alert = _process(container, _make_alert())
        assert alert.status is AlertStatus.SENT
        assert alert.stats.total_targets == 0
        assert alert.stats.in_app_created == 2

    def test_notifications_carry_module_and_alert_id(self):
        users = [UserTarget(id="d1", roles=frozenset({"driver"}))]
        container = _make_pipeline(users)
        alert = _process(container, _make_alert(Audience.DRIVERS))
        draft = container.notifications.records[0]
        assert draft.module == "driver_management"
        assert draft.metadata["alert_id"] == alert.id
        assert draft.title == "Service update"

    @pytest.mark.parametrize("dead", [set(), {"t0"}, {"t0", "t3"}, {"t0", "t1", "t2", "t3", "t4"}])
    def test_counters_are_consistent(self, dead):
        users = [UserTarget(id=f"u{i}", device_token=f"t{i}") for i in range(5)]
        errors = {t: REGISTRATION_TOKEN_NOT_REGISTERED for t in dead}
        alert = _process(_make_pipeline(users, errors=errors), _make_alert())
        assert alert.stats.is_consistent
        assert alert.stats.total_targets == 5
        assert alert.stats.invalid_tokens == len(dead)


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Failure Handling
# ═══════════════════════════════════════════════════════════════════════════

class TestFailureHandling:
    def test_store_outage_raises(self):
        container = _make_pipeline([])
        alert = _make_alert()

        async def _run():
            await container.alerts.create(alert)
            container.alerts.available = False
            await container.processor.process(alert.id)

        with pytest.raises(StoreUnavailableError):
            asyncio.run(_run())

    def test_missing_alert_raises(self):
        container = _make_pipeline([])
        with pytest.raises(NotFoundError):
            asyncio.run(container.processor.process("does-not-exist"))

    def test_terminal_alert_is_left_alone(self):
        users = [UserTarget(id="u1", device_token="t1")]
        container = _make_pipeline(users)
        done = _make_alert(status=AlertStatus.SENT)
        done.stats = DeliveryStats(total_targets=1, sent=1)
        alert = _process(container, done)
        assert alert.status is AlertStatus.SENT
        assert container.push.tokens == []
        assert container.notifications.records == []

    def test_mid_job_failure_leaves_in_progress(self):
        container = _make_pipeline([], user_store=BrokenUserStore())
        alert = _make_alert()

        async def _run():
            await container.alerts.create(alert)
            with pytest.raises(ConnectionError):
                await container.processor.process(alert.id)
            return await container.alerts.get(alert.id)

        assert asyncio.run(_run()).status is AlertStatus.IN_PROGRESS

    def test_in_progress_alert_is_reprocessed(self):
        users = [UserTarget(id="u1", device_token="t1")]
        container = _make_pipeline(users)
        alert = _process(container, _make_alert(status=AlertStatus.IN_PROGRESS))
        assert alert.status is AlertStatus.SENT
        assert container.push.tokens == ["t1"]


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Redelivery With Ledger
# ═══════════════════════════════════════════════════════════════════════════

class TestDeliveryLedger:
    def test_redelivery_skips_recorded_users(self):
        users = [UserTarget(id=f"u{i}", device_token=f"t{i}") for i in range(3)]
        container = _make_pipeline(users, dedupe=True)
        assert isinstance(container.ledger, InMemoryDeliveryLedger)
        alert = _make_alert(status=AlertStatus.IN_PROGRESS)

        async def _run():
            await container.ledger.record(alert.id, DeliveryChannel.PUSH, ["u0"])
            await container.ledger.record(alert.id, DeliveryChannel.IN_APP, ["u0", "u1"])
            await container.alerts.create(alert)
            return await container.processor.process(alert.id, attempt=2)

        result = asyncio.run(_run())
        assert sorted(container.push.tokens) == ["t1", "t2"]
        assert [d.user_id for d in container.notifications.records] == ["u2"]
        assert result.status is AlertStatus.SENT
        assert result.stats.total_targets == 3
        assert result.stats.sent == 3
        assert result.stats.in_app_created == 3

    def test_ledger_disabled_by_default(self):
        assert _make_pipeline([]).ledger is None
