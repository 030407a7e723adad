"""
test_push_dispatch.py — Tests for the push channel and batch dispatcher.

Covers:
    • Invalid-token error taxonomy and data payload stringification
    • firebase-admin exception mapping and FCM message construction
    • Simulated provider
    • Batching, per-outcome classification and field-wise stat sums
    • Whole-batch provider failure (every recipient failed, no evictions)
    • Token eviction, including eviction failures
    • Ledger-based skipping of already delivered recipients

Run with:
    pytest tests/test_push_dispatch.py -v
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Dict, List, Optional, Sequence

import pytest
from firebase_admin import exceptions, messaging

from backend.app.alerts.channels.push import (
    INVALID_ARGUMENT,
    INVALID_PAYLOAD,
    INVALID_REGISTRATION_TOKEN,
    REGISTRATION_TOKEN_NOT_REGISTERED,
    FcmPushProvider,
    SimulatedPushProvider,
    fcm_error_code,
    is_invalid_token,
    stringify_data,
)
from backend.app.alerts.dispatcher import BatchPushDispatcher, chunked, classify_outcomes
from backend.app.alerts.models import (
    AlertBlock,
    DeliveryChannel,
    DeliveryStats,
    PushOutcome,
    UserTarget,
)
from backend.app.alerts.store import InMemoryDeliveryLedger, InMemoryUserStore
from backend.app.core.errors import ExternalServiceError


# ═══════════════════════════════════════════════════════════════════════════
# Test Doubles
# ═══════════════════════════════════════════════════════════════════════════

class ScriptedPushProvider:
    """Per-token scripted outcomes; tokens listed in ``errors`` fail with that code."""

    def __init__(
        self,
        errors: Optional[Dict[str, str]] = None,
        fail_calls: Sequence[int] = (),
    ):
        self.errors = errors or {}
        self.fail_calls = set(fail_calls)
        self.calls: List[dict] = []

    async def send_multicast(self, tokens, title, body, data):
        self.calls.append({"tokens": list(tokens), "title": title, "body": body, "data": data})
        if len(self.calls) in self.fail_calls:
            raise ConnectionError("provider unreachable")
        return [
            PushOutcome(success=False, error_code=self.errors[t]) if t in self.errors
            else PushOutcome(success=True, message_id=f"m-{t}")
            for t in tokens
        ]

    async def close(self):
        return None


class BrokenEvictionUserStore(InMemoryUserStore):
    async def clear_device_token(self, user_id, token=None):
        raise RuntimeError("user store write failed")


def _make_targets(n: int, prefix: str = "u") -> List[UserTarget]:
    return [
        UserTarget(id=f"{prefix}{i}", device_token=f"tok-{prefix}{i}", roles=frozenset({"driver"}))
        for i in range(n)
    ]


BLOCK = AlertBlock(title="Heavy rain", body="Expect delays", data={"zone": 4, "urgent": True})


def _dispatch(provider, targets, *, batch_size=500, users=None, ledger=None, alert_id="a1"):
    users = users if users is not None else InMemoryUserStore(targets)
    dispatcher = BatchPushDispatcher(provider, users, batch_size=batch_size, ledger=ledger)
    return asyncio.run(dispatcher.dispatch(alert_id, targets, BLOCK)), users


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Push Channel
# ═══════════════════════════════════════════════════════════════════════════

class TestInvalidTokenTaxonomy:
    @pytest.mark.parametrize("code", [
        REGISTRATION_TOKEN_NOT_REGISTERED,
        INVALID_REGISTRATION_TOKEN,
        INVALID_ARGUMENT,
    ])
    def test_dead_token_codes(self, code):
        assert is_invalid_token(code)

    @pytest.mark.parametrize("code", [
        None,
        "messaging/internal-error",
        "messaging/quota-exceeded",
        "messaging/unavailable",
        "messaging/invalid-payload",
    ])
    def test_transient_codes(self, code):
        assert not is_invalid_token(code)


class TestStringifyData:
    def test_values_become_strings(self):
        data = stringify_data({"zone": 4, "urgent": True, "tags": ["a"], "skip": None, "s": "x"})
        assert data == {"zone": "4", "urgent": "True", "tags": '["a"]', "s": "x"}

    def test_empty(self):
        assert stringify_data(None) == {}


class TestFcmErrorMapping:
    def test_unregistered_token(self):
        exc = messaging.UnregisteredError("Requested entity was not found.")
        assert fcm_error_code(exc) == REGISTRATION_TOKEN_NOT_REGISTERED
        assert is_invalid_token(fcm_error_code(exc))

    def test_invalid_argument_naming_the_token_is_dead(self):
        exc = exceptions.InvalidArgumentError("The registration token is not a valid FCM token")
        assert fcm_error_code(exc) == INVALID_ARGUMENT
        assert is_invalid_token(fcm_error_code(exc))

    def test_invalid_argument_about_the_payload_is_not(self):
        exc = exceptions.InvalidArgumentError("Request contains an invalid argument: data too large")
        assert fcm_error_code(exc) == INVALID_PAYLOAD
        assert not is_invalid_token(fcm_error_code(exc))

    def test_sender_mismatch(self):
        exc = messaging.SenderIdMismatchError("SenderId mismatch")
        assert fcm_error_code(exc) == "messaging/mismatched-credential"
        assert not is_invalid_token(fcm_error_code(exc))

    @pytest.mark.parametrize("exc, code", [
        (exceptions.UnavailableError("backend unavailable"), "messaging/unavailable"),
        (messaging.QuotaExceededError("quota"), "messaging/resource-exhausted"),
        (exceptions.FirebaseError("SOME_NEW_CODE", "unexpected"), "messaging/some-new-code"),
    ])
    def test_other_codes_pass_through_as_transient(self, exc, code):
        assert fcm_error_code(exc) == code
        assert not is_invalid_token(code)

    @pytest.mark.parametrize("exc", [None, ValueError("no code attribute")])
    def test_unknown_errors(self, exc):
        assert fcm_error_code(exc) == "messaging/unknown-error"


class TestFcmProvider:
    def _provider(self, send):
        # skip __init__: no credentials or firebase app in tests
        provider = FcmPushProvider.__new__(FcmPushProvider)
        provider._app = None
        provider._send = send
        return provider

    def test_message_carries_delivery_hints(self):
        message = FcmPushProvider._build_message(
            ["t1", "t2"], "Heavy rain", "Expect delays", {"zone": "4"},
        )
        assert message.tokens == ["t1", "t2"]
        assert message.notification.title == "Heavy rain"
        assert message.notification.body == "Expect delays"
        assert message.data == {"zone": "4"}
        assert message.android.priority == "high"
        assert message.android.notification.sound == "default"
        assert message.apns.headers == {"apns-priority": "10"}
        assert message.apns.payload.aps.sound == "default"
        assert message.apns.payload.aps.badge == 1

    def test_responses_map_to_outcomes(self):
        response = SimpleNamespace(
            responses=[
                SimpleNamespace(success=True, message_id="m1", exception=None),
                SimpleNamespace(
                    success=False, message_id=None,
                    exception=messaging.UnregisteredError("Requested entity was not found."),
                ),
            ],
            success_count=1,
            failure_count=1,
        )
        sent = []

        def send(message):
            sent.append(message)
            return response

        outcomes = asyncio.run(self._provider(send).send_multicast(["t1", "t2"], "T", "B", {}))
        assert outcomes == [
            PushOutcome(success=True, message_id="m1"),
            PushOutcome(success=False, error_code=REGISTRATION_TOKEN_NOT_REGISTERED),
        ]
        assert sent[0].tokens == ["t1", "t2"]

    def test_whole_request_failure(self):
        def send(message):
            raise exceptions.UnavailableError("FCM down")

        with pytest.raises(ExternalServiceError):
            asyncio.run(self._provider(send).send_multicast(["t1"], "T", "B", {}))

    def test_no_tokens_no_request(self):
        def send(message):
            raise AssertionError("should not be called")

        assert asyncio.run(self._provider(send).send_multicast([], "T", "B", {})) == []


class TestSimulatedProvider:
    def test_one_success_per_token(self):
        provider = SimulatedPushProvider()
        outcomes = asyncio.run(provider.send_multicast(["a", "b"], "t", "b", {}))
        assert [o.success for o in outcomes] == [True, True]
        assert provider.sent[0]["tokens"] == ["a", "b"]


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Classification
# ═══════════════════════════════════════════════════════════════════════════

class TestClassifyOutcomes:
    def test_counts(self):
        targets = _make_targets(4)
        outcomes = [
            PushOutcome(success=True),
            PushOutcome(success=False, error_code=REGISTRATION_TOKEN_NOT_REGISTERED),
            PushOutcome(success=False, error_code="messaging/internal-error"),
            PushOutcome(success=True),
        ]
        stats, delivered, dead = classify_outcomes(targets, outcomes)
        assert stats == DeliveryStats(total_targets=4, sent=2, failed=2, invalid_tokens=1)
        assert [u.id for u in delivered] == ["u0", "u3"]
        assert [u.id for u in dead] == ["u1"]

    def test_missing_outcomes_count_as_failed(self):
        stats, _, dead = classify_outcomes(_make_targets(3), [PushOutcome(success=True)])
        assert stats == DeliveryStats(total_targets=3, sent=1, failed=2)
        assert dead == []

    def test_chunked(self):
        assert [len(c) for c in chunked(list(range(7)), 3)] == [3, 3, 1]
        assert list(chunked([], 3)) == []


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Batch Dispatcher
# ═══════════════════════════════════════════════════════════════════════════

class TestBatchPushDispatcher:
    def test_all_success(self):
        provider = ScriptedPushProvider()
        stats, _ = _dispatch(provider, _make_targets(3))
        assert stats == DeliveryStats(total_targets=3, sent=3)
        assert len(provider.calls) == 1

    def test_payload_carries_first_block_and_alert_id(self):
        provider = ScriptedPushProvider()
        _dispatch(provider, _make_targets(1), alert_id="alert-42")
        call = provider.calls[0]
        assert call["title"] == "Heavy rain"
        assert call["body"] == "Expect delays"
        assert call["data"]["alert_id"] == "alert-42"
        assert call["data"]["zone"] == "4"
        assert all(isinstance(v, str) for v in call["data"].values())

    def test_batches_respect_batch_size(self):
        provider = ScriptedPushProvider()
        stats, _ = _dispatch(provider, _make_targets(1201), batch_size=500)
        assert [len(c["tokens"]) for c in provider.calls] == [500, 500, 201]
        assert stats == DeliveryStats(total_targets=1201, sent=1201)

    def test_no_targets_no_calls(self):
        provider = ScriptedPushProvider()
        stats, _ = _dispatch(provider, [])
        assert stats == DeliveryStats()
        assert provider.calls == []

    @pytest.mark.parametrize("batch_size", [1, 2, 3, 7, 500])
    def test_counts_independent_of_batch_size(self, batch_size):
        targets = _make_targets(7)
        errors = {
            "tok-u1": REGISTRATION_TOKEN_NOT_REGISTERED,
            "tok-u4": "messaging/unavailable",
            "tok-u6": INVALID_REGISTRATION_TOKEN,
        }
        stats, _ = _dispatch(ScriptedPushProvider(errors), targets, batch_size=batch_size)
        assert stats == DeliveryStats(total_targets=7, sent=4, failed=3, invalid_tokens=2)

    def test_whole_batch_failure_counts_every_recipient(self):
        targets = _make_targets(500)
        errors = {"tok-u0": REGISTRATION_TOKEN_NOT_REGISTERED}
        stats, users = _dispatch(ScriptedPushProvider(errors, fail_calls=[1]), targets)
        assert stats == DeliveryStats(total_targets=500, failed=500, invalid_tokens=0)
        assert users.cleared == []

    def test_failed_batch_does_not_stop_later_batches(self):
        provider = ScriptedPushProvider(fail_calls=[1])
        stats, _ = _dispatch(provider, _make_targets(5), batch_size=2)
        assert len(provider.calls) == 3
        assert stats == DeliveryStats(total_targets=5, sent=3, failed=2)

    def test_dead_tokens_are_evicted(self):
        targets = _make_targets(3)
        errors = {"tok-u0": REGISTRATION_TOKEN_NOT_REGISTERED, "tok-u2": "messaging/internal-error"}
        stats, users = _dispatch(ScriptedPushProvider(errors), targets)
        assert stats.invalid_tokens == 1
        assert users.cleared == ["u0"]
        assert users.get("u0").device_token is None
        assert users.get("u2").device_token == "tok-u2"

    def test_eviction_failure_does_not_fail_dispatch(self):
        targets = _make_targets(2)
        errors = {"tok-u0": INVALID_ARGUMENT, "tok-u1": INVALID_ARGUMENT}
        stats, _ = _dispatch(
            ScriptedPushProvider(errors), targets, users=BrokenEvictionUserStore(targets),
        )
        assert stats == DeliveryStats(total_targets=2, failed=2, invalid_tokens=2)

    def test_eviction_skips_replaced_token(self):
        targets = _make_targets(1)
        users = InMemoryUserStore([UserTarget(id="u0", device_token="fresh-token")])
        errors = {"tok-u0": REGISTRATION_TOKEN_NOT_REGISTERED}
        _dispatch(ScriptedPushProvider(errors), targets, users=users)
        assert users.get("u0").device_token == "fresh-token"

    def test_ledger_skips_already_delivered(self):
        targets = _make_targets(4)
        ledger = InMemoryDeliveryLedger()
        asyncio.run(ledger.record("a1", DeliveryChannel.PUSH, ["u0", "u1"]))
        provider = ScriptedPushProvider()
        stats, _ = _dispatch(provider, targets, ledger=ledger)
        assert provider.calls[0]["tokens"] == ["tok-u2", "tok-u3"]
        assert stats == DeliveryStats(total_targets=4, sent=4)
        assert asyncio.run(ledger.delivered("a1", DeliveryChannel.PUSH)) == {"u0", "u1", "u2", "u3"}

    def test_ledger_does_not_record_failures(self):
        targets = _make_targets(2)
        ledger = InMemoryDeliveryLedger()
        errors = {"tok-u1": "messaging/unavailable"}
        _dispatch(ScriptedPushProvider(errors), targets, ledger=ledger)
        assert asyncio.run(ledger.delivered("a1", DeliveryChannel.PUSH)) == {"u0"}

    def test_rejects_bad_batch_size(self):
        with pytest.raises(ValueError):
            BatchPushDispatcher(ScriptedPushProvider(), InMemoryUserStore(), batch_size=0)
