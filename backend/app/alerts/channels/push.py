"""
push.py — Multicast push notification channel.

Delivery mechanism:
    • One multicast request per batch of device tokens
    • Payload: notification title/body from the alert's first block plus a
      string-only data map
    • Platform hints: high priority on Android, default sound everywhere,
      badge increment on iOS
    • Exactly one PushOutcome per input token, in input order

Providers:
    FcmPushProvider        — Firebase Cloud Messaging via firebase_admin
    SimulatedPushProvider  — logs and reports success (development / tests)

═══════════════════════════════════════════════════════════════════════════
ERROR TAXONOMY
═══════════════════════════════════════════════════════════════════════════

    Error code                                    Token dead?   Action
    ──────────────────────────────────────────    ───────────   ──────────
    messaging/registration-token-not-registered   yes           evict token
    messaging/invalid-registration-token          yes           evict token
    messaging/invalid-argument                    yes           evict token
    anything else (quota, unavailable, auth…)     no            count failed

``messaging/invalid-argument`` is only emitted for argument errors that
name the registration token; other malformed-request errors map to
``messaging/invalid-payload`` and are not eviction signals.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, FrozenSet, List, Optional, Protocol, Sequence

import firebase_admin
from firebase_admin import credentials, exceptions, messaging

from backend.app.alerts.models import PushOutcome
from backend.app.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)

REGISTRATION_TOKEN_NOT_REGISTERED = "messaging/registration-token-not-registered"
INVALID_REGISTRATION_TOKEN = "messaging/invalid-registration-token"
INVALID_ARGUMENT = "messaging/invalid-argument"
INVALID_PAYLOAD = "messaging/invalid-payload"

INVALID_TOKEN_ERRORS: FrozenSet[str] = frozenset({
    REGISTRATION_TOKEN_NOT_REGISTERED,
    INVALID_REGISTRATION_TOKEN,
    INVALID_ARGUMENT,
})


def is_invalid_token(error_code: Optional[str]) -> bool:
    """True when the provider says the token itself is permanently dead."""
    return error_code in INVALID_TOKEN_ERRORS


def stringify_data(data: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """FCM data payloads only carry string values."""
    result: Dict[str, str] = {}
    for key, value in (data or {}).items():
        if value is None:
            continue
        if isinstance(value, str):
            result[str(key)] = value
        elif isinstance(value, (dict, list)):
            result[str(key)] = json.dumps(value, default=str)
        else:
            result[str(key)] = str(value)
    return result


class PushProvider(Protocol):
    async def send_multicast(
        self,
        tokens: Sequence[str],
        title: str,
        body: str,
        data: Dict[str, str],
    ) -> List[PushOutcome]:
        ...

    async def close(self) -> None:
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Firebase Cloud Messaging
# ═══════════════════════════════════════════════════════════════════════════

class FcmPushProvider:
    """
    firebase_admin-backed provider.

    The SDK is synchronous, so each multicast call runs in a worker thread.
    A whole-request failure raises ExternalServiceError; per-token failures
    come back as unsuccessful outcomes.
    """

    def __init__(
        self,
        *,
        credentials_path: Optional[str] = None,
        credentials_json: Optional[str] = None,
        app_name: str = "alert-broadcast",
    ):
        if credentials_json:
            cred = credentials.Certificate(json.loads(credentials_json))
        elif credentials_path:
            cred = credentials.Certificate(credentials_path)
        else:
            cred = credentials.ApplicationDefault()

        try:
            self._app = firebase_admin.get_app(app_name)
        except ValueError:
            self._app = firebase_admin.initialize_app(cred, name=app_name)
        logger.info("Firebase Admin SDK initialised (app=%s)", app_name)

    async def send_multicast(
        self,
        tokens: Sequence[str],
        title: str,
        body: str,
        data: Dict[str, str],
    ) -> List[PushOutcome]:
        if not tokens:
            return []
        message = self._build_message(list(tokens), title, body, data)
        try:
            response = await asyncio.to_thread(self._send, message)
        except Exception as exc:
            raise ExternalServiceError("fcm", f"Multicast send failed: {exc}") from exc

        outcomes = [self._to_outcome(r) for r in response.responses]
        logger.info(
            "FCM multicast: %d tokens, %d success, %d failure",
            len(tokens), response.success_count, response.failure_count,
        )
        return outcomes

    def _send(self, message: Any) -> Any:
        return messaging.send_each_for_multicast(message, app=self._app)

    @staticmethod
    def _build_message(
        tokens: List[str], title: str, body: str, data: Dict[str, str],
    ) -> Any:
        return messaging.MulticastMessage(
            tokens=tokens,
            notification=messaging.Notification(title=title, body=body),
            data=data,
            android=messaging.AndroidConfig(
                priority="high",
                notification=messaging.AndroidNotification(sound="default"),
            ),
            apns=messaging.APNSConfig(
                headers={"apns-priority": "10"},
                payload=messaging.APNSPayload(
                    aps=messaging.Aps(sound="default", badge=1),
                ),
            ),
        )

    @staticmethod
    def _to_outcome(response: Any) -> PushOutcome:
        if response.success:
            return PushOutcome(success=True, message_id=response.message_id)
        return PushOutcome(success=False, error_code=fcm_error_code(response.exception))

    async def close(self) -> None:
        await asyncio.to_thread(firebase_admin.delete_app, self._app)


def fcm_error_code(exc: Optional[BaseException]) -> str:
    """Map a firebase_admin exception onto a ``messaging/*`` error code."""
    if exc is None:
        return "messaging/unknown-error"
    if isinstance(exc, messaging.UnregisteredError):
        return REGISTRATION_TOKEN_NOT_REGISTERED
    if isinstance(exc, messaging.SenderIdMismatchError):
        return "messaging/mismatched-credential"
    if isinstance(exc, exceptions.InvalidArgumentError):
        if "token" in str(exc).lower():
            return INVALID_ARGUMENT
        return INVALID_PAYLOAD
    code = getattr(exc, "code", None)
    if code:
        return "messaging/" + str(code).lower().replace("_", "-")
    return "messaging/unknown-error"


# ═══════════════════════════════════════════════════════════════════════════
# Simulation
# ═══════════════════════════════════════════════════════════════════════════

class SimulatedPushProvider:
    """Reports every token as delivered; used when no provider is configured."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    async def send_multicast(
        self,
        tokens: Sequence[str],
        title: str,
        body: str,
        data: Dict[str, str],
    ) -> List[PushOutcome]:
        self.sent.append({"tokens": list(tokens), "title": title, "body": body, "data": data})
        logger.info("[SIMULATED] Push '%s' to %d device(s)", title, len(tokens))
        return [
            PushOutcome(success=True, message_id=f"simulated-{i}")
            for i in range(len(tokens))
        ]

    async def close(self) -> None:
        return None
