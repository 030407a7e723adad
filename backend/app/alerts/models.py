"""
models.py — Shared data structures for the alert broadcast pipeline.

Defines:
    • Audience        — who an alert targets
    • AlertStatus     — forward-only delivery state machine
    • AlertBlock      — one message payload (title / body / data)
    • DeliveryStats   — push counters plus informational in-app counters
    • Alert           — the aggregate persisted by the alert store
    • UserTarget      — read-only view of a user from the user store
    • NotificationDraft — one in-app notification record to create
    • PushOutcome     — per-token result from the push provider

═══════════════════════════════════════════════════════════════════════════
ALERT LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    PENDING ──► IN_PROGRESS ──┬──► SENT            (failed == 0)
                              ├──► FAILED          (sent == 0, failed > 0)
                              └──► PARTIALLY_SENT  (otherwise)

    PENDING / IN_PROGRESS ──► FAILED   (job dead-lettered)

Only the worker moves an alert forward. Terminal alerts are never
mutated again except by administrative deletion.

Push counters obey ``sent + failed == total_targets`` where
``total_targets`` counts push-eligible recipients only. The in-app
counters are recorded next to them but never feed the final status.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class Audience(str, Enum):
    """Audience selector attached to an alert."""
    ALL        = "all"
    DRIVERS    = "drivers"
    PASSENGERS = "passengers"
    CUSTOM     = "custom"


class AlertStatus(str, Enum):
    """Alert delivery state."""
    PENDING        = "PENDING"
    IN_PROGRESS    = "IN_PROGRESS"
    SENT           = "SENT"
    FAILED         = "FAILED"
    PARTIALLY_SENT = "PARTIALLY_SENT"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class UserRole(str, Enum):
    DRIVER    = "driver"
    PASSENGER = "passenger"


class DeliveryChannel(str, Enum):
    PUSH   = "push"
    IN_APP = "in_app"


class NotificationType(str, Enum):
    ALERT = "ALERT"


TERMINAL_STATUSES: FrozenSet[AlertStatus] = frozenset({
    AlertStatus.SENT,
    AlertStatus.FAILED,
    AlertStatus.PARTIALLY_SENT,
})

# Permitted status moves. IN_PROGRESS → IN_PROGRESS covers job redelivery.
ALLOWED_TRANSITIONS: Dict[AlertStatus, FrozenSet[AlertStatus]] = {
    AlertStatus.PENDING: frozenset({
        AlertStatus.IN_PROGRESS,
        AlertStatus.FAILED,
    }),
    AlertStatus.IN_PROGRESS: frozenset({
        AlertStatus.IN_PROGRESS,
        AlertStatus.SENT,
        AlertStatus.FAILED,
        AlertStatus.PARTIALLY_SENT,
    }),
    AlertStatus.SENT: frozenset(),
    AlertStatus.FAILED: frozenset(),
    AlertStatus.PARTIALLY_SENT: frozenset(),
}

# In-app notification module tag per audience
MODULE_BY_AUDIENCE: Dict[Audience, str] = {
    Audience.ALL:        "alerts",
    Audience.DRIVERS:    "driver_management",
    Audience.PASSENGERS: "passenger_management",
    Audience.CUSTOM:     "alerts",
}

ROLE_BY_AUDIENCE: Dict[Audience, UserRole] = {
    Audience.DRIVERS:    UserRole.DRIVER,
    Audience.PASSENGERS: UserRole.PASSENGER,
}


def can_transition(current: AlertStatus, target: AlertStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

def generate_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AlertBlock:
    """One message payload. Only the first block of an alert is delivered."""
    title: str = ""
    body: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"title": self.title, "body": self.body, "data": dict(self.data)}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "AlertBlock":
        return cls(
            title=(raw.get("title") or "").strip(),
            body=(raw.get("body") or "").strip(),
            data=dict(raw.get("data") or {}),
        )


@dataclass
class DeliveryStats:
    """
    Delivery counters for one alert.

    ``total_targets``, ``sent``, ``failed`` and ``invalid_tokens`` describe
    the push channel. ``in_app_created`` / ``in_app_errors`` describe the
    in-app channel and are informational only.
    """
    total_targets: int = 0
    sent: int = 0
    failed: int = 0
    invalid_tokens: int = 0
    in_app_created: int = 0
    in_app_errors: int = 0

    def __add__(self, other: "DeliveryStats") -> "DeliveryStats":
        if not isinstance(other, DeliveryStats):
            return NotImplemented
        return DeliveryStats(**{
            f.name: getattr(self, f.name) + getattr(other, f.name)
            for f in fields(self)
        })

    @property
    def is_consistent(self) -> bool:
        return self.sent + self.failed == self.total_targets

    def to_dict(self) -> Dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "DeliveryStats":
        raw = raw or {}
        return cls(**{
            f.name: int(raw.get(f.name, 0) or 0) for f in fields(cls)
        })


@dataclass
class Alert:
    """The broadcast aggregate."""
    created_by: str
    audience: Audience = Audience.ALL
    recipients: List[str] = field(default_factory=list)
    blocks: List[AlertBlock] = field(default_factory=list)
    status: AlertStatus = AlertStatus.PENDING
    stats: DeliveryStats = field(default_factory=DeliveryStats)
    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def primary_block(self) -> Optional[AlertBlock]:
        """The block that is actually delivered; later blocks are inert."""
        return self.blocks[0] if self.blocks else None

    @property
    def module(self) -> str:
        return MODULE_BY_AUDIENCE[self.audience]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_by": self.created_by,
            "audience": self.audience.value,
            "recipients": list(self.recipients),
            "blocks": [b.to_dict() for b in self.blocks],
            "status": self.status.value,
            "stats": self.stats.to_dict(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class UserTarget:
    """A user as seen by the pipeline."""
    id: str
    device_token: Optional[str] = None
    roles: FrozenSet[str] = frozenset()

    @property
    def has_device_token(self) -> bool:
        return bool(self.device_token and self.device_token.strip())


@dataclass
class NotificationDraft:
    """One in-app notification record to be created for one user."""
    title: str
    message: str
    module: str
    user_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    type: NotificationType = NotificationType.ALERT
    action_link: Optional[str] = None


@dataclass(frozen=True)
class PushOutcome:
    """Provider result for one token, in request order."""
    success: bool
    error_code: Optional[str] = None
    message_id: Optional[str] = None


@dataclass
class FanoutResult:
    """In-app fan-out counters."""
    created: int = 0
    errors: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"created": self.created, "errors": self.errors, "skipped": self.skipped}


def final_status_for(stats: DeliveryStats) -> AlertStatus:
    """Terminal status derived from push counters."""
    if stats.failed == 0:
        return AlertStatus.SENT
    if stats.sent == 0:
        return AlertStatus.FAILED
    return AlertStatus.PARTIALLY_SENT
