"""
store.py — Persistence contracts used by the pipeline, plus in-memory
implementations for local runs and tests.

Contracts:
    AlertStore         — Alert aggregate persistence + state machine guard
    UserStore          — FindUsersByRoleOrIds / ClearDeviceToken
    NotificationStore  — CreateNotification
    DeliveryLedger     — (alert, user, channel) idempotency keys

The SQL implementations live in ``sql_store``. Both backends enforce the
same rules: status only moves forward, final stats and status are written
together, and only an IN_PROGRESS alert can be finalised.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol, Set, Tuple

from backend.app.alerts.models import (
    Alert,
    AlertStatus,
    DeliveryChannel,
    DeliveryStats,
    NotificationDraft,
    UserTarget,
    can_transition,
    utc_now,
)
from backend.app.core.errors import InvalidTransitionError, NotFoundError


# ═══════════════════════════════════════════════════════════════════════════
# Contracts
# ═══════════════════════════════════════════════════════════════════════════

class AlertStore(Protocol):
    async def ping(self) -> bool:
        ...

    async def create(self, alert: Alert) -> Alert:
        ...

    async def get(self, alert_id: str) -> Optional[Alert]:
        ...

    async def mark_in_progress(self, alert_id: str) -> Alert:
        ...

    async def finalize(
        self, alert_id: str, stats: DeliveryStats, status: AlertStatus,
    ) -> Alert:
        ...

    async def force_failed(self, alert_id: str) -> Optional[Alert]:
        ...

    async def list(
        self,
        *,
        created_by: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Alert], int]:
        ...

    async def delete(self, alert_id: str) -> bool:
        ...


class UserStore(Protocol):
    async def find_targets(
        self,
        *,
        role: Optional[str] = None,
        ids: Optional[Iterable[str]] = None,
    ) -> List[UserTarget]:
        ...

    async def clear_device_token(self, user_id: str, token: Optional[str] = None) -> bool:
        ...


class NotificationStore(Protocol):
    async def create(self, draft: NotificationDraft) -> str:
        ...


class DeliveryLedger(Protocol):
    async def delivered(self, alert_id: str, channel: DeliveryChannel) -> Set[str]:
        ...

    async def record(
        self, alert_id: str, channel: DeliveryChannel, user_ids: Iterable[str],
    ) -> None:
        ...


def check_transition(alert: Alert, target: AlertStatus) -> None:
    """Raise when ``alert`` may not move to ``target``."""
    if not can_transition(alert.status, target):
        raise InvalidTransitionError(alert.id, alert.status.value, target.value)


def matches_search(alert: Alert, search: str) -> bool:
    """Case-insensitive match on the delivered block's title or body."""
    block = alert.primary_block
    if block is None:
        return False
    needle = search.lower()
    return needle in block.title.lower() or needle in block.body.lower()


# ═══════════════════════════════════════════════════════════════════════════
# In-memory implementations
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryAlertStore:
    """Dict-backed alert store. Reads return copies, like a real database."""

    def __init__(self) -> None:
        self._alerts: Dict[str, Alert] = {}
        self._lock = asyncio.Lock()
        self.available = True

    async def ping(self) -> bool:
        return self.available

    async def create(self, alert: Alert) -> Alert:
        async with self._lock:
            self._alerts[alert.id] = copy.deepcopy(alert)
        return copy.deepcopy(alert)

    async def get(self, alert_id: str) -> Optional[Alert]:
        alert = self._alerts.get(alert_id)
        return copy.deepcopy(alert) if alert else None

    async def mark_in_progress(self, alert_id: str) -> Alert:
        async with self._lock:
            alert = self._require(alert_id)
            check_transition(alert, AlertStatus.IN_PROGRESS)
            alert.status = AlertStatus.IN_PROGRESS
            alert.updated_at = utc_now()
            return copy.deepcopy(alert)

    async def finalize(
        self, alert_id: str, stats: DeliveryStats, status: AlertStatus,
    ) -> Alert:
        async with self._lock:
            alert = self._require(alert_id)
            if alert.status is not AlertStatus.IN_PROGRESS or not status.is_terminal:
                raise InvalidTransitionError(alert_id, alert.status.value, status.value)
            alert.stats = copy.deepcopy(stats)
            alert.status = status
            alert.updated_at = utc_now()
            return copy.deepcopy(alert)

    async def force_failed(self, alert_id: str) -> Optional[Alert]:
        async with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                return None
            if not alert.status.is_terminal:
                alert.status = AlertStatus.FAILED
                alert.updated_at = utc_now()
            return copy.deepcopy(alert)

    async def list(
        self,
        *,
        created_by: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Alert], int]:
        rows = [
            a for a in self._alerts.values()
            if (created_by is None or a.created_by == created_by)
            and (from_date is None or a.created_at >= from_date)
            and (to_date is None or a.created_at <= to_date)
            and (not search or matches_search(a, search))
        ]
        rows.sort(key=lambda a: a.created_at, reverse=True)
        start = (page - 1) * limit
        return [copy.deepcopy(a) for a in rows[start:start + limit]], len(rows)

    async def delete(self, alert_id: str) -> bool:
        async with self._lock:
            return self._alerts.pop(alert_id, None) is not None

    def _require(self, alert_id: str) -> Alert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise NotFoundError("Alert", id=alert_id)
        return alert


class InMemoryUserStore:
    def __init__(self, users: Iterable[UserTarget] = ()) -> None:
        self._users: Dict[str, UserTarget] = {u.id: u for u in users}
        self.cleared: List[str] = []

    def add(self, user: UserTarget) -> None:
        self._users[user.id] = user

    def get(self, user_id: str) -> Optional[UserTarget]:
        return self._users.get(user_id)

    async def find_targets(
        self,
        *,
        role: Optional[str] = None,
        ids: Optional[Iterable[str]] = None,
    ) -> List[UserTarget]:
        wanted = set(ids) if ids is not None else None
        return [
            u for u in self._users.values()
            if (role is None or role in u.roles)
            and (wanted is None or u.id in wanted)
        ]

    async def clear_device_token(self, user_id: str, token: Optional[str] = None) -> bool:
        user = self._users.get(user_id)
        if user is None or not user.device_token:
            return False
        if token is not None and user.device_token != token:
            return False
        self._users[user_id] = UserTarget(id=user.id, device_token=None, roles=user.roles)
        self.cleared.append(user_id)
        return True


class InMemoryNotificationStore:
    def __init__(self) -> None:
        self.records: List[NotificationDraft] = []

    async def create(self, draft: NotificationDraft) -> str:
        self.records.append(copy.deepcopy(draft))
        return str(len(self.records))


class InMemoryDeliveryLedger:
    def __init__(self) -> None:
        self._keys: Set[Tuple[str, str, str]] = set()

    async def delivered(self, alert_id: str, channel: DeliveryChannel) -> Set[str]:
        return {
            user_id for a, c, user_id in self._keys
            if a == alert_id and c == channel.value
        }

    async def record(
        self, alert_id: str, channel: DeliveryChannel, user_ids: Iterable[str],
    ) -> None:
        for user_id in user_ids:
            self._keys.add((alert_id, channel.value, user_id))
