"""
audience.py — Resolves an alert's audience into concrete recipient sets.

    Resolve(alert) → (push_targets, all_targets)

═══════════════════════════════════════════════════════════════════════════
RESOLUTION RULES
═══════════════════════════════════════════════════════════════════════════

    recipients non-empty  → exactly those ids (role filter still applies
                            for drivers / passengers)
    custom                → the recipients list (empty list → nobody)
    drivers / passengers  → every user holding the matching role
    all                   → every user

    push_targets = [u for u in all_targets if u has a device token]

The user store is read once per call, so both sets come from the same
point-in-time snapshot and push_targets ⊆ all_targets always holds.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, List, Tuple

from backend.app.alerts.models import (
    Alert,
    Audience,
    ROLE_BY_AUDIENCE,
    UserTarget,
)
from backend.app.alerts.store import UserStore
from backend.app.core.errors import ValidationError

logger = logging.getLogger(__name__)

ResolvedAudience = Tuple[List[UserTarget], List[UserTarget]]


class AudienceResolver:
    def __init__(self, users: UserStore):
        self._users = users
        self._by_audience: Dict[Audience, Callable[[Alert], Awaitable[List[UserTarget]]]] = {
            Audience.ALL:        self._resolve_all,
            Audience.DRIVERS:    self._resolve_role,
            Audience.PASSENGERS: self._resolve_role,
            Audience.CUSTOM:     self._resolve_custom,
        }
        missing = set(Audience) - set(self._by_audience)
        if missing:
            raise RuntimeError(
                f"No audience resolver for: {sorted(a.value for a in missing)}"
            )

    async def resolve(self, alert: Alert) -> ResolvedAudience:
        """Return ``(push_targets, all_targets)`` for ``alert``."""
        if alert.recipients:
            all_targets = await self._resolve_explicit(alert)
        else:
            all_targets = await self._by_audience[alert.audience](alert)

        push_targets = [u for u in all_targets if u.has_device_token]
        logger.info(
            "Audience resolved for alert %s (%s): %d targets, %d push-eligible",
            alert.id, alert.audience.value, len(all_targets), len(push_targets),
        )
        return push_targets, all_targets

    async def _resolve_explicit(self, alert: Alert) -> List[UserTarget]:
        role = ROLE_BY_AUDIENCE.get(alert.audience)
        return await self._users.find_targets(
            ids=alert.recipients,
            role=role.value if role else None,
        )

    async def _resolve_all(self, alert: Alert) -> List[UserTarget]:
        return await self._users.find_targets()

    async def _resolve_role(self, alert: Alert) -> List[UserTarget]:
        return await self._users.find_targets(role=ROLE_BY_AUDIENCE[alert.audience].value)

    async def _resolve_custom(self, alert: Alert) -> List[UserTarget]:
        # reached only with an empty recipients list
        return []


async def list_users_by_audience(users: UserStore, audience: Audience) -> List[UserTarget]:
    """Users an administrator can pick from for a role-based audience."""
    role = ROLE_BY_AUDIENCE.get(audience)
    if role is None:
        raise ValidationError(
            f"Audience '{audience.value}' is not role-based; use drivers or passengers",
            field="audience",
        )
    return await users.find_targets(role=role.value)
