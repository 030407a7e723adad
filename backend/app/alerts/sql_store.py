"""
sql_store.py — SQLAlchemy implementations of the store contracts.

Every status mutation is a guarded UPDATE (compare-and-set on the current
status) inside its own transaction, so two workers racing on one alert
cannot regress it and a reader never sees a terminal status without its
final stats.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, List, Optional, Set, Tuple

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import (
    DataError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    ProgrammingError,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from backend.app.alerts.models import (
    Alert,
    AlertStatus,
    DeliveryChannel,
    DeliveryStats,
    NotificationDraft,
    TERMINAL_STATUSES,
    UserTarget,
    utc_now,
)
from backend.app.alerts.orm import AlertDeliveryRow, AlertRow, NotificationRow, UserRow
from backend.app.core.database import check_connection
from backend.app.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    StoreRejectedError,
    StoreUnavailableError,
)

logger = logging.getLogger(__name__)

# Keep IN (...) lists below SQLite's bound-parameter ceiling
_ID_CHUNK = 500

_NON_TERMINAL = [
    s.value for s in AlertStatus if s not in TERMINAL_STATUSES
]


@asynccontextmanager
async def _unavailable_as(store: str) -> AsyncIterator[None]:
    """
    Translate connectivity failures into the retryable domain error and
    rejected statements (bad data, bad SQL) into a permanent one.
    IntegrityError passes through for callers that expect it.
    """
    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        raise StoreUnavailableError(store, str(exc.orig or exc)) from exc
    except (DataError, ProgrammingError) as exc:
        raise StoreRejectedError(store, str(exc.orig or exc)) from exc


class SqlAlertStore:
    def __init__(self, engine: AsyncEngine, sessions: async_sessionmaker[AsyncSession]):
        self._engine = engine
        self._sessions = sessions

    async def ping(self) -> bool:
        return await check_connection(self._engine)

    async def create(self, alert: Alert) -> Alert:
        async with _unavailable_as("alerts"):
            async with self._sessions() as session, session.begin():
                session.add(AlertRow.from_domain(alert))
        return alert

    async def get(self, alert_id: str) -> Optional[Alert]:
        async with _unavailable_as("alerts"):
            async with self._sessions() as session:
                row = await session.get(AlertRow, alert_id)
                return row.to_domain() if row else None

    async def mark_in_progress(self, alert_id: str) -> Alert:
        async with _unavailable_as("alerts"):
            async with self._sessions() as session, session.begin():
                result = await session.execute(
                    update(AlertRow)
                    .where(
                        AlertRow.id == alert_id,
                        AlertRow.status.in_([
                            AlertStatus.PENDING.value,
                            AlertStatus.IN_PROGRESS.value,
                        ]),
                    )
                    .values(status=AlertStatus.IN_PROGRESS.value, updated_at=utc_now())
                )
                if result.rowcount == 0:
                    await self._raise_for_missed_update(
                        session, alert_id, AlertStatus.IN_PROGRESS,
                    )
                row = await session.get(AlertRow, alert_id, populate_existing=True)
                return row.to_domain()

    async def finalize(
        self, alert_id: str, stats: DeliveryStats, status: AlertStatus,
    ) -> Alert:
        if not status.is_terminal:
            raise InvalidTransitionError(alert_id, AlertStatus.IN_PROGRESS.value, status.value)
        async with _unavailable_as("alerts"):
            async with self._sessions() as session, session.begin():
                result = await session.execute(
                    update(AlertRow)
                    .where(
                        AlertRow.id == alert_id,
                        AlertRow.status == AlertStatus.IN_PROGRESS.value,
                    )
                    .values(
                        stats=stats.to_dict(),
                        status=status.value,
                        updated_at=utc_now(),
                    )
                )
                if result.rowcount == 0:
                    await self._raise_for_missed_update(session, alert_id, status)
                row = await session.get(AlertRow, alert_id, populate_existing=True)
                return row.to_domain()

    async def force_failed(self, alert_id: str) -> Optional[Alert]:
        async with _unavailable_as("alerts"):
            async with self._sessions() as session, session.begin():
                await session.execute(
                    update(AlertRow)
                    .where(AlertRow.id == alert_id, AlertRow.status.in_(_NON_TERMINAL))
                    .values(status=AlertStatus.FAILED.value, updated_at=utc_now())
                )
                row = await session.get(AlertRow, alert_id, populate_existing=True)
                return row.to_domain() if row else None

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
        filters = []
        if created_by is not None:
            filters.append(AlertRow.created_by == created_by)
        if from_date is not None:
            filters.append(AlertRow.created_at >= from_date)
        if to_date is not None:
            filters.append(AlertRow.created_at <= to_date)
        if search:
            pattern = f"%{search}%"
            filters.append(or_(AlertRow.title.ilike(pattern), AlertRow.body.ilike(pattern)))

        async with _unavailable_as("alerts"):
            async with self._sessions() as session:
                total = await session.scalar(
                    select(func.count()).select_from(AlertRow).where(*filters)
                )
                rows = (
                    await session.execute(
                        select(AlertRow)
                        .where(*filters)
                        .order_by(AlertRow.created_at.desc())
                        .offset((page - 1) * limit)
                        .limit(limit)
                    )
                ).scalars().all()
        return [r.to_domain() for r in rows], int(total or 0)

    async def delete(self, alert_id: str) -> bool:
        async with _unavailable_as("alerts"):
            async with self._sessions() as session, session.begin():
                result = await session.execute(delete(AlertRow).where(AlertRow.id == alert_id))
                return result.rowcount > 0

    @staticmethod
    async def _raise_for_missed_update(
        session: AsyncSession, alert_id: str, target: AlertStatus,
    ) -> None:
        current = await session.scalar(select(AlertRow.status).where(AlertRow.id == alert_id))
        if current is None:
            raise NotFoundError("Alert", id=alert_id)
        raise InvalidTransitionError(alert_id, current, target.value)


class SqlUserStore:
    def __init__(self, sessions: async_sessionmaker[AsyncSession]):
        self._sessions = sessions

    async def find_targets(
        self,
        *,
        role: Optional[str] = None,
        ids: Optional[Iterable[str]] = None,
    ) -> List[UserTarget]:
        async with _unavailable_as("users"):
            async with self._sessions() as session:
                if ids is None:
                    rows = (await session.execute(select(UserRow))).scalars().all()
                else:
                    wanted = list(dict.fromkeys(ids))
                    rows = []
                    for start in range(0, len(wanted), _ID_CHUNK):
                        chunk = wanted[start:start + _ID_CHUNK]
                        rows.extend(
                            (
                                await session.execute(
                                    select(UserRow).where(UserRow.id.in_(chunk))
                                )
                            ).scalars().all()
                        )
        # roles is a JSON list; filtered here to stay dialect-neutral
        users = [r.to_domain() for r in rows]
        if role is not None:
            users = [u for u in users if role in u.roles]
        return users

    async def clear_device_token(self, user_id: str, token: Optional[str] = None) -> bool:
        stmt = update(UserRow).where(UserRow.id == user_id, UserRow.device_token.is_not(None))
        if token is not None:
            stmt = stmt.where(UserRow.device_token == token)
        async with _unavailable_as("users"):
            async with self._sessions() as session, session.begin():
                result = await session.execute(stmt.values(device_token=None))
                return result.rowcount > 0


class SqlNotificationStore:
    def __init__(self, sessions: async_sessionmaker[AsyncSession]):
        self._sessions = sessions

    async def create(self, draft: NotificationDraft) -> str:
        row = NotificationRow(
            title=draft.title,
            message=draft.message,
            module=draft.module,
            user_id=draft.user_id,
            metadata_json=draft.metadata or None,
            type=draft.type.value,
            action_link=draft.action_link,
        )
        async with _unavailable_as("notifications"):
            async with self._sessions() as session, session.begin():
                session.add(row)
        return row.id


class SqlDeliveryLedger:
    def __init__(self, sessions: async_sessionmaker[AsyncSession]):
        self._sessions = sessions

    async def delivered(self, alert_id: str, channel: DeliveryChannel) -> Set[str]:
        async with _unavailable_as("alert_deliveries"):
            async with self._sessions() as session:
                rows = await session.execute(
                    select(AlertDeliveryRow.user_id).where(
                        AlertDeliveryRow.alert_id == alert_id,
                        AlertDeliveryRow.channel == channel.value,
                    )
                )
                return set(rows.scalars().all())

    async def record(
        self, alert_id: str, channel: DeliveryChannel, user_ids: Iterable[str],
    ) -> None:
        pending = set(user_ids) - await self.delivered(alert_id, channel)
        if not pending:
            return
        try:
            async with _unavailable_as("alert_deliveries"):
                async with self._sessions() as session, session.begin():
                    session.add_all([
                        AlertDeliveryRow(alert_id=alert_id, user_id=uid, channel=channel.value)
                        for uid in pending
                    ])
        except IntegrityError:
            # another execution recorded some of these keys first
            logger.info(
                "Delivery keys for alert %s/%s already recorded concurrently",
                alert_id, channel.value,
            )
