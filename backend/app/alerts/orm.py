"""
orm.py — SQLAlchemy table mappings for the alert pipeline.

Tables:
    alerts            — Alert aggregate (recipients / blocks / stats as JSON)
    users             — read-mostly user view (device token + roles)
    notifications     — in-app notification records
    alert_deliveries  — idempotency keys, unique per (alert, user, channel)
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.alerts.models import (
    Alert,
    AlertBlock,
    AlertStatus,
    Audience,
    DeliveryStats,
    NotificationType,
    UserTarget,
    generate_id,
    utc_now,
)
from backend.app.core.database import Base


class AlertRow(Base):
    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=generate_id)
    created_by: Mapped[str] = mapped_column(String(64), index=True)
    audience: Mapped[str] = mapped_column(String(16), default=Audience.ALL.value)
    recipients: Mapped[List[str]] = mapped_column(JSON, default=list)
    blocks: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(
        String(16), default=AlertStatus.PENDING.value, index=True,
    )
    stats: Mapped[Dict[str, int]] = mapped_column(JSON, default=dict)
    # first block, denormalised for search
    title: Mapped[str] = mapped_column(String(500), default="")
    body: Mapped[str] = mapped_column(Text, default="")
    metadata_json: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        "metadata", JSON, nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now,
    )

    @classmethod
    def from_domain(cls, alert: Alert) -> "AlertRow":
        block = alert.primary_block
        return cls(
            id=alert.id,
            created_by=alert.created_by,
            audience=alert.audience.value,
            recipients=list(alert.recipients),
            blocks=[b.to_dict() for b in alert.blocks],
            status=alert.status.value,
            stats=alert.stats.to_dict(),
            title=block.title if block else "",
            body=block.body if block else "",
            metadata_json=alert.metadata or None,
            created_at=alert.created_at,
            updated_at=alert.updated_at,
        )

    def to_domain(self) -> Alert:
        return Alert(
            id=self.id,
            created_by=self.created_by,
            audience=Audience(self.audience),
            recipients=list(self.recipients or []),
            blocks=[AlertBlock.from_dict(b) for b in (self.blocks or [])],
            status=AlertStatus(self.status),
            stats=DeliveryStats.from_dict(self.stats),
            created_at=self.created_at,
            updated_at=self.updated_at,
            metadata=dict(self.metadata_json or {}),
        )


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    device_token: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    roles: Mapped[List[str]] = mapped_column(JSON, default=list)

    def to_domain(self) -> UserTarget:
        return UserTarget(
            id=self.id,
            device_token=self.device_token,
            roles=frozenset(self.roles or []),
        )


class NotificationRow(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=generate_id)
    title: Mapped[str] = mapped_column(String(500))
    message: Mapped[str] = mapped_column(Text)
    module: Mapped[str] = mapped_column(String(64), index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    metadata_json: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        "metadata", JSON, nullable=True,
    )
    type: Mapped[str] = mapped_column(
        String(16), default=NotificationType.ALERT.value, index=True,
    )
    action_link: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class AlertDeliveryRow(Base):
    __tablename__ = "alert_deliveries"
    __table_args__ = (
        UniqueConstraint("alert_id", "user_id", "channel", name="uq_alert_delivery"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=generate_id)
    alert_id: Mapped[str] = mapped_column(String(32), index=True)
    user_id: Mapped[str] = mapped_column(String(64))
    channel: Mapped[str] = mapped_column(String(16))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
