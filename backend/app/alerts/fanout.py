"""
fanout.py — In-app notification fan-out.

One notification record per target user, written in batches of
BATCH_SIZE with a short pause between batches to bound write pressure on
the notification store. Delivery is best-effort per recipient: a failed
write is logged and counted, never raised.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Sequence

from backend.app.alerts.dispatcher import chunked
from backend.app.alerts.models import (
    AlertBlock,
    DeliveryChannel,
    FanoutResult,
    NotificationDraft,
    NotificationType,
    UserTarget,
)
from backend.app.alerts.store import DeliveryLedger, NotificationStore

logger = logging.getLogger(__name__)


class InAppFanoutWriter:
    def __init__(
        self,
        notifications: NotificationStore,
        *,
        batch_size: int = 500,
        delay_ms: int = 50,
        default_title: str = "New alert",
        default_message: str = "You have a new alert",
        action_link: Optional[str] = None,
        write_concurrency: int = 10,
        ledger: Optional[DeliveryLedger] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._notifications = notifications
        self._batch_size = batch_size
        self._delay = max(delay_ms, 0) / 1000.0
        self._default_title = default_title
        self._default_message = default_message
        self._action_link = action_link
        self._write_slots = asyncio.Semaphore(max(write_concurrency, 1))
        self._ledger = ledger

    def build_draft(
        self, alert_id: str, user: UserTarget, block: AlertBlock, module: str,
    ) -> NotificationDraft:
        metadata: Dict[str, Any] = {"alert_id": alert_id}
        if block.data:
            metadata["data"] = dict(block.data)
        return NotificationDraft(
            title=block.title.strip() or self._default_title,
            message=block.body.strip() or self._default_message,
            module=module,
            user_id=user.id,
            metadata=metadata,
            type=NotificationType.ALERT,
            action_link=self._action_link,
        )

    async def write_all(
        self,
        alert_id: str,
        all_targets: Sequence[UserTarget],
        block: AlertBlock,
        module: str,
    ) -> FanoutResult:
        result = FanoutResult()
        pending = list(all_targets)

        if self._ledger is not None and pending:
            already = await self._ledger.delivered(alert_id, DeliveryChannel.IN_APP)
            if already:
                result.skipped = sum(1 for u in pending if u.id in already)
                pending = [u for u in pending if u.id not in already]

        batches = list(chunked(pending, self._batch_size))
        for number, batch in enumerate(batches, start=1):
            created_ids = await self._write_batch(alert_id, batch, block, module, result)
            await self._record_delivered(alert_id, created_ids)
            if number < len(batches) and self._delay:
                await asyncio.sleep(self._delay)

        logger.info(
            "Alert %s in-app fan-out: created=%d errors=%d skipped=%d",
            alert_id, result.created, result.errors, result.skipped,
        )
        return result

    async def _write_batch(
        self,
        alert_id: str,
        batch: Sequence[UserTarget],
        block: AlertBlock,
        module: str,
        result: FanoutResult,
    ) -> list:
        outcomes = await asyncio.gather(
            *(self._write_one(alert_id, user, block, module) for user in batch),
            return_exceptions=True,
        )
        created_ids = []
        for user, outcome in zip(batch, outcomes):
            if isinstance(outcome, BaseException):
                result.errors += 1
                logger.warning(
                    "Alert %s: in-app notification for user %s failed: %s",
                    alert_id, user.id, outcome,
                )
            else:
                result.created += 1
                created_ids.append(user.id)
        return created_ids

    async def _write_one(
        self, alert_id: str, user: UserTarget, block: AlertBlock, module: str,
    ) -> str:
        async with self._write_slots:
            return await self._notifications.create(
                self.build_draft(alert_id, user, block, module)
            )

    async def _record_delivered(self, alert_id: str, user_ids: Sequence[str]) -> None:
        if self._ledger is None or not user_ids:
            return
        try:
            await self._ledger.record(alert_id, DeliveryChannel.IN_APP, user_ids)
        except Exception as exc:
            logger.warning(
                "Alert %s: failed to record %d in-app deliveries: %s",
                alert_id, len(user_ids), exc,
            )
