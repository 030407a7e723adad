"""
dispatcher.py — Batched push delivery with per-recipient classification.

═══════════════════════════════════════════════════════════════════════════
DISPATCH FLOW
═══════════════════════════════════════════════════════════════════════════

    push_targets ──► chunk by BATCH_SIZE ──► send_multicast (1 call/batch)
                                                   │
                          ┌────────────────────────┼───────────────────────┐
                          ▼                        ▼                       ▼
                   call raised              outcome.success         outcome failed
                   whole batch failed       sent += 1               failed += 1
                   invalid_tokens += 0                              dead token?
                                                                      invalid_tokens += 1
                                                                      evict token

Batch stats are summed field-wise into the returned DeliveryStats.
Token evictions for a batch run together after classification; a failed
eviction is logged and otherwise ignored.

When a delivery ledger is configured, recipients already recorded as
delivered for this alert are not sent again and count as sent.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterator, List, Optional, Sequence, Tuple

from backend.app.alerts.channels.push import PushProvider, is_invalid_token, stringify_data
from backend.app.alerts.models import (
    AlertBlock,
    DeliveryChannel,
    DeliveryStats,
    PushOutcome,
    UserTarget,
)
from backend.app.alerts.store import DeliveryLedger, UserStore

logger = logging.getLogger(__name__)


def chunked(items: Sequence, size: int) -> Iterator[Sequence]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def classify_outcomes(
    targets: Sequence[UserTarget],
    outcomes: Sequence[PushOutcome],
) -> Tuple[DeliveryStats, List[UserTarget], List[UserTarget]]:
    """
    Count one batch of provider outcomes.

    Returns
    -------
    (stats, delivered, dead)
        ``dead`` holds the users whose token must be evicted. Targets the
        provider returned no outcome for count as (transient) failures.
    """
    stats = DeliveryStats(total_targets=len(targets))
    delivered: List[UserTarget] = []
    dead: List[UserTarget] = []

    for index, user in enumerate(targets):
        outcome = outcomes[index] if index < len(outcomes) else None
        if outcome is not None and outcome.success:
            stats.sent += 1
            delivered.append(user)
            continue
        stats.failed += 1
        if outcome is not None and is_invalid_token(outcome.error_code):
            stats.invalid_tokens += 1
            dead.append(user)

    return stats, delivered, dead


class BatchPushDispatcher:
    def __init__(
        self,
        provider: PushProvider,
        users: UserStore,
        *,
        batch_size: int = 500,
        ledger: Optional[DeliveryLedger] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._provider = provider
        self._users = users
        self._batch_size = batch_size
        self._ledger = ledger

    async def dispatch(
        self,
        alert_id: str,
        push_targets: Sequence[UserTarget],
        block: AlertBlock,
    ) -> DeliveryStats:
        """Send ``block`` to every push target and return the summed stats."""
        totals = DeliveryStats()
        pending = list(push_targets)

        if self._ledger is not None and pending:
            already = await self._ledger.delivered(alert_id, DeliveryChannel.PUSH)
            if already:
                skipped = [u for u in pending if u.id in already]
                pending = [u for u in pending if u.id not in already]
                totals += DeliveryStats(total_targets=len(skipped), sent=len(skipped))
                logger.info(
                    "Alert %s: %d push recipient(s) already delivered, skipping",
                    alert_id, len(skipped),
                )

        data = stringify_data(block.data)
        data.setdefault("alert_id", alert_id)
        data.setdefault("type", "ALERT")

        for number, batch in enumerate(chunked(pending, self._batch_size), start=1):
            stats = await self._send_batch(alert_id, number, batch, block, data)
            totals += stats

        logger.info(
            "Alert %s push dispatch: total=%d sent=%d failed=%d invalid_tokens=%d",
            alert_id, totals.total_targets, totals.sent, totals.failed, totals.invalid_tokens,
        )
        return totals

    async def _send_batch(
        self,
        alert_id: str,
        number: int,
        batch: Sequence[UserTarget],
        block: AlertBlock,
        data: dict,
    ) -> DeliveryStats:
        tokens = [u.device_token for u in batch]
        try:
            outcomes = await self._provider.send_multicast(tokens, block.title, block.body, data)
        except Exception as exc:
            logger.warning(
                "Alert %s batch %d: multicast call failed for %d recipient(s): %s",
                alert_id, number, len(batch), exc,
            )
            return DeliveryStats(total_targets=len(batch), failed=len(batch))

        if len(outcomes) != len(batch):
            logger.warning(
                "Alert %s batch %d: provider returned %d outcome(s) for %d token(s)",
                alert_id, number, len(outcomes), len(batch),
            )

        stats, delivered, dead = classify_outcomes(batch, outcomes)
        if stats.failed:
            logger.warning(
                "Alert %s batch %d: %d/%d failed (%d invalid token(s))",
                alert_id, number, stats.failed, len(batch), stats.invalid_tokens,
            )

        await self._evict_tokens(alert_id, dead)
        await self._record_delivered(alert_id, delivered)
        return stats

    async def _evict_tokens(self, alert_id: str, dead: Sequence[UserTarget]) -> None:
        if not dead:
            return
        results = await asyncio.gather(
            *(self._users.clear_device_token(u.id, u.device_token) for u in dead),
            return_exceptions=True,
        )
        for user, result in zip(dead, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "Alert %s: could not clear device token for user %s: %s",
                    alert_id, user.id, result,
                )
            else:
                logger.info("Alert %s: evicted dead device token for user %s", alert_id, user.id)

    async def _record_delivered(self, alert_id: str, delivered: Sequence[UserTarget]) -> None:
        if self._ledger is None or not delivered:
            return
        try:
            await self._ledger.record(alert_id, DeliveryChannel.PUSH, [u.id for u in delivered])
        except Exception as exc:
            logger.warning(
                "Alert %s: failed to record %d push deliveries: %s",
                alert_id, len(delivered), exc,
            )
