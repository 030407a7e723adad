"""
processor.py — Processes one "deliver this alert" job end to end.

═══════════════════════════════════════════════════════════════════════════
JOB STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  1. Store ping      │  unreachable → StoreUnavailableError (retry)
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  2. Load alert      │  missing → NotFoundError (retry, then DLQ)
    │                     │  terminal → nothing to do (late redelivery)
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  3. IN_PROGRESS     │  PENDING or IN_PROGRESS (redelivery)
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  4. Resolve         │  push_targets ⊆ all_targets
    │  5. Push dispatch   │  push stats
    │  6. In-app fan-out  │  informational counters
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  7. Final status    │  SENT / FAILED / PARTIALLY_SENT
    │  8. Finalize        │  stats + status in one transaction
    └─────────────────────┘

Any exception from steps 4–8 propagates to the queue, leaving the alert
IN_PROGRESS for the next attempt.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from backend.app.alerts.audience import AudienceResolver
from backend.app.alerts.dispatcher import BatchPushDispatcher
from backend.app.alerts.fanout import InAppFanoutWriter
from backend.app.alerts.models import Alert, AlertBlock, final_status_for
from backend.app.alerts.store import AlertStore
from backend.app.core.errors import NotFoundError, StoreUnavailableError
from backend.app.core.logging_config import set_log_context

logger = logging.getLogger(__name__)


class AlertJobProcessor:
    def __init__(
        self,
        alerts: AlertStore,
        resolver: AudienceResolver,
        dispatcher: BatchPushDispatcher,
        fanout: InAppFanoutWriter,
    ):
        self._alerts = alerts
        self._resolver = resolver
        self._dispatcher = dispatcher
        self._fanout = fanout

    async def process(
        self,
        alert_id: str,
        *,
        job_id: Optional[str] = None,
        attempt: int = 1,
    ) -> Alert:
        set_log_context(job_id=job_id, alert_id=alert_id, attempt=attempt)
        started = time.monotonic()

        if not await self._alerts.ping():
            raise StoreUnavailableError("alerts", "Alert store did not answer ping")

        alert = await self._alerts.get(alert_id)
        if alert is None:
            raise NotFoundError("Alert", id=alert_id)
        if alert.status.is_terminal:
            logger.info(
                "Alert %s already %s, skipping redelivered job", alert_id, alert.status.value,
            )
            return alert

        alert = await self._alerts.mark_in_progress(alert_id)

        push_targets, all_targets = await self._resolver.resolve(alert)
        block = alert.primary_block or AlertBlock()

        stats = await self._dispatcher.dispatch(alert_id, push_targets, block)
        fanout = await self._fanout.write_all(alert_id, all_targets, block, alert.module)
        stats.in_app_created = fanout.created + fanout.skipped
        stats.in_app_errors = fanout.errors

        status = final_status_for(stats)
        alert = await self._alerts.finalize(alert_id, stats, status)

        logger.info(
            "Alert %s finished as %s in %.0fms (attempt %d)",
            alert_id, status.value, (time.monotonic() - started) * 1000, attempt,
            extra={
                "sent": stats.sent,
                "failed": stats.failed,
                "invalid_tokens": stats.invalid_tokens,
            },
        )
        return alert
