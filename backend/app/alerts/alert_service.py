"""
alert_service.py — Synchronous entry point for alert broadcasting.

This is the coordinator the HTTP layer talks to. It:
    1. Validates the author, audience, recipients and message blocks
    2. Persists a new Alert with status PENDING
    3. Schedules exactly one processing job keyed by the alert id
    4. Serves the administrative read / delete operations

═══════════════════════════════════════════════════════════════════════════
ENQUEUE FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  CreateAlert        │  author, audience, recipients[], blocks[]
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  1. Validate        │  blocks non-empty, audience known
    │                     │  recipients given → audience forced to custom
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  2. Persist         │  status = PENDING
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  3. Enqueue         │  job "process_alert" {alert_id, attempts, backoff}
    │                     │  failure → EnqueueError (alert stays PENDING)
    └─────────────────────┘

With ALERT_SYNC_PROCESSING the queue is inline, so step 3 runs the whole
delivery before returning and the returned alert is already terminal.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from backend.app.alerts.audience import list_users_by_audience
from backend.app.alerts.models import (
    Alert,
    AlertBlock,
    AlertStatus,
    Audience,
    UserTarget,
)
from backend.app.alerts.queue import (
    PROCESS_ALERT_JOB,
    AlertJobPayload,
    JobQueue,
    RetryPolicy,
    job_id_for,
)
from backend.app.alerts.store import AlertStore, UserStore
from backend.app.core.errors import (
    ConflictError,
    EnqueueError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

BlockInput = Union[AlertBlock, Dict[str, Any]]


# ═══════════════════════════════════════════════════════════════════════════
# Input Normalisation
# ═══════════════════════════════════════════════════════════════════════════

def parse_audience(value: Union[str, Audience, None]) -> Audience:
    if value is None or value == "":
        return Audience.ALL
    if isinstance(value, Audience):
        return value
    try:
        return Audience(str(value).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Unknown audience '{value}'",
            field="audience",
            allowed=[a.value for a in Audience],
        ) from None


def normalise_recipients(recipients: Optional[Iterable[Any]]) -> List[str]:
    """Strip, drop blanks and de-duplicate while keeping first-seen order."""
    seen: Dict[str, None] = {}
    for raw in recipients or []:
        if raw is None:
            continue
        user_id = str(raw).strip()
        if user_id:
            seen.setdefault(user_id, None)
    return list(seen)


def normalise_blocks(blocks: Optional[Sequence[BlockInput]]) -> List[AlertBlock]:
    if not blocks:
        raise ValidationError("At least one message block is required", field="blocks")

    result: List[AlertBlock] = []
    for index, block in enumerate(blocks):
        if isinstance(block, AlertBlock):
            result.append(AlertBlock.from_dict(block.to_dict()))
            continue
        if not isinstance(block, dict):
            raise ValidationError(
                "Message block must be an object", field=f"blocks[{index}]",
            )
        if not isinstance(block.get("data") or {}, dict):
            raise ValidationError(
                "Block data must be an object", field=f"blocks[{index}].data",
            )
        result.append(AlertBlock.from_dict(block))

    first = result[0]
    if not first.title and not first.body:
        raise ValidationError(
            "The first message block needs a title or a body", field="blocks[0]",
        )
    return result


# ═══════════════════════════════════════════════════════════════════════════
# Service
# ═══════════════════════════════════════════════════════════════════════════

class AlertService:
    def __init__(
        self,
        alerts: AlertStore,
        users: UserStore,
        queue: JobQueue,
        policy: RetryPolicy,
    ):
        self._alerts = alerts
        self._users = users
        self._queue = queue
        self._policy = policy

    async def create_and_schedule(
        self,
        author: str,
        audience: Union[str, Audience, None],
        recipients: Optional[Iterable[Any]],
        blocks: Optional[Sequence[BlockInput]],
    ) -> Alert:
        if not author or not str(author).strip():
            raise ValidationError("Alert author is required", field="created_by")

        parsed_audience = parse_audience(audience)
        parsed_recipients = normalise_recipients(recipients)
        parsed_blocks = normalise_blocks(blocks)

        if parsed_recipients:
            parsed_audience = Audience.CUSTOM
        elif parsed_audience is Audience.CUSTOM:
            raise ValidationError(
                "A custom audience needs at least one recipient", field="recipients",
            )

        alert = await self._alerts.create(
            Alert(
                created_by=str(author).strip(),
                audience=parsed_audience,
                recipients=parsed_recipients,
                blocks=parsed_blocks,
                status=AlertStatus.PENDING,
            )
        )
        logger.info(
            "Alert %s created by %s (audience=%s, recipients=%d, blocks=%d)",
            alert.id, alert.created_by, alert.audience.value,
            len(alert.recipients), len(alert.blocks),
        )

        payload = AlertJobPayload(
            alert_id=alert.id,
            attempts=self._policy.attempts,
            backoff_ms=self._policy.backoff_ms,
        )
        try:
            job_id = await self._queue.enqueue(
                PROCESS_ALERT_JOB, payload.model_dump(), job_id=job_id_for(alert.id),
            )
        except Exception as exc:
            logger.error("Alert %s persisted but could not be enqueued: %s", alert.id, exc)
            raise EnqueueError(alert.id, str(exc)) from exc

        logger.info("Alert %s scheduled as job %s", alert.id, job_id)
        return await self._alerts.get(alert.id) or alert

    async def get_alert(self, alert_id: str) -> Alert:
        alert = await self._alerts.get(alert_id)
        if alert is None:
            raise NotFoundError("Alert", id=alert_id)
        return alert

    async def list_alerts(
        self,
        *,
        created_by: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Dict[str, Any]:
        """
        Page through alerts, newest first.

        Returns
        -------
        dict
            ``{items, total, page, limit, total_pages}``
        """
        if page < 1:
            raise ValidationError("page must be >= 1", field="page")
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(
                f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit",
            )
        if from_date and to_date and from_date > to_date:
            raise ValidationError("from_date must not be after to_date", field="from_date")

        items, total = await self._alerts.list(
            created_by=created_by,
            from_date=from_date,
            to_date=to_date,
            search=(search or "").strip() or None,
            page=page,
            limit=limit,
        )
        return {
            "items": items,
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit) if total else 0,
        }

    async def delete_alert(self, alert_id: str, requester: str) -> None:
        alert = await self.get_alert(alert_id)
        if alert.created_by != requester:
            raise ForbiddenError(
                "Only the author of an alert can delete it", alert_id=alert_id,
            )
        if alert.status is AlertStatus.IN_PROGRESS:
            raise ConflictError(
                "Alert is being delivered and cannot be deleted yet",
                alert_id=alert_id,
                status=alert.status.value,
            )
        if not await self._alerts.delete(alert_id):
            raise NotFoundError("Alert", id=alert_id)
        logger.info("Alert %s deleted by %s", alert_id, requester)

    async def list_users_by_audience(
        self, audience: Union[str, Audience],
    ) -> List[UserTarget]:
        return await list_users_by_audience(self._users, parse_audience(audience))
