"""
queue.py — Durable job dispatch for alert processing.

Backends:
    ArqJobQueue     — Redis-backed arq queue; dead letters go to a Redis list
    InlineJobQueue  — runs jobs in-process (ALERT_SYNC_PROCESSING), same
                      retry / backoff / dead-letter semantics

═══════════════════════════════════════════════════════════════════════════
RETRY & DEAD-LETTER STRATEGY
═══════════════════════════════════════════════════════════════════════════

    attempt fails ──► retryable and attempts remain?
                        │ yes                     │ no
                        ▼                         ▼
                 Retry(defer=backoff)      payload → DLQ (verbatim)
                                           alert forced to FAILED

Backoff formula (exponential):
    delay = JOB_BACKOFF_MS × 2^(attempt - 1)

    Example (base=2000ms, 5 attempts):
        after 1: 2s, after 2: 4s, after 3: 8s, after 4: 16s, then DLQ

Retryable: store outages, provider outages, a missing alert, anything
unexpected. Not retryable: validation and state-transition errors.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from arq import Retry, create_pool
from arq.connections import ArqRedis, RedisSettings
from pydantic import BaseModel, Field

from backend.app.alerts.processor import AlertJobProcessor
from backend.app.alerts.store import AlertStore
from backend.app.core.errors import is_retryable

logger = logging.getLogger(__name__)

PROCESS_ALERT_JOB = "process_alert"


# ═══════════════════════════════════════════════════════════════════════════
# Retry Policy & Payload
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RetryPolicy:
    """Bounded attempts with exponential backoff."""
    attempts: int = 5
    backoff_ms: int = 2000

    def compute_backoff(self, attempt: int) -> float:
        """
        Delay in seconds before the attempt after ``attempt`` (1-based).
        """
        return self.backoff_ms * (2 ** (max(attempt, 1) - 1)) / 1000.0

    def allows_retry(self, attempt: int) -> bool:
        return attempt < self.attempts


class AlertJobPayload(BaseModel):
    alert_id: str
    attempts: int = Field(default=5, ge=1)
    backoff_ms: int = Field(default=2000, ge=0)

    @property
    def policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=self.attempts, backoff_ms=self.backoff_ms)


def job_id_for(alert_id: str) -> str:
    # one live job per alert
    return f"alert:{alert_id}"


# ═══════════════════════════════════════════════════════════════════════════
# Queue Backends
# ═══════════════════════════════════════════════════════════════════════════

class JobQueue(Protocol):
    async def enqueue(self, job_name: str, payload: Dict[str, Any], *, job_id: str) -> str:
        ...

    async def move_to_dead_letter(self, payload: Dict[str, Any]) -> None:
        ...

    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        ...


class ArqJobQueue:
    """arq producer plus the Redis list that holds dead letters."""

    def __init__(self, redis_url: str, *, queue_name: str, dlq_name: str):
        self._redis_settings = RedisSettings.from_dsn(redis_url)
        self.queue_name = queue_name
        self.dlq_name = dlq_name
        self._pool: Optional[ArqRedis] = None
        self._lock = asyncio.Lock()

    async def _redis(self) -> ArqRedis:
        if self._pool is None:
            async with self._lock:
                if self._pool is None:
                    self._pool = await create_pool(
                        self._redis_settings,
                        default_queue_name=self.queue_name,
                    )
        return self._pool

    async def enqueue(self, job_name: str, payload: Dict[str, Any], *, job_id: str) -> str:
        redis = await self._redis()
        job = await redis.enqueue_job(
            job_name,
            payload,
            _job_id=job_id,
            _queue_name=self.queue_name,
        )
        if job is None:
            logger.info("Job %s already queued, not enqueued twice", job_id)
            return job_id
        return job.job_id

    async def move_to_dead_letter(self, payload: Dict[str, Any]) -> None:
        redis = await self._redis()
        await redis.rpush(self.dlq_name, json.dumps(payload))

    async def dead_letters(self) -> List[Dict[str, Any]]:
        redis = await self._redis()
        return [json.loads(raw) for raw in await redis.lrange(self.dlq_name, 0, -1)]

    async def ping(self) -> bool:
        try:
            redis = await self._redis()
            return bool(await redis.ping())
        except Exception as exc:
            logger.warning("Redis ping failed: %s", exc)
            return False

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None


JobHandler = Callable[..., Awaitable[Any]]


class InlineJobQueue:
    """
    Executes each job inside ``enqueue``.

    Handlers raise ``arq.Retry`` to ask for another attempt, exactly as
    they do under the worker; the deferral is honoured with a sleep.
    """

    def __init__(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self._handlers: Dict[str, JobHandler] = {}
        self._sleep = sleep
        self.dead_letter_queue: List[Dict[str, Any]] = []

    def register(self, job_name: str, handler: JobHandler) -> None:
        self._handlers[job_name] = handler

    async def enqueue(self, job_name: str, payload: Dict[str, Any], *, job_id: str) -> str:
        handler = self._handlers.get(job_name)
        if handler is None:
            raise LookupError(f"No inline handler registered for job '{job_name}'")

        attempt = 1
        while True:
            try:
                await handler(dict(payload), job_id=job_id, attempt=attempt)
                return job_id
            except Retry as retry:
                delay = (retry.defer_score or 0) / 1000.0
                attempt += 1
                if delay:
                    await self._sleep(delay)

    async def move_to_dead_letter(self, payload: Dict[str, Any]) -> None:
        self.dead_letter_queue.append(dict(payload))

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


# ═══════════════════════════════════════════════════════════════════════════
# Job Execution
# ═══════════════════════════════════════════════════════════════════════════

class AlertJobRunner:
    """
    Runs one attempt of a ``process_alert`` job and applies the retry /
    dead-letter decision. Shared by the arq worker and the inline queue.

    ``attempt_timeout`` bounds a single attempt. A timed-out attempt is a
    retryable failure, so the last one still reaches the dead-letter path
    instead of being cancelled from outside.
    """

    def __init__(
        self,
        processor: AlertJobProcessor,
        alerts: AlertStore,
        queue: JobQueue,
        *,
        max_attempts: Optional[int] = None,
        attempt_timeout: Optional[float] = None,
    ):
        self._processor = processor
        self._alerts = alerts
        self._queue = queue
        self._max_attempts = max_attempts
        self._attempt_timeout = attempt_timeout

    async def run(self, payload: Dict[str, Any], *, job_id: str, attempt: int) -> Optional[str]:
        job = AlertJobPayload.model_validate(payload)
        policy = job.policy
        if self._max_attempts is not None and policy.attempts > self._max_attempts:
            policy = RetryPolicy(attempts=self._max_attempts, backoff_ms=policy.backoff_ms)

        if attempt > policy.attempts:
            # redelivered after the final attempt died mid-flight
            logger.error(
                "Alert job %s redelivered as attempt %d, budget is %d",
                job_id, attempt, policy.attempts,
            )
            await self.dead_letter(payload, job_id=job_id)
            return None

        try:
            alert = await asyncio.wait_for(
                self._processor.process(job.alert_id, job_id=job_id, attempt=attempt),
                self._attempt_timeout,
            )
            return alert.status.value
        except Exception as exc:
            if isinstance(exc, asyncio.TimeoutError) and self._attempt_timeout is not None:
                logger.warning(
                    "Alert job %s attempt %d timed out after %.1fs",
                    job_id, attempt, self._attempt_timeout,
                )
            if is_retryable(exc) and policy.allows_retry(attempt):
                delay = policy.compute_backoff(attempt)
                logger.warning(
                    "Alert job %s attempt %d/%d failed (%s: %s), retrying in %.1fs",
                    job_id, attempt, policy.attempts, type(exc).__name__, exc, delay,
                )
                raise Retry(defer=delay) from exc

            logger.error(
                "Alert job %s failed permanently after %d attempt(s)",
                job_id, attempt, exc_info=exc,
            )
            await self.dead_letter(payload, job_id=job_id)
            return None

    async def dead_letter(self, payload: Dict[str, Any], *, job_id: str) -> None:
        """Move ``payload`` to the DLQ verbatim and force its alert to FAILED."""
        try:
            await self._queue.move_to_dead_letter(payload)
            logger.warning("Alert job %s moved to dead-letter queue", job_id)
        except Exception:
            logger.exception("Could not dead-letter alert job %s", job_id)

        alert_id = payload.get("alert_id")
        if not alert_id:
            return
        try:
            alert = await self._alerts.force_failed(alert_id)
        except Exception:
            logger.exception("Could not force alert %s to FAILED", alert_id)
            return
        if alert is not None:
            logger.warning("Alert %s is now %s", alert_id, alert.status.value)
