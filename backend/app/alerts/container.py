"""
container.py — Explicitly constructed dependency set for API and worker.

    build_container(settings) ──► PipelineContainer
                                     │
                 startup()  ─────────┤  create tables (sqlite / development)
                 healthcheck() ──────┤  store, queue and push provider probes
                 shutdown() ─────────┘  close queue, push provider, engine

Backends are chosen from settings:
    STORE_BACKEND           sql | memory
    PUSH_PROVIDER           fcm | simulation
    ALERT_SYNC_PROCESSING   inline queue instead of arq
    DELIVERY_DEDUPE_ENABLED per-(alert, user, channel) ledger
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from backend.app.alerts.alert_service import AlertService
from backend.app.alerts.audience import AudienceResolver
from backend.app.alerts.channels.push import (
    FcmPushProvider,
    PushProvider,
    SimulatedPushProvider,
)
from backend.app.alerts.dispatcher import BatchPushDispatcher
from backend.app.alerts.fanout import InAppFanoutWriter
from backend.app.alerts.processor import AlertJobProcessor
from backend.app.alerts.queue import (
    PROCESS_ALERT_JOB,
    AlertJobRunner,
    ArqJobQueue,
    InlineJobQueue,
    JobQueue,
    RetryPolicy,
)
from backend.app.alerts.sql_store import (
    SqlAlertStore,
    SqlDeliveryLedger,
    SqlNotificationStore,
    SqlUserStore,
)
from backend.app.alerts.store import (
    AlertStore,
    DeliveryLedger,
    InMemoryAlertStore,
    InMemoryDeliveryLedger,
    InMemoryNotificationStore,
    InMemoryUserStore,
    NotificationStore,
    UserStore,
)
from backend.app.core.config import Settings
from backend.app.core.health import HealthReport, run_health_check
from backend.app.core.database import (
    build_engine,
    build_session_factory,
    close_db,
    init_db,
)

logger = logging.getLogger(__name__)


@dataclass
class PipelineContainer:
    settings: Settings
    alerts: AlertStore
    users: UserStore
    notifications: NotificationStore
    push: PushProvider
    queue: JobQueue
    service: AlertService
    processor: AlertJobProcessor
    runner: AlertJobRunner
    ledger: Optional[DeliveryLedger] = None
    engine: Optional[AsyncEngine] = None
    _started: bool = field(default=False, repr=False)

    async def startup(self, *, create_schema: Optional[bool] = None) -> None:
        """Open long-lived resources. Schema creation defaults to dev/sqlite only."""
        if self._started:
            return
        if self.engine is not None:
            if create_schema is None:
                create_schema = self.settings.is_sqlite or self.settings.is_development
            if create_schema:
                await init_db(self.engine)
        self._started = True
        logger.info(
            "Pipeline started (store=%s, push=%s, queue=%s, dedupe=%s)",
            self.settings.STORE_BACKEND, self.settings.PUSH_PROVIDER,
            type(self.queue).__name__, self.ledger is not None,
        )

    async def healthcheck(self) -> HealthReport:
        return await run_health_check(self)

    async def shutdown(self) -> None:
        """Close everything opened by the container, tolerating partial failure."""
        for name, closer in (
            ("queue", self.queue.close),
            ("push provider", self.push.close),
        ):
            try:
                await closer()
            except Exception:
                logger.exception("Error closing %s", name)
        if self.engine is not None:
            await close_db(self.engine)
        self._started = False
        logger.info("Pipeline shut down")


def build_push_provider(settings: Settings) -> PushProvider:
    provider = settings.PUSH_PROVIDER.lower()
    if provider == "fcm":
        return FcmPushProvider(
            credentials_path=settings.FIREBASE_CREDENTIALS_PATH,
            credentials_json=settings.FIREBASE_CREDENTIALS_JSON,
        )
    if provider == "simulation":
        return SimulatedPushProvider()
    raise ValueError(f"Unknown PUSH_PROVIDER '{settings.PUSH_PROVIDER}'")


def build_container(
    settings: Settings,
    *,
    alerts: Optional[AlertStore] = None,
    users: Optional[UserStore] = None,
    notifications: Optional[NotificationStore] = None,
    push: Optional[PushProvider] = None,
    queue: Optional[JobQueue] = None,
    ledger: Optional[DeliveryLedger] = None,
) -> PipelineContainer:
    """
    Wire the pipeline from ``settings``. Any collaborator passed explicitly
    replaces the one the settings would select.
    """
    engine: Optional[AsyncEngine] = None
    backend = settings.STORE_BACKEND.lower()

    if backend == "sql":
        engine = build_engine(settings.DATABASE_URL, app_settings=settings)
        sessions = build_session_factory(engine)
        alerts = alerts or SqlAlertStore(engine, sessions)
        users = users or SqlUserStore(sessions)
        notifications = notifications or SqlNotificationStore(sessions)
        if settings.DELIVERY_DEDUPE_ENABLED and ledger is None:
            ledger = SqlDeliveryLedger(sessions)
    elif backend == "memory":
        alerts = alerts or InMemoryAlertStore()
        users = users or InMemoryUserStore()
        notifications = notifications or InMemoryNotificationStore()
        if settings.DELIVERY_DEDUPE_ENABLED and ledger is None:
            ledger = InMemoryDeliveryLedger()
    else:
        raise ValueError(f"Unknown STORE_BACKEND '{settings.STORE_BACKEND}'")

    push = push or build_push_provider(settings)

    if queue is None:
        if settings.ALERT_SYNC_PROCESSING:
            queue = InlineJobQueue()
        else:
            queue = ArqJobQueue(
                settings.REDIS_URL,
                queue_name=settings.ALERT_QUEUE_NAME,
                dlq_name=settings.DLQ_QUEUE_NAME,
            )

    processor = AlertJobProcessor(
        alerts,
        AudienceResolver(users),
        BatchPushDispatcher(push, users, batch_size=settings.BATCH_SIZE, ledger=ledger),
        InAppFanoutWriter(
            notifications,
            batch_size=settings.BATCH_SIZE,
            delay_ms=settings.INAPP_BATCH_DELAY_MS,
            default_title=settings.DEFAULT_NOTIFICATION_TITLE,
            default_message=settings.DEFAULT_NOTIFICATION_MESSAGE,
            action_link=settings.ALERT_ACTION_LINK,
            ledger=ledger,
        ),
    )
    runner = AlertJobRunner(
        processor, alerts, queue,
        max_attempts=settings.JOB_ATTEMPTS,
        attempt_timeout=settings.job_attempt_timeout,
    )
    if isinstance(queue, InlineJobQueue):
        queue.register(PROCESS_ALERT_JOB, runner.run)

    policy = RetryPolicy(attempts=settings.JOB_ATTEMPTS, backoff_ms=settings.JOB_BACKOFF_MS)
    service = AlertService(alerts, users, queue, policy)

    return PipelineContainer(
        settings=settings,
        alerts=alerts,
        users=users,
        notifications=notifications,
        push=push,
        queue=queue,
        service=service,
        processor=processor,
        runner=runner,
        ledger=ledger,
        engine=engine,
    )
