"""
arq worker entry point.

Run with:
    arq backend.app.worker.WorkerSettings

The worker builds one PipelineContainer at startup, reuses it for every
job and closes it on shutdown (arq handles SIGINT / SIGTERM and lets the
running jobs finish before on_shutdown fires).
"""

from __future__ import annotations

import logging

from arq.connections import RedisSettings
from arq.worker import func

from backend.app.alerts.container import build_container
from backend.app.alerts.queue import PROCESS_ALERT_JOB, job_id_for
from backend.app.core.config import get_settings
from backend.app.core.logging_config import setup_logging

logger = logging.getLogger(__name__)


async def process_alert(ctx, payload: dict):
    container = ctx["container"]
    job_id = ctx.get("job_id") or job_id_for(payload.get("alert_id"))
    return await container.runner.run(payload, job_id=job_id, attempt=ctx.get("job_try", 1))


async def _startup(ctx) -> None:
    setup_logging()
    settings = get_settings()
    # dead letters must land in Redis even if the API runs jobs inline
    container = build_container(settings.model_copy(update={"ALERT_SYNC_PROCESSING": False}))
    await container.startup()
    ctx["container"] = container
    logger.info(
        "Alert worker ready (queue=%s, concurrency=%d, attempts=%d)",
        settings.ALERT_QUEUE_NAME, settings.WORKER_CONCURRENCY, settings.JOB_ATTEMPTS,
    )


async def _shutdown(ctx) -> None:
    container = ctx.get("container")
    if container is not None:
        await container.shutdown()
    logger.info("Alert worker stopped")


_settings = get_settings()


class WorkerSettings:
    redis_settings = RedisSettings.from_dsn(_settings.REDIS_URL)
    queue_name = _settings.ALERT_QUEUE_NAME
    functions = [func(process_alert, name=PROCESS_ALERT_JOB)]
    max_jobs = _settings.WORKER_CONCURRENCY
    # one spare try so a job whose last attempt crashed is redelivered and dead-lettered
    max_tries = _settings.JOB_ATTEMPTS + 1
    job_timeout = _settings.JOB_LOCK_DURATION_SECONDS
    keep_result = 0
    on_startup = _startup
    on_shutdown = _shutdown
