"""
Health check aggregation — deep probe for the alert pipeline.

Checks:
    • Alert store connectivity (SQL ping / memory backend)
    • Job queue connectivity (Redis, or the inline queue)
    • Push provider configuration

The report backs /health and /health/ready:
    healthy    — every component answers
    degraded   — push provider is simulated outside development
    unhealthy  — store or queue unreachable (readiness returns 503)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List

from backend.app.core.config import settings

if TYPE_CHECKING:
    from backend.app.alerts.container import PipelineContainer

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


_start_time = time.monotonic()


def _redact(url: str) -> str:
    return url.split("@")[-1]


async def _probe(name: str, ping: Callable[[], Awaitable[bool]], ok: str, down: str) -> ComponentHealth:
    comp = ComponentHealth(name=name)
    start = time.monotonic()
    try:
        healthy = await ping()
    except Exception as exc:
        healthy = False
        down = f"{down}: {exc}"
    comp.status = HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY
    comp.message = ok if healthy else down
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_store(container: "PipelineContainer") -> ComponentHealth:
    comp = await _probe("alert_store", container.alerts.ping, "Store reachable", "Store unreachable")
    comp.details = {"backend": container.settings.STORE_BACKEND}
    if container.settings.STORE_BACKEND == "sql":
        comp.details["url"] = _redact(container.settings.DATABASE_URL)
    return comp


async def check_queue(container: "PipelineContainer") -> ComponentHealth:
    comp = await _probe("job_queue", container.queue.ping, "Queue reachable", "Queue unreachable")
    comp.details = {
        "mode": "inline" if container.settings.ALERT_SYNC_PROCESSING else "arq",
        "queue": container.settings.ALERT_QUEUE_NAME,
        "dead_letter_queue": container.settings.DLQ_QUEUE_NAME,
    }
    if not container.settings.ALERT_SYNC_PROCESSING:
        comp.details["url"] = _redact(container.settings.REDIS_URL)
    return comp


async def check_push_provider(container: "PipelineContainer") -> ComponentHealth:
    provider = container.settings.PUSH_PROVIDER
    comp = ComponentHealth(name="push_provider", details={"provider": provider})
    if provider == "simulation" and not container.settings.is_development:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Push delivery is simulated"
    else:
        comp.message = f"{provider} configured"
    return comp


async def run_health_check(container: "PipelineContainer") -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    for check in (check_store, check_queue, check_push_provider):
        report.components.append(await check(container))

    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    if report.status is not HealthStatus.HEALTHY:
        logger.warning("Health check %s: %s", report.status.value, [c.to_dict() for c in report.components])
    return report
