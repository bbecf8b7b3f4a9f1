"""
Maintenance background worker.

On an interval:
- deletes rate limit windows that have expired
- fails render jobs whose worker stopped reporting before its lease ran out,
  so the job is retried instead of blocking its design
"""
import asyncio
import signal
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import structlog

from printflow.config import Settings, get_settings
from printflow.core.rate_limiter import RateLimiter, create_rate_limit_store
from printflow.core.render_jobs import RenderOrchestrator
from printflow.monitoring.logging import setup_logging
from printflow.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class MaintenanceReport:
    purged_windows: int
    reclaimed_jobs: int
    exhausted_jobs: int = 0


class MaintenanceWorker:
    """Purges expired rate limit counters and reclaims stale render jobs."""

    def __init__(
        self,
        rate_limiter: Optional[RateLimiter] = None,
        orchestrator: Optional[RenderOrchestrator] = None,
        interval_seconds: Optional[float] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.rate_limiter = rate_limiter or RateLimiter(
            create_rate_limit_store(settings),
            window_seconds=settings.rate_limit_window_seconds,
        )
        self.orchestrator = orchestrator or RenderOrchestrator(settings=settings)
        self.interval_seconds = interval_seconds or settings.rate_limit_gc_interval_seconds
        self._running = False

    async def run_once(self, now: Optional[datetime] = None) -> MaintenanceReport:
        metrics.mark_worker_poll("maintenance")

        purged = await self.rate_limiter.purge_expired(now)
        metrics.record_rate_limit_purge(purged)

        reclaimed = await self.orchestrator.reclaim_stale(now=now)
        exhausted = sum(1 for result in reclaimed if result.exhausted)
        metrics.record_render_reclaimed(len(reclaimed), exhausted)

        return MaintenanceReport(
            purged_windows=purged,
            reclaimed_jobs=len(reclaimed),
            exhausted_jobs=exhausted,
        )

    async def start(self) -> None:
        self._running = True
        logger.info("maintenance_worker_started", interval_seconds=self.interval_seconds)

        try:
            while self._running:
                try:
                    await self.run_once()
                except Exception as e:
                    logger.error("maintenance_worker_error", error=str(e))
                await asyncio.sleep(self.interval_seconds)

        finally:
            logger.info("maintenance_worker_stopped")

    def stop(self) -> None:
        self._running = False


async def start_maintenance_worker() -> None:
    settings = get_settings()
    setup_logging(settings, role="maintenance")
    worker = MaintenanceWorker(settings=settings)

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("maintenance_worker_shutdown_signal_received", signal=sig)
        worker.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await worker.start()
    except Exception as e:
        logger.error("maintenance_worker_fatal_error", error=str(e))
        sys.exit(1)


def main() -> None:
    asyncio.run(start_maintenance_worker())


if __name__ == "__main__":
    main()
