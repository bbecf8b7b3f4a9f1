"""
Render worker.

Continuously claims pending render jobs, renders them and reports the
outcome back to the orchestrator.
"""
import asyncio
import json
import signal
import socket
import sys
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import structlog

from printflow.config import Settings, get_settings
from printflow.core.designs import canonicalize_params
from printflow.core.render_jobs import RenderJobDescriptor, RenderOrchestrator, RenderOutcome
from printflow.monitoring.logging import setup_logging
from printflow.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Renderer = Callable[[RenderJobDescriptor], Awaitable[RenderOutcome]]


class LocalFileRenderer:
    """
    Writes a render manifest for each job into a local directory.

    Stands in for the image pipeline; the artifact URL is the manifest's
    file:// URI.
    """

    def __init__(self, output_dir: str):
        self.output_dir = Path(output_dir)

    def _write(self, job: RenderJobDescriptor) -> str:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / f"{job.design_id}-{job.attempt}.json"
        path.write_text(
            json.dumps(
                {
                    "job_id": str(job.job_id),
                    "design_id": str(job.design_id),
                    "attempt": job.attempt,
                    "params": json.loads(canonicalize_params(job.params)),
                },
                indent=2,
            ),
            encoding="utf-8",
        )
        return path.resolve().as_uri()

    async def __call__(self, job: RenderJobDescriptor) -> RenderOutcome:
        loop = asyncio.get_running_loop()
        try:
            url = await loop.run_in_executor(None, self._write, job)
        except OSError as e:
            return RenderOutcome(job_id=job.job_id, success=False, failure_reason=str(e))
        return RenderOutcome(job_id=job.job_id, success=True, artifact_url=url)


class RenderWorker:
    """Polls for pending render jobs and runs them one at a time."""

    def __init__(
        self,
        renderer: Renderer,
        orchestrator: Optional[RenderOrchestrator] = None,
        worker_id: Optional[str] = None,
        poll_interval_seconds: Optional[float] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.renderer = renderer
        self.orchestrator = orchestrator or RenderOrchestrator(settings=settings)
        self.worker_id = worker_id or settings.render_worker_id or socket.gethostname()
        self.poll_interval_seconds = (
            poll_interval_seconds
            if poll_interval_seconds is not None
            else settings.render_poll_interval_seconds
        )
        self._running = False

    async def run_once(self) -> bool:
        """
        Claim and process a single job.

        Returns:
            bool: True if a job was processed, False if nothing was pending
        """
        metrics.mark_worker_poll("render")
        job = await self.orchestrator.claim(self.worker_id)
        if job is None:
            return False

        metrics.record_render_claimed()
        descriptor = RenderJobDescriptor.from_job(job)
        start_time = time.time()
        try:
            outcome = await self.renderer(descriptor)
        except Exception as e:
            # A crashing renderer is a failed attempt, not a dead worker
            logger.error(
                "render_worker_renderer_error",
                job_id=str(descriptor.job_id),
                error=str(e),
            )
            outcome = RenderOutcome(
                job_id=descriptor.job_id,
                success=False,
                failure_reason=f"{type(e).__name__}: {e}",
            )
        metrics.record_render_duration(time.time() - start_time)

        result = await self.orchestrator.report(outcome)
        if result.applied:
            metrics.record_render_finished(result.job.status.value, exhausted=result.exhausted)
        return True

    async def start(self) -> None:
        """Run until stop() is called."""
        self._running = True
        logger.info("render_worker_started", worker_id=self.worker_id)

        try:
            while self._running:
                try:
                    processed = await self.run_once()
                    if processed:
                        # Work was found, check immediately for more
                        await asyncio.sleep(0)
                    else:
                        await asyncio.sleep(self.poll_interval_seconds)

                except Exception as e:
                    logger.error("render_worker_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)

        finally:
            logger.info("render_worker_stopped", worker_id=self.worker_id)

    def stop(self) -> None:
        self._running = False
        logger.info("render_worker_stop_requested", worker_id=self.worker_id)


async def start_render_worker(renderer: Optional[Renderer] = None) -> None:
    """Start a render worker using the local file renderer by default."""
    settings = get_settings()
    worker = RenderWorker(renderer or LocalFileRenderer(settings.render_output_dir), settings=settings)
    setup_logging(settings, role="render_worker", worker_id=worker.worker_id)

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("render_worker_shutdown_signal_received", signal=sig)
        worker.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await worker.start()
    except Exception as e:
        logger.error("render_worker_fatal_error", error=str(e))
        sys.exit(1)


def main() -> None:
    asyncio.run(start_render_worker())


if __name__ == "__main__":
    main()
