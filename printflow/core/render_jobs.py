"""
Render job orchestrator.

Jobs move pending → processing → completed | failed, and pending or
processing jobs may be cancelled. Workers coordinate only through the
render_jobs table:

- submission is INSERT ... ON CONFLICT DO NOTHING on the idempotency key
- claiming is a conditional UPDATE guarded on status = 'pending'
- completion, failure and cancellation are conditional UPDATEs guarded on
  the source status, so the first writer to commit wins
- a processing job held past its lease is failed by reclaim_stale(), which
  the maintenance worker runs
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from printflow.config import Settings, get_settings
from printflow.core.designs import transition_design
from printflow.core.errors import ExhaustedRetries, NotFoundError, ValidationError
from printflow.database.connection import get_session_factory
from printflow.database.models import (
    Design,
    DesignStatus,
    RenderJob,
    RenderJobStatus,
    utc_now,
)
from printflow.database.upsert import insert_if_absent

logger = structlog.get_logger(__name__)

# A job in one of these states satisfies a new submission for the same key
REUSABLE_STATUSES = (
    RenderJobStatus.PENDING,
    RenderJobStatus.PROCESSING,
    RenderJobStatus.COMPLETED,
)
ACTIVE_STATUSES = (RenderJobStatus.PENDING, RenderJobStatus.PROCESSING)


def render_idempotency_key(design: Design) -> str:
    """Key shared by every render attempt of one design's params."""
    return f"render:{design.id}:{design.params_crc32}"


@dataclass(frozen=True)
class SubmitResult:
    job: RenderJob
    created: bool


@dataclass(frozen=True)
class CompletionResult:
    """
    Outcome of complete() or fail().

    ``applied`` is False when the job was no longer processing. After a
    failure, ``retry_job`` holds the automatically scheduled next attempt, or
    ``exhausted`` is True when the attempt cap was reached.
    """

    job: RenderJob
    applied: bool
    exhausted: bool = False
    retry_job: Optional[RenderJob] = None


@dataclass(frozen=True)
class CancelResult:
    job: RenderJob
    cancelled: bool
    already_completed: bool = False


@dataclass(frozen=True)
class RenderJobDescriptor:
    """What a render worker receives for a claimed job."""

    job_id: uuid.UUID
    design_id: uuid.UUID
    attempt: int
    params: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_job(cls, job: RenderJob) -> "RenderJobDescriptor":
        return cls(
            job_id=job.id,
            design_id=job.design_id,
            attempt=job.attempt,
            params=dict(job.render_params or {}),
        )


@dataclass(frozen=True)
class RenderOutcome:
    """What a render worker reports back."""

    job_id: uuid.UUID
    success: bool
    artifact_url: Optional[str] = None
    failure_reason: Optional[str] = None


class RenderOrchestrator:
    """Owns the render job lifecycle and the design status it drives."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        max_attempts: Optional[int] = None,
        claim_retries: Optional[int] = None,
        lease_seconds: Optional[int] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.max_attempts = max_attempts or settings.render_max_attempts
        self.claim_retries = claim_retries or settings.render_claim_retries
        self.lease_seconds = lease_seconds or settings.render_lease_seconds

    @staticmethod
    async def _latest_job(session: AsyncSession, key: str) -> Optional[RenderJob]:
        stmt = (
            select(RenderJob)
            .where(RenderJob.idempotency_key == key)
            .order_by(RenderJob.attempt.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    @staticmethod
    async def _load_job(session: AsyncSession, job_id: uuid.UUID) -> RenderJob:
        job = await session.get(RenderJob, job_id, populate_existing=True)
        if job is None:
            raise NotFoundError("RenderJob", job_id)
        return job

    async def _insert_attempt(
        self, session: AsyncSession, design: Design, key: str, attempt: int
    ) -> Optional[RenderJob]:
        """Insert attempt ``attempt`` for ``key``; None if another writer got there first."""
        job_id = uuid.uuid4()
        now = utc_now()
        created = await insert_if_absent(
            session,
            RenderJob,
            {
                "id": job_id,
                "design_id": design.id,
                "idempotency_key": key,
                "attempt": attempt,
                "status": RenderJobStatus.PENDING,
                "render_params": design.params,
                "created_at": now,
                "updated_at": now,
            },
        )
        if not created:
            return None
        return await session.get(RenderJob, job_id)

    async def submit(self, design_id: uuid.UUID) -> SubmitResult:
        """
        Submit a design for rendering.

        Returns the existing job while one is pending, processing or
        completed for the design's key. Otherwise creates the next attempt.

        Raises:
            NotFoundError: If the design does not exist
            ExhaustedRetries: If the latest attempt failed at the attempt cap
        """
        return await self._submit(design_id, enforce_cap=True)

    async def resubmit(self, design_id: uuid.UUID) -> SubmitResult:
        """Operator resubmission: like submit(), but past the attempt cap."""
        return await self._submit(design_id, enforce_cap=False)

    async def _submit(self, design_id: uuid.UUID, enforce_cap: bool) -> SubmitResult:
        async with self.session_factory() as session, session.begin():
            design = await session.get(Design, design_id)
            if design is None:
                raise NotFoundError("Design", design_id)
            key = render_idempotency_key(design)

            latest = await self._latest_job(session, key)
            if latest is not None and latest.status in REUSABLE_STATUSES:
                logger.info(
                    "render_job_deduplicated",
                    job_id=str(latest.id),
                    design_id=str(design_id),
                    status=latest.status.value,
                )
                return SubmitResult(job=latest, created=False)

            if (
                enforce_cap
                and latest is not None
                and latest.status == RenderJobStatus.FAILED
                and latest.attempt >= self.max_attempts
            ):
                raise ExhaustedRetries(design_id, latest.attempt)

            attempt = latest.attempt + 1 if latest is not None else 1
            job = await self._insert_attempt(session, design, key, attempt)
            if job is None:
                # A concurrent submitter inserted first; converge on its job
                winner = await self._latest_job(session, key)
                if winner is None:
                    raise RuntimeError(f"Render job for {key} vanished after conflict")
                logger.info(
                    "render_job_submit_converged",
                    job_id=str(winner.id),
                    design_id=str(design_id),
                )
                return SubmitResult(job=winner, created=False)

            transition_design(design, DesignStatus.QUEUED)

        logger.info(
            "render_job_submitted",
            job_id=str(job.id),
            design_id=str(design_id),
            attempt=attempt,
            operator=not enforce_cap,
        )
        return SubmitResult(job=job, created=True)

    async def claim(self, worker_id: Optional[str] = None) -> Optional[RenderJob]:
        """
        Claim the oldest pending job for a worker.

        Exactly one of several concurrent claimers wins any given job; losers
        move on to the next candidate. Returns None when nothing is pending.
        """
        async with self.session_factory() as session, session.begin():
            for _ in range(self.claim_retries):
                candidate_stmt = (
                    select(RenderJob.id)
                    .where(RenderJob.status == RenderJobStatus.PENDING)
                    .order_by(RenderJob.created_at, RenderJob.id)
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
                candidate_id = (await session.execute(candidate_stmt)).scalar_one_or_none()
                if candidate_id is None:
                    return None

                now = utc_now()
                result = await session.execute(
                    update(RenderJob)
                    .where(
                        RenderJob.id == candidate_id,
                        RenderJob.status == RenderJobStatus.PENDING,
                    )
                    .values(
                        status=RenderJobStatus.PROCESSING,
                        worker_id=worker_id,
                        started_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    logger.debug("render_job_claim_lost", job_id=str(candidate_id))
                    continue

                job = await self._load_job(session, candidate_id)
                design = await session.get(Design, job.design_id)
                if design is not None:
                    transition_design(design, DesignStatus.RENDERING)
                logger.info(
                    "render_job_claimed",
                    job_id=str(job.id),
                    worker_id=worker_id,
                    attempt=job.attempt,
                )
                return job

        logger.warning("render_job_claim_contended", retries=self.claim_retries)
        return None

    async def _finish(
        self,
        session: AsyncSession,
        job_id: uuid.UUID,
        from_statuses: Sequence[RenderJobStatus],
        values: Dict[str, Any],
    ) -> Tuple[RenderJob, bool]:
        now = utc_now()
        result = await session.execute(
            update(RenderJob)
            .where(RenderJob.id == job_id, RenderJob.status.in_(from_statuses))
            .values(completed_at=now, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        job = await self._load_job(session, job_id)
        return job, result.rowcount == 1

    async def complete(self, job_id: uuid.UUID, artifact_url: str) -> CompletionResult:
        """Mark a processing job completed and its design ready."""
        if not artifact_url:
            raise ValidationError("artifact_url is required", field="artifact_url")

        async with self.session_factory() as session, session.begin():
            job, applied = await self._finish(
                session,
                job_id,
                (RenderJobStatus.PROCESSING,),
                {"status": RenderJobStatus.COMPLETED, "result_image_url": artifact_url},
            )
            if not applied:
                logger.info(
                    "render_job_completion_ignored",
                    job_id=str(job_id),
                    status=job.status.value,
                )
                return CompletionResult(job=job, applied=False)

            design = await session.get(Design, job.design_id)
            if design is not None:
                design.final_image_url = artifact_url
                if design.preview_image_url is None:
                    design.preview_image_url = artifact_url
                transition_design(design, DesignStatus.READY)

        logger.info("render_job_completed", job_id=str(job_id), design_id=str(job.design_id))
        return CompletionResult(job=job, applied=True)

    async def fail(self, job_id: uuid.UUID, reason: str) -> CompletionResult:
        """
        Mark a processing job failed.

        Below the attempt cap the next attempt is scheduled in the same
        transaction and the design goes back to queued. At the cap the design
        is marked failed and left for operator review.
        """
        if not reason:
            raise ValidationError("failure reason is required", field="failure_reason")

        async with self.session_factory() as session, session.begin():
            job, applied = await self._finish(
                session,
                job_id,
                (RenderJobStatus.PROCESSING,),
                {"status": RenderJobStatus.FAILED, "failure_reason": reason[:255]},
            )
            if not applied:
                logger.info(
                    "render_job_failure_ignored",
                    job_id=str(job_id),
                    status=job.status.value,
                )
                return CompletionResult(job=job, applied=False)

            design = await session.get(Design, job.design_id)
            if design is None:
                raise NotFoundError("Design", job.design_id)

            if job.attempt >= self.max_attempts:
                transition_design(design, DesignStatus.FAILED)
                logger.warning(
                    "render_job_retries_exhausted",
                    job_id=str(job_id),
                    design_id=str(design.id),
                    attempts=job.attempt,
                    reason=reason,
                )
                return CompletionResult(job=job, applied=True, exhausted=True)

            retry_job = await self._insert_attempt(
                session, design, job.idempotency_key, job.attempt + 1
            )
            if retry_job is None:
                retry_job = await self._latest_job(session, job.idempotency_key)
            transition_design(design, DesignStatus.QUEUED)

        logger.info(
            "render_job_failed",
            job_id=str(job_id),
            attempt=job.attempt,
            retry_job_id=str(retry_job.id) if retry_job else None,
            reason=reason,
        )
        return CompletionResult(job=job, applied=True, retry_job=retry_job)

    async def cancel(self, job_id: uuid.UUID) -> CancelResult:
        """
        Cancel a pending or processing job and return its design to draft.

        Cancelling a job that already completed is reported as
        ``already_completed`` rather than raised.
        """
        async with self.session_factory() as session, session.begin():
            job, applied = await self._finish(
                session, job_id, ACTIVE_STATUSES, {"status": RenderJobStatus.CANCELLED}
            )
            if not applied:
                logger.info(
                    "render_job_cancel_ignored",
                    job_id=str(job_id),
                    status=job.status.value,
                )
                return CancelResult(
                    job=job,
                    cancelled=False,
                    already_completed=job.status == RenderJobStatus.COMPLETED,
                )

            design = await session.get(Design, job.design_id)
            if design is not None:
                transition_design(design, DesignStatus.DRAFT)

        logger.info("render_job_cancelled", job_id=str(job_id))
        return CancelResult(job=job, cancelled=True)

    async def reclaim_stale(
        self, lease_seconds: Optional[int] = None, now: Optional[datetime] = None
    ) -> List[CompletionResult]:
        """
        Fail processing jobs whose worker has held them past the lease.

        Each expired job goes through fail(), so it is retried below the
        attempt cap like any other failure. A worker that reports after its
        lease finds the job no longer processing and its report is ignored.
        """
        lease = lease_seconds or self.lease_seconds
        cutoff = (now or utc_now()) - timedelta(seconds=lease)
        async with self.session_factory() as session:
            stmt = (
                select(RenderJob.id)
                .where(
                    RenderJob.status == RenderJobStatus.PROCESSING,
                    RenderJob.started_at < cutoff,
                )
                .order_by(RenderJob.started_at)
            )
            stale_ids = list((await session.execute(stmt)).scalars().all())

        reclaimed = []
        for job_id in stale_ids:
            result = await self.fail(job_id, f"render lease of {lease}s expired")
            if result.applied:
                reclaimed.append(result)

        if reclaimed:
            logger.warning(
                "render_jobs_reclaimed",
                count=len(reclaimed),
                job_ids=[str(r.job.id) for r in reclaimed],
            )
        return reclaimed

    async def report(self, outcome: RenderOutcome) -> CompletionResult:
        """Apply a render worker's outcome."""
        if outcome.success:
            return await self.complete(outcome.job_id, outcome.artifact_url or "")
        return await self.fail(outcome.job_id, outcome.failure_reason or "render failed")

    async def get_job(self, job_id: uuid.UUID) -> RenderJob:
        async with self.session_factory() as session:
            return await self._load_job(session, job_id)
