"""
Job Queue
=========

Per-stage work queue with idempotent keys and stalled-job reclamation.
Jobs are persisted through the pipeline store, so any worker process
sharing the store can pick up, reclaim or inspect them.

- At most one in-flight (waiting or active) job per key; enqueueing a key
  that is already in flight returns the existing job.
- A claimed job holds a lock until ``locked_until``. If the worker dies and
  the lock expires, the job becomes claimable again. Each claim counts as
  an attempt; a job reclaimed past its attempt cap is dead-lettered.
- Dead-lettered jobs stay in the store until someone inspects them.

Version: 0.1.0
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from services.rule_pipeline.store.base import PipelineStore
from shared.logging import get_logger
from shared.models import IN_FLIGHT_STATUSES, Job, JobStatus, utc_now

logger = get_logger(__name__)


class JobQueue:
    """
    Job queue for one stage.

    Args:
        store: Pipeline store holding the jobs
        stage: Stage name (compose, review, release)
        max_attempts: Attempt cap per job
        lock_duration: How long a claim holds a job before it counts as stalled
        now: Clock
    """

    def __init__(
        self,
        store: PipelineStore,
        stage: str,
        max_attempts: int = 3,
        lock_duration: timedelta = timedelta(minutes=15),
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.stage = stage
        self.max_attempts = max_attempts
        self.lock_duration = lock_duration
        self.now = now

    # =========================================================================
    # Producer side
    # =========================================================================

    async def enqueue(
        self,
        key: str,
        payload: dict[str, Any],
        delay: timedelta = timedelta(0),
    ) -> Job:
        """Add a job unless one with ``key`` is already in flight."""
        async with self.store.transaction():
            in_flight = await self.store.list_jobs(self.stage, IN_FLIGHT_STATUSES, key=key)
            if in_flight:
                logger.debug(
                    "job_deduplicated", stage=self.stage, key=key, job_id=in_flight[0].id
                )
                return in_flight[0]

            now = self.now()
            job = Job(
                stage=self.stage,
                key=key,
                payload=payload,
                max_attempts=self.max_attempts,
                created_at=now,
                available_at=now + delay,
            )
            await self.store.save_job(job)

        logger.info("job_enqueued", stage=self.stage, key=key, job_id=job.id)
        return job

    # =========================================================================
    # Consumer side
    # =========================================================================

    async def claim(self) -> Job | None:
        """
        Claim the oldest runnable job.

        Runnable means waiting and available, or active with an expired lock.
        """
        async with self.store.transaction():
            now = self.now()
            for job in await self.store.claimable_jobs(self.stage, now):
                if job.status == JobStatus.ACTIVE:
                    if job.attempts >= job.max_attempts:
                        self._finish(job, JobStatus.DEAD, "Stalled past attempt cap")
                        await self.store.save_job(job)
                        logger.error("job_stalled_dead_lettered", stage=self.stage, job_id=job.id)
                        continue
                    logger.warning(
                        "job_stalled_reclaimed",
                        stage=self.stage,
                        job_id=job.id,
                        attempts=job.attempts,
                    )

                job.status = JobStatus.ACTIVE
                job.attempts += 1
                job.locked_until = now + self.lock_duration
                await self.store.save_job(job)
                return job
        return None

    def _finish(self, job: Job, status: JobStatus, error: str | None = None) -> None:
        job.status = status
        job.locked_until = None
        job.finished_at = self.now()
        if error is not None:
            job.last_error = error

    async def release(self, job: Job) -> None:
        """Hand a claimed job back untouched; the claim does not count as an attempt."""
        job.status = JobStatus.WAITING
        job.attempts = max(0, job.attempts - 1)
        job.locked_until = None
        await self.store.save_job(job)
        logger.debug("job_released", stage=self.stage, job_id=job.id)

    async def complete(self, job: Job, result: Any = None) -> None:
        self._finish(job, JobStatus.COMPLETED)
        job.result = result
        await self.store.save_job(job)
        logger.info("job_completed", stage=self.stage, job_id=job.id, attempts=job.attempts)

    async def fail(self, job: Job, error: str) -> None:
        """Terminal failure; never retried."""
        self._finish(job, JobStatus.FAILED, error)
        await self.store.save_job(job)
        logger.warning("job_failed", stage=self.stage, job_id=job.id, error=error)

    async def dead_letter(self, job: Job, error: str) -> None:
        """Retries exhausted."""
        self._finish(job, JobStatus.DEAD, error)
        await self.store.save_job(job)
        logger.error(
            "job_dead_lettered",
            stage=self.stage,
            job_id=job.id,
            key=job.key,
            attempts=job.attempts,
            error=error,
        )

    async def record_attempt(self, job: Job) -> None:
        """Count an in-worker retry against the job's attempt cap."""
        job.attempts += 1
        job.locked_until = self.now() + self.lock_duration
        await self.store.save_job(job)

    # =========================================================================
    # Queries
    # =========================================================================

    async def get(self, job_id: str) -> Job | None:
        return await self.store.get_job(job_id)

    async def seen(self, key: str) -> bool:
        """Whether any job (in any status) was ever enqueued under ``key``."""
        return bool(await self.store.list_jobs(self.stage, key=key))

    async def dead_letters(self) -> list[Job]:
        return await self.store.list_jobs(self.stage, (JobStatus.DEAD,))

    async def pending_count(self) -> int:
        return len(await self.store.list_jobs(self.stage, IN_FLIGHT_STATUSES))

    async def stats(self) -> dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for job in await self.store.list_jobs(self.stage):
            counts[job.status.value] += 1
        return counts
