"""
Stage Worker
============

Pulls jobs from one queue and runs the stage handler under the job
policy:

- rate limit taken per claimed job; a refused job goes back to the queue
- bounded concurrency per stage
- per-job timeout; a timeout counts as a transient failure
- ``TransientError`` retried with exponential backoff up to the attempt
  cap, then dead-lettered and audited
- any other error fails the job at once and is audited

Version: 0.1.0
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from services.rule_pipeline.audit import AuditAction, AuditLog
from services.rule_pipeline.errors import PipelineError, TransientError
from services.rule_pipeline.jobs.queue import JobQueue
from services.rule_pipeline.jobs.rate_limit import RateLimiter
from shared.config import QueueSettings
from shared.logging import bind_context, clear_context, get_logger
from shared.models import Job

logger = get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]


class JobOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"


@dataclass
class WorkerStats:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    dead_lettered: int = 0
    rate_limited: int = 0


class StageWorker:
    """
    Worker for one stage queue.

    Args:
        queue: The stage's job queue
        handler: Stage logic; must be idempotent
        audit: Audit log for terminal failures and dead letters
        settings: Queue policy (concurrency, attempts, backoff, alert threshold)
        rate_limiter: Optional per-queue rate limiter
        timeout_seconds: Per-job timeout (defaults to the queue setting)
        sleep: Backoff sleep (injectable for tests)
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        audit: AuditLog,
        settings: QueueSettings | None = None,
        rate_limiter: RateLimiter | None = None,
        timeout_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.queue = queue
        self.handler = handler
        self.audit = audit
        self.settings = settings or QueueSettings()
        self.rate_limiter = rate_limiter
        self.timeout_seconds = timeout_seconds or self.settings.job_timeout_seconds
        self.sleep = sleep
        self.stats = WorkerStats()
        self._semaphore = asyncio.Semaphore(self.settings.concurrency)

    @property
    def stage(self) -> str:
        return self.queue.stage

    async def run_once(self) -> int:
        """Claim up to ``concurrency`` jobs and process them; returns how many ran."""
        jobs: list[Job] = []
        for _ in range(self.settings.concurrency):
            job = await self.queue.claim()
            if job is None:
                break
            if self.rate_limiter is not None and not await self.rate_limiter.try_acquire():
                await self.queue.release(job)
                self.stats.rate_limited += 1
                logger.debug("stage_rate_limited", stage=self.stage, job_id=job.id)
                break
            jobs.append(job)

        if jobs:
            await asyncio.gather(*(self.process(job) for job in jobs))
        return len(jobs)

    async def process(self, job: Job) -> JobOutcome:
        """Run one claimed job to a final outcome."""
        async with self._semaphore:
            self.stats.processed += 1
            bind_context(queue=self.stage, job_id=job.id, job_key=job.key)
            try:
                result = await self._run_with_retries(job)
            except TransientError as e:
                await self._dead_letter(job, e)
                return JobOutcome.DEAD_LETTERED
            except PipelineError as e:
                await self._fail(job, e.message, e.to_dict())
                return JobOutcome.FAILED
            except Exception as e:
                logger.exception("job_handler_crashed", stage=self.stage, job_id=job.id)
                await self._fail(job, str(e), {"code": type(e).__name__})
                return JobOutcome.FAILED
            finally:
                clear_context()

            await self.queue.complete(job, result)
            self.stats.completed += 1
            return JobOutcome.COMPLETED

    async def _run_with_retries(self, job: Job) -> Any:
        remaining = max(1, job.max_attempts - job.attempts + 1)
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientError),
            stop=stop_after_attempt(remaining),
            wait=wait_exponential(
                multiplier=self.settings.backoff_base_seconds,
                max=self.settings.backoff_max_seconds,
            ),
            sleep=self.sleep,
            reraise=True,
            before_sleep=lambda retry_state: logger.warning(
                "job_retry_scheduled",
                stage=self.stage,
                job_id=job.id,
                attempt=job.attempts,
                delay=retry_state.next_action.sleep if retry_state.next_action else None,
            ),
        )

        result = None
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    await self.queue.record_attempt(job)
                result = await self._run_once_with_timeout(job)
        return result

    async def _run_once_with_timeout(self, job: Job) -> Any:
        try:
            return await asyncio.wait_for(self.handler(job), timeout=self.timeout_seconds)
        except TimeoutError as e:
            raise TransientError(
                f"{self.stage} job timed out after {self.timeout_seconds}s",
                job_id=job.id,
            ) from e

    async def _fail(self, job: Job, message: str, details: dict[str, Any]) -> None:
        await self.queue.fail(job, message)
        self.stats.failed += 1
        await self.audit.record(
            AuditAction.JOB_FAILED,
            "JOB",
            job.key,
            **{**details, "stage": self.stage, "job_id": job.id, "attempts": job.attempts},
        )

    async def _dead_letter(self, job: Job, error: TransientError) -> None:
        await self.queue.dead_letter(job, error.message)
        self.stats.dead_lettered += 1
        await self.audit.record(
            AuditAction.JOB_DEAD_LETTERED,
            "JOB",
            job.key,
            **{
                **error.to_dict(),
                "stage": self.stage,
                "job_id": job.id,
                "attempts": job.attempts,
            },
        )

        dead = len(await self.queue.dead_letters())
        if dead >= self.settings.dead_letter_alert_threshold:
            logger.critical(
                "dead_letter_threshold_exceeded",
                stage=self.stage,
                dead_letters=dead,
                threshold=self.settings.dead_letter_alert_threshold,
            )
