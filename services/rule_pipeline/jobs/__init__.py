"""
Job Orchestration
=================

Queues, workers, rate limits and the continuous drainer that carry work
between pipeline stages.
"""

from services.rule_pipeline.jobs.drainer import AdaptiveBackoff, ContinuousDrainer, DrainerStats
from services.rule_pipeline.jobs.queue import JobQueue
from services.rule_pipeline.jobs.rate_limit import (
    RateLimiter,
    RedisRateLimiter,
    SlidingWindowRateLimiter,
)
from services.rule_pipeline.jobs.worker import JobHandler, JobOutcome, StageWorker, WorkerStats
from shared.models import Job, JobStatus

__all__ = [
    "AdaptiveBackoff",
    "ContinuousDrainer",
    "DrainerStats",
    "Job",
    "JobHandler",
    "JobOutcome",
    "JobQueue",
    "JobStatus",
    "RateLimiter",
    "RedisRateLimiter",
    "SlidingWindowRateLimiter",
    "StageWorker",
    "WorkerStats",
]
