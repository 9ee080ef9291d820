"""
Job Models
==========

Queued units of stage work. Jobs are persisted with the rest of the
pipeline state so every worker process sees the same queue, locks and
dead letters.

Version: 0.1.0
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from shared.models.common import new_id, utc_now


class JobStatus(str, Enum):
    """Job lifecycle."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"


IN_FLIGHT_STATUSES = (JobStatus.WAITING, JobStatus.ACTIVE)


class Job(BaseModel):
    """A queued unit of stage work."""

    id: str = Field(default_factory=lambda: new_id("job"))
    stage: str
    key: str = Field(..., description="Idempotency key; one in-flight job per key")
    payload: dict[str, Any] = Field(default_factory=dict)
    max_attempts: int = Field(..., ge=1)
    status: JobStatus = JobStatus.WAITING
    attempts: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    available_at: datetime = Field(default_factory=utc_now)
    locked_until: datetime | None = None
    last_error: str | None = None
    finished_at: datetime | None = None
    result: Any = None
