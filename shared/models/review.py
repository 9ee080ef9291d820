"""
Review Models
=============

Human review requests produced by the tiered review gate.

Version: 0.1.0
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from shared.models.common import new_id, utc_now


class ReviewPriority(str, Enum):
    """Queue priority; CRITICAL carries the shortest SLA."""

    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def sort_order(self) -> int:
        return list(ReviewPriority).index(self)


class ReviewReason(str, Enum):
    """Why a rule was routed to a human."""

    T0_RULE_APPROVAL = "T0_RULE_APPROVAL"
    T1_RULE_APPROVAL = "T1_RULE_APPROVAL"
    LOW_RULE_CONFIDENCE = "LOW_RULE_CONFIDENCE"
    GRACE_PERIOD = "GRACE_PERIOD"
    OPEN_CONFLICT = "OPEN_CONFLICT"
    MISSING_EVIDENCE = "MISSING_EVIDENCE"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class ReviewRequest(BaseModel):
    """A rule waiting on a human decision."""

    id: str = Field(default_factory=lambda: new_id("review"))
    rule_id: str
    reasons: list[ReviewReason] = Field(..., min_length=1)
    priority: ReviewPriority
    status: ReviewStatus = ReviewStatus.PENDING
    requested_at: datetime = Field(default_factory=utc_now)
    sla_deadline: datetime
    completed_at: datetime | None = None
    completed_by: str | None = None
    outcome: str | None = None

    def is_overdue(self, now: datetime) -> bool:
        """SLA breached while still pending."""
        return self.status == ReviewStatus.PENDING and now > self.sla_deadline
