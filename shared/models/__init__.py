"""
Shared Models
=============

Pydantic models for the regulatory rule pipeline. Published rules and
releases are the read-only contract consumed by downstream services.

Models:
- Fact models (Fact, GroundingQuote, SourceDocument)
- Rule models (Rule, SourcePointer, Conflict)
- Release models (Release, ReleaseMetrics)
- Review models (ReviewRequest)
- Job models (Job)
- Common (AuditEvent)
"""

from shared.models.common import AuditEvent, new_id, utc_now
from shared.models.fact import (
    AuthorityLevel,
    Fact,
    FactStatus,
    GroundingQuote,
    SourceDocument,
    sha256_hex,
)
from shared.models.job import IN_FLIGHT_STATUSES, Job, JobStatus
from shared.models.release import Release, ReleaseMetrics, ReleaseType
from shared.models.review import ReviewPriority, ReviewReason, ReviewRequest, ReviewStatus
from shared.models.rule import (
    Conflict,
    ConflictStatus,
    ConflictType,
    MatchType,
    RiskTier,
    Rule,
    RuleStatus,
    SourcePointer,
)

__all__ = [
    # Fact
    "AuthorityLevel",
    "Fact",
    "FactStatus",
    "GroundingQuote",
    "SourceDocument",
    "sha256_hex",
    # Rule
    "Conflict",
    "ConflictStatus",
    "ConflictType",
    "MatchType",
    "RiskTier",
    "Rule",
    "RuleStatus",
    "SourcePointer",
    # Release
    "Release",
    "ReleaseMetrics",
    "ReleaseType",
    # Job
    "IN_FLIGHT_STATUSES",
    "Job",
    "JobStatus",
    # Review
    "ReviewPriority",
    "ReviewReason",
    "ReviewRequest",
    "ReviewStatus",
    # Common
    "AuditEvent",
    "new_id",
    "utc_now",
]
