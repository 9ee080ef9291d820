"""
Release Models
==============

Immutable, versioned bundles of published rules. Corrections are new
releases, never edits.

Version: 0.1.0
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from shared.models.common import new_id, utc_now


class ReleaseType(str, Enum):
    """Semantic version bump."""

    MAJOR = "major"
    MINOR = "minor"
    PATCH = "patch"


class ReleaseMetrics(BaseModel):
    """Audit-trail counters captured at release time."""

    model_config = ConfigDict(frozen=True)

    source_count: int = 0
    pointer_count: int = 0
    review_count: int = 0
    human_approval_count: int = 0


class Release(BaseModel):
    """A published rule batch."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("release"))
    version: str = Field(..., pattern=r"^\d+\.\d+\.\d+$")
    release_type: ReleaseType
    content_hash: str = Field(..., min_length=64, max_length=64)
    changelog_hr: str
    changelog_en: str
    approved_by: list[str] = Field(default_factory=list)
    metrics: ReleaseMetrics = Field(default_factory=ReleaseMetrics)
    rule_ids: list[str] = Field(..., min_length=1)
    idempotency_key: str
    created_at: datetime = Field(default_factory=utc_now)
