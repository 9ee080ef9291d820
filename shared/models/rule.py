"""
Rule Models
===========

Rules, the source pointers that justify them, and the conflicts that block
them. Rules are owned by the pipeline until PUBLISHED, after which they are
read-only contracts for downstream consumers.

Version: 0.1.0
"""

from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from shared.models.common import new_id, utc_now
from shared.models.fact import AuthorityLevel


class RiskTier(str, Enum):
    """Ordinal criticality, T0 highest."""

    T0 = "T0"
    T1 = "T1"
    T2 = "T2"
    T3 = "T3"

    @property
    def is_critical(self) -> bool:
        """T0/T1 rules always need a human approver."""
        return self in (RiskTier.T0, RiskTier.T1)


class RuleStatus(str, Enum):
    """Rule lifecycle."""

    DRAFT = "DRAFT"
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    PUBLISHED = "PUBLISHED"
    REJECTED = "REJECTED"


class MatchType(str, Enum):
    """How a quote was located in its document."""

    EXACT = "exact"
    NORMALIZED = "normalized"
    NOT_FOUND = "not_found"


class SourcePointer(BaseModel):
    """Evidentiary link between a rule and an exact quote in a document."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("sp"))
    rule_id: str
    fact_id: str
    document_id: str
    exact_quote: str = Field(..., min_length=1)
    start_offset: int | None = None
    end_offset: int | None = None
    confidence: float = Field(..., ge=0.0, le=1.0)

    # Set by evidence-chain verification at release time
    match_type: MatchType | None = None

    # Legal citation
    law_name: str | None = None
    article: str | None = None
    paragraph: str | None = None

    created_at: datetime = Field(default_factory=utc_now)


class Rule(BaseModel):
    """The authoritative statement of a regulatory value."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: new_id("rule"))
    concept_slug: str = Field(..., min_length=1)
    domain: str = Field(..., min_length=1)

    # Bilingual presentation
    title_hr: str
    title_en: str
    explanation_hr: str = ""
    explanation_en: str = ""

    # Classification
    risk_tier: RiskTier
    authority_level: AuthorityLevel = AuthorityLevel.PRACTICE

    # Semantics
    applies_when: dict[str, Any]
    value: str
    value_type: str
    effective_from: date
    effective_until: date | None = None
    supersedes_id: str | None = None
    confidence: float = Field(..., ge=0.0, le=1.0)

    # Lifecycle
    status: RuleStatus = RuleStatus.DRAFT
    idempotency_key: str | None = None
    approved_by: str | None = None
    approved_at: datetime | None = None
    auto_approved: bool = False
    review_reason: str | None = None
    rejection_reason: str | None = None
    release_id: str | None = None
    composer_notes: str | None = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class ConflictType(str, Enum):
    """Kinds of disagreement between rules (or a rule and its sources)."""

    VALUE_MISMATCH = "VALUE_MISMATCH"
    DATE_OVERLAP = "DATE_OVERLAP"
    AUTHORITY_SUPERSEDE = "AUTHORITY_SUPERSEDE"
    CROSS_SLUG_DUPLICATE = "CROSS_SLUG_DUPLICATE"
    SOURCE_CONFLICT = "SOURCE_CONFLICT"


class ConflictStatus(str, Enum):
    """Conflict lifecycle."""

    OPEN = "open"
    RESOLVED = "resolved"


class Conflict(BaseModel):
    """A disagreement that blocks publication until resolved externally."""

    id: str = Field(default_factory=lambda: new_id("conflict"))
    conflict_type: ConflictType
    status: ConflictStatus = ConflictStatus.OPEN
    description: str
    rule_ids: list[str] = Field(default_factory=list)
    fact_ids: list[str] = Field(default_factory=list)
    concept_slug: str | None = None

    # Idempotency key of the composition that raised it
    source_key: str | None = None

    resolution: str | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def is_open(self) -> bool:
        return self.status == ConflictStatus.OPEN
