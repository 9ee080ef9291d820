"""
Fact Models
===========

Extracted facts and the source documents their quotes point into.
Both are owned by the extraction subsystem; the pipeline only reads them
and moves facts through their status transitions.

Version: 0.1.0
"""

import hashlib
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from shared.models.common import new_id, utc_now


class FactStatus(str, Enum):
    """Lifecycle of an extracted fact."""

    CAPTURED = "captured"
    PROMOTED = "promoted"
    REJECTED = "rejected"


class AuthorityLevel(str, Enum):
    """Source hierarchy, highest authority first."""

    LAW = "LAW"  # statute
    GUIDANCE = "GUIDANCE"  # official interpretation
    PROCEDURE = "PROCEDURE"  # technical execution
    PRACTICE = "PRACTICE"  # informal practice

    @property
    def rank(self) -> int:
        """Lower rank means higher authority."""
        return _AUTHORITY_RANK[self]

    @classmethod
    def highest(cls, levels: "list[AuthorityLevel]") -> "AuthorityLevel":
        """Return the highest authority among ``levels`` (PRACTICE if empty)."""
        if not levels:
            return cls.PRACTICE
        return min(levels, key=lambda level: level.rank)


_AUTHORITY_RANK = {
    AuthorityLevel.LAW: 1,
    AuthorityLevel.GUIDANCE: 2,
    AuthorityLevel.PROCEDURE: 3,
    AuthorityLevel.PRACTICE: 4,
}


class GroundingQuote(BaseModel):
    """Verbatim text backing a fact, anchored in a source document."""

    model_config = ConfigDict(frozen=True)

    text: str = Field(..., min_length=1)
    document_id: str = Field(..., min_length=1)
    start_offset: int | None = Field(default=None, ge=0)
    end_offset: int | None = Field(default=None, ge=0)

    # Optional legal citation
    law_name: str | None = None
    article: str | None = None
    paragraph: str | None = None


class Fact(BaseModel):
    """An extracted claim. Immutable apart from status transitions."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("fact"))
    domain: str = Field(..., min_length=1, description="Taxonomy slug")
    value: str
    value_type: str = Field(..., min_length=1)
    quotes: list[GroundingQuote] = Field(default_factory=list)
    confidence: float = Field(..., ge=0.0, le=1.0)
    status: FactStatus = FactStatus.CAPTURED
    created_at: datetime = Field(default_factory=utc_now)

    def with_status(self, status: FactStatus) -> "Fact":
        """Return a copy carrying the new status."""
        return self.model_copy(update={"status": status})


def sha256_hex(content: str) -> str:
    """SHA-256 hex digest of UTF-8 text."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class SourceDocument(BaseModel):
    """
    A fetched regulatory document.

    ``fetch_hash`` is recorded once at fetch time; ``content_hash`` is the
    stored hash of the current content. A mismatch between the two, or
    between either and the actual content, indicates tampering.
    """

    id: str = Field(default_factory=lambda: new_id("doc"))
    url: str | None = None
    title: str | None = None
    authority_level: AuthorityLevel = AuthorityLevel.PRACTICE
    content: str
    fetch_hash: str = ""
    content_hash: str = ""
    fetched_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _fill_hashes(self) -> "SourceDocument":
        if not self.fetch_hash:
            self.fetch_hash = sha256_hex(self.content)
        if not self.content_hash:
            self.content_hash = self.fetch_hash
        return self
