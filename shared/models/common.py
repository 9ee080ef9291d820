"""
Common Models
=============

Identifier and timestamp helpers shared by all pipeline records.

Version: 0.1.0
"""

import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def new_id(prefix: str) -> str:
    """Generate a prefixed random identifier (e.g. ``rule_3f2a...``)."""
    return f"{prefix}_{uuid.uuid4().hex}"


class AuditEvent(BaseModel):
    """
    Durable audit trail entry.

    Every terminal rejection, integrity violation, dead-lettered job and
    status transition is written here, not only logged.
    """

    id: str = Field(default_factory=lambda: new_id("audit"))
    action: str = Field(..., description="Event name, e.g. RULE_CREATED")
    entity_type: str = Field(..., description="RULE, CONFLICT, RELEASE, JOB, FACT_GROUP")
    entity_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
