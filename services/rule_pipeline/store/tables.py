"""
Pipeline Database Tables
========================

SQLAlchemy ORM tables for the pipeline store. Each row keeps the columns
the pipeline filters on plus the full record as a JSON payload.

Version: 0.1.0
"""

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    String,
    text,
)

from shared.database.postgres import Base


class FactRow(Base):
    """Extracted facts (written by extraction, status updated here)."""

    __tablename__ = "facts"
    __table_args__ = (Index("ix_facts_status", "status"),)

    id = Column(String(64), primary_key=True)
    domain = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False)
    payload = Column(JSON, nullable=False)


class SourceDocumentRow(Base):
    """Fetched regulatory documents."""

    __tablename__ = "source_documents"

    id = Column(String(64), primary_key=True)
    payload = Column(JSON, nullable=False)


class RuleRow(Base):
    """Composed rules."""

    __tablename__ = "rules"
    __table_args__ = (
        Index("ix_rules_status", "status"),
        Index("ix_rules_concept_slug", "concept_slug"),
    )

    id = Column(String(64), primary_key=True)
    concept_slug = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False)
    idempotency_key = Column(String(64), unique=True)
    payload = Column(JSON, nullable=False)


class SourcePointerRow(Base):
    """Rule -> quote evidence links."""

    __tablename__ = "source_pointers"
    __table_args__ = (Index("ix_source_pointers_rule", "rule_id"),)

    id = Column(String(64), primary_key=True)
    rule_id = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False)


class ConflictRow(Base):
    """Detected conflicts awaiting arbitration."""

    __tablename__ = "conflicts"
    __table_args__ = (
        Index("ix_conflicts_status", "status"),
        Index("ix_conflicts_source_key", "source_key"),
    )

    id = Column(String(64), primary_key=True)
    status = Column(String(20), nullable=False)
    source_key = Column(String(64))
    payload = Column(JSON, nullable=False)


class ReviewRequestRow(Base):
    """Human review queue."""

    __tablename__ = "review_requests"
    __table_args__ = (Index("ix_review_requests_rule_status", "rule_id", "status"),)

    id = Column(String(64), primary_key=True)
    rule_id = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False)
    payload = Column(JSON, nullable=False)


class ReleaseRow(Base):
    """Append-only releases."""

    __tablename__ = "releases"

    id = Column(String(64), primary_key=True)
    version = Column(String(32), nullable=False, unique=True)
    idempotency_key = Column(String(64), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    payload = Column(JSON, nullable=False)


class JobRow(Base):
    """Stage job queues shared by every worker process."""

    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_stage_status_available", "stage", "status", "available_at"),
        Index(
            "uq_jobs_in_flight_key",
            "stage",
            "key",
            unique=True,
            postgresql_where=text("status IN ('waiting', 'active')"),
        ),
    )

    id = Column(String(64), primary_key=True)
    stage = Column(String(32), nullable=False)
    key = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False)
    available_at = Column(DateTime(timezone=True), nullable=False)
    locked_until = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False)
    payload = Column(JSON, nullable=False)


class AuditEventRow(Base):
    """Durable audit trail."""

    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_entity", "entity_id"),
        Index("ix_audit_events_action", "action"),
    )

    id = Column(String(64), primary_key=True)
    action = Column(String(64), nullable=False)
    entity_type = Column(String(32), nullable=False)
    entity_id = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    payload = Column(JSON, nullable=False)
