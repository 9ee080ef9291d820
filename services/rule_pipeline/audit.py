"""
Audit Trail
===========

Durable audit events for every status transition, terminal rejection,
integrity violation and dead-lettered job. Events go to the store first
and to the log second.

Version: 0.1.0
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any

from services.rule_pipeline.errors import IntegrityViolation, PipelineError
from services.rule_pipeline.store.base import PipelineStore
from shared.logging import get_logger
from shared.models import AuditEvent, utc_now

logger = get_logger(__name__)


class AuditAction:
    """Audit action names."""

    RULE_CREATED = "RULE_CREATED"
    RULE_ESCALATED = "RULE_ESCALATED"
    RULE_REVIEW_REQUESTED = "RULE_REVIEW_REQUESTED"
    RULE_AUTO_APPROVED = "RULE_AUTO_APPROVED"
    RULE_APPROVED = "RULE_APPROVED"
    RULE_REJECTED = "RULE_REJECTED"
    COMPOSITION_REJECTED = "COMPOSITION_REJECTED"
    CONFLICT_RESOLVED = "CONFLICT_RESOLVED"
    RELEASE_PUBLISHED = "RELEASE_PUBLISHED"
    RELEASE_BLOCKED = "RELEASE_BLOCKED"
    INTEGRITY_VIOLATION = "INTEGRITY_VIOLATION"
    JOB_FAILED = "JOB_FAILED"
    JOB_DEAD_LETTERED = "JOB_DEAD_LETTERED"


class AuditLog:
    """
    Writes audit events through a pipeline store.

    Args:
        store: Pipeline store
        now: Clock (injectable for tests)
    """

    def __init__(
        self,
        store: PipelineStore,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.now = now

    async def record(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        **metadata: Any,
    ) -> AuditEvent:
        event = AuditEvent(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata,
            created_at=self.now(),
        )
        await self.store.record_audit(event)
        logger.info(
            "audit_event",
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        return event

    async def record_error(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        error: PipelineError,
    ) -> AuditEvent:
        """Record a terminal error; integrity violations are logged at critical."""
        if isinstance(error, IntegrityViolation):
            logger.critical(
                "integrity_violation",
                entity_type=entity_type,
                entity_id=entity_id,
                code=error.code,
                error=error.message,
            )
            action = AuditAction.INTEGRITY_VIOLATION
        else:
            logger.warning(
                "terminal_rejection",
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                code=error.code,
                error=error.message,
            )
        return await self.record(action, entity_type, entity_id, **error.to_dict())
