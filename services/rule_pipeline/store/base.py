"""
Pipeline Store Interface
========================

Logical persistence contract for facts, documents, rules, pointers,
conflicts, reviews, releases, stage jobs and the audit trail.

Implementations must make everything inside ``transaction()`` atomic:
either every write lands or none does. ``serializable=True`` requests
serializable isolation; a serialization failure surfaces as
``TransientError`` so the job layer retries it.

Version: 0.1.0
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from contextlib import AbstractAsyncContextManager
from datetime import datetime

from services.rule_pipeline.errors import NotFoundError
from shared.models import (
    AuditEvent,
    Conflict,
    ConflictStatus,
    Fact,
    FactStatus,
    Job,
    JobStatus,
    Release,
    ReviewRequest,
    ReviewStatus,
    Rule,
    RuleStatus,
    SourceDocument,
    SourcePointer,
)


class PipelineStore(ABC):
    """Abstract store used by every pipeline stage."""

    @abstractmethod
    def transaction(self, serializable: bool = False) -> AbstractAsyncContextManager[None]:
        """Atomic unit of work. Nested calls join the outer transaction."""
        ...

    # =========================================================================
    # Facts & documents (written by extraction)
    # =========================================================================

    @abstractmethod
    async def save_fact(self, fact: Fact) -> None: ...

    @abstractmethod
    async def get_fact(self, fact_id: str) -> Fact | None: ...

    @abstractmethod
    async def list_facts(self, status: FactStatus | None = None) -> list[Fact]: ...

    @abstractmethod
    async def update_fact_status(self, fact_id: str, status: FactStatus) -> None: ...

    @abstractmethod
    async def save_document(self, document: SourceDocument) -> None: ...

    @abstractmethod
    async def get_document(self, document_id: str) -> SourceDocument | None: ...

    # =========================================================================
    # Rules & pointers
    # =========================================================================

    @abstractmethod
    async def save_rule(self, rule: Rule) -> None:
        """Insert or replace a rule."""
        ...

    @abstractmethod
    async def get_rule(self, rule_id: str) -> Rule | None: ...

    @abstractmethod
    async def get_rule_by_idempotency_key(self, key: str) -> Rule | None: ...

    @abstractmethod
    async def list_rules(self, statuses: Iterable[RuleStatus] | None = None) -> list[Rule]: ...

    @abstractmethod
    async def save_pointers(self, pointers: Iterable[SourcePointer]) -> None:
        """Insert or replace source pointers."""
        ...

    @abstractmethod
    async def list_pointers(self, rule_id: str) -> list[SourcePointer]: ...

    # =========================================================================
    # Conflicts
    # =========================================================================

    @abstractmethod
    async def save_conflict(self, conflict: Conflict) -> None: ...

    @abstractmethod
    async def get_conflict(self, conflict_id: str) -> Conflict | None: ...

    @abstractmethod
    async def list_conflicts(
        self,
        status: ConflictStatus | None = None,
        rule_id: str | None = None,
        source_key: str | None = None,
    ) -> list[Conflict]: ...

    # =========================================================================
    # Reviews
    # =========================================================================

    @abstractmethod
    async def save_review(self, review: ReviewRequest) -> None: ...

    @abstractmethod
    async def list_reviews(
        self,
        status: ReviewStatus | None = None,
        rule_id: str | None = None,
    ) -> list[ReviewRequest]: ...

    # =========================================================================
    # Releases
    # =========================================================================

    @abstractmethod
    async def save_release(self, release: Release) -> None: ...

    @abstractmethod
    async def get_release(self, release_id: str) -> Release | None: ...

    @abstractmethod
    async def get_release_by_idempotency_key(self, key: str) -> Release | None: ...

    @abstractmethod
    async def list_releases(self) -> list[Release]:
        """All releases, oldest first."""
        ...

    # =========================================================================
    # Jobs
    # =========================================================================

    @abstractmethod
    async def save_job(self, job: Job) -> None:
        """Insert or replace a job."""
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Job | None: ...

    @abstractmethod
    async def list_jobs(
        self,
        stage: str,
        statuses: Iterable[JobStatus] | None = None,
        key: str | None = None,
    ) -> list[Job]:
        """Jobs of one stage, earliest available first."""
        ...

    @abstractmethod
    async def claimable_jobs(self, stage: str, now: datetime, limit: int = 20) -> list[Job]:
        """
        Due waiting jobs plus active jobs whose lock has expired, earliest
        available first.

        Called inside ``transaction()``; rows returned are locked against
        other claimers until it ends.
        """
        ...

    # =========================================================================
    # Audit
    # =========================================================================

    @abstractmethod
    async def record_audit(self, event: AuditEvent) -> None: ...

    @abstractmethod
    async def list_audit(
        self,
        entity_id: str | None = None,
        action: str | None = None,
    ) -> list[AuditEvent]: ...

    # =========================================================================
    # Derived helpers
    # =========================================================================

    async def get_facts(self, fact_ids: Iterable[str]) -> list[Fact]:
        """Load facts in the given order; raise if any is missing."""
        facts = []
        missing = []
        for fact_id in fact_ids:
            fact = await self.get_fact(fact_id)
            if fact is None:
                missing.append(fact_id)
            else:
                facts.append(fact)
        if missing:
            raise NotFoundError("Facts not found", fact_ids=missing)
        return facts

    async def require_rule(self, rule_id: str) -> Rule:
        rule = await self.get_rule(rule_id)
        if rule is None:
            raise NotFoundError(f"Rule not found: {rule_id}", rule_id=rule_id)
        return rule

    async def latest_release(self) -> Release | None:
        releases = await self.list_releases()
        return releases[-1] if releases else None

    async def supersedes_edges(self) -> list[tuple[str, str]]:
        return [
            (rule.id, rule.supersedes_id)
            for rule in await self.list_rules()
            if rule.supersedes_id
        ]
