"""
In-Memory Pipeline Store
========================

Dict-backed store for tests and local runs, including the stage job queues. Transactions are serialized
by a single lock (which trivially satisfies serializable isolation) and
roll back by restoring a snapshot taken on entry.

Version: 0.1.0
"""

import asyncio
from collections.abc import AsyncGenerator, Iterable
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel

from services.rule_pipeline.errors import NotFoundError
from services.rule_pipeline.store.base import PipelineStore
from shared.logging import get_logger
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

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

_TABLES = (
    "facts",
    "documents",
    "rules",
    "pointers",
    "conflicts",
    "reviews",
    "releases",
    "jobs",
    "audit",
)


def _copy(model: M) -> M:
    return model.model_copy(deep=True)


class InMemoryPipelineStore(PipelineStore):
    """Pipeline store holding all records in process memory."""

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, Any]] = {name: {} for name in _TABLES}
        self._lock = asyncio.Lock()
        self._in_transaction: ContextVar[bool] = ContextVar(
            f"memory_store_tx_{id(self)}", default=False
        )

    # =========================================================================
    # Transactions
    # =========================================================================

    @asynccontextmanager
    async def transaction(self, serializable: bool = False) -> AsyncGenerator[None, None]:
        if self._in_transaction.get():
            yield
            return

        async with self._lock:
            snapshot = {name: dict(rows) for name, rows in self._tables.items()}
            token = self._in_transaction.set(True)
            try:
                yield
            except BaseException:
                self._tables = snapshot
                logger.debug("memory_store_rolled_back")
                raise
            finally:
                self._in_transaction.reset(token)

    @asynccontextmanager
    async def _write(self) -> AsyncGenerator[dict[str, dict[str, Any]], None]:
        # Single writes outside a transaction still wait for an open one.
        if self._in_transaction.get():
            yield self._tables
        else:
            async with self._lock:
                yield self._tables

    def _rows(self, table: str) -> list[Any]:
        return [_copy(row) for row in self._tables[table].values()]

    # =========================================================================
    # Facts & documents
    # =========================================================================

    async def save_fact(self, fact: Fact) -> None:
        async with self._write() as tables:
            tables["facts"][fact.id] = _copy(fact)

    async def get_fact(self, fact_id: str) -> Fact | None:
        fact = self._tables["facts"].get(fact_id)
        return _copy(fact) if fact else None

    async def list_facts(self, status: FactStatus | None = None) -> list[Fact]:
        return [f for f in self._rows("facts") if status is None or f.status == status]

    async def update_fact_status(self, fact_id: str, status: FactStatus) -> None:
        async with self._write() as tables:
            fact = tables["facts"].get(fact_id)
            if fact is None:
                raise NotFoundError(f"Fact not found: {fact_id}", fact_id=fact_id)
            tables["facts"][fact_id] = fact.with_status(status)

    async def save_document(self, document: SourceDocument) -> None:
        async with self._write() as tables:
            tables["documents"][document.id] = _copy(document)

    async def get_document(self, document_id: str) -> SourceDocument | None:
        document = self._tables["documents"].get(document_id)
        return _copy(document) if document else None

    # =========================================================================
    # Rules & pointers
    # =========================================================================

    async def save_rule(self, rule: Rule) -> None:
        async with self._write() as tables:
            tables["rules"][rule.id] = _copy(rule)

    async def get_rule(self, rule_id: str) -> Rule | None:
        rule = self._tables["rules"].get(rule_id)
        return _copy(rule) if rule else None

    async def get_rule_by_idempotency_key(self, key: str) -> Rule | None:
        for rule in self._tables["rules"].values():
            if rule.idempotency_key == key:
                return _copy(rule)
        return None

    async def list_rules(self, statuses: Iterable[RuleStatus] | None = None) -> list[Rule]:
        wanted = set(statuses) if statuses is not None else None
        return [r for r in self._rows("rules") if wanted is None or r.status in wanted]

    async def save_pointers(self, pointers: Iterable[SourcePointer]) -> None:
        async with self._write() as tables:
            for pointer in pointers:
                tables["pointers"][pointer.id] = _copy(pointer)

    async def list_pointers(self, rule_id: str) -> list[SourcePointer]:
        return [p for p in self._rows("pointers") if p.rule_id == rule_id]

    # =========================================================================
    # Conflicts
    # =========================================================================

    async def save_conflict(self, conflict: Conflict) -> None:
        async with self._write() as tables:
            tables["conflicts"][conflict.id] = _copy(conflict)

    async def get_conflict(self, conflict_id: str) -> Conflict | None:
        conflict = self._tables["conflicts"].get(conflict_id)
        return _copy(conflict) if conflict else None

    async def list_conflicts(
        self,
        status: ConflictStatus | None = None,
        rule_id: str | None = None,
        source_key: str | None = None,
    ) -> list[Conflict]:
        return [
            c
            for c in self._rows("conflicts")
            if (status is None or c.status == status)
            and (rule_id is None or rule_id in c.rule_ids)
            and (source_key is None or c.source_key == source_key)
        ]

    # =========================================================================
    # Reviews
    # =========================================================================

    async def save_review(self, review: ReviewRequest) -> None:
        async with self._write() as tables:
            tables["reviews"][review.id] = _copy(review)

    async def list_reviews(
        self,
        status: ReviewStatus | None = None,
        rule_id: str | None = None,
    ) -> list[ReviewRequest]:
        return [
            r
            for r in self._rows("reviews")
            if (status is None or r.status == status) and (rule_id is None or r.rule_id == rule_id)
        ]

    # =========================================================================
    # Releases
    # =========================================================================

    async def save_release(self, release: Release) -> None:
        async with self._write() as tables:
            if release.id in tables["releases"]:
                raise ValueError(f"Release {release.id} already exists; releases are immutable")
            tables["releases"][release.id] = release

    async def get_release(self, release_id: str) -> Release | None:
        return self._tables["releases"].get(release_id)

    async def get_release_by_idempotency_key(self, key: str) -> Release | None:
        for release in self._tables["releases"].values():
            if release.idempotency_key == key:
                return release
        return None

    async def list_releases(self) -> list[Release]:
        return sorted(self._tables["releases"].values(), key=lambda r: r.created_at)

    # =========================================================================
    # Jobs
    # =========================================================================

    async def save_job(self, job: Job) -> None:
        async with self._write() as tables:
            tables["jobs"][job.id] = _copy(job)

    async def get_job(self, job_id: str) -> Job | None:
        job = self._tables["jobs"].get(job_id)
        return _copy(job) if job else None

    async def list_jobs(
        self,
        stage: str,
        statuses: Iterable[JobStatus] | None = None,
        key: str | None = None,
    ) -> list[Job]:
        wanted = set(statuses) if statuses is not None else None
        jobs = [
            j
            for j in self._rows("jobs")
            if j.stage == stage
            and (wanted is None or j.status in wanted)
            and (key is None or j.key == key)
        ]
        return sorted(jobs, key=lambda j: (j.available_at, j.created_at, j.id))

    async def claimable_jobs(self, stage: str, now: datetime, limit: int = 20) -> list[Job]:
        jobs = [
            j
            for j in await self.list_jobs(stage, statuses=(JobStatus.WAITING, JobStatus.ACTIVE))
            if (j.status == JobStatus.WAITING and j.available_at <= now)
            or (
                j.status == JobStatus.ACTIVE
                and j.locked_until is not None
                and j.locked_until <= now
            )
        ]
        return jobs[:limit]

    # =========================================================================
    # Audit
    # =========================================================================

    async def record_audit(self, event: AuditEvent) -> None:
        async with self._write() as tables:
            tables["audit"][event.id] = _copy(event)

    async def list_audit(
        self,
        entity_id: str | None = None,
        action: str | None = None,
    ) -> list[AuditEvent]:
        events = [
            e
            for e in self._rows("audit")
            if (entity_id is None or e.entity_id == entity_id)
            and (action is None or e.action == action)
        ]
        return sorted(events, key=lambda e: e.created_at)
