"""
SQL Pipeline Store
==================

PostgreSQL-backed pipeline store using SQLAlchemy 2.0 async sessions.
Stage jobs live in the same database, so queues, locks and dead letters
survive restarts and are shared by every worker process.

The current session lives in a context variable so that every store call
made inside ``transaction()`` joins the same unit of work. Serialization
failures, deadlocks, unique-key races and dropped connections surface as
``TransientError``.

Version: 0.1.0
"""

from collections.abc import AsyncGenerator, Iterable
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.rule_pipeline.errors import NotFoundError, TransientError
from services.rule_pipeline.store.base import PipelineStore
from services.rule_pipeline.store.tables import (
    AuditEventRow,
    ConflictRow,
    FactRow,
    JobRow,
    ReleaseRow,
    ReviewRequestRow,
    RuleRow,
    SourceDocumentRow,
    SourcePointerRow,
)
from shared.database.postgres import PostgresClient
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

# serialization_failure, deadlock_detected, unique_violation
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01", "23505"})


def _sqlstate(error: DBAPIError) -> str | None:
    orig = error.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def translate_db_error(error: DBAPIError) -> Exception:
    """Map retryable database errors to ``TransientError``."""
    sqlstate = _sqlstate(error)
    if (
        isinstance(error, (OperationalError, InterfaceError))
        or error.connection_invalidated
        or sqlstate in RETRYABLE_SQLSTATES
    ):
        return TransientError(
            "Database operation failed, retry",
            sqlstate=sqlstate,
            error_type=type(error).__name__,
        )
    return error


class SqlAlchemyPipelineStore(PipelineStore):
    """
    Pipeline store over PostgreSQL.

    Args:
        session_factory: Async session factory (default: shared PostgresClient)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or PostgresClient.get_session_factory()
        self._current: ContextVar[AsyncSession | None] = ContextVar(
            f"sql_store_session_{id(self)}", default=None
        )

    # =========================================================================
    # Sessions
    # =========================================================================

    @asynccontextmanager
    async def transaction(self, serializable: bool = False) -> AsyncGenerator[None, None]:
        if self._current.get() is not None:
            yield
            return

        async with self._session_factory() as session:
            token = self._current.set(session)
            try:
                if serializable:
                    await session.connection(
                        execution_options={"isolation_level": "SERIALIZABLE"}
                    )
                yield
                await session.commit()
            except DBAPIError as e:
                await session.rollback()
                translated = translate_db_error(e)
                logger.warning(
                    "sql_transaction_failed",
                    serializable=serializable,
                    retryable=isinstance(translated, TransientError),
                    error=str(e),
                )
                if translated is e:
                    raise
                raise translated from e
            except BaseException:
                await session.rollback()
                raise
            finally:
                self._current.reset(token)

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        session = self._current.get()
        if session is not None:
            yield session
            return
        async with self.transaction():
            yield self._current.get()  # type: ignore[misc]

    # =========================================================================
    # Facts & documents
    # =========================================================================

    async def save_fact(self, fact: Fact) -> None:
        async with self._session() as session:
            await session.merge(
                FactRow(
                    id=fact.id,
                    domain=fact.domain,
                    status=fact.status.value,
                    payload=fact.model_dump(mode="json"),
                )
            )

    async def get_fact(self, fact_id: str) -> Fact | None:
        async with self._session() as session:
            row = await session.get(FactRow, fact_id)
            return Fact.model_validate(row.payload) if row else None

    async def list_facts(self, status: FactStatus | None = None) -> list[Fact]:
        query = select(FactRow).order_by(FactRow.id)
        if status is not None:
            query = query.where(FactRow.status == status.value)
        async with self._session() as session:
            rows = (await session.execute(query)).scalars().all()
            return [Fact.model_validate(row.payload) for row in rows]

    async def update_fact_status(self, fact_id: str, status: FactStatus) -> None:
        fact = await self.get_fact(fact_id)
        if fact is None:
            raise NotFoundError(f"Fact not found: {fact_id}", fact_id=fact_id)
        await self.save_fact(fact.with_status(status))

    async def save_document(self, document: SourceDocument) -> None:
        async with self._session() as session:
            await session.merge(
                SourceDocumentRow(id=document.id, payload=document.model_dump(mode="json"))
            )

    async def get_document(self, document_id: str) -> SourceDocument | None:
        async with self._session() as session:
            row = await session.get(SourceDocumentRow, document_id)
            return SourceDocument.model_validate(row.payload) if row else None

    # =========================================================================
    # Rules & pointers
    # =========================================================================

    async def save_rule(self, rule: Rule) -> None:
        async with self._session() as session:
            await session.merge(
                RuleRow(
                    id=rule.id,
                    concept_slug=rule.concept_slug,
                    status=rule.status.value,
                    idempotency_key=rule.idempotency_key,
                    payload=rule.model_dump(mode="json"),
                )
            )

    async def get_rule(self, rule_id: str) -> Rule | None:
        async with self._session() as session:
            row = await session.get(RuleRow, rule_id)
            return Rule.model_validate(row.payload) if row else None

    async def get_rule_by_idempotency_key(self, key: str) -> Rule | None:
        query = select(RuleRow).where(RuleRow.idempotency_key == key)
        async with self._session() as session:
            row = (await session.execute(query)).scalars().first()
            return Rule.model_validate(row.payload) if row else None

    async def list_rules(self, statuses: Iterable[RuleStatus] | None = None) -> list[Rule]:
        query = select(RuleRow).order_by(RuleRow.id)
        if statuses is not None:
            query = query.where(RuleRow.status.in_([s.value for s in statuses]))
        async with self._session() as session:
            rows = (await session.execute(query)).scalars().all()
            return [Rule.model_validate(row.payload) for row in rows]

    async def save_pointers(self, pointers: Iterable[SourcePointer]) -> None:
        async with self._session() as session:
            for pointer in pointers:
                await session.merge(
                    SourcePointerRow(
                        id=pointer.id,
                        rule_id=pointer.rule_id,
                        payload=pointer.model_dump(mode="json"),
                    )
                )

    async def list_pointers(self, rule_id: str) -> list[SourcePointer]:
        query = (
            select(SourcePointerRow)
            .where(SourcePointerRow.rule_id == rule_id)
            .order_by(SourcePointerRow.id)
        )
        async with self._session() as session:
            rows = (await session.execute(query)).scalars().all()
            return [SourcePointer.model_validate(row.payload) for row in rows]

    # =========================================================================
    # Conflicts
    # =========================================================================

    async def save_conflict(self, conflict: Conflict) -> None:
        async with self._session() as session:
            await session.merge(
                ConflictRow(
                    id=conflict.id,
                    status=conflict.status.value,
                    source_key=conflict.source_key,
                    payload=conflict.model_dump(mode="json"),
                )
            )

    async def get_conflict(self, conflict_id: str) -> Conflict | None:
        async with self._session() as session:
            row = await session.get(ConflictRow, conflict_id)
            return Conflict.model_validate(row.payload) if row else None

    async def list_conflicts(
        self,
        status: ConflictStatus | None = None,
        rule_id: str | None = None,
        source_key: str | None = None,
    ) -> list[Conflict]:
        query = select(ConflictRow).order_by(ConflictRow.id)
        if status is not None:
            query = query.where(ConflictRow.status == status.value)
        if source_key is not None:
            query = query.where(ConflictRow.source_key == source_key)
        async with self._session() as session:
            rows = (await session.execute(query)).scalars().all()
            conflicts = [Conflict.model_validate(row.payload) for row in rows]
        if rule_id is not None:
            conflicts = [c for c in conflicts if rule_id in c.rule_ids]
        return conflicts

    # =========================================================================
    # Reviews
    # =========================================================================

    async def save_review(self, review: ReviewRequest) -> None:
        async with self._session() as session:
            await session.merge(
                ReviewRequestRow(
                    id=review.id,
                    rule_id=review.rule_id,
                    status=review.status.value,
                    payload=review.model_dump(mode="json"),
                )
            )

    async def list_reviews(
        self,
        status: ReviewStatus | None = None,
        rule_id: str | None = None,
    ) -> list[ReviewRequest]:
        query = select(ReviewRequestRow).order_by(ReviewRequestRow.id)
        if status is not None:
            query = query.where(ReviewRequestRow.status == status.value)
        if rule_id is not None:
            query = query.where(ReviewRequestRow.rule_id == rule_id)
        async with self._session() as session:
            rows = (await session.execute(query)).scalars().all()
            return [ReviewRequest.model_validate(row.payload) for row in rows]

    # =========================================================================
    # Releases
    # =========================================================================

    async def save_release(self, release: Release) -> None:
        async with self._session() as session:
            session.add(
                ReleaseRow(
                    id=release.id,
                    version=release.version,
                    idempotency_key=release.idempotency_key,
                    created_at=release.created_at,
                    payload=release.model_dump(mode="json"),
                )
            )
            await session.flush()

    async def get_release(self, release_id: str) -> Release | None:
        async with self._session() as session:
            row = await session.get(ReleaseRow, release_id)
            return Release.model_validate(row.payload) if row else None

    async def get_release_by_idempotency_key(self, key: str) -> Release | None:
        query = select(ReleaseRow).where(ReleaseRow.idempotency_key == key)
        async with self._session() as session:
            row = (await session.execute(query)).scalars().first()
            return Release.model_validate(row.payload) if row else None

    async def list_releases(self) -> list[Release]:
        query = select(ReleaseRow).order_by(ReleaseRow.created_at, ReleaseRow.id)
        async with self._session() as session:
            rows = (await session.execute(query)).scalars().all()
            return [Release.model_validate(row.payload) for row in rows]

    # =========================================================================
    # Jobs
    # =========================================================================

    async def save_job(self, job: Job) -> None:
        async with self._session() as session:
            await session.merge(
                JobRow(
                    id=job.id,
                    stage=job.stage,
                    key=job.key,
                    status=job.status.value,
                    available_at=job.available_at,
                    locked_until=job.locked_until,
                    created_at=job.created_at,
                    payload=job.model_dump(mode="json"),
                )
            )

    async def get_job(self, job_id: str) -> Job | None:
        async with self._session() as session:
            row = await session.get(JobRow, job_id)
            return Job.model_validate(row.payload) if row else None

    async def list_jobs(
        self,
        stage: str,
        statuses: Iterable[JobStatus] | None = None,
        key: str | None = None,
    ) -> list[Job]:
        query = (
            select(JobRow)
            .where(JobRow.stage == stage)
            .order_by(JobRow.available_at, JobRow.created_at, JobRow.id)
        )
        if statuses is not None:
            query = query.where(JobRow.status.in_([s.value for s in statuses]))
        if key is not None:
            query = query.where(JobRow.key == key)
        async with self._session() as session:
            rows = (await session.execute(query)).scalars().all()
            return [Job.model_validate(row.payload) for row in rows]

    async def claimable_jobs(self, stage: str, now: datetime, limit: int = 20) -> list[Job]:
        query = (
            select(JobRow)
            .where(JobRow.stage == stage)
            .where(
                or_(
                    and_(
                        JobRow.status == JobStatus.WAITING.value,
                        JobRow.available_at <= now,
                    ),
                    and_(
                        JobRow.status == JobStatus.ACTIVE.value,
                        JobRow.locked_until <= now,
                    ),
                )
            )
            .order_by(JobRow.available_at, JobRow.created_at, JobRow.id)
            .limit(limit)
            # Concurrent claimers skip rows another worker is taking
            .with_for_update(skip_locked=True)
        )
        async with self._session() as session:
            rows = (await session.execute(query)).scalars().all()
            return [Job.model_validate(row.payload) for row in rows]

    # =========================================================================
    # Audit
    # =========================================================================

    async def record_audit(self, event: AuditEvent) -> None:
        async with self._session() as session:
            session.add(
                AuditEventRow(
                    id=event.id,
                    action=event.action,
                    entity_type=event.entity_type,
                    entity_id=event.entity_id,
                    created_at=event.created_at,
                    payload=event.model_dump(mode="json"),
                )
            )

    async def list_audit(
        self,
        entity_id: str | None = None,
        action: str | None = None,
    ) -> list[AuditEvent]:
        query = select(AuditEventRow).order_by(AuditEventRow.created_at, AuditEventRow.id)
        if entity_id is not None:
            query = query.where(AuditEventRow.entity_id == entity_id)
        if action is not None:
            query = query.where(AuditEventRow.action == action)
        async with self._session() as session:
            rows = (await session.execute(query)).scalars().all()
            return [AuditEvent.model_validate(row.payload) for row in rows]
