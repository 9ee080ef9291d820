"""
Rule Pipeline
=============

Wires the stages to their queues:

    captured facts -> compose queue -> review queue -> (approval) -> release queue

Stages talk only through persisted state plus the next queued job. Every
stage handler is idempotent, so at-least-once delivery is safe.

Version: 0.1.0
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from services.rule_pipeline.audit import AuditLog
from services.rule_pipeline.composer import CompositionOutcome, RuleComposer, group_facts
from services.rule_pipeline.conflicts import ConflictRegistry
from services.rule_pipeline.errors import InputError, InvalidTransitionError
from services.rule_pipeline.events import EventPublisher, publication_hook
from services.rule_pipeline.jobs import (
    ContinuousDrainer,
    DrainerStats,
    Job,
    JobQueue,
    RateLimiter,
    SlidingWindowRateLimiter,
    StageWorker,
)
from services.rule_pipeline.keys import composition_key, job_key, release_key
from services.rule_pipeline.reasoning import ReasoningFunction
from services.rule_pipeline.release import ReleaseBuilder
from services.rule_pipeline.review import ReviewGate
from services.rule_pipeline.store.base import PipelineStore
from services.rule_pipeline.taxonomy import TaxonomyService
from shared.config import Settings, get_settings
from shared.logging import get_logger
from shared.models import Conflict, ConflictStatus, FactStatus, Rule, RuleStatus, utc_now

logger = get_logger(__name__)


class Stage:
    """Queue names."""

    COMPOSE = "compose"
    REVIEW = "review"
    RELEASE = "release"

    ALL = (COMPOSE, REVIEW, RELEASE)


@dataclass
class PipelineStatus:
    """Point-in-time view of the pipeline."""

    rules_by_status: dict[str, int] = field(default_factory=dict)
    captured_facts: int = 0
    open_conflicts: int = 0
    pending_reviews: int = 0
    overdue_reviews: int = 0
    dead_letters: int = 0
    queues: dict[str, dict[str, int]] = field(default_factory=dict)
    latest_release: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rules_by_status": self.rules_by_status,
            "captured_facts": self.captured_facts,
            "open_conflicts": self.open_conflicts,
            "pending_reviews": self.pending_reviews,
            "overdue_reviews": self.overdue_reviews,
            "dead_letters": self.dead_letters,
            "queues": self.queues,
            "latest_release": self.latest_release,
        }


class RulePipeline:
    """
    The regulatory rule pipeline.

    Args:
        store: Pipeline store
        reason: Reasoning function used by the composer
        taxonomy: Taxonomy snapshot
        settings: Application settings
        publisher: Downstream event publisher (no events when None)
        rate_limiters: Per-stage rate limiters (in-process windows by default)
        now: Clock
        sleep: Backoff sleep for workers and the drainer
    """

    def __init__(
        self,
        store: PipelineStore,
        reason: ReasoningFunction,
        taxonomy: TaxonomyService,
        settings: Settings | None = None,
        publisher: EventPublisher | None = None,
        rate_limiters: dict[str, RateLimiter] | None = None,
        now: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.now = now
        self.sleep = sleep
        self._last_sweep: datetime | None = None

        self.audit = AuditLog(store, now=now)
        self.composer = RuleComposer(
            store,
            reason,
            taxonomy,
            settings=self.settings.composer,
            audit=self.audit,
            now=now,
        )
        self.review = ReviewGate(store, settings=self.settings.review, audit=self.audit, now=now)
        self.releases = ReleaseBuilder(store, audit=self.audit, now=now)
        if publisher is not None:
            self.releases.add_hook(publication_hook(publisher))
        self.conflicts = ConflictRegistry(store, audit=self.audit, now=now)

        queue_settings = self.settings.queue
        lock_duration = timedelta(seconds=queue_settings.lock_duration_seconds)
        self.queues = {
            stage: JobQueue(store, stage, queue_settings.max_attempts, lock_duration, now)
            for stage in Stage.ALL
        }

        limiters = rate_limiters or {
            stage: SlidingWindowRateLimiter(
                queue_settings.rate_limit_jobs, queue_settings.rate_limit_window_seconds
            )
            for stage in Stage.ALL
        }
        handlers = {
            Stage.COMPOSE: self._handle_compose,
            Stage.REVIEW: self._handle_review,
            Stage.RELEASE: self._handle_release,
        }
        timeouts = {Stage.COMPOSE: self.settings.composer.timeout_seconds}
        self.workers = {
            stage: StageWorker(
                self.queues[stage],
                handlers[stage],
                self.audit,
                settings=queue_settings,
                rate_limiter=limiters.get(stage),
                timeout_seconds=timeouts.get(stage),
                sleep=sleep,
            )
            for stage in Stage.ALL
        }

    # =========================================================================
    # Triggers
    # =========================================================================

    async def trigger_composition(self, fact_ids: Sequence[str]) -> Job:
        ids = sorted(set(fact_ids))
        if not ids:
            raise InputError("A composition needs at least one fact")
        key = job_key(Stage.COMPOSE, composition_key(ids))
        return await self.queues[Stage.COMPOSE].enqueue(key, {"fact_ids": ids})

    async def trigger_review(self, rule_id: str) -> Job:
        return await self.queues[Stage.REVIEW].enqueue(
            job_key(Stage.REVIEW, rule_id), {"rule_id": rule_id}
        )

    async def trigger_review_sweep(self) -> Job:
        return await self.queues[Stage.REVIEW].enqueue(job_key(Stage.REVIEW, "sweep"), {})

    async def trigger_release(self, rule_ids: Iterable[str] | None = None) -> Job | None:
        """Queue a release of ``rule_ids`` (all APPROVED rules when omitted)."""
        if rule_ids is None:
            ids = sorted(r.id for r in await self.store.list_rules([RuleStatus.APPROVED]))
        else:
            ids = sorted(set(rule_ids))
        if not ids:
            logger.info("release_skipped_no_rules")
            return None
        key = job_key(Stage.RELEASE, release_key(ids))
        return await self.queues[Stage.RELEASE].enqueue(key, {"rule_ids": ids})

    async def discover_work(self) -> int:
        """Queue a composition for every group of captured facts not yet seen."""
        facts = await self.store.list_facts(FactStatus.CAPTURED)
        queued = 0
        for group in group_facts(facts).values():
            ids = sorted(f.id for f in group)
            key = job_key(Stage.COMPOSE, composition_key(ids))
            if await self.queues[Stage.COMPOSE].seen(key):
                continue
            await self.queues[Stage.COMPOSE].enqueue(key, {"fact_ids": ids})
            queued += 1
        if queued:
            logger.info("work_discovered", compositions=queued)
        return queued

    # =========================================================================
    # Running
    # =========================================================================

    async def run_pending(self) -> int:
        """One pass over every stage worker; returns how many jobs ran."""
        processed = 0
        for stage in Stage.ALL:
            processed += await self.workers[stage].run_once()
        return processed

    async def poll(self) -> int:
        """
        Drainer poll: discover new work, queue a review sweep when one is
        due, then run what is queued.

        The sweep is what auto-approves T2/T3 rules once their grace period
        has passed, so it recurs every ``review_sweep_interval_seconds``.
        """
        discovered = await self.discover_work()
        now = self.now()
        interval = timedelta(seconds=self.settings.drainer.review_sweep_interval_seconds)
        if self._last_sweep is None or now - self._last_sweep >= interval:
            await self.trigger_review_sweep()
            self._last_sweep = now
        return discovered + await self.run_pending()

    async def drain(self, max_cycles: int | None = None) -> DrainerStats:
        drainer = ContinuousDrainer(self.poll, settings=self.settings.drainer, sleep=self.sleep)
        return await drainer.run(max_cycles=max_cycles)

    # =========================================================================
    # Human actions
    # =========================================================================

    async def approve(self, rule_id: str, approver_id: str) -> Rule:
        return await self.review.approve(rule_id, approver_id)

    async def reject(self, rule_id: str, reason: str, reviewer_id: str | None = None) -> Rule:
        return await self.review.reject(rule_id, reason, reviewer_id)

    async def resolve_conflict(self, conflict_id: str, resolver_id: str, note: str) -> Conflict:
        return await self.conflicts.resolve(conflict_id, resolver_id, note)

    # =========================================================================
    # Status
    # =========================================================================

    async def status(self) -> PipelineStatus:
        rules = await self.store.list_rules()
        by_status = {status.value: 0 for status in RuleStatus}
        for rule in rules:
            by_status[rule.status.value] += 1

        dead_letters = 0
        queue_stats: dict[str, dict[str, int]] = {}
        for stage, queue in self.queues.items():
            dead_letters += len(await queue.dead_letters())
            queue_stats[stage] = await queue.stats()

        latest = await self.store.latest_release()
        return PipelineStatus(
            rules_by_status=by_status,
            captured_facts=len(await self.store.list_facts(FactStatus.CAPTURED)),
            open_conflicts=len(await self.store.list_conflicts(status=ConflictStatus.OPEN)),
            pending_reviews=len(await self.review.pending_reviews()),
            overdue_reviews=len(await self.review.overdue_reviews()),
            dead_letters=dead_letters,
            queues=queue_stats,
            latest_release=latest.version if latest else None,
        )

    # =========================================================================
    # Stage handlers
    # =========================================================================

    async def _handle_compose(self, job: Job) -> dict[str, Any]:
        result = await self.composer.compose(job.payload["fact_ids"])
        if result.outcome == CompositionOutcome.CREATED and result.rule_id:
            await self.trigger_review(result.rule_id)
        return {"outcome": result.outcome.value, "rule_id": result.rule_id}

    async def _handle_review(self, job: Job) -> dict[str, Any]:
        rule_id = job.payload.get("rule_id")
        if rule_id:
            try:
                decision = await self.review.evaluate(rule_id)
            except InvalidTransitionError as e:
                # Already routed by a sweep or a human decision
                logger.info("review_job_skipped", rule_id=rule_id, error=e.message)
                return {"rule_id": rule_id, "status": e.details.get("status"), "skipped": True}
            return {"rule_id": rule_id, "status": decision.status.value}
        result = await self.review.sweep()
        return {"auto_approved": result.auto_approved, "pending": result.pending}

    async def _handle_release(self, job: Job) -> dict[str, Any]:
        release = await self.releases.build(job.payload["rule_ids"])
        return {"release_id": release.id, "version": release.version}
