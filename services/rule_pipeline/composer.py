"""
Rule Composer
=============

Turns a group of related facts into a DRAFT rule.

Steps:
1. Reject synthetic/test domains
2. Build source pointers from the facts' grounding quotes
3. Ask the reasoning function for a draft and parse it strictly
4. Validate the appliesWhen predicate
5. Run conflict detection; any conflict escalates instead of creating a rule
6. Derive confidence from evidence and reasoning
7. Persist rule, pointers and fact promotion in one transaction

Compositions are idempotent per fact-id set.

Version: 0.1.0
"""

from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from services.rule_pipeline.audit import AuditAction, AuditLog
from services.rule_pipeline.confidence import derived_confidence
from services.rule_pipeline.conflicts import (
    COMPARED_STATUSES,
    CandidateRule,
    ConflictDetector,
)
from services.rule_pipeline.dsl import (
    DEFAULT_FIELD_SCHEMA,
    dump_applies_when,
    parse_applies_when,
    validate_applies_when,
)
from services.rule_pipeline.errors import (
    BlocklistedDomainError,
    InputError,
    InvalidPredicateError,
    MissingEvidenceError,
    MixedGroupError,
    PipelineError,
    PolicyRejection,
    RejectedFactError,
    TransientError,
)
from services.rule_pipeline.graph import SupersedesGraph
from services.rule_pipeline.keys import composition_key
from services.rule_pipeline.reasoning import ComposerDraft, ReasoningFunction, parse_draft
from services.rule_pipeline.store.base import PipelineStore
from services.rule_pipeline.taxonomy import TaxonomyService, normalize_value
from shared.config import ComposerSettings
from shared.logging import get_logger
from shared.models import (
    AuthorityLevel,
    Conflict,
    ConflictStatus,
    ConflictType,
    Fact,
    FactStatus,
    Rule,
    RuleStatus,
    SourcePointer,
    new_id,
    utc_now,
)

logger = get_logger(__name__)


def grouping_key(fact: Fact) -> str:
    """``domain::value_type::normalized_value``"""
    return f"{fact.domain}::{fact.value_type}::{normalize_value(fact.value)}"


def group_facts(facts: Iterable[Fact]) -> dict[str, list[Fact]]:
    """Group facts by grouping key; groups and their members keep input order."""
    groups: dict[str, list[Fact]] = defaultdict(list)
    for fact in facts:
        groups[grouping_key(fact)].append(fact)
    return dict(groups)


class CompositionOutcome(str, Enum):
    """Result of a composition attempt."""

    CREATED = "created"
    DUPLICATE = "duplicate"
    ESCALATED = "escalated"


@dataclass
class CompositionResult:
    """What a compose call produced."""

    outcome: CompositionOutcome
    idempotency_key: str
    rule: Rule | None = None
    pointers: list[SourcePointer] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)

    @property
    def rule_id(self) -> str | None:
        return self.rule.id if self.rule else None


class RuleComposer:
    """
    Composes DRAFT rules from fact groups.

    Args:
        store: Pipeline store
        reason: Reasoning function (facts -> untyped draft blob)
        taxonomy: Taxonomy snapshot for blocklist and alias lookups
        settings: Composer settings
        audit: Audit log (defaults to one over ``store``)
        field_schema: Known field paths for predicate validation
        now: Clock
    """

    def __init__(
        self,
        store: PipelineStore,
        reason: ReasoningFunction,
        taxonomy: TaxonomyService,
        settings: ComposerSettings | None = None,
        audit: AuditLog | None = None,
        field_schema: Iterable[str] = DEFAULT_FIELD_SCHEMA,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.reason = reason
        self.taxonomy = taxonomy
        self.settings = settings or ComposerSettings()
        self.audit = audit or AuditLog(store, now=now)
        self.field_schema = frozenset(field_schema)
        self.detector = ConflictDetector(taxonomy)
        self.now = now

    # =========================================================================
    # Public API
    # =========================================================================

    async def compose(self, fact_ids: Sequence[str]) -> CompositionResult:
        """
        Compose a rule from ``fact_ids``.

        Returns:
            CompositionResult (created, duplicate or escalated)

        Raises:
            InputError / PolicyRejection: terminal, recorded in the audit trail
            TransientError: retryable (reasoning or storage failure)
        """
        if not fact_ids:
            raise InputError("Composition needs at least one fact id")

        key = composition_key(fact_ids)
        existing = await self._existing_outcome(key)
        if existing is not None:
            logger.info(
                "composition_skipped",
                idempotency_key=key,
                outcome=existing.outcome.value,
                rule_id=existing.rule_id,
            )
            return existing

        try:
            return await self._compose(key, fact_ids)
        except (InputError, PolicyRejection) as e:
            await self.audit.record_error(
                AuditAction.COMPOSITION_REJECTED,
                "FACT_GROUP",
                key,
                e,
            )
            raise

    # =========================================================================
    # Steps
    # =========================================================================

    async def _existing_outcome(self, key: str) -> CompositionResult | None:
        rule = await self.store.get_rule_by_idempotency_key(key)
        if rule is not None:
            return CompositionResult(
                outcome=CompositionOutcome.DUPLICATE,
                idempotency_key=key,
                rule=rule,
                pointers=await self.store.list_pointers(rule.id),
            )
        escalations = await self.store.list_conflicts(status=ConflictStatus.OPEN, source_key=key)
        if escalations:
            return CompositionResult(
                outcome=CompositionOutcome.ESCALATED,
                idempotency_key=key,
                conflicts=escalations,
            )
        return None

    def _check_group(self, facts: list[Fact]) -> None:
        rejected = sorted(f.id for f in facts if f.status == FactStatus.REJECTED)
        if rejected:
            raise RejectedFactError(
                "Rejected facts cannot back a rule",
                fact_ids=rejected,
            )

        blocked = sorted(
            {
                f.domain
                for f in facts
                if self.taxonomy.is_blocklisted(f.domain) or f.domain in self.settings.blocklist
            }
        )
        if blocked:
            raise BlocklistedDomainError(
                f"Facts belong to blocklisted domains: {', '.join(blocked)}",
                domains=blocked,
            )

        keys = sorted({grouping_key(f) for f in facts})
        if len(keys) > 1:
            raise MixedGroupError(
                "Facts do not share a grouping key",
                grouping_keys=keys,
            )

    @staticmethod
    def _build_pointers(rule_id: str, facts: list[Fact]) -> list[SourcePointer]:
        return [
            SourcePointer(
                rule_id=rule_id,
                fact_id=fact.id,
                document_id=quote.document_id,
                exact_quote=quote.text,
                start_offset=quote.start_offset,
                end_offset=quote.end_offset,
                confidence=fact.confidence,
                law_name=quote.law_name,
                article=quote.article,
                paragraph=quote.paragraph,
            )
            for fact in facts
            for quote in fact.quotes
        ]

    async def _draft(self, facts: list[Fact]) -> ComposerDraft:
        try:
            blob = await self.reason(facts)
        except PipelineError:
            raise
        except Exception as e:
            raise TransientError(
                f"Reasoning function failed: {e}",
                error_type=type(e).__name__,
            ) from e
        return parse_draft(blob)

    def _predicate(self, draft: ComposerDraft) -> dict[str, Any]:
        schema = self.field_schema if self.settings.enforce_field_schema else None
        validation = validate_applies_when(draft.applies_when, schema_fields=schema)
        if not validation.valid:
            raise InvalidPredicateError(
                f"appliesWhen rejected: {validation.error}",
                concept_slug=draft.concept_slug,
            )
        return dump_applies_when(parse_applies_when(draft.applies_when))

    async def _authority(self, pointers: list[SourcePointer]) -> AuthorityLevel:
        levels = []
        for document_id in sorted({p.document_id for p in pointers}):
            document = await self.store.get_document(document_id)
            if document is not None:
                levels.append(document.authority_level)
        return AuthorityLevel.highest(levels)

    async def _compose(self, key: str, fact_ids: Sequence[str]) -> CompositionResult:
        facts = await self.store.get_facts(dict.fromkeys(fact_ids))
        self._check_group(facts)

        rule_id = new_id("rule")
        pointers = self._build_pointers(rule_id, facts)
        if not pointers:
            raise MissingEvidenceError(
                "Facts carry no grounding quotes",
                fact_ids=[f.id for f in facts],
            )

        draft = await self._draft(facts)
        applies_when = self._predicate(draft)
        authority = await self._authority(pointers)

        candidate = CandidateRule(
            concept_slug=draft.concept_slug,
            domain=facts[0].domain,
            value=draft.value_text,
            value_type=draft.value_type,
            effective_from=draft.effective_from,
            effective_until=draft.effective_until,
            authority_level=authority,
        )
        report = self.detector.detect(
            candidate, await self.store.list_rules(statuses=COMPARED_STATUSES)
        )
        conflicts = list(report.conflicts)
        if draft.conflict_detected:
            conflicts.append(
                Conflict(
                    conflict_type=ConflictType.SOURCE_CONFLICT,
                    description=(
                        f'Sources disagree on "{draft.concept_slug}"'
                        + (f": {draft.composer_notes}" if draft.composer_notes else "")
                    ),
                    concept_slug=draft.concept_slug,
                )
            )
        if conflicts:
            return await self._escalate(key, facts, conflicts)

        confidence = derived_confidence([p.confidence for p in pointers], draft.confidence)
        return await self._persist(
            key, rule_id, facts, pointers, draft, applies_when, authority, confidence
        )

    async def _escalate(
        self,
        key: str,
        facts: list[Fact],
        conflicts: list[Conflict],
    ) -> CompositionResult:
        fact_ids = [f.id for f in facts]
        now = self.now()
        stamped = [
            c.model_copy(update={"fact_ids": fact_ids, "source_key": key, "created_at": now})
            for c in conflicts
        ]
        async with self.store.transaction():
            for conflict in stamped:
                await self.store.save_conflict(conflict)
            await self.audit.record(
                AuditAction.RULE_ESCALATED,
                "FACT_GROUP",
                key,
                conflict_ids=[c.id for c in stamped],
                conflict_types=[c.conflict_type.value for c in stamped],
            )

        logger.warning(
            "composition_escalated",
            idempotency_key=key,
            conflict_count=len(stamped),
            conflict_types=[c.conflict_type.value for c in stamped],
        )
        return CompositionResult(
            outcome=CompositionOutcome.ESCALATED,
            idempotency_key=key,
            conflicts=stamped,
        )

    async def _persist(
        self,
        key: str,
        rule_id: str,
        facts: list[Fact],
        pointers: list[SourcePointer],
        draft: ComposerDraft,
        applies_when: dict[str, Any],
        authority: AuthorityLevel,
        confidence: float,
    ) -> CompositionResult:
        now = self.now()
        notes = [draft.composer_notes] if draft.composer_notes else []

        async with self.store.transaction():
            # Another worker may have won the race for this key.
            winner = await self.store.get_rule_by_idempotency_key(key)
            if winner is not None:
                return CompositionResult(
                    outcome=CompositionOutcome.DUPLICATE,
                    idempotency_key=key,
                    rule=winner,
                    pointers=await self.store.list_pointers(winner.id),
                )

            supersedes_id = None
            if draft.supersedes:
                supersedes_id = await self._supersedes(rule_id, draft.supersedes, notes)

            rule = Rule(
                id=rule_id,
                concept_slug=draft.concept_slug,
                domain=facts[0].domain,
                title_hr=draft.title_hr,
                title_en=draft.title_en,
                explanation_hr=draft.explanation_hr,
                explanation_en=draft.explanation_en,
                risk_tier=draft.risk_tier,
                authority_level=authority,
                applies_when=applies_when,
                value=draft.value_text,
                value_type=draft.value_type,
                effective_from=draft.effective_from,
                effective_until=draft.effective_until,
                supersedes_id=supersedes_id,
                confidence=confidence,
                status=RuleStatus.DRAFT,
                idempotency_key=key,
                composer_notes="\n".join(notes) or None,
                created_at=now,
                updated_at=now,
            )
            await self.store.save_rule(rule)
            await self.store.save_pointers(pointers)
            for fact in facts:
                await self.store.update_fact_status(fact.id, FactStatus.PROMOTED)
            await self.audit.record(
                AuditAction.RULE_CREATED,
                "RULE",
                rule.id,
                concept_slug=rule.concept_slug,
                risk_tier=rule.risk_tier.value,
                confidence=rule.confidence,
                fact_ids=[f.id for f in facts],
                pointer_count=len(pointers),
            )

        logger.info(
            "rule_composed",
            rule_id=rule.id,
            concept_slug=rule.concept_slug,
            risk_tier=rule.risk_tier.value,
            confidence=round(rule.confidence, 4),
            pointer_count=len(pointers),
        )
        return CompositionResult(
            outcome=CompositionOutcome.CREATED,
            idempotency_key=key,
            rule=rule,
            pointers=pointers,
        )

    async def _supersedes(self, rule_id: str, target_id: str, notes: list[str]) -> str | None:
        if await self.store.get_rule(target_id) is None:
            logger.warning("supersedes_target_missing", rule_id=rule_id, target_id=target_id)
            notes.append(f"supersedes target {target_id} not found; link skipped")
            return None
        graph = SupersedesGraph(await self.store.supersedes_edges())
        if not graph.add_edge(rule_id, target_id):
            notes.append(f"supersedes link to {target_id} would create a cycle; link skipped")
            return None
        return target_id
