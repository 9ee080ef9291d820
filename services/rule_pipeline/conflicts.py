"""
Conflict Detector
=================

Deterministic structural comparison between a candidate rule and the
existing approved/published rules. No LLM involvement.

Checks:
- VALUE_MISMATCH: same concept, overlapping dates, different values
- DATE_OVERLAP: same concept and value, overlapping windows
- AUTHORITY_SUPERSEDE: a value disagreement between different authority
  levels (flagged for arbitration, never auto-resolved)
- CROSS_SLUG_DUPLICATE: aliased or same-domain slugs carrying the identical
  normalized value, a sign of taxonomy drift

Version: 0.1.0
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime

from services.rule_pipeline.audit import AuditAction, AuditLog
from services.rule_pipeline.errors import InputError, InvalidTransitionError, NotFoundError
from services.rule_pipeline.store.base import PipelineStore
from services.rule_pipeline.taxonomy import TaxonomyService, normalize_slug, normalize_value
from shared.logging import get_logger
from shared.models import (
    AuthorityLevel,
    Conflict,
    ConflictStatus,
    ConflictType,
    Rule,
    RuleStatus,
    utc_now,
)

logger = get_logger(__name__)

COMPARED_STATUSES = frozenset({RuleStatus.APPROVED, RuleStatus.PUBLISHED})


@dataclass(frozen=True)
class CandidateRule:
    """The parts of a proposed rule the detector compares."""

    concept_slug: str
    domain: str
    value: str
    value_type: str
    effective_from: date
    effective_until: date | None = None
    authority_level: AuthorityLevel = AuthorityLevel.PRACTICE

    @classmethod
    def from_rule(cls, rule: Rule) -> "CandidateRule":
        return cls(
            concept_slug=rule.concept_slug,
            domain=rule.domain,
            value=rule.value,
            value_type=rule.value_type,
            effective_from=rule.effective_from,
            effective_until=rule.effective_until,
            authority_level=rule.authority_level,
        )


@dataclass
class ConflictReport:
    """Detected conflicts (not yet persisted)."""

    conflicts: list[Conflict] = field(default_factory=list)

    @property
    def has_blocking(self) -> bool:
        # Any conflict blocks composition.
        return bool(self.conflicts)

    @property
    def types(self) -> list[ConflictType]:
        return [c.conflict_type for c in self.conflicts]


def windows_overlap(
    start1: date,
    end1: date | None,
    start2: date,
    end2: date | None,
) -> bool:
    """Inclusive date-window overlap; ``None`` end means open-ended."""
    return (end2 is None or start1 <= end2) and (end1 is None or start2 <= end1)


class ConflictDetector:
    """
    Structural conflict detection.

    Args:
        taxonomy: Alias lookup used for cross-slug duplicate detection
    """

    def __init__(self, taxonomy: TaxonomyService) -> None:
        self.taxonomy = taxonomy

    def detect(self, candidate: CandidateRule, existing: Iterable[Rule]) -> ConflictReport:
        """
        Compare ``candidate`` against ``existing`` rules.

        Rules outside APPROVED/PUBLISHED are ignored.
        """
        report = ConflictReport()
        candidate_slug = normalize_slug(candidate.concept_slug)
        candidate_value = normalize_value(candidate.value)
        related = {normalize_slug(s) for s in self.taxonomy.related_slugs(candidate.concept_slug)}

        for rule in existing:
            if rule.status not in COMPARED_STATUSES:
                continue
            if not windows_overlap(
                candidate.effective_from,
                candidate.effective_until,
                rule.effective_from,
                rule.effective_until,
            ):
                continue

            rule_slug = normalize_slug(rule.concept_slug)
            same_value = (
                normalize_value(rule.value) == candidate_value
                and rule.value_type == candidate.value_type
            )

            if rule_slug == candidate_slug:
                report.conflicts.extend(self._same_concept(candidate, rule, same_value))
            elif same_value and (rule_slug in related or rule.domain == candidate.domain):
                report.conflicts.append(
                    Conflict(
                        conflict_type=ConflictType.CROSS_SLUG_DUPLICATE,
                        description=(
                            f'Potential duplicate: value "{candidate.value}" already published '
                            f'under "{rule.concept_slug}", proposed as "{candidate.concept_slug}"'
                        ),
                        rule_ids=[rule.id],
                        concept_slug=candidate.concept_slug,
                    )
                )

        if report.conflicts:
            logger.info(
                "conflicts_detected",
                concept_slug=candidate.concept_slug,
                types=[t.value for t in report.types],
                taxonomy_version=self.taxonomy.version,
            )
        return report

    def _same_concept(
        self,
        candidate: CandidateRule,
        rule: Rule,
        same_value: bool,
    ) -> list[Conflict]:
        slug = candidate.concept_slug

        if same_value:
            identical = (
                rule.effective_from == candidate.effective_from
                and rule.effective_until == candidate.effective_until
            )
            description = (
                f'Duplicate of rule {rule.id} for "{slug}" with identical window'
                if identical
                else (
                    f'"{slug}" value "{candidate.value}" already effective '
                    f"{rule.effective_from}..{rule.effective_until or 'open'}; proposed "
                    f"{candidate.effective_from}..{candidate.effective_until or 'open'}"
                )
            )
            return [
                Conflict(
                    conflict_type=ConflictType.DATE_OVERLAP,
                    description=description,
                    rule_ids=[rule.id],
                    concept_slug=slug,
                )
            ]

        conflicts = [
            Conflict(
                conflict_type=ConflictType.VALUE_MISMATCH,
                description=(
                    f'Same concept "{slug}" with different values: "{rule.value}" vs '
                    f'"{candidate.value}" during overlapping period'
                ),
                rule_ids=[rule.id],
                concept_slug=slug,
            )
        ]
        if rule.authority_level != candidate.authority_level:
            higher = AuthorityLevel.highest([rule.authority_level, candidate.authority_level])
            conflicts.append(
                Conflict(
                    conflict_type=ConflictType.AUTHORITY_SUPERSEDE,
                    description=(
                        f'"{slug}": {higher.value} source contradicts a lower-authority '
                        f"source ({rule.authority_level.value} vs "
                        f"{candidate.authority_level.value})"
                    ),
                    rule_ids=[rule.id],
                    concept_slug=slug,
                )
            )
        return conflicts


class ConflictRegistry:
    """
    Queries and resolves persisted conflicts.

    Resolution is an external arbitration decision; the registry only
    records it.
    """

    def __init__(
        self,
        store: PipelineStore,
        audit: AuditLog | None = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.audit = audit or AuditLog(store, now=now)
        self.now = now

    async def open_conflicts(self, rule_id: str | None = None) -> list[Conflict]:
        return await self.store.list_conflicts(status=ConflictStatus.OPEN, rule_id=rule_id)

    async def resolve(self, conflict_id: str, resolver_id: str, note: str) -> Conflict:
        """Mark a conflict resolved by ``resolver_id``."""
        if not resolver_id:
            raise InputError("A resolver identity is required")

        conflict = await self.store.get_conflict(conflict_id)
        if conflict is None:
            raise NotFoundError(f"Conflict not found: {conflict_id}", conflict_id=conflict_id)
        if not conflict.is_open:
            raise InvalidTransitionError(
                f"Conflict {conflict_id} is already resolved",
                conflict_id=conflict_id,
            )

        resolved = conflict.model_copy(
            update={
                "status": ConflictStatus.RESOLVED,
                "resolution": note,
                "resolved_by": resolver_id,
                "resolved_at": self.now(),
            }
        )
        async with self.store.transaction():
            await self.store.save_conflict(resolved)
            await self.audit.record(
                AuditAction.CONFLICT_RESOLVED,
                "CONFLICT",
                conflict_id,
                resolver_id=resolver_id,
                conflict_type=conflict.conflict_type.value,
            )

        logger.info(
            "conflict_resolved",
            conflict_id=conflict_id,
            conflict_type=conflict.conflict_type.value,
            resolver_id=resolver_id,
        )
        return resolved
