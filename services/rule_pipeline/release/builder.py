"""
Release Builder
===============

Bundles APPROVED rules into an immutable, versioned release.

Hard gates (all evaluated, every failure reported):
- all_approved: every rule is APPROVED
- critical_approver: every T0/T1 rule has a human approver
- no_open_conflicts: no rule has an open conflict
- has_evidence: every rule has at least one source pointer
- single_source_authority: rules backed by one document need LAW authority

Then: version bump, content hash, evidence-chain verification and one
serializable transaction that creates the release and flips every rule to
PUBLISHED. Post-publication hooks run after commit and never fail it.

Version: 0.1.0
"""

from collections.abc import Awaitable, Callable, Iterable, Sequence
from datetime import datetime

from services.rule_pipeline.audit import AuditAction, AuditLog
from services.rule_pipeline.errors import (
    EvidenceChainError,
    GateFailure,
    InputError,
    IntegrityViolation,
    PolicyRejection,
    ReleaseGateError,
)
from services.rule_pipeline.keys import release_key
from services.rule_pipeline.release.content_hash import compute_content_hash
from services.rule_pipeline.release.evidence_chain import EvidenceChainVerifier
from services.rule_pipeline.release.versioning import next_version, release_type_for
from services.rule_pipeline.store.base import PipelineStore
from shared.logging import get_logger
from shared.models import (
    AuthorityLevel,
    ConflictStatus,
    Release,
    ReleaseMetrics,
    Rule,
    RuleStatus,
    SourcePointer,
    utc_now,
)

logger = get_logger(__name__)

PostPublishHook = Callable[[Release, list[Rule]], Awaitable[None]]


class Gate:
    """Release gate names."""

    ALL_APPROVED = "all_approved"
    CRITICAL_APPROVER = "critical_approver"
    NO_OPEN_CONFLICTS = "no_open_conflicts"
    HAS_EVIDENCE = "has_evidence"
    SINGLE_SOURCE_AUTHORITY = "single_source_authority"


def check_gates(
    rules: Sequence[Rule],
    pointers_by_rule: dict[str, list[SourcePointer]],
    open_conflicts_by_rule: dict[str, int],
) -> list[GateFailure]:
    """Evaluate every hard gate and return the failures (empty when clear)."""
    failed: dict[str, list[str]] = {}

    def flag(gate: str, rule: Rule) -> None:
        failed.setdefault(gate, []).append(rule.id)

    for rule in rules:
        pointers = pointers_by_rule.get(rule.id, [])
        if rule.status != RuleStatus.APPROVED:
            flag(Gate.ALL_APPROVED, rule)
        if rule.risk_tier.is_critical and not rule.approved_by:
            flag(Gate.CRITICAL_APPROVER, rule)
        if open_conflicts_by_rule.get(rule.id):
            flag(Gate.NO_OPEN_CONFLICTS, rule)
        if not pointers:
            flag(Gate.HAS_EVIDENCE, rule)
        elif (
            len({p.document_id for p in pointers}) == 1
            and rule.authority_level != AuthorityLevel.LAW
        ):
            flag(Gate.SINGLE_SOURCE_AUTHORITY, rule)

    reasons = {
        Gate.ALL_APPROVED: "rule is not APPROVED",
        Gate.CRITICAL_APPROVER: "T0/T1 rule has no human approver",
        Gate.NO_OPEN_CONFLICTS: "rule has an open conflict",
        Gate.HAS_EVIDENCE: "rule has no source pointers",
        Gate.SINGLE_SOURCE_AUTHORITY: "single-source rule lacks LAW authority",
    }
    return [
        GateFailure(gate=gate, rule_ids=rule_ids, reason=reasons[gate])
        for gate, rule_ids in failed.items()
    ]


def default_changelog(version: str, rules: Sequence[Rule]) -> tuple[str, str]:
    slugs = ", ".join(sorted({r.concept_slug for r in rules}))
    return (
        f"Izdanje {version}: {len(rules)} pravila ({slugs})",
        f"Release {version}: {len(rules)} rules ({slugs})",
    )


class ReleaseBuilder:
    """
    Publishes APPROVED rules as a release.

    Args:
        store: Pipeline store
        audit: Audit log
        hooks: Post-publication callbacks (search index, embeddings, sync)
        now: Clock
    """

    def __init__(
        self,
        store: PipelineStore,
        audit: AuditLog | None = None,
        hooks: Iterable[PostPublishHook] = (),
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.audit = audit or AuditLog(store, now=now)
        self.hooks = list(hooks)
        self.verifier = EvidenceChainVerifier(store)
        self.now = now

    def add_hook(self, hook: PostPublishHook) -> None:
        self.hooks.append(hook)

    async def build(
        self,
        rule_ids: Iterable[str],
        changelog_hr: str | None = None,
        changelog_en: str | None = None,
    ) -> Release:
        """
        Publish ``rule_ids`` as one release.

        Re-running for the same rule-id set returns the existing release.

        Raises:
            ReleaseGateError: A hard gate failed (nothing published)
            EvidenceChainError: A source pointer failed verification
        """
        ids = sorted(set(rule_ids))
        if not ids:
            raise InputError("A release needs at least one rule")
        key = release_key(ids)

        existing = await self.store.get_release_by_idempotency_key(key)
        if existing is not None:
            logger.info("release_already_published", release_id=existing.id, version=existing.version)
            return existing

        try:
            release, rules, created = await self._publish(ids, key, changelog_hr, changelog_en)
        except (PolicyRejection, IntegrityViolation) as e:
            await self.audit.record_error(AuditAction.RELEASE_BLOCKED, "RELEASE", key, e)
            raise

        if not created:
            # A concurrent build of the same rule set committed first.
            logger.info("release_already_published", release_id=release.id, version=release.version)
            return release

        logger.info(
            "release_published",
            release_id=release.id,
            version=release.version,
            release_type=release.release_type.value,
            rule_count=len(rules),
            content_hash=release.content_hash,
        )
        await self._run_hooks(release, rules)
        return release

    async def _publish(
        self,
        ids: list[str],
        key: str,
        changelog_hr: str | None,
        changelog_en: str | None,
    ) -> tuple[Release, list[Rule], bool]:
        """Gate, verify and publish; the flag is False when the release already existed."""
        # Fast fail before taking the serializable lock
        rules, pointers_by_rule = await self._check(ids)
        report = await self.verifier.verify(rules, pointers_by_rule)
        if not report.ok:
            raise EvidenceChainError(report.failures)

        async with self.store.transaction(serializable=True):
            existing = await self.store.get_release_by_idempotency_key(key)
            if existing is not None:
                return existing, rules, False

            # State may have moved between the first pass and the lock.
            current, current_pointers = await self._check(ids)
            if current_pointers != pointers_by_rule:
                pointers_by_rule = current_pointers
                report = await self.verifier.verify(current, pointers_by_rule)
                if not report.ok:
                    raise EvidenceChainError(report.failures)
            content_hash = compute_content_hash(current)

            latest = await self.store.latest_release()
            release_type = release_type_for(r.risk_tier for r in current)
            version = next_version(latest.version if latest else None, release_type)
            default_hr, default_en = default_changelog(version, current)

            release = Release(
                version=version,
                release_type=release_type,
                content_hash=content_hash,
                changelog_hr=changelog_hr or default_hr,
                changelog_en=changelog_en or default_en,
                approved_by=sorted({r.approved_by for r in current if r.approved_by}),
                metrics=await self._metrics(current, pointers_by_rule),
                rule_ids=ids,
                idempotency_key=key,
                created_at=self.now(),
            )
            await self.store.save_release(release)

            now = self.now()
            for rule in current:
                rule.status = RuleStatus.PUBLISHED
                rule.release_id = release.id
                rule.updated_at = now
                await self.store.save_rule(rule)
                await self.store.save_pointers(
                    report.annotated_pointers(pointers_by_rule[rule.id])
                )

            await self.audit.record(
                AuditAction.RELEASE_PUBLISHED,
                "RELEASE",
                release.id,
                version=release.version,
                rule_ids=ids,
                content_hash=content_hash,
            )

        return release, current, True

    async def _check(self, ids: list[str]) -> tuple[list[Rule], dict[str, list[SourcePointer]]]:
        """Load the rules with their pointers and raise if any hard gate fails."""
        rules = [await self.store.require_rule(rule_id) for rule_id in ids]
        pointers_by_rule = {rule.id: await self.store.list_pointers(rule.id) for rule in rules}
        open_conflicts = {
            rule.id: len(
                await self.store.list_conflicts(status=ConflictStatus.OPEN, rule_id=rule.id)
            )
            for rule in rules
        }

        failures = check_gates(rules, pointers_by_rule, open_conflicts)
        if failures:
            raise ReleaseGateError(failures)
        return rules, pointers_by_rule

    async def _metrics(
        self,
        rules: Sequence[Rule],
        pointers_by_rule: dict[str, list[SourcePointer]],
    ) -> ReleaseMetrics:
        pointers = [p for rule in rules for p in pointers_by_rule.get(rule.id, [])]
        review_count = 0
        for rule in rules:
            review_count += len(await self.store.list_reviews(rule_id=rule.id))
        return ReleaseMetrics(
            source_count=len({p.document_id for p in pointers}),
            pointer_count=len(pointers),
            review_count=review_count,
            human_approval_count=sum(1 for r in rules if r.approved_by),
        )

    async def _run_hooks(self, release: Release, rules: list[Rule]) -> None:
        for hook in self.hooks:
            name = getattr(hook, "__name__", type(hook).__name__)
            try:
                await hook(release, rules)
            except Exception as e:
                logger.error(
                    "post_publish_hook_failed",
                    hook=name,
                    release_id=release.id,
                    error=str(e),
                )
