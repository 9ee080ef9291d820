"""
Tiered Review Gate
==================

Decides whether a DRAFT rule may be auto-approved or must wait for a human.

Policy, in order:
1. T0/T1 rules always go to PENDING_REVIEW. Only ``approve()`` moves them.
2. T2/T3 rules auto-approve when confidence >= threshold, the grace period
   has passed, no conflict is open and at least one source pointer exists.
   Otherwise they go to PENDING_REVIEW with the failing reasons recorded.
3. Zero source pointers blocks approval in every path, including a human
   ``approve()``.

Version: 0.1.0
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from services.rule_pipeline.audit import AuditAction, AuditLog
from services.rule_pipeline.errors import (
    ApprovalBlockedError,
    InputError,
    InvalidTransitionError,
    PipelineError,
    TransientError,
)
from services.rule_pipeline.store.base import PipelineStore
from shared.config import ReviewSettings
from shared.logging import get_logger
from shared.models import (
    ConflictStatus,
    ReviewPriority,
    ReviewReason,
    ReviewRequest,
    ReviewStatus,
    RiskTier,
    Rule,
    RuleStatus,
    utc_now,
)

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[RuleStatus, frozenset[RuleStatus]] = {
    RuleStatus.DRAFT: frozenset(
        {RuleStatus.PENDING_REVIEW, RuleStatus.APPROVED, RuleStatus.REJECTED}
    ),
    RuleStatus.PENDING_REVIEW: frozenset({RuleStatus.APPROVED, RuleStatus.REJECTED}),
    RuleStatus.APPROVED: frozenset({RuleStatus.PUBLISHED, RuleStatus.REJECTED}),
    RuleStatus.PUBLISHED: frozenset(),
    RuleStatus.REJECTED: frozenset(),
}

TIER_PRIORITY = {
    RiskTier.T0: ReviewPriority.CRITICAL,
    RiskTier.T1: ReviewPriority.HIGH,
    RiskTier.T2: ReviewPriority.NORMAL,
    RiskTier.T3: ReviewPriority.LOW,
}


def check_transition(rule: Rule, target: RuleStatus) -> None:
    """Raise ``InvalidTransitionError`` if ``rule`` may not move to ``target``."""
    if target not in ALLOWED_TRANSITIONS[rule.status]:
        raise InvalidTransitionError(
            f"Rule {rule.id} cannot move from {rule.status.value} to {target.value}",
            rule_id=rule.id,
            from_status=rule.status.value,
            to_status=target.value,
        )


@dataclass(frozen=True)
class ReviewDecision:
    """Where the gate routes a rule, and why."""

    rule_id: str
    status: RuleStatus
    reasons: tuple[ReviewReason, ...] = ()
    priority: ReviewPriority | None = None

    @property
    def auto_approved(self) -> bool:
        return self.status == RuleStatus.APPROVED


@dataclass
class SweepResult:
    """Summary of one review sweep."""

    evaluated: int = 0
    auto_approved: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


class ReviewGate:
    """
    Tiered review gate.

    Args:
        store: Pipeline store
        settings: Review policy (threshold, grace period, SLA hours)
        audit: Audit log
        now: Clock
    """

    def __init__(
        self,
        store: PipelineStore,
        settings: ReviewSettings | None = None,
        audit: AuditLog | None = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.settings = settings or ReviewSettings()
        self.audit = audit or AuditLog(store, now=now)
        self.now = now

    # =========================================================================
    # Policy
    # =========================================================================

    def sla_for(self, priority: ReviewPriority) -> timedelta:
        hours = {
            ReviewPriority.CRITICAL: self.settings.sla_critical_hours,
            ReviewPriority.HIGH: self.settings.sla_high_hours,
            ReviewPriority.NORMAL: self.settings.sla_normal_hours,
            ReviewPriority.LOW: self.settings.sla_low_hours,
        }[priority]
        return timedelta(hours=hours)

    def decide(self, rule: Rule, pointer_count: int, open_conflicts: int) -> ReviewDecision:
        """Pure routing decision for a DRAFT or PENDING_REVIEW rule."""
        priority = TIER_PRIORITY[rule.risk_tier]

        if rule.risk_tier.is_critical:
            reasons = [
                ReviewReason.T0_RULE_APPROVAL
                if rule.risk_tier == RiskTier.T0
                else ReviewReason.T1_RULE_APPROVAL
            ]
            if pointer_count == 0:
                reasons.append(ReviewReason.MISSING_EVIDENCE)
            return ReviewDecision(rule.id, RuleStatus.PENDING_REVIEW, tuple(reasons), priority)

        reasons = []
        if pointer_count == 0:
            reasons.append(ReviewReason.MISSING_EVIDENCE)
        if open_conflicts:
            reasons.append(ReviewReason.OPEN_CONFLICT)
        if rule.confidence < self.settings.auto_approve_confidence:
            reasons.append(ReviewReason.LOW_RULE_CONFIDENCE)
        if self.now() - rule.created_at <= timedelta(hours=self.settings.grace_period_hours):
            reasons.append(ReviewReason.GRACE_PERIOD)

        if reasons:
            return ReviewDecision(rule.id, RuleStatus.PENDING_REVIEW, tuple(reasons), priority)
        return ReviewDecision(rule.id, RuleStatus.APPROVED)

    # =========================================================================
    # Actions
    # =========================================================================

    async def evaluate(self, rule_id: str) -> ReviewDecision:
        """Route one DRAFT/PENDING_REVIEW rule and persist the outcome."""
        async with self.store.transaction():
            rule = await self.store.require_rule(rule_id)
            if rule.status not in (RuleStatus.DRAFT, RuleStatus.PENDING_REVIEW):
                raise InvalidTransitionError(
                    f"Rule {rule_id} is {rule.status.value}; only DRAFT or "
                    "PENDING_REVIEW rules are evaluated",
                    rule_id=rule_id,
                    status=rule.status.value,
                )

            pointers = await self.store.list_pointers(rule_id)
            conflicts = await self.store.list_conflicts(
                status=ConflictStatus.OPEN, rule_id=rule_id
            )
            decision = self.decide(rule, len(pointers), len(conflicts))

            if decision.auto_approved:
                await self._auto_approve(rule)
            else:
                await self._request_review(rule, decision)

        return decision

    async def sweep(self) -> SweepResult:
        """Evaluate every DRAFT and PENDING_REVIEW rule."""
        result = SweepResult()
        rules = await self.store.list_rules(
            statuses=(RuleStatus.DRAFT, RuleStatus.PENDING_REVIEW)
        )
        for rule in sorted(rules, key=lambda r: (r.created_at, r.id)):
            result.evaluated += 1
            try:
                decision = await self.evaluate(rule.id)
            except TransientError:
                raise
            except PipelineError as e:
                # A concurrent approve/reject may have moved the rule on.
                logger.warning("review_evaluation_skipped", rule_id=rule.id, error=e.message)
                result.failed[rule.id] = e.code
                continue
            if decision.auto_approved:
                result.auto_approved.append(rule.id)
            else:
                result.pending.append(rule.id)

        logger.info(
            "review_sweep_completed",
            evaluated=result.evaluated,
            auto_approved=len(result.auto_approved),
            pending=len(result.pending),
            failed=len(result.failed),
        )
        return result

    async def approve(self, rule_id: str, approver_id: str) -> Rule:
        """Human approval; the only way T0/T1 rules leave review."""
        if not approver_id:
            raise InputError("An approver identity is required")

        async with self.store.transaction():
            rule = await self.store.require_rule(rule_id)
            check_transition(rule, RuleStatus.APPROVED)
            has_evidence = bool(await self.store.list_pointers(rule_id))
            if has_evidence:
                await self._human_approve(rule, approver_id)

        if not has_evidence:
            error = ApprovalBlockedError(
                f"Rule {rule_id} has no source pointers and cannot be approved",
                rule_id=rule_id,
                reason=ReviewReason.MISSING_EVIDENCE.value,
            )
            await self.audit.record_error(AuditAction.RULE_APPROVED, "RULE", rule_id, error)
            raise error

        logger.info(
            "rule_approved",
            rule_id=rule_id,
            approver_id=approver_id,
            risk_tier=rule.risk_tier.value,
        )
        return rule

    async def reject(self, rule_id: str, reason: str, reviewer_id: str | None = None) -> Rule:
        """Move a rule to terminal REJECTED."""
        async with self.store.transaction():
            rule = await self.store.require_rule(rule_id)
            check_transition(rule, RuleStatus.REJECTED)

            rule.status = RuleStatus.REJECTED
            rule.rejection_reason = reason
            rule.updated_at = self.now()
            await self.store.save_rule(rule)
            await self._complete_review(rule_id, outcome="rejected", completed_by=reviewer_id)
            await self.audit.record(
                AuditAction.RULE_REJECTED,
                "RULE",
                rule_id,
                reason=reason,
                reviewer_id=reviewer_id,
            )

        logger.info("rule_rejected", rule_id=rule_id, reason=reason)
        return rule

    # =========================================================================
    # Queries
    # =========================================================================

    async def pending_reviews(self) -> list[ReviewRequest]:
        """Open review requests, most urgent first."""
        reviews = await self.store.list_reviews(status=ReviewStatus.PENDING)
        return sorted(reviews, key=lambda r: (r.priority.sort_order, r.sla_deadline, r.id))

    async def overdue_reviews(self) -> list[ReviewRequest]:
        """Open review requests past their SLA deadline."""
        now = self.now()
        overdue = [r for r in await self.pending_reviews() if r.is_overdue(now)]
        for review in overdue:
            logger.warning(
                "review_sla_breached",
                review_id=review.id,
                rule_id=review.rule_id,
                priority=review.priority.value,
                overdue_hours=round((now - review.sla_deadline).total_seconds() / 3600, 2),
            )
        return overdue

    # =========================================================================
    # Internals
    # =========================================================================

    async def _auto_approve(self, rule: Rule) -> None:
        check_transition(rule, RuleStatus.APPROVED)
        now = self.now()
        rule.status = RuleStatus.APPROVED
        rule.auto_approved = True
        rule.approved_by = None
        rule.approved_at = now
        rule.review_reason = None
        rule.updated_at = now
        await self.store.save_rule(rule)
        await self._complete_review(rule.id, outcome="auto_approved", completed_by=None)
        await self.audit.record(
            AuditAction.RULE_AUTO_APPROVED,
            "RULE",
            rule.id,
            risk_tier=rule.risk_tier.value,
            confidence=rule.confidence,
        )
        logger.info(
            "rule_auto_approved",
            rule_id=rule.id,
            risk_tier=rule.risk_tier.value,
            confidence=round(rule.confidence, 4),
        )

    async def _human_approve(self, rule: Rule, approver_id: str) -> None:
        now = self.now()
        rule.status = RuleStatus.APPROVED
        rule.approved_by = approver_id
        rule.approved_at = now
        rule.auto_approved = False
        rule.updated_at = now
        await self.store.save_rule(rule)
        await self._complete_review(rule.id, outcome="approved", completed_by=approver_id)
        await self.audit.record(
            AuditAction.RULE_APPROVED,
            "RULE",
            rule.id,
            approver_id=approver_id,
            risk_tier=rule.risk_tier.value,
        )

    async def _request_review(self, rule: Rule, decision: ReviewDecision) -> None:
        priority = decision.priority or TIER_PRIORITY[rule.risk_tier]
        now = self.now()
        reasons = list(decision.reasons)

        if rule.status == RuleStatus.DRAFT:
            check_transition(rule, RuleStatus.PENDING_REVIEW)
        rule.status = RuleStatus.PENDING_REVIEW
        rule.review_reason = ",".join(r.value for r in reasons)
        rule.updated_at = now
        await self.store.save_rule(rule)

        open_reviews = await self.store.list_reviews(status=ReviewStatus.PENDING, rule_id=rule.id)
        if open_reviews:
            review = open_reviews[0].model_copy(update={"reasons": reasons})
            await self.store.save_review(review)
            return

        review = ReviewRequest(
            rule_id=rule.id,
            reasons=reasons,
            priority=priority,
            requested_at=now,
            sla_deadline=now + self.sla_for(priority),
        )
        await self.store.save_review(review)
        await self.audit.record(
            AuditAction.RULE_REVIEW_REQUESTED,
            "RULE",
            rule.id,
            reasons=[r.value for r in reasons],
            priority=priority.value,
            sla_deadline=review.sla_deadline.isoformat(),
        )
        logger.info(
            "review_requested",
            rule_id=rule.id,
            risk_tier=rule.risk_tier.value,
            reasons=[r.value for r in reasons],
            priority=priority.value,
        )

    async def _complete_review(
        self,
        rule_id: str,
        outcome: str,
        completed_by: str | None,
    ) -> None:
        for review in await self.store.list_reviews(status=ReviewStatus.PENDING, rule_id=rule_id):
            await self.store.save_review(
                review.model_copy(
                    update={
                        "status": ReviewStatus.COMPLETED,
                        "completed_at": self.now(),
                        "completed_by": completed_by,
                        "outcome": outcome,
                    }
                )
            )
