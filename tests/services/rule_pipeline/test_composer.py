"""Tests for the rule composer."""

import pytest

from services.rule_pipeline.audit import AuditAction
from services.rule_pipeline.composer import CompositionOutcome, group_facts, grouping_key
from services.rule_pipeline.errors import (
    BlocklistedDomainError,
    InputError,
    InvalidPredicateError,
    MalformedReasoningOutputError,
    MissingEvidenceError,
    MixedGroupError,
    NotFoundError,
    RejectedFactError,
    TransientError,
)
from services.rule_pipeline.keys import composition_key
from shared.models import (
    AuthorityLevel,
    ConflictStatus,
    ConflictType,
    FactStatus,
    RiskTier,
    RuleStatus,
)

from tests.conftest import QUOTES_13


async def save_all(store, facts) -> list[str]:
    for fact in facts:
        await store.save_fact(fact)
    return [f.id for f in facts]


# =============================================================================
# Grouping
# =============================================================================


class TestGrouping:
    """Tests for fact grouping."""

    def test_grouping_key_normalizes_value(self, make_facts) -> None:
        a = make_facts(value="25 %")[0]
        b = make_facts(value="  25   % ")[0]
        assert grouping_key(a) == grouping_key(b) == "pdv-stopa::percentage::25 %"

    def test_group_facts(self, make_facts) -> None:
        facts = make_facts(value="25") + make_facts(value="13", quotes=QUOTES_13)
        groups = group_facts(facts)
        assert sorted(len(g) for g in groups.values()) == [2, 3]


# =============================================================================
# Composition
# =============================================================================


class TestCompose:
    """Tests for RuleComposer.compose."""

    @pytest.mark.asyncio
    async def test_creates_draft_rule(self, composer, store, vat_facts, clock) -> None:
        result = await composer.compose([f.id for f in vat_facts])

        assert result.outcome == CompositionOutcome.CREATED
        rule = result.rule
        assert rule is not None
        assert rule.status == RuleStatus.DRAFT
        assert rule.risk_tier == RiskTier.T2
        assert rule.authority_level == AuthorityLevel.LAW
        assert rule.value == "25"
        assert rule.confidence == pytest.approx(0.95)
        assert rule.idempotency_key == composition_key(f.id for f in vat_facts)
        assert rule.created_at == clock()

        pointers = await store.list_pointers(rule.id)
        assert len(pointers) == 3
        assert {p.fact_id for p in pointers} == {f.id for f in vat_facts}
        assert all(p.rule_id == rule.id for p in pointers)

        for fact in vat_facts:
            stored = await store.get_fact(fact.id)
            assert stored.status == FactStatus.PROMOTED

        events = await store.list_audit(entity_id=rule.id)
        assert [e.action for e in events] == [AuditAction.RULE_CREATED]

    @pytest.mark.asyncio
    async def test_confidence_capped_by_reasoning(self, composer, reasoner, vat_facts) -> None:
        reasoner.update(confidence=0.7)
        result = await composer.compose([f.id for f in vat_facts])
        assert result.rule.confidence == pytest.approx(0.7)

    @pytest.mark.asyncio
    async def test_idempotent_per_fact_set(self, composer, store, reasoner, vat_facts) -> None:
        ids = [f.id for f in vat_facts]
        first = await composer.compose(ids)
        second = await composer.compose(list(reversed(ids)))

        assert second.outcome == CompositionOutcome.DUPLICATE
        assert second.rule_id == first.rule_id
        assert len(await store.list_rules()) == 1
        assert len(reasoner.calls) == 1

    @pytest.mark.asyncio
    async def test_empty_fact_ids(self, composer) -> None:
        with pytest.raises(InputError):
            await composer.compose([])

    @pytest.mark.asyncio
    async def test_unknown_fact(self, composer) -> None:
        with pytest.raises(NotFoundError):
            await composer.compose(["fact-missing"])

    @pytest.mark.asyncio
    async def test_missing_evidence(self, composer, store, make_facts, reasoner) -> None:
        ids = await save_all(store, make_facts(with_quotes=False))

        with pytest.raises(MissingEvidenceError):
            await composer.compose(ids)

        assert await store.list_rules() == []
        assert reasoner.calls == []
        events = await store.list_audit(action=AuditAction.COMPOSITION_REJECTED)
        assert events[0].entity_id == composition_key(ids)
        assert events[0].metadata["code"] == "MISSING_EVIDENCE"

    @pytest.mark.asyncio
    async def test_blocklisted_domain(self, composer, store, make_facts, reasoner) -> None:
        ids = await save_all(store, make_facts(domain="synthetic-pdv"))

        with pytest.raises(BlocklistedDomainError):
            await composer.compose(ids)
        assert reasoner.calls == []

    @pytest.mark.asyncio
    async def test_settings_blocklist(self, composer, store, make_facts) -> None:
        ids = await save_all(store, make_facts(domain="heartbeat"))
        with pytest.raises(BlocklistedDomainError):
            await composer.compose(ids)

    @pytest.mark.asyncio
    async def test_mixed_group(self, composer, store, make_facts) -> None:
        facts = make_facts(value="25")[:1] + make_facts(value="13", quotes=QUOTES_13)[:1]
        ids = await save_all(store, facts)

        with pytest.raises(MixedGroupError) as exc_info:
            await composer.compose(ids)
        assert len(exc_info.value.details["grouping_keys"]) == 2

    @pytest.mark.asyncio
    async def test_rejected_fact_in_group(self, composer, store, make_facts, reasoner) -> None:
        facts = make_facts()
        facts[1] = facts[1].with_status(FactStatus.REJECTED)
        ids = await save_all(store, facts)

        with pytest.raises(RejectedFactError) as exc_info:
            await composer.compose(ids)
        assert isinstance(exc_info.value, InputError)
        assert exc_info.value.details["fact_ids"] == [facts[1].id]
        assert reasoner.calls == []
        assert await store.list_rules() == []

    @pytest.mark.asyncio
    async def test_invalid_predicate_fails_closed(self, composer, store, reasoner, vat_facts) -> None:
        reasoner.update(appliesWhen={"op": "and", "args": []})

        with pytest.raises(InvalidPredicateError):
            await composer.compose([f.id for f in vat_facts])
        assert await store.list_rules() == []

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, composer, store, reasoner, vat_facts) -> None:
        reasoner.update(appliesWhen={"op": "exists", "field": "entity.favouriteColour"})

        with pytest.raises(InvalidPredicateError):
            await composer.compose([f.id for f in vat_facts])

    @pytest.mark.asyncio
    async def test_malformed_reasoning_output(self, composer, reasoner, vat_facts) -> None:
        reasoner.update(confidence="high")
        with pytest.raises(MalformedReasoningOutputError):
            await composer.compose([f.id for f in vat_facts])

    @pytest.mark.asyncio
    async def test_reasoning_failure_is_transient(self, composer, store, reasoner, vat_facts) -> None:
        reasoner.error = RuntimeError("model overloaded")

        with pytest.raises(TransientError):
            await composer.compose([f.id for f in vat_facts])

        # Transient failures are retried by the worker, not audited here
        assert await store.list_audit(action=AuditAction.COMPOSITION_REJECTED) == []
        assert await store.list_rules() == []


# =============================================================================
# Escalation
# =============================================================================


class TestEscalation:
    """Tests for conflict escalation during composition."""

    @pytest.mark.asyncio
    async def test_value_mismatch_escalates(
        self, composer, store, reasoner, make_facts, approved_rule
    ) -> None:
        ids = await save_all(store, make_facts(value="13", quotes=QUOTES_13))
        reasoner.update(value="13")

        result = await composer.compose(ids)

        assert result.outcome == CompositionOutcome.ESCALATED
        assert result.rule is None
        assert [c.conflict_type for c in result.conflicts] == [ConflictType.VALUE_MISMATCH]
        conflict = result.conflicts[0]
        assert conflict.rule_ids == [approved_rule.id]
        assert conflict.fact_ids == ids
        assert conflict.source_key == composition_key(ids)

        assert len(await store.list_rules()) == 1
        stored = await store.list_conflicts(status=ConflictStatus.OPEN, rule_id=approved_rule.id)
        assert [c.id for c in stored] == [conflict.id]
        for fact_id in ids:
            assert (await store.get_fact(fact_id)).status == FactStatus.CAPTURED

    @pytest.mark.asyncio
    async def test_escalation_is_idempotent(
        self, composer, store, reasoner, make_facts, approved_rule
    ) -> None:
        ids = await save_all(store, make_facts(value="13", quotes=QUOTES_13))
        reasoner.update(value="13")

        first = await composer.compose(ids)
        second = await composer.compose(ids)

        assert second.outcome == CompositionOutcome.ESCALATED
        assert [c.id for c in second.conflicts] == [c.id for c in first.conflicts]
        assert len(await store.list_conflicts()) == 1

    @pytest.mark.asyncio
    async def test_draft_rules_do_not_conflict(self, composer, store, reasoner, vat_facts, make_facts) -> None:
        await composer.compose([f.id for f in vat_facts])
        ids = await save_all(store, make_facts(value="13", quotes=QUOTES_13))
        reasoner.update(value="13")

        result = await composer.compose(ids)
        assert result.outcome == CompositionOutcome.CREATED

    @pytest.mark.asyncio
    async def test_source_conflict_flag(self, composer, store, reasoner, vat_facts) -> None:
        reasoner.update(conflictDetected=True, composerNotes="Article 38 and the guidance disagree")

        result = await composer.compose([f.id for f in vat_facts])

        assert result.outcome == CompositionOutcome.ESCALATED
        assert [c.conflict_type for c in result.conflicts] == [ConflictType.SOURCE_CONFLICT]
        assert "guidance disagree" in result.conflicts[0].description
        events = await store.list_audit(action=AuditAction.RULE_ESCALATED)
        assert len(events) == 1


# =============================================================================
# Supersedes
# =============================================================================


class TestSupersedes:
    """Tests for supersedes links."""

    @pytest.mark.asyncio
    async def test_links_existing_rule(
        self, composer, store, reasoner, make_facts, approved_rule, gate
    ) -> None:
        await gate.reject(approved_rule.id, "replaced by new rate")
        ids = await save_all(store, make_facts(value="13", quotes=QUOTES_13))
        reasoner.update(value="13", supersedes=approved_rule.id)

        result = await composer.compose(ids)

        assert result.rule.supersedes_id == approved_rule.id

    @pytest.mark.asyncio
    async def test_missing_target_skipped(self, composer, reasoner, vat_facts) -> None:
        reasoner.update(supersedes="rule-does-not-exist")

        result = await composer.compose([f.id for f in vat_facts])

        assert result.outcome == CompositionOutcome.CREATED
        assert result.rule.supersedes_id is None
        assert "not found" in result.rule.composer_notes
