"""Tests for the release builder: gates, hashing, versioning, atomic publication."""

from unittest.mock import AsyncMock

import pytest

from services.rule_pipeline.audit import AuditAction
from services.rule_pipeline.errors import (
    EvidenceChainError,
    InputError,
    NotFoundError,
    ReleaseGateError,
)
from services.rule_pipeline.events import InMemoryEventPublisher, publication_hook
from services.rule_pipeline.keys import release_key
from services.rule_pipeline.release import (
    Gate,
    INITIAL_VERSION,
    ReleaseBuilder,
    compute_content_hash,
    next_version,
    release_type_for,
)
from shared.database.kafka import Topics
from shared.models import (
    AuthorityLevel,
    Conflict,
    ConflictType,
    MatchType,
    ReleaseType,
    RiskTier,
    RuleStatus,
    SourceDocument,
)

from tests.conftest import QUOTES_13, VAT_LAW_TEXT


@pytest.fixture
def approve_new(composer, gate, store, reasoner, make_facts):
    """Compose and approve a rule for a fresh fact group."""

    async def _approve(slug: str, value: str, quotes: tuple[str, ...], tier: str = "T2", **kwargs):
        facts = make_facts(value=value, quotes=quotes, **kwargs)
        for fact in facts:
            await store.save_fact(fact)
        reasoner.update(conceptSlug=slug, value=value, riskTier=tier)
        result = await composer.compose([f.id for f in facts])
        assert result.rule is not None, result
        return await gate.approve(result.rule.id, "reviewer@porezna.hr")

    return _approve


# =============================================================================
# Versioning & hashing
# =============================================================================


class TestVersioning:
    """Tests for semantic versioning."""

    def test_first_release(self) -> None:
        assert next_version(None, ReleaseType.MAJOR) == INITIAL_VERSION == "1.0.0"

    @pytest.mark.parametrize(
        ("release_type", "expected"),
        [
            (ReleaseType.MAJOR, "2.0.0"),
            (ReleaseType.MINOR, "1.3.0"),
            (ReleaseType.PATCH, "1.2.4"),
        ],
    )
    def test_bump(self, release_type: ReleaseType, expected: str) -> None:
        assert next_version("1.2.3", release_type) == expected

    def test_invalid_version(self) -> None:
        with pytest.raises(ValueError):
            next_version("v1.2", ReleaseType.PATCH)

    def test_release_type_by_highest_tier(self) -> None:
        assert release_type_for([RiskTier.T3, RiskTier.T0]) == ReleaseType.MAJOR
        assert release_type_for([RiskTier.T2, RiskTier.T1]) == ReleaseType.MINOR
        assert release_type_for([RiskTier.T2, RiskTier.T3]) == ReleaseType.PATCH
        with pytest.raises(ValueError):
            release_type_for([])


class TestContentHash:
    """Tests for the release content hash."""

    @pytest.mark.asyncio
    async def test_order_independent(self, approved_rule, approve_new) -> None:
        other = await approve_new("pdv-snizena-stopa", "13", QUOTES_13)
        assert compute_content_hash([approved_rule, other]) == compute_content_hash(
            [other, approved_rule]
        )

    @pytest.mark.asyncio
    async def test_content_change_changes_hash(self, approved_rule) -> None:
        changed = approved_rule.model_copy(update={"value": "26"})
        assert compute_content_hash([approved_rule]) != compute_content_hash([changed])

    @pytest.mark.asyncio
    async def test_lifecycle_fields_excluded(self, approved_rule) -> None:
        published = approved_rule.model_copy(
            update={"status": RuleStatus.PUBLISHED, "release_id": "release-1"}
        )
        assert compute_content_hash([approved_rule]) == compute_content_hash([published])


# =============================================================================
# Publication
# =============================================================================


class TestBuild:
    """Tests for ReleaseBuilder.build."""

    @pytest.mark.asyncio
    async def test_publishes_release(self, builder, store, approved_rule) -> None:
        release = await builder.build([approved_rule.id])

        assert release.version == "1.0.0"
        assert release.release_type == ReleaseType.PATCH
        assert release.rule_ids == [approved_rule.id]
        assert release.idempotency_key == release_key([approved_rule.id])
        assert release.content_hash == compute_content_hash([approved_rule])
        assert release.approved_by == ["reviewer@porezna.hr"]
        assert release.metrics.source_count == 1
        assert release.metrics.pointer_count == 3
        assert release.metrics.human_approval_count == 1
        assert "1.0.0" in release.changelog_en

        rule = await store.get_rule(approved_rule.id)
        assert rule.status == RuleStatus.PUBLISHED
        assert rule.release_id == release.id
        pointers = await store.list_pointers(rule.id)
        assert {p.match_type for p in pointers} == {MatchType.EXACT}
        assert all(p.start_offset is not None for p in pointers)

        events = await store.list_audit(entity_id=release.id)
        assert [e.action for e in events] == [AuditAction.RELEASE_PUBLISHED]

    @pytest.mark.asyncio
    async def test_rerun_returns_existing(self, builder, store, approved_rule) -> None:
        first = await builder.build([approved_rule.id])
        second = await builder.build([approved_rule.id, approved_rule.id])

        assert second.id == first.id
        assert len(await store.list_releases()) == 1

    @pytest.mark.asyncio
    async def test_versions_follow_highest_tier(self, builder, approved_rule, approve_new) -> None:
        first = await builder.build([approved_rule.id])

        critical = await approve_new("pdv-snizena-stopa", "13", QUOTES_13, tier="T0")
        second = await builder.build([critical.id])

        threshold = await approve_new("pdv-prag-ulaska", "40000", ("Clanak 38.",), tier="T1")
        third = await builder.build([threshold.id])

        assert [first.version, second.version, third.version] == ["1.0.0", "2.0.0", "2.1.0"]
        assert second.release_type == ReleaseType.MAJOR

    @pytest.mark.asyncio
    async def test_custom_changelog(self, builder, approved_rule) -> None:
        release = await builder.build(
            [approved_rule.id], changelog_hr="Nova stopa", changelog_en="New rate"
        )
        assert (release.changelog_hr, release.changelog_en) == ("Nova stopa", "New rate")

    @pytest.mark.asyncio
    async def test_empty_and_unknown(self, builder) -> None:
        with pytest.raises(InputError):
            await builder.build([])
        with pytest.raises(NotFoundError):
            await builder.build(["rule-missing"])


class TestGates:
    """Tests for hard release gates."""

    @pytest.mark.asyncio
    async def test_unapproved_rule(self, builder, composer, store, vat_facts) -> None:
        result = await composer.compose([f.id for f in vat_facts])

        with pytest.raises(ReleaseGateError) as exc_info:
            await builder.build([result.rule_id])

        assert exc_info.value.gates == [Gate.ALL_APPROVED]
        assert await store.list_releases() == []
        key = release_key([result.rule_id])
        events = await store.list_audit(entity_id=key)
        assert [e.action for e in events] == [AuditAction.RELEASE_BLOCKED]
        assert events[0].metadata["code"] == "RELEASE_GATE_FAILED"

    @pytest.mark.asyncio
    async def test_critical_rule_without_human_approver(self, builder, store, approved_rule) -> None:
        await store.save_rule(
            approved_rule.model_copy(
                update={"risk_tier": RiskTier.T0, "approved_by": None, "auto_approved": True}
            )
        )

        with pytest.raises(ReleaseGateError) as exc_info:
            await builder.build([approved_rule.id])
        assert exc_info.value.gates == [Gate.CRITICAL_APPROVER]

    @pytest.mark.asyncio
    async def test_open_conflict(self, builder, store, approved_rule) -> None:
        await store.save_conflict(
            Conflict(
                conflict_type=ConflictType.VALUE_MISMATCH,
                description="13 vs 25",
                rule_ids=[approved_rule.id],
            )
        )

        with pytest.raises(ReleaseGateError) as exc_info:
            await builder.build([approved_rule.id])
        assert exc_info.value.gates == [Gate.NO_OPEN_CONFLICTS]

    @pytest.mark.asyncio
    async def test_no_evidence(self, builder, store, approved_rule) -> None:
        store._tables["pointers"].clear()

        with pytest.raises(ReleaseGateError) as exc_info:
            await builder.build([approved_rule.id])
        assert exc_info.value.gates == [Gate.HAS_EVIDENCE]

    @pytest.mark.asyncio
    async def test_single_source_needs_law(self, builder, store, approve_new) -> None:
        await store.save_document(
            SourceDocument(
                id="doc-uputa",
                authority_level=AuthorityLevel.GUIDANCE,
                content=VAT_LAW_TEXT,
            )
        )
        rule = await approve_new(
            "pdv-snizena-stopa", "13", QUOTES_13, document_id="doc-uputa"
        )
        assert rule.authority_level == AuthorityLevel.GUIDANCE

        with pytest.raises(ReleaseGateError) as exc_info:
            await builder.build([rule.id])
        assert exc_info.value.gates == [Gate.SINGLE_SOURCE_AUTHORITY]

    @pytest.mark.asyncio
    async def test_every_failing_gate_reported(
        self, builder, composer, store, approved_rule, reasoner, make_facts
    ) -> None:
        facts = make_facts(value="13", quotes=QUOTES_13)
        for fact in facts:
            await store.save_fact(fact)
        reasoner.update(conceptSlug="pdv-snizena-stopa", value="13")
        draft = await composer.compose([f.id for f in facts])
        await store.save_conflict(
            Conflict(
                conflict_type=ConflictType.DATE_OVERLAP,
                description="overlap",
                rule_ids=[approved_rule.id],
            )
        )

        with pytest.raises(ReleaseGateError) as exc_info:
            await builder.build([approved_rule.id, draft.rule_id])

        failures = {f.gate: f.rule_ids for f in exc_info.value.failures}
        assert failures == {
            Gate.ALL_APPROVED: [draft.rule_id],
            Gate.NO_OPEN_CONFLICTS: [approved_rule.id],
        }


class TestIntegrity:
    """Tests for evidence-chain failures and atomicity."""

    @pytest.mark.asyncio
    async def test_tampered_document_blocks_release(
        self, builder, store, approved_rule, law_document
    ) -> None:
        await store.save_document(
            law_document.model_copy(update={"content": VAT_LAW_TEXT.replace("25", "22")})
        )

        with pytest.raises(EvidenceChainError) as exc_info:
            await builder.build([approved_rule.id])

        assert len(exc_info.value.pointer_ids) == 3
        assert (await store.get_rule(approved_rule.id)).status == RuleStatus.APPROVED
        key = release_key([approved_rule.id])
        events = await store.list_audit(entity_id=key)
        assert [e.action for e in events] == [AuditAction.INTEGRITY_VIOLATION]

    @pytest.mark.asyncio
    async def test_failure_mid_publish_rolls_back(
        self, builder, store, approved_rule, approve_new, monkeypatch
    ) -> None:
        other = await approve_new("pdv-snizena-stopa", "13", QUOTES_13)
        save_rule = store.save_rule
        published: list[str] = []

        async def flaky_save_rule(rule):
            if rule.status == RuleStatus.PUBLISHED:
                published.append(rule.id)
                if len(published) == 2:
                    raise RuntimeError("connection lost")
            await save_rule(rule)

        monkeypatch.setattr(store, "save_rule", flaky_save_rule)

        with pytest.raises(RuntimeError):
            await builder.build([approved_rule.id, other.id])

        assert await store.list_releases() == []
        for rule_id in (approved_rule.id, other.id):
            rule = await store.get_rule(rule_id)
            assert rule.status == RuleStatus.APPROVED
            assert rule.release_id is None
        assert await store.list_audit(action=AuditAction.RELEASE_PUBLISHED) == []

    @pytest.mark.asyncio
    async def test_conflict_opened_during_verification_blocks_release(
        self, builder, store, approved_rule, monkeypatch
    ) -> None:
        verify = builder.verifier.verify

        async def verify_then_conflict(rules, pointers_by_rule):
            report = await verify(rules, pointers_by_rule)
            await store.save_conflict(
                Conflict(
                    conflict_type=ConflictType.VALUE_MISMATCH,
                    description="25 vs 20",
                    rule_ids=[approved_rule.id],
                )
            )
            return report

        monkeypatch.setattr(builder.verifier, "verify", verify_then_conflict)

        with pytest.raises(ReleaseGateError) as exc_info:
            await builder.build([approved_rule.id])

        assert exc_info.value.gates == [Gate.NO_OPEN_CONFLICTS]
        assert await store.list_releases() == []
        assert (await store.get_rule(approved_rule.id)).status == RuleStatus.APPROVED

    @pytest.mark.asyncio
    async def test_pointer_removed_during_verification_blocks_release(
        self, builder, store, approved_rule, monkeypatch
    ) -> None:
        verify = builder.verifier.verify

        async def verify_then_drop_pointers(rules, pointers_by_rule):
            report = await verify(rules, pointers_by_rule)
            store._tables["pointers"].clear()
            return report

        monkeypatch.setattr(builder.verifier, "verify", verify_then_drop_pointers)

        with pytest.raises(ReleaseGateError) as exc_info:
            await builder.build([approved_rule.id])

        assert exc_info.value.gates == [Gate.HAS_EVIDENCE]
        assert await store.list_releases() == []

    @pytest.mark.asyncio
    async def test_hash_covers_rules_as_published(
        self, builder, store, approved_rule, monkeypatch
    ) -> None:
        verify = builder.verifier.verify
        edited = approved_rule.model_copy(update={"explanation_en": "Standard rate of 25%."})

        async def verify_then_edit(rules, pointers_by_rule):
            report = await verify(rules, pointers_by_rule)
            await store.save_rule(edited)
            return report

        monkeypatch.setattr(builder.verifier, "verify", verify_then_edit)

        release = await builder.build([approved_rule.id])

        assert release.content_hash == compute_content_hash([edited])
        assert release.content_hash != compute_content_hash([approved_rule])


class TestHooks:
    """Tests for post-publication hooks."""

    @pytest.mark.asyncio
    async def test_hooks_receive_release(self, builder, approved_rule) -> None:
        hook = AsyncMock()
        builder.add_hook(hook)

        release = await builder.build([approved_rule.id])

        hook.assert_awaited_once()
        called_release, rules = hook.call_args.args
        assert called_release.id == release.id
        assert [r.id for r in rules] == [approved_rule.id]

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_fail_release(self, builder, store, approved_rule) -> None:
        later = AsyncMock()
        builder.add_hook(AsyncMock(side_effect=ConnectionError("search index down")))
        builder.add_hook(later)

        release = await builder.build([approved_rule.id])

        assert (await store.get_rule(approved_rule.id)).release_id == release.id
        later.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_concurrent_publish_runs_hooks_once(
        self, store, audit, clock, approved_rule, monkeypatch
    ) -> None:
        winner = ReleaseBuilder(store, audit=audit, now=clock)
        loser = ReleaseBuilder(store, audit=audit, now=clock)
        winner_hook = AsyncMock()
        loser_hook = AsyncMock()
        winner.add_hook(winner_hook)
        loser.add_hook(loser_hook)
        verify = loser.verifier.verify

        async def verify_while_other_publishes(rules, pointers_by_rule):
            report = await verify(rules, pointers_by_rule)
            await winner.build([approved_rule.id])
            return report

        monkeypatch.setattr(loser.verifier, "verify", verify_while_other_publishes)

        release = await loser.build([approved_rule.id])

        assert [r.id for r in await store.list_releases()] == [release.id]
        winner_hook.assert_awaited_once()
        loser_hook.assert_not_awaited()
        assert len(await store.list_audit(action=AuditAction.RELEASE_PUBLISHED)) == 1

    @pytest.mark.asyncio
    async def test_publication_events(self, builder, approved_rule) -> None:
        publisher = InMemoryEventPublisher()
        builder.add_hook(publication_hook(publisher))

        release = await builder.build([approved_rule.id])

        assert publisher.topics() == [Topics.RELEASE_PUBLISHED, Topics.RULE_PUBLISHED]
        release_payload = publisher.events[0][1]
        rule_payload = publisher.events[1][1]
        assert release_payload["version"] == release.version
        assert rule_payload["rule_id"] == approved_rule.id
        assert rule_payload["effective_from"] == "2013-01-01"
