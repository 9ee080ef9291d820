"""Tests for evidence-chain verification."""

from datetime import date

import pytest

from services.rule_pipeline.errors import EvidenceFailure
from services.rule_pipeline.release import (
    EvidenceChainVerifier,
    FailureReason,
    find_quote,
    normalize_for_match,
)
from shared.models import (
    MatchType,
    RiskTier,
    Rule,
    SourceDocument,
    SourcePointer,
)

CONTENT = "Clanak 38.\n(1) PDV se obracunava i placa po stopi od \u201e25 %\u201c.\n"


def make_rule(tier: RiskTier) -> Rule:
    return Rule(
        concept_slug="pdv-standardna-stopa",
        domain="pdv-stopa",
        title_hr="Opca stopa PDV-a",
        title_en="Standard VAT rate",
        risk_tier=tier,
        applies_when={"op": "true"},
        value="25",
        value_type="percentage",
        effective_from=date(2013, 1, 1),
        confidence=0.95,
    )


def make_pointer(rule: Rule, quote: str, document_id: str = "doc-1") -> SourcePointer:
    return SourcePointer(
        rule_id=rule.id,
        fact_id="fact-1",
        document_id=document_id,
        exact_quote=quote,
        confidence=0.9,
    )


@pytest.fixture
def document() -> SourceDocument:
    return SourceDocument(id="doc-1", content=CONTENT)


class TestFindQuote:
    """Tests for quote matching."""

    def test_exact(self) -> None:
        match = find_quote(CONTENT, "Clanak 38.")
        assert match.match_type == MatchType.EXACT
        assert CONTENT[match.start : match.end] == "Clanak 38."

    def test_exact_uses_valid_hint(self) -> None:
        text = "stopa; stopa"
        match = find_quote(text, "stopa", hint=(7, 12))
        assert (match.start, match.end) == (7, 12)

    def test_stale_hint_falls_back_to_search(self) -> None:
        match = find_quote(CONTENT, "Clanak 38.", hint=(3, 9))
        assert match.start == 0

    def test_normalized_maps_to_original_offsets(self) -> None:
        quote = 'obracunava i placa po stopi od "25 %"'
        match = find_quote(CONTENT, quote)

        assert match.match_type == MatchType.NORMALIZED
        located = CONTENT[match.start : match.end]
        assert located.startswith("obracunava")
        assert located.endswith("\u201c")

    def test_normalized_disabled(self) -> None:
        quote = 'obracunava i placa po stopi od "25 %"'
        assert not find_quote(CONTENT, quote, allow_normalized=False).found

    def test_not_found(self) -> None:
        assert find_quote(CONTENT, "po stopi od 13 %").match_type == MatchType.NOT_FOUND

    def test_normalize_for_match(self) -> None:
        assert normalize_for_match(" \u201eA\u201c\u00a0 \u2019b\u2019\u00ad ") == "\"A\" 'b'"


class TestCheckPointer:
    """Tests for EvidenceChainVerifier.check_pointer."""

    def test_t2_accepts_normalized(self, document: SourceDocument) -> None:
        rule = make_rule(RiskTier.T2)
        pointer = make_pointer(rule, 'placa po stopi od "25 %"')

        outcome = EvidenceChainVerifier.check_pointer(rule, pointer, document)

        assert not isinstance(outcome, EvidenceFailure)
        assert outcome.match_type == MatchType.NORMALIZED

    @pytest.mark.parametrize("tier", [RiskTier.T0, RiskTier.T1])
    def test_critical_tiers_exact_only(self, document: SourceDocument, tier: RiskTier) -> None:
        rule = make_rule(tier)
        pointer = make_pointer(rule, 'placa po stopi od "25 %"')

        outcome = EvidenceChainVerifier.check_pointer(rule, pointer, document)

        assert isinstance(outcome, EvidenceFailure)
        assert outcome.reason == FailureReason.QUOTE_NOT_FOUND
        assert outcome.details["exact_required"] is True

    def test_missing_document(self) -> None:
        rule = make_rule(RiskTier.T2)
        outcome = EvidenceChainVerifier.check_pointer(rule, make_pointer(rule, "x"), None)
        assert outcome.reason == FailureReason.DOCUMENT_MISSING

    def test_hash_mismatch(self, document: SourceDocument) -> None:
        rule = make_rule(RiskTier.T2)
        tampered = document.model_copy(update={"content_hash": "0" * 64})

        outcome = EvidenceChainVerifier.check_pointer(rule, make_pointer(rule, "Clanak 38."), tampered)

        assert outcome.reason == FailureReason.HASH_MISMATCH

    def test_content_tampered(self, document: SourceDocument) -> None:
        rule = make_rule(RiskTier.T2)
        tampered = document.model_copy(update={"content": CONTENT.replace("25", "13")})

        outcome = EvidenceChainVerifier.check_pointer(rule, make_pointer(rule, "Clanak 38."), tampered)

        assert outcome.reason == FailureReason.CONTENT_TAMPERED


class TestVerify:
    """Tests for EvidenceChainVerifier.verify."""

    @pytest.mark.asyncio
    async def test_report(self, store, document: SourceDocument) -> None:
        await store.save_document(document)
        rule = make_rule(RiskTier.T2)
        good = make_pointer(rule, "Clanak 38.")
        bad = make_pointer(rule, "Clanak 39.")
        orphan = make_pointer(rule, "Clanak 38.", document_id="doc-missing")

        report = await EvidenceChainVerifier(store).verify([rule], {rule.id: [good, bad, orphan]})

        assert not report.ok
        assert [f.pointer_id for f in report.failures] == [bad.id, orphan.id]
        assert [f.reason for f in report.failures] == [
            FailureReason.QUOTE_NOT_FOUND,
            FailureReason.DOCUMENT_MISSING,
        ]
        annotated = report.annotated_pointers([good, bad])
        assert [p.id for p in annotated] == [good.id]
        assert annotated[0].match_type == MatchType.EXACT
        assert annotated[0].start_offset == 0
