"""
Test Configuration
==================

Pytest fixtures for rule pipeline tests.
"""

import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio

# Set test environment
os.environ["ENVIRONMENT"] = "testing"

from services.rule_pipeline.audit import AuditLog  # noqa: E402
from services.rule_pipeline.composer import RuleComposer  # noqa: E402
from services.rule_pipeline.release import ReleaseBuilder  # noqa: E402
from services.rule_pipeline.review import ReviewGate  # noqa: E402
from services.rule_pipeline.store import InMemoryPipelineStore  # noqa: E402
from services.rule_pipeline.taxonomy import TaxonomySnapshot  # noqa: E402
from shared.config import ComposerSettings, ReviewSettings  # noqa: E402
from shared.models import (  # noqa: E402
    AuthorityLevel,
    Fact,
    GroundingQuote,
    Rule,
    SourceDocument,
)

VAT_LAW_TEXT = (
    "Zakon o porezu na dodanu vrijednost\n"
    "Clanak 38.\n"
    "(1) PDV se obracunava i placa po stopi od 25 %.\n"
    "(2) PDV se obracunava i placa po snizenoj stopi od 13 % na isporuke dobara.\n"
    "(3) PDV se obracunava i placa po snizenoj stopi od 5 % na isporuke kruha.\n"
)

QUOTES_25 = (
    "PDV se obracunava i placa po stopi od 25 %",
    "placa po stopi od 25 %",
    "po stopi od 25 %",
)
QUOTES_13 = (
    "PDV se obracunava i placa po snizenoj stopi od 13 %",
    "snizenoj stopi od 13 %",
)

START = datetime(2025, 1, 15, 9, 0, tzinfo=UTC)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class FakeReasoner:
    """Reasoning function returning a configurable draft."""

    def __init__(self, **overrides: Any) -> None:
        self.draft: dict[str, Any] = {
            "conceptSlug": "pdv-standardna-stopa",
            "titleHr": "Opca stopa PDV-a",
            "titleEn": "Standard VAT rate",
            "riskTier": "T2",
            "appliesWhen": {
                "op": "cmp",
                "field": "entity.vat.status",
                "cmp": "eq",
                "value": "registered",
            },
            "value": "25",
            "valueType": "percentage",
            "explanationHr": "Opca stopa PDV-a iznosi 25 %.",
            "explanationEn": "The standard VAT rate is 25%.",
            "confidence": 0.95,
            "effectiveFrom": "2013-01-01",
        }
        self.draft.update(overrides)
        self.calls: list[list[str]] = []
        self.error: Exception | None = None

    def update(self, **overrides: Any) -> None:
        self.draft.update(overrides)

    async def __call__(self, facts: Any) -> dict[str, Any]:
        self.calls.append([f.id for f in facts])
        if self.error is not None:
            raise self.error
        return dict(self.draft)


# =============================================================================
# Core fixtures
# =============================================================================


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store() -> InMemoryPipelineStore:
    return InMemoryPipelineStore()


@pytest.fixture
def taxonomy() -> TaxonomySnapshot:
    return TaxonomySnapshot(blocklisted_domains=frozenset({"test", "synthetic"}))


@pytest.fixture
def reasoner() -> FakeReasoner:
    return FakeReasoner()


@pytest.fixture
def review_settings() -> ReviewSettings:
    return ReviewSettings(auto_approve_confidence=0.90, grace_period_hours=24)


@pytest.fixture
def composer_settings() -> ComposerSettings:
    return ComposerSettings(blocklisted_domains="heartbeat,e2e-canary")


@pytest.fixture
def audit(store: InMemoryPipelineStore, clock: FrozenClock) -> AuditLog:
    return AuditLog(store, now=clock)


@pytest.fixture
def composer(
    store: InMemoryPipelineStore,
    reasoner: FakeReasoner,
    taxonomy: TaxonomySnapshot,
    composer_settings: ComposerSettings,
    audit: AuditLog,
    clock: FrozenClock,
) -> RuleComposer:
    return RuleComposer(
        store,
        reasoner,
        taxonomy,
        settings=composer_settings,
        audit=audit,
        now=clock,
    )


@pytest.fixture
def gate(
    store: InMemoryPipelineStore,
    review_settings: ReviewSettings,
    audit: AuditLog,
    clock: FrozenClock,
) -> ReviewGate:
    return ReviewGate(store, settings=review_settings, audit=audit, now=clock)


@pytest.fixture
def builder(store: InMemoryPipelineStore, audit: AuditLog, clock: FrozenClock) -> ReleaseBuilder:
    return ReleaseBuilder(store, audit=audit, now=clock)


# =============================================================================
# Sample data
# =============================================================================


@pytest.fixture
def law_document() -> SourceDocument:
    """Statute text the sample quotes point into."""
    return SourceDocument(
        id="doc-zakon-pdv",
        url="https://narodne-novine.nn.hr/clanci/sluzbeni/2013_06_73_1451.html",
        title="Zakon o porezu na dodanu vrijednost",
        authority_level=AuthorityLevel.LAW,
        content=VAT_LAW_TEXT,
    )


@pytest.fixture
def make_facts(law_document: SourceDocument) -> Callable[..., list[Fact]]:
    """Factory for fact groups quoting the VAT law."""

    def _make(
        value: str = "25",
        quotes: tuple[str, ...] = QUOTES_25,
        domain: str = "pdv-stopa",
        value_type: str = "percentage",
        confidence: float = 0.95,
        document_id: str | None = None,
        with_quotes: bool = True,
    ) -> list[Fact]:
        return [
            Fact(
                domain=domain,
                value=value,
                value_type=value_type,
                confidence=confidence,
                quotes=(
                    [
                        GroundingQuote(
                            text=quote,
                            document_id=document_id or law_document.id,
                            law_name="Zakon o PDV-u",
                            article="38",
                        )
                    ]
                    if with_quotes
                    else []
                ),
            )
            for quote in quotes
        ]

    return _make


@pytest_asyncio.fixture
async def vat_facts(
    store: InMemoryPipelineStore,
    law_document: SourceDocument,
    make_facts: Callable[..., list[Fact]],
) -> list[Fact]:
    """Three captured facts for the 25% standard VAT rate, stored with their document."""
    await store.save_document(law_document)
    facts = make_facts()
    for fact in facts:
        await store.save_fact(fact)
    return facts


@pytest_asyncio.fixture
async def approved_rule(
    composer: RuleComposer,
    gate: ReviewGate,
    vat_facts: list[Fact],
) -> Rule:
    """A human-approved T2 rule backed by the VAT law."""
    result = await composer.compose([f.id for f in vat_facts])
    assert result.rule is not None
    return await gate.approve(result.rule.id, "reviewer@porezna.hr")
