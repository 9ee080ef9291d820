"""
Composer Reasoning
==================

The typed boundary around the reasoning step that proposes a rule from a
group of facts. The reasoning function itself is a black box returning an
untyped blob; ``parse_draft`` turns that blob into a ``ComposerDraft`` or
rejects it. Nothing is coerced: a string where a number belongs, an
unknown key or a missing field is a malformed draft.

Version: 0.1.0
"""

import json
from collections.abc import Awaitable, Callable, Sequence
from datetime import date
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from services.rule_pipeline.errors import MalformedReasoningOutputError, TransientError
from shared.llm import LLMMessage, LLMProvider, get_llm_provider
from shared.logging import get_logger
from shared.models import AuthorityLevel, Fact, RiskTier

logger = get_logger(__name__)

ReasoningFunction = Callable[[Sequence[Fact]], Awaitable[Any]]


class ComposerDraft(BaseModel):
    """A proposed rule as returned by the reasoning step."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )

    concept_slug: StrictStr = Field(..., min_length=1, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
    title_hr: StrictStr = Field(..., min_length=1)
    title_en: StrictStr = Field(..., min_length=1)
    risk_tier: RiskTier
    authority_level: AuthorityLevel | None = None
    applies_when: dict[str, Any] | StrictStr
    value: StrictStr | StrictInt | StrictFloat
    value_type: StrictStr = Field(..., min_length=1)
    explanation_hr: StrictStr = ""
    explanation_en: StrictStr = ""
    confidence: StrictFloat = Field(..., ge=0.0, le=1.0)
    effective_from: date
    effective_until: date | None = None
    supersedes: StrictStr | None = None
    conflict_detected: StrictBool = False
    composer_notes: StrictStr | None = None

    @field_validator("effective_from", "effective_until", mode="before")
    @classmethod
    def iso_date_only(cls, v: Any) -> Any:
        """Dates must be ISO ``YYYY-MM-DD`` strings (no timestamps, no numbers)."""
        if v is None or isinstance(v, date):
            return v
        if not isinstance(v, str):
            raise ValueError("expected an ISO date string")
        return date.fromisoformat(v)

    @field_validator("value", mode="after")
    @classmethod
    def no_bool_value(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("boolean is not a rule value")
        return v

    @model_validator(mode="after")
    def dates_ordered(self) -> "ComposerDraft":
        if self.effective_until is not None and self.effective_until < self.effective_from:
            raise ValueError("effectiveUntil is before effectiveFrom")
        return self

    @property
    def value_text(self) -> str:
        """Rule values are stored as text."""
        return self.value if isinstance(self.value, str) else str(self.value)


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


def parse_draft(blob: Any) -> ComposerDraft:
    """
    Parse untyped reasoning output into a ``ComposerDraft``.

    Accepts a JSON string (optionally fenced) or a decoded mapping. A
    ``{"draftRule": {...}}`` or ``{"draft_rule": {...}}`` envelope is
    unwrapped.

    Raises:
        MalformedReasoningOutputError: On any shape or type mismatch.
    """
    if isinstance(blob, (str, bytes)):
        text = blob.decode("utf-8") if isinstance(blob, bytes) else blob
        try:
            blob = json.loads(_strip_fences(text))
        except json.JSONDecodeError as e:
            raise MalformedReasoningOutputError(f"Reasoning output is not JSON: {e.msg}") from e

    if not isinstance(blob, dict):
        raise MalformedReasoningOutputError(
            "Reasoning output must be a JSON object",
            received_type=type(blob).__name__,
        )

    for envelope in ("draftRule", "draft_rule"):
        if set(blob) == {envelope}:
            blob = blob[envelope]
            break

    try:
        return ComposerDraft.model_validate(blob)
    except ValidationError as e:
        errors = [
            {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
            for err in e.errors()
        ]
        raise MalformedReasoningOutputError(
            "Reasoning output does not match the draft schema",
            errors=errors,
        ) from e


class LLMReasoner:
    """
    Default reasoning function backed by the configured LLM provider.

    Provider failures (timeouts, rate limits, connection errors) become
    ``TransientError``; the returned text is parsed by the composer.
    """

    SYSTEM_PROMPT = """You are the rule composer for Croatian regulatory compliance. You turn extracted facts, each backed by verbatim quotes from official sources, into one draft rule.

TASK:
1. Identify the single regulatory value the facts agree on
2. Assign a risk tier by financial/legal impact:
   - T0: tax rates, legal deadlines, penalties, official payment identifiers
   - T1: thresholds that trigger obligations, contribution bases
   - T2: procedural requirements, form fields, bank codes
   - T3: labels, help text, non-binding guidance
3. Write an appliesWhen predicate describing WHEN the rule applies
4. Write short bilingual (hr/en) titles and explanations

APPLIES_WHEN PREDICATES (JSON):
- {"op": "cmp", "field": "path", "cmp": "eq"|"neq"|"gt"|"gte"|"lt"|"lte", "value": v}
- {"op": "and"|"or", "args": [predicate, ...]}  (at least one argument)
- {"op": "not", "arg": predicate}
- {"op": "in", "field": "path", "values": [v, ...]}
- {"op": "exists", "field": "path"}
- {"op": "between", "field": "path", "gte": n, "lte": n}
- {"op": "matches", "field": "path", "pattern": "regex (max 100 chars)"}
- {"op": "date_in_effect", "dateField": "path", "on": "YYYY-MM-DD"}
- {"op": "true"} or {"op": "false"}

FIELD PATHS: entity.type, entity.obrtSubtype, entity.vat.status, entity.activityNkd,
entity.location.country, entity.location.county, txn.kind, txn.b2b, txn.paymentMethod,
txn.amount, txn.currency, txn.itemCategory, txn.date, counters.revenueYtd,
counters.invoicesThisMonth, flags.isAutomationRequest, asOf

Respond with ONE JSON object and these keys only:
conceptSlug (kebab-case), titleHr, titleEn, riskTier, authorityLevel (optional:
LAW|GUIDANCE|PROCEDURE|PRACTICE), appliesWhen, value, valueType, explanationHr,
explanationEn, confidence (0.0-1.0), effectiveFrom (YYYY-MM-DD), effectiveUntil
(YYYY-MM-DD or null), supersedes (rule id or null), conflictDetected (boolean),
composerNotes (string or null).

CONSTRAINTS:
- Never invent values not present in the quotes
- If the sources disagree, set conflictDetected to true; do not resolve it yourself
- Use confidence below 0.8 if anything is ambiguous"""

    def __init__(
        self,
        provider: LLMProvider | None = None,
        temperature: float = 0.1,
    ) -> None:
        self._provider = provider
        self.temperature = temperature

    @property
    def provider(self) -> LLMProvider:
        if self._provider is None:
            self._provider = get_llm_provider()
        return self._provider

    @staticmethod
    def build_prompt(facts: Sequence[Fact]) -> str:
        """Typed prompt body listing each fact and its quotes."""
        payload = [
            {
                "factId": fact.id,
                "domain": fact.domain,
                "value": fact.value,
                "valueType": fact.value_type,
                "confidence": fact.confidence,
                "quotes": [
                    {
                        "text": quote.text,
                        "documentId": quote.document_id,
                        "lawName": quote.law_name,
                        "article": quote.article,
                        "paragraph": quote.paragraph,
                    }
                    for quote in fact.quotes
                ],
            }
            for fact in facts
        ]
        return "Compose one draft rule from these facts:\n\n" + json.dumps(
            payload, ensure_ascii=False, indent=2
        )

    async def __call__(self, facts: Sequence[Fact]) -> str:
        messages = [
            LLMMessage(role="system", content=self.SYSTEM_PROMPT),
            LLMMessage(role="user", content=self.build_prompt(facts)),
        ]
        try:
            response = await self.provider.complete(messages, temperature=self.temperature)
        except Exception as e:
            logger.warning(
                "reasoning_call_failed",
                fact_count=len(facts),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise TransientError(
                "Reasoning provider call failed",
                error_type=type(e).__name__,
            ) from e

        logger.debug(
            "reasoning_completed",
            provider=response.provider,
            model=response.model,
            tokens=response.usage.total_tokens,
        )
        return response.content
