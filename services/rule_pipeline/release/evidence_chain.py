"""
Evidence-Chain Verification
===========================

Re-verifies, at release time, that every source pointer still stands on
untampered evidence:

- the source document exists
- its stored content hash equals the hash recorded at fetch time
- the actual content still hashes to the stored value
- the quote is present in the content: exact match for T0/T1 rules,
  exact or normalized match for T2/T3

Quote normalization (in order): NFKC, NBSP to space, soft hyphens removed,
typographic double quotes to ``"``, apostrophe variants to ``'``,
whitespace runs collapsed, ends trimmed. No fuzzy matching.

Version: 0.1.0
"""

import unicodedata
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field

from services.rule_pipeline.errors import EvidenceFailure
from services.rule_pipeline.store.base import PipelineStore
from shared.logging import get_logger
from shared.models import MatchType, Rule, SourceDocument, SourcePointer, sha256_hex

logger = get_logger(__name__)

DOUBLE_QUOTES = "\u201c\u201d\u201e\u201f\u00ab\u00bb\u2039\u203a\u275d\u275e\u276e\u276f\uff02"
APOSTROPHES = "\u2018\u2019\u201a\u201b\u2032\uff07"
SOFT_HYPHEN = "\u00ad"
NBSP = "\u00a0"

_TRANSLATION = str.maketrans(
    {
        NBSP: " ",
        **{c: '"' for c in DOUBLE_QUOTES},
        **{c: "'" for c in APOSTROPHES},
    }
)


class FailureReason:
    DOCUMENT_MISSING = "DOCUMENT_MISSING"
    HASH_MISMATCH = "HASH_MISMATCH"
    CONTENT_TAMPERED = "CONTENT_TAMPERED"
    QUOTE_NOT_FOUND = "QUOTE_NOT_FOUND"


# =============================================================================
# Normalization
# =============================================================================


def _clusters(text: str) -> Iterator[tuple[int, int, str]]:
    """Base character plus trailing combining marks, with original span."""
    i = 0
    n = len(text)
    while i < n:
        j = i + 1
        while j < n and unicodedata.combining(text[j]):
            j += 1
        yield i, j, text[i:j]
        i = j


def _normalize_with_map(text: str) -> tuple[str, list[int], list[int]]:
    """Normalized text plus the original start/end offset of each output char."""
    chars: list[str] = []
    starts: list[int] = []
    ends: list[int] = []
    pending_space: tuple[int, int] | None = None

    for start, end, cluster in _clusters(text):
        for ch in unicodedata.normalize("NFKC", cluster).translate(_TRANSLATION):
            if ch == SOFT_HYPHEN:
                continue
            if ch.isspace():
                if pending_space is None:
                    pending_space = (start, end)
                continue
            if pending_space is not None and chars:
                chars.append(" ")
                starts.append(pending_space[0])
                ends.append(pending_space[1])
            pending_space = None
            chars.append(ch)
            starts.append(start)
            ends.append(end)

    return "".join(chars), starts, ends


def normalize_for_match(text: str) -> str:
    """Deterministic normalization used for quote matching."""
    return _normalize_with_map(text)[0]


@dataclass(frozen=True)
class QuoteMatch:
    """Where a quote was found in the original content."""

    match_type: MatchType
    start: int | None = None
    end: int | None = None

    @property
    def found(self) -> bool:
        return self.match_type != MatchType.NOT_FOUND


def find_quote(
    content: str,
    quote: str,
    allow_normalized: bool = True,
    hint: tuple[int | None, int | None] = (None, None),
) -> QuoteMatch:
    """
    Locate ``quote`` in ``content``.

    Exact match first (at the ``hint`` offsets if they still hold), then a
    normalized match mapped back to original offsets.
    """
    if not content or not quote:
        return QuoteMatch(MatchType.NOT_FOUND)

    start, end = hint
    if start is not None and end is not None and content[start:end] == quote:
        return QuoteMatch(MatchType.EXACT, start, end)

    index = content.find(quote)
    if index != -1:
        return QuoteMatch(MatchType.EXACT, index, index + len(quote))

    if not allow_normalized:
        return QuoteMatch(MatchType.NOT_FOUND)

    normalized_quote = normalize_for_match(quote)
    if not normalized_quote:
        return QuoteMatch(MatchType.NOT_FOUND)
    normalized_content, starts, ends = _normalize_with_map(content)
    index = normalized_content.find(normalized_quote)
    if index == -1:
        return QuoteMatch(MatchType.NOT_FOUND)

    last = index + len(normalized_quote) - 1
    return QuoteMatch(MatchType.NORMALIZED, starts[index], ends[last])


# =============================================================================
# Verification
# =============================================================================


@dataclass(frozen=True)
class PointerVerification:
    pointer_id: str
    rule_id: str
    match: QuoteMatch


@dataclass
class EvidenceReport:
    """Outcome of verifying every pointer of a rule set."""

    verified: list[PointerVerification] = field(default_factory=list)
    failures: list[EvidenceFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def annotated_pointers(
        self, pointers: Sequence[SourcePointer]
    ) -> list[SourcePointer]:
        """Pointers with match type and located offsets filled in."""
        by_id = {v.pointer_id: v.match for v in self.verified}
        annotated = []
        for pointer in pointers:
            match = by_id.get(pointer.id)
            if match is None:
                continue
            annotated.append(
                pointer.model_copy(
                    update={
                        "match_type": match.match_type,
                        "start_offset": match.start,
                        "end_offset": match.end,
                    }
                )
            )
        return annotated


class EvidenceChainVerifier:
    """Verifies source pointers against stored source documents."""

    def __init__(self, store: PipelineStore) -> None:
        self.store = store

    @staticmethod
    def check_pointer(
        rule: Rule,
        pointer: SourcePointer,
        document: SourceDocument | None,
    ) -> QuoteMatch | EvidenceFailure:
        """Verify one pointer; returns the quote match or the failure."""

        def failure(reason: str, **details: object) -> EvidenceFailure:
            return EvidenceFailure(
                pointer_id=pointer.id,
                rule_id=rule.id,
                document_id=pointer.document_id,
                reason=reason,
                details=dict(details),
            )

        if document is None:
            return failure(FailureReason.DOCUMENT_MISSING)
        if document.content_hash != document.fetch_hash:
            return failure(
                FailureReason.HASH_MISMATCH,
                fetch_hash=document.fetch_hash,
                content_hash=document.content_hash,
            )
        actual = sha256_hex(document.content)
        if actual != document.content_hash:
            return failure(
                FailureReason.CONTENT_TAMPERED,
                stored_hash=document.content_hash,
                actual_hash=actual,
            )

        exact_only = rule.risk_tier.is_critical
        match = find_quote(
            document.content,
            pointer.exact_quote,
            allow_normalized=not exact_only,
            hint=(pointer.start_offset, pointer.end_offset),
        )
        if not match.found:
            return failure(
                FailureReason.QUOTE_NOT_FOUND,
                exact_required=exact_only,
                quote_preview=pointer.exact_quote[:80],
            )
        return match

    async def verify(
        self,
        rules: Sequence[Rule],
        pointers_by_rule: Mapping[str, Sequence[SourcePointer]],
    ) -> EvidenceReport:
        report = EvidenceReport()
        documents: dict[str, SourceDocument | None] = {}

        for rule in rules:
            for pointer in pointers_by_rule.get(rule.id, ()):
                if pointer.document_id not in documents:
                    documents[pointer.document_id] = await self.store.get_document(
                        pointer.document_id
                    )
                outcome = self.check_pointer(rule, pointer, documents[pointer.document_id])
                if isinstance(outcome, EvidenceFailure):
                    report.failures.append(outcome)
                else:
                    report.verified.append(PointerVerification(pointer.id, rule.id, outcome))

        if report.failures:
            logger.critical(
                "evidence_chain_broken",
                failures=len(report.failures),
                pointer_ids=[f.pointer_id for f in report.failures],
                reasons=sorted({f.reason for f in report.failures}),
            )
        else:
            logger.info("evidence_chain_verified", pointers=len(report.verified))
        return report
