"""
Concept Taxonomy
================

Versioned lookup of canonical concept slugs and their known aliases, plus
the value normalization used for grouping and duplicate detection.

The composer and conflict detector take a ``TaxonomyService`` as a
dependency rather than reading module-level tables, so tests can pin a
fixed snapshot.

Version: 0.1.0
"""

import re
import unicodedata
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol

# Known duplicates observed in production data.
DEFAULT_ALIASES: dict[str, tuple[str, ...]] = {
    "pdv-standardna-stopa": (
        "vat-standard-rate",
        "pdv-standard-rate",
        "standard-vat-rate",
        "vat-rate-standard",
    ),
    "pdv-drzavni-proracun-iban": (
        "vat-payment-iban",
        "hr-vat-payment-iban",
        "state-budget-iban-vat",
    ),
    "prag-promidzbenih-darova": (
        "promotional-gift-threshold",
        "representation-gift-threshold",
        "small-value-gift-threshold",
    ),
    "rok-cuvanja-dokumentacije": (
        "document-retention-period",
        "procurement-documentation-retention-period",
    ),
    "fiskalizacija-2-0-datum": (
        "fiskalizacija-2-0-start-date",
        "fiskalizacija-2-0-implementation-date",
    ),
}

_SLUG_SEPARATORS = re.compile(r"[\s_]+")
_SLUG_REPEATED_DASH = re.compile(r"-{2,}")
_WHITESPACE = re.compile(r"\s+")


def normalize_slug(slug: str) -> str:
    """Lowercase, ASCII-fold and dash-separate a concept slug."""
    folded = unicodedata.normalize("NFKD", slug).encode("ascii", "ignore").decode("ascii")
    folded = _SLUG_SEPARATORS.sub("-", folded.strip().lower())
    return _SLUG_REPEATED_DASH.sub("-", folded).strip("-")


def normalize_value(value: str) -> str:
    """
    Canonical form of a fact/rule value for grouping and comparison.

    NFKC, casefold, collapsed whitespace, no surrounding whitespace.
    ``"25 %"`` and ``"25%"`` stay distinct; unit handling belongs to
    extraction.
    """
    normalized = unicodedata.normalize("NFKC", value).casefold()
    return _WHITESPACE.sub(" ", normalized).strip()


class TaxonomyService(Protocol):
    """Read-only view over the concept taxonomy."""

    @property
    def version(self) -> str: ...

    def canonical_slug(self, slug: str) -> str: ...

    def related_slugs(self, slug: str) -> frozenset[str]: ...

    def is_blocklisted(self, domain: str) -> bool: ...


@dataclass(frozen=True)
class TaxonomySnapshot:
    """
    Immutable taxonomy snapshot.

    Attributes:
        version: Identifier of the snapshot (e.g. a date or content hash)
        aliases: canonical slug -> known alias slugs
        blocklisted_domains: synthetic/test domains that never become rules
    """

    version: str = "builtin-1"
    aliases: Mapping[str, tuple[str, ...]] = field(default_factory=lambda: dict(DEFAULT_ALIASES))
    blocklisted_domains: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        index: dict[str, str] = {}
        for canonical, alias_list in self.aliases.items():
            index[normalize_slug(canonical)] = canonical
            for alias in alias_list:
                index[normalize_slug(alias)] = canonical
        # frozen dataclass: bypass __setattr__ for the derived index
        object.__setattr__(self, "_canonical_index", index)

    def canonical_slug(self, slug: str) -> str:
        """Canonical slug for ``slug``, or its normalized form if unknown."""
        normalized = normalize_slug(slug)
        return self._canonical_index.get(normalized, normalized)  # type: ignore[attr-defined]

    def related_slugs(self, slug: str) -> frozenset[str]:
        """Canonical slug and all aliases of ``slug``'s family, excluding ``slug``."""
        canonical = self._canonical_index.get(normalize_slug(slug))  # type: ignore[attr-defined]
        if canonical is None:
            return frozenset()
        family = {canonical, *self.aliases[canonical]}
        return frozenset(s for s in family if normalize_slug(s) != normalize_slug(slug))

    def is_blocklisted(self, domain: str) -> bool:
        normalized = normalize_slug(domain)
        return any(
            normalized == blocked or normalized.startswith(blocked + "-")
            for blocked in (normalize_slug(b) for b in self.blocklisted_domains)
        )
