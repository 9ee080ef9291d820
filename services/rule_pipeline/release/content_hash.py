"""
Release Content Hash
====================

Deterministic SHA-256 over the content of a rule set. The same rules give
the same hash regardless of input order, timestamps or lifecycle status.

Version: 0.1.0
"""

import hashlib
import json
from collections.abc import Iterable
from datetime import date
from typing import Any

from shared.models import Rule


def _iso(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


def rule_content(rule: Rule) -> dict[str, Any]:
    """The hashed view of a rule: content fields only."""
    return {
        "id": rule.id,
        "conceptSlug": rule.concept_slug,
        "domain": rule.domain,
        "titleHr": rule.title_hr,
        "titleEn": rule.title_en,
        "explanationHr": rule.explanation_hr,
        "explanationEn": rule.explanation_en,
        "riskTier": rule.risk_tier.value,
        "authorityLevel": rule.authority_level.value,
        "appliesWhen": rule.applies_when,
        "value": rule.value,
        "valueType": rule.value_type,
        "effectiveFrom": _iso(rule.effective_from),
        "effectiveUntil": _iso(rule.effective_until),
        "supersedes": rule.supersedes_id,
    }


def canonical_json(payload: Any) -> str:
    """Compact JSON with keys sorted at every level."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_content_hash(rules: Iterable[Rule]) -> str:
    """SHA-256 hex of the canonical JSON of ``rules`` sorted by concept slug."""
    ordered = sorted(rules, key=lambda r: (r.concept_slug, r.id))
    payload = [rule_content(rule) for rule in ordered]
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()
