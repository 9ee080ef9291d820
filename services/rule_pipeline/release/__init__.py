"""
Release Builder
===============

Gates, versioning, content hashing, evidence-chain verification and the
atomic publish step.
"""

from services.rule_pipeline.release.builder import (
    Gate,
    PostPublishHook,
    ReleaseBuilder,
    check_gates,
)
from services.rule_pipeline.release.content_hash import (
    canonical_json,
    compute_content_hash,
    rule_content,
)
from services.rule_pipeline.release.evidence_chain import (
    EvidenceChainVerifier,
    EvidenceReport,
    FailureReason,
    QuoteMatch,
    find_quote,
    normalize_for_match,
)
from services.rule_pipeline.release.versioning import (
    INITIAL_VERSION,
    next_version,
    release_type_for,
)

__all__ = [
    "EvidenceChainVerifier",
    "EvidenceReport",
    "FailureReason",
    "Gate",
    "INITIAL_VERSION",
    "PostPublishHook",
    "QuoteMatch",
    "ReleaseBuilder",
    "canonical_json",
    "check_gates",
    "compute_content_hash",
    "find_quote",
    "next_version",
    "normalize_for_match",
    "release_type_for",
    "rule_content",
]
