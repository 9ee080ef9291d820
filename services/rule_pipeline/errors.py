"""
Pipeline Errors
===============

Error taxonomy shared by every stage:

- InputError: malformed or missing facts/predicates/reasoning output.
  Terminal, never retried.
- PolicyRejection: conflict, missing evidence, tier-gate or
  evidence-strength violation. Terminal; needs a human or new evidence.
- TransientError: reasoning timeouts, rate limits, database connection or
  serialization failures. Retried with backoff, then dead-lettered.
- IntegrityViolation: content-hash mismatch or quote-not-found during
  evidence-chain verification. Terminal, always blocks publication.

Version: 0.1.0
"""

from dataclasses import dataclass, field
from typing import Any


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    retryable: bool = False
    code: str = "PIPELINE_ERROR"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


class InputError(PipelineError):
    code = "INPUT_ERROR"


class PolicyRejection(PipelineError):
    code = "POLICY_REJECTION"


class TransientError(PipelineError):
    retryable = True
    code = "TRANSIENT_ERROR"


class IntegrityViolation(PipelineError):
    code = "INTEGRITY_VIOLATION"


# =============================================================================
# Input errors
# =============================================================================


class NotFoundError(InputError):
    code = "NOT_FOUND"


class MixedGroupError(InputError):
    code = "MIXED_GROUPING_KEY"


class BlocklistedDomainError(InputError):
    code = "BLOCKLISTED_DOMAIN"


class MalformedReasoningOutputError(InputError):
    code = "MALFORMED_REASONING_OUTPUT"


class InvalidPredicateError(InputError):
    code = "INVALID_PREDICATE"


class RejectedFactError(InputError):
    code = "REJECTED_FACT"


# =============================================================================
# Policy rejections
# =============================================================================


class MissingEvidenceError(PolicyRejection):
    code = "MISSING_EVIDENCE"


class InvalidTransitionError(PolicyRejection):
    code = "INVALID_TRANSITION"


class ApprovalBlockedError(PolicyRejection):
    code = "APPROVAL_BLOCKED"


@dataclass
class GateFailure:
    """One failed release gate and the rules that failed it."""

    gate: str
    rule_ids: list[str]
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"gate": self.gate, "rule_ids": self.rule_ids, "reason": self.reason}


class ReleaseGateError(PolicyRejection):
    """Raised when one or more release gates fail; names each gate and rule."""

    code = "RELEASE_GATE_FAILED"

    def __init__(self, failures: list[GateFailure]) -> None:
        summary = "; ".join(
            f"{f.gate}: {', '.join(f.rule_ids)}" for f in failures
        )
        super().__init__(
            f"Release blocked: {summary}",
            failures=[f.to_dict() for f in failures],
        )
        self.failures = failures

    @property
    def gates(self) -> list[str]:
        return [f.gate for f in self.failures]


# =============================================================================
# Integrity violations
# =============================================================================


@dataclass
class EvidenceFailure:
    """A source pointer that failed evidence-chain verification."""

    pointer_id: str
    rule_id: str
    document_id: str
    reason: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pointer_id": self.pointer_id,
            "rule_id": self.rule_id,
            "document_id": self.document_id,
            "reason": self.reason,
            **self.details,
        }


class EvidenceChainError(IntegrityViolation):
    code = "EVIDENCE_CHAIN_BROKEN"

    def __init__(self, failures: list[EvidenceFailure]) -> None:
        pointers = ", ".join(f.pointer_id for f in failures)
        super().__init__(
            f"Evidence-chain verification failed for pointers: {pointers}",
            failures=[f.to_dict() for f in failures],
        )
        self.failures = failures

    @property
    def pointer_ids(self) -> list[str]:
        return [f.pointer_id for f in self.failures]
