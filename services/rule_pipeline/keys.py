"""
Idempotency Keys
================

Content-derived keys that make every stage safe to re-run.

Version: 0.1.0
"""

import hashlib
from collections.abc import Iterable


def _digest(namespace: str, ids: Iterable[str]) -> str:
    unique = sorted(set(ids))
    if not unique:
        raise ValueError(f"Cannot derive a {namespace} key from an empty id set")
    payload = namespace + "\n" + "\n".join(unique)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def composition_key(fact_ids: Iterable[str]) -> str:
    """Key of a composition: order and duplicates of ``fact_ids`` do not matter."""
    return _digest("compose", fact_ids)


def release_key(rule_ids: Iterable[str]) -> str:
    """Key of a release over a rule-id set."""
    return _digest("release", rule_ids)


def job_key(stage: str, payload_key: str) -> str:
    """Queue-level key: one in-flight job per stage and payload."""
    return f"{stage}:{payload_key}"
