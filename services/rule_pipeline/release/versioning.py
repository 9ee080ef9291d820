"""
Release Versioning
==================

Semantic version bumps driven by the highest risk tier in a release:
T0 -> major, T1 -> minor, T2/T3 -> patch.

Version: 0.1.0
"""

import re
from collections.abc import Iterable

from shared.models import ReleaseType, RiskTier

INITIAL_VERSION = "1.0.0"

_SEMVER = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")


def release_type_for(tiers: Iterable[RiskTier]) -> ReleaseType:
    """Release type for the highest tier among ``tiers``."""
    present = set(tiers)
    if not present:
        raise ValueError("A release needs at least one rule")
    if RiskTier.T0 in present:
        return ReleaseType.MAJOR
    if RiskTier.T1 in present:
        return ReleaseType.MINOR
    return ReleaseType.PATCH


def next_version(current: str | None, release_type: ReleaseType) -> str:
    """
    Bump ``current`` by ``release_type``.

    The first release is always ``1.0.0``.
    """
    if current is None:
        return INITIAL_VERSION

    match = _SEMVER.match(current)
    if match is None:
        raise ValueError(f"Not a semantic version: {current!r}")
    major, minor, patch = (int(part) for part in match.groups())

    if release_type == ReleaseType.MAJOR:
        return f"{major + 1}.0.0"
    if release_type == ReleaseType.MINOR:
        return f"{major}.{minor + 1}.0"
    return f"{major}.{minor}.{patch + 1}"
