"""
Confidence Model
================

Derived confidence of a rule: evidence strength, capped by the reasoning
step's self-reported confidence. The weakest pointer pulls the evidence
score down so that one poor citation cannot hide behind several good ones.

Version: 0.1.0
"""

from collections.abc import Sequence


MEAN_WEIGHT = 0.9
MIN_WEIGHT = 0.1


def _check_unit(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be in [0, 1], got {value!r}")


def evidence_confidence(pointer_confidences: Sequence[float]) -> float:
    """
    Weighted blend of mean and minimum pointer confidence.

    Args:
        pointer_confidences: One confidence per source pointer.

    Returns:
        ``0.9 * mean + 0.1 * min``

    Raises:
        ValueError: If the sequence is empty or a value is outside [0, 1].
    """
    if not pointer_confidences:
        raise ValueError("At least one pointer confidence is required")
    for c in pointer_confidences:
        _check_unit("pointer confidence", c)

    mean = sum(pointer_confidences) / len(pointer_confidences)
    # float rounding can push 0.9*1.0 + 0.1*1.0 a hair past 1.0
    return min(1.0, MEAN_WEIGHT * mean + MIN_WEIGHT * min(pointer_confidences))


def derived_confidence(
    pointer_confidences: Sequence[float],
    reasoning_confidence: float,
) -> float:
    """
    Confidence assigned to a composed rule.

    Monotonic in every pointer confidence and never above
    ``reasoning_confidence``.
    """
    _check_unit("reasoning confidence", reasoning_confidence)
    return min(evidence_confidence(pointer_confidences), reasoning_confidence)
