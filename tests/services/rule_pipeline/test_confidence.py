"""Tests for the rule confidence model."""

import pytest

from services.rule_pipeline.confidence import derived_confidence, evidence_confidence


class TestEvidenceConfidence:
    """Tests for evidence_confidence."""

    def test_uniform_pointers(self) -> None:
        assert evidence_confidence([0.9, 0.9, 0.9]) == pytest.approx(0.9)

    def test_weak_pointer_pulls_score_down(self) -> None:
        """0.9 * mean + 0.1 * min"""
        assert evidence_confidence([1.0, 0.5]) == pytest.approx(0.725)

    def test_perfect_pointers_capped_at_one(self) -> None:
        assert evidence_confidence([1.0] * 7) <= 1.0

    def test_empty_raises(self) -> None:
        with pytest.raises(ValueError):
            evidence_confidence([])

    @pytest.mark.parametrize("bad", [-0.1, 1.01])
    def test_out_of_range_raises(self, bad: float) -> None:
        with pytest.raises(ValueError):
            evidence_confidence([0.5, bad])


class TestDerivedConfidence:
    """Tests for derived_confidence."""

    def test_capped_by_reasoning(self) -> None:
        assert derived_confidence([0.95, 0.95, 0.95], 0.8) == pytest.approx(0.8)

    def test_evidence_below_reasoning(self) -> None:
        assert derived_confidence([0.6, 0.7], 0.99) == pytest.approx(
            evidence_confidence([0.6, 0.7])
        )

    def test_monotonic_in_each_pointer(self) -> None:
        base = [0.5, 0.6, 0.7]
        before = derived_confidence(base, 1.0)
        for i in range(len(base)):
            raised = list(base)
            raised[i] = 0.95
            assert derived_confidence(raised, 1.0) >= before

    def test_never_exceeds_reasoning(self) -> None:
        for reasoning in (0.0, 0.3, 0.91, 1.0):
            assert derived_confidence([1.0, 1.0], reasoning) <= reasoning

    def test_invalid_reasoning_raises(self) -> None:
        with pytest.raises(ValueError):
            derived_confidence([0.9], 1.5)
