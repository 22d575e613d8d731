"""Unit tests for consensus scoring and selection."""

import pytest

from evidentia.core.consensus import CandidateOutcome, ConsensusEngine, consistency_score
from evidentia.lib.errors import ExternalServiceError
from evidentia.models.verification import ConsensusCandidate


def candidate(candidate_id, data, confidence, review=False):
    return ConsensusCandidate(
        candidate_id=candidate_id, data=data, confidence=confidence, requires_human_review=review
    )


@pytest.mark.unit
class TestConsistency:
    def test_first_candidate_is_fully_consistent(self):
        assert consistency_score({"a": 1}, []) == 1.0

    def test_share_of_matching_fields(self):
        assert consistency_score({"a": 1, "b": 2}, [{"a": 1, "b": 3}]) == 0.5

    def test_bookkeeping_fields_are_ignored(self):
        assert consistency_score({"a": 1, "confidence_score": 0.9}, [{"a": 1, "confidence_score": 0.4}]) == 1.0

    def test_nested_values_compare_by_content(self):
        assert consistency_score({"r": {"x": 1, "y": 2}}, [{"r": {"y": 2, "x": 1}}]) == 1.0


@pytest.mark.unit
class TestCombine:
    def test_single_candidate_keeps_its_confidence(self):
        result = ConsensusEngine().combine([candidate(0, {"a": 1}, 0.85)])

        assert result.selected.candidate_id == 0
        assert result.consensus_confidence == pytest.approx(0.85)
        assert result.requires_human_review is False

    def test_tie_selects_lowest_id(self):
        result = ConsensusEngine().combine(
            [candidate(2, {"a": 1}, 0.9), candidate(0, {"a": 1}, 0.9), candidate(1, {"a": 1}, 0.9)]
        )

        assert result.selected.candidate_id == 0
        assert [c.candidate_id for c in result.candidates] == [0, 1, 2]

    def test_consistency_weighted_confidence(self):
        result = ConsensusEngine().combine(
            [candidate(0, {"a": 1, "b": 2}, 0.9), candidate(1, {"a": 1, "b": 3}, 0.5)]
        )

        assert result.candidates[1].consistency_score == 0.5
        assert result.consensus_confidence == pytest.approx((0.9 + 0.25) / 1.5)
        assert result.selected.candidate_id == 0
        assert result.requires_human_review is True

    def test_selected_candidate_review_flag_propagates(self):
        result = ConsensusEngine().combine([candidate(0, {"a": 1}, 0.95, review=True)])

        assert result.requires_human_review is True

    def test_no_candidates(self):
        with pytest.raises(ValueError):
            ConsensusEngine().combine([])


@pytest.mark.unit
class TestRun:
    """Concurrent candidate generation."""

    @pytest.mark.asyncio
    async def test_failed_candidates_are_dropped(self):
        async def factory(i):
            if i == 1:
                raise ExternalServiceError("model_gateway", "connection refused")
            if i == 2:
                return CandidateOutcome(data=None, confidence=0.0, validation_errors=["bad"])
            return CandidateOutcome(data={"a": 1}, confidence=0.9, payload="first")

        result, outcomes = await ConsensusEngine().run(3, factory)

        assert [c.candidate_id for c in result.candidates] == [0]
        assert result.failed_candidates == 2
        assert outcomes[1] is None
        assert outcomes[result.selected.candidate_id].payload == "first"

    @pytest.mark.asyncio
    async def test_all_invalid_returns_none(self):
        async def factory(i):
            return CandidateOutcome(data=None, confidence=0.0)

        assert await ConsensusEngine().run(3, factory) is None

    @pytest.mark.asyncio
    async def test_all_service_errors_raise(self):
        async def factory(i):
            raise ExternalServiceError("model_gateway", "model unavailable")

        with pytest.raises(ExternalServiceError, match="model unavailable"):
            await ConsensusEngine().run(2, factory)

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self):
        async def factory(i):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await ConsensusEngine().run(2, factory)
