"""Consensus engine: N independent candidates, consistency scoring and selection."""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from evidentia.lib.errors import ExternalServiceError
from evidentia.models.verification import ConsensusCandidate, ConsensusResult

logger = logging.getLogger(__name__)

IGNORED_FIELDS = {"confidence_score", "needs_review", "unverified_fields", "sources", "timestamp"}


@dataclass
class CandidateOutcome:
    """What one generate/validate/verify run produced."""

    data: dict[str, Any] | None
    confidence: float
    validation_errors: list[str] = field(default_factory=list)
    requires_human_review: bool = False
    payload: Any = None  # caller-side state carried back with the selected candidate


CandidateFactory = Callable[[int], Awaitable[CandidateOutcome]]


def _serialize(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def consistency_score(data: dict[str, Any], previous: list[dict[str, Any]]) -> float:
    """Share of fields whose serialized value matches the same field in earlier candidates.

    The first candidate scores 1.0.
    """
    if not previous:
        return 1.0

    keys = {k for k in data if k not in IGNORED_FIELDS}
    matches = 0
    total = 0
    for other in previous:
        other_keys = {k for k in other if k not in IGNORED_FIELDS}
        for key in keys & other_keys:
            if _serialize(data[key]) == _serialize(other[key]):
                matches += 1
        total += max(len(keys), len(other_keys))

    return matches / total if total else 1.0


class ConsensusEngine:
    """Scores candidates for mutual agreement and selects the final one."""

    def __init__(self, critical_confidence_threshold: float = 0.8):
        self.critical_confidence_threshold = critical_confidence_threshold

    async def run(
        self, n: int, generate_candidate: CandidateFactory
    ) -> tuple[ConsensusResult, list[CandidateOutcome | None]] | None:
        """Generate ``n`` candidates concurrently and combine them.

        Candidates that fail validation or hit a service error are dropped.

        Returns:
            (ConsensusResult, outcomes indexed by candidate id), or None when
            every candidate failed validation

        Raises:
            ExternalServiceError: If every candidate failed and the last
                failure was a service error
        """
        results = await asyncio.gather(
            *(generate_candidate(i) for i in range(n)), return_exceptions=True
        )

        outcomes: list[CandidateOutcome | None] = []
        last_service_error: ExternalServiceError | None = None
        for index, result in enumerate(results):
            if isinstance(result, ExternalServiceError):
                logger.warning(f"Consensus candidate {index} failed: {result}")
                last_service_error = result
                outcomes.append(None)
            elif isinstance(result, BaseException):
                raise result
            else:
                outcomes.append(result)

        valid = [(i, o) for i, o in enumerate(outcomes) if o is not None and o.data is not None]
        if not valid:
            if last_service_error is not None:
                raise last_service_error
            logger.warning(f"All {n} consensus candidates failed validation")
            return None

        candidates = []
        for candidate_id, outcome in valid:
            candidates.append(
                ConsensusCandidate(
                    candidate_id=candidate_id,
                    data=outcome.data,
                    confidence=outcome.confidence,
                    validation_errors=list(outcome.validation_errors),
                    requires_human_review=outcome.requires_human_review,
                )
            )

        result = self.combine(candidates, failed_candidates=n - len(candidates))
        return result, outcomes

    def combine(
        self, candidates: list[ConsensusCandidate], failed_candidates: int = 0
    ) -> ConsensusResult:
        """Score consistency in generation order and select the best candidate."""
        if not candidates:
            raise ValueError("At least one candidate is required")

        ordered = sorted(candidates, key=lambda c: c.candidate_id)
        for index, candidate in enumerate(ordered):
            candidate.consistency_score = consistency_score(
                candidate.data, [c.data for c in ordered[:index]]
            )

        weight = sum(c.consistency_score for c in ordered)
        if weight > 0:
            confidence = sum(c.confidence * c.consistency_score for c in ordered) / weight
        else:
            confidence = 0.0

        selected = max(ordered, key=lambda c: (c.weighted_score, -c.candidate_id))
        requires_review = (
            confidence < self.critical_confidence_threshold or selected.requires_human_review
        )

        logger.info(
            f"Consensus over {len(ordered)} candidates: selected {selected.candidate_id}, "
            f"confidence={confidence:.2f}"
        )
        return ConsensusResult(
            candidates=ordered,
            selected=selected,
            consensus_confidence=confidence,
            requires_human_review=requires_review,
            failed_candidates=failed_candidates,
        )
