"""Verification and consensus results."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    PARTIALLY_VERIFIED = "partially_verified"
    UNVERIFIED = "unverified"
    CONFLICTING_DATA = "conflicting_data"


@dataclass
class FieldVerificationResult:
    """Evidence lookup for one leaf field of a validated output."""

    field_name: str
    value: Any
    supported: bool
    confidence: float
    evidence_quotes: list[str] = field(default_factory=list)
    source_references: list[str] = field(default_factory=list)
    discrepancies: list[str] = field(default_factory=list)
    is_critical: bool = False


@dataclass
class Evidence:
    direct_quote: str
    source_id: str
    reliability_score: float
    context: str = ""


@dataclass
class EvidenceJustification:
    field_name: str
    value: Any
    evidence: Evidence | None
    confidence: float
    verification_status: VerificationStatus
    justification: str = ""


@dataclass
class CriticalFieldCheck:
    passed: bool
    checked_fields: list[str] = field(default_factory=list)
    failed_fields: list[str] = field(default_factory=list)
    critical_issues: list[str] = field(default_factory=list)


@dataclass
class VerificationResult:
    """Request-level verification outcome."""

    fields: list[FieldVerificationResult]
    justifications: list[EvidenceJustification]
    critical_check: CriticalFieldCheck
    field_confidence: float  # mean over fields
    overall_confidence: float  # blended with validator confidence
    requires_human_review: bool
    verification_time_ms: float = 0.0

    @property
    def total_fields(self) -> int:
        return len(self.fields)

    @property
    def supported_fields(self) -> int:
        return sum(1 for f in self.fields if f.supported)

    @property
    def unsupported_fields(self) -> int:
        return self.total_fields - self.supported_fields

    @property
    def critical_issues(self) -> list[str]:
        return self.critical_check.critical_issues

    @property
    def passed(self) -> bool:
        return not self.requires_human_review

    def to_dict(self) -> dict[str, Any]:
        return {
            "fields": [asdict(f) for f in self.fields],
            "justifications": [
                {**asdict(j), "verification_status": j.verification_status.value}
                for j in self.justifications
            ],
            "critical_check": asdict(self.critical_check),
            "total_fields": self.total_fields,
            "supported_fields": self.supported_fields,
            "unsupported_fields": self.unsupported_fields,
            "field_confidence": self.field_confidence,
            "overall_confidence": self.overall_confidence,
            "requires_human_review": self.requires_human_review,
            "verification_time_ms": self.verification_time_ms,
        }


@dataclass
class ConsensusCandidate:
    candidate_id: int
    data: dict[str, Any]
    confidence: float
    validation_errors: list[str] = field(default_factory=list)
    consistency_score: float = 1.0
    requires_human_review: bool = False

    @property
    def weighted_score(self) -> float:
        return self.confidence * self.consistency_score


@dataclass
class ConsensusResult:
    candidates: list[ConsensusCandidate]
    selected: ConsensusCandidate
    consensus_confidence: float
    requires_human_review: bool
    failed_candidates: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "candidates": [asdict(c) for c in self.candidates],
            "selected_candidate_id": self.selected.candidate_id,
            "consensus_confidence": self.consensus_confidence,
            "requires_human_review": self.requires_human_review,
            "failed_candidates": self.failed_candidates,
        }
