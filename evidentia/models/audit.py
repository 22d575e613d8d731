"""Audit log entry and query types."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal


@dataclass(frozen=True)
class PromptRecord:
    base: str
    grounding: str
    full: str
    prompt_tokens: int


@dataclass(frozen=True)
class ValidationRecord:
    passed: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    confidence: float = 0.0
    retry_count: int = 0
    processing_time_ms: float = 0.0


@dataclass(frozen=True)
class GroundingRecord:
    enabled: bool
    sources: tuple[dict[str, Any], ...] = ()
    source_count: int = 0
    average_relevance: float = 0.0
    has_high_quality_sources: bool = False
    retrieval_method: str | None = None
    grounding_time_ms: float = 0.0


@dataclass(frozen=True)
class VerificationRecord:
    passed: bool
    confidence: float
    critical_issues: tuple[str, ...] = ()
    justifications: tuple[dict[str, Any], ...] = ()
    supported_fields: int = 0
    total_fields: int = 0
    verification_time_ms: float = 0.0


@dataclass(frozen=True)
class ConsensusRecord:
    candidate_count: int
    selected_candidate_id: int
    consensus_confidence: float
    consistency_scores: tuple[float, ...] = ()
    failed_candidates: int = 0


@dataclass(frozen=True)
class FunctionCallRecord:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    success: bool = True
    error: str | None = None


@dataclass(frozen=True)
class PerformanceRecord:
    total_time_ms: float = 0.0
    grounding_time_ms: float = 0.0
    generation_time_ms: float = 0.0
    validation_time_ms: float = 0.0
    verification_time_ms: float = 0.0
    consensus_time_ms: float = 0.0


@dataclass(frozen=True)
class QualityRecord:
    accuracy: float = 0.0
    completeness: float = 0.0
    reliability: float = 0.0
    verification: float = 0.0
    overall: float = 0.0


@dataclass(frozen=True)
class ComplianceRecord:
    passed_safety_checks: bool = True
    data_privacy_compliant: bool = True
    requires_human_review: bool = False
    critical_fields_reviewed: bool = True
    anti_hallucination_compliant: bool = True


@dataclass(frozen=True)
class AuditLogEntry:
    """One pipeline execution. Never mutated after creation."""

    id: str
    timestamp: datetime
    request_id: str
    task_type: str
    task_category: str
    state: str
    success: bool
    confidence: float
    input: dict[str, Any]
    input_hash: str
    output_hash: str | None
    model: str
    generation_config: dict[str, Any]
    prompts: PromptRecord
    raw_output: str | None
    parsed_output: dict[str, Any] | None
    response_tokens: int
    validation: ValidationRecord
    grounding: GroundingRecord
    performance: PerformanceRecord
    quality: QualityRecord
    compliance: ComplianceRecord
    verification: VerificationRecord | None = None
    consensus: ConsensusRecord | None = None
    function_call: FunctionCallRecord | None = None
    user_id: str | None = None
    session_id: str | None = None
    error: str | None = None
    error_type: str | None = None

    @property
    def requires_review(self) -> bool:
        return self.compliance.requires_human_review

    @property
    def response_time_ms(self) -> float:
        return self.performance.total_time_ms

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


SortBy = Literal["timestamp", "confidence", "response_time"]
SortOrder = Literal["asc", "desc"]


@dataclass
class AuditQueryFilters:
    """Filters for audit queries; None means no constraint."""

    user_id: str | None = None
    session_id: str | None = None
    task_type: str | None = None
    state: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    min_confidence: float | None = None
    requires_review: bool | None = None
    has_function_calls: bool | None = None
    has_verification: bool | None = None
    has_grounding: bool | None = None
    sort_by: SortBy = "timestamp"
    sort_order: SortOrder = "desc"
    limit: int = 100
    offset: int = 0

    def matches(self, entry: AuditLogEntry) -> bool:
        if self.user_id is not None and entry.user_id != self.user_id:
            return False
        if self.session_id is not None and entry.session_id != self.session_id:
            return False
        if self.task_type is not None and entry.task_type != self.task_type:
            return False
        if self.state is not None and entry.state != self.state:
            return False
        if self.start is not None and entry.timestamp < self.start:
            return False
        if self.end is not None and entry.timestamp > self.end:
            return False
        if self.min_confidence is not None and entry.confidence < self.min_confidence:
            return False
        if self.requires_review is not None and entry.requires_review != self.requires_review:
            return False
        if (
            self.has_function_calls is not None
            and (entry.function_call is not None) != self.has_function_calls
        ):
            return False
        if (
            self.has_verification is not None
            and (entry.verification is not None) != self.has_verification
        ):
            return False
        if self.has_grounding is not None and entry.grounding.enabled != self.has_grounding:
            return False
        return True
