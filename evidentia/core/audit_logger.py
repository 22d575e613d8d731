"""Audit logger: turns a finished pipeline run into an immutable audit entry.

Logging is best-effort. Any failure while building or saving an entry is
reported on the ``evidentia.core.audit_logger.failures`` logger and
swallowed there, so the request that produced it is never affected.
"""

import hashlib
import json
import logging
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from evidentia.core.prompt_assembler import AssembledPrompt, estimate_tokens
from evidentia.core.validator import completeness_ratio
from evidentia.lib.errors import AuditWriteFailure
from evidentia.models.audit import (
    AuditLogEntry,
    AuditQueryFilters,
    ComplianceRecord,
    ConsensusRecord,
    FunctionCallRecord,
    GroundingRecord,
    PerformanceRecord,
    PromptRecord,
    QualityRecord,
    ValidationRecord,
    VerificationRecord,
)
from evidentia.models.grounding import GroundingResult
from evidentia.models.task import PipelineState, TaskRequest
from evidentia.models.validation import ValidationResult
from evidentia.models.verification import ConsensusResult, VerificationResult
from evidentia.storage.audit_store import AuditStorage

logger = logging.getLogger(__name__)
failure_logger = logging.getLogger(f"{__name__}.failures")

FLAGGED_TERMS = ["password", "secret", "private key", "token", "api key"]
PRIVACY_PATTERNS = [
    re.compile(r"\b(?:\d[ -]?){13,16}\b"),  # payment card
    re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),  # SSN
    re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),  # email
]
UNCERTAINTY_MARKERS = ["might be", "probably", "likely", "perhaps", "possibly"]


def content_hash(value: Any) -> str:
    """SHA-256 of the canonical JSON form of a value."""
    canonical = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class PipelineTrace:
    """Everything one request produced, collected as the pipeline runs."""

    request: TaskRequest
    request_id: str
    task_category: str
    model: str
    generation_config: dict[str, Any] = field(default_factory=dict)
    state: PipelineState = PipelineState.PENDING
    success: bool = False
    confidence: float = 0.0
    requires_human_review: bool = False
    prompt: AssembledPrompt | None = None
    grounding: GroundingResult | None = None
    raw_output: str | None = None
    response_tokens: int = 0
    function_call: dict[str, Any] | None = None
    validation: ValidationResult | None = None
    verification: VerificationResult | None = None
    consensus: ConsensusResult | None = None
    timings: dict[str, float] = field(default_factory=dict)
    error: str | None = None
    error_type: str | None = None


class AuditLogger:
    """Builds audit entries and appends them to storage."""

    def __init__(self, storage: AuditStorage, clock: Callable[[], datetime] | None = None):
        self.storage = storage
        self.clock = clock or (lambda: datetime.now(UTC))
        self.failed_writes = 0

    async def record(self, trace: PipelineTrace) -> AuditLogEntry | None:
        """Build and store an entry for a finished run; returns None on failure."""
        try:
            entry = self.build_entry(trace)
        except Exception as e:
            self._report_failure(trace.request_id, e)
            return None

        if await self.log(entry):
            return entry
        return None

    async def log(self, entry: AuditLogEntry) -> bool:
        """Append an entry. Never raises; returns whether it was stored."""
        try:
            await self.storage.save(entry)
        except Exception as e:
            self._report_failure(entry.request_id, e)
            return False

        logger.debug(f"Audit entry {entry.id} stored for request {entry.request_id}")
        return True

    def _report_failure(self, request_id: str, error: Exception) -> None:
        self.failed_writes += 1
        failure = error if isinstance(error, AuditWriteFailure) else AuditWriteFailure(str(error))
        failure_logger.error(
            f"Audit write failed for request {request_id}: {failure}",
            exc_info=not isinstance(error, AuditWriteFailure),
        )

    def build_entry(self, trace: PipelineTrace) -> AuditLogEntry:
        parsed = trace.validation.data if trace.validation else None
        output_text = trace.raw_output or ""

        return AuditLogEntry(
            id=str(uuid.uuid4()),
            timestamp=self.clock(),
            request_id=trace.request_id,
            user_id=trace.request.user_id,
            session_id=trace.request.session_id,
            task_type=trace.request.task_type.value,
            task_category=trace.task_category,
            state=trace.state.value,
            success=trace.success,
            confidence=trace.confidence,
            input=dict(trace.request.input),
            input_hash=content_hash(trace.request.input),
            output_hash=content_hash(parsed) if parsed is not None else None,
            model=trace.model,
            generation_config=dict(trace.generation_config),
            prompts=self._prompt_record(trace.prompt),
            raw_output=trace.raw_output,
            parsed_output=parsed,
            response_tokens=trace.response_tokens or estimate_tokens(output_text),
            validation=self._validation_record(trace.validation),
            grounding=self._grounding_record(trace.grounding),
            verification=self._verification_record(trace.verification),
            consensus=self._consensus_record(trace.consensus),
            function_call=self._function_call_record(trace.function_call),
            performance=PerformanceRecord(
                total_time_ms=trace.timings.get("total", 0.0),
                grounding_time_ms=trace.timings.get("grounding", 0.0),
                generation_time_ms=trace.timings.get("generation", 0.0),
                validation_time_ms=trace.timings.get("validation", 0.0),
                verification_time_ms=trace.timings.get("verification", 0.0),
                consensus_time_ms=trace.timings.get("consensus", 0.0),
            ),
            quality=self.quality_scores(trace),
            compliance=self.compliance_checks(trace),
            error=trace.error,
            error_type=trace.error_type,
        )

    @staticmethod
    def _prompt_record(prompt: AssembledPrompt | None) -> PromptRecord:
        if prompt is None:
            return PromptRecord(base="", grounding="", full="", prompt_tokens=0)
        return PromptRecord(
            base=prompt.base_prompt,
            grounding=prompt.grounding_block,
            full=prompt.prompt,
            prompt_tokens=estimate_tokens(prompt.prompt),
        )

    @staticmethod
    def _validation_record(validation: ValidationResult | None) -> ValidationRecord:
        if validation is None:
            return ValidationRecord(passed=False)
        return ValidationRecord(
            passed=validation.success,
            errors=tuple(validation.errors),
            warnings=tuple(validation.warnings),
            confidence=validation.confidence,
            retry_count=validation.retry_count,
            processing_time_ms=validation.processing_time_ms,
        )

    @staticmethod
    def _grounding_record(grounding: GroundingResult | None) -> GroundingRecord:
        if grounding is None:
            return GroundingRecord(enabled=False)
        return GroundingRecord(
            enabled=bool(grounding.sources),
            sources=tuple(s.to_dict() for s in grounding.sources),
            source_count=len(grounding.sources),
            average_relevance=grounding.total_relevance_score,
            has_high_quality_sources=grounding.has_high_quality_sources,
            retrieval_method=grounding.retrieval_method.value,
            grounding_time_ms=grounding.grounding_time_ms,
        )

    @staticmethod
    def _verification_record(verification: VerificationResult | None) -> VerificationRecord | None:
        if verification is None:
            return None
        data = verification.to_dict()
        return VerificationRecord(
            passed=verification.passed,
            confidence=verification.overall_confidence,
            critical_issues=tuple(verification.critical_issues),
            justifications=tuple(data["justifications"]),
            supported_fields=verification.supported_fields,
            total_fields=verification.total_fields,
            verification_time_ms=verification.verification_time_ms,
        )

    @staticmethod
    def _consensus_record(consensus: ConsensusResult | None) -> ConsensusRecord | None:
        if consensus is None:
            return None
        return ConsensusRecord(
            candidate_count=len(consensus.candidates),
            selected_candidate_id=consensus.selected.candidate_id,
            consensus_confidence=consensus.consensus_confidence,
            consistency_scores=tuple(c.consistency_score for c in consensus.candidates),
            failed_candidates=consensus.failed_candidates,
        )

    @staticmethod
    def _function_call_record(call: dict[str, Any] | None) -> FunctionCallRecord | None:
        if not call:
            return None
        arguments = call.get("arguments") or {}
        return FunctionCallRecord(
            name=call.get("name", ""),
            arguments=arguments if isinstance(arguments, dict) else {"raw": arguments},
            success=call.get("success", True),
            error=call.get("error"),
        )

    @staticmethod
    def quality_scores(trace: PipelineTrace) -> QualityRecord:
        validation = trace.validation
        accuracy = validation.confidence if validation else 0.0
        completeness = completeness_ratio(validation.data) if validation and validation.data else 0.0
        sources = trace.grounding.sources if trace.grounding else []
        reliability = sum(s.reliability for s in sources) / len(sources) if sources else 0.0
        verification = (
            trace.verification.overall_confidence if trace.verification is not None else accuracy
        )

        base = 0.4 * accuracy + 0.3 * completeness + 0.3 * reliability
        return QualityRecord(
            accuracy=accuracy,
            completeness=completeness,
            reliability=reliability,
            verification=verification,
            overall=base * 0.7 + verification * 0.3,
        )

    @staticmethod
    def compliance_checks(trace: PipelineTrace) -> ComplianceRecord:
        output = trace.raw_output or ""
        lowered = output.lower()
        provided = json.dumps(trace.request.input, default=str)

        passed_safety = not any(term in lowered for term in FLAGGED_TERMS)

        # Values the caller supplied (e.g. an email recipient) are not leaks
        leaks = [
            match
            for pattern in PRIVACY_PATTERNS
            for match in pattern.findall(output)
            if match not in provided
        ]

        has_sources = bool(trace.grounding and trace.grounding.sources)
        uncertain = any(marker in lowered for marker in UNCERTAINTY_MARKERS)

        return ComplianceRecord(
            passed_safety_checks=passed_safety,
            data_privacy_compliant=not leaks,
            requires_human_review=trace.requires_human_review,
            critical_fields_reviewed=not (trace.verification and trace.verification.critical_issues),
            anti_hallucination_compliant=not (uncertain and not has_sources),
        )

    async def query(self, filters: AuditQueryFilters | None = None) -> list[AuditLogEntry]:
        return await self.storage.query(filters)

    async def get_full_interaction(self, entry_id: str) -> AuditLogEntry | None:
        return await self.storage.get_entry(entry_id)

    async def get_stats(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> dict[str, Any]:
        return await self.storage.get_stats(start, end)

    async def export(self, fmt: str = "json", filters: AuditQueryFilters | None = None) -> str:
        if fmt == "csv":
            return await self.storage.export_csv(filters)
        if fmt == "json":
            return await self.storage.export_json(filters)
        raise ValueError(f"Unsupported export format: {fmt}")
