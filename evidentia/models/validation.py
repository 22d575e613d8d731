"""Validator output."""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class ValidationResult:
    """Outcome of parsing and schema-checking one model output.

    ``data`` is None whenever ``success`` is False. ``retry_count`` counts
    failed attempts and never exceeds the configured maximum.
    """

    success: bool
    data: dict[str, Any] | None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    confidence: float = 0.0
    needs_review: bool = True
    retry_count: int = 0
    raw_output: str | None = None
    error_type: str | None = None  # ParseError, SchemaViolation or LowConfidence
    processing_time_ms: float = 0.0

    def __post_init__(self):
        if not self.success:
            self.data = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "confidence": self.confidence,
            "needs_review": self.needs_review,
            "retry_count": self.retry_count,
            "error_type": self.error_type,
            "processing_time_ms": self.processing_time_ms,
        }
