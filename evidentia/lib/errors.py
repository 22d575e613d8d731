"""Error taxonomy for the generation pipeline.

Validation-stage errors (ParseError, SchemaViolation, LowConfidence) are
retryable and never escape the validator; they are folded into a
ValidationResult. ExternalServiceError is retried with backoff and, once
retries are exhausted, fails the request with its message surfaced as-is.
"""


class EvidentiaError(Exception):
    """Base class for all pipeline errors."""

    retryable: bool = False


class ConfigError(EvidentiaError):
    """Configuration file or value is invalid."""


class ParseError(EvidentiaError):
    """Model output could not be parsed as structured data."""

    retryable = True


class SchemaViolation(EvidentiaError):
    """Parsed output does not match the schema registered for the task type."""

    retryable = True

    def __init__(self, messages: list[str]):
        self.messages = messages
        super().__init__("; ".join(messages) or "Schema validation failed")


class LowConfidence(EvidentiaError):
    """Output is structurally valid but scored below the task threshold."""

    retryable = True

    def __init__(self, confidence: float, threshold: float):
        self.confidence = confidence
        self.threshold = threshold
        super().__init__(f"Confidence {confidence:.3f} below threshold {threshold:.3f}")


class ExternalServiceError(EvidentiaError):
    """Model gateway or search collaborator unavailable, failing or timed out."""

    retryable = True

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(message)


class VerificationFailure(EvidentiaError):
    """One or more critical fields could not be verified against grounding evidence."""

    def __init__(self, critical_issues: list[str]):
        self.critical_issues = critical_issues
        super().__init__("; ".join(critical_issues))


class AuditWriteFailure(EvidentiaError):
    """Audit entry could not be persisted."""
