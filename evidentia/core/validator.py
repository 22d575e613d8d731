"""Output validator: parse, schema-check and score raw model output, with bounded retries."""

import json
import logging
import re
import time
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError

from evidentia.lib.errors import LowConfidence, ParseError, SchemaViolation
from evidentia.lib.retry import RetryPolicy
from evidentia.models.task import TaskType
from evidentia.models.task_schemas import schema_for
from evidentia.models.validation import ValidationResult

logger = logging.getLogger(__name__)

DEFAULT_BASE_CONFIDENCE = 0.5
UNVERIFIED_PENALTY = 0.3
CONFIDENCE_WEIGHT = 0.7
COMPLETENESS_WEIGHT = 0.3
LOW_SELF_REPORTED_CONFIDENCE = 0.7
MAX_UNVERIFIED_BEFORE_WARNING = 3
UNKNOWN_MARKER = "UNKNOWN"

JSON_FENCE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


def parse_structured_output(raw: str) -> dict[str, Any]:
    """Parse model text into a JSON object.

    Accepts bare JSON, JSON inside a markdown code fence, or a JSON object
    embedded in surrounding prose.

    Raises:
        ParseError: If no JSON object can be recovered
    """
    text = (raw or "").strip()
    if not text:
        raise ParseError("Empty model output")

    candidates = [text]
    fenced = JSON_FENCE.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])

    last_error = None
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError as e:
            last_error = e
            continue
        if isinstance(parsed, dict):
            return parsed
        last_error = None

    if last_error is not None:
        raise ParseError(f"Invalid JSON: {last_error.msg} at position {last_error.pos}")
    raise ParseError("Model output is not a JSON object")


def format_schema_errors(error: ValidationError) -> list[str]:
    """Render pydantic errors as "field.path: message"."""
    messages = []
    for item in error.errors():
        path = ".".join(str(part) for part in item["loc"])
        messages.append(f"{path}: {item['msg']}" if path else item["msg"])
    return messages


def is_empty_value(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == "" or value.strip().upper() == UNKNOWN_MARKER
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def completeness_ratio(data: dict[str, Any]) -> float:
    if not data:
        return 0.0
    filled = sum(1 for value in data.values() if not is_empty_value(value))
    return filled / len(data)


def compute_confidence(data: dict[str, Any]) -> float:
    """base x (1 - 0.3 x unverified ratio), blended 70/30 with completeness, clipped to [0, 1]."""
    total_fields = len(data)
    if total_fields == 0:
        return 0.0

    base = data.get("confidence_score")
    confidence = DEFAULT_BASE_CONFIDENCE if base is None else float(base)

    unverified = data.get("unverified_fields") or []
    confidence *= 1 - (len(unverified) / total_fields) * UNVERIFIED_PENALTY

    confidence = CONFIDENCE_WEIGHT * confidence + COMPLETENESS_WEIGHT * completeness_ratio(data)
    return max(0.0, min(confidence, 1.0))


def task_warnings(task_type: TaskType, data: dict[str, Any]) -> list[str]:
    warnings = []

    if task_type == TaskType.COMPANY_RESEARCH:
        if is_empty_value(data.get("website")):
            warnings.append("Website not provided")
        if is_empty_value(data.get("founded_year")):
            warnings.append("Founded year not provided")

    reported = data.get("confidence_score")
    if reported is not None and reported < LOW_SELF_REPORTED_CONFIDENCE:
        warnings.append(f"Low self-reported confidence score: {reported}")

    unverified = data.get("unverified_fields") or []
    if len(unverified) > MAX_UNVERIFIED_BEFORE_WARNING:
        warnings.append(f"Multiple unverified fields: {', '.join(unverified)}")

    return warnings


class OutputValidator:
    """Validates model output against the schema registered for its task type."""

    def __init__(self, retry_policy: RetryPolicy | None = None):
        """Initialize validator.

        Args:
            retry_policy: Supplies the backoff between attempts; its
                max_attempts is only a default, the caller's max_retries wins
        """
        self.retry_policy = retry_policy or RetryPolicy()

    def validate_once(
        self, task_type: TaskType, raw_output: str, confidence_threshold: float
    ) -> ValidationResult:
        """Run a single parse, schema check and scoring pass."""
        start_time = time.time()

        try:
            parsed = parse_structured_output(raw_output)
        except ParseError as e:
            return ValidationResult(
                success=False,
                data=None,
                errors=[f"Failed to parse output: {e}"],
                confidence=0.0,
                needs_review=True,
                raw_output=raw_output,
                error_type=ParseError.__name__,
                processing_time_ms=(time.time() - start_time) * 1000,
            )

        try:
            model = schema_for(task_type).model_validate(parsed)
        except ValidationError as e:
            violation = SchemaViolation(format_schema_errors(e))
            return ValidationResult(
                success=False,
                data=None,
                errors=violation.messages,
                confidence=0.0,
                needs_review=True,
                raw_output=raw_output,
                error_type=SchemaViolation.__name__,
                processing_time_ms=(time.time() - start_time) * 1000,
            )

        data = model.model_dump(mode="json", exclude_unset=True)
        confidence = compute_confidence(data)
        warnings = task_warnings(task_type, data)

        error_type = None
        if confidence < confidence_threshold:
            warnings.append(str(LowConfidence(confidence, confidence_threshold)))
            error_type = LowConfidence.__name__

        needs_review = (
            confidence < confidence_threshold
            or bool(data.get("needs_review"))
            or bool(data.get("unverified_fields"))
        )

        return ValidationResult(
            success=True,
            data=data,
            warnings=warnings,
            confidence=confidence,
            needs_review=needs_review,
            raw_output=raw_output,
            error_type=error_type,
            processing_time_ms=(time.time() - start_time) * 1000,
        )

    async def validate(
        self,
        task_type: TaskType,
        raw_output: str,
        max_retries: int | None = None,
        confidence_threshold: float = 0.7,
        regenerate: Callable[[], Awaitable[str]] | None = None,
        on_attempt: Callable[[ValidationResult], None] | None = None,
    ) -> ValidationResult:
        """Validate with bounded retries and exponential backoff.

        Each failed attempt (parse error, schema violation or low confidence)
        is followed by a backoff sleep and, when ``regenerate`` is given, a
        fresh model output. ``retry_count`` on the result is the number of
        failed attempts, so it never exceeds ``max_retries``.

        Args:
            task_type: Task type selecting the schema
            raw_output: Output of the first generation
            max_retries: Total attempts allowed (default: retry policy)
            confidence_threshold: Minimum confidence to stop retrying
            regenerate: Produces a new raw output for the next attempt
            on_attempt: Called with each attempt's result as soon as it is scored

        Returns:
            The first result meeting the threshold, otherwise the latest
            structurally valid result, otherwise the last failure

        Raises:
            ExternalServiceError: If ``regenerate`` cannot reach the model
        """
        limit = max(0, self.retry_policy.max_attempts if max_retries is None else max_retries)
        # A zero limit still validates the output once
        attempts = max(1, limit)
        raw = raw_output
        last_result: ValidationResult | None = None
        last_valid: ValidationResult | None = None
        total_time_ms = 0.0

        for attempt in range(attempts):
            if attempt > 0:
                await self.retry_policy.wait(attempt - 1)
                if regenerate is not None:
                    raw = await regenerate()

            result = self.validate_once(task_type, raw, confidence_threshold)
            total_time_ms += result.processing_time_ms
            passed = result.success and result.confidence >= confidence_threshold
            result.retry_count = min(attempt if passed else attempt + 1, limit)
            if on_attempt is not None:
                on_attempt(result)

            if passed:
                result.processing_time_ms = total_time_ms
                if attempt:
                    logger.info(f"{task_type.value} output validated on attempt {attempt + 1}")
                return result

            logger.warning(
                f"{task_type.value} validation attempt {attempt + 1}/{attempts} failed: "
                f"{result.error_type} {'; '.join(result.errors[:3])}"
            )
            last_result = result
            if result.success:
                last_valid = result

        final = last_valid or last_result
        final.retry_count = min(attempts, limit)
        final.processing_time_ms = total_time_ms
        return final
