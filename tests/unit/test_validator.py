"""Unit tests for output parsing, schema validation and retries."""

import json

import pytest

from evidentia.core.validator import (
    OutputValidator,
    compute_confidence,
    parse_structured_output,
)
from evidentia.lib.errors import ParseError
from evidentia.lib.retry import RetryPolicy
from evidentia.models.task import TaskType
from tests.fakes import RecordingSleep, company_output, email_output


def make_validator():
    return OutputValidator(RetryPolicy(sleep=RecordingSleep()))


class Outputs:
    """Replays outputs for ``regenerate`` and counts calls."""

    def __init__(self, *outputs):
        self.outputs = list(outputs)
        self.calls = 0

    async def __call__(self):
        output = self.outputs[min(self.calls, len(self.outputs) - 1)]
        self.calls += 1
        return output


@pytest.mark.unit
class TestParsing:
    def test_bare_json(self):
        assert parse_structured_output('{"a": 1}') == {"a": 1}

    def test_fenced_json(self):
        raw = 'Here is the result:\n```json\n{"a": 1, "b": "two"}\n```\nLet me know.'

        assert parse_structured_output(raw) == {"a": 1, "b": "two"}

    def test_json_embedded_in_prose(self):
        assert parse_structured_output('Result: {"a": [1, 2]} done') == {"a": [1, 2]}

    @pytest.mark.parametrize("raw", ["", "   ", "no json here", "[1, 2, 3]", '{"a": '])
    def test_unparsable_output(self, raw):
        with pytest.raises(ParseError):
            parse_structured_output(raw)


@pytest.mark.unit
class TestConfidence:
    def test_blends_self_reported_confidence_and_completeness(self):
        data = json.loads(email_output())

        assert compute_confidence(data) == pytest.approx(0.7 * 0.9 + 0.3 * 1.0)

    def test_unknown_values_lower_completeness(self):
        data = {"a": "x", "b": "UNKNOWN", "confidence_score": 1.0}

        assert compute_confidence(data) == pytest.approx(0.7 + 0.3 * (2 / 3))

    def test_missing_self_reported_confidence_uses_default(self):
        assert compute_confidence({"a": "x"}) == pytest.approx(0.7 * 0.5 + 0.3)

    def test_bounds(self):
        assert compute_confidence({}) == 0.0
        assert 0.0 <= compute_confidence({"confidence_score": 1.0, "unverified_fields": ["a"]}) <= 1.0


@pytest.mark.unit
class TestValidateOnce:
    def test_valid_email(self):
        result = make_validator().validate_once(TaskType.COMPOSE_EMAIL, email_output(), 0.6)

        assert result.success is True
        assert result.data["recipient"] == "jane@example.com"
        assert result.confidence == pytest.approx(0.93)
        assert result.needs_review is False
        assert result.errors == []

    def test_schema_violation_lists_fields(self):
        raw = company_output(description="short", founded_year=1700)

        result = make_validator().validate_once(TaskType.COMPANY_RESEARCH, raw, 0.8)

        assert result.success is False
        assert result.data is None
        assert result.error_type == "SchemaViolation"
        assert any(e.startswith("description:") for e in result.errors)
        assert any(e.startswith("founded_year:") for e in result.errors)

    def test_missing_required_field(self):
        data = json.loads(email_output())
        del data["subject"]

        result = make_validator().validate_once(TaskType.COMPOSE_EMAIL, json.dumps(data), 0.6)

        assert result.success is False
        assert any("subject" in e for e in result.errors)

    def test_unverified_fields_need_review(self):
        raw = email_output(unverified_fields=["subject"])

        result = make_validator().validate_once(TaskType.COMPOSE_EMAIL, raw, 0.6)

        assert result.success is True
        assert result.needs_review is True

    def test_company_warnings(self):
        raw = company_output(website=None, confidence_score=0.6)

        result = make_validator().validate_once(TaskType.COMPANY_RESEARCH, raw, 0.5)

        assert "Website not provided" in result.warnings
        assert "Low self-reported confidence score: 0.6" in result.warnings


@pytest.mark.unit
class TestValidateWithRetries:
    """Bounded retries with exponential backoff."""

    @pytest.mark.asyncio
    async def test_unparsable_output_exhausts_retries(self):
        validator = make_validator()

        result = await validator.validate(
            TaskType.COMPANY_RESEARCH, "The company is doing great!", max_retries=3
        )

        assert result.success is False
        assert result.data is None
        assert result.confidence == 0.0
        assert result.retry_count == 3
        assert result.error_type == "ParseError"
        assert validator.retry_policy.sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_low_confidence_output_is_regenerated(self):
        validator = make_validator()
        regenerate = Outputs(email_output())

        result = await validator.validate(
            TaskType.COMPOSE_EMAIL,
            email_output(confidence_score=0.2),
            max_retries=2,
            confidence_threshold=0.6,
            regenerate=regenerate,
        )

        assert result.success is True
        assert result.confidence == pytest.approx(0.93)
        assert result.retry_count == 1
        assert regenerate.calls == 1
        assert validator.retry_policy.sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_exhausted_low_confidence_returns_latest_valid_result(self):
        regenerate = Outputs("not json", email_output(confidence_score=0.3), "still not json")

        result = await make_validator().validate(
            TaskType.COMPOSE_EMAIL,
            email_output(confidence_score=0.2),
            max_retries=4,
            confidence_threshold=0.6,
            regenerate=regenerate,
        )

        assert result.success is True
        assert result.confidence == pytest.approx(0.7 * 0.3 + 0.3)
        assert result.error_type == "LowConfidence"
        assert result.needs_review is True
        assert result.retry_count == 4

    @pytest.mark.asyncio
    async def test_first_valid_output_needs_no_retry(self):
        validator = make_validator()

        result = await validator.validate(TaskType.COMPOSE_EMAIL, email_output(), max_retries=3, confidence_threshold=0.6)

        assert result.retry_count == 0
        assert validator.retry_policy.sleep.delays == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_retries", [0, 1, 2, 5])
    async def test_retry_count_never_exceeds_max(self, max_retries):
        result = await make_validator().validate(
            TaskType.COMPOSE_EMAIL, "garbage", max_retries=max_retries
        )

        assert result.retry_count == max_retries

    @pytest.mark.asyncio
    async def test_zero_retries_validates_once(self):
        regenerate = Outputs(email_output())

        result = await make_validator().validate(
            TaskType.COMPOSE_EMAIL, "garbage", max_retries=0, regenerate=regenerate
        )

        assert result.success is False
        assert result.retry_count == 0
        assert regenerate.calls == 0

    @pytest.mark.asyncio
    async def test_reports_each_attempt(self):
        seen = []

        result = await make_validator().validate(
            TaskType.COMPOSE_EMAIL,
            "garbage",
            max_retries=3,
            regenerate=Outputs(email_output()),
            on_attempt=seen.append,
        )

        assert [r.success for r in seen] == [False, True]
        assert seen[0].raw_output == "garbage"
        assert seen[0].retry_count == 1
        assert seen[-1] is result
