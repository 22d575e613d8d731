"""Verifier: cross-checks validated output fields against grounding evidence."""

import logging
import re
import time
from dataclasses import dataclass
from typing import Any

from evidentia.models.grounding import GroundingSource
from evidentia.models.verification import (
    CriticalFieldCheck,
    Evidence,
    EvidenceJustification,
    FieldVerificationResult,
    VerificationResult,
    VerificationStatus,
)

logger = logging.getLogger(__name__)

CRITICAL_CONFIDENCE_THRESHOLD = 0.8
SUPPORT_THRESHOLD = 0.5  # minimum term overlap for a partial match
NUMERIC_TOLERANCE = 0.01
QUOTE_CONTEXT_CHARS = 80

# Output bookkeeping, not claims about the world
META_FIELDS = {"confidence_score", "needs_review", "unverified_fields", "sources", "source", "timestamp"}
# Path segments too generic to locate a field in source text
GENERIC_SEGMENTS = {"value", "amount", "count", "name", "title", "score", "year", "currency"}
PRIMARY_LEAVES = {"value", "amount"}

STOPWORDS = {
    "the", "and", "for", "with", "from", "that", "this", "are", "was", "has",
    "its", "our", "per", "inc", "ltd", "llc", "corp", "unknown",
}

SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+|\n+")
TERM_PATTERN = re.compile(r"[a-z0-9][a-z0-9&'-]*")
NUMBER_PATTERN = re.compile(
    r"(\d[\d,]*(?:\.\d+)?)\s*(k|thousand|m|mn|million|b|bn|billion)?\b", re.IGNORECASE
)
MULTIPLIERS = {
    "k": 1e3, "thousand": 1e3,
    "m": 1e6, "mn": 1e6, "million": 1e6,
    "b": 1e9, "bn": 1e9, "billion": 1e9,
}


def flatten_fields(data: dict[str, Any], prefix: str = "") -> list[tuple[str, Any]]:
    """Leaf values keyed by dotted path; meta fields, None and booleans are skipped."""
    leaves = []
    for key, value in data.items():
        if key in META_FIELDS:
            continue
        path = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict):
            leaves.extend(flatten_fields(value, path))
        elif isinstance(value, list):
            for index, item in enumerate(value):
                item_path = f"{path}.{index}"
                if isinstance(item, dict):
                    leaves.extend(flatten_fields(item, item_path))
                elif item is not None and not isinstance(item, bool):
                    leaves.append((item_path, item))
        elif value is None or isinstance(value, bool):
            continue
        elif isinstance(value, str) and not value.strip():
            continue
        else:
            leaves.append((path, value))
    return leaves


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in SENTENCE_BOUNDARY.split(text) if s.strip()]


def extract_numbers(text: str) -> list[float]:
    """Numbers in text, with k/m/b and word multipliers applied."""
    numbers = []
    for digits, suffix in NUMBER_PATTERN.findall(text):
        try:
            number = float(digits.replace(",", ""))
        except ValueError:
            continue
        if suffix:
            number *= MULTIPLIERS[suffix.lower()]
        numbers.append(number)
    return numbers


def numeric_value(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        numbers = extract_numbers(value)
        return numbers[0] if numbers else None
    return None


def is_year(number: float) -> bool:
    return number.is_integer() and 1800 <= number <= 2100


def numbers_match(a: float, b: float) -> bool:
    if a == b:
        return True
    return abs(a - b) <= NUMERIC_TOLERANCE * max(abs(a), abs(b))


def value_forms(value: Any) -> list[str]:
    """Textual renderings of a value to look for verbatim."""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, int):
        return [str(value), f"{value:,}"]
    return [str(value).strip()]


def value_terms(value: Any) -> list[str]:
    terms = TERM_PATTERN.findall(str(value).lower())
    return list(
        dict.fromkeys(t for t in terms if (len(t) >= 3 or t.isdigit()) and t not in STOPWORDS)
    )


def label_terms(path: str) -> list[str]:
    """Words from a field path usable to find statements about that field."""
    terms = []
    for segment in path.split("."):
        if segment.isdigit():
            continue
        for word in segment.lower().split("_"):
            if len(word) >= 3 and word not in GENERIC_SEGMENTS:
                terms.append(word)
    return terms


@dataclass
class _Match:
    source_id: str
    reliability: float
    strength: float
    quote: str
    context: str

    @property
    def confidence(self) -> float:
        return self.strength * self.reliability


class Verifier:
    """Per-field evidence verification with a critical-field gate."""

    def __init__(self, critical_confidence_threshold: float = CRITICAL_CONFIDENCE_THRESHOLD):
        self.critical_confidence_threshold = critical_confidence_threshold

    def verify(
        self,
        data: dict[str, Any],
        sources: list[GroundingSource],
        critical_fields: tuple[str, ...] | list[str] = (),
        validator_confidence: float | None = None,
        review_threshold: float | None = None,
        request_input: dict[str, Any] | None = None,
    ) -> VerificationResult:
        """Verify every leaf field of a validated output.

        Args:
            data: Validated output
            sources: Grounding sources to search for support
            critical_fields: Field names that must be supported
            validator_confidence: Validator confidence to blend with
            review_threshold: Overall confidence below which review is required
                (default: the critical confidence threshold)
            request_input: Task input; a value found only there is noted in
                the justification but stays unverified

        Returns:
            VerificationResult
        """
        start_time = time.time()
        review_threshold = (
            self.critical_confidence_threshold if review_threshold is None else review_threshold
        )

        fields = []
        justifications = []
        for path, value in flatten_fields(data):
            field_result, justification = self.verify_field(path, value, sources, request_input)
            fields.append(field_result)
            justifications.append(justification)

        critical_check = self.check_critical_fields(fields, critical_fields)

        field_confidence = sum(f.confidence for f in fields) / len(fields) if fields else 0.0
        if validator_confidence is not None and fields:
            overall = 0.5 * field_confidence + 0.5 * validator_confidence
        elif validator_confidence is not None:
            overall = validator_confidence
        else:
            overall = field_confidence

        requires_review = (not critical_check.passed) or overall < review_threshold

        result = VerificationResult(
            fields=fields,
            justifications=justifications,
            critical_check=critical_check,
            field_confidence=field_confidence,
            overall_confidence=max(0.0, min(overall, 1.0)),
            requires_human_review=requires_review,
            verification_time_ms=(time.time() - start_time) * 1000,
        )

        logger.info(
            f"Verification: {result.supported_fields}/{result.total_fields} fields supported, "
            f"confidence={result.overall_confidence:.2f}, "
            f"critical issues={len(critical_check.critical_issues)}"
        )
        return result

    def verify_field(
        self,
        path: str,
        value: Any,
        sources: list[GroundingSource],
        request_input: dict[str, Any] | None = None,
    ) -> tuple[FieldVerificationResult, EvidenceJustification]:
        matches = []
        discrepancies = []
        for source in sources:
            match = self._best_match(value, source.searchable_text, source.id, source.reliability)
            if match is not None:
                matches.append(match)
            discrepancies.extend(self._contradictions(path, value, source))

        matches.sort(key=lambda m: m.confidence, reverse=True)
        supporting = [m for m in matches if m.strength >= SUPPORT_THRESHOLD]

        # Echoing the caller's input is not evidence
        echoed = not supporting and self._in_request_input(value, request_input)

        best = supporting[0] if supporting else (matches[0] if matches else None)
        supported = bool(supporting)
        confidence = best.confidence if best else 0.0

        field_result = FieldVerificationResult(
            field_name=path,
            value=value,
            supported=supported,
            confidence=confidence,
            evidence_quotes=[m.quote for m in supporting],
            source_references=[m.source_id for m in supporting],
            discrepancies=discrepancies,
        )

        if discrepancies:
            status = VerificationStatus.CONFLICTING_DATA
            reason = f"Contradicted by {len(discrepancies)} statement(s) in grounding sources"
        elif supported and best.strength == 1.0:
            status = VerificationStatus.VERIFIED
            reason = f"Exact match in source {best.source_id}"
        elif supported:
            status = VerificationStatus.PARTIALLY_VERIFIED
            reason = f"Partial term overlap ({best.strength:.2f}) in source {best.source_id}"
        elif echoed:
            status = VerificationStatus.UNVERIFIED
            reason = "Value appears in the request input but in no grounding source"
        else:
            status = VerificationStatus.UNVERIFIED
            reason = f"No supporting text found in {len(sources)} grounding source(s)"

        evidence = None
        if supported:
            evidence = Evidence(
                direct_quote=best.quote,
                source_id=best.source_id,
                reliability_score=best.reliability,
                context=best.context,
            )

        justification = EvidenceJustification(
            field_name=path,
            value=value,
            evidence=evidence,
            confidence=confidence,
            verification_status=status,
            justification=reason,
        )
        return field_result, justification

    def _best_match(
        self, value: Any, text: str, source_id: str, reliability: float
    ) -> _Match | None:
        if isinstance(value, str) and value.strip().upper() == "UNKNOWN":
            return None

        lowered = text.lower()
        for form in value_forms(value):
            if not form:
                continue
            if isinstance(value, (int, float)):
                hit = re.search(rf"(?<![\d.]){re.escape(form)}(?![\d])", text)
                index = hit.start() if hit else -1
            else:
                index = lowered.find(form.lower())
            if index != -1:
                quote = self._sentence_at(text, index)
                return _Match(source_id, reliability, 1.0, quote, self._context(text, index, form))

        # "$10M" in the source supports 10000000 and vice versa
        numeric = numeric_value(value)
        if numeric is not None:
            words = [
                t
                for t in value_terms(value)
                if not any(ch.isdigit() for ch in t) and t not in MULTIPLIERS
            ]
            for sentence in split_sentences(text):
                sentence_lower = sentence.lower()
                if not all(w in sentence_lower for w in words):
                    continue
                if any(numbers_match(numeric, n) for n in extract_numbers(sentence)):
                    index = text.find(sentence)
                    return _Match(
                        source_id, reliability, 1.0, sentence, self._context(text, index, sentence)
                    )

        terms = value_terms(value)
        if not terms:
            return None

        best_sentence, best_ratio = "", 0.0
        for sentence in split_sentences(text):
            sentence_lower = sentence.lower()
            ratio = sum(1 for t in terms if t in sentence_lower) / len(terms)
            if ratio > best_ratio:
                best_sentence, best_ratio = sentence, ratio

        if best_ratio == 0:
            return None
        index = text.find(best_sentence)
        return _Match(
            source_id, reliability, best_ratio, best_sentence, self._context(text, index, best_sentence)
        )

    def _in_request_input(self, value: Any, request_input: dict[str, Any] | None) -> bool:
        if not request_input:
            return False
        text = "\n".join(str(v) for _, v in flatten_fields(request_input))
        match = self._best_match(value, text, "request_input", 1.0)
        return match is not None and match.strength == 1.0

    def _contradictions(self, path: str, value: Any, source: GroundingSource) -> list[str]:
        """Statements about the same field that state a different number."""
        numeric = numeric_value(value)
        labels = label_terms(path)
        if numeric is None or not labels:
            return []

        found = []
        for sentence in split_sentences(source.searchable_text):
            lowered = sentence.lower()
            if not any(label in lowered for label in labels):
                continue
            numbers = [n for n in extract_numbers(sentence) if is_year(n) == is_year(numeric)]
            if numbers and not any(numbers_match(numeric, n) for n in numbers):
                found.append(f'[{source.id}] "{sentence}"')
        return found

    def check_critical_fields(
        self, fields: list[FieldVerificationResult], critical_fields
    ) -> CriticalFieldCheck:
        """Every critical field must be present, supported and confident enough."""
        check = CriticalFieldCheck(passed=True, checked_fields=list(critical_fields))

        for name in critical_fields:
            related = [
                f for f in fields if f.field_name == name or f.field_name.startswith(f"{name}.")
            ]
            for f in related:
                f.is_critical = True

            if not related:
                check.failed_fields.append(name)
                check.critical_issues.append(f"Critical field '{name}' is missing from the output")
                continue

            primary = [f for f in related if f.field_name.rsplit(".", 1)[-1] in PRIMARY_LEAVES]
            evaluated = primary or related

            issues = []
            if not all(f.supported for f in evaluated):
                issues.append(f"Critical field '{name}' is not supported by grounding evidence")
            else:
                confidence = min(f.confidence for f in evaluated)
                if confidence < self.critical_confidence_threshold:
                    issues.append(
                        f"Critical field '{name}' confidence {confidence:.2f} is below "
                        f"{self.critical_confidence_threshold:.2f}"
                    )
            if any(f.discrepancies for f in related):
                issues.append(f"Critical field '{name}' has conflicting evidence")

            if issues:
                check.failed_fields.append(name)
                check.critical_issues.extend(issues)

        check.passed = not check.critical_issues
        return check

    @staticmethod
    def _sentence_at(text: str, index: int) -> str:
        for sentence in split_sentences(text):
            start = text.find(sentence)
            if start <= index < start + len(sentence):
                return sentence
        return text[max(0, index - QUOTE_CONTEXT_CHARS) : index + QUOTE_CONTEXT_CHARS].strip()

    @staticmethod
    def _context(text: str, index: int, matched: str) -> str:
        if index < 0:
            return ""
        return text[max(0, index - QUOTE_CONTEXT_CHARS) : index + len(matched) + QUOTE_CONTEXT_CHARS]
