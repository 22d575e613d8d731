"""Builds the model prompt from a task template and grounding evidence."""

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any

from evidentia.models.grounding import GroundingResult
from evidentia.models.task import TaskType
from evidentia.models.task_schemas import schema_for

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "...\n"

BASE_PROMPTS: dict[TaskType, str] = {
    TaskType.COMPANY_RESEARCH: (
        "You are a business research analyst. Produce a factual company profile for the "
        "company in the task input. Report only facts you can attribute to evidence: "
        "identity, industry, location, founding year, headcount, revenue, leadership, "
        "competitors and recent news."
    ),
    TaskType.GENERATE_SOP: (
        "You are an operations specialist. Write a standard operating procedure for the "
        "process described in the task input, with purpose, scope, responsibilities by role "
        "and numbered procedure steps."
    ),
    TaskType.COMPOSE_EMAIL: (
        "You are a professional business writer. Compose an email for the recipient and "
        "purpose in the task input. Keep the tone appropriate and state a clear call to action."
    ),
    TaskType.EXCEL_HELPER: (
        "You are a spreadsheet expert. Answer the spreadsheet question in the task input "
        "with working formulas, step-by-step instructions and practical alternatives."
    ),
    TaskType.FEASIBILITY_CHECK: (
        "You are a project assessment consultant. Evaluate the feasibility of the project in "
        "the task input, scoring technical, financial and resource feasibility from 0 to 100 "
        "and listing risks and recommendations."
    ),
}

_missing = set(TaskType) - set(BASE_PROMPTS)
if _missing:
    raise RuntimeError(f"Task types without a base prompt: {sorted(t.value for t in _missing)}")

RESPONSE_RULES = (
    "\n\nRESPONSE REQUIREMENTS:\n"
    "1. Use ONLY the evidence provided in this prompt; do not rely on prior knowledge\n"
    "2. If a value is not supported by the evidence, set it to \"UNKNOWN\" and list the "
    "field in unverified_fields\n"
    "3. Attach a confidence_score between 0 and 1 to the output and to each nested field "
    "that accepts one\n"
    "4. Cite supporting sources by their id in the sources list\n"
    "5. Set needs_review to true when any important field is uncertain\n"
    "6. Respond with a single JSON object and nothing else\n"
)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


@dataclass
class AssembledPrompt:
    """Prompt text plus the pieces it was built from."""

    base_prompt: str
    grounding_block: str
    prompt: str
    truncated: bool = False
    metrics: dict[str, Any] = field(default_factory=dict)

    @property
    def has_grounding(self) -> bool:
        return bool(self.grounding_block)


class PromptAssembler:
    """Deterministic prompt builder.

    With no grounding sources the output is exactly the base prompt: task
    instruction, task input, output fields and the response rules.
    """

    def __init__(self, max_context_length: int = 4000, include_source_citations: bool = True):
        self.max_context_length = max_context_length
        self.include_source_citations = include_source_citations

    def base_prompt(self, task_type: TaskType, task_input: dict[str, Any]) -> str:
        return self._body(task_type, task_input) + RESPONSE_RULES

    def assemble(
        self,
        task_type: TaskType,
        task_input: dict[str, Any],
        grounding: GroundingResult | None = None,
    ) -> AssembledPrompt:
        body = self._body(task_type, task_input)
        block = self.format_grounding_block(grounding) if grounding and grounding.sources else ""

        prompt, truncated = self._fit(block, body, RESPONSE_RULES)
        if truncated:
            logger.warning(
                f"Prompt for {task_type.value} truncated to {self.max_context_length} characters"
            )

        sources = grounding.sources if grounding else []
        return AssembledPrompt(
            base_prompt=body + RESPONSE_RULES,
            grounding_block=block,
            prompt=prompt,
            truncated=truncated,
            metrics={
                "prompt_length": len(prompt),
                "grounding_length": sum(len(s.content) for s in sources),
                "source_count": len(sources),
                "average_relevance": grounding.total_relevance_score if grounding else 0.0,
                "estimated_tokens": estimate_tokens(prompt),
            },
        )

    def _body(self, task_type: TaskType, task_input: dict[str, Any]) -> str:
        schema = schema_for(task_type)
        required = [name for name, f in schema.model_fields.items() if f.is_required()]
        optional = [name for name, f in schema.model_fields.items() if not f.is_required()]

        return (
            f"{BASE_PROMPTS[task_type]}\n\n"
            f"TASK INPUT:\n{json.dumps(task_input, indent=2, sort_keys=True, default=str)}\n\n"
            f"OUTPUT FIELDS:\n"
            f"Required: {', '.join(required)}\n"
            f"Optional: {', '.join(optional)}"
        )

    def format_grounding_block(self, grounding: GroundingResult) -> str:
        lines = [
            "=== GROUNDING DATA ===",
            f"Retrieval Method: {grounding.retrieval_method.value}",
            f"Sources Found: {len(grounding.sources)}",
            f"Average Relevance: {grounding.total_relevance_score * 100:.1f}%",
            f"High Quality Sources: {'Yes' if grounding.has_high_quality_sources else 'No'}",
            "",
            "AUTHORITATIVE SOURCES:",
        ]

        for source in grounding.sources:
            lines.append(f"\n--- Source [{source.id}] ---")
            lines.append(f"Title: {source.title}")
            lines.append(f"Category: {source.category}")
            lines.append(f"Reliability: {source.reliability * 100:.0f}%")
            lines.append(f"Relevance: {source.relevance_score * 100:.1f}%")
            lines.append(f"Source Type: {source.source_type}")
            if source.last_updated:
                lines.append(f"Last Verified: {source.last_updated.isoformat()}")
            lines.append(f"Content: {source.content}")
            if source.url and self.include_source_citations:
                lines.append(f"Source URL: {source.url}")
            if source.tags:
                lines.append(f"Tags: {', '.join(source.tags)}")

        if grounding.snippets:
            lines.append("\n=== RELEVANT SNIPPETS ===")
            for index, snippet in enumerate(grounding.snippets, 1):
                lines.append(
                    f"\nSnippet {index} (Relevance: {snippet.relevance_score * 100:.1f}%):"
                )
                lines.append(f'"{snippet.text}"')
                lines.append(f"Source: [{snippet.source_id}]")

        lines.extend(
            [
                "\n=== END GROUNDING DATA ===",
                "",
                "GROUNDING INSTRUCTIONS:",
                "1. Use ONLY information from the sources above",
                "2. Prefer primary sources and high-reliability content",
                "3. Cross-check claims across sources when more than one is available",
                '4. If information is not in the grounding data, answer "UNKNOWN"',
                "5. Cite the source id for every factual claim",
            ]
        )
        return "\n".join(lines) + "\n\n"

    def _fit(self, block: str, body: str, suffix: str) -> tuple[str, bool]:
        """Trim to the maximum length, cutting the grounding block before the body."""
        prompt = block + body + suffix
        if len(prompt) <= self.max_context_length:
            return prompt, False

        available = self.max_context_length - len(suffix) - len(TRUNCATION_MARKER)
        if available <= 0:
            return suffix[-self.max_context_length :], True

        block_budget = available - len(body)
        if block_budget > 0:
            return block[:block_budget] + TRUNCATION_MARKER + body + suffix, True

        return body[:available] + TRUNCATION_MARKER + suffix, True
