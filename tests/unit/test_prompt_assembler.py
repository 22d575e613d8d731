"""Unit tests for prompt assembly."""

import pytest

from evidentia.core.prompt_assembler import RESPONSE_RULES, TRUNCATION_MARKER, PromptAssembler
from evidentia.models.grounding import (
    GroundingResult,
    GroundingSource,
    QueryExpansion,
    RetrievalMethod,
    Snippet,
    SourceOrigin,
)
from evidentia.models.task import TaskType
from tests.fakes import TODAY

TASK_INPUT = {"company_name": "Acme Corporation"}


def make_grounding(content="Acme reported $10M revenue for fiscal year 2025.", url="https://example.com/acme"):
    source = GroundingSource(
        id="acme-profile",
        title="Acme Corporation company profile",
        content=content,
        relevance_score=0.81,
        reliability=0.9,
        source_type="primary",
        category="company",
        origin=SourceOrigin.KNOWLEDGE_BASE,
        url=url,
        tags=["company", "revenue"],
        last_updated=TODAY,
    )
    return GroundingResult(
        query="Acme Corporation company information",
        sources=[source],
        total_relevance_score=0.81,
        has_high_quality_sources=True,
        query_expansion=QueryExpansion(original="acme", expanded=["acme"]),
        retrieval_method=RetrievalMethod.KNOWLEDGE_BASE,
        snippets=[Snippet(text="Acme reported $10M revenue for fiscal year 2025", source_id="acme-profile", relevance_score=1.0)],
        total_snippets=1,
    )


@pytest.mark.unit
class TestPromptAssembler:
    def test_base_prompt_lists_input_and_fields(self):
        prompt = PromptAssembler().base_prompt(TaskType.COMPANY_RESEARCH, TASK_INPUT)

        assert '"company_name": "Acme Corporation"' in prompt
        assert "Required: confidence_score, company_name, description" in prompt
        assert prompt.endswith(RESPONSE_RULES)

    def test_no_grounding_gives_base_prompt(self):
        assembler = PromptAssembler()

        assembled = assembler.assemble(TaskType.COMPOSE_EMAIL, {"recipient": "jane@example.com"})

        assert assembled.prompt == assembler.base_prompt(TaskType.COMPOSE_EMAIL, {"recipient": "jane@example.com"})
        assert assembled.grounding_block == ""
        assert assembled.truncated is False
        assert assembled.metrics["source_count"] == 0

    def test_grounding_block_precedes_task(self):
        assembled = PromptAssembler().assemble(TaskType.COMPANY_RESEARCH, TASK_INPUT, make_grounding())

        prompt = assembled.prompt
        assert prompt.startswith("=== GROUNDING DATA ===")
        assert "--- Source [acme-profile] ---" in prompt
        assert "Reliability: 90%" in prompt
        assert "Source URL: https://example.com/acme" in prompt
        assert '"Acme reported $10M revenue for fiscal year 2025"' in prompt
        assert prompt.index("=== END GROUNDING DATA ===") < prompt.index("TASK INPUT:")
        assert prompt == assembled.grounding_block + assembled.base_prompt
        assert assembled.metrics["source_count"] == 1

    def test_citations_can_be_omitted(self):
        assembled = PromptAssembler(include_source_citations=False).assemble(
            TaskType.COMPANY_RESEARCH, TASK_INPUT, make_grounding()
        )

        assert "Source URL:" not in assembled.prompt

    def test_assembly_is_deterministic(self):
        assembler = PromptAssembler()
        grounding = make_grounding()

        first = assembler.assemble(TaskType.COMPANY_RESEARCH, TASK_INPUT, grounding)
        second = assembler.assemble(TaskType.COMPANY_RESEARCH, TASK_INPUT, grounding)

        assert first.prompt == second.prompt


@pytest.mark.unit
class TestTruncation:
    """Long prompts are cut to the context limit, keeping the response rules."""

    def test_grounding_block_is_trimmed_first(self):
        base = PromptAssembler().base_prompt(TaskType.COMPANY_RESEARCH, TASK_INPUT)
        limit = len(base) + 200
        assembler = PromptAssembler(max_context_length=limit)

        assembled = assembler.assemble(TaskType.COMPANY_RESEARCH, TASK_INPUT, make_grounding("x" * 5000))

        assert assembled.truncated is True
        assert len(assembled.prompt) <= limit
        assert assembled.prompt.startswith("=== GROUNDING DATA ===")
        assert assembled.prompt.endswith(base)
        assert TRUNCATION_MARKER in assembled.prompt

    def test_body_is_trimmed_when_rules_barely_fit(self):
        limit = len(RESPONSE_RULES) + 100
        assembler = PromptAssembler(max_context_length=limit)

        assembled = assembler.assemble(TaskType.COMPANY_RESEARCH, TASK_INPUT, make_grounding())

        assert assembled.truncated is True
        assert len(assembled.prompt) <= limit
        assert assembled.prompt.endswith(RESPONSE_RULES)
        assert "GROUNDING DATA" not in assembled.prompt
