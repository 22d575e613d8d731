"""End-to-end pipeline tests with scripted model and search doubles."""

import asyncio
from dataclasses import replace

import pytest

from evidentia.core.audit_logger import AuditLogger
from evidentia.core.grounding import GroundingRetriever
from evidentia.core.pipeline import GenerationPipeline
from evidentia.lib.config import AppConfig, RetrievalConfig
from evidentia.lib.errors import ExternalServiceError
from evidentia.lib.retry import RetryPolicy
from evidentia.models.task import PipelineState, TaskRequest, TaskType
from evidentia.storage.audit_store import InMemoryAuditStorage
from evidentia.storage.knowledge_store import KnowledgeStore
from tests.fakes import (
    TODAY,
    FakeGateway,
    FakeSearchTool,
    RecordingSleep,
    company_output,
    email_output,
    make_entry,
)

FULL_PROFILE = (
    "Acme Corporation (https://example.com/acme) is a manufacturer of industrial automation equipment. "
    "The company was founded in 1998 and employs 250 people. "
    "Acme reported $10M revenue for fiscal year 2025, stated in USD."
)
PROFILE_WITHOUT_REVENUE = (
    "Acme Corporation (https://example.com/acme) is a manufacturer of industrial automation equipment. "
    "The company was founded in 1998 and employs 250 people."
)

COMPANY_REQUEST = TaskRequest(
    task_type=TaskType.COMPANY_RESEARCH,
    input={"company_name": "Acme Corporation"},
    request_id="req-acme",
    user_id="analyst-1",
)
EMAIL_INPUT = {"recipient": "jane@example.com", "purpose": "schedule the quarterly review"}


def profile_store(content):
    return KnowledgeStore(
        [
            make_entry(
                "acme-profile",
                title="Acme Corporation company profile",
                content=content,
                tags=("company", "revenue", "employees"),
            )
        ]
    )


class Harness:
    """Pipeline wired to in-memory collaborators."""

    def __init__(self, outputs, store=None, search_tool=None, storage=None, gateway=None, **pipeline):
        self.sleep = RecordingSleep()
        self.config = AppConfig(
            retrieval=RetrievalConfig(enable_web_search=search_tool is not None),
        )
        if pipeline:
            self.config.pipeline = replace(self.config.pipeline, **pipeline)
        self.gateway = gateway or FakeGateway(outputs)
        self.storage = storage or InMemoryAuditStorage()
        self.search_tool = search_tool
        retriever = GroundingRetriever(
            store or KnowledgeStore(),
            search_tool=search_tool,
            config=self.config.retrieval,
            retry_policy=RetryPolicy(sleep=self.sleep),
            today=lambda: TODAY,
        )
        self.pipeline = GenerationPipeline(
            retriever, self.gateway, AuditLogger(self.storage), config=self.config, sleep=self.sleep
        )

    async def audit_entry(self, response):
        return await self.storage.get_entry(response.audit_entry_id)


class BlockingGateway(FakeGateway):
    """Gateway whose calls never return until cancelled."""

    def __init__(self):
        super().__init__([""])
        self.started = asyncio.Event()

    async def generate(self, prompt, config):
        self.prompts.append(prompt)
        self.started.set()
        await asyncio.Event().wait()


class FailingStorage(InMemoryAuditStorage):
    async def save(self, entry):
        raise RuntimeError("audit volume unavailable")


@pytest.mark.integration
class TestCompletedRequests:
    """Requests that finish with usable output."""

    @pytest.mark.asyncio
    async def test_grounded_company_research(self):
        harness = Harness([company_output()], store=profile_store(FULL_PROFILE))

        response = await harness.pipeline.run(COMPANY_REQUEST)

        assert response.state == PipelineState.COMPLETED
        assert response.success is True
        assert response.requires_human_review is False
        assert response.data["company_name"] == "Acme Corporation"
        assert response.confidence >= 0.8
        assert response.critical_issues == []
        assert response.error is None
        assert response.state_history == [
            PipelineState.PENDING,
            PipelineState.GROUNDING,
            PipelineState.GENERATING,
            PipelineState.VALIDATING,
            PipelineState.VERIFYING,
            PipelineState.COMPLETED,
        ]
        assert response.metadata["grounding"]["source_count"] == 1
        assert response.metadata["verification"]["supported_fields"] == 8

        assert harness.gateway.configs[0].temperature == 0.0
        assert harness.gateway.configs[0].top_k == 1
        assert "--- Source [acme-profile] ---" in harness.gateway.prompts[0]

        entry = await harness.audit_entry(response)
        assert entry.request_id == "req-acme"
        assert entry.user_id == "analyst-1"
        assert entry.state == "completed"
        assert entry.grounding.enabled is True
        assert entry.verification.passed is True
        assert entry.generation_config["temperature"] == 0.0

    @pytest.mark.asyncio
    async def test_ungrounded_email_uses_base_prompt(self):
        harness = Harness([email_output()])
        request = TaskRequest(task_type=TaskType.COMPOSE_EMAIL, input=EMAIL_INPUT)

        response = await harness.pipeline.run(request)

        assert response.state == PipelineState.COMPLETED
        assert response.confidence == pytest.approx(0.93)
        assert "No grounding sources found" in response.warnings
        assert PipelineState.VERIFYING not in response.state_history
        assert harness.gateway.prompts[0] == harness.pipeline.assembler.base_prompt(
            TaskType.COMPOSE_EMAIL, EMAIL_INPUT
        )
        assert response.request_id

    @pytest.mark.asyncio
    async def test_invalid_output_is_regenerated(self):
        harness = Harness(["Sure! Here is your email.", email_output()])
        request = TaskRequest(task_type=TaskType.COMPOSE_EMAIL, input=EMAIL_INPUT)

        response = await harness.pipeline.run(request)

        assert response.state == PipelineState.COMPLETED
        assert response.retry_count == 1
        assert harness.gateway.calls == 2
        assert harness.sleep.delays == [1.0]
        assert response.state_history[3:7] == [
            PipelineState.VALIDATING,
            PipelineState.RETRY,
            PipelineState.GENERATING,
            PipelineState.VALIDATING,
        ]

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_affect_response(self):
        harness = Harness([email_output()], storage=FailingStorage())
        request = TaskRequest(task_type=TaskType.COMPOSE_EMAIL, input=EMAIL_INPUT)

        response = await harness.pipeline.run(request)

        assert response.state == PipelineState.COMPLETED
        assert response.audit_entry_id is None
        assert harness.pipeline.audit_logger.failed_writes == 1

    @pytest.mark.asyncio
    async def test_concurrent_requests_are_independent(self):
        harness = Harness([email_output()])
        requests = [
            TaskRequest(task_type=TaskType.COMPOSE_EMAIL, input=EMAIL_INPUT, request_id=f"req-{i}")
            for i in range(3)
        ]

        responses = await asyncio.gather(*(harness.pipeline.run(r) for r in requests))

        assert [r.request_id for r in responses] == ["req-0", "req-1", "req-2"]
        assert all(r.state == PipelineState.COMPLETED for r in responses)
        assert len(harness.storage) == 3


@pytest.mark.integration
class TestReviewAndFailure:
    """Requests that need review, fail or are cancelled."""

    @pytest.mark.asyncio
    async def test_unsupported_revenue_needs_review(self):
        harness = Harness([company_output()], store=profile_store(PROFILE_WITHOUT_REVENUE))

        response = await harness.pipeline.run(COMPANY_REQUEST)

        assert response.state == PipelineState.NEEDS_REVIEW
        assert response.success is True
        assert response.requires_human_review is True
        assert response.data is not None
        assert response.critical_issues == [
            "Critical field 'revenue' is not supported by grounding evidence"
        ]

        entry = await harness.audit_entry(response)
        assert entry.state == "needs_review"
        assert entry.error_type == "VerificationFailure"
        assert entry.compliance.critical_fields_reviewed is False

    @pytest.mark.asyncio
    async def test_unparsable_output_fails_after_retries(self):
        harness = Harness(["I cannot help with that."])
        request = TaskRequest(task_type=TaskType.COMPOSE_EMAIL, input=EMAIL_INPUT)

        response = await harness.pipeline.run(request)

        assert response.state == PipelineState.FAILED
        assert response.success is False
        assert response.data is None
        assert response.confidence == 0.0
        assert response.retry_count == 2
        assert response.errors[0].startswith("Failed to parse output")
        assert harness.gateway.calls == 2

        entry = await harness.audit_entry(response)
        assert entry.error_type == "ParseError"
        assert entry.raw_output == "I cannot help with that."

    @pytest.mark.asyncio
    async def test_model_outage_fails_with_service_message(self):
        outage = ExternalServiceError("ollama", "Ollama unavailable: connection refused")
        harness = Harness([outage])
        request = TaskRequest(task_type=TaskType.COMPOSE_EMAIL, input=EMAIL_INPUT)

        response = await harness.pipeline.run(request)

        assert response.state == PipelineState.FAILED
        assert response.error == "Ollama unavailable: connection refused"
        assert response.errors == ["Ollama unavailable: connection refused"]
        assert harness.gateway.calls == 2
        assert harness.sleep.delays == [1.0]
        assert (await harness.audit_entry(response)).error_type == "ExternalServiceError"

    @pytest.mark.asyncio
    async def test_outage_during_retry_keeps_last_attempt_in_audit(self):
        harness = Harness(["not json at all", ExternalServiceError("ollama", "Ollama unavailable")])
        request = TaskRequest(task_type=TaskType.COMPOSE_EMAIL, input=EMAIL_INPUT)

        response = await harness.pipeline.run(request)

        assert response.state == PipelineState.FAILED
        assert response.error == "Ollama unavailable"
        assert response.errors == ["Ollama unavailable"]
        assert response.raw_output == "not json at all"
        assert response.retry_count == 1
        assert harness.gateway.calls == 3

        entry = await harness.audit_entry(response)
        assert entry.error_type == "ExternalServiceError"
        assert entry.raw_output == "not json at all"
        assert entry.validation.passed is False
        assert entry.validation.retry_count == 1
        assert entry.validation.errors[0].startswith("Failed to parse output")

    @pytest.mark.asyncio
    async def test_search_outage_fails_before_generation(self):
        harness = Harness(
            [company_output()],
            store=profile_store(FULL_PROFILE),
            search_tool=FakeSearchTool(error="search quota exceeded"),
        )

        response = await harness.pipeline.run(COMPANY_REQUEST)

        assert response.state == PipelineState.FAILED
        assert response.error == "search quota exceeded"
        assert harness.gateway.calls == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_is_reported(self):
        harness = Harness([RuntimeError("tokenizer exploded")])
        request = TaskRequest(task_type=TaskType.COMPOSE_EMAIL, input=EMAIL_INPUT)

        response = await harness.pipeline.run(request)

        assert response.state == PipelineState.FAILED
        assert response.error == "Internal error: tokenizer exploded"
        assert harness.gateway.calls == 1

    @pytest.mark.asyncio
    async def test_cancellation_is_audited_and_propagated(self):
        gateway = BlockingGateway()
        harness = Harness([], gateway=gateway)
        request = TaskRequest(task_type=TaskType.COMPOSE_EMAIL, input=EMAIL_INPUT, request_id="req-cancel")

        task = asyncio.create_task(harness.pipeline.run(request))
        await gateway.started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        entries = await harness.storage.query()
        assert len(entries) == 1
        assert entries[0].request_id == "req-cancel"
        assert entries[0].state == "aborted"
        assert entries[0].error_type == "Cancelled"


@pytest.mark.integration
class TestConsensus:
    """Consensus mode over independent candidates."""

    @pytest.mark.asyncio
    async def test_consensus_selects_most_consistent_candidate(self):
        harness = Harness(
            [email_output(), email_output(), email_output(subject="A completely different subject")]
        )
        request = TaskRequest(
            task_type=TaskType.COMPOSE_EMAIL, input=EMAIL_INPUT, consensus_candidates=3
        )

        response = await harness.pipeline.run(request)

        assert response.state == PipelineState.COMPLETED
        assert response.data["subject"] == "Quarterly review meeting"
        assert response.confidence == pytest.approx(0.93)
        assert harness.gateway.calls == 3
        assert response.state_history == [
            PipelineState.PENDING,
            PipelineState.GROUNDING,
            PipelineState.GENERATING,
            PipelineState.VALIDATING,
            PipelineState.CONSENSUS,
            PipelineState.COMPLETED,
        ]
        assert response.metadata["consensus"]["selected_candidate_id"] == 0

        entry = await harness.audit_entry(response)
        assert entry.consensus.candidate_count == 3
        assert entry.consensus.consistency_scores == (1.0, 1.0, 0.75)

    @pytest.mark.asyncio
    async def test_consensus_enabled_by_configuration(self):
        harness = Harness([email_output()], enable_consensus=True, consensus_candidates=2)
        request = TaskRequest(task_type=TaskType.COMPOSE_EMAIL, input=EMAIL_INPUT)

        response = await harness.pipeline.run(request)

        assert harness.gateway.calls == 2
        assert response.metadata["consensus"]["failed_candidates"] == 0

    @pytest.mark.asyncio
    async def test_all_candidates_invalid_fails(self):
        harness = Harness(["not json"])
        request = TaskRequest(
            task_type=TaskType.COMPOSE_EMAIL, input=EMAIL_INPUT, consensus_candidates=3
        )

        response = await harness.pipeline.run(request)

        assert response.state == PipelineState.FAILED
        assert response.error == "All 3 consensus candidates failed validation"
