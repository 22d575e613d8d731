"""Test doubles and builders shared across the suite.

No double touches the network: the gateway replays scripted outputs and
the search tool returns canned results.
"""

import json
from datetime import date, timedelta

from evidentia.core.audit_logger import PipelineTrace
from evidentia.core.llm_connector import GenerationConfig, LLMResponse, ModelGateway
from evidentia.lib.errors import ExternalServiceError
from evidentia.models.knowledge import KnowledgeEntry, KnowledgeSummaries
from evidentia.models.task import TASK_CATEGORIES, PipelineState, TaskRequest, TaskType
from evidentia.tools.base_tool import BaseTool, ToolResult, ToolStatus

TODAY = date(2026, 10, 18)


class RecordingSleep:
    """Async sleep replacement that returns immediately and records delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class FakeGateway(ModelGateway):
    """Model gateway that replays scripted outputs.

    Each script item is either a string (returned as content) or an
    exception instance (raised). The last item repeats once the script is
    exhausted.
    """

    def __init__(self, outputs, model_name="fake-model"):
        super().__init__(model_name)
        self.outputs = list(outputs)
        self.prompts = []
        self.configs = []
        self.closed = False

    async def generate(self, prompt: str, config: GenerationConfig) -> LLMResponse:
        self.prompts.append(prompt)
        self.configs.append(config)
        index = min(len(self.prompts) - 1, len(self.outputs) - 1)
        output = self.outputs[index]
        if isinstance(output, BaseException):
            raise output
        return LLMResponse(content=output, model_used=self.model_name, token_count=len(output) // 4)

    async def check_health(self) -> bool:
        return True

    async def close(self) -> None:
        self.closed = True

    @property
    def calls(self) -> int:
        return len(self.prompts)


class FakeSearchTool(BaseTool):
    """Search collaborator returning canned results, or failing on demand."""

    def __init__(self, results=None, error=None):
        super().__init__({"enabled": True})
        self.results = results or []
        self.error = error
        self.queries = []

    async def execute(self, parameters):
        self.queries.append(parameters["query"])
        if self.error is not None:
            raise ExternalServiceError("search", self.error)
        return ToolResult(
            tool_name=self.tool_name,
            status=ToolStatus.SUCCESS,
            data={"results": list(self.results)},
        )

    async def fallback(self, parameters, error):
        return ToolResult(
            tool_name=self.tool_name,
            status=ToolStatus.FAILED,
            error=str(error),
            fallback_used=True,
        )


def make_entry(
    entry_id,
    topic="acme",
    title="Acme financials",
    content="Acme reported $10M revenue in 2025.",
    reliability=0.9,
    source_type="primary",
    category="company",
    age_days=100,
    tags=("revenue",),
    summary=None,
):
    summary = summary or content
    return KnowledgeEntry(
        id=entry_id,
        topic=topic,
        title=title,
        content=content,
        summaries=KnowledgeSummaries(short=summary, medium=summary, long=summary),
        reliability=reliability,
        source_type=source_type,
        category=category,
        last_verified=TODAY - timedelta(days=age_days),
        tags=list(tags),
    )


def company_output(**overrides):
    data = {
        "company_name": "Acme Corporation",
        "description": "Manufacturer of industrial automation equipment.",
        "founded_year": 1998,
        "employee_count": 250,
        "revenue": {"amount": 10000000, "currency": "USD", "year": 2025},
        "website": "https://example.com/acme",
        "confidence_score": 0.95,
        "sources": ["acme-profile"],
    }
    data.update(overrides)
    return json.dumps(data)


def email_output(**overrides):
    data = {
        "recipient": "jane@example.com",
        "subject": "Quarterly review meeting",
        "body": "Hi Jane, could we meet next week to go over the quarterly review?",
        "tone": "formal",
        "confidence_score": 0.9,
    }
    data.update(overrides)
    return json.dumps(data)




def make_trace(
    task_type=TaskType.COMPOSE_EMAIL,
    task_input=None,
    state=PipelineState.COMPLETED,
    success=True,
    confidence=0.9,
    **fields,
):
    """A finished pipeline trace with sensible defaults for audit tests."""
    request = TaskRequest(
        task_type=task_type,
        input=task_input or {"recipient": "jane@example.com", "purpose": "schedule a review"},
        user_id=fields.pop("user_id", "user-1"),
        session_id=fields.pop("session_id", "session-1"),
    )
    return PipelineTrace(
        request=request,
        request_id=fields.pop("request_id", "req-1"),
        task_category=TASK_CATEGORIES[task_type].value,
        model="fake-model",
        state=state,
        success=success,
        confidence=confidence,
        **fields,
    )
