"""Request and response bodies for task execution."""

from typing import Any

from pydantic import BaseModel, Field

from evidentia.models.task import PipelineState, TaskRequest, TaskResponse, TaskType


class TaskSubmission(BaseModel):
    """Body of ``POST /v1/tasks``."""

    task_type: TaskType
    input: dict[str, Any] = Field(min_length=1)
    request_id: str | None = None
    user_id: str | None = None
    session_id: str | None = None
    query: str | None = Field(default=None, min_length=1)
    consensus_candidates: int | None = Field(default=None, ge=1, le=10)

    def to_request(self, request_id: str | None = None) -> TaskRequest:
        return TaskRequest(
            task_type=self.task_type,
            input=self.input,
            request_id=self.request_id or request_id,
            user_id=self.user_id,
            session_id=self.session_id,
            query=self.query,
            consensus_candidates=self.consensus_candidates,
        )


class TaskResult(BaseModel):
    """Final pipeline result as returned over HTTP."""

    request_id: str
    task_type: TaskType
    state: PipelineState
    success: bool
    data: dict[str, Any] | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    requires_human_review: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    critical_issues: list[str] = Field(default_factory=list)
    retry_count: int = 0
    error: str | None = None
    audit_entry_id: str | None = None
    state_history: list[PipelineState] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_response(cls, response: TaskResponse) -> "TaskResult":
        data = response.to_dict()
        data.pop("raw_output", None)
        return cls.model_validate(data)
