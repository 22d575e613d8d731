"""Task types, task categories and request/response types for the pipeline."""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TaskType(str, Enum):
    """Concrete task kinds the pipeline can run."""

    COMPANY_RESEARCH = "company_research"
    GENERATE_SOP = "generate_sop"
    COMPOSE_EMAIL = "compose_email"
    EXCEL_HELPER = "excel_helper"
    FEASIBILITY_CHECK = "feasibility_check"


class TaskCategory(str, Enum):
    """Configuration category; each task type maps to exactly one."""

    EXTRACTION = "extraction"
    ANALYSIS = "analysis"
    COMPOSITION = "composition"
    DEFAULT = "default"


TASK_CATEGORIES: dict[TaskType, TaskCategory] = {
    TaskType.COMPANY_RESEARCH: TaskCategory.EXTRACTION,
    TaskType.GENERATE_SOP: TaskCategory.ANALYSIS,
    TaskType.COMPOSE_EMAIL: TaskCategory.COMPOSITION,
    TaskType.EXCEL_HELPER: TaskCategory.ANALYSIS,
    TaskType.FEASIBILITY_CHECK: TaskCategory.ANALYSIS,
}

_missing = set(TaskType) - set(TASK_CATEGORIES)
if _missing:
    raise RuntimeError(f"Task types without a category: {sorted(t.value for t in _missing)}")


class PipelineState(str, Enum):
    """Lifecycle of one request."""

    PENDING = "pending"
    GROUNDING = "grounding"
    GENERATING = "generating"
    VALIDATING = "validating"
    RETRY = "retry"
    VERIFYING = "verifying"
    CONSENSUS = "consensus"
    COMPLETED = "completed"
    FAILED = "failed"
    NEEDS_REVIEW = "needs_review"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        PipelineState.COMPLETED,
        PipelineState.FAILED,
        PipelineState.NEEDS_REVIEW,
        PipelineState.ABORTED,
    }
)


def build_query(task_input: dict[str, Any]) -> str:
    """Derive the grounding query from a task input."""
    if task_input.get("company_name"):
        return f"{task_input['company_name']} company information"
    if task_input.get("project_name"):
        return f"{task_input['project_name']} project details"
    if task_input.get("question"):
        return str(task_input["question"])
    if task_input.get("recipient"):
        return f"email to {task_input['recipient']}"
    return json.dumps(task_input, sort_keys=True)


@dataclass
class TaskRequest:
    """One task submitted to the pipeline."""

    task_type: TaskType
    input: dict[str, Any]
    request_id: str | None = None
    user_id: str | None = None
    session_id: str | None = None
    query: str | None = None  # overrides the query derived from input
    consensus_candidates: int | None = None  # >1 enables consensus mode


@dataclass
class TaskResponse:
    """Final result of one request, successful or not."""

    request_id: str
    task_type: TaskType
    state: PipelineState
    success: bool
    data: dict[str, Any] | None
    confidence: float
    requires_human_review: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    critical_issues: list[str] = field(default_factory=list)
    retry_count: int = 0
    error: str | None = None
    raw_output: str | None = None
    audit_entry_id: str | None = None
    state_history: list[PipelineState] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "task_type": self.task_type.value,
            "state": self.state.value,
            "success": self.success,
            "data": self.data,
            "confidence": self.confidence,
            "requires_human_review": self.requires_human_review,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "critical_issues": list(self.critical_issues),
            "retry_count": self.retry_count,
            "error": self.error,
            "raw_output": self.raw_output,
            "audit_entry_id": self.audit_entry_id,
            "state_history": [s.value for s in self.state_history],
            "metadata": self.metadata,
        }
