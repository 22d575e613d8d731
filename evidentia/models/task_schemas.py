# Output schemas per task type
from datetime import datetime
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field

from evidentia.models.task import TaskType

CURRENT_YEAR = datetime.now().year


class BaseTaskOutput(BaseModel):
    confidence_score: float = Field(ge=0.0, le=1.0)
    needs_review: Optional[bool] = None
    unverified_fields: Optional[list[str]] = None
    sources: Optional[list[str]] = None
    timestamp: Optional[str] = None


# company_research

class EmployeeCount(BaseModel):
    value: Union[int, str]
    year: Optional[int] = None
    source: Optional[str] = None
    confidence_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class Revenue(BaseModel):
    amount: Union[float, str]
    currency: str = "USD"
    year: Optional[int] = None
    source: Optional[str] = None
    confidence_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class Executive(BaseModel):
    name: str = Field(min_length=1)
    title: str = Field(min_length=1)
    source: Optional[str] = None


class NewsItem(BaseModel):
    title: str = Field(min_length=1)
    date: Optional[str] = None
    summary: Optional[str] = None
    url: Optional[str] = None


class CompanyResearchOutput(BaseTaskOutput):
    company_name: str = Field(min_length=1)
    description: str = Field(min_length=10)
    industry: Optional[str] = None
    location: Optional[str] = None
    website: Optional[str] = Field(default=None, pattern=r"^https?://")
    founded_year: Optional[int] = Field(default=None, ge=1800, le=CURRENT_YEAR)
    employee_count: Optional[Union[EmployeeCount, int, str]] = None
    revenue: Optional[Union[Revenue, str]] = None
    key_executives: Optional[list[Executive]] = None
    competitors: Optional[list[str]] = None
    recent_news: Optional[list[NewsItem]] = None


# generate_sop

class Responsibility(BaseModel):
    role: str = Field(min_length=1)
    duties: list[str] = Field(min_length=1)


class ProcedureStep(BaseModel):
    step: int = Field(ge=1)
    action: str = Field(min_length=1)
    responsible: Optional[str] = None
    notes: Optional[str] = None


class SOPOutput(BaseTaskOutput):
    title: str = Field(min_length=5)
    version: str = "1.0"
    purpose: str = Field(min_length=10)
    scope: str = Field(min_length=10)
    responsibilities: list[Responsibility] = Field(min_length=1)
    procedures: list[ProcedureStep] = Field(min_length=1)
    references: Optional[list[str]] = None


# compose_email

class EmailOutput(BaseTaskOutput):
    recipient: str = Field(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    subject: str = Field(min_length=5)
    body: str = Field(min_length=20)
    tone: Literal["formal", "friendly", "persuasive", "neutral"] = "formal"
    key_points: Optional[list[str]] = None
    call_to_action: Optional[str] = None


# excel_helper

class ExcelHelperOutput(BaseTaskOutput):
    question: str = Field(min_length=5)
    answer: str = Field(min_length=10)
    formulas: Optional[list[str]] = None
    steps: Optional[list[str]] = None
    alternatives: Optional[list[str]] = None
    tips: Optional[list[str]] = None


# feasibility_check

class TechnicalFeasibility(BaseModel):
    score: float = Field(ge=0, le=100)
    factors: list[str] = []
    confidence_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class FinancialFeasibility(BaseModel):
    score: float = Field(ge=0, le=100)
    estimated_cost: Optional[Union[float, str]] = None
    roi: Optional[Union[float, str]] = None
    confidence_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class ResourceFeasibility(BaseModel):
    score: float = Field(ge=0, le=100)
    required_resources: list[str] = []
    availability: Optional[str] = None
    confidence_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class Risk(BaseModel):
    description: str = Field(min_length=1)
    severity: Literal["low", "medium", "high"] = "medium"
    mitigation: Optional[str] = None


class FeasibilityOutput(BaseTaskOutput):
    project_name: str = Field(min_length=3)
    overall_score: float = Field(ge=0, le=100)
    technical_feasibility: TechnicalFeasibility
    financial_feasibility: FinancialFeasibility
    resource_feasibility: ResourceFeasibility
    risks: list[Risk] = []
    recommendations: list[str] = []


TASK_SCHEMAS: dict[TaskType, type[BaseTaskOutput]] = {
    TaskType.COMPANY_RESEARCH: CompanyResearchOutput,
    TaskType.GENERATE_SOP: SOPOutput,
    TaskType.COMPOSE_EMAIL: EmailOutput,
    TaskType.EXCEL_HELPER: ExcelHelperOutput,
    TaskType.FEASIBILITY_CHECK: FeasibilityOutput,
}

_missing = set(TaskType) - set(TASK_SCHEMAS)
if _missing:
    raise RuntimeError(f"Task types without a schema: {sorted(t.value for t in _missing)}")


def schema_for(task_type: TaskType) -> type[BaseTaskOutput]:
    return TASK_SCHEMAS[task_type]
