"""Health check models."""

from typing import Literal

from pydantic import BaseModel

ComponentState = Literal["healthy", "unhealthy", "unknown"]


class ComponentStatus(BaseModel):
    """Health of one pipeline collaborator."""

    name: str
    status: ComponentState
    message: str = ""


class HealthStatus(BaseModel):
    """Overall health; degraded when any collaborator is not healthy."""

    status: Literal["healthy", "degraded", "unhealthy"]
    components: dict[str, ComponentStatus]
    model: str | None = None
    knowledge_entries: int = 0
    audit_entries: int = 0
    version: str = "0.1.0"
