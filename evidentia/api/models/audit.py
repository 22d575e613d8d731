"""Audit query response bodies."""

from typing import Any

from pydantic import BaseModel


class AuditEntryPage(BaseModel):
    """One page of audit entries."""

    entries: list[dict[str, Any]]
    count: int
    limit: int
    offset: int
