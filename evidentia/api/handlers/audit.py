"""Audit query, statistics, export and lookup endpoints."""

import logging
from datetime import UTC, datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response

from evidentia.api.models.audit import AuditEntryPage
from evidentia.api.models.errors import invalid_request_error, not_found_error, service_unavailable_error
from evidentia.core.audit_logger import AuditLogger
from evidentia.models.audit import AuditQueryFilters
from evidentia.models.task import PipelineState, TaskType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/audit", tags=["audit"])

EXPORT_MEDIA_TYPES = {"csv": "text/csv", "json": "application/json"}


def get_audit_logger(request: Request) -> AuditLogger:
    audit_logger = getattr(request.app.state, "audit_logger", None)
    if audit_logger is None:
        raise HTTPException(
            status_code=503,
            detail=service_unavailable_error("Audit logger is not initialized").model_dump(),
        )
    return audit_logger


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _check_range(start: datetime | None, end: datetime | None) -> None:
    if start is not None and end is not None and start > end:
        raise HTTPException(
            status_code=400,
            detail=invalid_request_error("start must not be after end", param="start").model_dump(),
        )


def audit_filters(
    user_id: str | None = None,
    session_id: str | None = None,
    task_type: TaskType | None = None,
    state: PipelineState | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    min_confidence: float | None = Query(default=None, ge=0.0, le=1.0),
    requires_review: bool | None = None,
    has_function_calls: bool | None = None,
    has_verification: bool | None = None,
    has_grounding: bool | None = None,
    sort_by: Literal["timestamp", "confidence", "response_time"] = "timestamp",
    sort_order: Literal["asc", "desc"] = "desc",
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
) -> AuditQueryFilters:
    """Build query filters from query-string parameters. Naive datetimes are read as UTC."""
    start, end = _as_utc(start), _as_utc(end)
    _check_range(start, end)
    return AuditQueryFilters(
        user_id=user_id,
        session_id=session_id,
        task_type=task_type.value if task_type else None,
        state=state.value if state else None,
        start=start,
        end=end,
        min_confidence=min_confidence,
        requires_review=requires_review,
        has_function_calls=has_function_calls,
        has_verification=has_verification,
        has_grounding=has_grounding,
        sort_by=sort_by,
        sort_order=sort_order,
        limit=limit,
        offset=offset,
    )


@router.get("/entries", response_model=AuditEntryPage)
async def list_entries(
    filters: AuditQueryFilters = Depends(audit_filters),
    audit_logger: AuditLogger = Depends(get_audit_logger),
) -> AuditEntryPage:
    entries = await audit_logger.query(filters)
    return AuditEntryPage(
        entries=[e.to_dict() for e in entries],
        count=len(entries),
        limit=filters.limit,
        offset=filters.offset,
    )


@router.get("/entries/{entry_id}")
async def get_entry(
    entry_id: str, audit_logger: AuditLogger = Depends(get_audit_logger)
) -> dict[str, Any]:
    """Full interaction for one audit entry."""
    entry = await audit_logger.get_full_interaction(entry_id)
    if entry is None:
        raise HTTPException(
            status_code=404,
            detail=not_found_error(f"Audit entry '{entry_id}' not found", param="entry_id").model_dump(),
        )
    return entry.to_dict()


@router.get("/stats")
async def get_stats(
    start: datetime | None = None,
    end: datetime | None = None,
    audit_logger: AuditLogger = Depends(get_audit_logger),
) -> dict[str, Any]:
    start, end = _as_utc(start), _as_utc(end)
    _check_range(start, end)
    return await audit_logger.get_stats(start, end)


@router.get("/export")
async def export_entries(
    format: Literal["csv", "json"] = "json",
    filters: AuditQueryFilters = Depends(audit_filters),
    audit_logger: AuditLogger = Depends(get_audit_logger),
) -> Response:
    content = await audit_logger.export(format, filters)
    logger.info(f"Exported audit entries as {format}")
    return Response(
        content=content,
        media_type=EXPORT_MEDIA_TYPES[format],
        headers={"Content-Disposition": f'attachment; filename="audit.{format}"'},
    )
