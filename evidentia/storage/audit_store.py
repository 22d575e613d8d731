"""Append-only audit storage with filtered queries, statistics and export."""

import asyncio
import csv
import io
import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from datetime import datetime
from typing import Any, Dict, List, Optional

from evidentia.lib.errors import AuditWriteFailure
from evidentia.models.audit import AuditLogEntry, AuditQueryFilters

logger = logging.getLogger(__name__)

CSV_HEADERS = [
    "id",
    "timestamp",
    "task_type",
    "state",
    "confidence",
    "response_time_ms",
    "requires_review",
    "has_function_call",
    "has_verification",
    "has_grounding",
    "overall_quality",
    "errors",
]

SORT_KEYS = {
    "timestamp": lambda e: e.timestamp,
    "confidence": lambda e: e.confidence,
    "response_time": lambda e: e.response_time_ms,
}


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def compute_stats(entries: List[AuditLogEntry]) -> Dict[str, Any]:
    """Aggregate statistics over audit entries; empty input yields zeros."""
    total = len(entries)

    errors_by_type: Dict[str, int] = defaultdict(int)
    usage_by_task_type: Dict[str, int] = defaultdict(int)
    states: Dict[str, int] = defaultdict(int)
    daily: Dict[str, List[AuditLogEntry]] = defaultdict(list)
    for entry in entries:
        usage_by_task_type[entry.task_type] += 1
        states[entry.state] += 1
        daily[entry.timestamp.date().isoformat()].append(entry)
        if entry.error_type:
            errors_by_type[entry.error_type] += 1

    quality_trends = [
        {
            "date": day,
            "count": len(items),
            "average_quality": _mean([e.quality.overall for e in items]),
            "average_confidence": _mean([e.confidence for e in items]),
        }
        for day, items in sorted(daily.items())
    ]

    calls = [e.function_call for e in entries if e.function_call is not None]
    calls_by_name: Dict[str, int] = defaultdict(int)
    for call in calls:
        calls_by_name[call.name] += 1
    successful_calls = sum(1 for c in calls if c.success)

    verified = [e.verification for e in entries if e.verification is not None]
    passed_verifications = sum(1 for v in verified if v.passed)
    critical_failures = sum(1 for v in verified if v.critical_issues)

    grounded = [e.grounding for e in entries if e.grounding.enabled]

    return {
        "total_requests": total,
        "average_confidence": _mean([e.confidence for e in entries]),
        "success_rate": sum(1 for e in entries if e.success) / total if total else 0.0,
        "average_response_time_ms": _mean([e.response_time_ms for e in entries]),
        "requires_review_count": sum(1 for e in entries if e.requires_review),
        "errors_by_type": dict(errors_by_type),
        "usage_by_task_type": dict(usage_by_task_type),
        "states": dict(states),
        "quality_trends": quality_trends,
        "function_call_stats": {
            "total_calls": len(calls),
            "successful_calls": successful_calls,
            "success_rate": successful_calls / len(calls) if calls else 0.0,
            "calls_by_name": dict(calls_by_name),
        },
        "verification_stats": {
            "total_verifications": len(verified),
            "passed_verifications": passed_verifications,
            "pass_rate": passed_verifications / len(verified) if verified else 0.0,
            "average_confidence": _mean([v.confidence for v in verified]),
            "critical_field_failures": critical_failures,
        },
        "grounding_stats": {
            "total_grounded_requests": len(grounded),
            "average_sources": _mean([g.source_count for g in grounded]),
            "average_relevance": _mean([g.average_relevance for g in grounded]),
            "high_quality_rate": (
                sum(1 for g in grounded if g.has_high_quality_sources) / len(grounded)
                if grounded
                else 0.0
            ),
        },
    }


class AuditStorage(ABC):
    """Storage contract for audit entries. ``save`` is the only write."""

    @abstractmethod
    async def save(self, entry: AuditLogEntry) -> None:
        """Append an entry.

        Raises:
            AuditWriteFailure: If the entry cannot be stored
        """

    @abstractmethod
    async def query(self, filters: Optional[AuditQueryFilters] = None) -> List[AuditLogEntry]:
        """Return entries matching the filters, sorted and paginated."""

    @abstractmethod
    async def get_entry(self, entry_id: str) -> Optional[AuditLogEntry]:
        """Return one full interaction by id."""

    async def get_stats(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> Dict[str, Any]:
        filters = AuditQueryFilters(start=start, end=end, limit=0)
        return compute_stats(await self.query(filters))

    async def export_json(self, filters: Optional[AuditQueryFilters] = None) -> str:
        entries = await self.query(filters)
        return json.dumps([e.to_dict() for e in entries], indent=2, default=str)

    async def export_csv(self, filters: Optional[AuditQueryFilters] = None) -> str:
        entries = await self.query(filters)

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(CSV_HEADERS)
        for e in entries:
            writer.writerow(
                [
                    e.id,
                    e.timestamp.isoformat(),
                    e.task_type,
                    e.state,
                    f"{e.confidence:.4f}",
                    f"{e.response_time_ms:.1f}",
                    e.requires_review,
                    e.function_call is not None,
                    e.verification is not None,
                    e.grounding.enabled,
                    f"{e.quality.overall:.4f}",
                    "; ".join(e.validation.errors + ((e.error,) if e.error else ())),
                ]
            )
        return buffer.getvalue()


class InMemoryAuditStorage(AuditStorage):
    """Bounded ring of entries; the oldest entry is dropped once full."""

    def __init__(self, max_entries: int = 10000):
        """Initialize storage.

        Args:
            max_entries: Ring capacity
        """
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")

        self.max_entries = max_entries
        self._entries: deque[AuditLogEntry] = deque(maxlen=max_entries)
        self._by_id: Dict[str, AuditLogEntry] = {}
        self.lock = asyncio.Lock()

    async def save(self, entry: AuditLogEntry) -> None:
        async with self.lock:
            if entry.id in self._by_id:
                raise AuditWriteFailure(f"Audit entry {entry.id} already exists")

            if len(self._entries) == self.max_entries:
                dropped = self._entries[0]
                self._by_id.pop(dropped.id, None)

            self._entries.append(entry)
            self._by_id[entry.id] = entry

    async def query(self, filters: Optional[AuditQueryFilters] = None) -> List[AuditLogEntry]:
        filters = filters or AuditQueryFilters()
        snapshot = list(self._entries)

        matched = [e for e in snapshot if filters.matches(e)]
        matched.sort(key=SORT_KEYS[filters.sort_by], reverse=filters.sort_order == "desc")

        offset = max(0, filters.offset)
        if filters.limit and filters.limit > 0:
            return matched[offset : offset + filters.limit]
        return matched[offset:]

    async def get_entry(self, entry_id: str) -> Optional[AuditLogEntry]:
        return self._by_id.get(entry_id)

    def __len__(self) -> int:
        return len(self._entries)
