"""Grounding data produced per query by the retriever."""

from dataclasses import asdict, dataclass, field
from datetime import date
from enum import Enum
from typing import Any


class RetrievalMethod(str, Enum):
    """Which source paths contributed results."""

    KNOWLEDGE_BASE = "knowledge_base"
    WEB_SEARCH = "web_search"
    HYBRID = "hybrid"


class SourceOrigin(str, Enum):
    KNOWLEDGE_BASE = "knowledge_base"
    WEB_SEARCH = "web_search"


@dataclass
class ContextWindow:
    before: str = ""
    after: str = ""


@dataclass
class GroundingSource:
    """One ranked piece of evidence."""

    id: str
    title: str
    content: str
    relevance_score: float
    reliability: float
    source_type: str
    category: str
    origin: SourceOrigin
    url: str | None = None
    tags: list[str] = field(default_factory=list)
    last_updated: date | None = None
    full_text: str | None = None
    context_window: ContextWindow | None = None

    @property
    def searchable_text(self) -> str:
        """Content plus full text, for evidence lookups."""
        if self.full_text and self.full_text != self.content:
            return f"{self.content}\n{self.full_text}"
        return self.content

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["origin"] = self.origin.value
        data["last_updated"] = self.last_updated.isoformat() if self.last_updated else None
        data.pop("full_text")
        return data


@dataclass
class Snippet:
    text: str
    source_id: str
    relevance_score: float
    context: str = ""


@dataclass
class QueryExpansion:
    original: str
    expanded: list[str]
    synonyms_used: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class GroundingResult:
    """Everything the retriever found for one query."""

    query: str
    sources: list[GroundingSource]
    total_relevance_score: float
    has_high_quality_sources: bool
    query_expansion: QueryExpansion
    retrieval_method: RetrievalMethod
    snippets: list[Snippet] = field(default_factory=list)
    total_snippets: int = 0
    grounding_time_ms: float = 0.0

    @classmethod
    def empty(cls, query: str) -> "GroundingResult":
        return cls(
            query=query,
            sources=[],
            total_relevance_score=0.0,
            has_high_quality_sources=False,
            query_expansion=QueryExpansion(original=query, expanded=[query]),
            retrieval_method=RetrievalMethod.HYBRID,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "sources": [s.to_dict() for s in self.sources],
            "total_relevance_score": self.total_relevance_score,
            "has_high_quality_sources": self.has_high_quality_sources,
            "query_expansion": asdict(self.query_expansion),
            "retrieval_method": self.retrieval_method.value,
            "snippets": [asdict(s) for s in self.snippets],
            "total_snippets": self.total_snippets,
            "grounding_time_ms": self.grounding_time_ms,
        }
