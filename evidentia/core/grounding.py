"""Grounding retriever: query expansion, dual-source search, ranking and snippet extraction."""

import asyncio
import copy
import hashlib
import json
import logging
import math
import re
import time
from collections.abc import Callable
from datetime import UTC, date, datetime

from evidentia.lib.cache import TTLCache
from evidentia.lib.config import RetrievalConfig
from evidentia.lib.errors import ExternalServiceError
from evidentia.lib.retry import RetryPolicy, retry_async, with_timeout
from evidentia.models.grounding import (
    ContextWindow,
    GroundingResult,
    GroundingSource,
    QueryExpansion,
    RetrievalMethod,
    Snippet,
    SourceOrigin,
)
from evidentia.models.knowledge import KnowledgeEntry
from evidentia.storage.knowledge_store import KnowledgeStore
from evidentia.tools.base_tool import BaseTool

logger = logging.getLogger(__name__)

# Relevance weights per matched query term
TITLE_WEIGHT = 0.4
CONTENT_WEIGHT = 0.2
TAG_WEIGHT = 0.1
CONTEXT_WEIGHT = 0.1

RECENT_DAYS = 30
STALE_DAYS = 365
RECENT_BOOST = 1.1
STALE_PENALTY = 0.9
PRIMARY_BOOST = 1.2
PREFERRED_TYPE_BOOST = 1.1

WEB_RELIABILITY = 0.7
WEB_DEFAULT_RELEVANCE = 0.7
WEB_QUERY_SUFFIX = " official information recent data"
SNIPPET_CONTEXT_CHARS = 100

CONTEXTUAL_SUFFIXES = {
    "company": [" information", " details", " profile"],
    "financial": [" data", " performance", " metrics"],
}

COMMON_TAGS = [
    "security",
    "company",
    "revenue",
    "employees",
    "business",
    "market",
    "industry",
    "financial",
    "growth",
    "services",
]

SENTENCE_SPLIT = re.compile(r"[.!?]+")


def query_terms(query: str) -> list[str]:
    return [t for t in query.lower().split() if t]


def days_between(earlier: date, today: date) -> int:
    return abs((today - earlier).days)


def composite_score(
    source: GroundingSource,
    today: date,
    preferred_source_types: tuple[str, ...] = (),
) -> float:
    """relevance x reliability with categorical boosts; monotonic in both inputs."""
    score = source.relevance_score * source.reliability
    if source.source_type == "primary":
        score *= PRIMARY_BOOST
    if source.last_updated is not None and days_between(source.last_updated, today) < RECENT_DAYS:
        score *= RECENT_BOOST
    if source.source_type in preferred_source_types:
        score *= PREFERRED_TYPE_BOOST
    return score


def extract_context_window(text: str, query: str, window_size: int) -> ContextWindow:
    """Capture ``window_size`` characters around the first case-insensitive match of ``query``."""
    if not query:
        return ContextWindow()
    index = text.lower().find(query.lower())
    if index == -1:
        return ContextWindow()
    end = index + len(query)
    return ContextWindow(
        before=text[max(0, index - window_size) : index],
        after=text[end : end + window_size],
    )


def extract_tags(content: str) -> list[str]:
    lowered = content.lower()
    return [tag for tag in COMMON_TAGS if tag in lowered]


class GroundingRetriever:
    """Finds and ranks evidence for a query from the knowledge store and web search."""

    def __init__(
        self,
        knowledge_store: KnowledgeStore,
        search_tool: BaseTool | None = None,
        config: RetrievalConfig | None = None,
        cache: TTLCache | None = None,
        call_timeout: float | None = 30.0,
        retry_policy: RetryPolicy | None = None,
        today: Callable[[], date] | None = None,
    ):
        """Initialize retriever.

        Args:
            knowledge_store: Read-only knowledge base
            search_tool: External search collaborator (None disables web search)
            config: Retrieval settings
            cache: Shared cache for grounding results
            call_timeout: Per-call timeout for web searches, in seconds
            retry_policy: Retry policy for web searches
            today: Date source, injectable for tests
        """
        self.knowledge_store = knowledge_store
        self.search_tool = search_tool
        self.config = config or RetrievalConfig()
        self.cache = cache
        self.call_timeout = call_timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.today = today or (lambda: datetime.now(UTC).date())

    async def retrieve(
        self,
        query: str,
        context: str | None = None,
        max_sources: int | None = None,
        min_relevance: float | None = None,
        preferred_categories: list[str] | None = None,
    ) -> GroundingResult:
        """Retrieve ranked grounding sources for a query.

        Args:
            query: Free-text query
            context: Optional context string that also scores knowledge entries
            max_sources: Overrides the configured maximum number of sources
            min_relevance: Overrides the configured minimum relevance
            preferred_categories: Restricts knowledge entries to these categories

        Returns:
            GroundingResult (possibly with no sources)

        Raises:
            ExternalServiceError: If web search keeps failing and degrading is disabled
        """
        start_time = time.time()
        max_sources = max_sources or self.config.max_sources
        min_relevance = self.config.min_relevance if min_relevance is None else min_relevance
        categories = tuple(preferred_categories or self.config.preferred_categories)

        cache_key = None
        if self.cache is not None:
            cache_key = "grounding:" + json.dumps(
                [query, context, max_sources, min_relevance, categories, self.today().isoformat()]
            )
            cached = await self.cache.get(cache_key)
            if cached is not None:
                logger.info(f"Grounding cache hit for: {query}")
                return copy.deepcopy(cached)

        expansion = self.expand_query(query)
        today = self.today()

        kb_sources = self._search_knowledge_base(query, expansion.expanded, context, categories, today)

        web_sources: list[GroundingSource] = []
        if self.config.enable_web_search and self.search_tool is not None:
            web_sources = await self._search_web(expansion.expanded, max_sources, today)

        ranked = self.rank_sources(kb_sources + web_sources, max_sources, min_relevance, today)

        if self.config.enable_context_window:
            for source in ranked:
                source.context_window = extract_context_window(
                    source.full_text or source.content, query, self.config.context_window_size
                )

        snippets, total_snippets = ([], 0)
        if self.config.enable_snippets:
            snippets, total_snippets = self.extract_snippets(ranked, query)

        total_relevance = (
            sum(s.relevance_score for s in ranked) / len(ranked) if ranked else 0.0
        )
        has_high_quality = any(
            s.reliability >= self.config.min_source_reliability and s.relevance_score >= min_relevance
            for s in ranked
        )

        result = GroundingResult(
            query=query,
            sources=ranked,
            total_relevance_score=total_relevance,
            has_high_quality_sources=has_high_quality,
            query_expansion=expansion,
            retrieval_method=self._retrieval_method(ranked),
            snippets=snippets,
            total_snippets=total_snippets,
            grounding_time_ms=(time.time() - start_time) * 1000,
        )

        logger.info(
            f"Grounding for '{query}': {len(ranked)} sources "
            f"({len(kb_sources)} kb candidates, {len(web_sources)} web candidates), "
            f"method={result.retrieval_method.value}, avg relevance={total_relevance:.2f}"
        )

        if cache_key is not None:
            await self.cache.set(cache_key, copy.deepcopy(result))
        return result

    def expand_query(self, query: str) -> QueryExpansion:
        """Expand a query with synonyms and contextual suffixes; the original stays first."""
        expanded = [query]
        synonyms_used: dict[str, list[str]] = {}

        if self.config.enable_query_expansion:
            for term, synonyms in self.knowledge_store.synonyms.items():
                pattern = re.compile(rf"\b{re.escape(term)}\b", re.IGNORECASE)
                if not pattern.search(query):
                    continue
                synonyms_used[term] = list(synonyms)
                for synonym in synonyms:
                    expanded.append(pattern.sub(lambda _m, s=synonym: s, query))

            lowered = query.lower()
            for term, suffixes in CONTEXTUAL_SUFFIXES.items():
                if term in lowered:
                    expanded.extend(f"{query}{suffix}" for suffix in suffixes)

        return QueryExpansion(
            original=query,
            expanded=list(dict.fromkeys(expanded)),
            synonyms_used=synonyms_used,
        )

    def score_entry(
        self, entry: KnowledgeEntry, query: str, context: str | None, today: date
    ) -> float:
        """Weighted term overlap x reliability x recency multiplier, clipped to [0, 1]."""
        title = f"{entry.title} {entry.topic}".lower()
        content = entry.content.lower()
        tags = [t.lower() for t in entry.tags]
        context_lower = context.lower() if context else ""

        score = 0.0
        for term in query_terms(query):
            if term in title:
                score += TITLE_WEIGHT
            if term in content:
                score += CONTENT_WEIGHT
            if any(term in tag for tag in tags):
                score += TAG_WEIGHT
            if context_lower and term in context_lower:
                score += CONTEXT_WEIGHT

        score *= entry.reliability

        age = days_between(entry.last_verified, today)
        if age < RECENT_DAYS:
            score *= RECENT_BOOST
        elif age > STALE_DAYS:
            score *= STALE_PENALTY

        return max(0.0, min(score, 1.0))

    def _search_knowledge_base(
        self,
        query: str,
        queries: list[str],
        context: str | None,
        categories: tuple[str, ...],
        today: date,
    ) -> list[GroundingSource]:
        word_count = len(query_terms(query))
        best: dict[str, GroundingSource] = {}

        for entry in self.knowledge_store.all_entries():
            if categories and entry.category not in categories:
                continue
            if entry.reliability < self.config.min_source_reliability:
                continue
            if (
                self.config.enable_temporal_filtering
                and days_between(entry.last_verified, today) > self.config.max_source_age_days
            ):
                continue

            relevance = max(self.score_entry(entry, q, context, today) for q in queries)
            if relevance <= 0:
                continue

            current = best.get(entry.id)
            if current is None or relevance > current.relevance_score:
                best[entry.id] = GroundingSource(
                    id=entry.id,
                    title=entry.title,
                    content=entry.summary_for(word_count),
                    url=entry.url if self.config.include_source_citations else None,
                    relevance_score=relevance,
                    reliability=entry.reliability,
                    source_type=entry.source_type,
                    category=entry.category,
                    origin=SourceOrigin.KNOWLEDGE_BASE,
                    tags=list(entry.tags),
                    last_updated=entry.last_verified,
                    full_text=entry.content,
                )

        return list(best.values())

    async def _search_web(
        self, queries: list[str], max_sources: int, today: date
    ) -> list[GroundingSource]:
        queries = queries[: self.config.web_query_limit]
        per_query = max(1, math.ceil(max_sources / len(queries)))

        outcomes = await asyncio.gather(
            *(self._search_one(q + WEB_QUERY_SUFFIX, per_query) for q in queries),
            return_exceptions=True,
        )

        best: dict[str, GroundingSource] = {}
        for q, outcome in zip(queries, outcomes):
            if isinstance(outcome, ExternalServiceError):
                if not self.config.degrade_on_search_error:
                    raise outcome
                logger.warning(f"Web search failed for '{q}', continuing without it: {outcome}")
                continue
            if isinstance(outcome, BaseException):
                raise outcome

            for item in outcome:
                source = self._web_source(item, today)
                current = best.get(source.id)
                if current is None or source.relevance_score > current.relevance_score:
                    best[source.id] = source

        return list(best.values())

    async def _search_one(self, query: str, max_results: int) -> list[dict]:
        async def call():
            return await with_timeout(
                self.search_tool.search(query, max_results), self.call_timeout, "search"
            )

        return await retry_async(call, self.retry_policy)

    def _web_source(self, item: dict, today: date) -> GroundingSource:
        url = item.get("url") or ""
        title = item.get("title") or url or "Untitled"
        content = item.get("content") or ""
        digest = hashlib.sha1((url or title).encode("utf-8")).hexdigest()[:12]
        score = item.get("score")
        relevance = WEB_DEFAULT_RELEVANCE if score is None else float(score)

        return GroundingSource(
            id=f"web_{digest}",
            title=title,
            content=content,
            url=(url or None) if self.config.include_source_citations else None,
            relevance_score=max(0.0, min(relevance, 1.0)),
            reliability=WEB_RELIABILITY,
            source_type="secondary",
            category="general",
            origin=SourceOrigin.WEB_SEARCH,
            tags=extract_tags(content),
            last_updated=today,
            full_text=content,
        )

    def rank_sources(
        self,
        sources: list[GroundingSource],
        max_sources: int,
        min_relevance: float,
        today: date | None = None,
    ) -> list[GroundingSource]:
        """Filter by relevance and reliability, sort by composite score, truncate."""
        today = today or self.today()
        eligible = [
            s
            for s in sources
            if s.relevance_score >= min_relevance
            and s.reliability >= self.config.min_source_reliability
        ]
        eligible.sort(
            key=lambda s: composite_score(s, today, self.config.preferred_source_types),
            reverse=True,
        )
        return eligible[:max_sources]

    def extract_snippets(
        self, sources: list[GroundingSource], query: str
    ) -> tuple[list[Snippet], int]:
        """Sentences containing query terms, best first, capped at the snippet limit.

        Returns:
            (snippets, total number of matching sentences before the cap)
        """
        terms = query_terms(query)
        if not terms:
            return [], 0

        snippets = []
        for source in sources:
            for sentence in SENTENCE_SPLIT.split(source.content):
                text = sentence.strip()
                if len(text) < self.config.min_snippet_length:
                    continue
                lowered = text.lower()
                matched = [t for t in terms if t in lowered]
                if not matched:
                    continue

                position = source.content.find(text)
                context = ""
                if position != -1:
                    context = source.content[
                        max(0, position - SNIPPET_CONTEXT_CHARS) : position
                        + len(text)
                        + SNIPPET_CONTEXT_CHARS
                    ]

                snippets.append(
                    Snippet(
                        text=text,
                        source_id=source.id,
                        relevance_score=len(matched) / len(terms),
                        context=context,
                    )
                )

        total = len(snippets)
        snippets.sort(key=lambda s: s.relevance_score, reverse=True)
        return snippets[: self.config.snippet_limit], total

    @staticmethod
    def _retrieval_method(sources: list[GroundingSource]) -> RetrievalMethod:
        origins = {s.origin for s in sources}
        if origins == {SourceOrigin.KNOWLEDGE_BASE}:
            return RetrievalMethod.KNOWLEDGE_BASE
        if origins == {SourceOrigin.WEB_SEARCH}:
            return RetrievalMethod.WEB_SEARCH
        return RetrievalMethod.HYBRID
