"""Web search collaborator backed by the Tavily search API."""

import logging
import os
import time
from typing import Any

import httpx

from evidentia.lib.cache import TTLCache
from evidentia.lib.errors import ExternalServiceError
from evidentia.tools.base_tool import BaseTool, ToolResult, ToolStatus

logger = logging.getLogger(__name__)

TAVILY_URL = "https://api.tavily.com/search"
MAX_CONTENT_LENGTH = 1500


class WebSearchTool(BaseTool):
    """Tavily search with a result cache.

    Without an API key every search returns an empty list instead of failing.
    """

    def __init__(
        self,
        config: dict[str, Any],
        cache: TTLCache | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize web search tool.

        Args:
            config: max_results, timeout_seconds, search_depth, include_domains, tavily_api_key
            cache: Shared result cache (a private one is created if omitted)
            client: HTTP client, injectable for tests
        """
        super().__init__(config)
        self.max_results = config.get("max_results", 5)
        self.timeout_seconds = config.get("timeout_seconds", 15)
        self.search_depth = config.get("search_depth", "basic")
        self.include_domains = config.get("include_domains") or []
        self.tavily_api_key = config.get("tavily_api_key") or os.getenv("TAVILY_API_KEY")
        self.cache = cache or TTLCache(max_entries=100, ttl_seconds=300, name="web_search")
        self.client = client or httpx.AsyncClient(timeout=self.timeout_seconds)

        if self.tavily_api_key:
            logger.info("Web search initialized with Tavily")
        else:
            logger.warning("TAVILY_API_KEY not set, web search will return no results")

    async def execute(self, parameters: dict[str, Any]) -> ToolResult:
        """Search Tavily.

        Args:
            parameters: Dict with 'query' and optional 'max_results'

        Returns:
            ToolResult whose data holds normalized 'results'

        Raises:
            ExternalServiceError: On HTTP or transport failure
        """
        start_time = time.time()
        self.validate_parameters(parameters, ["query"])
        query = parameters["query"]
        max_results = parameters.get("max_results", self.max_results)

        if not self.tavily_api_key:
            return ToolResult(
                tool_name=self.tool_name,
                status=ToolStatus.SUCCESS,
                data={"query": query, "results": []},
            )

        cache_key = f"search:{query}:{max_results}"
        cached = await self.cache.get(cache_key)
        if cached is not None:
            logger.info(f"Cache hit for search: {query}")
            return ToolResult(
                tool_name=self.tool_name,
                status=ToolStatus.SUCCESS,
                data=cached,
                execution_time_ms=int((time.time() - start_time) * 1000),
            )

        results = await self._search_tavily(query, max_results)
        output = {"query": query, "results": results}
        await self.cache.set(cache_key, output)

        elapsed_ms = int((time.time() - start_time) * 1000)
        logger.info(f"Search completed: {len(results)} results in {elapsed_ms}ms")
        return ToolResult(
            tool_name=self.tool_name,
            status=ToolStatus.SUCCESS,
            data=output,
            execution_time_ms=elapsed_ms,
        )

    async def _search_tavily(self, query: str, max_results: int) -> list[dict[str, Any]]:
        payload = {
            "api_key": self.tavily_api_key,
            "query": query,
            "search_depth": self.search_depth,
            "max_results": max_results,
            "include_answer": False,
            "include_raw_content": False,
        }
        if self.include_domains:
            payload["include_domains"] = self.include_domains

        logger.info(f"Searching Tavily: {query}")
        try:
            response = await self.client.post(TAVILY_URL, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ExternalServiceError(
                "tavily", f"Tavily HTTP error: {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise ExternalServiceError("tavily", f"Tavily request failed: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise ExternalServiceError("tavily", f"Tavily returned invalid JSON: {e}") from e

        results = []
        for item in body.get("results", []):
            results.append(
                {
                    "title": item.get("title", ""),
                    "url": item.get("url", ""),
                    "content": (item.get("content") or "")[:MAX_CONTENT_LENGTH],
                    "score": item.get("score"),
                    "published_date": item.get("published_date"),
                }
            )

        logger.info(f"Tavily returned {len(results)} results")
        return results

    async def fallback(self, parameters: dict[str, Any], error: Exception) -> ToolResult:
        """Report the failure; results are never fabricated."""
        logger.warning(f"Search failed for '{parameters.get('query', '')}': {error}")
        return ToolResult(
            tool_name=self.tool_name,
            status=ToolStatus.FAILED,
            error=str(error),
            fallback_used=True,
        )

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()
