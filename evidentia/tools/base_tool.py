"""Base interface for external search collaborators."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from evidentia.lib.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class ToolStatus(Enum):
    """Tool execution status."""

    SUCCESS = "success"
    FAILED = "failed"
    DISABLED = "disabled"


@dataclass
class ToolResult:
    """Result from tool execution."""

    tool_name: str
    status: ToolStatus
    data: dict[str, Any] | None = None
    error: str | None = None
    execution_time_ms: int = 0
    fallback_used: bool = False


class BaseTool(ABC):
    """Abstract base class for search collaborators.

    Subclasses implement ``execute`` (may raise) and ``fallback`` (called
    with the error). ``search`` is the contract the retriever depends on:
    query in, list of ``{title, url, content, score}`` out.
    """

    def __init__(self, config: dict[str, Any]):
        """Initialize tool with configuration.

        Args:
            config: Tool-specific configuration
        """
        self.config = config
        self.tool_name = self.__class__.__name__
        self.enabled = config.get("enabled", True)

    @abstractmethod
    async def execute(self, parameters: dict[str, Any]) -> ToolResult:
        """Execute the tool with given parameters.

        Args:
            parameters: Tool-specific input parameters

        Returns:
            ToolResult with execution outcome
        """

    @abstractmethod
    async def fallback(self, parameters: dict[str, Any], error: Exception) -> ToolResult:
        """Fallback strategy when primary execution fails.

        Args:
            parameters: Original parameters
            error: Exception that caused failure

        Returns:
            ToolResult from fallback attempt
        """

    async def execute_with_fallback(self, parameters: dict[str, Any]) -> ToolResult:
        """Execute tool with automatic fallback on failure."""
        if not self.enabled:
            logger.info(f"{self.tool_name} is disabled")
            return ToolResult(
                tool_name=self.tool_name,
                status=ToolStatus.DISABLED,
                data={"results": []},
                error="Tool is disabled in configuration",
            )

        try:
            return await self.execute(parameters)
        except ExternalServiceError as e:
            logger.warning(f"{self.tool_name} primary execution failed: {e}, trying fallback")
            return await self.fallback(parameters, e)

    async def search(self, query: str, max_results: int) -> list[dict[str, Any]]:
        """Run a search and return normalized results.

        Raises:
            ExternalServiceError: If both execution and fallback failed
        """
        result = await self.execute_with_fallback({"query": query, "max_results": max_results})

        if result.status == ToolStatus.FAILED:
            raise ExternalServiceError(self.tool_name, result.error or "search failed")

        return list((result.data or {}).get("results", []))[:max_results]

    def validate_parameters(self, parameters: dict[str, Any], required_fields: list) -> None:
        """Validate that required parameters are present.

        Raises:
            ValueError: If required fields are missing
        """
        missing = [f for f in required_fields if f not in parameters]
        if missing:
            raise ValueError(f"Missing required parameters: {missing}")
