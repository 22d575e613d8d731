"""Ollama provider implementation for locally hosted models."""

import logging

import httpx

from evidentia.core.llm_connector import GenerationConfig, LLMResponse, ModelGateway
from evidentia.lib.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class OllamaProvider(ModelGateway):
    """Model gateway backed by an Ollama server's /api/chat endpoint."""

    def __init__(
        self,
        model_name: str,
        base_url: str = "http://localhost:11434",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize Ollama provider.

        Args:
            model_name: Ollama model tag
            base_url: Ollama server URL
            timeout: HTTP timeout in seconds
            client: HTTP client, injectable for tests
        """
        super().__init__(model_name)
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def generate(self, prompt: str, config: GenerationConfig) -> LLMResponse:
        if config.candidate_count > 1:
            raise ValueError("Ollama produces one candidate per call; issue N calls instead")

        payload = {
            "model": self.model_name,
            "messages": [{"role": "user", "content": prompt}],
            "stream": False,
            "options": {
                "temperature": config.temperature,
                "top_p": config.top_p,
                "top_k": config.top_k,
                "num_predict": config.max_output_tokens,
            },
        }
        if config.json_mode:
            payload["format"] = "json"

        try:
            response = await self.client.post(f"{self.base_url}/api/chat", json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Ollama HTTP error: {e.response.status_code} - {e.response.text}")
            raise ExternalServiceError(
                "ollama", f"Ollama HTTP error: {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Ollama generation error: {e}")
            raise ExternalServiceError("ollama", f"Ollama unavailable: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"Ollama returned a non-JSON body: {response.text[:200]}")
            raise ExternalServiceError("ollama", f"Ollama returned invalid JSON: {e}") from e
        message = data.get("message", {})

        prompt_tokens = data.get("prompt_eval_count", 0)
        completion_tokens = data.get("eval_count", 0)

        function_call = None
        tool_calls = message.get("tool_calls") or []
        if tool_calls:
            call = tool_calls[0].get("function", {})
            function_call = {"name": call.get("name", ""), "arguments": call.get("arguments", {})}

        return LLMResponse(
            content=message.get("content", ""),
            model_used=self.model_name,
            token_count=completion_tokens,
            finish_reason="stop" if data.get("done", False) else "length",
            function_call=function_call,
            metadata={
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "eval_duration_ms": data.get("eval_duration", 0) // 1_000_000,
            },
        )

    async def check_health(self) -> bool:
        """Check that the server is up and the model is pulled."""
        try:
            response = await self.client.get(f"{self.base_url}/api/tags")
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Ollama health check failed: {e}")
            return False

        models = [m.get("name") for m in response.json().get("models", [])]
        if self.model_name not in models:
            logger.warning(f"Model {self.model_name} not found in Ollama")
            return False
        return True

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()
