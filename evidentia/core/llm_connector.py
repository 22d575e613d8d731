"""Model gateway abstraction: prompt plus sampling configuration in, text out."""

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from evidentia.lib.config import TaskConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationConfig:
    """Deterministic sampling configuration for one call."""
    temperature: float = 0.0
    top_p: float = 0.1
    top_k: int = 1
    max_output_tokens: int = 2048
    candidate_count: int = 1
    json_mode: bool = True

    @classmethod
    def from_task_config(cls, task_config: TaskConfig) -> "GenerationConfig":
        return cls(
            temperature=task_config.temperature,
            top_p=task_config.top_p,
            top_k=task_config.top_k,
            max_output_tokens=task_config.max_output_tokens,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LLMResponse:
    """Standardized model response."""
    content: str
    model_used: str
    token_count: int = 0
    finish_reason: str = "stop"
    function_call: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ModelGateway(ABC):
    """Abstract base class for model providers.

    ``generate`` must produce exactly one candidate; consensus mode makes
    N independent calls instead of asking for N candidates at once.
    """

    def __init__(self, model_name: str):
        self.model_name = model_name
        logger.info(f"Initialized {self.__class__.__name__} for {model_name}")

    @abstractmethod
    async def generate(self, prompt: str, config: GenerationConfig) -> LLMResponse:
        """Generate a response.

        Args:
            prompt: Full prompt text
            config: Sampling configuration

        Returns:
            LLMResponse with the raw generated text

        Raises:
            ExternalServiceError: If the model service is unavailable or errors
        """

    @abstractmethod
    async def check_health(self) -> bool:
        """Check if the model is available and responding."""

    async def close(self) -> None:
        """Release any held connections."""
