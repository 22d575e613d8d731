"""Configuration loader for task categories, retrieval, pipeline and environment."""

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from evidentia.lib.errors import ConfigError
from evidentia.models.task import TASK_CATEGORIES, TaskCategory, TaskType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskConfig:
    """Generation and validation settings for one task category."""

    temperature: float
    top_p: float
    top_k: int
    max_output_tokens: int
    max_retries: int
    confidence_threshold: float
    critical_fields: tuple[str, ...] = ()


DEFAULT_TASK_CONFIGS: dict[TaskCategory, TaskConfig] = {
    TaskCategory.EXTRACTION: TaskConfig(
        temperature=0.0,
        top_p=0.1,
        top_k=1,
        max_output_tokens=4096,
        max_retries=3,
        confidence_threshold=0.8,
        critical_fields=("company_name", "revenue", "employee_count", "founded_year"),
    ),
    TaskCategory.ANALYSIS: TaskConfig(
        temperature=0.2,
        top_p=0.5,
        top_k=20,
        max_output_tokens=4096,
        max_retries=3,
        confidence_threshold=0.7,
    ),
    TaskCategory.COMPOSITION: TaskConfig(
        temperature=0.4,
        top_p=0.8,
        top_k=40,
        max_output_tokens=2048,
        max_retries=2,
        confidence_threshold=0.6,
    ),
    TaskCategory.DEFAULT: TaskConfig(
        temperature=0.1,
        top_p=0.3,
        top_k=10,
        max_output_tokens=2048,
        max_retries=3,
        confidence_threshold=0.7,
    ),
}


@dataclass(frozen=True)
class RetrievalConfig:
    """Grounding retriever settings."""

    max_sources: int = 5
    min_relevance: float = 0.7
    min_source_reliability: float = 0.7
    max_source_age_days: int = 365
    max_context_length: int = 4000
    context_window_size: int = 200
    snippet_limit: int = 10
    min_snippet_length: int = 20
    web_query_limit: int = 3
    preferred_source_types: tuple[str, ...] = ("primary", "secondary")
    preferred_categories: tuple[str, ...] = ()
    enable_query_expansion: bool = True
    enable_temporal_filtering: bool = True
    enable_snippets: bool = True
    enable_context_window: bool = True
    enable_web_search: bool = True
    include_source_citations: bool = True
    degrade_on_search_error: bool = False


@dataclass(frozen=True)
class PipelineConfig:
    call_timeout_seconds: float = 30.0
    backoff_base_seconds: float = 1.0
    enable_consensus: bool = False
    consensus_candidates: int = 3
    critical_confidence_threshold: float = 0.8


@dataclass(frozen=True)
class AuditConfig:
    max_entries: int = 10000


@dataclass(frozen=True)
class CacheConfig:
    max_entries: int = 100
    ttl_seconds: float = 300.0


@dataclass
class AppConfig:
    """Everything the pipeline needs, fully resolved."""

    task_configs: dict[TaskCategory, TaskConfig] = field(
        default_factory=lambda: dict(DEFAULT_TASK_CONFIGS)
    )
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)

    def for_task(self, task_type: TaskType) -> TaskConfig:
        return self.task_configs[TASK_CATEGORIES[task_type]]


def _overlay(base, values: dict[str, Any] | None, section: str):
    """Return a copy of dataclass ``base`` with ``values`` applied.

    Unknown keys raise ConfigError; list values become tuples.
    """
    if not values:
        return base

    known = {f.name for f in fields(base)}
    unknown = set(values) - known
    if unknown:
        raise ConfigError(f"Unknown keys in '{section}': {sorted(unknown)}")

    cleaned = {k: tuple(v) if isinstance(v, list) else v for k, v in values.items()}
    return replace(base, **cleaned)


class ConfigLoader:
    """Loads evidentia.yaml and the environment, overlaying built-in defaults."""

    CONFIG_FILE = "evidentia.yaml"

    def __init__(self, config_dir: str | None = None, env_file: str | None = None):
        """Initialize configuration loader.

        Args:
            config_dir: Directory containing config files (default: ./config)
            env_file: Path to .env file (default: ./.env)
        """
        self.config_dir = Path(config_dir or "config")
        self.env_file = Path(env_file or ".env")

        if self.env_file.exists():
            load_dotenv(self.env_file)
            logger.info(f"Loaded environment from {self.env_file}")
        else:
            logger.warning(f"Environment file not found: {self.env_file}")

        self.raw = self._load_yaml(self.config_dir / self.CONFIG_FILE)
        self.app = self._build_app_config(self.raw)
        self.env = self._load_env_vars()

    def _load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            logger.warning(f"Config not found: {path}, using defaults")
            return {}

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a mapping at the top level")

        logger.info(f"Loaded configuration from {path}")
        return data

    def _build_app_config(self, data: dict[str, Any]) -> AppConfig:
        task_configs = dict(DEFAULT_TASK_CONFIGS)
        for name, values in (data.get("task_categories") or {}).items():
            try:
                category = TaskCategory(name)
            except ValueError as e:
                raise ConfigError(f"Unknown task category: {name}") from e
            task_configs[category] = _overlay(
                task_configs[category], values, f"task_categories.{name}"
            )

        app = AppConfig(
            task_configs=task_configs,
            retrieval=_overlay(RetrievalConfig(), data.get("retrieval"), "retrieval"),
            pipeline=_overlay(PipelineConfig(), data.get("pipeline"), "pipeline"),
            audit=_overlay(AuditConfig(), data.get("audit"), "audit"),
            cache=_overlay(CacheConfig(), data.get("cache"), "cache"),
        )
        logger.info(f"Loaded {len(task_configs)} task category configurations")
        return app

    def _load_env_vars(self) -> dict[str, Any]:
        return {
            "tavily_api_key": os.getenv("TAVILY_API_KEY"),
            "ollama_base_url": os.getenv("OLLAMA_BASE_URL", "http://localhost:11434"),
            "model_name": os.getenv("EVIDENTIA_MODEL", "llama3.1:8b"),
            "log_level": os.getenv("LOG_LEVEL", "INFO"),
            "knowledge_file": os.getenv(
                "EVIDENTIA_KNOWLEDGE_FILE", str(self.config_dir / "knowledge.yaml")
            ),
        }

    def get(self, key: str, default: Any = None) -> Any:
        """Get a raw configuration value by dot-separated key (e.g. "server.port")."""
        value: Any = self.raw
        for k in key.split("."):
            if not isinstance(value, dict):
                return default
            value = value.get(k)
            if value is None:
                return default
        return value

    def get_env(self, key: str, default: Any = None) -> Any:
        value = self.env.get(key)
        return default if value is None else value
