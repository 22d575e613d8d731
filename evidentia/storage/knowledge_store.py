# evidentia/storage/knowledge_store.py
import logging
from collections import defaultdict
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, List, Mapping, Optional

import yaml
from pydantic import ValidationError

from evidentia.lib.errors import ConfigError
from evidentia.models.knowledge import KnowledgeEntry

logger = logging.getLogger(__name__)


class KnowledgeStore:
    """Read-only knowledge base keyed by topic, plus the query-expansion synonym table.

    Loaded once at process start and shared by all requests.
    """

    def __init__(
        self,
        entries: Iterable[KnowledgeEntry] = (),
        synonyms: Optional[Mapping[str, List[str]]] = None,
    ):
        by_topic: dict[str, list[KnowledgeEntry]] = defaultdict(list)
        seen_ids = set()
        for entry in entries:
            if entry.id in seen_ids:
                raise ConfigError(f"Duplicate knowledge entry id: {entry.id}")
            seen_ids.add(entry.id)
            by_topic[entry.topic.lower()].append(entry)

        self._by_topic = {topic: tuple(items) for topic, items in by_topic.items()}
        self._synonyms = MappingProxyType(
            {term.lower(): tuple(values) for term, values in (synonyms or {}).items()}
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "KnowledgeStore":
        """Load entries and synonyms from a YAML file; a missing file gives an empty store."""
        path = Path(path)
        if not path.exists():
            logger.warning(f"Knowledge file not found: {path}, starting with empty store")
            return cls()

        with open(path) as f:
            data: dict[str, Any] = yaml.safe_load(f) or {}

        try:
            entries = [KnowledgeEntry(**item) for item in data.get("entries", [])]
        except ValidationError as e:
            raise ConfigError(f"Invalid knowledge entry in {path}: {e}") from e

        store = cls(entries, data.get("synonyms") or {})
        logger.info(
            f"Loaded {len(entries)} knowledge entries across {len(store.topics)} topics "
            f"and {len(store.synonyms)} synonym sets"
        )
        return store

    def entries_by_topic(self, topic: str) -> List[KnowledgeEntry]:
        return list(self._by_topic.get(topic.lower(), ()))

    def all_entries(self) -> List[KnowledgeEntry]:
        return [entry for items in self._by_topic.values() for entry in items]

    @property
    def topics(self) -> List[str]:
        return sorted(self._by_topic)

    @property
    def synonyms(self) -> Mapping[str, tuple[str, ...]]:
        return self._synonyms

    def __len__(self) -> int:
        return sum(len(items) for items in self._by_topic.values())
