# evidentia/models/knowledge.py
from datetime import date
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

SourceType = Literal["primary", "secondary", "tertiary"]


class KnowledgeSummaries(BaseModel):
    model_config = ConfigDict(frozen=True)

    short: str
    medium: str
    long: str


class KnowledgeEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    topic: str
    title: str
    content: str  # full text, used for context windows
    summaries: KnowledgeSummaries
    reliability: float = Field(ge=0.0, le=1.0)
    source_type: SourceType = "secondary"
    category: str = "general"
    last_verified: date
    version: str = "1.0"
    url: Optional[str] = None
    tags: List[str] = []
    related_topics: List[str] = []

    def summary_for(self, word_count: int) -> str:
        """Pick the summary length matching how specific the query is."""
        if word_count <= 3:
            return self.summaries.short
        if word_count <= 6:
            return self.summaries.medium
        return self.summaries.long
