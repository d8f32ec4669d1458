"""
Memory service result models for Lorekeeper.

These models double as the validating decode step for LLM replies: list
fields that arrive missing or malformed collapse to empty lists, and text
fields collapse to their placeholders.
"""

from typing import Any, List, Optional
from pydantic import Field, field_validator

from .base import LoreModel, string_list


SUMMARY_UNAVAILABLE = "Chapter summary unavailable."
UNTITLED_CHAPTER = "Untitled Chapter"


class ChapterAnalysis(LoreModel):
    """
    Decision on whether and where to close the next chapter.

    ``optimal_end_index`` is an exclusive transcript index; -1 means no chapter.
    """

    should_create_chapter: bool = False
    optimal_end_index: int = -1
    suggested_title: Optional[str] = None


class ChapterSummary(LoreModel):
    """
    Summary text and metadata produced for a chapter.
    """

    summary: str = SUMMARY_UNAVAILABLE
    title: str = UNTITLED_CHAPTER
    keywords: List[str] = Field(default_factory=list)
    characters: List[str] = Field(default_factory=list)
    locations: List[str] = Field(default_factory=list)
    plot_threads: List[str] = Field(default_factory=list)
    emotional_tone: str = "neutral"

    @field_validator("keywords", "characters", "locations", "plot_threads", mode="before")
    @classmethod
    def _coerce_lists(cls, value: Any) -> List[str]:
        return string_list(value)

    @field_validator("summary", mode="before")
    @classmethod
    def _coerce_summary(cls, value: Any) -> str:
        if isinstance(value, str) and value.strip():
            return value.strip()
        return SUMMARY_UNAVAILABLE

    @field_validator("title", mode="before")
    @classmethod
    def _coerce_title(cls, value: Any) -> str:
        if isinstance(value, str) and value.strip():
            return value.strip()
        return UNTITLED_CHAPTER

    @field_validator("emotional_tone", mode="before")
    @classmethod
    def _coerce_tone(cls, value: Any) -> str:
        if isinstance(value, str) and value.strip():
            return value.strip()
        return "neutral"

    @classmethod
    def placeholder(cls) -> "ChapterSummary":
        """The clearly-marked summary used when summarization fails."""
        return cls()

    @property
    def is_placeholder(self) -> bool:
        return self.summary == SUMMARY_UNAVAILABLE


class ChapterQuery(LoreModel):
    """
    A targeted question the retrieval step wants answered from one chapter.
    """

    chapter_id: str
    question: str


class RetrievalDecision(LoreModel):
    """
    Which earlier chapters should be pulled back into the prompt.
    """

    relevant_chapter_ids: List[str] = Field(default_factory=list)
    queries: List[ChapterQuery] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.relevant_chapter_ids
