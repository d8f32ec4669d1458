"""
Transcript and chapter models for Lorekeeper.

The transcript is an append-only list of StoryEntry records. Chapters are
immutable summaries of contiguous, non-overlapping transcript ranges.
"""

from typing import List, Literal, Optional
from pydantic import ConfigDict, Field

from .base import LoreModel
from .memory import ChapterSummary


StoryEntryType = Literal["user_action", "narration", "system", "retry"]


class TimeTracker(LoreModel):
    """
    Story clock snapshot. All fields are zero-based counters.
    """

    model_config = ConfigDict(frozen=True)

    years: int = 0
    days: int = 0
    hours: int = 0
    minutes: int = 0

    def display(self) -> str:
        """Render as 'Year 1, Day 1, 08:05' (year and day shown one-based)."""
        return (
            f"Year {self.years + 1}, Day {self.days + 1}, "
            f"{self.hours:02d}:{self.minutes:02d}"
        )


def format_time(time: Optional[TimeTracker]) -> str:
    """
    Format an optional story clock, treating a missing clock as the story start.

    Args:
        time: Clock snapshot or None

    Returns:
        Human-readable clock string
    """
    return (time or TimeTracker()).display()


def format_time_range(start: Optional[TimeTracker], end: Optional[TimeTracker]) -> str:
    """
    Format a clock range as ' [start → end]', or ' [start]' when both ends agree.
    """
    start_str = format_time(start)
    end_str = format_time(end)
    if start_str != end_str:
        return f" [{start_str} → {end_str}]"
    return f" [{start_str}]"


class StoryEntry(LoreModel):
    """
    One transcript turn. Immutable once created.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    type: StoryEntryType
    content: str
    time_start: Optional[TimeTracker] = None
    time_end: Optional[TimeTracker] = None

    @property
    def is_user_action(self) -> bool:
        return self.type == "user_action"

    @property
    def prompt_prefix(self) -> str:
        return "[ACTION]" if self.is_user_action else "[NARRATION]"


class Chapter(LoreModel):
    """
    Immutable summary of the transcript range ``[start_index, end_index)``.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    number: int = Field(..., ge=1, description="Monotonic, one-based chapter number")
    title: Optional[str] = None
    summary: str
    start_index: int = Field(0, ge=0)
    end_index: int = Field(0, ge=0, description="Exclusive end of the covered range")
    keywords: List[str] = Field(default_factory=list)
    characters: List[str] = Field(default_factory=list)
    locations: List[str] = Field(default_factory=list)
    plot_threads: List[str] = Field(default_factory=list)
    emotional_tone: str = "neutral"
    start_time: Optional[TimeTracker] = None
    end_time: Optional[TimeTracker] = None

    def with_summary(self, summary: ChapterSummary) -> "Chapter":
        """
        Return a copy carrying a new summary, keeping number, range and clock.

        Args:
            summary: Freshly generated summary

        Returns:
            The updated chapter
        """
        return self.model_copy(update={
            "title": summary.title,
            "summary": summary.summary,
            "keywords": list(summary.keywords),
            "characters": list(summary.characters),
            "locations": list(summary.locations),
            "plot_threads": list(summary.plot_threads),
            "emotional_tone": summary.emotional_tone,
        })

