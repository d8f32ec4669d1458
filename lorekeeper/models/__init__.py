"""Data models for Lorekeeper."""

from .world import Character, Location, Item, StoryBeat, WorldState
from .lorebook import LorebookEntry, EntryInjection, EntryState
from .story import StoryEntry, Chapter, TimeTracker, format_time, format_time_range
from .memory import ChapterAnalysis, ChapterSummary, ChapterQuery, RetrievalDecision
from .retrieval import RelevantEntry, RetrievedEntry, ContextResult, LorebookResult
from .classification import (
    ClassificationResult, EntryUpdates, SceneState, ChatHistoryEntry, ClassificationContext,
)

__all__ = [
    "Character",
    "Location",
    "Item",
    "StoryBeat",
    "WorldState",
    "LorebookEntry",
    "EntryInjection",
    "EntryState",
    "StoryEntry",
    "Chapter",
    "TimeTracker",
    "format_time",
    "format_time_range",
    "ChapterAnalysis",
    "ChapterSummary",
    "ChapterQuery",
    "RetrievalDecision",
    "RelevantEntry",
    "RetrievedEntry",
    "ContextResult",
    "LorebookResult",
    "ClassificationResult",
    "EntryUpdates",
    "SceneState",
    "ChatHistoryEntry",
    "ClassificationContext",
]
