"""
Per-turn ranking records for Lorekeeper.

Nothing in this module is persisted; the records are rebuilt every turn.
"""

from typing import Any, Dict, List, Literal, Optional
from pydantic import Field

from .base import LoreModel
from .lorebook import LorebookEntry


EntityKind = Literal["character", "location", "item", "story_beat"]
Tier = Literal[1, 2, 3]


class RelevantEntry(LoreModel):
    """
    A world-state entity selected for the next prompt.
    """

    type: EntityKind
    id: str
    name: str
    description: Optional[str] = None
    tier: Tier
    priority: int
    match_reason: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RetrievedEntry(LoreModel):
    """
    A lorebook entry selected for the next prompt.
    """

    entry: LorebookEntry
    tier: Tier
    priority: int
    match_reason: str = ""

    @property
    def id(self) -> str:
        return self.entry.id


class ContextResult(LoreModel):
    """
    Output of the tiered context builder.
    """

    tier1: List[RelevantEntry] = Field(default_factory=list)
    tier2: List[RelevantEntry] = Field(default_factory=list)
    tier3: List[RelevantEntry] = Field(default_factory=list)
    context_block: str = ""

    @property
    def all(self) -> List[RelevantEntry]:
        return [*self.tier1, *self.tier2, *self.tier3]


class LorebookResult(LoreModel):
    """
    Output of the tiered lorebook retrieval.
    """

    tier1: List[RetrievedEntry] = Field(default_factory=list)
    tier2: List[RetrievedEntry] = Field(default_factory=list)
    tier3: List[RetrievedEntry] = Field(default_factory=list)
    context_block: str = ""

    @property
    def all(self) -> List[RetrievedEntry]:
        """All tiers merged, highest priority first."""
        merged = [*self.tier1, *self.tier2, *self.tier3]
        return sorted(merged, key=lambda r: r.priority, reverse=True)
