"""
Lorebook entry models for Lorekeeper.

Lorebook entries are author-supplied world-building facts. Each entry carries
its own injection policy, independent of the dynamically tracked world state.
"""

from typing import List, Literal, Optional
from pydantic import Field

from .base import LoreModel


EntryType = Literal["character", "location", "item", "faction", "concept", "event"]
InjectionMode = Literal["always", "keyword", "never"]


class EntryInjection(LoreModel):
    """
    How and when an entry is injected into the prompt.
    """

    mode: InjectionMode = Field("keyword", description="always | keyword | never")
    keywords: List[str] = Field(
        default_factory=list,
        description="Trigger words, used only in keyword mode"
    )
    priority: int = Field(0, description="Base priority for keyword matches")


class EntryState(LoreModel):
    """
    Optional live state attached to an entry.

    Only the fields relevant to ``type`` are expected to be set.
    """

    type: Optional[EntryType] = None
    is_present: bool = False
    current_disposition: Optional[str] = None
    is_current_location: bool = False
    in_inventory: bool = False
    status: Optional[str] = None


class LorebookEntry(LoreModel):
    """
    A single lorebook entry.
    """

    id: str
    name: str
    type: EntryType = "concept"
    description: str = ""
    aliases: List[str] = Field(default_factory=list)
    injection: EntryInjection = Field(default_factory=EntryInjection)
    state: Optional[EntryState] = None

    @property
    def state_type(self) -> Optional[str]:
        """The state's own type tag, falling back to the entry type."""
        if self.state is None:
            return None
        return self.state.type or self.type

    @property
    def is_excluded(self) -> bool:
        return self.injection.mode == "never"
