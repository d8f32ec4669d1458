"""
World-state entity models for Lorekeeper.

These are the dynamically tracked entities owned by the world-state store.
The core only reads them and proposes deltas through classification.
"""

from typing import List, Literal, Optional
from pydantic import Field

from .base import LoreModel


CharacterStatus = Literal["active", "inactive", "deceased"]
StoryBeatType = Literal["milestone", "quest", "revelation", "event", "plot_point"]
StoryBeatStatus = Literal["pending", "active", "completed", "failed"]

PROTAGONIST_RELATIONSHIP = "self"
INVENTORY_LOCATION = "inventory"


class Character(LoreModel):
    """
    A tracked character. The protagonist carries relationship ``"self"``.
    """

    id: str = Field(..., description="Stable identifier assigned by the store")
    name: str = Field(..., description="Display name")
    description: Optional[str] = Field(None, description="Free-text description")
    status: CharacterStatus = Field("active", description="Lifecycle status")
    relationship: Optional[str] = Field(
        None,
        description="Relationship to the protagonist ('self' for the protagonist)"
    )
    traits: List[str] = Field(default_factory=list)
    visual_descriptors: List[str] = Field(default_factory=list)

    @property
    def is_protagonist(self) -> bool:
        return self.relationship == PROTAGONIST_RELATIONSHIP


class Location(LoreModel):
    """
    A tracked location.
    """

    id: str
    name: str
    description: Optional[str] = None
    visited: bool = False
    current: bool = False


class Item(LoreModel):
    """
    A tracked item. ``location`` is free text; ``"inventory"`` means carried.
    """

    id: str
    name: str
    description: Optional[str] = None
    quantity: int = 1
    equipped: bool = False
    location: str = INVENTORY_LOCATION

    @property
    def in_inventory(self) -> bool:
        return self.location == INVENTORY_LOCATION


class StoryBeat(LoreModel):
    """
    A quest, milestone, revelation or other story thread.

    The title doubles as the beat's display name.
    """

    id: str
    title: str
    description: Optional[str] = None
    type: StoryBeatType = "event"
    status: StoryBeatStatus = "pending"

    @property
    def name(self) -> str:
        return self.title

    @property
    def is_open(self) -> bool:
        return self.status in ("active", "pending")


class WorldState(LoreModel):
    """
    Read-only snapshot of the world state for a single turn.
    """

    characters: List[Character] = Field(default_factory=list)
    locations: List[Location] = Field(default_factory=list)
    items: List[Item] = Field(default_factory=list)
    story_beats: List[StoryBeat] = Field(default_factory=list)
    current_location: Optional[Location] = None

    @property
    def protagonist(self) -> Optional[Character]:
        for character in self.characters:
            if character.is_protagonist:
                return character
        return None
