"""
Classification result models for Lorekeeper.

A ClassificationResult is the structured delta extracted from one freshly
generated narrative turn. Updates refer to existing entities by exact name;
the world-state store resolves names to ids and applies the changes.

Malformed lists collapse to empty lists, malformed list members are dropped
one at a time, and unknown enum values fall back to their defaults.
"""

import logging
from typing import Any, List, Literal, Optional, Sequence, Type, TypeVar
from pydantic import Field, ValidationError, field_validator

from .base import LoreModel, string_list
from .story import TimeTracker
from .world import Character, Item, Location, StoryBeat


TimeProgression = Literal["none", "minutes", "hours", "days"]
TIME_PROGRESSION_ORDER: List[str] = ["none", "minutes", "hours", "days"]

ModelT = TypeVar("ModelT", bound=LoreModel)


def _choice(value: Any, allowed: Sequence[str], default: Optional[str]) -> Optional[str]:
    """Return ``value`` if it is one of ``allowed`` (case-insensitive), else ``default``."""
    if isinstance(value, str) and value.strip().lower() in allowed:
        return value.strip().lower()
    return default


def _valid_items(model_cls: Type[ModelT], value: Any) -> List[ModelT]:
    """
    Validate each member of a list independently, dropping the invalid ones.

    Args:
        model_cls: Model to validate members against
        value: Raw value from the decoded JSON

    Returns:
        Validated members; an empty list when ``value`` is not a list
    """
    if not isinstance(value, list):
        return []

    items = []
    for raw in value:
        try:
            items.append(model_cls.model_validate(raw))
        except ValidationError as e:
            logging.debug(f"Dropping malformed {model_cls.__name__}: {e.error_count()} error(s)")
    return items


class CharacterChanges(LoreModel):
    status: Optional[str] = None
    relationship: Optional[str] = None
    new_traits: List[str] = Field(default_factory=list)
    remove_traits: List[str] = Field(default_factory=list)
    add_visual_descriptors: List[str] = Field(default_factory=list)
    remove_visual_descriptors: List[str] = Field(default_factory=list)
    replace_visual_descriptors: Optional[List[str]] = None

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> Optional[str]:
        return _choice(value, ("active", "inactive", "deceased"), None)

    @field_validator("new_traits", "remove_traits", "add_visual_descriptors",
                     "remove_visual_descriptors", mode="before")
    @classmethod
    def _lists(cls, value: Any) -> List[str]:
        return string_list(value)

    @field_validator("replace_visual_descriptors", mode="before")
    @classmethod
    def _replacement(cls, value: Any) -> Optional[List[str]]:
        return string_list(value) if isinstance(value, list) else None


class CharacterUpdate(LoreModel):
    name: str = Field(..., min_length=1)
    changes: CharacterChanges = Field(default_factory=CharacterChanges)


class LocationChanges(LoreModel):
    visited: Optional[bool] = None
    current: Optional[bool] = None
    description_addition: Optional[str] = None


class LocationUpdate(LoreModel):
    name: str = Field(..., min_length=1)
    changes: LocationChanges = Field(default_factory=LocationChanges)


class ItemChanges(LoreModel):
    quantity: Optional[int] = None
    equipped: Optional[bool] = None
    location: Optional[str] = None


class ItemUpdate(LoreModel):
    name: str = Field(..., min_length=1)
    changes: ItemChanges = Field(default_factory=ItemChanges)


class StoryBeatChanges(LoreModel):
    status: Optional[str] = None
    description: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> Optional[str]:
        return _choice(value, ("pending", "active", "completed", "failed"), None)


class StoryBeatUpdate(LoreModel):
    title: str = Field(..., min_length=1)
    changes: StoryBeatChanges = Field(default_factory=StoryBeatChanges)


class NewCharacter(LoreModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    relationship: Optional[str] = None
    traits: List[str] = Field(default_factory=list)
    visual_descriptors: List[str] = Field(default_factory=list)

    @field_validator("traits", "visual_descriptors", mode="before")
    @classmethod
    def _lists(cls, value: Any) -> List[str]:
        return string_list(value)


class NewLocation(LoreModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    visited: bool = True
    current: bool = False


class NewItem(LoreModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    quantity: int = 1
    location: str = "inventory"


class NewStoryBeat(LoreModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    type: str = "event"
    status: str = "pending"

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, value: Any) -> str:
        return _choice(value, ("milestone", "quest", "revelation", "event", "plot_point"), "event")

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> str:
        return _choice(value, ("pending", "active", "completed"), "pending")


class EntryUpdates(LoreModel):
    """
    Updates to existing entities and brand-new entities, by kind.
    """

    character_updates: List[CharacterUpdate] = Field(default_factory=list)
    location_updates: List[LocationUpdate] = Field(default_factory=list)
    item_updates: List[ItemUpdate] = Field(default_factory=list)
    story_beat_updates: List[StoryBeatUpdate] = Field(default_factory=list)
    new_characters: List[NewCharacter] = Field(default_factory=list)
    new_locations: List[NewLocation] = Field(default_factory=list)
    new_items: List[NewItem] = Field(default_factory=list)
    new_story_beats: List[NewStoryBeat] = Field(default_factory=list)

    @field_validator("character_updates", mode="before")
    @classmethod
    def _character_updates(cls, value: Any) -> List[CharacterUpdate]:
        return _valid_items(CharacterUpdate, value)

    @field_validator("location_updates", mode="before")
    @classmethod
    def _location_updates(cls, value: Any) -> List[LocationUpdate]:
        return _valid_items(LocationUpdate, value)

    @field_validator("item_updates", mode="before")
    @classmethod
    def _item_updates(cls, value: Any) -> List[ItemUpdate]:
        return _valid_items(ItemUpdate, value)

    @field_validator("story_beat_updates", mode="before")
    @classmethod
    def _story_beat_updates(cls, value: Any) -> List[StoryBeatUpdate]:
        return _valid_items(StoryBeatUpdate, value)

    @field_validator("new_characters", mode="before")
    @classmethod
    def _new_characters(cls, value: Any) -> List[NewCharacter]:
        return _valid_items(NewCharacter, value)

    @field_validator("new_locations", mode="before")
    @classmethod
    def _new_locations(cls, value: Any) -> List[NewLocation]:
        return _valid_items(NewLocation, value)

    @field_validator("new_items", mode="before")
    @classmethod
    def _new_items(cls, value: Any) -> List[NewItem]:
        return _valid_items(NewItem, value)

    @field_validator("new_story_beats", mode="before")
    @classmethod
    def _new_story_beats(cls, value: Any) -> List[NewStoryBeat]:
        return _valid_items(NewStoryBeat, value)

    def counts(self) -> dict:
        """Number of records per field, for logging."""
        return {name: len(getattr(self, name)) for name in type(self).model_fields}


class SceneState(LoreModel):
    """
    Snapshot of the scene after the classified turn.
    """

    current_location_name: Optional[str] = None
    present_character_names: List[str] = Field(default_factory=list)
    time_progression: TimeProgression = "none"

    @field_validator("current_location_name", mode="before")
    @classmethod
    def _location_name(cls, value: Any) -> Optional[str]:
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    @field_validator("present_character_names", mode="before")
    @classmethod
    def _names(cls, value: Any) -> List[str]:
        return string_list(value)

    @field_validator("time_progression", mode="before")
    @classmethod
    def _progression(cls, value: Any) -> str:
        return _choice(value, TIME_PROGRESSION_ORDER, "none")


class ClassificationResult(LoreModel):
    """
    Structured world-state deltas extracted from one narrative turn.
    """

    entry_updates: EntryUpdates = Field(default_factory=EntryUpdates)
    scene: SceneState = Field(default_factory=SceneState)

    @field_validator("entry_updates", "scene", mode="before")
    @classmethod
    def _objects(cls, value: Any) -> Any:
        return value if isinstance(value, (dict, LoreModel)) else {}

    @classmethod
    def empty(cls) -> "ClassificationResult":
        """The fully-empty result used when classification fails."""
        return cls()

    @property
    def is_empty(self) -> bool:
        return self == ClassificationResult.empty()


StoryMode = Literal["adventure", "creative-writing"]


class ChatHistoryEntry(LoreModel):
    """
    One visible chat message shown to the classifier, with its story clock.
    """

    role: Literal["user", "assistant"]
    content: str
    time_start: Optional[TimeTracker] = None
    time_end: Optional[TimeTracker] = None


class ClassificationContext(LoreModel):
    """
    Everything the classifier needs to read one narrative turn.
    """

    narrative_response: str
    user_action: str = ""
    existing_characters: List[Character] = Field(default_factory=list)
    existing_locations: List[Location] = Field(default_factory=list)
    existing_items: List[Item] = Field(default_factory=list)
    existing_story_beats: List[StoryBeat] = Field(default_factory=list)
    genre: Optional[str] = None
    story_mode: StoryMode = "adventure"
    chat_history: List[ChatHistoryEntry] = Field(default_factory=list)
    current_story_time: Optional[TimeTracker] = None

    @property
    def is_creative(self) -> bool:
        return self.story_mode == "creative-writing"
