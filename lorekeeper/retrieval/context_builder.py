"""
Tiered world-state context builder for Lorekeeper.

Chooses which tracked characters, locations, items and story beats are
injected into the next narrative prompt:

- Tier 1: always injected, derived from current state (no AI)
- Tier 2: entities whose names appear in the input or recent transcript
- Tier 3: an LLM picks from the rest, only when the rest is large

Each entity id appears in at most one tier.
"""

import logging
from typing import List, Optional, Sequence, Set

from ..agents import AgentRunner
from ..config import ContextConfig
from ..errors import LorekeeperError
from ..matching import matches, build_search_text
from ..models import (
    Character, Item, Location, StoryBeat, StoryEntry, WorldState,
    RelevantEntry, ContextResult,
)
from .common import truncate, format_recent_content, parse_index_selection


# Tier 1 priorities
CURRENT_LOCATION_PRIORITY = 100
ACTIVE_CHARACTER_PRIORITY = 90
ACTIVE_BEAT_PRIORITY = 80
INVENTORY_ITEM_PRIORITY = 70

# Tier 2 priorities
MENTIONED_CHARACTER_PRIORITY = 60
MENTIONED_LOCATION_PRIORITY = 50
MENTIONED_BEAT_PRIORITY = 45
MENTIONED_ITEM_PRIORITY = 40

LLM_SELECTED_PRIORITY = 30


def _character_entry(char: Character, tier: int, priority: int, reason: str) -> RelevantEntry:
    return RelevantEntry(
        type="character", id=char.id, name=char.name, description=char.description,
        tier=tier, priority=priority, match_reason=reason,
        metadata={
            "relationship": char.relationship,
            "traits": list(char.traits),
            "visual_descriptors": list(char.visual_descriptors),
        },
    )


def _location_entry(loc: Location, tier: int, priority: int, reason: str,
                    current: bool = False) -> RelevantEntry:
    return RelevantEntry(
        type="location", id=loc.id, name=loc.name, description=loc.description,
        tier=tier, priority=priority, match_reason=reason,
        metadata={"current": current, "visited": loc.visited},
    )


def _item_entry(item: Item, tier: int, priority: int, reason: str) -> RelevantEntry:
    return RelevantEntry(
        type="item", id=item.id, name=item.name, description=item.description,
        tier=tier, priority=priority, match_reason=reason,
        metadata={"quantity": item.quantity, "equipped": item.equipped, "location": item.location},
    )


def _beat_entry(beat: StoryBeat, tier: int, priority: int, reason: str) -> RelevantEntry:
    return RelevantEntry(
        type="story_beat", id=beat.id, name=beat.title, description=beat.description,
        tier=tier, priority=priority, match_reason=reason,
        metadata={"type": beat.type, "status": beat.status},
    )


class ContextBuilder:
    """
    Builds the world-state portion of the narrative prompt.
    """

    def __init__(self, runner: Optional[AgentRunner] = None,
                 config: Optional[ContextConfig] = None):
        """
        Initialize the context builder.

        Args:
            runner: Agent runner used for Tier 3 selection; None disables Tier 3
            config: Context settings (defaults apply when omitted)
        """
        self.runner = runner
        self.config = config or ContextConfig()

    async def build_context(self, world_state: WorldState, user_input: str,
                            recent_entries: Sequence[StoryEntry],
                            retrieved_chapter_context: Optional[str] = None) -> ContextResult:
        """
        Select relevant world-state entities and render the context block.

        Args:
            world_state: Current world snapshot
            user_input: The latest player or author input
            recent_entries: Recent transcript, oldest first
            retrieved_chapter_context: Optional text from chapter retrieval,
                appended verbatim to the block

        Returns:
            ContextResult with the three tiers and the rendered block
        """
        logging.debug(
            f"Building context: {len(world_state.characters)} characters, "
            f"{len(world_state.locations)} locations, {len(world_state.items)} items, "
            f"{len(world_state.story_beats)} story beats"
        )

        tier1 = self.get_tier1_entries(world_state)
        tier1_ids = {e.id for e in tier1}

        tier2 = self.get_tier2_entries(world_state, user_input, recent_entries, tier1_ids)
        tier12_ids = tier1_ids | {e.id for e in tier2}

        tier3: List[RelevantEntry] = []
        remaining = self.get_remaining_entries(world_state, tier12_ids)
        if self._should_run_llm_selection(len(remaining)):
            tier3 = await self.get_tier3_entries(remaining, user_input, recent_entries)

        logging.info(f"Context tiers: {len(tier1)} / {len(tier2)} / {len(tier3)} (remaining pool {len(remaining)})")

        block = self.build_context_block(tier1, tier2, tier3, retrieved_chapter_context)
        return ContextResult(tier1=tier1, tier2=tier2, tier3=tier3, context_block=block)

    def _should_run_llm_selection(self, remaining_count: int) -> bool:
        return (
            self.config.enable_llm_selection
            and self.runner is not None
            and self.runner.available
            and remaining_count > self.config.llm_threshold
        )

    def get_tier1_entries(self, world_state: WorldState) -> List[RelevantEntry]:
        """
        Tier 1: current location, active characters, inventory and open story beats.

        The protagonist is not listed here. Each group is capped at
        ``max_entries_per_tier``.
        """
        cap = self.config.max_entries_per_tier
        entries: List[RelevantEntry] = []

        current = world_state.current_location
        if current is None:
            current = next((loc for loc in world_state.locations if loc.current), None)
        if current is not None:
            entries.append(_location_entry(current, 1, CURRENT_LOCATION_PRIORITY,
                                           "current location", current=True))

        active_chars = [c for c in world_state.characters
                        if c.status == "active" and not c.is_protagonist]
        for char in active_chars[:cap]:
            entries.append(_character_entry(char, 1, ACTIVE_CHARACTER_PRIORITY, "active character"))

        inventory = [i for i in world_state.items if i.in_inventory]
        for item in inventory[:cap]:
            entries.append(_item_entry(item, 1, INVENTORY_ITEM_PRIORITY, "in inventory"))

        open_beats = [b for b in world_state.story_beats if b.is_open]
        for beat in open_beats[:cap]:
            entries.append(_beat_entry(beat, 1, ACTIVE_BEAT_PRIORITY, f"{beat.status} story beat"))

        return entries

    def get_tier2_entries(self, world_state: WorldState, user_input: str,
                          recent_entries: Sequence[StoryEntry],
                          exclude_ids: Set[str]) -> List[RelevantEntry]:
        """
        Tier 2: entities named in the input or the last few transcript entries.
        """
        search_text = build_search_text(user_input, recent_entries, self.config.recent_entries_count)
        entries: List[RelevantEntry] = []

        for char in world_state.characters:
            if char.id not in exclude_ids and matches(char.name, search_text):
                entries.append(_character_entry(char, 2, MENTIONED_CHARACTER_PRIORITY, "name match"))

        for loc in world_state.locations:
            if loc.id not in exclude_ids and matches(loc.name, search_text):
                entries.append(_location_entry(loc, 2, MENTIONED_LOCATION_PRIORITY, "name match"))

        for item in world_state.items:
            if item.id not in exclude_ids and matches(item.name, search_text):
                entries.append(_item_entry(item, 2, MENTIONED_ITEM_PRIORITY, "name match"))

        for beat in world_state.story_beats:
            if beat.id not in exclude_ids and matches(beat.title, search_text):
                entries.append(_beat_entry(beat, 2, MENTIONED_BEAT_PRIORITY, "title match"))

        return entries[:self.config.max_entries_per_tier]

    def get_remaining_entries(self, world_state: WorldState,
                              exclude_ids: Set[str]) -> List[RelevantEntry]:
        """
        Entities outside Tiers 1 and 2, grouped by kind and sorted by name.

        The order is stable so the numbering shown to the LLM is reproducible.
        """
        def by_name(entity):
            return entity.name.lower()

        chars = sorted((c for c in world_state.characters if c.id not in exclude_ids), key=by_name)
        locs = sorted((l for l in world_state.locations if l.id not in exclude_ids), key=by_name)
        items = sorted((i for i in world_state.items if i.id not in exclude_ids), key=by_name)
        beats = sorted((b for b in world_state.story_beats if b.id not in exclude_ids), key=by_name)

        reason = "llm selection"
        return [
            *(_character_entry(c, 3, LLM_SELECTED_PRIORITY, reason) for c in chars),
            *(_location_entry(l, 3, LLM_SELECTED_PRIORITY, reason) for l in locs),
            *(_item_entry(i, 3, LLM_SELECTED_PRIORITY, reason) for i in items),
            *(_beat_entry(b, 3, LLM_SELECTED_PRIORITY, reason) for b in beats),
        ]

    async def get_tier3_entries(self, remaining: List[RelevantEntry], user_input: str,
                                recent_entries: Sequence[StoryEntry]) -> List[RelevantEntry]:
        """
        Tier 3: ask the LLM which of the remaining entities matter.

        Any failure yields an empty list.

        Args:
            remaining: Candidates in the order they are numbered for the LLM
            user_input: The latest input
            recent_entries: Recent transcript

        Returns:
            Selected entries, capped at ``max_entries_per_tier``
        """
        if not remaining or self.runner is None:
            return []

        limit = self.config.description_truncation
        entry_summaries = "\n".join(
            f"{i}. [{e.type}] {e.name}: {truncate(e.description, limit) or 'No description'}"
            for i, e in enumerate(remaining, start=1)
        )

        try:
            response = await self.runner.run(
                "entry_selection",
                recent_content=format_recent_content(recent_entries, self.config.recent_entries_count),
                user_input=user_input,
                entry_summaries=entry_summaries,
            )
        except LorekeeperError as e:
            logging.warning(f"Tier 3 entry selection failed: {e}")
            return []

        indices = parse_index_selection(response, len(remaining))
        selected = [remaining[i - 1] for i in indices]
        return selected[:self.config.max_entries_per_tier]

    def build_context_block(self, tier1: List[RelevantEntry], tier2: List[RelevantEntry],
                            tier3: List[RelevantEntry],
                            retrieved_chapter_context: Optional[str] = None) -> str:
        """
        Render the selected entities as the prompt context block.

        Sections are emitted in a fixed order and omitted when empty.
        """
        block = ""
        later = [*tier2, *tier3]

        current = next((e for e in tier1 if e.type == "location" and e.metadata.get("current")), None)
        if current:
            block += f"\n\n[CURRENT LOCATION]\n{current.name}"
            if current.description:
                block += f"\n{current.description}"

        characters = [e for e in (*tier1, *later) if e.type == "character"]
        if characters:
            block += "\n\n[KNOWN CHARACTERS]"
            for char in characters:
                block += f"\n• {char.name}"
                if char.metadata.get("relationship"):
                    block += f" ({char.metadata['relationship']})"
                if char.description:
                    block += f" - {char.description}"
                if char.metadata.get("traits"):
                    block += f" [{', '.join(char.metadata['traits'])}]"
                if char.metadata.get("visual_descriptors"):
                    block += f" {{Appearance: {', '.join(char.metadata['visual_descriptors'])}}}"

        inventory = [e for e in tier1 if e.type == "item"]
        if inventory:
            parts = []
            for item in inventory:
                text = item.name
                quantity = item.metadata.get("quantity") or 1
                if quantity > 1:
                    text += f" (×{quantity})"
                if item.metadata.get("equipped"):
                    text += " [equipped]"
                parts.append(text)
            block += f"\n\n[INVENTORY]\n{', '.join(parts)}"

        block += self._bullet_section("[ACTIVE THREADS]", [e for e in tier1 if e.type == "story_beat"])
        block += self._bullet_section(
            "[RELEVANT LOCATIONS]",
            [e for e in later if e.type == "location" and not e.metadata.get("current")],
        )
        block += self._bullet_section("[RELEVANT ITEMS]", [e for e in later if e.type == "item"])
        block += self._bullet_section("[RELATED STORY THREADS]", [e for e in later if e.type == "story_beat"])

        if retrieved_chapter_context:
            block += retrieved_chapter_context

        return block

    @staticmethod
    def _bullet_section(header: str, entries: List[RelevantEntry]) -> str:
        if not entries:
            return ""
        section = f"\n\n{header}"
        for entry in entries:
            section += f"\n• {entry.name}"
            if entry.description:
                section += f": {entry.description}"
        return section
