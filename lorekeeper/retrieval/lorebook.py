"""
Tiered lorebook retrieval for Lorekeeper.

Applies the same three tiers as the world-state context builder to the
author's lorebook:

- Tier 1: entries marked ``always`` and entries whose live state makes them
  part of the scene (present character, current location, carried item,
  allied or hostile faction)
- Tier 2: entries whose name, alias or keyword appears in the scene text
- Tier 3: LLM selection, under one of two policies (see SelectionPolicy)

Entries in ``never`` mode are excluded from every tier.
"""

import logging
from typing import Dict, List, Optional, Sequence, Set, Tuple

from ..agents import AgentRunner
from ..config import LorebookConfig, SelectionPolicy
from ..errors import LorekeeperError
from ..matching import matches, matches_any, build_search_text
from ..models import LorebookEntry, StoryEntry, RetrievedEntry, LorebookResult
from .common import truncate, format_recent_content, parse_index_selection


ALWAYS_PRIORITY = 100
CURRENT_LOCATION_PRIORITY = 100
PRESENT_CHARACTER_PRIORITY = 95
INVENTORY_PRIORITY = 80
FACTION_PRIORITY = 70

NAME_MATCH_BONUS = 20
ALIAS_MATCH_BONUS = 10

LLM_SELECTED_PRIORITY = 30

PROMPT_RECENT_CHAR_LIMIT = 200

# Section order and headers for the rendered block
SECTION_HEADERS: List[Tuple[str, str]] = [
    ("character", "Characters"),
    ("location", "Locations"),
    ("item", "Items"),
    ("faction", "Factions"),
    ("concept", "Lore"),
    ("event", "Events"),
]

CAPPED_GUIDANCE = """Which entries (by number) are relevant to the current scene and input? Consider characters who might be referenced or affected, locations that might be mentioned, and items, factions or concepts that connect to this moment.

Only include entries that are ACTUALLY relevant."""

EXHAUSTIVE_GUIDANCE = """Which entries (by number) could matter for the next response? Include anything that is mentioned, implied, nearby, or thematically connected to this moment, including the background lore it rests on.

Be inclusive: when in doubt, include the entry."""


def _tier1_reasons(entry: LorebookEntry) -> List[Tuple[int, str]]:
    """All (priority, reason) pairs that put ``entry`` in Tier 1."""
    reasons = []
    if entry.injection.mode == "always":
        reasons.append((ALWAYS_PRIORITY, "always inject"))

    state = entry.state
    if state is None:
        return reasons

    kind = entry.state_type
    if kind == "character" and state.is_present:
        reasons.append((PRESENT_CHARACTER_PRIORITY, "character present"))
    elif kind == "location" and state.is_current_location:
        reasons.append((CURRENT_LOCATION_PRIORITY, "current location"))
    elif kind == "item" and state.in_inventory:
        reasons.append((INVENTORY_PRIORITY, "in inventory"))
    elif kind == "faction" and state.status in ("allied", "hostile"):
        reasons.append((FACTION_PRIORITY, f"faction {state.status}"))
    return reasons


class LorebookRetrieval:
    """
    Selects lorebook entries for the next narrative prompt.
    """

    def __init__(self, runner: Optional[AgentRunner] = None,
                 config: Optional[LorebookConfig] = None):
        """
        Initialize lorebook retrieval.

        Args:
            runner: Agent runner used for Tier 3; None disables Tier 3
            config: Lorebook settings, including the selection policy
        """
        self.runner = runner
        self.config = config or LorebookConfig()

    @property
    def policy(self) -> SelectionPolicy:
        return self.config.policy

    async def get_relevant_entries(self, entries: Sequence[LorebookEntry], user_input: str,
                                   recent_entries: Sequence[StoryEntry]) -> LorebookResult:
        """
        Retrieve relevant lorebook entries using tiered injection.

        Args:
            entries: The full lorebook
            user_input: The latest player or author input
            recent_entries: Recent transcript, oldest first

        Returns:
            LorebookResult with tiers and the rendered context block
        """
        candidates = [e for e in entries if not e.is_excluded]
        if not candidates:
            return LorebookResult()

        tier1 = self.get_tier1_entries(candidates)
        tier1_ids = {r.id for r in tier1}

        tier2 = self.get_tier2_entries(candidates, user_input, recent_entries, tier1_ids)
        tier2_ids = {r.id for r in tier2}

        tier3: List[RetrievedEntry] = []
        if self.policy == SelectionPolicy.EXHAUSTIVE:
            pool = [e for e in candidates if e.id not in tier1_ids]
            if self._llm_enabled() and pool:
                tier3 = await self.get_tier3_entries(pool, user_input, recent_entries,
                                                     exclude_ids=tier2_ids)
        else:
            pool = [e for e in candidates if e.id not in tier1_ids and e.id not in tier2_ids]
            if self._llm_enabled() and len(pool) > self.config.llm_threshold:
                tier3 = await self.get_tier3_entries(pool, user_input, recent_entries)

        logging.info(
            f"Lorebook tiers ({self.policy.value}): "
            f"{len(tier1)} / {len(tier2)} / {len(tier3)} of {len(candidates)} entries"
        )

        block = self.build_context_block(tier1, tier2, tier3)
        return LorebookResult(tier1=tier1, tier2=tier2, tier3=tier3, context_block=block)

    def _llm_enabled(self) -> bool:
        return (
            self.config.enable_llm_selection
            and self.runner is not None
            and self.runner.available
        )

    def get_tier1_entries(self, entries: Sequence[LorebookEntry]) -> List[RetrievedEntry]:
        """
        Tier 1: entries that are always injected or active in the current scene.

        When several conditions hold, the highest priority and its reason win.
        """
        result = []
        for entry in entries:
            if entry.is_excluded:
                continue
            reasons = _tier1_reasons(entry)
            if not reasons:
                continue
            priority, reason = max(reasons, key=lambda r: r[0])
            result.append(RetrievedEntry(entry=entry, tier=1, priority=priority, match_reason=reason))
        return result

    def get_tier2_entries(self, entries: Sequence[LorebookEntry], user_input: str,
                          recent_entries: Sequence[StoryEntry],
                          exclude_ids: Set[str]) -> List[RetrievedEntry]:
        """
        Tier 2: name, alias or keyword matches against the scene text.

        Priority is the entry's own priority plus a bonus for name and alias hits.
        """
        search_text = build_search_text(user_input, recent_entries, self.config.recent_entries_count)
        result = []
        for entry in entries:
            if entry.id in exclude_ids or entry.is_excluded:
                continue

            name_match = matches(entry.name, search_text)
            alias_match = matches_any(entry.aliases, search_text)
            keyword_match = (
                entry.injection.mode == "keyword"
                and matches_any(entry.injection.keywords, search_text)
            )
            if not (name_match or alias_match or keyword_match):
                continue

            priority = entry.injection.priority
            if name_match:
                priority += NAME_MATCH_BONUS
            if alias_match:
                priority += ALIAS_MATCH_BONUS

            if name_match:
                reason = "name match"
            elif alias_match:
                reason = "alias match"
            else:
                reason = "keyword match"
            result.append(RetrievedEntry(entry=entry, tier=2, priority=priority, match_reason=reason))
        return result

    async def get_tier3_entries(self, pool: List[LorebookEntry], user_input: str,
                                recent_entries: Sequence[StoryEntry],
                                exclude_ids: Optional[Set[str]] = None) -> List[RetrievedEntry]:
        """
        Tier 3: ask the LLM which entries of ``pool`` are relevant.

        Under the capped policy only the first ``max_prompt_entries`` are listed
        and at most ``max_tier3_entries`` are returned. Under the exhaustive
        policy everything is listed and nothing is capped. Picks whose id is in
        ``exclude_ids`` are dropped, since they already sit in an earlier tier.
        Any failure yields an empty list.
        """
        if self.runner is None or not pool:
            return []

        exhaustive = self.policy == SelectionPolicy.EXHAUSTIVE
        listed = pool if exhaustive else pool[:self.config.max_prompt_entries]

        limit = self.config.description_truncation
        entry_summaries = "\n".join(
            f"{i}. [{e.type}] {e.name}: {truncate(e.description, limit)}"
            for i, e in enumerate(listed, start=1)
        )

        try:
            response = await self.runner.run(
                "lorebook_selection",
                recent_content=format_recent_content(
                    recent_entries, self.config.prompt_recent_entries, PROMPT_RECENT_CHAR_LIMIT
                ),
                user_input=user_input,
                entry_summaries=entry_summaries,
                selection_guidance=EXHAUSTIVE_GUIDANCE if exhaustive else CAPPED_GUIDANCE,
            )
        except LorekeeperError as e:
            logging.warning(f"Lorebook LLM selection failed: {e}")
            return []

        exclude_ids = exclude_ids or set()
        result = [
            RetrievedEntry(entry=listed[i - 1], tier=3, priority=LLM_SELECTED_PRIORITY,
                           match_reason="LLM selected")
            for i in parse_index_selection(response, len(listed))
            if listed[i - 1].id not in exclude_ids
        ]

        if not exhaustive:
            result = result[:self.config.max_tier3_entries]
        return result

    def build_context_block(self, tier1: List[RetrievedEntry], tier2: List[RetrievedEntry],
                            tier3: List[RetrievedEntry]) -> str:
        """
        Render selected entries grouped by type under fixed headers.

        Returns an empty string when nothing was selected.
        """
        selected = [*tier1, *tier2, *tier3]
        if not selected:
            return ""

        by_type: Dict[str, List[LorebookEntry]] = {kind: [] for kind, _ in SECTION_HEADERS}
        for retrieved in selected:
            by_type.setdefault(retrieved.entry.type, []).append(retrieved.entry)

        block = "\n\n[LOREBOOK CONTEXT]"
        block += "\nThe following entries are established canon for this story. Do not contradict them."

        for kind, header in SECTION_HEADERS:
            group = by_type[kind]
            if not group:
                continue
            block += f"\n\n• {header}:"
            for entry in group:
                block += f"\n  - {entry.name}: {entry.description}"
                if kind == "character" and entry.state is not None and entry.state.current_disposition:
                    block += f" [{entry.state.current_disposition}]"
        return block
