"""
Preset Registry for Lorekeeper.

This module defines the registry of all AI-backed features, their prompts and
generation settings. Every AI call in Lorekeeper goes through one of these
presets, so adding a feature means registering one more preset here.

User prompt templates and JSON instructions are rendered with ``str.format``:
``{name}`` is a template variable and literal braces are written ``{{ }}``.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from ..models import ChapterSummary, ClassificationResult, RetrievalDecision


JsonSupport = Literal["none", "json_object", "json_schema"]
JSON_SUPPORT_LEVELS = ("none", "json_object", "json_schema")


@dataclass
class GenerationPreset:
    """
    Prompts and generation settings for one AI-backed feature.
    """
    name: str
    description: str
    system_prompt: str
    user_prompt_template: str
    json_instructions: str = ""
    response_schema: Optional[Dict[str, Any]] = None
    required_variables: List[str] = field(default_factory=list)
    model: Optional[str] = None
    temperature: float = 0.3
    max_tokens: Optional[int] = None
    timeout: Optional[float] = None
    json_support: JsonSupport = "none"


INDEX_ARRAY_SCHEMA: Dict[str, Any] = {"type": "array", "items": {"type": "integer"}}

CHAPTER_ANALYSIS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {"chapterEnd": {"type": "integer"}},
    "required": ["chapterEnd"],
}


class PresetRegistry:
    """
    Registry of all generation presets.
    """

    def __init__(self):
        """Initialize the registry with the built-in presets."""
        self._presets: Dict[str, GenerationPreset] = {}
        self._register_default_presets()

    def _register_default_presets(self):
        """Register the presets used by Lorekeeper's services."""

        # Entry Selection - picks relevant world-state entities past the deterministic tiers
        self.register_preset(GenerationPreset(
            name="entry_selection",
            description="Selects relevant world-state entities for the next narrative turn",
            system_prompt="""You are a context librarian for an interactive story. You receive a numbered list of story entities (characters, locations, items, story threads) and the latest story text.

Pick only the entities that are likely to matter for the next narrative turn: entities that are mentioned, implied, physically nearby, or directly connected to what the player is trying to do.

Be selective. Omit anything that is merely possible.""",
            user_prompt_template="""## Recent story
{recent_content}

## Latest input
{user_input}

## Entities
{entry_summaries}

Which entities are relevant to the next turn?""",
            json_instructions="""Return ONLY a JSON array of entity numbers, for example [1, 4, 7].
Return [] if none are relevant.""",
            response_schema=INDEX_ARRAY_SCHEMA,
            required_variables=["recent_content", "user_input", "entry_summaries"],
            temperature=0.1,
            max_tokens=256,
        ))

        # Lorebook Selection - picks relevant author-supplied lorebook entries
        self.register_preset(GenerationPreset(
            name="lorebook_selection",
            description="Selects lorebook entries relevant to the current scene",
            system_prompt="""You are the keeper of a story's lorebook: canonical facts about characters, places, items, factions and world concepts written by the author.

Given the current scene, decide which lorebook entries the narrator must know about to stay consistent with the established world. Consider indirect relevance: a faction whose member appears, a concept behind a mentioned ritual, a place being discussed.""",
            user_prompt_template="""## Recent story
{recent_content}

## Latest input
{user_input}

## Lorebook entries
{entry_summaries}

{selection_guidance}""",
            json_instructions="""Return ONLY a JSON array of entry numbers, for example [2, 5].
Return [] if none are relevant.""",
            response_schema=INDEX_ARRAY_SCHEMA,
            required_variables=["recent_content", "user_input", "entry_summaries", "selection_guidance"],
            temperature=0.1,
            max_tokens=512,
        ))

        # Chapter Analysis - finds a natural chapter boundary
        self.register_preset(GenerationPreset(
            name="chapter_analysis",
            description="Chooses where the next chapter should end",
            system_prompt="""You are a story editor dividing an ongoing interactive story into chapters. A good chapter ends at a natural pause: a scene change, a resolved conflict, arrival at a destination, a revelation, or the end of a conversation.""",
            user_prompt_template="""Read the messages below and choose the message that should close the chapter.

Valid message IDs: {first_valid_id} to {last_valid_id}

{messages_in_range}""",
            json_instructions="""## Output Format
Return ONLY a JSON object with a single field:
{{ "chapterEnd": <integer message ID> }}

## Rules
- Select exactly ONE endpoint
- The endpoint must be within the provided message range
- Choose the point that creates the most complete, self-contained chapter
- Prefer later messages that still complete the arc (avoid cutting mid-beat)""",
            response_schema=CHAPTER_ANALYSIS_SCHEMA,
            required_variables=["first_valid_id", "last_valid_id", "messages_in_range"],
            temperature=0.2,
            max_tokens=128,
        ))

        # Chapter Summarization - compresses a chapter into durable memory
        self.register_preset(GenerationPreset(
            name="chapter_summarization",
            description="Summarizes a chapter and extracts its metadata",
            system_prompt="""You are a story archivist. Summarize a chapter of an interactive story so that it can be recalled later without rereading it.

Write a 2-3 sentence summary focused on what happened and what changed. Extract a short title, searchable keywords, the characters and locations involved, the open plot threads, and the chapter's emotional tone.""",
            user_prompt_template="""{story_context}

{previous_context}Summarize this chapter:

{chapter_content}""",
            json_instructions="""## Output Format
Respond with JSON only:
{{
  "title": "Short chapter title",
  "summary": "2-3 sentence summary",
  "keywords": ["keyword"],
  "characters": ["Name"],
  "locations": ["Place"],
  "plotThreads": ["Open thread"],
  "emotionalTone": "tense"
}}""",
            response_schema=ChapterSummary.model_json_schema(by_alias=True),
            required_variables=["story_context", "previous_context", "chapter_content"],
            temperature=0.3,
            max_tokens=1024,
        ))

        # Retrieval Decision - chooses which earlier chapters to recall
        self.register_preset(GenerationPreset(
            name="retrieval_decision",
            description="Decides which earlier chapters are relevant to the current turn",
            system_prompt="""You manage the long-term memory of an interactive story. Older parts of the story have been compressed into chapter summaries. Decide whether any of them contain information the narrator needs for the next turn, such as a character returning, a callback to an earlier event, or a question about the past.

Most turns need no chapters. Only select chapters that are clearly relevant.""",
            user_prompt_template="""## Latest input
{user_input}

## Recent story
{recent_context}

## Chapters
{chapter_summaries}

Select at most {max_chapters_per_retrieval} chapters.""",
            json_instructions="""Respond with JSON:
{{
  "relevantChapterIds": ["id1", "id2"],
  "queries": [
    {{"chapterId": "id1", "question": "What was X?"}}
  ]
}}""",
            response_schema=RetrievalDecision.model_json_schema(by_alias=True),
            required_variables=["user_input", "recent_context", "chapter_summaries", "max_chapters_per_retrieval"],
            temperature=0.2,
            max_tokens=512,
        ))

        # Classifier - extracts world-state changes from a narrative turn
        self.register_preset(GenerationPreset(
            name="classifier",
            description="Extracts world-state changes from a generated narrative turn",
            system_prompt="""You are a world-state tracker for an interactive story told about {protagonist_name}. After each turn you read the newest narration and report what changed in the world: new or changed characters, locations, items and story beats, plus the current scene.

Only report what the text clearly states or strongly implies. Refer to existing entities by their exact names. Never invent entities.""",
            user_prompt_template="""{genre}
Mode: {mode}
Known world: {entity_counts}
{current_time_info}
{chat_history_block}{time_nudge}
## Known Characters
{existing_characters}

## Known Locations
{existing_locations}

## Known Items
{existing_items}

## Active Story Beats
{existing_beats}

## {input_label}
{user_action}

## The Narrative Response
{narrative_response}""",
            json_instructions="""## Response Format (JSON only)
{{
  "entryUpdates": {{
    "characterUpdates": [],
    "locationUpdates": [],
    "itemUpdates": [],
    "storyBeatUpdates": [],
    "newCharacters": [],
    "newLocations": [],
    "newItems": [],
    "newStoryBeats": []
  }},
  "scene": {{
    "currentLocationName": null,
    "presentCharacterNames": [],
    "timeProgression": "none"
  }}
}}

### Field Specifications

characterUpdates: [{{"name": "ExistingName", "changes": {{"status": "active|inactive|deceased", "relationship": "new relationship", "newTraits": ["trait"], "removeTraits": ["trait"], "replaceVisualDescriptors": ["Face: ...", "Hair: ...", "Eyes: ...", "Build: ...", "Clothing: ..."]}}}}]
NOTE: Prefer replaceVisualDescriptors to output the COMPLETE cleaned-up appearance list.

locationUpdates: [{{"name": "ExistingName", "changes": {{"visited": true, "current": true, "descriptionAddition": "new detail learned"}}}}]

itemUpdates: [{{"name": "ExistingName", "changes": {{"quantity": 1, "equipped": true, "location": "{item_location_options}"}}}}]

storyBeatUpdates: [{{"title": "ExistingBeatTitle", "changes": {{"status": "completed|failed", "description": "optional updated description"}}}}]

newCharacters: [{{"name": "ProperName", "description": "one sentence", "relationship": "friend|enemy|ally|neutral|unknown", "traits": ["trait1"], "visualDescriptors": ["face, hair, eyes, build, clothing"]}}]

newLocations: [{{"name": "ProperName", "description": "one sentence", "visited": true, "current": false}}]

newItems: [{{"name": "ItemName", "description": "one sentence", "quantity": 1, "location": "{default_item_location}"}}]

newStoryBeats: [{{"title": "Short Title", "description": "what happened or was learned", "type": "{story_beat_types}", "status": "pending|active|completed"}}]

scene.currentLocationName: {scene_location_desc}
scene.presentCharacterNames: Names of characters physically present in the scene
scene.timeProgression: Time elapsed based on activities - "none" (instant actions/brief dialogue), "minutes" (conversations/searches/short walks), "hours" (travel/lengthy tasks), "days" (sleep/long journeys/time skips). When in doubt, increment.

Return valid JSON only. Empty arrays are fine - don't invent entities that aren't clearly in the text.""",
            response_schema=ClassificationResult.model_json_schema(by_alias=True),
            required_variables=[
                "genre", "mode", "entity_counts", "current_time_info", "chat_history_block",
                "time_nudge", "existing_characters", "existing_locations", "existing_items",
                "existing_beats", "input_label", "user_action", "narrative_response",
                "item_location_options", "default_item_location", "story_beat_types",
                "scene_location_desc",
            ],
            temperature=0.2,
            max_tokens=4096,
        ))

    def register_preset(self, preset: GenerationPreset) -> None:
        """
        Register a new preset, replacing any preset with the same name.

        Args:
            preset: The preset to register
        """
        self._presets[preset.name] = preset

    def get_preset(self, name: str) -> Optional[GenerationPreset]:
        """
        Get a preset by name.

        Args:
            name: The name of the preset

        Returns:
            The preset, or None if not found
        """
        return self._presets.get(name)

    def list_presets(self) -> List[str]:
        """
        Get a list of all registered preset names.

        Returns:
            List of preset names
        """
        return list(self._presets.keys())
