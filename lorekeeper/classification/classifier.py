"""
Turn classifier for Lorekeeper.

Reads a freshly generated narrative turn and asks the model what changed in
the world. The result is only a proposal: applying it is up to the caller's
world-state store.
"""

import logging
from typing import Dict, Optional, Sequence

from ..agents import AgentRunner
from ..config import ClassifierConfig
from ..errors import LorekeeperError
from ..models import ChatHistoryEntry, ClassificationContext, ClassificationResult, format_time
from .parser import parse_classification_response


def truncate_words(text: str, max_words: int) -> str:
    """
    Keep the first ``max_words`` words of ``text``; 0 keeps everything.
    """
    if max_words <= 0:
        return text
    words = text.split()
    if len(words) <= max_words:
        return text
    return " ".join(words[:max_words]) + "..."


# Vocabulary that differs between the two story modes
MODE_TERMS: Dict[str, Dict[str, str]] = {
    "adventure": {
        "input_label": "The Player's Action",
        "scene_location_desc": "The name of where the protagonist IS (not where they're going), or null if unchanged",
        "item_location_options": "inventory|dropped|given",
        "default_item_location": "inventory",
        "story_beat_types": "quest|revelation|milestone|event",
    },
    "creative-writing": {
        "input_label": "The Author's Direction",
        "scene_location_desc": "The name of where the current scene takes place, or null if unchanged",
        "item_location_options": "with_character|scene|mentioned",
        "default_item_location": "with_character",
        "story_beat_types": "plot_point|revelation|milestone|event",
    },
}


class ClassifierService:
    """
    Extracts world-state changes from narrative turns.
    """

    def __init__(self, runner: Optional[AgentRunner] = None,
                 config: Optional[ClassifierConfig] = None):
        """
        Initialize the classifier.

        Args:
            runner: Agent runner for the ``classifier`` preset
            config: Classifier settings
        """
        self.runner = runner or AgentRunner()
        self.config = config or ClassifierConfig()

    async def classify(self, context: ClassificationContext) -> ClassificationResult:
        """
        Classify one narrative turn.

        Args:
            context: The turn and the known world

        Returns:
            The parsed result, or an empty result if the call or parse fails
        """
        logging.debug(
            f"Classifying turn: {len(context.narrative_response)} chars, "
            f"{len(context.existing_characters)} characters, {len(context.chat_history)} history entries"
        )

        try:
            response = await self.runner.run("classifier", **self.build_prompt_variables(context))
        except LorekeeperError as e:
            logging.warning(f"Classification failed: {e}")
            return ClassificationResult.empty()

        result = parse_classification_response(response)
        if not result.is_empty:
            logging.info(
                f"Classified turn: location={result.scene.current_location_name}, "
                f"present={len(result.scene.present_character_names)}, "
                f"time={result.scene.time_progression}"
            )
        return result

    def build_prompt_variables(self, context: ClassificationContext) -> Dict[str, str]:
        """
        Build the template variables for the ``classifier`` preset.

        Args:
            context: The turn and the known world

        Returns:
            Mapping of template variable names to rendered text
        """
        character_lines = []
        for char in context.existing_characters:
            parts = [char.name]
            if char.traits:
                parts.append(f"Traits: {', '.join(char.traits)}")
            if char.visual_descriptors:
                parts.append(f"Appearance: {', '.join(char.visual_descriptors)}")
            character_lines.append(f"• {' | '.join(parts)}")

        location_names = [loc.name for loc in context.existing_locations]
        item_names = [item.name for item in context.existing_items]

        beat_lines = [
            f'• "{beat.title}" [{beat.status}]: {beat.description or "(no description)"}'
            for beat in context.existing_story_beats if beat.is_open
        ]

        protagonist = next((c for c in context.existing_characters if c.is_protagonist), None)

        variables = {
            "protagonist_name": protagonist.name if protagonist else "the protagonist",
            "genre": f"Genre: {context.genre}" if context.genre else "",
            "mode": context.story_mode,
            "entity_counts": (
                f"{len(character_lines)} characters, {len(location_names)} locations, "
                f"{len(item_names)} items"
            ),
            "current_time_info": (
                f"Current Story Time: {format_time(context.current_story_time)}"
                if context.current_story_time else ""
            ),
            "chat_history_block": self.build_chat_history_block(context.chat_history),
            "time_nudge": self.build_time_nudge(context),
            "existing_characters": "\n".join(character_lines) if character_lines else "(none)",
            "existing_locations": ", ".join(location_names) if location_names else "(none)",
            "existing_items": ", ".join(item_names) if item_names else "(none)",
            "existing_beats": "\n".join(beat_lines) if beat_lines else "(none)",
            "user_action": context.user_action,
            "narrative_response": context.narrative_response,
        }
        variables.update(MODE_TERMS["creative-writing" if context.is_creative else "adventure"])
        return variables

    def build_chat_history_block(self, chat_history: Sequence[ChatHistoryEntry]) -> str:
        """
        Render the visible chat history with the story time after each reply.
        """
        if not chat_history:
            return ""

        formatted = []
        for index, entry in enumerate(chat_history, start=1):
            role = "USER" if entry.role == "user" else "ASSISTANT"
            time_info = f" [Story Time: {format_time(entry.time_end)}]" if entry.time_end else ""
            content = truncate_words(entry.content, self.config.chat_history_truncation)
            formatted.append(f"[{index}] {role}{time_info}:\n{content}")

        return (
            "\n## Chat History (with story time)\n"
            "The following is the visible chat history. Use this to understand context "
            "and track when time was last advanced.\n"
            "Each ASSISTANT message shows the story time AFTER that message.\n"
            + "\n\n".join(formatted)
            + "\n"
        )

    def count_stagnant_turns(self, context: ClassificationContext) -> int:
        """
        Count the most recent assistant turns that left the story clock unchanged.

        Walks back through the assistant messages and stops at the first one
        whose end time differs from the current clock or is unknown.
        """
        assistant_times = [e.time_end for e in context.chat_history if e.role == "assistant"]
        if not assistant_times:
            return 0

        reference = context.current_story_time or assistant_times[-1]
        if reference is None:
            return 0

        stagnant = 0
        for time_end in reversed(assistant_times):
            if time_end is None or time_end != reference:
                break
            stagnant += 1
        return stagnant

    def build_time_nudge(self, context: ClassificationContext) -> str:
        """
        Ask for at least "minutes" of progression when the clock has stalled.
        """
        stagnant = self.count_stagnant_turns(context)
        if stagnant < self.config.stagnation_turns:
            return ""

        logging.debug(f"Story clock idle for {stagnant} turns, nudging time forward")
        return (
            f"\nNOTE: The story clock has not advanced in the last {stagnant} responses. "
            'Unless this turn is truly instantaneous, report at least "minutes" for '
            "scene.timeProgression.\n"
        )
