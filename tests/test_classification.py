"""
Tests for turn classification and classifier reply parsing.
"""

import json
import unittest

from lorekeeper.agents import AgentRunner
from lorekeeper.classification import ClassifierService, parse_classification_response
from lorekeeper.classification.classifier import truncate_words
from lorekeeper.config import ClassifierConfig
from lorekeeper.errors import GenerationError
from lorekeeper.models import (
    Character, ChatHistoryEntry, ClassificationContext, ClassificationResult, Item, Location,
    StoryBeat, TimeTracker,
)

from fakes import ScriptedGenerator


WELL_FORMED = {
    "entryUpdates": {
        "characterUpdates": [
            {"name": "Eldra", "changes": {"status": "Deceased", "newTraits": ["grim"]}},
            {"changes": {"status": "active"}},
        ],
        "locationUpdates": [{"name": "Gate", "changes": {"visited": True, "current": True}}],
        "itemUpdates": [{"name": "Torch", "changes": {"quantity": 1, "location": "dropped"}}],
        "storyBeatUpdates": [{"title": "Find the Archive", "changes": {"status": "completed"}}],
        "newCharacters": [
            {"name": "Tor", "description": "A gate guard", "traits": ["loyal"],
             "visualDescriptors": ["Build: broad"]},
            {"description": "nameless"},
        ],
        "newLocations": [{"name": "Archive", "description": "Dusty halls"}],
        "newItems": [{"name": "Brass Key", "quantity": 1}],
        "newStoryBeats": [{"title": "The Gate Opens", "type": "omen", "status": "active"}],
    },
    "scene": {
        "currentLocationName": "Gate",
        "presentCharacterNames": ["Tor", "Eldra"],
        "timeProgression": "Hours",
    },
}


class TestParseClassification(unittest.TestCase):
    """Test parse_classification_response()."""

    def test_well_formed(self):
        result = parse_classification_response(json.dumps(WELL_FORMED))
        updates = result.entry_updates

        self.assertEqual([u.name for u in updates.character_updates], ["Eldra"])
        self.assertEqual(updates.character_updates[0].changes.status, "deceased")
        self.assertEqual(updates.character_updates[0].changes.new_traits, ["grim"])
        self.assertTrue(updates.location_updates[0].changes.current)
        self.assertEqual(updates.item_updates[0].changes.location, "dropped")
        self.assertEqual(updates.story_beat_updates[0].changes.status, "completed")
        self.assertEqual([c.name for c in updates.new_characters], ["Tor"])
        self.assertEqual(updates.new_characters[0].visual_descriptors, ["Build: broad"])
        self.assertTrue(updates.new_locations[0].visited)
        self.assertEqual(updates.new_items[0].location, "inventory")
        self.assertEqual(updates.new_story_beats[0].type, "event")
        self.assertEqual(updates.new_story_beats[0].status, "active")
        self.assertEqual(result.scene.current_location_name, "Gate")
        self.assertEqual(result.scene.present_character_names, ["Tor", "Eldra"])
        self.assertEqual(result.scene.time_progression, "hours")
        self.assertFalse(result.is_empty)

    def test_missing_lists_default_to_empty(self):
        reply = {"entryUpdates": {"newLocations": [{"name": "Archive"}]}, "scene": {}}
        result = parse_classification_response(json.dumps(reply))

        self.assertEqual(result.entry_updates.new_characters, [])
        self.assertEqual(len(result.entry_updates.new_locations), 1)
        self.assertIsNone(result.scene.current_location_name)
        self.assertEqual(result.scene.time_progression, "none")

    def test_wrong_types_collapse(self):
        reply = {
            "entryUpdates": {"newCharacters": "Tor", "characterUpdates": None},
            "scene": {"presentCharacterNames": "Tor", "timeProgression": "weeks", "currentLocationName": "  "},
        }
        result = parse_classification_response(json.dumps(reply))

        self.assertEqual(result.entry_updates.new_characters, [])
        self.assertEqual(result.entry_updates.character_updates, [])
        self.assertEqual(result.scene.present_character_names, [])
        self.assertEqual(result.scene.time_progression, "none")
        self.assertIsNone(result.scene.current_location_name)

    def test_non_object_sections(self):
        result = parse_classification_response('{"entryUpdates": [], "scene": "Gate"}')

        self.assertTrue(result.is_empty)

    def test_prose_gives_empty_result(self):
        result = parse_classification_response("Nothing much changed in this turn.")

        self.assertEqual(result, ClassificationResult.empty())

    def test_fenced_reply(self):
        reply = "```json\n" + json.dumps({"scene": {"timeProgression": "minutes"}}) + "\n```"

        self.assertEqual(parse_classification_response(reply).scene.time_progression, "minutes")

    def test_truncated_reply(self):
        reply = ('{"entryUpdates": {"newLocations": [{"name": "Gate", "description": "Iron"}], '
                 '"newItems": [{"name": "Ke')
        result = parse_classification_response(reply)

        self.assertEqual([l.name for l in result.entry_updates.new_locations], ["Gate"])
        self.assertEqual([i.name for i in result.entry_updates.new_items], ["Ke"])

    def test_wire_format_uses_camel_case(self):
        wire = parse_classification_response(json.dumps(WELL_FORMED)).to_wire()

        self.assertIn("entryUpdates", wire)
        self.assertIn("newCharacters", wire["entryUpdates"])
        self.assertEqual(wire["scene"]["timeProgression"], "hours")


def classification_context(**overrides) -> ClassificationContext:
    values = dict(
        narrative_response="Eldra opens the gate. Tor salutes.",
        user_action="I wave to Tor",
        existing_characters=[
            Character(id="c1", name="Kael", relationship="self"),
            Character(id="c2", name="Eldra", traits=["wise"], visual_descriptors=["grey robes"]),
        ],
        existing_locations=[Location(id="l1", name="Gate")],
        existing_items=[Item(id="i1", name="Torch")],
        existing_story_beats=[
            StoryBeat(id="b1", title="Find the Archive", status="active"),
            StoryBeat(id="b2", title="Old War", status="completed"),
        ],
        genre="Fantasy",
    )
    values.update(overrides)
    return ClassificationContext(**values)


def history(*times):
    """User/assistant pairs whose assistant replies end at ``times``."""
    entries = []
    for i, time_end in enumerate(times):
        entries.append(ChatHistoryEntry(role="user", content=f"action {i}"))
        entries.append(ChatHistoryEntry(role="assistant", content=f"reply {i}", time_end=time_end))
    return entries


class TestClassifierPrompt(unittest.TestCase):
    """Test the classifier prompt variables."""

    def test_truncate_words(self):
        self.assertEqual(truncate_words("one two three four", 2), "one two...")
        self.assertEqual(truncate_words("one two", 2), "one two")
        self.assertEqual(truncate_words("one two three", 0), "one two three")

    def test_adventure_variables(self):
        variables = ClassifierService().build_prompt_variables(classification_context())

        self.assertEqual(variables["protagonist_name"], "Kael")
        self.assertEqual(variables["genre"], "Genre: Fantasy")
        self.assertEqual(variables["entity_counts"], "2 characters, 1 locations, 1 items")
        self.assertIn("• Eldra | Traits: wise | Appearance: grey robes", variables["existing_characters"])
        self.assertEqual(variables["existing_beats"], '• "Find the Archive" [active]: (no description)')
        self.assertEqual(variables["input_label"], "The Player's Action")
        self.assertEqual(variables["item_location_options"], "inventory|dropped|given")
        self.assertEqual(variables["current_time_info"], "")
        self.assertEqual(variables["time_nudge"], "")

    def test_creative_writing_vocabulary(self):
        context = classification_context(story_mode="creative-writing")
        variables = ClassifierService().build_prompt_variables(context)

        self.assertEqual(variables["input_label"], "The Author's Direction")
        self.assertEqual(variables["default_item_location"], "with_character")
        self.assertEqual(variables["story_beat_types"], "plot_point|revelation|milestone|event")

    def test_chat_history_block(self):
        service = ClassifierService(config=ClassifierConfig(chat_history_truncation=2))
        entries = [
            ChatHistoryEntry(role="user", content="I open the heavy door"),
            ChatHistoryEntry(role="assistant", content="It swings open", time_end=TimeTracker(hours=8)),
        ]

        block = service.build_chat_history_block(entries)

        self.assertIn("## Chat History (with story time)", block)
        self.assertIn("[1] USER:\nI open...", block)
        self.assertIn("[2] ASSISTANT [Story Time: Year 1, Day 1, 08:00]:\nIt swings...", block)
        self.assertEqual(service.build_chat_history_block([]), "")

    def test_stagnant_clock_adds_nudge(self):
        now = TimeTracker(hours=9)
        context = classification_context(
            chat_history=history(TimeTracker(hours=8), now, now, now),
            current_story_time=now,
        )
        service = ClassifierService()

        self.assertEqual(service.count_stagnant_turns(context), 3)
        nudge = service.build_prompt_variables(context)["time_nudge"]
        self.assertIn("has not advanced in the last 3 responses", nudge)
        self.assertIn('at least "minutes"', nudge)

    def test_moving_clock_has_no_nudge(self):
        context = classification_context(
            chat_history=history(TimeTracker(hours=7), TimeTracker(hours=8), TimeTracker(hours=9)),
        )
        service = ClassifierService()

        self.assertEqual(service.count_stagnant_turns(context), 1)
        self.assertEqual(service.build_time_nudge(context), "")

    def test_unknown_times_do_not_count(self):
        context = classification_context(chat_history=history(None, None, None))

        self.assertEqual(ClassifierService().count_stagnant_turns(context), 0)


class TestClassifierService(unittest.IsolatedAsyncioTestCase):
    """Test classify() end to end with a scripted model."""

    async def test_classify(self):
        generator = ScriptedGenerator(json.dumps(WELL_FORMED))
        service = ClassifierService(AgentRunner(generator))

        result = await service.classify(classification_context())

        self.assertEqual(result.scene.current_location_name, "Gate")
        call = generator.calls[0]
        self.assertIn("told about Kael", call["system_prompt"])
        self.assertIn("## The Player's Action\nI wave to Tor", call["user_prompt"])
        self.assertIn("Eldra opens the gate.", call["user_prompt"])
        self.assertIn('"location": "inventory|dropped|given"', call["user_prompt"])

    async def test_classify_failure_gives_empty_result(self):
        service = ClassifierService(AgentRunner(ScriptedGenerator(GenerationError("down"))))

        result = await service.classify(classification_context())

        self.assertTrue(result.is_empty)

    async def test_classify_generator_crash_gives_empty_result(self):
        service = ClassifierService(AgentRunner(ScriptedGenerator(RuntimeError("boom"))))

        result = await service.classify(classification_context())

        self.assertTrue(result.is_empty)

    async def test_classify_without_model(self):
        result = await ClassifierService().classify(classification_context())

        self.assertTrue(result.is_empty)


if __name__ == '__main__':
    unittest.main()
