"""
Tests for the tiered world-state context builder.
"""

import unittest

from lorekeeper.agents import AgentRunner, PresetManager
from lorekeeper.config import ContextConfig
from lorekeeper.errors import GenerationError
from lorekeeper.models import Character, Item, Location, StoryBeat, StoryEntry, WorldState
from lorekeeper.retrieval import ContextBuilder

from fakes import ScriptedGenerator, SlowGenerator


def crowded_world() -> WorldState:
    """Two active characters and 35 inactive villagers."""
    characters = [
        Character(id="c-aria", name="Aria", status="active"),
        Character(id="c-bram", name="Bram", status="active"),
    ]
    characters += [
        Character(id=f"v{i:02d}", name=f"Villager {i:02d}", status="inactive")
        for i in range(1, 36)
    ]
    return WorldState(characters=characters)


def small_world() -> WorldState:
    ruins = Location(id="l-ruins", name="Ruins", description="Old stones.", current=True, visited=True)
    return WorldState(
        characters=[
            Character(id="c-hero", name="Kael", relationship="self"),
            Character(id="c-eldra", name="Eldra", relationship="mentor", description="A sage",
                      traits=["wise"], visual_descriptors=["grey robes"]),
            Character(id="c-grim", name="Grimwald", status="inactive", description="A smith"),
        ],
        locations=[
            ruins,
            Location(id="l-tower", name="Tower", description="A tall spire."),
        ],
        items=[
            Item(id="i-torch", name="Torch", quantity=2, equipped=True),
            Item(id="i-key", name="Silver Key", location="Tower"),
        ],
        story_beats=[
            StoryBeat(id="b-quest", title="Find the Archive", status="active", type="quest"),
            StoryBeat(id="b-old", title="The Fall of Ardent", status="completed", description="Long ago."),
        ],
    )


class TestContextBuilderTiers(unittest.IsolatedAsyncioTestCase):
    """Test tier assignment."""

    async def test_tiers_partition_the_world(self):
        builder = ContextBuilder()
        result = await builder.build_context(
            small_world(), "I ask Grimwald about the silver key and the tower", []
        )

        ids = [e.id for e in result.all]
        self.assertEqual(len(ids), len(set(ids)))
        self.assertEqual({e.id for e in result.tier1},
                         {"l-ruins", "c-eldra", "i-torch", "b-quest"})
        self.assertEqual({e.id for e in result.tier2}, {"c-grim", "l-tower", "i-key"})
        self.assertEqual(result.tier3, [])

    async def test_tier1_priorities(self):
        result = await ContextBuilder().build_context(small_world(), "", [])
        priorities = {e.id: e.priority for e in result.tier1}

        self.assertEqual(priorities, {"l-ruins": 100, "c-eldra": 90, "b-quest": 80, "i-torch": 70})
        self.assertTrue(all(e.tier == 1 for e in result.tier1))

    async def test_protagonist_only_left_out_of_tier1(self):
        result = await ContextBuilder().build_context(small_world(), "Kael draws his sword", [])

        self.assertNotIn("c-hero", [e.id for e in result.tier1])
        self.assertIn("c-hero", [e.id for e in result.tier2])

    async def test_explicit_current_location_wins(self):
        world = small_world()
        world.current_location = world.locations[1]

        result = await ContextBuilder().build_context(world, "", [])
        current = [e for e in result.tier1 if e.type == "location"]

        self.assertEqual([e.id for e in current], ["l-tower"])
        self.assertEqual(current[0].priority, 100)
        self.assertTrue(current[0].metadata["current"])

    async def test_recent_transcript_counts_as_mention(self):
        entries = [StoryEntry(id="1", type="narration", content="Grimwald hammers at his anvil.")]
        result = await ContextBuilder().build_context(small_world(), "I wait", entries)

        self.assertIn("c-grim", [e.id for e in result.tier2])

    async def test_tier_cap(self):
        world = WorldState(characters=[
            Character(id=f"c{i}", name=f"Guard {i}", status="active") for i in range(15)
        ])
        result = await ContextBuilder(config=ContextConfig(max_entries_per_tier=10)).build_context(world, "", [])

        self.assertEqual(len(result.tier1), 10)


class TestContextBuilderLLMTier(unittest.IsolatedAsyncioTestCase):
    """Test Tier 3 selection."""

    async def test_llm_selects_from_large_remainder(self):
        generator = ScriptedGenerator("[1, 2]")
        builder = ContextBuilder(AgentRunner(generator))

        result = await builder.build_context(crowded_world(), "I wait", [])

        self.assertEqual([e.id for e in result.tier1], ["c-aria", "c-bram"])
        self.assertEqual(result.tier2, [])
        self.assertEqual([e.id for e in result.tier3], ["v01", "v02"])
        self.assertTrue(all(e.priority == 30 and e.tier == 3 for e in result.tier3))

        prompt = generator.last_user_prompt
        self.assertIn("1. [character] Villager 01: No description", prompt)
        self.assertIn("35. [character] Villager 35: No description", prompt)
        self.assertNotIn("Aria", prompt)

    async def test_small_remainder_skips_llm(self):
        generator = ScriptedGenerator("[1]")
        result = await ContextBuilder(AgentRunner(generator)).build_context(small_world(), "", [])

        self.assertEqual(generator.calls, [])
        self.assertEqual(result.tier3, [])

    async def test_llm_disabled(self):
        generator = ScriptedGenerator("[1]")
        builder = ContextBuilder(AgentRunner(generator), ContextConfig(enable_llm_selection=False))

        result = await builder.build_context(crowded_world(), "", [])

        self.assertEqual(generator.calls, [])
        self.assertEqual(result.tier3, [])

    async def test_llm_failure_yields_no_tier3(self):
        builder = ContextBuilder(AgentRunner(ScriptedGenerator(GenerationError("down"))))

        result = await builder.build_context(crowded_world(), "", [])

        self.assertEqual(result.tier3, [])
        self.assertEqual(len(result.tier1), 2)

    async def test_generator_crash_yields_no_tier3(self):
        builder = ContextBuilder(AgentRunner(ScriptedGenerator(RuntimeError("rate limited"))))

        result = await builder.build_context(crowded_world(), "", [])

        self.assertEqual(result.tier3, [])
        self.assertEqual(len(result.tier1), 2)

    async def test_timeout_yields_no_tier3(self):
        builder = ContextBuilder(AgentRunner(SlowGenerator(), timeout=0.05))

        result = await builder.build_context(crowded_world(), "", [])

        self.assertEqual(result.tier3, [])
        self.assertEqual(len(result.tier1), 2)

    async def test_broken_prompt_override_yields_no_tier3(self):
        generator = ScriptedGenerator("[1]")
        presets = PresetManager(overrides={"entry_selection": {"user_prompt_template": "Pick from {entries}"}})
        builder = ContextBuilder(AgentRunner(generator, presets))

        result = await builder.build_context(crowded_world(), "", [])

        self.assertEqual(result.tier3, [])
        self.assertEqual(generator.calls, [])

    async def test_unparseable_reply_yields_no_tier3(self):
        builder = ContextBuilder(AgentRunner(ScriptedGenerator("Nobody here matters.")))

        result = await builder.build_context(crowded_world(), "", [])

        self.assertEqual(result.tier3, [])


class TestContextBlock(unittest.IsolatedAsyncioTestCase):
    """Test rendering of the context block."""

    async def test_block_sections(self):
        result = await ContextBuilder().build_context(
            small_world(), "I ask Grimwald about the silver key and the tower", [],
            retrieved_chapter_context="\n\n[FROM EARLIER IN THE STORY]\n\n• Chapter 1:\nThey met.",
        )
        block = result.context_block

        self.assertTrue(block.startswith("\n\n[CURRENT LOCATION]\nRuins\nOld stones."))
        self.assertIn("\n• Eldra (mentor) - A sage [wise] {Appearance: grey robes}", block)
        self.assertIn("\n• Grimwald - A smith", block)
        self.assertIn("\n\n[INVENTORY]\nTorch (×2) [equipped]", block)
        self.assertIn("\n\n[ACTIVE THREADS]\n• Find the Archive", block)
        self.assertIn("\n\n[RELEVANT LOCATIONS]\n• Tower: A tall spire.", block)
        self.assertIn("\n\n[RELEVANT ITEMS]\n• Silver Key", block)
        self.assertNotIn("[RELATED STORY THREADS]", block)
        self.assertTrue(block.endswith("They met."))

    async def test_empty_world_gives_empty_block(self):
        result = await ContextBuilder().build_context(WorldState(), "hello", [])

        self.assertEqual(result.context_block, "")
        self.assertEqual(result.all, [])


if __name__ == '__main__':
    unittest.main()
