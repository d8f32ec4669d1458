"""
Tests for chapter analysis, summarization and retrieval.
"""

import json
import unittest

from lorekeeper.agents import AgentRunner
from lorekeeper.config import MemoryConfig
from lorekeeper.errors import GenerationError
from lorekeeper.memory import MemoryService
from lorekeeper.memory.service import describe_story
from lorekeeper.models import Chapter, ChapterAnalysis, RetrievalDecision, StoryEntry, TimeTracker

from fakes import ScriptedGenerator, SlowGenerator, make_entries


def chapters():
    return [
        Chapter(id="ch1", number=1, title="First", summary="s1", start_index=0, end_index=4),
        Chapter(id="ch2", number=2, title="Second", summary="s2", start_index=4, end_index=8,
                characters=["Eldra"], start_time=TimeTracker(hours=8),
                end_time=TimeTracker(hours=9, minutes=30)),
        Chapter(id="ch3", number=3, summary="s3", start_index=8, end_index=12),
    ]


SUMMARY_REPLY = json.dumps({
    "title": "The Gate",
    "summary": "Kael reached the gate and met Eldra.",
    "keywords": ["gate", "eldra"],
    "characters": ["Kael", "Eldra"],
    "locations": ["Gate"],
    "plotThreads": ["Open the gate"],
    "emotionalTone": "hopeful",
})


class TestChapterAnalysis(unittest.IsolatedAsyncioTestCase):
    """Test choosing the chapter boundary."""

    def setUp(self):
        self.config = MemoryConfig(chapter_buffer=5, token_threshold=0)
        self.entries = make_entries(12)

    def _service(self, *replies):
        generator = ScriptedGenerator(*replies)
        return MemoryService(AgentRunner(generator), self.config), generator

    async def test_candidates_exclude_the_buffer(self):
        service, generator = self._service('{"chapterEnd": 4}')

        analysis = await service.analyze_for_chapter(self.entries, 0, None, 0)

        self.assertTrue(analysis.should_create_chapter)
        self.assertEqual(analysis.optimal_end_index, 4)
        prompt = generator.last_user_prompt
        self.assertIn("Valid message IDs: 1 to 7", prompt)
        self.assertIn("Message 1:\n[ACTION] Entry number 0 of the story.", prompt)
        self.assertIn("Message 7:\n[ACTION] Entry number 6 of the story.", prompt)
        self.assertNotIn("Message 8:", prompt)

    async def test_endpoint_is_clamped(self):
        service, _ = self._service('{"chapterEnd": 99}', '{"chapterEnd": -3}')

        high = await service.analyze_for_chapter(self.entries, 0, None, 0)
        low = await service.analyze_for_chapter(self.entries, 4, None, 0)

        self.assertEqual(high.optimal_end_index, 7)
        self.assertEqual(low.optimal_end_index, 5)
        self.assertLessEqual(high.optimal_end_index, len(self.entries) - self.config.chapter_buffer)

    async def test_ids_follow_the_cursor(self):
        service, generator = self._service('{"chapterEnd": 6}')

        analysis = await service.analyze_for_chapter(self.entries, 4, None, 0)

        self.assertEqual(analysis.optimal_end_index, 6)
        self.assertIn("Valid message IDs: 5 to 7", generator.last_user_prompt)

    async def test_legacy_relative_endpoint(self):
        service, _ = self._service('{"optimalEndIndex": 2}')

        analysis = await service.analyze_for_chapter(self.entries, 4, None, 0)

        self.assertEqual(analysis.optimal_end_index, 6)

    async def test_missing_endpoint_takes_whole_range(self):
        service, _ = self._service('{"suggestedTitle": "Arrival"}')

        analysis = await service.analyze_for_chapter(self.entries, 0, None, 0)

        self.assertEqual(analysis.optimal_end_index, 7)
        self.assertEqual(analysis.suggested_title, "Arrival")

    async def test_failure_fails_open(self):
        service, _ = self._service(GenerationError("offline"))

        analysis = await service.analyze_for_chapter(self.entries, 0, None, 0)

        self.assertEqual(analysis, ChapterAnalysis(should_create_chapter=True, optimal_end_index=7))

    async def test_generator_crash_fails_open(self):
        service, _ = self._service(RuntimeError("boom"))

        analysis = await service.analyze_for_chapter(self.entries, 0, None, 0)

        self.assertEqual(analysis, ChapterAnalysis(should_create_chapter=True, optimal_end_index=7))

    async def test_offline_service_fails_open(self):
        analysis = await MemoryService(config=self.config).analyze_for_chapter(self.entries, 0, None, 0)

        self.assertEqual(analysis.optimal_end_index, 7)

    async def test_no_chapter_inside_buffer(self):
        service, generator = self._service('{"chapterEnd": 1}')

        analysis = await service.analyze_for_chapter(self.entries, 7, None, 10_000)

        self.assertFalse(analysis.should_create_chapter)
        self.assertEqual(analysis.optimal_end_index, -1)
        self.assertEqual(generator.calls, [])

    async def test_no_chapter_below_threshold(self):
        service, generator = self._service('{"chapterEnd": 1}')

        analysis = await service.analyze_for_chapter(
            self.entries, 0, MemoryConfig(chapter_buffer=5, token_threshold=500), 499
        )

        self.assertFalse(analysis.should_create_chapter)
        self.assertEqual(generator.calls, [])

    async def test_analysis_is_repeatable(self):
        service, _ = self._service('{"chapterEnd": 5}')

        first = await service.analyze_for_chapter(self.entries, 0, None, 0)
        second = await service.analyze_for_chapter(self.entries, 0, None, 0)

        self.assertEqual(first, second)


class TestSummarization(unittest.IsolatedAsyncioTestCase):
    """Test chapter summaries."""

    async def test_summary_is_parsed(self):
        generator = ScriptedGenerator(SUMMARY_REPLY)
        service = MemoryService(AgentRunner(generator))

        summary = await service.summarize_chapter(make_entries(2))

        self.assertEqual(summary.title, "The Gate")
        self.assertEqual(summary.plot_threads, ["Open the gate"])
        self.assertEqual(summary.emotional_tone, "hopeful")
        self.assertFalse(summary.is_placeholder)
        prompt = generator.last_user_prompt
        self.assertIn("1. [ACTION] Entry number 0 of the story.", prompt)
        self.assertIn("2. [NARRATION] Entry number 1 of the story.", prompt)
        self.assertNotIn("<previous_chapter_summaries>", prompt)

    async def test_prompt_describes_the_story(self):
        generator = ScriptedGenerator(SUMMARY_REPLY)
        service = MemoryService(AgentRunner(generator))

        await service.summarize_chapter(make_entries(2))
        self.assertIn("an interactive adventure", generator.last_user_prompt)
        self.assertIn("second person, present tense", generator.last_user_prompt)

        await service.summarize_chapter(make_entries(2), story_mode="creative-writing")
        self.assertIn("a novel co-written with its author", generator.last_user_prompt)
        self.assertIn("third person, past tense", generator.last_user_prompt)

        await service.resummarize_chapter(chapters()[1], make_entries(4, start=4), chapters(),
                                          story_mode="creative-writing", pov="first")
        self.assertIn("first person, past tense", generator.last_user_prompt)

    def test_describe_story_unknown_mode(self):
        self.assertEqual(describe_story("noir"), describe_story("adventure"))

    async def test_failure_gives_placeholder(self):
        service = MemoryService(AgentRunner(ScriptedGenerator(GenerationError("down"))))

        summary = await service.summarize_chapter(make_entries(2))

        self.assertTrue(summary.is_placeholder)
        self.assertEqual(summary.summary, "Chapter summary unavailable.")
        self.assertEqual(summary.title, "Untitled Chapter")

    async def test_generator_crash_gives_placeholder(self):
        service = MemoryService(AgentRunner(ScriptedGenerator(RuntimeError("boom"))))

        summary = await service.summarize_chapter(make_entries(2))

        self.assertTrue(summary.is_placeholder)

    async def test_timeout_gives_placeholder(self):
        service = MemoryService(AgentRunner(SlowGenerator(reply=SUMMARY_REPLY), timeout=0.05))

        summary = await service.summarize_chapter(make_entries(2))

        self.assertTrue(summary.is_placeholder)

    async def test_wrong_shape_gives_placeholder(self):
        service = MemoryService(AgentRunner(ScriptedGenerator('["not", "an", "object"]')))

        summary = await service.summarize_chapter(make_entries(2))

        self.assertTrue(summary.is_placeholder)

    async def test_malformed_fields_collapse(self):
        reply = '{"summary": "They met.", "keywords": "gate", "characters": ["Kael", 3, null, ""]}'
        service = MemoryService(AgentRunner(ScriptedGenerator(reply)))

        summary = await service.summarize_chapter(make_entries(2))

        self.assertEqual(summary.summary, "They met.")
        self.assertEqual(summary.keywords, [])
        self.assertEqual(summary.characters, ["Kael", "3"])
        self.assertEqual(summary.title, "Untitled Chapter")

    async def test_resummarize_uses_only_earlier_chapters(self):
        generator = ScriptedGenerator(SUMMARY_REPLY)
        service = MemoryService(AgentRunner(generator))
        all_chapters = chapters()

        await service.resummarize_chapter(all_chapters[1], make_entries(4, start=4), all_chapters)

        prompt = generator.last_user_prompt
        self.assertIn("<previous_chapter_summaries>\nChapter 1 - First: s1\n", prompt)
        self.assertIn("NOTE: Only use for reference.", prompt)
        self.assertNotIn("Chapter 2", prompt)
        self.assertNotIn("Chapter 3", prompt)

    async def test_resummarized_chapter_keeps_range(self):
        service = MemoryService(AgentRunner(ScriptedGenerator(SUMMARY_REPLY)))
        old = chapters()[1]

        summary = await service.resummarize_chapter(old, make_entries(4, start=4), chapters())
        updated = old.with_summary(summary)

        self.assertEqual((updated.id, updated.number), ("ch2", 2))
        self.assertEqual((updated.start_index, updated.end_index), (4, 8))
        self.assertEqual(updated.start_time, TimeTracker(hours=8))
        self.assertEqual(updated.title, "The Gate")
        self.assertEqual(updated.plot_threads, ["Open the gate"])
        self.assertEqual(old.title, "Second")

    async def test_resummarize_first_chapter_has_no_context(self):
        generator = ScriptedGenerator(SUMMARY_REPLY)
        service = MemoryService(AgentRunner(generator))
        all_chapters = chapters()

        await service.resummarize_chapter(all_chapters[0], make_entries(4), all_chapters)

        self.assertNotIn("<previous_chapter_summaries>", generator.last_user_prompt)


class TestRetrievalDecision(unittest.IsolatedAsyncioTestCase):
    """Test deciding which chapters to recall."""

    async def test_decision_is_filtered(self):
        reply = json.dumps({
            "relevantChapterIds": ["ch2", "bogus", "ch2", "ch1", "ch3"],
            "queries": [
                {"chapterId": "ch2", "question": "Who is Eldra?"},
                {"chapterId": "ch3", "question": "What happened?"},
                {"chapterId": "bogus", "question": "?"},
                {"question": "no id"},
            ],
        })
        generator = ScriptedGenerator(reply)
        service = MemoryService(AgentRunner(generator), MemoryConfig(max_chapters_per_retrieval=2))

        decision = await service.decide_retrieval("Where is Eldra?", make_entries(3), chapters())

        self.assertEqual(decision.relevant_chapter_ids, ["ch2", "ch1"])
        self.assertEqual([(q.chapter_id, q.question) for q in decision.queries], [("ch2", "Who is Eldra?")])
        prompt = generator.last_user_prompt
        self.assertIn('"id": "ch2"', prompt)
        self.assertIn("Select at most 2 chapters.", prompt)

    async def test_no_chapters_or_disabled(self):
        generator = ScriptedGenerator('{"relevantChapterIds": ["ch1"]}')
        service = MemoryService(AgentRunner(generator))

        self.assertTrue((await service.decide_retrieval("hi", [], [])).is_empty)
        disabled = MemoryConfig(enable_retrieval=False)
        self.assertTrue((await service.decide_retrieval("hi", [], chapters(), disabled)).is_empty)
        self.assertEqual(generator.calls, [])

    async def test_failure_recalls_nothing(self):
        service = MemoryService(AgentRunner(ScriptedGenerator("I am not sure.")))

        decision = await service.decide_retrieval("hi", [], chapters())

        self.assertEqual(decision, RetrievalDecision())

    async def test_generator_crash_recalls_nothing(self):
        service = MemoryService(AgentRunner(ScriptedGenerator(ConnectionError("reset"))))

        decision = await service.decide_retrieval("hi", [], chapters())

        self.assertEqual(decision, RetrievalDecision())

    def test_retrieved_context_block(self):
        service = MemoryService()
        decision = RetrievalDecision(relevant_chapter_ids=["ch3", "ch2"])

        block = service.build_retrieved_context_block(chapters(), decision)

        self.assertEqual(
            block,
            "\n\n[FROM EARLIER IN THE STORY]"
            '\n\n• Chapter 2 - "Second" [Year 1, Day 1, 08:00 → Year 1, Day 1, 09:30]:\ns2'
            "\n\n• Chapter 3 [Year 1, Day 1, 00:00]:\ns3",
        )
        self.assertEqual(service.build_retrieved_context_block(chapters(), RetrievalDecision()), "")


class TestCreateChapter(unittest.IsolatedAsyncioTestCase):
    """Test building chapter records."""

    def setUp(self):
        self.entries = [
            StoryEntry(id=f"e{i}", type="narration", content=f"Entry {i}",
                       time_start=TimeTracker(hours=i), time_end=TimeTracker(hours=i, minutes=30))
            for i in range(10)
        ]

    async def test_create_chapter(self):
        generator = ScriptedGenerator(SUMMARY_REPLY)
        service = MemoryService(AgentRunner(generator))
        analysis = ChapterAnalysis(should_create_chapter=True, optimal_end_index=6)
        existing = chapters()[:2]

        chapter = await service.create_chapter(self.entries, 2, analysis, existing, chapter_id="new")

        self.assertEqual(chapter.id, "new")
        self.assertEqual(chapter.number, 3)
        self.assertEqual((chapter.start_index, chapter.end_index), (2, 6))
        self.assertEqual(chapter.title, "The Gate")
        self.assertEqual(chapter.characters, ["Kael", "Eldra"])
        self.assertEqual(chapter.start_time, TimeTracker(hours=2))
        self.assertEqual(chapter.end_time, TimeTracker(hours=5, minutes=30))
        self.assertIn("1. [NARRATION] Entry 2", generator.last_user_prompt)
        self.assertIn("Chapter 2 - Second: s2", generator.last_user_prompt)

    async def test_placeholder_uses_suggested_title(self):
        service = MemoryService()
        analysis = ChapterAnalysis(should_create_chapter=True, optimal_end_index=3, suggested_title="Arrival")

        chapter = await service.create_chapter(self.entries, 0, analysis, [])

        self.assertEqual(chapter.number, 1)
        self.assertEqual(chapter.title, "Arrival")
        self.assertEqual(chapter.summary, "Chapter summary unavailable.")
        self.assertTrue(chapter.id)

    async def test_invalid_range(self):
        service = MemoryService()

        with self.assertRaises(ValueError):
            await service.create_chapter(self.entries, 4, ChapterAnalysis(should_create_chapter=True,
                                                                          optimal_end_index=4), [])
        with self.assertRaises(ValueError):
            await service.create_chapter(self.entries, 0, ChapterAnalysis(), [])


if __name__ == '__main__':
    unittest.main()
