"""
Memory service for Lorekeeper.

Compresses old transcript into chapter summaries and decides when earlier
chapters should be recalled into the prompt. Chapters cover contiguous,
non-overlapping transcript ranges; the most recent ``chapter_buffer``
entries are never chaptered.

Every AI-backed operation degrades to a documented fallback instead of
raising:

- chapter analysis fails open, closing the chapter at the buffer boundary
- summarization falls back to a clearly-marked placeholder summary
- retrieval falls back to recalling nothing
"""

import json
import logging
import uuid
from typing import Any, List, Optional, Sequence

from pydantic import ValidationError

from ..agents import AgentRunner
from ..config import MemoryConfig
from ..errors import LorekeeperError
from ..models import (
    Chapter, ChapterAnalysis, ChapterQuery, ChapterSummary, RetrievalDecision,
    StoryEntry, format_time_range,
)


def _as_int(value: Any) -> Optional[int]:
    """Read an integer from a decoded JSON value, or None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def _no_chapter() -> ChapterAnalysis:
    return ChapterAnalysis(should_create_chapter=False, optimal_end_index=-1)


# (description, default point of view, default tense) per story mode
STORY_VOICES = {
    "adventure": ("an interactive adventure where the reader plays the protagonist", "second", "present"),
    "creative-writing": ("a novel co-written with its author", "third", "past"),
}


def describe_story(story_mode: str = "adventure", pov: Optional[str] = None,
                   tense: Optional[str] = None) -> str:
    """One line telling the summarizer what kind of story it is reading."""
    description, default_pov, default_tense = STORY_VOICES.get(story_mode, STORY_VOICES["adventure"])
    return f"This story is {description}, told in {pov or default_pov} person, {tense or default_tense} tense."


class MemoryService:
    """
    Chapter analysis, summarization and retrieval.
    """

    def __init__(self, runner: Optional[AgentRunner] = None,
                 config: Optional[MemoryConfig] = None):
        """
        Initialize the memory service.

        Args:
            runner: Agent runner for the memory presets; None makes every
                AI call take its fallback path
            config: Default memory settings, used when a call does not pass its own
        """
        self.runner = runner or AgentRunner()
        self.config = config or MemoryConfig()

    async def analyze_for_chapter(self, entries: Sequence[StoryEntry], last_chapter_end_index: int,
                                  config: Optional[MemoryConfig],
                                  tokens_outside_buffer: int) -> ChapterAnalysis:
        """
        Decide whether a new chapter should be closed, and where.

        Candidates are ``entries[last_chapter_end_index:len(entries) - chapter_buffer]``.
        The model picks the closing message; its choice is clamped into the
        candidate range.

        Args:
            entries: Full transcript, oldest first
            last_chapter_end_index: Exclusive end of the last chapter (0 if none)
            config: Memory settings, or None for the service defaults
            tokens_outside_buffer: Token estimate of the unchaptered, unbuffered text

        Returns:
            ChapterAnalysis whose ``optimal_end_index`` is an exclusive index
        """
        config = config or self.config
        start = last_chapter_end_index
        since_last = len(entries) - start

        logging.debug(
            f"Chapter analysis: {len(entries)} entries, cursor {start}, "
            f"{since_last} since last chapter, {tokens_outside_buffer}/{config.token_threshold} tokens"
        )

        if since_last <= config.chapter_buffer:
            logging.debug("All unchaptered messages are within the buffer")
            return _no_chapter()

        if tokens_outside_buffer < config.token_threshold:
            logging.debug("Tokens outside buffer below threshold")
            return _no_chapter()

        end = len(entries) - config.chapter_buffer
        candidates = entries[start:end]
        if not candidates:
            return _no_chapter()

        count = len(candidates)
        messages_in_range = "\n\n---\n\n".join(
            f"Message {start + i + 1}:\n{entry.prompt_prefix} {entry.content}"
            for i, entry in enumerate(candidates)
        )

        try:
            parsed = await self.runner.run_json(
                "chapter_analysis",
                first_valid_id=start + 1,
                last_valid_id=start + count,
                messages_in_range=messages_in_range,
            )
        except LorekeeperError as e:
            logging.warning(f"Chapter analysis failed, closing at buffer boundary: {e}")
            return ChapterAnalysis(should_create_chapter=True, optimal_end_index=end)

        result = self._parse_chapter_analysis(parsed, start, count)
        logging.info(f"Chapter analysis: close at {result.optimal_end_index} (range {start}-{end})")
        return result

    def _parse_chapter_analysis(self, parsed: dict, start: int, count: int) -> ChapterAnalysis:
        """
        Convert the model's endpoint into an exclusive end index.

        ``chapterEnd`` is an absolute 1-based message id; the older
        ``optimalEndIndex`` is relative to the candidate range.
        """
        chapter_end = _as_int(parsed.get("chapterEnd"))
        relative_end = _as_int(parsed.get("optimalEndIndex"))

        if chapter_end is not None:
            end_index = min(max(start + 1, chapter_end), start + count)
        elif relative_end is not None:
            end_index = start + min(max(1, relative_end), count)
        else:
            end_index = start + count

        title = parsed.get("suggestedTitle")
        return ChapterAnalysis(
            should_create_chapter=True,
            optimal_end_index=end_index,
            suggested_title=title.strip() if isinstance(title, str) and title.strip() else None,
        )

    async def summarize_chapter(self, entries: Sequence[StoryEntry],
                                previous_chapters: Optional[Sequence[Chapter]] = None,
                                story_mode: str = "adventure", pov: Optional[str] = None,
                                tense: Optional[str] = None) -> ChapterSummary:
        """
        Summarize a chapter's entries and extract its metadata.

        Args:
            entries: The entries the chapter covers
            previous_chapters: Earlier chapters, shown to the model for reference only
            story_mode: ``adventure`` or ``creative-writing``
            pov: Point of view ("first", "second", "third"); defaults per mode
            tense: Narrative tense ("present", "past"); defaults per mode

        Returns:
            ChapterSummary, or the placeholder summary on failure
        """
        logging.debug(
            f"Summarizing {len(entries)} entries ({story_mode}) with "
            f"{len(previous_chapters or [])} previous chapters"
        )

        chapter_content = "\n\n".join(
            f"{i}. {entry.prompt_prefix} {entry.content}"
            for i, entry in enumerate(entries, start=1)
        )

        try:
            parsed = await self.runner.run_json(
                "chapter_summarization",
                story_context=describe_story(story_mode, pov, tense),
                previous_context=self._previous_context(previous_chapters),
                chapter_content=chapter_content,
            )
            summary = ChapterSummary.model_validate(parsed)
        except LorekeeperError as e:
            logging.warning(f"Chapter summarization failed: {e}")
            return ChapterSummary.placeholder()
        except ValidationError as e:
            logging.warning(f"Chapter summary had an unexpected shape: {e.error_count()} error(s)")
            return ChapterSummary.placeholder()

        logging.info(f"Summarized chapter: {summary.title}")
        return summary

    @staticmethod
    def _previous_context(previous_chapters: Optional[Sequence[Chapter]]) -> str:
        if not previous_chapters:
            return ""

        ordered = sorted(previous_chapters, key=lambda ch: ch.number)
        summaries = "\n\n".join(
            f"Chapter {ch.number}{f' - {ch.title}' if ch.title else ''}: {ch.summary}"
            for ch in ordered
        )
        return (
            "<previous_chapter_summaries>\n"
            f"{summaries}\n"
            "NOTE: Only use for reference. This is NOT what you will be summarizing.\n"
            "</previous_chapter_summaries>\n\n"
        )

    async def resummarize_chapter(self, chapter: Chapter, entries: Sequence[StoryEntry],
                                  all_chapters: Sequence[Chapter], story_mode: str = "adventure",
                                  pov: Optional[str] = None, tense: Optional[str] = None) -> ChapterSummary:
        """
        Regenerate a chapter's summary.

        Only chapters numbered before ``chapter`` are given as context; the
        chapter's own old summary and every later chapter are left out.
        """
        previous = [ch for ch in all_chapters if ch.number < chapter.number]
        logging.debug(f"Resummarizing chapter {chapter.number} with {len(previous)} earlier chapters")
        return await self.summarize_chapter(entries, previous, story_mode, pov, tense)

    async def decide_retrieval(self, user_input: str, recent_entries: Sequence[StoryEntry],
                               chapters: Sequence[Chapter],
                               config: Optional[MemoryConfig] = None) -> RetrievalDecision:
        """
        Decide which earlier chapters should be recalled for this turn.

        Args:
            user_input: The latest input
            recent_entries: Recent transcript, oldest first
            chapters: All chapters
            config: Memory settings, or None for the service defaults

        Returns:
            RetrievalDecision; empty when retrieval is disabled, there are no
            chapters, or the model call fails
        """
        config = config or self.config
        if not config.enable_retrieval or not chapters:
            return RetrievalDecision()

        chapter_summaries = json.dumps([
            {
                "id": ch.id,
                "number": ch.number,
                "title": ch.title,
                "summary": ch.summary,
                "characters": ch.characters,
                "locations": ch.locations,
            }
            for ch in chapters
        ], indent=2, ensure_ascii=False)

        count = config.recent_entries_for_retrieval
        tail = recent_entries[-count:] if count > 0 else []
        recent_context = "\n".join(entry.content for entry in tail)

        try:
            parsed = await self.runner.run_json(
                "retrieval_decision",
                user_input=user_input,
                recent_context=recent_context,
                chapter_summaries=chapter_summaries,
                max_chapters_per_retrieval=config.max_chapters_per_retrieval,
            )
        except LorekeeperError as e:
            logging.warning(f"Retrieval decision failed: {e}")
            return RetrievalDecision()

        decision = self._parse_retrieval_decision(parsed, chapters, config.max_chapters_per_retrieval)
        if not decision.is_empty:
            logging.info(f"Recalling chapters: {', '.join(decision.relevant_chapter_ids)}")
        return decision

    @staticmethod
    def _parse_retrieval_decision(parsed: dict, chapters: Sequence[Chapter],
                                  max_chapters: int) -> RetrievalDecision:
        known_ids = {ch.id for ch in chapters}

        raw_ids = parsed.get("relevantChapterIds")
        selected: List[str] = []
        for raw in raw_ids if isinstance(raw_ids, list) else []:
            chapter_id = str(raw) if isinstance(raw, (str, int)) and not isinstance(raw, bool) else None
            if chapter_id in known_ids and chapter_id not in selected:
                selected.append(chapter_id)
        selected = selected[:max_chapters]

        raw_queries = parsed.get("queries")
        queries: List[ChapterQuery] = []
        for raw in raw_queries if isinstance(raw_queries, list) else []:
            try:
                query = ChapterQuery.model_validate(raw)
            except ValidationError:
                continue
            if query.chapter_id in selected and query.question.strip():
                queries.append(query)

        return RetrievalDecision(relevant_chapter_ids=selected, queries=queries)

    def build_retrieved_context_block(self, chapters: Sequence[Chapter],
                                      decision: RetrievalDecision) -> str:
        """
        Render the recalled chapters for the narrative prompt.

        Chapters keep the order of ``chapters``. Returns an empty string when
        nothing is recalled.
        """
        if decision.is_empty:
            return ""

        wanted = set(decision.relevant_chapter_ids)
        relevant = [ch for ch in chapters if ch.id in wanted]
        if not relevant:
            return ""

        block = "\n\n[FROM EARLIER IN THE STORY]"
        for chapter in relevant:
            block += f"\n\n• Chapter {chapter.number}"
            if chapter.title:
                block += f' - "{chapter.title}"'
            block += format_time_range(chapter.start_time, chapter.end_time)
            block += f":\n{chapter.summary}"
        return block

    async def create_chapter(self, entries: Sequence[StoryEntry], last_chapter_end_index: int,
                             analysis: ChapterAnalysis, existing_chapters: Sequence[Chapter],
                             chapter_id: Optional[str] = None,
                             story_mode: str = "adventure") -> Chapter:
        """
        Summarize the analysed range and build the new chapter record.

        Args:
            entries: Full transcript
            last_chapter_end_index: Exclusive end of the previous chapter
            analysis: A positive result from :meth:`analyze_for_chapter`
            existing_chapters: All chapters so far
            chapter_id: Optional id for the new chapter (random if omitted)
            story_mode: Story mode passed on to the summarizer

        Returns:
            The new, immutable Chapter

        Raises:
            ValueError: If the analysis does not describe a non-empty range
        """
        start = last_chapter_end_index
        end = analysis.optimal_end_index
        if not analysis.should_create_chapter or end <= start or end > len(entries):
            raise ValueError(f"No chapter to create for range {start}-{end}")

        covered = entries[start:end]
        summary = await self.summarize_chapter(covered, existing_chapters, story_mode)

        title = summary.title
        if summary.is_placeholder and analysis.suggested_title:
            title = analysis.suggested_title

        start_time = covered[0].time_start or covered[0].time_end
        end_time = covered[-1].time_end or covered[-1].time_start

        number = max((ch.number for ch in existing_chapters), default=0) + 1
        chapter = Chapter(
            id=chapter_id or uuid.uuid4().hex,
            number=number,
            title=title,
            summary=summary.summary,
            start_index=start,
            end_index=end,
            keywords=summary.keywords,
            characters=summary.characters,
            locations=summary.locations,
            plot_threads=summary.plot_threads,
            emotional_tone=summary.emotional_tone,
            start_time=start_time,
            end_time=end_time,
        )
        logging.info(f"Created chapter {number} covering entries {start}-{end - 1}")
        return chapter
