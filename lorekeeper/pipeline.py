"""
Turn orchestration for Lorekeeper.

StoryEngine wires the services together for the two cadences of an
interactive story:

- per turn: recall chapters, then build world and lorebook context
  concurrently, and afterwards classify the generated narration
- on its own cadence: close and summarize a chapter once enough
  unchaptered text has piled up

The engine never mutates the world state or the transcript; it only returns
context text, classification proposals and new chapter records.
"""

import asyncio
import logging
from typing import List, Optional, Sequence

from pydantic import Field

from .agents import AgentRunner, PresetManager, TextGenerator, create_generator
from .config import (
    ConfigManager, ContextConfig, LorebookConfig, MemoryConfig, ClassifierConfig,
)
from .classification import ClassifierService
from .memory import MemoryService
from .models import (
    Chapter, ClassificationContext, ClassificationResult, ContextResult, LorebookEntry,
    LorebookResult, RetrievalDecision, StoryEntry, WorldState,
)
from .models.base import LoreModel
from .retrieval import ContextBuilder, LorebookRetrieval


# Rough characters-per-token ratio used when no tokenizer count is supplied
CHARS_PER_TOKEN = 4


def estimate_tokens(entries: Sequence[StoryEntry]) -> int:
    """Approximate the token count of ``entries`` from their length."""
    return sum(len(entry.content) for entry in entries) // CHARS_PER_TOKEN


class StorySnapshot(LoreModel):
    """
    Everything the engine reads for one story, as stored by the application.
    """

    world_state: WorldState = Field(default_factory=WorldState)
    lorebook: List[LorebookEntry] = Field(default_factory=list)
    entries: List[StoryEntry] = Field(default_factory=list)
    chapters: List[Chapter] = Field(default_factory=list)

    @property
    def last_chapter_end_index(self) -> int:
        return max((ch.end_index for ch in self.chapters), default=0)


class TurnContext(LoreModel):
    """
    The assembled context for one narrative turn.
    """

    world: ContextResult = Field(default_factory=ContextResult)
    lorebook: LorebookResult = Field(default_factory=LorebookResult)
    retrieval: RetrievalDecision = Field(default_factory=RetrievalDecision)

    @property
    def context_block(self) -> str:
        """World context (with recalled chapters) followed by the lorebook block."""
        return self.world.context_block + self.lorebook.context_block


class StoryEngine:
    """
    Runs the retrieval, memory and classification services for a story.
    """

    def __init__(self, runner: Optional[AgentRunner] = None,
                 context_config: Optional[ContextConfig] = None,
                 lorebook_config: Optional[LorebookConfig] = None,
                 memory_config: Optional[MemoryConfig] = None,
                 classifier_config: Optional[ClassifierConfig] = None):
        """
        Initialize the engine.

        Args:
            runner: Agent runner shared by all services; without a generator
                every AI step takes its fallback
            context_config: World-state context settings
            lorebook_config: Lorebook retrieval settings
            memory_config: Chapter memory settings
            classifier_config: Classifier settings
        """
        self.runner = runner or AgentRunner()
        self.context_builder = ContextBuilder(self.runner, context_config)
        self.lorebook = LorebookRetrieval(self.runner, lorebook_config)
        self.memory = MemoryService(self.runner, memory_config)
        self.classifier = ClassifierService(self.runner, classifier_config)

    @classmethod
    def from_config(cls, config: ConfigManager,
                    generator: Optional[TextGenerator] = None) -> "StoryEngine":
        """
        Build an engine from configuration.

        Args:
            config: Loaded configuration
            generator: Generator to use; built from the ``ai`` section if omitted

        Returns:
            A configured StoryEngine
        """
        if generator is None:
            generator = create_generator(config)

        presets = PresetManager(overrides=config.preset_overrides, default_model=config.model_name)
        runner = AgentRunner(generator, presets, timeout=config.ai_timeout)
        return cls(
            runner,
            context_config=config.context_config,
            lorebook_config=config.lorebook_config,
            memory_config=config.memory_config,
            classifier_config=config.classifier_config,
        )

    async def prepare_turn(self, world_state: WorldState, lorebook: Sequence[LorebookEntry],
                           user_input: str, recent_entries: Sequence[StoryEntry],
                           chapters: Sequence[Chapter] = ()) -> TurnContext:
        """
        Assemble the context for the next narrative turn.

        Chapter recall runs first because its text is part of the world
        context; world and lorebook retrieval then run concurrently.

        Args:
            world_state: Current world snapshot
            lorebook: All lorebook entries
            user_input: The latest input
            recent_entries: Recent transcript, oldest first
            chapters: Existing chapters

        Returns:
            TurnContext with both results and the recall decision
        """
        decision = await self.memory.decide_retrieval(user_input, recent_entries, chapters)
        chapter_block = self.memory.build_retrieved_context_block(chapters, decision)

        world, lore = await asyncio.gather(
            self.context_builder.build_context(world_state, user_input, recent_entries, chapter_block),
            self.lorebook.get_relevant_entries(lorebook, user_input, recent_entries),
        )

        turn = TurnContext(world=world, lorebook=lore, retrieval=decision)
        logging.info(
            f"Prepared turn context: {len(world.all)} world entries, {len(lore.all)} lorebook entries, "
            f"{len(decision.relevant_chapter_ids)} recalled chapters"
        )
        return turn

    async def classify_turn(self, context: ClassificationContext) -> ClassificationResult:
        """Classify a generated narrative turn."""
        return await self.classifier.classify(context)

    async def maybe_create_chapter(self, entries: Sequence[StoryEntry], chapters: Sequence[Chapter],
                                   tokens_outside_buffer: Optional[int] = None,
                                   story_mode: str = "adventure") -> Optional[Chapter]:
        """
        Close and summarize a new chapter if the memory settings call for one.

        Args:
            entries: Full transcript
            chapters: Existing chapters
            tokens_outside_buffer: Token count of the unchaptered text outside
                the buffer; estimated from character length when omitted
            story_mode: Story mode for the chapter summary

        Returns:
            The new chapter, or None when no chapter is due
        """
        config = self.memory.config
        if not config.auto_summarize:
            return None

        last_end = max((ch.end_index for ch in chapters), default=0)
        if tokens_outside_buffer is None:
            tokens_outside_buffer = estimate_tokens(entries[last_end:len(entries) - config.chapter_buffer])

        analysis = await self.memory.analyze_for_chapter(entries, last_end, config, tokens_outside_buffer)
        if not analysis.should_create_chapter:
            return None

        return await self.memory.create_chapter(entries, last_end, analysis, chapters,
                                                story_mode=story_mode)
