#!/usr/bin/env python3
"""
Lorekeeper - World-State Memory for Interactive Fiction

Command-line entry point. Runs the Lorekeeper pipeline over a story snapshot
(a JSON file holding the world state, lorebook, transcript and chapters) and
prints the result: the assembled turn context, a newly closed chapter, or the
classification of a narrative turn.
"""

import asyncio
import json
import logging
import sys
import argparse
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from lorekeeper import __version__
from lorekeeper.agents import PresetManager, TextGenerator, create_generator
from lorekeeper.config import ConfigManager
from lorekeeper.models import ChatHistoryEntry, ClassificationContext
from lorekeeper.pipeline import StoryEngine, StorySnapshot


def setup_logging(config: ConfigManager, verbose: bool = False):
    """Configure logging for the application."""
    level_name = "DEBUG" if verbose else config.get("logging.level", "INFO")
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    format_str = config.get("logging.format", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handlers = [logging.StreamHandler(sys.stderr)]
    log_file = config.get("logging.file")
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=level, format=format_str, handlers=handlers, force=True)


def load_snapshot(path: str) -> StorySnapshot:
    """
    Load a story snapshot from a JSON file.

    Args:
        path: Path to the snapshot file

    Returns:
        The validated snapshot
    """
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    return StorySnapshot.model_validate(data)


def build_classification_context(snapshot: StorySnapshot, user_action: str,
                                 narrative: str, story_mode: str,
                                 genre: Optional[str]) -> ClassificationContext:
    """
    Build the classifier input from a snapshot and the new narration.

    The visible chat history is the unchaptered part of the transcript.
    """
    visible = snapshot.entries[snapshot.last_chapter_end_index:]
    history = [
        ChatHistoryEntry(
            role="user" if entry.is_user_action else "assistant",
            content=entry.content,
            time_start=entry.time_start,
            time_end=entry.time_end,
        )
        for entry in visible if entry.type in ("user_action", "narration")
    ]
    current_time = next((e.time_end for e in reversed(snapshot.entries) if e.time_end), None)

    world = snapshot.world_state
    return ClassificationContext(
        narrative_response=narrative,
        user_action=user_action,
        existing_characters=world.characters,
        existing_locations=world.locations,
        existing_items=world.items,
        existing_story_beats=world.story_beats,
        genre=genre,
        story_mode=story_mode,
        chat_history=history,
        current_story_time=current_time,
    )


async def run_command(args, config: ConfigManager, generator: Optional[TextGenerator]) -> dict:
    """
    Run the selected command and return a JSON-serializable result.
    """
    engine = StoryEngine.from_config(config, generator) if generator else StoryEngine(
        context_config=config.context_config,
        lorebook_config=config.lorebook_config,
        memory_config=config.memory_config,
        classifier_config=config.classifier_config,
    )
    snapshot = load_snapshot(args.snapshot)

    if args.command == "context":
        turn = await engine.prepare_turn(
            snapshot.world_state, snapshot.lorebook, args.input or "", snapshot.entries, snapshot.chapters
        )
        return {
            "contextBlock": turn.context_block,
            "recalledChapterIds": turn.retrieval.relevant_chapter_ids,
            "world": {f"tier{n}": [e.id for e in getattr(turn.world, f"tier{n}")] for n in (1, 2, 3)},
            "lorebook": {f"tier{n}": [r.id for r in getattr(turn.lorebook, f"tier{n}")] for n in (1, 2, 3)},
        }

    if args.command == "chapter":
        chapter = await engine.maybe_create_chapter(snapshot.entries, snapshot.chapters,
                                                    story_mode=args.story_mode)
        return {"chapter": chapter.to_wire() if chapter else None}

    if args.command == "classify":
        narrative = Path(args.narrative).read_text(encoding='utf-8')
        context = build_classification_context(snapshot, args.input or "", narrative,
                                               args.story_mode, args.genre)
        result = await engine.classify_turn(context)
        return result.to_wire()

    raise ValueError(f"Unknown command '{args.command}'")


def validate_presets(config: ConfigManager) -> bool:
    """
    Print a validation report for every preset.

    Returns:
        True if all presets are valid
    """
    manager = PresetManager(overrides=config.preset_overrides, default_model=config.model_name)
    all_valid = True
    for name in manager.list_presets():
        report = manager.validate_preset(name)
        status = "ok" if report['valid'] else "INVALID"
        print(f"{name}: {status}")
        for error in report['errors']:
            print(f"  error: {error}")
        for warning in report['warnings']:
            print(f"  warning: {warning}")
        all_valid = all_valid and report['valid']
    return all_valid


def parse_arguments():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Lorekeeper - World-State Memory for Interactive Fiction",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py context --snapshot story.json --input "I ask Eldra about the ruins"
  python main.py chapter --snapshot story.json
  python main.py classify --snapshot story.json --input "I open the door" --narrative turn.txt
  python main.py presets
  python main.py context --snapshot story.json --offline   # no AI calls, deterministic tiers only
        """
    )

    parser.add_argument(
        "command",
        choices=["context", "chapter", "classify", "presets"],
        help="What to run"
    )

    parser.add_argument(
        "--snapshot",
        type=str,
        help="Path to the story snapshot JSON (required except for 'presets')"
    )

    parser.add_argument(
        "--input",
        type=str,
        help="The latest player action or author direction"
    )

    parser.add_argument(
        "--narrative",
        type=str,
        help="Path to a text file holding the narration to classify"
    )

    parser.add_argument(
        "--story-mode",
        choices=["adventure", "creative-writing"],
        default="adventure",
        help="Story mode used by the classifier and chapter summaries (default: adventure)"
    )

    parser.add_argument(
        "--genre",
        type=str,
        help="Optional genre hint for the classifier"
    )

    parser.add_argument(
        "--config",
        type=str,
        default="config.yaml",
        help="Path to the configuration file (default: config.yaml)"
    )

    parser.add_argument(
        "--offline",
        action="store_true",
        help="Run without a model; every AI step takes its fallback"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Lorekeeper {__version__}"
    )

    args = parser.parse_args()
    if args.command != "presets" and not args.snapshot:
        parser.error("--snapshot is required for this command")
    if args.command == "classify" and not args.narrative:
        parser.error("--narrative is required for 'classify'")
    return args


async def _run(args, config: ConfigManager) -> dict:
    generator = None if args.offline else create_generator(config)
    try:
        return await run_command(args, config, generator)
    finally:
        if generator is not None and hasattr(generator, "aclose"):
            await generator.aclose()


def main():
    """Main entry point."""
    args = parse_arguments()
    config = ConfigManager(args.config)
    setup_logging(config, args.verbose)

    logging.info(f"Lorekeeper {__version__}")

    if args.command == "presets":
        sys.exit(0 if validate_presets(config) else 1)

    try:
        result = asyncio.run(_run(args, config))
        print(json.dumps(result, indent=2, ensure_ascii=False))

    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        print("\nInterrupted.")

    except (OSError, json.JSONDecodeError, ValidationError, ValueError) as e:
        logging.error(f"Run failed: {e}")
        print(f"\nRun failed: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
