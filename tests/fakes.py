"""
Test doubles shared by the Lorekeeper test modules.
"""

import asyncio
from typing import Any, List

from lorekeeper.models import StoryEntry


class ScriptedGenerator:
    """
    A TextGenerator that replays canned replies and records every call.

    Each reply is returned in order; an exception instance is raised instead
    of returned. Once the script runs out, the last reply repeats.
    """

    def __init__(self, *replies: Any):
        self.replies: List[Any] = list(replies) or [""]
        self.calls = []

    async def generate(self, system_prompt, user_prompt, options):
        self.calls.append({
            "system_prompt": system_prompt,
            "user_prompt": user_prompt,
            "options": options,
        })
        index = min(len(self.calls) - 1, len(self.replies) - 1)
        reply = self.replies[index]
        if isinstance(reply, BaseException):
            raise reply
        return reply

    @property
    def last_user_prompt(self) -> str:
        return self.calls[-1]["user_prompt"] if self.calls else ""


class SlowGenerator:
    """A TextGenerator that sleeps before answering; ``started`` is set once called."""

    def __init__(self, delay: float = 5.0, reply: str = "[]"):
        self.delay = delay
        self.reply = reply
        self.started = asyncio.Event()

    async def generate(self, system_prompt, user_prompt, options):
        self.started.set()
        await asyncio.sleep(self.delay)
        return self.reply


def make_entries(count: int, start: int = 0) -> List[StoryEntry]:
    """Alternating user actions and narration with distinct content."""
    return [
        StoryEntry(
            id=f"e{i}",
            type="user_action" if i % 2 == 0 else "narration",
            content=f"Entry number {i} of the story.",
        )
        for i in range(start, start + count)
    ]
