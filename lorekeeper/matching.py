"""
Name and keyword matching for Lorekeeper.

Pure functions used by both retrieval components to decide whether an entity
name, alias or keyword is mentioned in the current scene.
"""

import re
from typing import Iterable, Sequence

from .models import StoryEntry


# Below this length only whole-word hits count; short names like "Al" or "Ed"
# would otherwise match inside unrelated words.
MIN_PARTIAL_MATCH_LENGTH = 3


def matches(candidate: str, haystack: str) -> bool:
    """
    Check whether ``candidate`` is mentioned in ``haystack``.

    Matching is case-insensitive. A candidate of three or more characters
    matches as a substring, as a whole word, or as the prefix of any
    whitespace-delimited token. Shorter candidates only match as whole words.

    Args:
        candidate: Name, alias or keyword to look for
        haystack: Text to search

    Returns:
        True if the candidate is mentioned

    Examples:
        matches("Eldra", "I met Eldra the Wise")  # True
        matches("Eld", "I met Eldra")             # True (prefix)
        matches("a", "banana")                    # False
    """
    needle = candidate.strip().lower()
    if not needle:
        return False

    text = haystack.lower()
    long_enough = len(needle) >= MIN_PARTIAL_MATCH_LENGTH

    if long_enough and needle in text:
        return True

    if re.search(rf"\b{re.escape(needle)}\b", text):
        return True

    if long_enough:
        return any(token.startswith(needle) for token in text.split())

    return False


def matches_any(candidates: Iterable[str], haystack: str) -> bool:
    """Return True if any of ``candidates`` matches ``haystack``."""
    return any(matches(c, haystack) for c in candidates)


def build_search_text(user_input: str, recent_entries: Sequence[StoryEntry], count: int) -> str:
    """
    Build the lower-cased blob of user input plus the last ``count`` entries.

    Args:
        user_input: The player's or author's latest input
        recent_entries: Recent transcript, oldest first
        count: How many trailing entries to include

    Returns:
        Lower-cased search text
    """
    tail = recent_entries[-count:] if count > 0 else []
    recent = " ".join(entry.content for entry in tail)
    return f"{user_input} {recent}".lower()
