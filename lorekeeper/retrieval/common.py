"""
Helpers shared by the context builder and lorebook retrieval.
"""

import logging
from typing import List, Optional, Sequence

from ..jsonrepair import try_parse_json, scan_integers
from ..models import StoryEntry


def truncate(text: Optional[str], limit: int) -> str:
    """Cut ``text`` to ``limit`` characters, marking the cut with '...'."""
    text = (text or "").strip()
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit].rstrip() + "..."


def format_recent_content(entries: Sequence[StoryEntry], count: int,
                          char_limit: int = 0) -> str:
    """
    Render the last ``count`` transcript entries as '[type]: content' lines.

    Args:
        entries: Transcript entries, oldest first
        count: Number of trailing entries to include
        char_limit: Optional per-entry character cap (0 keeps everything)

    Returns:
        The rendered lines, or '(none)' when there is nothing to show
    """
    tail = entries[-count:] if count > 0 else []
    lines = [f"[{entry.type}]: {truncate(entry.content, char_limit)}" for entry in tail]
    return "\n".join(lines) if lines else "(none)"


def parse_index_selection(response: str, count: int) -> List[int]:
    """
    Read a list of 1-based indices from a model reply.

    The reply is first decoded as a JSON array; if that fails, bare integers
    in ``[1, count]`` are scanned out of the text. Out-of-range values and
    duplicates are dropped, and the original order is kept.

    Args:
        response: Raw model reply
        count: Number of listed candidates

    Returns:
        Valid 1-based indices
    """
    parsed = try_parse_json(response, list)
    if parsed is None:
        indices = scan_integers(response, 1, count)
        if indices:
            logging.debug(f"Recovered {len(indices)} indices from a non-JSON selection reply")
        return indices

    indices: List[int] = []
    for value in parsed:
        if isinstance(value, bool):
            continue
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        elif isinstance(value, str) and value.strip().isdigit():
            value = int(value.strip())
        if isinstance(value, int) and 1 <= value <= count and value not in indices:
            indices.append(value)
    return indices
