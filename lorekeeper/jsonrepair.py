"""
Tolerant JSON decoding for model replies.

Models routinely wrap JSON in code fences or prose, stop mid-object when they
hit their token limit, or emit small syntax slips (trailing commas, raw
newlines inside strings, missing commas between lines). Every reply is treated
as untrusted text and goes through the repair ladder below before decoding.
"""

import json
import logging
import re
from typing import Any, List, Optional, Type

from .errors import ResponseParseError


_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?|\n?```\s*$")


def strip_code_fences(text: str) -> str:
    """
    Remove a leading ```lang fence and a trailing ``` fence.

    Args:
        text: Raw model reply

    Returns:
        The reply without surrounding fences, stripped
    """
    text = text.strip()
    if "```" not in text:
        return text

    # Fenced block somewhere inside prose: keep only its body
    inner = re.search(r"```[a-zA-Z0-9_-]*\s*\n?([\s\S]*?)(?:```|$)", text)
    if inner and not text.startswith("```"):
        return inner.group(1).strip()

    return _FENCE_RE.sub("", text).strip()


def extract_json_block(text: str, expect: Optional[Type] = None, to_end: bool = False) -> Optional[str]:
    """
    Cut the outermost JSON object or array out of surrounding prose.

    When the closing bracket is missing (truncated reply) the rest of the text
    from the opening bracket is returned so it can be closed later.

    Args:
        text: Reply text, fences already removed
        expect: ``dict`` or ``list`` to force the bracket type
        to_end: Return everything from the opening bracket on, ignoring
            closers (for replies cut off after an inner closing bracket)

    Returns:
        The candidate JSON text, or None if no bracket was found
    """
    if expect is dict:
        openers = "{"
    elif expect is list:
        openers = "["
    else:
        openers = "{["

    positions = [text.find(ch) for ch in openers if text.find(ch) != -1]
    if not positions:
        return None

    start = min(positions)
    if to_end:
        return text[start:]

    closer = "}" if text[start] == "{" else "]"
    end = text.rfind(closer)
    if end > start:
        return text[start:end + 1]
    return text[start:]


_CLOSERS = {'{': '}', '[': ']'}
_CONTROL_ESCAPES = {'\n': '\\n', '\r': '\\r', '\t': '\\t'}

_DANGLING_KEY_RE = re.compile(r',?\s*"[^"]*"\s*:\s*$')
_TRAILING_STRING_RE = re.compile(r',\s*"[^"]*"\s*$')
_MISSING_COMMA_RE = re.compile(r'("|[\}\]]|\d|\btrue|\bfalse|\bnull)([ \t]*)\n(\s*["\{\[])')
_TRAILING_COMMA_RE = re.compile(r',(\s*[\}\]])')


def _scan_structure(text: str):
    """
    Walk JSON text and report where it stops.

    Returns:
        Tuple of (the still-open brackets, innermost last; whether the text
        ends inside a string)
    """
    open_brackets = []
    in_string = escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            open_brackets.append(ch)
        elif ch in '}]' and open_brackets:
            open_brackets.pop()
    return open_brackets, in_string


def _drop_dangling_tail(text: str) -> str:
    """Remove one incomplete trailing piece: a key without value, a comma, or a half-written key."""
    text = text.rstrip()
    if text.endswith(':'):
        return _DANGLING_KEY_RE.sub('', text)
    if text.endswith(','):
        return text[:-1]

    match = _TRAILING_STRING_RE.search(text)
    if match:
        open_brackets, _ = _scan_structure(text)
        # Inside an array a trailing string is a complete element
        if open_brackets and open_brackets[-1] == '{':
            return text[:match.start()]
    return text


def close_truncated_json(text: str) -> str:
    """
    Complete JSON that was cut off mid-stream.

    Args:
        text: Possibly truncated JSON

    Returns:
        Best-effort completed JSON text
    """
    text = text.rstrip()
    if _scan_structure(text)[1]:
        text += '"'

    trimmed = _drop_dangling_tail(text)
    while trimmed != text:
        text = trimmed
        trimmed = _drop_dangling_tail(text)

    open_brackets, _ = _scan_structure(text)
    return text + ''.join(_CLOSERS[ch] for ch in reversed(open_brackets))


def _escape_control_characters(text: str) -> str:
    out = []
    in_string = escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                in_string = False
            elif ch in _CONTROL_ESCAPES:
                out.append(_CONTROL_ESCAPES[ch])
                continue
        elif ch == '"':
            in_string = True
        out.append(ch)
    return ''.join(out)


def repair_json(text: str) -> str:
    """
    Fix the syntax slips models make most often: raw newlines and tabs inside
    strings, missing commas between values on separate lines, and trailing
    commas before a closing bracket.

    Only worth calling after a plain ``json.loads`` already failed.
    """
    text = _escape_control_characters(text)
    text = _MISSING_COMMA_RE.sub(r'\1\2,\n\3', text)
    return _TRAILING_COMMA_RE.sub(r'\1', text)


def _matches_expected(value: Any, expect: Optional[Type]) -> bool:
    return expect is None or isinstance(value, expect)


def parse_json_response(text: str, expect: Optional[Type] = None) -> Any:
    """
    Decode a model reply into JSON, repairing it if needed.

    Args:
        text: Raw model reply
        expect: Optional ``dict`` or ``list`` the decoded value must be

    Returns:
        The decoded value

    Raises:
        ResponseParseError: If no attempt produced a value of the expected type
    """
    if not isinstance(text, str) or not text.strip():
        raise ResponseParseError("Empty response")

    cleaned = strip_code_fences(text)

    attempts: List[str] = [cleaned]
    block = extract_json_block(cleaned, expect)
    if block is not None:
        attempts.extend([
            block,
            repair_json(block),
            repair_json(close_truncated_json(extract_json_block(cleaned, expect, to_end=True))),
            repair_json(close_truncated_json(block)),
        ])

    for candidate in attempts:
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if _matches_expected(value, expect):
            return value

    expected_name = expect.__name__ if expect else "JSON"
    raise ResponseParseError(f"Could not decode {expected_name} from response: {cleaned[:200]!r}")


def try_parse_json(text: str, expect: Optional[Type] = None) -> Optional[Any]:
    """
    Like :func:`parse_json_response` but returns None instead of raising.
    """
    try:
        return parse_json_response(text, expect)
    except ResponseParseError as e:
        logging.debug(str(e))
        return None


def scan_integers(text: str, low: int, high: int) -> List[int]:
    """
    Collect bare integers in ``[low, high]`` from free text, deduplicated.

    Used as the last-chance reading of an index-list reply.

    Args:
        text: Raw model reply
        low: Smallest accepted value
        high: Largest accepted value

    Returns:
        Integers in order of first appearance
    """
    seen = []
    for token in re.findall(r"(?<![\d.])\d+(?![\d.])", text or ""):
        number = int(token)
        if low <= number <= high and number not in seen:
            seen.append(number)
    return seen
