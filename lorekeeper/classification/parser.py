"""
Parsing of classifier replies into ClassificationResult.
"""

import logging

from pydantic import ValidationError

from ..errors import ResponseParseError
from ..jsonrepair import parse_json_response
from ..models import ClassificationResult


def parse_classification_response(text: str) -> ClassificationResult:
    """
    Turn a raw classifier reply into a validated ClassificationResult.

    The reply goes through the JSON repair pass (code fences, surrounding
    prose, truncation, trailing commas, raw newlines in strings) and is then
    validated field by field. Malformed parts collapse to their defaults
    rather than failing the whole result. This function never raises.

    Args:
        text: Raw model reply

    Returns:
        The parsed result, or a fully empty result if nothing could be recovered
    """
    try:
        parsed = parse_json_response(text, dict)
    except ResponseParseError as e:
        logging.warning(f"Failed to parse classification JSON: {e}")
        return ClassificationResult.empty()

    try:
        result = ClassificationResult.model_validate(parsed)
    except ValidationError as e:
        logging.warning(f"Classification result failed validation: {e.error_count()} error(s)")
        return ClassificationResult.empty()

    counts = {k: v for k, v in result.entry_updates.counts().items() if v}
    logging.debug(f"Classification parsed: {counts or 'no entity changes'}, "
                  f"time progression {result.scene.time_progression}")
    return result
