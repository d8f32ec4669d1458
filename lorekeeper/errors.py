"""
Exception types for Lorekeeper.

Only the AI boundary raises these. Every component that calls the model
catches them and degrades to its documented fallback.
"""


class LorekeeperError(Exception):
    """Base class for Lorekeeper errors."""


class GenerationError(LorekeeperError):
    """A model call failed, timed out, or no model is configured."""


class ResponseParseError(LorekeeperError):
    """A model reply could not be decoded into the expected shape."""
