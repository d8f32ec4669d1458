"""Tiered retrieval of world state and lorebook entries."""

from .context_builder import ContextBuilder
from .lorebook import LorebookRetrieval

__all__ = ["ContextBuilder", "LorebookRetrieval"]
