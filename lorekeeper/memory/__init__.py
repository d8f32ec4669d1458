"""Chapter memory: analysis, summarization and retrieval."""

from .service import MemoryService

__all__ = ["MemoryService"]
