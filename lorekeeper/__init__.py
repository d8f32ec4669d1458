"""
Lorekeeper: world-state memory and context assembly for AI interactive fiction.

Chooses which world knowledge goes into the next generation prompt, compresses
old transcript into chapter summaries, and recalls those chapters when needed.
"""

__version__ = "0.1.0"
__author__ = "Lorekeeper Project"

# Import main components
from .config import ConfigManager, load_config, SelectionPolicy
from .errors import LorekeeperError, GenerationError, ResponseParseError
from .matching import matches
from .agents import AgentRunner, TextGenerator, create_generator
from .retrieval import ContextBuilder, LorebookRetrieval
from .memory import MemoryService
from .classification import ClassifierService, parse_classification_response
from .pipeline import StoryEngine, StorySnapshot, TurnContext

__all__ = [
    "ConfigManager",
    "load_config",
    "SelectionPolicy",
    "LorekeeperError",
    "GenerationError",
    "ResponseParseError",
    "matches",
    "AgentRunner",
    "TextGenerator",
    "create_generator",
    "ContextBuilder",
    "LorebookRetrieval",
    "MemoryService",
    "ClassifierService",
    "parse_classification_response",
    "StoryEngine",
    "StorySnapshot",
    "TurnContext",
]
