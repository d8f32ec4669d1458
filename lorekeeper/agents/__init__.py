"""AI presets, generators and the generic preset runner."""

from .runner import AgentRunner
from .registry import PresetRegistry, GenerationPreset
from .manager import PresetManager, PreparedRequest
from .providers import (
    TextGenerator,
    StreamingTextGenerator,
    GenerationOptions,
    ResponseFormat,
    StreamEvent,
    OllamaGenerator,
    OpenAICompatibleGenerator,
    create_generator,
)

__all__ = [
    "AgentRunner",
    "PresetRegistry",
    "GenerationPreset",
    "PresetManager",
    "PreparedRequest",
    "TextGenerator",
    "StreamingTextGenerator",
    "GenerationOptions",
    "ResponseFormat",
    "StreamEvent",
    "OllamaGenerator",
    "OpenAICompatibleGenerator",
    "create_generator",
]
