"""
Configuration management for Lorekeeper.

This module handles loading and accessing configuration values from config.yaml.
Components never read configuration on their own: the ConfigManager produces
typed config objects that are passed to each service explicitly.
"""

import yaml
import copy
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
import logging

from pydantic import BaseModel, Field


class SelectionPolicy(str, Enum):
    """
    How the lorebook's LLM tier chooses candidates.
    """

    CAPPED = "capped"
    EXHAUSTIVE = "exhaustive"


class ContextConfig(BaseModel):
    """Settings for the world-state context builder."""

    llm_threshold: int = Field(30, ge=0, description="Remaining entities needed to trigger Tier 3")
    max_entries_per_tier: int = Field(10, ge=1)
    enable_llm_selection: bool = True
    recent_entries_count: int = Field(5, ge=0, description="Transcript entries scanned for names")
    description_truncation: int = Field(150, ge=0, description="Description chars shown to the LLM")


class LorebookConfig(BaseModel):
    """Settings for lorebook retrieval."""

    policy: SelectionPolicy = SelectionPolicy.EXHAUSTIVE
    llm_threshold: int = Field(30, ge=0)
    max_tier3_entries: int = Field(10, ge=1, description="Cap on LLM picks (capped policy only)")
    max_prompt_entries: int = Field(50, ge=1, description="Entries listed to the LLM (capped policy only)")
    enable_llm_selection: bool = True
    recent_entries_count: int = Field(5, ge=0)
    prompt_recent_entries: int = Field(3, ge=0, description="Transcript entries shown to the LLM")
    description_truncation: int = Field(150, ge=0)


class MemoryConfig(BaseModel):
    """Settings for chaptering and chapter retrieval."""

    token_threshold: int = Field(24000, ge=0)
    chapter_buffer: int = Field(10, ge=0, description="Most recent entries never chaptered")
    auto_summarize: bool = True
    enable_retrieval: bool = True
    max_chapters_per_retrieval: int = Field(3, ge=0)
    recent_entries_for_retrieval: int = Field(5, ge=0)


class ClassifierConfig(BaseModel):
    """Settings for turn classification."""

    chat_history_truncation: int = Field(100, ge=0, description="Words kept per history entry; 0 keeps all")
    stagnation_turns: int = Field(3, ge=1, description="Clock-idle turns before nudging time forward")


class ConfigManager:
    """
    Manages configuration loading and access for Lorekeeper.
    """

    def __init__(self, config_path: str = "config.yaml"):
        """
        Initialize the configuration manager.

        Args:
            config_path: Path to the configuration file
        """
        self.config_path = Path(config_path)
        self._config: Dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from YAML file, layered over the defaults."""
        defaults = self._get_default_config()
        try:
            if not self.config_path.exists():
                raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

            with open(self.config_path, 'r', encoding='utf-8') as f:
                loaded = yaml.safe_load(f) or {}

            self._config = _deep_merge(defaults, loaded)
            logging.info(f"Configuration loaded from {self.config_path}")

        except (OSError, yaml.YAMLError) as e:
            logging.warning(f"Failed to load configuration, using defaults: {e}")
            self._config = defaults

    def _get_default_config(self) -> Dict[str, Any]:
        """Get default configuration values as fallback."""
        return {
            "ai": {
                "provider": "ollama",
                "host": "http://localhost:11434",
                "model": "gemma3",
                "api_key_env": "OPENROUTER_API_KEY",
                "timeout": 180.0
            },
            "context": ContextConfig().model_dump(mode="json"),
            "lorebook": LorebookConfig().model_dump(mode="json"),
            "memory": MemoryConfig().model_dump(mode="json"),
            "classifier": ClassifierConfig().model_dump(mode="json"),
            "logging": {
                "level": "INFO",
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "file": None
            },
            "presets": {}
        }

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get a configuration value using dot notation.

        Args:
            key_path: Dot-separated path to the configuration value (e.g., "ai.model")
            default: Default value if key is not found

        Returns:
            The configuration value

        Examples:
            config.get("ai.model")  # Returns "gemma3"
            config.get("memory.chapter_buffer")  # Returns 10
        """
        keys = key_path.split('.')
        value = self._config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def get_section(self, section: str) -> Dict[str, Any]:
        """
        Get an entire configuration section.

        Args:
            section: Name of the configuration section

        Returns:
            Dictionary containing the section configuration
        """
        return self._config.get(section) or {}

    def reload(self) -> None:
        """Reload configuration from file."""
        self._load_config()

    # Convenience properties for commonly used values

    @property
    def ai_provider(self) -> str:
        """Get the AI provider name ('ollama' or 'openai')."""
        return self.get("ai.provider", "ollama")

    @property
    def ai_host(self) -> str:
        """Get the AI server base URL."""
        return self.get("ai.host", "http://localhost:11434")

    @property
    def model_name(self) -> str:
        """Get the default model name."""
        return self.get("ai.model", "gemma3")

    @property
    def ai_timeout(self) -> float:
        """Get the per-call timeout ceiling in seconds."""
        return float(self.get("ai.timeout", 180.0))

    @property
    def api_key_env(self) -> str:
        """Get the environment variable holding the API key."""
        return self.get("ai.api_key_env", "OPENROUTER_API_KEY")

    @property
    def context_config(self) -> ContextConfig:
        """Get context builder settings."""
        return ContextConfig.model_validate(self.get_section("context"))

    @property
    def lorebook_config(self) -> LorebookConfig:
        """Get lorebook retrieval settings."""
        return LorebookConfig.model_validate(self.get_section("lorebook"))

    @property
    def memory_config(self) -> MemoryConfig:
        """Get memory service settings."""
        return MemoryConfig.model_validate(self.get_section("memory"))

    @property
    def classifier_config(self) -> ClassifierConfig:
        """Get classifier settings."""
        return ClassifierConfig.model_validate(self.get_section("classifier"))

    @property
    def preset_overrides(self) -> Dict[str, Any]:
        """Get per-preset overrides from configuration."""
        return self.get_section("presets")

    def get_preset_override(self, preset_name: str) -> Optional[Dict[str, Any]]:
        """
        Get the override block for a single preset.

        Args:
            preset_name: Name of the preset

        Returns:
            Override dictionary or None if not configured
        """
        return self.preset_overrides.get(preset_name)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[str] = None) -> ConfigManager:
    """
    Load configuration from ``config_path`` (default: ./config.yaml).

    Args:
        config_path: Optional path to the YAML file

    Returns:
        A ConfigManager instance
    """
    return ConfigManager(config_path or "config.yaml")
