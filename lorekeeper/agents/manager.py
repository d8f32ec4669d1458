"""
Preset Manager for Lorekeeper.

This module provides the PresetManager class that applies configuration
overrides to the built-in presets, renders prompt templates, and decides
whether a call asks for JSON through prompt instructions or through the
provider's structured-output parameter.
"""

import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

from .providers import GenerationOptions, ResponseFormat
from .registry import GenerationPreset, PresetRegistry, JSON_SUPPORT_LEVELS


OVERRIDABLE_FIELDS = (
    "system_prompt", "user_prompt_template", "json_instructions",
    "model", "temperature", "max_tokens", "timeout", "json_support",
)


@dataclass
class PreparedRequest:
    """
    A fully rendered generation call.
    """
    preset_name: str
    system_prompt: str
    user_prompt: str
    options: GenerationOptions
    timeout: Optional[float] = None


class PresetManager:
    """
    Manages generation presets with configuration overrides and template support.
    """

    def __init__(self, registry: Optional[PresetRegistry] = None,
                 overrides: Optional[Dict[str, Dict[str, Any]]] = None,
                 default_model: Optional[str] = None):
        """
        Initialize the preset manager.

        Args:
            registry: Optional preset registry to use
            overrides: Per-preset override blocks (the ``presets`` config section)
            default_model: Model used by presets that do not name one
        """
        self.registry = registry or PresetRegistry()
        self.default_model = default_model
        self.presets: Dict[str, GenerationPreset] = {
            name: self.registry.get_preset(name) for name in self.registry.list_presets()
        }
        self._apply_overrides(overrides or {})

    def _apply_overrides(self, overrides: Dict[str, Dict[str, Any]]):
        """Apply configuration overrides on top of the registered presets."""
        for preset_name, override in overrides.items():
            try:
                preset = self.presets.get(preset_name)
                if preset is None:
                    raise ValueError(f"Unknown preset '{preset_name}'")
                if not isinstance(override, dict):
                    raise ValueError("Override must be a mapping")

                unknown = set(override) - set(OVERRIDABLE_FIELDS)
                if unknown:
                    logging.warning(f"Ignoring unknown override fields for '{preset_name}': {', '.join(sorted(unknown))}")

                changes = {k: v for k, v in override.items() if k in OVERRIDABLE_FIELDS}
                if "json_support" in changes and changes["json_support"] not in JSON_SUPPORT_LEVELS:
                    raise ValueError(f"Invalid json_support '{changes['json_support']}'")

                self.presets[preset_name] = replace(preset, **changes)
                logging.info(f"Applied preset override: {preset_name}")

            except ValueError as e:
                logging.error(f"Failed to apply preset override '{preset_name}': {e}")

    def get_preset(self, preset_name: str) -> Optional[GenerationPreset]:
        """
        Get a preset by name, with overrides applied.

        Args:
            preset_name: Name of the preset

        Returns:
            The preset or None if not found
        """
        return self.presets.get(preset_name)

    def list_presets(self) -> List[str]:
        """
        Get a list of all available preset names.

        Returns:
            List of preset names
        """
        return list(self.presets.keys())

    def _require(self, preset_name: str) -> GenerationPreset:
        preset = self.get_preset(preset_name)
        if not preset:
            raise ValueError(f"Preset '{preset_name}' not found")
        return preset

    def _render(self, template: str, preset_name: str, kwargs: Dict[str, Any]) -> str:
        try:
            return template.format(**kwargs)
        except KeyError as e:
            raise ValueError(f"Missing template variable {e} for preset '{preset_name}'")
        except (IndexError, ValueError) as e:
            raise ValueError(f"Failed to render template for preset '{preset_name}': {e}")

    def render_user_prompt(self, preset_name: str, **kwargs) -> str:
        """
        Render the user prompt for a preset, with JSON instructions appended
        when the preset's JSON support level requires them.

        Args:
            preset_name: Name of the preset
            **kwargs: Template variables

        Returns:
            Rendered user prompt

        Raises:
            ValueError: If preset not found or template rendering fails
        """
        preset = self._require(preset_name)
        prompt = self._render(preset.user_prompt_template, preset_name, kwargs)

        # Only a full schema makes the instructions redundant
        if preset.json_instructions and preset.json_support != "json_schema":
            instructions = self._render(preset.json_instructions, preset_name, kwargs)
            prompt = f"{prompt}\n\n{instructions}"
        return prompt

    def get_system_prompt(self, preset_name: str, **kwargs) -> str:
        """
        Get the rendered system prompt for a preset.

        Raises:
            ValueError: If preset not found or template rendering fails
        """
        preset = self._require(preset_name)
        return self._render(preset.system_prompt, preset_name, kwargs)

    def build_response_format(self, preset_name: str) -> Optional[ResponseFormat]:
        """
        Build the structured-output request for a preset.

        Returns:
            None for JSON support ``none``; a plain JSON-object request for
            ``json_object``; the preset's schema for ``json_schema``
        """
        preset = self._require(preset_name)
        if preset.json_support == "json_object":
            return ResponseFormat(type="json_object", name=f"{preset_name}_response")
        if preset.json_support == "json_schema" and preset.response_schema:
            return ResponseFormat(type="json_schema", name=f"{preset_name}_response",
                                  schema=preset.response_schema)
        return None

    def prepare(self, preset_name: str, **kwargs) -> PreparedRequest:
        """
        Render everything needed to call a generator for ``preset_name``.

        Args:
            preset_name: Name of the preset
            **kwargs: Template variables shared by the system and user prompts

        Returns:
            A PreparedRequest
        """
        preset = self._require(preset_name)
        options = GenerationOptions(
            model=preset.model or self.default_model,
            temperature=preset.temperature,
            max_tokens=preset.max_tokens,
            response_format=self.build_response_format(preset_name),
        )
        return PreparedRequest(
            preset_name=preset_name,
            system_prompt=self.get_system_prompt(preset_name, **kwargs),
            user_prompt=self.render_user_prompt(preset_name, **kwargs),
            options=options,
            timeout=preset.timeout,
        )

    def validate_preset(self, preset_name: str) -> Dict[str, Any]:
        """
        Validate a preset and return validation results.

        Args:
            preset_name: Name of the preset to validate

        Returns:
            Dictionary with validation results
        """
        results = {
            'valid': True,
            'errors': [],
            'warnings': []
        }

        preset = self.get_preset(preset_name)
        if not preset:
            results['valid'] = False
            results['errors'].append(f"Preset '{preset_name}' not found")
            return results

        if not preset.system_prompt.strip():
            results['valid'] = False
            results['errors'].append("System prompt cannot be empty")

        if not preset.user_prompt_template.strip():
            results['valid'] = False
            results['errors'].append("User prompt template cannot be empty")

        template_vars = set(self._extract_template_variables(preset.user_prompt_template))
        template_vars |= set(self._extract_template_variables(preset.json_instructions))
        missing_vars = set(preset.required_variables) - template_vars
        if missing_vars:
            results['warnings'].append(f"Template does not use variables: {', '.join(sorted(missing_vars))}")

        if preset.json_support not in JSON_SUPPORT_LEVELS:
            results['valid'] = False
            results['errors'].append(f"Invalid json_support '{preset.json_support}'")

        if preset.json_support == "json_schema" and not preset.response_schema:
            results['warnings'].append("json_schema requested but preset has no schema")

        if preset.timeout is not None and preset.timeout <= 0:
            results['valid'] = False
            results['errors'].append("Timeout must be positive")

        if not 0.0 <= preset.temperature <= 2.0:
            results['warnings'].append(f"Unusual temperature {preset.temperature}")

        return results

    def _extract_template_variables(self, template: str) -> List[str]:
        """
        Extract ``{variable}`` names from a template, skipping ``{{`` escapes.

        Args:
            template: Template string

        Returns:
            List of variable names
        """
        unescaped = template.replace("{{", "").replace("}}", "")
        return list(set(re.findall(r'\{([A-Za-z_][A-Za-z0-9_]*)\}', unescaped)))
