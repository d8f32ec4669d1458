"""
AI Agent runner for Lorekeeper.

This module runs a named preset against the configured text generator. It is
the single place where model calls are timed, bounded by the timeout ceiling,
and turned into ``GenerationError`` on failure.
"""

import asyncio
import logging
import time
from typing import Any, Optional, Type

import httpx

from ..errors import GenerationError
from ..jsonrepair import parse_json_response
from .manager import PresetManager
from .providers import TextGenerator


DEFAULT_TIMEOUT = 180.0


class AgentRunner:
    """
    Runs generation presets against a TextGenerator.
    """

    def __init__(self, generator: Optional[TextGenerator] = None,
                 preset_manager: Optional[PresetManager] = None,
                 timeout: float = DEFAULT_TIMEOUT):
        """
        Initialize the agent runner.

        Args:
            generator: Text generator to call; None disables every AI feature
            preset_manager: Preset manager (defaults to built-in presets)
            timeout: Ceiling in seconds for presets without their own timeout
        """
        self.generator = generator
        self.presets = preset_manager or PresetManager()
        self.timeout = timeout

    @property
    def available(self) -> bool:
        """Whether a generator is configured."""
        return self.generator is not None

    async def run(self, preset_name: str, **template_vars) -> str:
        """
        Render a preset and return the raw model reply.

        Args:
            preset_name: Name of the preset to run
            **template_vars: Variables for the preset's templates

        Returns:
            The model's response text

        Raises:
            GenerationError: If no generator is configured, the preset's
                templates cannot be rendered, the call fails, or it exceeds
                the timeout
            ValueError: If the preset is unknown
        """
        if self.presets.get_preset(preset_name) is None:
            raise ValueError(f"Preset '{preset_name}' not found")
        if self.generator is None:
            raise GenerationError(f"No text generator configured for '{preset_name}'")

        try:
            request = self.presets.prepare(preset_name, **template_vars)
        except ValueError as e:
            logging.error(f"Cannot render preset '{preset_name}': {e}")
            raise GenerationError(str(e)) from e
        timeout = request.timeout or self.timeout

        start_time = time.time()
        try:
            response = await asyncio.wait_for(
                self.generator.generate(request.system_prompt, request.user_prompt, request.options),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise GenerationError(f"'{preset_name}' timed out after {timeout:.0f}s") from e
        except httpx.HTTPError as e:
            raise GenerationError(f"'{preset_name}' request failed: {e}") from e
        except Exception as e:
            # CancelledError is a BaseException and passes through
            logging.error(f"Preset '{preset_name}' failed: {type(e).__name__}: {e}")
            raise GenerationError(f"'{preset_name}' failed: {e}") from e
        finally:
            execution_time_ms = int((time.time() - start_time) * 1000)
            logging.debug(f"Preset '{preset_name}' finished in {execution_time_ms}ms")

        if not isinstance(response, str):
            raise GenerationError(f"'{preset_name}' returned {type(response).__name__}, expected text")

        logging.debug(f"Preset '{preset_name}' returned {len(response)} chars")
        return response

    async def run_json(self, preset_name: str, expect: Optional[Type] = dict, **template_vars) -> Any:
        """
        Run a preset and decode its reply as JSON, repairing it where possible.

        Args:
            preset_name: Name of the preset to run
            expect: ``dict``, ``list`` or None for any JSON value
            **template_vars: Variables for the preset's templates

        Returns:
            The decoded value

        Raises:
            GenerationError: If the call fails
            ResponseParseError: If the reply cannot be decoded
        """
        response = await self.run(preset_name, **template_vars)
        return parse_json_response(response, expect)
