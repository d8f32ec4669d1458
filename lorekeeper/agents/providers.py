"""
Text generation backends for Lorekeeper.

The retrieval, memory and classification services only depend on the
``TextGenerator`` protocol. This module provides two HTTP implementations of
it: one for a local Ollama server and one for OpenAI-compatible chat
completion endpoints such as OpenRouter.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Protocol, runtime_checkable

import httpx

from ..errors import GenerationError


ResponseFormatType = Literal["json_object", "json_schema"]
StreamEventKind = Literal["content", "reasoning", "done"]


@dataclass
class ResponseFormat:
    """
    Structured-output request attached to a generation call.
    """
    type: ResponseFormatType
    name: str = "response"
    schema: Optional[Dict[str, Any]] = None


@dataclass
class GenerationOptions:
    """
    Per-call generation settings.
    """
    model: Optional[str] = None
    temperature: float = 0.3
    max_tokens: Optional[int] = None
    response_format: Optional[ResponseFormat] = None


@dataclass
class StreamEvent:
    """
    One increment of a streamed reply.
    """
    kind: StreamEventKind
    text: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class TextGenerator(Protocol):
    """The minimal capability every Lorekeeper service needs."""

    async def generate(self, system_prompt: str, user_prompt: str,
                       options: GenerationOptions) -> str:
        ...


@runtime_checkable
class StreamingTextGenerator(TextGenerator, Protocol):
    """A generator that can also stream its reply."""

    def stream(self, system_prompt: str, user_prompt: str,
               options: GenerationOptions) -> AsyncIterator[StreamEvent]:
        ...


class _HttpGenerator:
    """
    Shared client handling for the HTTP backends.
    """

    provider_name = "AI server"

    def __init__(self, base_url: str, model: str, timeout: float = 180.0,
                 client: Optional[httpx.AsyncClient] = None):
        """
        Args:
            base_url: Server base URL
            model: Default model name, used when options do not name one
            timeout: HTTP timeout in seconds
            client: Optional pre-built client (for tests or connection sharing)
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _post_json(self, url: str, payload: Dict[str, Any],
                         headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        try:
            response = await self.client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise GenerationError(f"{self.provider_name} request failed: {e}") from e
        except httpx.RequestError as e:
            raise GenerationError(f"Failed to connect to {self.provider_name}: {e}") from e
        except ValueError as e:
            raise GenerationError(f"{self.provider_name} returned invalid JSON: {e}") from e


class OllamaGenerator(_HttpGenerator):
    """
    Generator backed by Ollama's ``/api/generate`` endpoint.
    """

    provider_name = "Ollama"

    def _payload(self, system_prompt: str, user_prompt: str,
                 options: GenerationOptions, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": options.model or self.model,
            "prompt": user_prompt,
            "stream": stream,
            "options": {"temperature": options.temperature},
        }
        if system_prompt:
            payload["system"] = system_prompt
        if options.max_tokens:
            payload["options"]["num_predict"] = options.max_tokens

        fmt = options.response_format
        if fmt is not None:
            # Ollama takes either the literal "json" or a JSON schema
            if fmt.type == "json_schema" and fmt.schema:
                payload["format"] = fmt.schema
            else:
                payload["format"] = "json"
        return payload

    async def generate(self, system_prompt: str, user_prompt: str,
                       options: GenerationOptions) -> str:
        """
        Make a non-streaming request to Ollama.

        Args:
            system_prompt: System prompt for the preset persona
            user_prompt: Rendered user prompt
            options: Generation options

        Returns:
            The model's response text

        Raises:
            GenerationError: If the Ollama request fails
        """
        payload = self._payload(system_prompt, user_prompt, options, stream=False)
        result = await self._post_json(f"{self.base_url}/api/generate", payload)
        return result.get("response", "")

    async def stream(self, system_prompt: str, user_prompt: str,
                     options: GenerationOptions) -> AsyncIterator[StreamEvent]:
        """
        Stream a reply from Ollama as typed events.

        Ollama sends one JSON object per line with ``response``, ``thinking``
        and ``done`` fields.
        """
        payload = self._payload(system_prompt, user_prompt, options, stream=True)
        try:
            async with self.client.stream("POST", f"{self.base_url}/api/generate", json=payload) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        logging.debug(f"Skipping malformed Ollama stream line: {line[:80]}")
                        continue

                    if chunk.get("thinking"):
                        yield StreamEvent(kind="reasoning", text=chunk["thinking"])
                    if chunk.get("response"):
                        yield StreamEvent(kind="content", text=chunk["response"])
                    if chunk.get("done"):
                        yield StreamEvent(kind="done", metadata={
                            "done_reason": chunk.get("done_reason"),
                            "eval_count": chunk.get("eval_count"),
                        })
                        return
        except httpx.HTTPStatusError as e:
            raise GenerationError(f"Ollama request failed: {e}") from e
        except httpx.RequestError as e:
            raise GenerationError(f"Failed to connect to Ollama: {e}") from e

        yield StreamEvent(kind="done")


class OpenAICompatibleGenerator(_HttpGenerator):
    """
    Generator backed by an OpenAI-compatible ``/chat/completions`` endpoint.
    """

    provider_name = "OpenAI-compatible API"

    def __init__(self, base_url: str, model: str, api_key: Optional[str] = None,
                 timeout: float = 180.0, client: Optional[httpx.AsyncClient] = None):
        super().__init__(base_url, model, timeout=timeout, client=client)
        self.api_key = api_key

    def _headers(self) -> Dict[str, str]:
        if self.api_key:
            return {"Authorization": f"Bearer {self.api_key}"}
        return {}

    def _payload(self, system_prompt: str, user_prompt: str,
                 options: GenerationOptions, stream: bool) -> Dict[str, Any]:
        messages: List[Dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})

        payload: Dict[str, Any] = {
            "model": options.model or self.model,
            "messages": messages,
            "temperature": options.temperature,
            "stream": stream,
        }
        if options.max_tokens:
            payload["max_tokens"] = options.max_tokens

        fmt = options.response_format
        if fmt is not None:
            if fmt.type == "json_schema" and fmt.schema:
                payload["response_format"] = {
                    "type": "json_schema",
                    "json_schema": {"name": fmt.name, "strict": False, "schema": fmt.schema},
                }
            else:
                payload["response_format"] = {"type": "json_object"}
        return payload

    async def generate(self, system_prompt: str, user_prompt: str,
                       options: GenerationOptions) -> str:
        """
        Make a non-streaming chat completion request.

        Raises:
            GenerationError: If the request fails or the reply has no choices
        """
        payload = self._payload(system_prompt, user_prompt, options, stream=False)
        result = await self._post_json(f"{self.base_url}/chat/completions", payload, self._headers())
        try:
            return result["choices"][0]["message"].get("content") or ""
        except (KeyError, IndexError, TypeError) as e:
            raise GenerationError(f"Unexpected chat completion shape: {e}") from e

    async def stream(self, system_prompt: str, user_prompt: str,
                     options: GenerationOptions) -> AsyncIterator[StreamEvent]:
        """
        Stream a chat completion as typed events (server-sent events).
        """
        payload = self._payload(system_prompt, user_prompt, options, stream=True)
        try:
            async with self.client.stream("POST", f"{self.base_url}/chat/completions",
                                          json=payload, headers=self._headers()) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                        delta = chunk["choices"][0].get("delta") or {}
                    except (json.JSONDecodeError, KeyError, IndexError, TypeError):
                        logging.debug(f"Skipping malformed stream chunk: {data[:80]}")
                        continue

                    if delta.get("reasoning"):
                        yield StreamEvent(kind="reasoning", text=delta["reasoning"])
                    if delta.get("content"):
                        yield StreamEvent(kind="content", text=delta["content"])
        except httpx.HTTPStatusError as e:
            raise GenerationError(f"{self.provider_name} request failed: {e}") from e
        except httpx.RequestError as e:
            raise GenerationError(f"Failed to connect to {self.provider_name}: {e}") from e

        yield StreamEvent(kind="done")


def create_generator(config, client: Optional[httpx.AsyncClient] = None) -> TextGenerator:
    """
    Build the generator named by the ``ai`` configuration section.

    Args:
        config: A ConfigManager
        client: Optional pre-built HTTP client

    Returns:
        A TextGenerator

    Raises:
        ValueError: If the provider name is unknown
    """
    provider = config.ai_provider.lower()
    if provider == "ollama":
        return OllamaGenerator(config.ai_host, config.model_name,
                               timeout=config.ai_timeout, client=client)
    if provider in ("openai", "openrouter"):
        api_key = os.environ.get(config.api_key_env)
        if not api_key:
            logging.warning(f"No API key found in ${config.api_key_env}; sending unauthenticated requests")
        return OpenAICompatibleGenerator(config.ai_host, config.model_name, api_key=api_key,
                                         timeout=config.ai_timeout, client=client)
    raise ValueError(f"Unknown AI provider '{config.ai_provider}'")
