"""Adapter interface and registry.

Every upstream provider is wrapped in an adapter that:
  - performs the network call (``generate_stream``)
  - turns provider-specific output into the common StreamEvent protocol
  - reports failures as AdapterError (raised) or ErrorEvent (yielded)
    carrying a normalized code, whether it is retryable, and an optional
    retry-after hint

Adapters are looked up by kind in an ``AdapterRegistry``; the registry
only maps kinds to factories and never dispatches calls itself.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

import httpx

from llm_orchestrator.gateway.errors import (
    ConfigError,
    UnsupportedProviderError,
    error_from_status,
    error_from_transport,
)
from llm_orchestrator.gateway.types import (
    GenerateOptions,
    Message,
    ProviderRecord,
    StreamEvent,
    ToolDefinition,
)

logger = logging.getLogger(__name__)

# Rough characters-per-token ratio for mixed English text and code
CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4


def message_text(message: Message) -> str:
    """All text of a message that counts towards the context window."""
    parts = [message.content]
    for call in message.tool_calls:
        parts.append(call.name)
        parts.append(json.dumps(call.arguments, ensure_ascii=False))
    return "".join(parts)


def estimate_tokens(conversation: list[Message]) -> int:
    """Character-heuristic token estimate for a conversation."""
    total = 0
    for message in conversation:
        total += MESSAGE_OVERHEAD_TOKENS
        total += -(-len(message_text(message)) // CHARS_PER_TOKEN)
    return total


class BaseProviderAdapter(ABC):
    """Base class for all provider adapters.

    Adapters receive already-resolved credentials through the record; they
    never run authentication flows of their own.
    """

    kind: str = ""
    default_model: str = ""
    default_base_url: str = ""
    requires_api_key: bool = True

    def __init__(self, record: ProviderRecord, transport: httpx.AsyncBaseTransport | None = None):
        self.record = record
        self.provider_id = record.provider_id
        self.model = record.model or self.default_model
        self.base_url = (record.base_url or self.default_base_url).rstrip("/")
        self.api_key = record.api_key
        self.context_limit = record.context_limit
        self.supports_tool_calling = record.supports_tool_calling
        self._transport = transport

    @abstractmethod
    def generate_stream(
        self,
        conversation: list[Message],
        tools: list[ToolDefinition] | None = None,
        options: GenerateOptions | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a response. Each call is a fresh, non-restartable request."""
        ...

    def count_tokens(self, conversation: list[Message]) -> int:
        return estimate_tokens(conversation)

    def validate_config(self) -> None:
        """Raise ConfigError if required fields are missing."""
        if not self.model:
            raise ConfigError("Model name is required", self.provider_id)
        if self.requires_api_key and not self.api_key:
            raise ConfigError("API key is required", self.provider_id)
        if not self.base_url.startswith(("http://", "https://")):
            raise ConfigError(f"Invalid base URL: {self.base_url!r}", self.provider_id)

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        # The per-attempt deadline is enforced by the provider manager;
        # the client only bounds connection setup.
        return httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=min(timeout or 10.0, 10.0)),
            transport=self._transport,
        )

    def _max_tokens(self, options: GenerateOptions) -> int:
        return options.max_tokens or self.record.max_output_tokens

    async def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        body = (await response.aread()).decode("utf-8", errors="replace")
        raise error_from_status(self.provider_id, response.status_code, body, response.headers)

    async def _iter_sse(self, response: httpx.Response) -> AsyncIterator[tuple[str, str]]:
        """Yield ``(event, data)`` pairs from a server-sent events body."""
        event_name = ""
        data_lines: list[str] = []
        async for raw in response.aiter_lines():
            line = raw.rstrip("\r")
            if not line:
                if data_lines:
                    yield event_name, "\n".join(data_lines)
                event_name, data_lines = "", []
                continue
            if line.startswith(":"):
                continue
            if line.startswith("event:"):
                event_name = line[len("event:") :].strip()
            elif line.startswith("data:"):
                data_lines.append(line[len("data:") :].strip())
        if data_lines:
            yield event_name, "\n".join(data_lines)

    @asynccontextmanager
    async def _stream_request(
        self,
        url: str,
        payload: dict,
        headers: dict[str, str],
        params: dict[str, str] | None = None,
    ) -> AsyncIterator[httpx.Response]:
        """Open a streaming POST, mapping transport failures to AdapterError."""
        merged_headers = {"Content-Type": "application/json", **self.record.extra_headers, **headers}
        try:
            async with self._client(self.record.timeout_seconds) as client:
                async with client.stream("POST", url, json=payload, headers=merged_headers, params=params) as resp:
                    await self._raise_for_status(resp)
                    yield resp
        except httpx.HTTPError as e:
            raise error_from_transport(self.provider_id, e) from e


AdapterFactory = Callable[[ProviderRecord], BaseProviderAdapter]


class AdapterRegistry:
    """Maps an adapter kind to the factory that builds its adapter.

    Usage:
        registry = AdapterRegistry()
        registry.register("openai", OpenAIAdapter)
        adapter = registry.create(record)
    """

    def __init__(self, factories: dict[str, AdapterFactory] | None = None):
        self._factories: dict[str, AdapterFactory] = dict(factories or {})

    def register(self, kind: str, factory: AdapterFactory) -> None:
        self._factories[kind] = factory
        logger.debug("Registered adapter factory for %s", kind)

    def unregister(self, kind: str) -> None:
        self._factories.pop(kind, None)

    def supported(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, kind: str) -> bool:
        return kind in self._factories

    def create(self, record: ProviderRecord) -> BaseProviderAdapter:
        """Build the adapter for a record.

        Raises UnsupportedProviderError when no factory is registered for
        the record's adapter kind; this is a configuration error.
        """
        factory = self._factories.get(record.adapter_kind)
        if factory is None:
            raise UnsupportedProviderError(
                f"Unsupported provider: {record.adapter_kind}. Supported: {', '.join(self.supported())}",
                record.provider_id,
            )
        return factory(record)

