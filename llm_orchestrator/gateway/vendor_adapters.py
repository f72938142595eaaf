"""Vendor-Specific Adapters — streaming protocol handling for each LLM vendor.

Each adapter translates a conversation into the vendor's HTTP streaming
protocol and yields the common StreamEvent sequence.

Vendor-specific behaviors:
  - OpenAI: chat completions SSE, tool-call deltas keyed by index,
    usage in the final chunk via ``stream_options.include_usage``
  - DeepSeek, OpenRouter, Together, Mistral: OpenAI-compatible
  - Perplexity: OpenAI-compatible, no tool calling
  - Anthropic: Messages SSE, tool input streamed as ``input_json_delta``,
    overload and rate-limit errors can arrive inside the stream
  - Gemini: streamGenerateContent SSE, function calls arrive whole,
    finishReason SAFETY → CONTENT_FILTERED
  - Ollama: local ``/api/chat`` NDJSON stream, no API key
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import AsyncIterator
from functools import lru_cache

import httpx
import tiktoken

from llm_orchestrator.gateway.adapters import (
    MESSAGE_OVERHEAD_TOKENS,
    AdapterRegistry,
    BaseProviderAdapter,
    estimate_tokens,
    message_text,
)
from llm_orchestrator.gateway.types import (
    DoneEvent,
    ErrorCode,
    ErrorEvent,
    GenerateOptions,
    Message,
    Role,
    StreamEvent,
    TextEvent,
    ToolCallFragment,
    ToolDefinition,
    Usage,
)

logger = logging.getLogger(__name__)


def _load_chunk(provider_id: str, data: str) -> dict | None:
    try:
        chunk = json.loads(data)
    except ValueError:
        logger.debug("Skipping unparseable chunk from %s: %.200s", provider_id, data)
        return None
    return chunk if isinstance(chunk, dict) else None


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


# ---------------------------------------------------------------------------
# OpenAI (and OpenAI-compatible vendors)
# ---------------------------------------------------------------------------


@lru_cache(maxsize=32)
def _tiktoken_encoding(model: str):
    """Encoding for a model, or None when tiktoken cannot load one."""
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        pass  # Unknown model name
    except Exception as e:
        logger.warning("tiktoken could not load encoding for %s, falling back to character estimate: %s", model, e)
        return None
    try:
        return tiktoken.get_encoding("cl100k_base")
    except Exception as e:  # BPE files are downloaded on first use
        logger.warning("tiktoken unavailable, falling back to character estimate: %s", e)
        return None


class OpenAIAdapter(BaseProviderAdapter):
    """OpenAI Chat Completions streaming adapter."""

    kind = "openai"
    default_model = "gpt-4o-mini"
    default_base_url = "https://api.openai.com/v1"
    completions_path = "/chat/completions"
    native_tool_calling = True
    include_usage_option = True  # Send stream_options.include_usage

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def count_tokens(self, conversation: list[Message]) -> int:
        encoding = _tiktoken_encoding(self.model)
        if encoding is None:
            return estimate_tokens(conversation)
        return sum(
            MESSAGE_OVERHEAD_TOKENS + len(encoding.encode(message_text(m), disallowed_special=()))
            for m in conversation
        )

    def _convert_messages(self, conversation: list[Message]) -> list[dict]:
        messages = []
        for m in conversation:
            if m.role == Role.TOOL:
                messages.append({"role": "tool", "tool_call_id": m.tool_call_id, "content": m.content})
                continue
            entry: dict = {"role": m.role.value, "content": m.content}
            if m.tool_calls:
                entry["content"] = m.content or None
                entry["tool_calls"] = [
                    {
                        "id": c.id,
                        "type": "function",
                        "function": {"name": c.name, "arguments": json.dumps(c.arguments)},
                    }
                    for c in m.tool_calls
                ]
            messages.append(entry)
        return messages

    def _build_payload(
        self,
        conversation: list[Message],
        tools: list[ToolDefinition],
        options: GenerateOptions,
    ) -> dict:
        payload: dict = {
            "model": self.model,
            "messages": self._convert_messages(conversation),
            "max_tokens": self._max_tokens(options),
            "stream": True,
        }
        if self.include_usage_option:
            payload["stream_options"] = {"include_usage": True}
        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.top_p is not None:
            payload["top_p"] = options.top_p
        if options.stop_sequences:
            payload["stop"] = list(options.stop_sequences)
        if tools and self.supports_tool_calling and self.native_tool_calling:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.parameters},
                }
                for t in tools
            ]
        elif tools:
            logger.debug("%s does not support tool calling, dropping %d tools", self.provider_id, len(tools))
        return payload

    async def generate_stream(
        self,
        conversation: list[Message],
        tools: list[ToolDefinition] | None = None,
        options: GenerateOptions | None = None,
    ) -> AsyncIterator[StreamEvent]:
        options = options or GenerateOptions()
        payload = self._build_payload(conversation, tools or [], options)
        url = f"{self.base_url}{self.completions_path}"

        usage: Usage | None = None
        finished = False
        ids_by_index: dict[int, str] = {}

        async with self._stream_request(url, payload, self._headers()) as resp:
            async for _event, data in self._iter_sse(resp):
                if data == "[DONE]":
                    finished = True
                    break
                chunk = _load_chunk(self.provider_id, data)
                if chunk is None:
                    continue

                if "error" in chunk:
                    error = chunk["error"] if isinstance(chunk["error"], dict) else {"message": str(chunk["error"])}
                    yield ErrorEvent(ErrorCode.API_ERROR, error.get("message", "stream error"), retryable=True)
                    return

                if chunk.get("usage"):
                    usage = Usage(
                        input_tokens=chunk["usage"].get("prompt_tokens", 0) or 0,
                        output_tokens=chunk["usage"].get("completion_tokens", 0) or 0,
                    )

                for choice in chunk.get("choices") or []:
                    delta = choice.get("delta") or {}
                    if delta.get("content"):
                        yield TextEvent(delta["content"])

                    for position, call in enumerate(delta.get("tool_calls") or []):
                        index = call.get("index", position)
                        if call.get("id"):
                            ids_by_index[index] = call["id"]
                        call_id = ids_by_index.setdefault(index, f"call_{index}")
                        function = call.get("function") or {}
                        yield ToolCallFragment(
                            id=call_id,
                            name=function.get("name") or "",
                            args_fragment=function.get("arguments") or "",
                        )

                    reason = choice.get("finish_reason")
                    if reason == "content_filter":
                        yield ErrorEvent(ErrorCode.CONTENT_FILTERED, "Response blocked by content filter")
                        return
                    if reason:
                        finished = True

        if finished:
            yield DoneEvent(usage)


class DeepSeekAdapter(OpenAIAdapter):
    kind = "deepseek"
    default_model = "deepseek-chat"
    default_base_url = "https://api.deepseek.com"


class OpenRouterAdapter(OpenAIAdapter):
    kind = "openrouter"
    default_model = "openai/gpt-4o-mini"
    default_base_url = "https://openrouter.ai/api/v1"


class TogetherAdapter(OpenAIAdapter):
    kind = "together"
    default_model = "meta-llama/Llama-3.3-70B-Instruct-Turbo"
    default_base_url = "https://api.together.xyz/v1"


class MistralAdapter(OpenAIAdapter):
    """Mistral sends whole tool calls in one delta and usage with the last chunk."""

    kind = "mistral"
    default_model = "mistral-small-latest"
    default_base_url = "https://api.mistral.ai/v1"
    include_usage_option = False


class PerplexityAdapter(OpenAIAdapter):
    """Perplexity Sonar. Search-grounded answers, no function calling."""

    kind = "perplexity"
    default_model = "sonar"
    default_base_url = "https://api.perplexity.ai"
    native_tool_calling = False
    include_usage_option = False


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------

ANTHROPIC_VERSION = "2023-06-01"

# In-stream error types → (code, retryable)
_ANTHROPIC_STREAM_ERRORS = {
    "overloaded_error": (ErrorCode.SERVICE_UNAVAILABLE, True),
    "rate_limit_error": (ErrorCode.RATE_LIMITED, True),
    "api_error": (ErrorCode.API_ERROR, True),
    "authentication_error": (ErrorCode.AUTH_FAILED, False),
    "permission_error": (ErrorCode.AUTH_FAILED, False),
    "invalid_request_error": (ErrorCode.INVALID_REQUEST, False),
    "request_too_large": (ErrorCode.CONTEXT_OVERFLOW, False),
}


class AnthropicAdapter(BaseProviderAdapter):
    """Anthropic Messages API streaming adapter."""

    kind = "anthropic"
    default_model = "claude-sonnet-4-5"
    default_base_url = "https://api.anthropic.com/v1"

    def _headers(self) -> dict[str, str]:
        return {"x-api-key": self.api_key, "anthropic-version": ANTHROPIC_VERSION}

    def _convert_messages(self, conversation: list[Message]) -> tuple[str, list[dict]]:
        system_parts: list[str] = []
        messages: list[dict] = []
        for m in conversation:
            if m.role == Role.SYSTEM:
                system_parts.append(m.content)
            elif m.role == Role.TOOL:
                block = {"type": "tool_result", "tool_use_id": m.tool_call_id, "content": m.content}
                previous = messages[-1] if messages else None
                # Consecutive tool results go back in a single user turn
                if (
                    previous is not None
                    and previous["role"] == "user"
                    and isinstance(previous["content"], list)
                    and all(b.get("type") == "tool_result" for b in previous["content"])
                ):
                    previous["content"].append(block)
                else:
                    messages.append({"role": "user", "content": [block]})
            elif m.role == Role.ASSISTANT and m.tool_calls:
                blocks: list[dict] = []
                if m.content:
                    blocks.append({"type": "text", "text": m.content})
                for c in m.tool_calls:
                    blocks.append({"type": "tool_use", "id": c.id, "name": c.name, "input": c.arguments})
                messages.append({"role": "assistant", "content": blocks})
            else:
                messages.append({"role": m.role.value, "content": m.content})
        return "\n\n".join(p for p in system_parts if p), messages

    def _build_payload(
        self,
        conversation: list[Message],
        tools: list[ToolDefinition],
        options: GenerateOptions,
    ) -> dict:
        system, messages = self._convert_messages(conversation)
        payload: dict = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self._max_tokens(options),
            "stream": True,
        }
        if system:
            payload["system"] = system
        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.top_p is not None:
            payload["top_p"] = options.top_p
        if options.stop_sequences:
            payload["stop_sequences"] = list(options.stop_sequences)
        if tools and self.supports_tool_calling:
            payload["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters} for t in tools
            ]
        return payload

    async def generate_stream(
        self,
        conversation: list[Message],
        tools: list[ToolDefinition] | None = None,
        options: GenerateOptions | None = None,
    ) -> AsyncIterator[StreamEvent]:
        options = options or GenerateOptions()
        payload = self._build_payload(conversation, tools or [], options)

        usage = Usage()
        ids_by_block: dict[int, str] = {}

        async with self._stream_request(f"{self.base_url}/messages", payload, self._headers()) as resp:
            async for event_name, data in self._iter_sse(resp):
                chunk = _load_chunk(self.provider_id, data)
                if chunk is None:
                    continue
                kind = chunk.get("type") or event_name

                if kind == "message_start":
                    message_usage = (chunk.get("message") or {}).get("usage") or {}
                    usage.input_tokens = message_usage.get("input_tokens", 0) or 0

                elif kind == "content_block_start":
                    block = chunk.get("content_block") or {}
                    if block.get("type") == "tool_use":
                        call_id = block.get("id") or _new_call_id()
                        ids_by_block[chunk.get("index", 0)] = call_id
                        yield ToolCallFragment(id=call_id, name=block.get("name", ""))

                elif kind == "content_block_delta":
                    delta = chunk.get("delta") or {}
                    if delta.get("type") == "text_delta":
                        yield TextEvent(delta.get("text", ""))
                    elif delta.get("type") == "input_json_delta":
                        call_id = ids_by_block.get(chunk.get("index", 0))
                        if call_id is None:
                            logger.debug("input_json_delta for unknown block from %s", self.provider_id)
                            continue
                        yield ToolCallFragment(id=call_id, args_fragment=delta.get("partial_json", ""))

                elif kind == "message_delta":
                    delta_usage = chunk.get("usage") or {}
                    usage.output_tokens = delta_usage.get("output_tokens", usage.output_tokens) or 0

                elif kind == "message_stop":
                    yield DoneEvent(usage)
                    return

                elif kind == "error":
                    error = chunk.get("error") or {}
                    code, retryable = _ANTHROPIC_STREAM_ERRORS.get(error.get("type", ""), (ErrorCode.API_ERROR, True))
                    yield ErrorEvent(code, error.get("message", "stream error"), retryable=retryable)
                    return


# ---------------------------------------------------------------------------
# Google Gemini
# ---------------------------------------------------------------------------

# finishReason values that mean the vendor refused to answer
_GEMINI_BLOCKED_REASONS = frozenset({"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII", "RECITATION"})


class GeminiAdapter(BaseProviderAdapter):
    """Google Gemini adapter with SAFETY filter detection."""

    kind = "gemini"
    default_model = "gemini-2.0-flash"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"

    def _convert_messages(self, conversation: list[Message]) -> tuple[str, list[dict]]:
        system_parts: list[str] = []
        contents: list[dict] = []
        call_names: dict[str, str] = {}
        for m in conversation:
            if m.role == Role.SYSTEM:
                system_parts.append(m.content)
            elif m.role == Role.TOOL:
                # Gemini matches function responses by name, not call id
                name = m.name or call_names.get(m.tool_call_id, "")
                contents.append(
                    {
                        "role": "user",
                        "parts": [{"functionResponse": {"name": name, "response": {"content": m.content}}}],
                    }
                )
            elif m.role == Role.ASSISTANT:
                parts: list[dict] = []
                if m.content:
                    parts.append({"text": m.content})
                for c in m.tool_calls:
                    call_names[c.id] = c.name
                    parts.append({"functionCall": {"name": c.name, "args": c.arguments}})
                contents.append({"role": "model", "parts": parts})
            else:
                contents.append({"role": "user", "parts": [{"text": m.content}]})
        return "\n\n".join(p for p in system_parts if p), contents

    def _build_payload(
        self,
        conversation: list[Message],
        tools: list[ToolDefinition],
        options: GenerateOptions,
    ) -> dict:
        system, contents = self._convert_messages(conversation)
        generation_config: dict = {"maxOutputTokens": self._max_tokens(options)}
        if options.temperature is not None:
            generation_config["temperature"] = options.temperature
        if options.top_p is not None:
            generation_config["topP"] = options.top_p
        if options.stop_sequences:
            generation_config["stopSequences"] = list(options.stop_sequences)

        payload: dict = {"contents": contents, "generationConfig": generation_config}
        # System instruction (separate from contents in Gemini API)
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        if tools and self.supports_tool_calling:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        {"name": t.name, "description": t.description, "parameters": t.parameters} for t in tools
                    ]
                }
            ]
        return payload

    async def generate_stream(
        self,
        conversation: list[Message],
        tools: list[ToolDefinition] | None = None,
        options: GenerateOptions | None = None,
    ) -> AsyncIterator[StreamEvent]:
        options = options or GenerateOptions()
        payload = self._build_payload(conversation, tools or [], options)
        url = f"{self.base_url}/models/{self.model}:streamGenerateContent"
        params = {"alt": "sse", "key": self.api_key}

        usage: Usage | None = None
        finished = False

        async with self._stream_request(url, payload, {}, params=params) as resp:
            async for _event, data in self._iter_sse(resp):
                chunk = _load_chunk(self.provider_id, data)
                if chunk is None:
                    continue

                block_reason = (chunk.get("promptFeedback") or {}).get("blockReason")
                if block_reason:
                    yield ErrorEvent(ErrorCode.CONTENT_FILTERED, f"Prompt blocked by Gemini: {block_reason}")
                    return

                metadata = chunk.get("usageMetadata")
                if metadata:
                    usage = Usage(
                        input_tokens=metadata.get("promptTokenCount", 0) or 0,
                        output_tokens=metadata.get("candidatesTokenCount", 0) or 0,
                    )

                for candidate in chunk.get("candidates") or []:
                    for part in (candidate.get("content") or {}).get("parts") or []:
                        if part.get("text") and not part.get("thought"):
                            yield TextEvent(part["text"])
                        elif "functionCall" in part:
                            call = part["functionCall"] or {}
                            yield ToolCallFragment(
                                id=call.get("id") or _new_call_id(),
                                name=call.get("name", ""),
                                args_fragment=json.dumps(call.get("args") or {}),
                            )

                    reason = candidate.get("finishReason")
                    if reason in _GEMINI_BLOCKED_REASONS:
                        logger.warning("Gemini %s blocked response: %s", self.provider_id, reason)
                        yield ErrorEvent(ErrorCode.CONTENT_FILTERED, f"Gemini safety filter triggered: {reason}")
                        return
                    if reason:
                        finished = True

        if finished:
            yield DoneEvent(usage)


# ---------------------------------------------------------------------------
# Ollama (local)
# ---------------------------------------------------------------------------


class OllamaAdapter(BaseProviderAdapter):
    """Local Ollama server. Streams newline-delimited JSON from ``/api/chat``."""

    kind = "ollama"
    default_base_url = "http://localhost:11434"
    requires_api_key = False

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    def _convert_messages(self, conversation: list[Message]) -> list[dict]:
        messages = []
        for m in conversation:
            entry: dict = {"role": m.role.value, "content": m.content}
            if m.tool_calls:
                entry["tool_calls"] = [{"function": {"name": c.name, "arguments": c.arguments}} for c in m.tool_calls]
            messages.append(entry)
        return messages

    def _build_payload(
        self,
        conversation: list[Message],
        tools: list[ToolDefinition],
        options: GenerateOptions,
    ) -> dict:
        model_options: dict = {"num_predict": self._max_tokens(options)}
        if options.temperature is not None:
            model_options["temperature"] = options.temperature
        if options.top_p is not None:
            model_options["top_p"] = options.top_p
        if options.stop_sequences:
            model_options["stop"] = list(options.stop_sequences)

        payload: dict = {
            "model": self.model,
            "messages": self._convert_messages(conversation),
            "stream": True,
            "options": model_options,
        }
        if tools and self.supports_tool_calling:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.parameters},
                }
                for t in tools
            ]
        return payload

    async def generate_stream(
        self,
        conversation: list[Message],
        tools: list[ToolDefinition] | None = None,
        options: GenerateOptions | None = None,
    ) -> AsyncIterator[StreamEvent]:
        options = options or GenerateOptions()
        payload = self._build_payload(conversation, tools or [], options)

        async with self._stream_request(f"{self.base_url}/api/chat", payload, self._headers()) as resp:
            async for line in resp.aiter_lines():
                if not line.strip():
                    continue
                chunk = _load_chunk(self.provider_id, line)
                if chunk is None:
                    continue

                if chunk.get("error"):
                    yield ErrorEvent(ErrorCode.API_ERROR, str(chunk["error"]), retryable=True)
                    return

                message = chunk.get("message") or {}
                if message.get("content"):
                    yield TextEvent(message["content"])
                for call in message.get("tool_calls") or []:
                    function = call.get("function") or {}
                    arguments = function.get("arguments") or {}
                    yield ToolCallFragment(
                        id=call.get("id") or _new_call_id(),
                        name=function.get("name", ""),
                        args_fragment=arguments if isinstance(arguments, str) else json.dumps(arguments),
                    )

                if chunk.get("done"):
                    yield DoneEvent(
                        Usage(
                            input_tokens=chunk.get("prompt_eval_count", 0) or 0,
                            output_tokens=chunk.get("eval_count", 0) or 0,
                        )
                    )
                    return


# ---------------------------------------------------------------------------
# Adapter registry
# ---------------------------------------------------------------------------

ADAPTER_REGISTRY: dict[str, type[BaseProviderAdapter]] = {
    OpenAIAdapter.kind: OpenAIAdapter,
    DeepSeekAdapter.kind: DeepSeekAdapter,
    OpenRouterAdapter.kind: OpenRouterAdapter,
    TogetherAdapter.kind: TogetherAdapter,
    MistralAdapter.kind: MistralAdapter,
    PerplexityAdapter.kind: PerplexityAdapter,
    AnthropicAdapter.kind: AnthropicAdapter,
    GeminiAdapter.kind: GeminiAdapter,
    OllamaAdapter.kind: OllamaAdapter,
}


def default_registry(transport: httpx.AsyncBaseTransport | None = None) -> AdapterRegistry:
    """Registry with every built-in vendor adapter.

    ``transport`` is handed to each adapter's HTTP client (tests pass an
    ``httpx.MockTransport``).
    """
    registry = AdapterRegistry()
    for kind, cls in ADAPTER_REGISTRY.items():
        if transport is None:
            registry.register(kind, cls)
        else:
            registry.register(kind, lambda record, cls=cls: cls(record, transport=transport))
    return registry
