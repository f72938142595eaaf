"""Core types and DTOs for the provider orchestration layer."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    from llm_orchestrator.gateway.errors import AdapterError


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ErrorCode(str, Enum):
    """Normalized error codes shared by every adapter."""

    INVALID_CONFIG = "INVALID_CONFIG"
    AUTH_FAILED = "AUTH_FAILED"
    RATE_LIMITED = "RATE_LIMITED"
    CONTEXT_OVERFLOW = "CONTEXT_OVERFLOW"
    INVALID_REQUEST = "INVALID_REQUEST"
    API_ERROR = "API_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    CONTENT_FILTERED = "CONTENT_FILTERED"  # Gemini SAFETY finish or similar
    MALFORMED_TOOL_CALL = "MALFORMED_TOOL_CALL"


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


# ---------------------------------------------------------------------------
# Provider configuration
# ---------------------------------------------------------------------------


DEFAULT_RETRYABLE_CODES: frozenset[ErrorCode] = frozenset(
    {
        ErrorCode.RATE_LIMITED,
        ErrorCode.NETWORK_ERROR,
        ErrorCode.TIMEOUT,
        ErrorCode.API_ERROR,
        ErrorCode.SERVICE_UNAVAILABLE,
    }
)


@dataclass(frozen=True)
class RateLimitConfig:
    """Per-minute budgets for one provider. ``None`` disables a limit."""

    requests_per_minute: int | None = None
    tokens_per_minute: int | None = None
    max_concurrent: int | None = None


@dataclass(frozen=True)
class RetryPolicyConfig:
    """Retry budget for calls against a single provider."""

    max_attempts: int = 3  # Total calls, including the first one
    base_backoff_ms: int = 1000
    max_backoff_ms: int = 30_000
    retryable_codes: frozenset[ErrorCode] = DEFAULT_RETRYABLE_CODES


@dataclass(frozen=True)
class ProviderRecord:
    """One registered provider instance.

    Records are immutable; toggling ``enabled`` goes through
    ``ProviderManager.set_provider_enabled`` which swaps in a copy.
    """

    provider_id: str
    model: str = ""
    context_limit: int = 128_000
    max_output_tokens: int = 4096
    enabled: bool = True
    priority: int = 0  # Higher is preferred
    fallback_providers: tuple[str, ...] = ()
    rate_limit: RateLimitConfig | None = None
    retry_policy: RetryPolicyConfig = field(default_factory=RetryPolicyConfig)

    # Adapter construction
    adapter: str = ""  # Adapter kind in the registry; defaults to provider_id
    api_key: str = ""
    base_url: str = ""
    timeout_seconds: float | None = None  # Per-attempt deadline
    supports_tool_calling: bool = True
    extra_headers: dict[str, str] = field(default_factory=dict, hash=False, compare=False)

    @property
    def adapter_kind(self) -> str:
        return self.adapter or self.provider_id

    def to_dict(self) -> dict:
        """Serialize for status output. Credentials are never included."""
        return {
            "provider_id": self.provider_id,
            "adapter": self.adapter_kind,
            "model": self.model,
            "enabled": self.enabled,
            "priority": self.priority,
            "context_limit": self.context_limit,
            "max_output_tokens": self.max_output_tokens,
            "fallback_providers": list(self.fallback_providers),
            "has_api_key": bool(self.api_key),
        }


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


@dataclass
class ToolCall:
    """A fully reconstructed tool call, ready for the tool executor."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class Message:
    role: Role
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str = ""  # For role=tool: which call this result answers
    name: str = ""  # For role=tool: the tool's name (Gemini needs it)


@dataclass
class ToolDefinition:
    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass
class GenerateOptions:
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    stop_sequences: list[str] = field(default_factory=list)
    timeout_seconds: float | None = None  # Overrides the record's deadline


@dataclass
class GenerateRequest:
    """A single conversational generation request.

    ``per_call_fallback`` of ``None`` means "use the primary record's
    configured fallbacks"; an empty list means no per-call fallbacks.
    """

    provider_id: str
    conversation: list[Message] = field(default_factory=list)
    tools: list[ToolDefinition] = field(default_factory=list)
    options: GenerateOptions = field(default_factory=GenerateOptions)
    per_call_fallback: list[str] | None = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class TextEvent:
    content: str


@dataclass
class ToolCallFragment:
    id: str
    name: str = ""
    args_fragment: str = ""


@dataclass
class ToolCallEvent:
    """Complete tool call emitted by the merged stream."""

    id: str
    name: str
    arguments: dict[str, Any]

    def to_tool_call(self) -> ToolCall:
        return ToolCall(id=self.id, name=self.name, arguments=dict(self.arguments))


@dataclass
class DoneEvent:
    usage: Usage | None = None


@dataclass
class ErrorEvent:
    code: ErrorCode
    message: str = ""
    retryable: bool = False
    retry_after_ms: int | None = None


StreamEvent = Union[TextEvent, ToolCallFragment, DoneEvent, ErrorEvent]
MergedEvent = Union[TextEvent, ToolCallEvent, DoneEvent, ErrorEvent]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class ProviderAttempt:
    """Diagnostic record for one candidate in a fallback chain."""

    provider_id: str
    attempts: int = 0  # Adapter calls actually made
    last_error: AdapterError | None = None  # Error of the final failed call
    skipped: str = ""  # circuit_open | rate_limited | disabled
    succeeded: bool = False

    def to_dict(self) -> dict:
        return {
            "provider_id": self.provider_id,
            "attempts": self.attempts,
            "last_error": str(self.last_error) if self.last_error else None,
            "error_code": self.last_error.code.value if self.last_error else None,
            "skipped": self.skipped or None,
            "succeeded": self.succeeded,
        }


@dataclass
class DispatchTrace:
    """Filled in by ``ProviderManager.dispatch`` as the chain is walked."""

    request_id: str = ""
    chain: list[str] = field(default_factory=list)
    attempts: list[ProviderAttempt] = field(default_factory=list)
    provider_id: str = ""  # Provider that served the stream

    def attempt_for(self, provider_id: str) -> ProviderAttempt | None:
        for attempt in self.attempts:
            if attempt.provider_id == provider_id:
                return attempt
        return None


@dataclass
class GenerationResult:
    """Collected output of ``ProviderManager.generate``."""

    request_id: str
    provider_id: str
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage | None = None
    errors: list[ErrorEvent] = field(default_factory=list)  # Malformed tool calls etc.
    attempts: list[ProviderAttempt] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "provider_id": self.provider_id,
            "text": self.text,
            "tool_calls": [{"id": c.id, "name": c.name, "arguments": c.arguments} for c in self.tool_calls],
            "input_tokens": self.usage.input_tokens if self.usage else 0,
            "output_tokens": self.usage.output_tokens if self.usage else 0,
            "errors": [{"code": e.code.value, "message": e.message} for e in self.errors],
            "attempts": [a.to_dict() for a in self.attempts],
        }
