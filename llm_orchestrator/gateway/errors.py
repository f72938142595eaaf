"""Error taxonomy for the orchestration layer.

Hierarchy:
    GatewayError (base)
    ├── ConfigError - misconfigured provider, fatal, never retried
    │   └── UnsupportedProviderError - no adapter factory for the provider
    ├── AdapterError - upstream call failed (code, retryable, retry_after_ms)
    ├── MalformedToolCallError - tool-call fragments never formed valid JSON
    ├── ChainExhaustedError - every candidate was skipped or failed
    └── RequestCancelledError - the caller cancelled the request

Also maps HTTP statuses and httpx transport failures to ``AdapterError``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from email.utils import parsedate_to_datetime

import httpx

from llm_orchestrator.gateway.types import ErrorCode, ErrorEvent, ProviderAttempt

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Base exception for all orchestration errors."""


class ConfigError(GatewayError):
    """Raised when a provider is missing required configuration."""

    def __init__(self, message: str, provider_id: str = ""):
        super().__init__(f"[{provider_id}] {message}" if provider_id else message)
        self.provider_id = provider_id


class UnsupportedProviderError(ConfigError):
    """Raised when no adapter factory is registered for a provider kind."""


class AdapterError(GatewayError):
    """Raised (or yielded as an ``ErrorEvent``) when an upstream call fails."""

    def __init__(
        self,
        code: ErrorCode,
        provider_id: str,
        message: str,
        retryable: bool = False,
        retry_after_ms: int | None = None,
        status_code: int = 0,
    ):
        super().__init__(f"[{provider_id}] {message}")
        self.code = code
        self.provider_id = provider_id
        self.message = message
        self.retryable = retryable
        self.retry_after_ms = retry_after_ms
        self.status_code = status_code

    @classmethod
    def from_event(cls, event: ErrorEvent, provider_id: str) -> AdapterError:
        return cls(
            code=event.code,
            provider_id=provider_id,
            message=event.message,
            retryable=event.retryable,
            retry_after_ms=event.retry_after_ms,
        )

    def to_event(self) -> ErrorEvent:
        return ErrorEvent(
            code=self.code,
            message=self.message,
            retryable=self.retryable,
            retry_after_ms=self.retry_after_ms,
        )


class MalformedToolCallError(GatewayError):
    """A tool call's accumulated arguments were not valid JSON at end of stream.

    Surfaced to the caller as an ``ErrorEvent``; it never counts against
    a provider's health or rate budget.
    """

    def __init__(self, tool_call_id: str, name: str, raw_arguments: str):
        super().__init__(f"Tool call {tool_call_id} ({name or '?'}) has incomplete arguments: {raw_arguments!r}")
        self.tool_call_id = tool_call_id
        self.name = name
        self.raw_arguments = raw_arguments

    def to_event(self) -> ErrorEvent:
        return ErrorEvent(code=ErrorCode.MALFORMED_TOOL_CALL, message=str(self), retryable=False)


class ChainExhaustedError(GatewayError):
    """Every provider in the chain was skipped or failed."""

    def __init__(self, request_id: str, attempts: list[ProviderAttempt]):
        self.request_id = request_id
        self.attempts = list(attempts)
        if attempts:
            detail = "; ".join(_describe_attempt(a) for a in attempts)
        else:
            detail = "no registered and enabled provider in chain"
        super().__init__(f"All providers failed for request {request_id}: {detail}")

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "attempts": [a.to_dict() for a in self.attempts],
        }


class RequestCancelledError(GatewayError):
    """The caller cancelled the request through its cancellation token."""


def _describe_attempt(attempt: ProviderAttempt) -> str:
    if attempt.skipped:
        return f"{attempt.provider_id}: skipped ({attempt.skipped})"
    return f"{attempt.provider_id}: {attempt.attempts} attempt(s), last error: {attempt.last_error}"


# ---------------------------------------------------------------------------
# HTTP error mapping
# ---------------------------------------------------------------------------

_CONTEXT_OVERFLOW_MARKERS = ("context length", "context_length", "too many tokens", "maximum context")


def parse_retry_after(headers: Mapping[str, str]) -> int | None:
    """Extract a retry hint in milliseconds from rate-limit headers.

    Understands ``retry-after-ms`` (OpenAI), ``retry-after`` in seconds and
    ``retry-after`` as an HTTP date.
    """
    lowered = {k.lower(): v for k, v in headers.items()}

    raw_ms = lowered.get("retry-after-ms")
    if raw_ms:
        try:
            return max(0, int(float(raw_ms)))
        except ValueError:
            logger.debug("Ignoring unparseable retry-after-ms header: %r", raw_ms)

    raw = lowered.get("retry-after")
    if not raw:
        return None
    try:
        return max(0, int(float(raw) * 1000))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        logger.debug("Ignoring unparseable retry-after header: %r", raw)
        return None
    return max(0, int((when.timestamp() - time.time()) * 1000))


def error_from_status(
    provider_id: str,
    status_code: int,
    body: str = "",
    headers: Mapping[str, str] | None = None,
) -> AdapterError:
    """Map an HTTP error status from a provider to a normalized AdapterError."""
    headers = headers or {}
    detail = body.strip()[:500] or f"HTTP {status_code}"
    lowered = detail.lower()

    if status_code in (401, 403):
        return AdapterError(ErrorCode.AUTH_FAILED, provider_id, detail, status_code=status_code)

    if status_code == 429:
        return AdapterError(
            ErrorCode.RATE_LIMITED,
            provider_id,
            detail,
            retryable=True,
            retry_after_ms=parse_retry_after(headers),
            status_code=status_code,
        )

    if status_code == 413 or (status_code == 400 and any(m in lowered for m in _CONTEXT_OVERFLOW_MARKERS)):
        return AdapterError(ErrorCode.CONTEXT_OVERFLOW, provider_id, detail, status_code=status_code)

    if status_code == 408:
        return AdapterError(ErrorCode.TIMEOUT, provider_id, detail, retryable=True, status_code=status_code)

    if status_code in (400, 404, 422):
        return AdapterError(ErrorCode.INVALID_REQUEST, provider_id, detail, status_code=status_code)

    if status_code in (503, 529):  # 529 = Anthropic "overloaded"
        return AdapterError(
            ErrorCode.SERVICE_UNAVAILABLE,
            provider_id,
            detail,
            retryable=True,
            retry_after_ms=parse_retry_after(headers),
            status_code=status_code,
        )

    if status_code >= 500:
        return AdapterError(ErrorCode.API_ERROR, provider_id, detail, retryable=True, status_code=status_code)

    return AdapterError(ErrorCode.API_ERROR, provider_id, detail, status_code=status_code)


def error_from_transport(provider_id: str, exc: Exception) -> AdapterError:
    """Map an httpx transport exception (no HTTP status) to an AdapterError."""
    if isinstance(exc, httpx.TimeoutException):
        return AdapterError(ErrorCode.TIMEOUT, provider_id, f"Request timed out: {exc}", retryable=True)
    if isinstance(exc, httpx.TransportError):
        return AdapterError(ErrorCode.NETWORK_ERROR, provider_id, f"Network error: {exc}", retryable=True)
    return AdapterError(ErrorCode.API_ERROR, provider_id, str(exc) or type(exc).__name__)
