"""Tests for error mapping and the error taxonomy."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest

from llm_orchestrator.gateway.errors import (
    AdapterError,
    ChainExhaustedError,
    ConfigError,
    GatewayError,
    MalformedToolCallError,
    UnsupportedProviderError,
    error_from_status,
    error_from_transport,
    parse_retry_after,
)
from llm_orchestrator.gateway.types import ErrorCode, ErrorEvent, ProviderAttempt


class TestErrorFromStatus:
    @pytest.mark.parametrize(
        "status, body, code, retryable",
        [
            (401, "invalid x-api-key", ErrorCode.AUTH_FAILED, False),
            (403, "forbidden", ErrorCode.AUTH_FAILED, False),
            (429, "rate limited", ErrorCode.RATE_LIMITED, True),
            (400, "This model's maximum context length is 128000 tokens", ErrorCode.CONTEXT_OVERFLOW, False),
            (413, "request too large", ErrorCode.CONTEXT_OVERFLOW, False),
            (400, "temperature must be <= 2", ErrorCode.INVALID_REQUEST, False),
            (404, "model not found", ErrorCode.INVALID_REQUEST, False),
            (408, "", ErrorCode.TIMEOUT, True),
            (500, "internal error", ErrorCode.API_ERROR, True),
            (502, "bad gateway", ErrorCode.API_ERROR, True),
            (503, "Server Busy", ErrorCode.SERVICE_UNAVAILABLE, True),
            (529, "overloaded", ErrorCode.SERVICE_UNAVAILABLE, True),
            (418, "teapot", ErrorCode.API_ERROR, False),
        ],
    )
    def test_mapping(self, status, body, code, retryable):
        error = error_from_status("openai", status, body)
        assert error.code == code
        assert error.retryable is retryable
        assert error.status_code == status
        assert error.provider_id == "openai"

    def test_empty_body_uses_status(self):
        assert error_from_status("openai", 500).message == "HTTP 500"

    def test_rate_limit_carries_retry_after(self):
        error = error_from_status("anthropic", 429, "slow down", {"Retry-After": "7"})
        assert error.retry_after_ms == 7000


class TestParseRetryAfter:
    def test_milliseconds_header_wins(self):
        assert parse_retry_after({"retry-after-ms": "1500", "retry-after": "9"}) == 1500

    def test_seconds(self):
        assert parse_retry_after({"retry-after": "1.5"}) == 1500

    def test_http_date(self):
        when = datetime.now(timezone.utc) + timedelta(seconds=30)
        delay = parse_retry_after({"retry-after": format_datetime(when, usegmt=True)})
        assert 25_000 <= delay <= 30_000

    def test_missing_or_garbage(self):
        assert parse_retry_after({}) is None
        assert parse_retry_after({"retry-after": "soon"}) is None


class TestErrorFromTransport:
    def test_timeout(self):
        error = error_from_transport("gemini", httpx.ReadTimeout("read timed out"))
        assert error.code == ErrorCode.TIMEOUT
        assert error.retryable is True

    def test_network(self):
        error = error_from_transport("gemini", httpx.ConnectError("refused"))
        assert error.code == ErrorCode.NETWORK_ERROR
        assert error.retryable is True

    def test_other(self):
        error = error_from_transport("gemini", httpx.DecodingError("bad gzip"))
        assert error.code == ErrorCode.API_ERROR
        assert error.retryable is False


class TestErrorTypes:
    def test_hierarchy(self):
        assert issubclass(UnsupportedProviderError, ConfigError)
        for cls in (ConfigError, AdapterError, MalformedToolCallError, ChainExhaustedError):
            assert issubclass(cls, GatewayError)

    def test_adapter_error_event_conversion(self):
        event = ErrorEvent(ErrorCode.RATE_LIMITED, "slow", retryable=True, retry_after_ms=250)
        error = AdapterError.from_event(event, "openai")
        assert str(error) == "[openai] slow"
        assert error.to_event() == event

    def test_malformed_tool_call_event(self):
        event = MalformedToolCallError("c1", "lookup", '{"a":').to_event()
        assert event.code == ErrorCode.MALFORMED_TOOL_CALL
        assert event.retryable is False
        assert "c1" in event.message

    def test_chain_exhausted_message(self):
        attempts = [
            ProviderAttempt("openai", skipped="circuit_open"),
            ProviderAttempt(
                "anthropic",
                attempts=2,
                last_error=AdapterError(ErrorCode.TIMEOUT, "anthropic", "No response", retryable=True),
            ),
        ]
        error = ChainExhaustedError("req-1", attempts)
        assert "openai: skipped (circuit_open)" in str(error)
        assert "anthropic: 2 attempt(s)" in str(error)
        assert error.to_dict()["attempts"][1]["error_code"] == "TIMEOUT"
        assert error.to_dict()["attempts"][0]["skipped"] == "circuit_open"

    def test_config_error_names_provider(self):
        assert str(ConfigError("API key is required", "openai")) == "[openai] API key is required"
