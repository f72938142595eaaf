"""Tests for settings, bootstrap and logging setup."""

from __future__ import annotations

import json
import logging

import pytest

from llm_orchestrator.core.config import Settings
from llm_orchestrator.core.logging import ConsoleFormatter, ContextLogger, JSONFormatter, setup_logging
from llm_orchestrator.gateway.bootstrap import (
    DEFAULT_PROVIDER_PROFILES,
    build_provider_manager,
    records_from_settings,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in Settings.model_fields:
        monkeypatch.delenv(name.upper(), raising=False)


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


class TestSettings:
    def test_defaults(self):
        s = _settings()
        assert s.default_provider == "openai"
        assert s.circuit_failure_threshold == 5
        assert s.fallback_chain_list == []

    def test_fallback_chain_list(self):
        s = _settings(fallback_chain=" anthropic, gemini ,,ollama")
        assert s.fallback_chain_list == ["anthropic", "gemini", "ollama"]

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        monkeypatch.setenv("CIRCUIT_COOLDOWN_SECONDS", "12.5")
        s = _settings()
        assert s.anthropic_api_key == "sk-ant-test"
        assert s.circuit_cooldown_seconds == 12.5


class TestBootstrap:
    def test_only_configured_vendors_registered(self):
        s = _settings(openai_api_key="sk-1", gemini_api_key="g-1", gemini_model="gemini-2.5-pro")
        records = {r.provider_id: r for r in records_from_settings(s)}

        assert set(records) == {"openai", "gemini"}
        assert records["gemini"].model == "gemini-2.5-pro"
        assert records["openai"].priority == DEFAULT_PROVIDER_PROFILES["openai"]["priority"]

    def test_ollama_registered_when_model_set(self):
        s = _settings(ollama_model="llama3.1", ollama_base_url="http://gpu-box:11434")
        (record,) = records_from_settings(s)
        assert record.provider_id == "ollama"
        assert record.base_url == "http://gpu-box:11434"
        assert record.api_key == ""

    def test_retry_defaults_from_settings(self):
        s = _settings(openai_api_key="sk-1", retry_max_attempts=5, retry_base_backoff_ms=200)
        (record,) = records_from_settings(s)
        assert record.retry_policy.max_attempts == 5
        assert record.retry_policy.base_backoff_ms == 200

    def test_default_chain_excludes_default_provider(self):
        s = _settings(openai_api_key="sk-1", anthropic_api_key="sk-2", mistral_api_key="m-1")
        manager = build_provider_manager(s)

        assert manager.global_fallback_chain == ["anthropic", "mistral"]
        assert manager.circuit_breaker.failure_threshold == s.circuit_failure_threshold

    def test_explicit_chain(self):
        s = _settings(openai_api_key="sk-1", anthropic_api_key="sk-2", fallback_chain="anthropic")
        manager = build_provider_manager(s)
        assert manager.global_fallback_chain == ["anthropic"]

    def test_no_providers_warns(self, caplog):
        with caplog.at_level(logging.WARNING, logger="llm_orchestrator.gateway.bootstrap"):
            manager = build_provider_manager(_settings())
        assert manager.list_providers() == []
        assert "No LLM providers configured" in caplog.text


class TestLogging:
    @pytest.fixture
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield root
        for handler in root.handlers[:]:
            root.removeHandler(handler)
        for handler in handlers:
            root.addHandler(handler)
        root.setLevel(level)

    def test_json_formatter_includes_context(self):
        record = logging.LogRecord("llm_orchestrator.gateway", logging.INFO, __file__, 1, "served by %s", ("b",), None)
        record.request_id = "req-1"
        record.provider_id = "b"

        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "served by b"
        assert data["level"] == "INFO"
        assert data["request_id"] == "req-1"
        assert data["provider_id"] == "b"

    def test_setup_logging_json(self, restore_root):
        setup_logging(_settings(log_json=True, log_level="debug"))

        assert restore_root.level == logging.DEBUG
        assert isinstance(restore_root.handlers[0].formatter, JSONFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_setup_logging_console(self, restore_root):
        setup_logging(_settings(log_json=False))
        assert isinstance(restore_root.handlers[0].formatter, ConsoleFormatter)

    def test_console_formatter_appends_context(self):
        record = logging.LogRecord("llm_orchestrator.gateway", logging.WARNING, __file__, 1, "retrying", (), None)
        record.request_id = "req-1"

        line = ConsoleFormatter().format(record)

        assert line.endswith("| retrying [request_id=req-1]")

    def test_console_formatter_without_context(self):
        record = logging.LogRecord("llm_orchestrator.gateway", logging.INFO, __file__, 1, "ready", (), None)
        assert ConsoleFormatter().format(record).endswith("| ready")

    def test_context_logger_binds_fields(self, caplog):
        log = ContextLogger(logging.getLogger("llm_orchestrator.test"), {"request_id": "req-9"})

        with caplog.at_level(logging.INFO, logger="llm_orchestrator.test"):
            log.bind(provider_id="anthropic").info("served")
            log.info("exhausted")

        served, exhausted = caplog.records
        assert (served.request_id, served.provider_id) == ("req-9", "anthropic")
        assert exhausted.request_id == "req-9"
        assert not hasattr(exhausted, "provider_id")
