"""Builds a ready ProviderManager from application settings.

Every vendor with credentials in the environment is registered using its
profile below; Ollama is registered when a local model is configured.
"""

from __future__ import annotations

import logging

from llm_orchestrator.core.config import Settings
from llm_orchestrator.core.config import settings as default_settings
from llm_orchestrator.gateway.adapters import AdapterRegistry
from llm_orchestrator.gateway.circuit_breaker import CircuitBreaker
from llm_orchestrator.gateway.provider_manager import ProviderManager
from llm_orchestrator.gateway.rate_limiter import AdaptiveRateLimiter
from llm_orchestrator.gateway.types import ProviderRecord, RateLimitConfig, RetryPolicyConfig

logger = logging.getLogger(__name__)

# Per-vendor defaults: priority (higher is preferred), context window,
# output cap and per-minute budgets for a typical paid tier.
DEFAULT_PROVIDER_PROFILES: dict[str, dict] = {
    "openai": {
        "priority": 100,
        "context_limit": 128_000,
        "max_output_tokens": 16_384,
        "rate_limit": RateLimitConfig(requests_per_minute=500, tokens_per_minute=200_000, max_concurrent=50),
    },
    "anthropic": {
        "priority": 90,
        "context_limit": 200_000,
        "max_output_tokens": 8192,
        "rate_limit": RateLimitConfig(requests_per_minute=50, tokens_per_minute=40_000, max_concurrent=10),
    },
    "gemini": {
        "priority": 80,
        "context_limit": 1_000_000,
        "max_output_tokens": 8192,
        "rate_limit": RateLimitConfig(requests_per_minute=60, tokens_per_minute=1_000_000, max_concurrent=10),
    },
    "deepseek": {
        "priority": 70,
        "context_limit": 64_000,
        "max_output_tokens": 8192,
        "timeout_seconds": 300.0,  # DeepSeek is slow under load
        "rate_limit": RateLimitConfig(max_concurrent=10),
    },
    "mistral": {
        "priority": 60,
        "context_limit": 128_000,
        "max_output_tokens": 8192,
        "rate_limit": RateLimitConfig(requests_per_minute=60, max_concurrent=10),
    },
    "openrouter": {
        "priority": 50,
        "context_limit": 128_000,
        "max_output_tokens": 8192,
        "rate_limit": RateLimitConfig(requests_per_minute=200, max_concurrent=20),
    },
    "together": {
        "priority": 40,
        "context_limit": 128_000,
        "max_output_tokens": 8192,
        "rate_limit": RateLimitConfig(requests_per_minute=600, max_concurrent=20),
    },
    "perplexity": {
        "priority": 30,
        "context_limit": 127_000,
        "max_output_tokens": 4096,
        "supports_tool_calling": False,
        "rate_limit": RateLimitConfig(requests_per_minute=50, max_concurrent=5),
    },
    "ollama": {
        "priority": 10,
        "context_limit": 32_768,
        "max_output_tokens": 4096,
        "timeout_seconds": 600.0,
        "rate_limit": RateLimitConfig(max_concurrent=2),
    },
}


def records_from_settings(settings: Settings) -> list[ProviderRecord]:
    """Provider records for every vendor configured in ``settings``."""
    retry = RetryPolicyConfig(
        max_attempts=settings.retry_max_attempts,
        base_backoff_ms=settings.retry_base_backoff_ms,
        max_backoff_ms=settings.retry_max_backoff_ms,
    )

    records = []
    for provider_id, profile in DEFAULT_PROVIDER_PROFILES.items():
        if provider_id == "ollama":
            if not settings.ollama_model:
                continue
            api_key, model, base_url = "", settings.ollama_model, settings.ollama_base_url
        else:
            api_key = getattr(settings, f"{provider_id}_api_key", "")
            if not api_key:
                continue
            model, base_url = getattr(settings, f"{provider_id}_model", ""), ""

        records.append(
            ProviderRecord(
                provider_id=provider_id,
                model=model,
                api_key=api_key,
                base_url=base_url,
                retry_policy=retry,
                **profile,
            )
        )
    return records


def build_provider_manager(
    settings: Settings | None = None,
    registry: AdapterRegistry | None = None,
) -> ProviderManager:
    """Create a manager with every configured provider registered.

    The global fallback chain comes from ``FALLBACK_CHAIN`` when set,
    otherwise every registered provider except the default, by priority.
    """
    settings = settings or default_settings
    manager = ProviderManager(
        registry=registry,
        circuit_breaker=CircuitBreaker(
            failure_threshold=settings.circuit_failure_threshold,
            recovery_timeout=settings.circuit_cooldown_seconds,
        ),
        rate_limiter=AdaptiveRateLimiter(window_seconds=settings.rate_window_seconds),
        request_timeout_seconds=settings.request_timeout_seconds,
    )

    for record in records_from_settings(settings):
        manager.register_provider(record)

    if not manager.list_providers():
        logger.warning("No LLM providers configured; set at least one *_API_KEY or OLLAMA_MODEL")

    chain = settings.fallback_chain_list or [
        r.provider_id for r in manager.list_providers() if r.provider_id != settings.default_provider
    ]
    manager.set_global_fallback_chain(chain)
    return manager
