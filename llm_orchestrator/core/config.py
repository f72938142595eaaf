from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Routing
    default_provider: str = "openai"
    fallback_chain: str = ""  # comma-separated, e.g. "anthropic,gemini,ollama"

    @property
    def fallback_chain_list(self) -> list[str]:
        return [p.strip() for p in self.fallback_chain.split(",") if p.strip()]

    # Circuit breaker
    circuit_failure_threshold: int = 5
    circuit_cooldown_seconds: float = 30.0

    # Dispatch
    request_timeout_seconds: float = 120.0  # Per-attempt deadline
    rate_window_seconds: float = 60.0

    # Retry defaults (per provider, overridable per record)
    retry_max_attempts: int = 3
    retry_base_backoff_ms: int = 1000
    retry_max_backoff_ms: int = 30_000

    # Provider credentials
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    gemini_api_key: str = ""
    deepseek_api_key: str = ""
    openrouter_api_key: str = ""
    together_api_key: str = ""
    mistral_api_key: str = ""
    perplexity_api_key: str = ""

    # Provider models (empty = adapter default)
    openai_model: str = ""
    anthropic_model: str = ""
    gemini_model: str = ""
    deepseek_model: str = ""
    openrouter_model: str = ""
    together_model: str = ""
    mistral_model: str = ""
    perplexity_model: str = ""

    # Ollama runs locally; it is registered only when a model is configured
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = ""

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs


settings = Settings()
