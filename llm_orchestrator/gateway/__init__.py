"""LLM Provider Orchestration Layer.

Routes conversational generation requests across LLM vendors with:
  - Provider Manager (registry, fallback chain, dispatch)
  - Vendor-Specific Adapters (streaming protocol differences)
  - Retry Policy (exponential backoff with jitter)
  - Circuit Breaker (per-provider health)
  - Adaptive Rate Limiter (RPM/TPM/concurrency per provider)
  - Stream Normalizer (tool-call fragment merging)
"""
