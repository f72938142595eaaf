"""Adaptive Rate Limiter — per-provider RPM/TPM/concurrency admission.

Tracks requests-per-minute (RPM), tokens-per-minute (TPM) and in-flight
calls for each provider using a sliding window. Entries age out
continuously (no periodic reset), so there is no burst at window
boundaries.

Admission is non-blocking: a provider whose budget is exhausted is
rejected and the caller moves on to the next candidate in its chain.

Thread-safe via asyncio.Lock (one lock per provider).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

from llm_orchestrator.gateway.types import RateLimitConfig

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


@dataclass
class _WindowEntry:
    """Single entry in the sliding window."""

    timestamp: float  # clock() at admission
    tokens: int = 0  # Estimated at admission, replaced by actual usage on release


@dataclass
class _ProviderBucket:
    """Sliding window bucket for a single provider."""

    config: RateLimitConfig
    window_seconds: float = WINDOW_SECONDS
    entries: deque[_WindowEntry] = field(default_factory=deque)
    active_count: int = 0  # Currently in-flight requests
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def _prune(self, now: float) -> None:
        """Remove entries older than the window."""
        cutoff = now - self.window_seconds
        while self.entries and self.entries[0].timestamp <= cutoff:
            self.entries.popleft()

    @property
    def current_rpm(self) -> int:
        """Requests in the current window."""
        return len(self.entries)

    @property
    def current_tpm(self) -> int:
        """Tokens in the current window."""
        return sum(e.tokens for e in self.entries)

    def rejection_reason(self, now: float, tokens: int) -> str:
        """Why a request of ``tokens`` cannot be admitted now ('' if it can)."""
        self._prune(now)

        if self.config.max_concurrent is not None and self.active_count >= self.config.max_concurrent:
            return "concurrency"

        if self.config.requests_per_minute is not None and self.current_rpm + 1 > self.config.requests_per_minute:
            return "requests_per_minute"

        if self.config.tokens_per_minute is not None and self.current_tpm + tokens > self.config.tokens_per_minute:
            return "tokens_per_minute"

        return ""

    def retry_in(self, now: float) -> float:
        """Seconds until the oldest window entry ages out."""
        if not self.entries:
            return 0.0
        return max((self.entries[0].timestamp + self.window_seconds) - now, 0.0)


class RateSlot:
    """An admitted call. ``release`` must be called exactly once when it ends.

    Extra ``release`` calls are ignored, so a cancellation racing with a late
    completion cannot free the in-flight slot twice.
    """

    def __init__(self, provider_id: str, bucket: _ProviderBucket | None, entry: _WindowEntry | None):
        self.provider_id = provider_id
        self._bucket = bucket
        self._entry = entry
        self.released = False

    def release(self, total_tokens: int | None = None) -> None:
        if self.released:
            return
        self.released = True
        if self._bucket is None:
            return
        self._bucket.active_count = max(0, self._bucket.active_count - 1)
        if self._entry is not None and total_tokens is not None and total_tokens > 0:
            self._entry.tokens = total_tokens


class AdaptiveRateLimiter:
    """Per-provider sliding-window rate limiter.

    Usage:
        limiter = AdaptiveRateLimiter()
        limiter.configure("openai", RateLimitConfig(requests_per_minute=60))

        slot = await limiter.try_acquire("openai", tokens=1200)
        if slot is None:
            # Budget exhausted, skip to next provider
            ...
        try:
            ...
        finally:
            slot.release(total_tokens=1500)
    """

    def __init__(
        self,
        window_seconds: float = WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self._clock = clock
        self._buckets: dict[str, _ProviderBucket] = {}

    def configure(self, provider_id: str, config: RateLimitConfig | None) -> None:
        """Install (or clear, with ``None``) the limits for a provider.

        Reconfiguring keeps the existing window and in-flight count, so calls
        admitted under the old limits still count against the new ones.
        """
        if config is None:
            self._buckets.pop(provider_id, None)
            return
        existing = self._buckets.get(provider_id)
        if existing is not None:
            if existing.config != config:
                logger.info("Rate limits for %s changed: %s", provider_id, config)
                existing.config = config
            return
        self._buckets[provider_id] = _ProviderBucket(config=config, window_seconds=self.window_seconds)

    def remove(self, provider_id: str) -> None:
        self._buckets.pop(provider_id, None)

    async def try_acquire(self, provider_id: str, tokens: int = 0) -> RateSlot | None:
        """Try to admit a call to the provider.

        Returns a RateSlot when admitted, None when any budget is exhausted.
        Providers without configured limits are always admitted.
        """
        bucket = self._buckets.get(provider_id)
        if bucket is None:
            return RateSlot(provider_id, None, None)

        async with bucket.lock:
            now = self._clock()
            reason = bucket.rejection_reason(now, tokens)
            if reason:
                logger.info(
                    "Rate limit (%s) reached for %s, window frees in %.1fs",
                    reason,
                    provider_id,
                    bucket.retry_in(now),
                )
                return None

            entry = _WindowEntry(timestamp=now, tokens=max(0, tokens))
            bucket.entries.append(entry)
            bucket.active_count += 1
            return RateSlot(provider_id, bucket, entry)

    def get_stats(self, provider_id: str) -> dict:
        """Get current rate limit stats for a provider."""
        bucket = self._buckets.get(provider_id)
        if bucket is None:
            return {"provider": provider_id, "limited": False}
        bucket._prune(self._clock())
        return {
            "provider": provider_id,
            "limited": True,
            "current_rpm": bucket.current_rpm,
            "rpm_limit": bucket.config.requests_per_minute,
            "current_tpm": bucket.current_tpm,
            "tpm_limit": bucket.config.tokens_per_minute,
            "active_requests": bucket.active_count,
            "max_concurrent": bucket.config.max_concurrent,
        }

    def get_all_stats(self) -> list[dict]:
        """Get stats for all configured providers."""
        return [self.get_stats(p) for p in self._buckets]
