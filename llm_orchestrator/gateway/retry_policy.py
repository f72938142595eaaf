"""Retry Policy — decides between retrying a provider and advancing the chain.

Pure decision procedure, consulted after every failed adapter call for a
single candidate provider:

  retry  iff  error.retryable
         and  error.code in retryable_codes
         and  attempt + 1 < max_attempts      (attempt is 0-based)

Backoff strategy:
  delay  = min(base * 2^attempt, max_backoff)
  jitter = random(0, delay * 0.1)
  total  = max(delay + jitter, retry_after_ms)

Advancing the chain never waits.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from enum import Enum

from llm_orchestrator.gateway.errors import AdapterError
from llm_orchestrator.gateway.types import RetryPolicyConfig

JITTER_FRACTION = 0.1


class RetryAction(str, Enum):
    RETRY_SAME_PROVIDER = "retry_same_provider"
    ADVANCE_CHAIN = "advance_chain"


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    delay_ms: float = 0.0

    @property
    def should_retry(self) -> bool:
        return self.action == RetryAction.RETRY_SAME_PROVIDER


class RetryPolicy:
    """Retry decisions for one provider's ``RetryPolicyConfig``.

    Usage:
        policy = RetryPolicy(record.retry_policy)
        decision = policy.decide(error, attempt=0)
        if decision.should_retry:
            await asyncio.sleep(decision.delay_ms / 1000)
    """

    def __init__(self, config: RetryPolicyConfig, rng: random.Random | None = None):
        self.config = config
        self._rng = rng or random.Random()

    def is_retryable(self, error: AdapterError) -> bool:
        return error.retryable and error.code in self.config.retryable_codes

    def decide(self, error: AdapterError, attempt: int) -> RetryDecision:
        """Decide what to do after the call numbered ``attempt`` (0-based) failed."""
        if not self.is_retryable(error):
            return RetryDecision(RetryAction.ADVANCE_CHAIN)
        if attempt + 1 >= self.config.max_attempts:
            return RetryDecision(RetryAction.ADVANCE_CHAIN)
        return RetryDecision(
            RetryAction.RETRY_SAME_PROVIDER,
            delay_ms=self.backoff_ms(attempt, retry_after_ms=error.retry_after_ms),
        )

    def base_delay_ms(self, attempt: int) -> float:
        """Exponential delay without jitter, capped at ``max_backoff_ms``."""
        exponential = self.config.base_backoff_ms * (2**attempt)
        return float(min(self.config.max_backoff_ms, exponential))

    def backoff_ms(self, attempt: int, retry_after_ms: int | None = None) -> float:
        delay = self.base_delay_ms(attempt)
        delay += self._rng.uniform(0, delay * JITTER_FRACTION)
        if retry_after_ms is not None:
            delay = max(delay, float(retry_after_ms))
        return delay
