import asyncio
import random

import pytest

from llm_orchestrator.gateway.adapters import AdapterRegistry, BaseProviderAdapter
from llm_orchestrator.gateway.circuit_breaker import CircuitBreaker
from llm_orchestrator.gateway.provider_manager import ProviderManager
from llm_orchestrator.gateway.rate_limiter import AdaptiveRateLimiter
from llm_orchestrator.gateway.types import (
    DoneEvent,
    Message,
    ProviderRecord,
    RetryPolicyConfig,
    Role,
    TextEvent,
    Usage,
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedAdapter(BaseProviderAdapter):
    """Adapter that replays a script instead of calling a vendor.

    ``script`` holds one step per call (the last step repeats). A step is a
    list of stream events; an exception in the list is raised when reached.
    With ``hang_after`` set, each call blocks forever after that many items.
    """

    kind = "scripted"
    default_model = "scripted-1"
    default_base_url = "http://scripted.local"
    requires_api_key = False

    def __init__(self, record, transport=None):
        super().__init__(record, transport)
        self.script = [[TextEvent("hello"), DoneEvent(Usage(input_tokens=10, output_tokens=5))]]
        self.hang_after = None
        self.calls = 0
        self.open_streams = 0

    async def generate_stream(self, conversation, tools=None, options=None):
        step = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        self.open_streams += 1
        try:
            for index, item in enumerate(step):
                if index == self.hang_after:
                    await asyncio.Event().wait()
                if isinstance(item, BaseException):
                    raise item
                yield item
            if self.hang_after is not None and self.hang_after >= len(step):
                await asyncio.Event().wait()
        finally:
            self.open_streams -= 1


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return AdapterRegistry({"scripted": ScriptedAdapter})


@pytest.fixture
def make_record():
    """Build records served by the scripted adapter with near-zero backoff."""

    def _make(provider_id: str, **overrides) -> ProviderRecord:
        overrides.setdefault("retry_policy", RetryPolicyConfig(max_attempts=3, base_backoff_ms=1, max_backoff_ms=5))
        return ProviderRecord(provider_id=provider_id, adapter="scripted", **overrides)

    return _make


@pytest.fixture
def manager(registry, clock):
    return ProviderManager(
        registry=registry,
        circuit_breaker=CircuitBreaker(failure_threshold=3, recovery_timeout=30.0, clock=clock),
        rate_limiter=AdaptiveRateLimiter(clock=clock),
        request_timeout_seconds=5.0,
        rng=random.Random(0),
    )


@pytest.fixture
def conversation():
    return [
        Message(Role.SYSTEM, "You are terse."),
        Message(Role.USER, "What's the weather in Paris?"),
    ]
