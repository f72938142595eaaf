"""Provider Manager — the single entry point for generation requests.

Responsibilities:
  - Owns the provider registry (records + adapters) and the global
    fallback chain, both replaced copy-on-write so in-flight requests keep
    a consistent snapshot
  - Builds the effective chain for a request
  - Walks the chain: circuit check → rate admission → retry loop
  - Records per-provider outcomes in the circuit breaker
  - Streams merged events back to the caller

Flow for each candidate:
  1. CircuitBreaker.try_acquire   (skip if open / probe already in flight)
  2. AdaptiveRateLimiter          (skip if over budget)
  3. adapter.generate_stream      (under a per-attempt deadline)
  4. RetryPolicy.decide           (retry same provider or advance)
  5. record_success / record_failure once per candidate
"""

from __future__ import annotations

import asyncio
import logging
import random
import threading
import time
from collections.abc import AsyncIterator
from dataclasses import replace

from llm_orchestrator.core.config import settings
from llm_orchestrator.core.metrics import (
    CHAIN_EXHAUSTED,
    CHAIN_SKIPS,
    DISPATCH_DURATION,
    PROVIDER_ATTEMPTS,
    PROVIDER_RETRIES,
)
from llm_orchestrator.core.logging import ContextLogger
from llm_orchestrator.gateway.adapters import AdapterRegistry, BaseProviderAdapter, estimate_tokens
from llm_orchestrator.gateway.cancellation import CancellationToken
from llm_orchestrator.gateway.circuit_breaker import CircuitBreaker
from llm_orchestrator.gateway.errors import (
    AdapterError,
    ChainExhaustedError,
    ConfigError,
    RequestCancelledError,
)
from llm_orchestrator.gateway.normalizer import merge_stream
from llm_orchestrator.gateway.rate_limiter import AdaptiveRateLimiter, RateSlot
from llm_orchestrator.gateway.retry_policy import RetryPolicy
from llm_orchestrator.gateway.types import (
    DispatchTrace,
    DoneEvent,
    ErrorCode,
    ErrorEvent,
    GenerateRequest,
    GenerationResult,
    MergedEvent,
    ProviderAttempt,
    ProviderRecord,
    TextEvent,
    ToolCallEvent,
)
from llm_orchestrator.gateway.vendor_adapters import default_registry

logger = logging.getLogger(__name__)

_END = object()


def build_chain(
    request: GenerateRequest,
    records: dict[str, ProviderRecord],
    global_chain: tuple[str, ...] | list[str],
) -> list[str]:
    """Effective provider chain for a request.

    Order is primary, then per-call fallbacks, then the global chain. The
    first occurrence of an id wins, and only registered, enabled providers
    are kept.
    """
    primary = records.get(request.provider_id)
    if request.per_call_fallback is not None:
        per_call = list(request.per_call_fallback)
    else:
        per_call = list(primary.fallback_providers) if primary else []

    chain: list[str] = []
    seen: set[str] = set()
    for provider_id in [request.provider_id, *per_call, *global_chain]:
        if provider_id in seen:
            continue
        seen.add(provider_id)
        record = records.get(provider_id)
        if record is None or not record.enabled:
            continue
        chain.append(provider_id)
    return chain


async def _pull(stream: AsyncIterator[MergedEvent]):
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _END


async def _cancel_task(task: asyncio.Future) -> None:
    if not task.done():
        task.cancel()
    await asyncio.gather(task, return_exceptions=True)


class ProviderManager:
    """Routes generation requests across providers with failover.

    Usage:
        manager = ProviderManager()
        manager.register_provider(ProviderRecord("openai", model="gpt-4o-mini", api_key="..."))
        manager.register_provider(ProviderRecord("anthropic", api_key="...", priority=5))
        manager.set_global_fallback_chain(["anthropic"])

        async for event in manager.dispatch(GenerateRequest("openai", conversation)):
            ...
    """

    def __init__(
        self,
        registry: AdapterRegistry | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        rate_limiter: AdaptiveRateLimiter | None = None,
        request_timeout_seconds: float | None = None,
        rng: random.Random | None = None,
    ):
        self.registry = registry or default_registry()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=settings.circuit_failure_threshold,
            recovery_timeout=settings.circuit_cooldown_seconds,
        )
        self.rate_limiter = rate_limiter or AdaptiveRateLimiter(window_seconds=settings.rate_window_seconds)
        self.request_timeout_seconds = request_timeout_seconds or settings.request_timeout_seconds
        self._rng = rng or random.Random()

        # Replaced wholesale on every change; readers never see a partial update
        self._records: dict[str, ProviderRecord] = {}
        self._adapters: dict[str, BaseProviderAdapter] = {}
        self._global_chain: tuple[str, ...] = ()
        self._write_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register_provider(self, record: ProviderRecord) -> None:
        """Insert or replace a provider.

        Raises ConfigError (or UnsupportedProviderError) when the adapter
        cannot be built or its configuration is incomplete.
        """
        adapter = self.registry.create(record)
        adapter.validate_config()

        with self._write_lock:
            records = dict(self._records)
            adapters = dict(self._adapters)
            records[record.provider_id] = record
            adapters[record.provider_id] = adapter
            self._records, self._adapters = records, adapters

        self.rate_limiter.configure(record.provider_id, record.rate_limit)
        logger.info(
            "Registered provider %s (adapter=%s, model=%s, enabled=%s, priority=%d)",
            record.provider_id,
            record.adapter_kind,
            adapter.model,
            record.enabled,
            record.priority,
            extra={"provider_id": record.provider_id},
        )

    def unregister_provider(self, provider_id: str) -> bool:
        with self._write_lock:
            if provider_id not in self._records:
                return False
            records = dict(self._records)
            adapters = dict(self._adapters)
            del records[provider_id]
            adapters.pop(provider_id, None)
            self._records, self._adapters = records, adapters

        self.rate_limiter.remove(provider_id)
        self.circuit_breaker.forget(provider_id)
        logger.info("Unregistered provider %s", provider_id, extra={"provider_id": provider_id})
        return True

    def set_provider_enabled(self, provider_id: str, enabled: bool) -> ProviderRecord:
        with self._write_lock:
            current = self._records.get(provider_id)
            if current is None:
                raise ConfigError("Unknown provider", provider_id)
            updated = replace(current, enabled=enabled)
            records = dict(self._records)
            records[provider_id] = updated
            self._records = records

        logger.info("Provider %s %s", provider_id, "enabled" if enabled else "disabled")
        return updated

    def get_provider(self, provider_id: str) -> ProviderRecord | None:
        return self._records.get(provider_id)

    def get_adapter(self, provider_id: str) -> BaseProviderAdapter | None:
        return self._adapters.get(provider_id)

    def list_providers(self) -> list[ProviderRecord]:
        """All registered providers, highest priority first."""
        return sorted(self._records.values(), key=lambda r: (-r.priority, r.provider_id))

    def set_global_fallback_chain(self, provider_ids: list[str]) -> None:
        """Replace the shared fallback chain. Only chains built later see it."""
        self._global_chain = tuple(provider_ids)
        logger.info("Global fallback chain set to %s", list(self._global_chain))

    @property
    def global_fallback_chain(self) -> list[str]:
        return list(self._global_chain)

    def build_chain(self, request: GenerateRequest) -> list[str]:
        return build_chain(request, self._records, self._global_chain)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(
        self,
        request: GenerateRequest,
        cancel_token: CancellationToken | None = None,
        trace: DispatchTrace | None = None,
    ) -> AsyncIterator[MergedEvent]:
        """Stream merged events for a request, failing over along its chain.

        Raises ChainExhaustedError when every candidate was skipped or
        failed, and RequestCancelledError when ``cancel_token`` fires.
        """
        token = cancel_token or CancellationToken()
        if trace is None:
            trace = DispatchTrace()

        records, adapters = self._records, self._adapters
        chain = build_chain(request, records, self._global_chain)
        trace.request_id = request.request_id
        trace.chain = list(chain)
        request_log = ContextLogger(logger, {"request_id": request.request_id})
        request_log.info("Dispatching request %s via chain %s", request.request_id, chain)

        for provider_id in chain:
            token.raise_if_cancelled()
            record = records[provider_id]
            adapter = adapters[provider_id]
            attempt = ProviderAttempt(provider_id)
            trace.attempts.append(attempt)
            log = request_log.bind(provider_id=provider_id)

            permit = self.circuit_breaker.try_acquire(provider_id)
            if permit is None:
                self._skip(attempt, "circuit_open", log)
                continue

            policy = RetryPolicy(record.retry_policy, self._rng)
            outcome_recorded = False
            try:
                estimated_tokens = await self._estimate_tokens(adapter, request, log)
                while True:
                    slot = await self.rate_limiter.try_acquire(provider_id, tokens=estimated_tokens)
                    if slot is None:
                        if attempt.attempts == 0:
                            self._skip(attempt, "rate_limited", log)
                        else:
                            # Out of budget mid-retry: the last error stands
                            self.circuit_breaker.record_failure(permit)
                            outcome_recorded = True
                        break

                    attempt.attempts += 1
                    committed = False
                    call = self._call(adapter, record, request, slot, token)
                    try:
                        async for event in call:
                            if isinstance(event, DoneEvent):
                                attempt.succeeded = True
                                trace.provider_id = provider_id
                                self.circuit_breaker.record_success(permit)
                                outcome_recorded = True
                                log.info(
                                    "Request %s served by %s after %d attempt(s)",
                                    request.request_id,
                                    provider_id,
                                    attempt.attempts,
                                )
                                yield event
                                return
                            if isinstance(event, (TextEvent, ToolCallEvent)) and not committed:
                                committed = True
                                trace.provider_id = provider_id
                            yield event

                    except AdapterError as e:
                        attempt.last_error = e
                        if committed:
                            # Content already reached the caller and cannot be replayed
                            self.circuit_breaker.record_failure(permit)
                            outcome_recorded = True
                            log.error(
                                "Provider %s failed mid-stream for %s: %s",
                                provider_id,
                                request.request_id,
                                e,
                            )
                            yield e.to_event()
                            return

                        decision = policy.decide(e, attempt.attempts - 1)
                        if not decision.should_retry:
                            self.circuit_breaker.record_failure(permit)
                            outcome_recorded = True
                            log.warning(
                                "Provider %s failed after %d attempt(s) (%s), advancing chain",
                                provider_id,
                                attempt.attempts,
                                e.code.value,
                            )
                            break

                        PROVIDER_RETRIES.labels(provider=provider_id, code=e.code.value).inc()
                        log.info(
                            "Retrying %s in %.0fms after %s (attempt %d/%d)",
                            provider_id,
                            decision.delay_ms,
                            e.code.value,
                            attempt.attempts,
                            record.retry_policy.max_attempts,
                        )
                        await token.sleep(decision.delay_ms / 1000)

                    finally:
                        await call.aclose()
            finally:
                if not outcome_recorded:
                    self.circuit_breaker.release(permit)

        CHAIN_EXHAUSTED.inc()
        request_log.error("All providers failed for request %s", request.request_id)
        raise ChainExhaustedError(request.request_id, trace.attempts)

    def _skip(self, attempt: ProviderAttempt, reason: str, log: ContextLogger) -> None:
        attempt.skipped = reason
        CHAIN_SKIPS.labels(provider=attempt.provider_id, reason=reason).inc()
        log.info("Skipping %s: %s", attempt.provider_id, reason)

    async def _estimate_tokens(
        self,
        adapter: BaseProviderAdapter,
        request: GenerateRequest,
        log: ContextLogger,
    ) -> int:
        """Admission estimate for the rate limiter.

        Runs in a worker thread since tokenizers may fetch their vocabulary
        on first use. A tokenizer failure falls back to the character estimate.
        """
        try:
            return await asyncio.to_thread(adapter.count_tokens, request.conversation)
        except Exception as e:
            log.warning("Token counting failed for %s, using character estimate: %s", adapter.provider_id, e)
            return estimate_tokens(request.conversation)

    async def _call(
        self,
        adapter: BaseProviderAdapter,
        record: ProviderRecord,
        request: GenerateRequest,
        slot: RateSlot,
        token: CancellationToken,
    ) -> AsyncIterator[MergedEvent]:
        """One adapter call under its deadline. Always releases ``slot``."""
        timeout = request.options.timeout_seconds or record.timeout_seconds or self.request_timeout_seconds
        deadline = asyncio.get_running_loop().time() + timeout
        raw = adapter.generate_stream(request.conversation, request.tools, request.options)
        stream = merge_stream(raw, adapter.provider_id)

        usage = None
        outcome = "failure"
        start = time.monotonic()
        try:
            while True:
                event = await self._next_event(stream, token, deadline, timeout, adapter.provider_id)
                if event is _END:
                    return
                if isinstance(event, DoneEvent):
                    usage = event.usage
                    outcome = "success"
                yield event
        except AdapterError as e:
            if e.code == ErrorCode.TIMEOUT:
                outcome = "timeout"
            raise
        except RequestCancelledError:
            outcome = "cancelled"
            raise
        finally:
            await stream.aclose()
            aclose = getattr(raw, "aclose", None)
            if aclose is not None:
                await aclose()
            slot.release(usage.total_tokens if usage else None)
            PROVIDER_ATTEMPTS.labels(provider=adapter.provider_id, outcome=outcome).inc()
            DISPATCH_DURATION.labels(provider=adapter.provider_id).observe(time.monotonic() - start)

    async def _next_event(
        self,
        stream: AsyncIterator[MergedEvent],
        token: CancellationToken,
        deadline: float,
        timeout: float,
        provider_id: str,
    ):
        """Next event from ``stream``, racing the deadline and cancellation."""
        token.raise_if_cancelled()
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise AdapterError(ErrorCode.TIMEOUT, provider_id, f"No response within {timeout:.1f}s", retryable=True)

        next_task = asyncio.ensure_future(_pull(stream))
        cancel_waiter = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {next_task, cancel_waiter},
                timeout=remaining,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except BaseException:
            await _cancel_task(next_task)
            raise
        finally:
            await _cancel_task(cancel_waiter)

        if next_task in done:
            return next_task.result()

        # Aborting the pending read closes the underlying HTTP stream
        await _cancel_task(next_task)
        token.raise_if_cancelled()
        raise AdapterError(ErrorCode.TIMEOUT, provider_id, f"No response within {timeout:.1f}s", retryable=True)

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------

    async def generate(
        self,
        request: GenerateRequest,
        cancel_token: CancellationToken | None = None,
    ) -> GenerationResult:
        """Run ``dispatch`` to completion and collect the result.

        Malformed tool calls are reported in ``result.errors``; a provider
        failing after content was streamed raises AdapterError.
        """
        trace = DispatchTrace()
        result = GenerationResult(request_id=request.request_id, provider_id="")
        text_parts: list[str] = []

        stream = self.dispatch(request, cancel_token=cancel_token, trace=trace)
        try:
            async for event in stream:
                if isinstance(event, TextEvent):
                    text_parts.append(event.content)
                elif isinstance(event, ToolCallEvent):
                    result.tool_calls.append(event.to_tool_call())
                elif isinstance(event, DoneEvent):
                    result.usage = event.usage
                elif isinstance(event, ErrorEvent):
                    if event.code != ErrorCode.MALFORMED_TOOL_CALL:
                        raise AdapterError.from_event(event, trace.provider_id or request.provider_id)
                    result.errors.append(event)
        finally:
            await stream.aclose()

        result.text = "".join(text_parts)
        result.provider_id = trace.provider_id
        result.attempts = trace.attempts
        return result

    def get_status(self) -> dict:
        """Snapshot of providers, chain, circuits and rate windows."""
        records = self._records
        return {
            "providers": [r.to_dict() for r in self.list_providers()],
            "global_fallback_chain": list(self._global_chain),
            "circuits": self.circuit_breaker.get_all_states(sorted(records)),
            "rate_limits": self.rate_limiter.get_all_stats(),
        }
