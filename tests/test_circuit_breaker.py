"""Tests for the per-provider circuit breaker."""

from __future__ import annotations

import pytest

from llm_orchestrator.gateway.circuit_breaker import (
    FAILURE_THRESHOLD,
    CircuitBreaker,
    CircuitState,
)


def _fail(cb, provider_id="openai"):
    """A call admitted while CLOSED that fails right away."""
    return cb.record_failure(cb.try_acquire(provider_id))


def _succeed(cb, provider_id="openai"):
    cb.record_success(cb.try_acquire(provider_id))


class TestCircuitBreaker:
    @pytest.fixture
    def cb(self, clock):
        return CircuitBreaker(failure_threshold=3, recovery_timeout=30.0, clock=clock)

    def _open(self, cb):
        for _ in range(cb.failure_threshold):
            _fail(cb)

    def test_initial_state_closed(self, cb):
        permit = cb.try_acquire("openai")
        assert permit is not None
        assert permit.probe is False
        assert cb.get_circuit_state("openai")["state"] == "closed"

    def test_default_threshold(self):
        assert CircuitBreaker().failure_threshold == FAILURE_THRESHOLD

    def test_opens_at_exact_threshold(self, cb):
        _fail(cb)
        assert _fail(cb) == CircuitState.CLOSED
        assert cb.try_acquire("openai") is not None

        assert _fail(cb) == CircuitState.OPEN
        assert cb.try_acquire("openai") is None

    def test_success_resets_consecutive_failures(self, cb):
        _fail(cb)
        _fail(cb)
        _succeed(cb)
        _fail(cb)

        state = cb.get_state("openai")
        assert state.state == CircuitState.CLOSED
        assert state.consecutive_failures == 1
        assert state.total_failures == 3
        assert state.total_successes == 1

    def test_providers_are_independent(self, cb):
        self._open(cb)
        assert cb.try_acquire("openai") is None
        assert cb.try_acquire("anthropic") is not None

    def test_half_open_after_cooldown(self, cb, clock):
        self._open(cb)
        clock.advance(29.9)
        assert cb.try_acquire("openai") is None

        clock.advance(0.1)
        permit = cb.try_acquire("openai")
        assert permit is not None
        assert permit.probe is True
        assert cb.get_state("openai").state == CircuitState.HALF_OPEN

    def test_single_probe_in_half_open(self, cb, clock):
        self._open(cb)
        clock.advance(30)

        first = cb.try_acquire("openai")
        assert first is not None
        assert cb.try_acquire("openai") is None
        assert cb.try_acquire("openai") is None
        assert cb.get_state("openai").probe_in_flight is True

    def test_probe_success_closes(self, cb, clock):
        self._open(cb)
        clock.advance(30)
        probe = cb.try_acquire("openai")

        cb.record_success(probe)
        state = cb.get_state("openai")
        assert state.state == CircuitState.CLOSED
        assert state.consecutive_failures == 0
        assert state.probe_in_flight is False

    def test_probe_failure_reopens_and_restarts_cooldown(self, cb, clock):
        self._open(cb)
        clock.advance(30)
        probe = cb.try_acquire("openai")

        assert cb.record_failure(probe) == CircuitState.OPEN
        state = cb.get_state("openai")
        assert state.opened_at == clock.now
        assert state.probe_in_flight is False

        clock.advance(29)
        assert cb.try_acquire("openai") is None
        clock.advance(1)
        assert cb.try_acquire("openai") is not None

    def test_late_failure_does_not_resolve_probe(self, cb, clock):
        slow = cb.try_acquire("openai")
        self._open(cb)
        clock.advance(30)
        probe = cb.try_acquire("openai")

        assert cb.record_failure(slow) == CircuitState.HALF_OPEN
        state = cb.get_state("openai")
        assert state.probe_in_flight is True
        assert state.total_failures == cb.failure_threshold + 1

        clock.advance(30)
        assert cb.try_acquire("openai") is None

        cb.record_success(probe)
        assert cb.get_state("openai").state == CircuitState.CLOSED

    def test_late_success_does_not_close_open_circuit(self, cb, clock):
        slow = cb.try_acquire("openai")
        self._open(cb)

        cb.record_success(slow)
        state = cb.get_state("openai")
        assert state.state == CircuitState.OPEN
        assert state.total_successes == 1
        assert cb.try_acquire("openai") is None

        clock.advance(30)
        probe = cb.try_acquire("openai")
        assert probe.probe is True

    def test_late_success_during_half_open_keeps_probe(self, cb, clock):
        slow = cb.try_acquire("openai")
        self._open(cb)
        clock.advance(30)
        probe = cb.try_acquire("openai")

        cb.record_success(slow)
        state = cb.get_state("openai")
        assert state.state == CircuitState.HALF_OPEN
        assert state.probe_in_flight is True

        assert cb.record_failure(probe) == CircuitState.OPEN

    def test_release_frees_probe(self, cb, clock):
        self._open(cb)
        clock.advance(30)
        permit = cb.try_acquire("openai")

        cb.release(permit)
        assert cb.get_state("openai").state == CircuitState.HALF_OPEN
        assert cb.try_acquire("openai") is not None

    def test_release_closed_permit_is_noop(self, cb):
        permit = cb.try_acquire("openai")
        cb.release(permit)
        assert cb.get_circuit_state("openai")["state"] == "closed"

    def test_reset(self, cb):
        self._open(cb)
        cb.reset("openai")
        state = cb.get_circuit_state("openai")
        assert state["state"] == "closed"
        assert state["consecutive_failures"] == 0

    def test_get_all_states(self, cb):
        _fail(cb)
        _succeed(cb, "anthropic")
        states = cb.get_all_states()
        assert {s["provider"] for s in states} == {"openai", "anthropic"}

        assert [s["provider"] for s in cb.get_all_states(["gemini"])] == ["gemini"]

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            CircuitBreaker(failure_threshold=0)
