"""Circuit Breaker — per-provider health tracking.

Implements the circuit breaker pattern per provider id:
  - CLOSED: normal operation, requests pass through
  - OPEN: too many consecutive failures, requests are rejected immediately
  - HALF_OPEN: cooldown elapsed, exactly one probe request is admitted

Transitions:
  CLOSED    → OPEN       after ``failure_threshold`` consecutive failures
  OPEN      → HALF_OPEN  on the first admission check after ``cooldown``
  HALF_OPEN → CLOSED     probe succeeded
  HALF_OPEN → OPEN       probe failed (``opened_at`` restarts)

Outcomes are reported with the ``CircuitPermit`` that admitted the call,
so a slow call admitted while CLOSED cannot resolve a later probe.

State is shared by every concurrent request for a provider; all
read-modify-write sequences run under one lock.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum

from llm_orchestrator.core.metrics import CIRCUIT_TRANSITIONS

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Rejecting requests
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass
class HealthState:
    """Failure tracking for a single provider's circuit."""

    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: float = 0.0  # When circuit was opened
    probe_in_flight: bool = False
    total_failures: int = 0
    total_successes: int = 0


@dataclass(frozen=True)
class CircuitPermit:
    """Admission granted by ``CircuitBreaker.try_acquire``."""

    provider_id: str
    probe: bool = False  # True when this call is the single HALF_OPEN probe


# Defaults for opening the circuit
FAILURE_THRESHOLD = 5  # Consecutive failures to open circuit
RECOVERY_TIMEOUT = 30.0  # Seconds before trying half-open


class CircuitBreaker:
    """Per-provider circuit breaker.

    Usage:
        cb = CircuitBreaker()

        permit = cb.try_acquire(provider_id)
        if permit is None:
            # Circuit is open (or a probe is already in flight), skip provider
            ...

        # After the call:
        cb.record_success(permit)   # or cb.record_failure(permit)

        # Call abandoned without an outcome:
        cb.release(permit)
    """

    def __init__(
        self,
        failure_threshold: int = FAILURE_THRESHOLD,
        recovery_timeout: float = RECOVERY_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._circuits: dict[str, HealthState] = {}
        self._lock = threading.Lock()

    def _get_circuit(self, provider_id: str) -> HealthState:
        if provider_id not in self._circuits:
            self._circuits[provider_id] = HealthState()
        return self._circuits[provider_id]

    def _transition(self, provider_id: str, circuit: HealthState, state: CircuitState) -> None:
        circuit.state = state
        CIRCUIT_TRANSITIONS.labels(provider=provider_id, state=state.value).inc()

    def try_acquire(self, provider_id: str) -> CircuitPermit | None:
        """Check whether a call to the provider is allowed.

        Returns a permit when the circuit is closed, or when this caller wins
        the single half-open probe. Returns None otherwise.
        """
        with self._lock:
            circuit = self._get_circuit(provider_id)

            if circuit.state == CircuitState.CLOSED:
                return CircuitPermit(provider_id)

            if circuit.state == CircuitState.OPEN:
                if self._clock() - circuit.opened_at < self.recovery_timeout:
                    return None
                self._transition(provider_id, circuit, CircuitState.HALF_OPEN)
                logger.info("Circuit for %s transitioning to HALF_OPEN", provider_id)

            # HALF_OPEN: one probe at a time
            if circuit.probe_in_flight:
                return None
            circuit.probe_in_flight = True
            return CircuitPermit(provider_id, probe=True)

    def release(self, permit: CircuitPermit) -> None:
        """Return a permit whose call never produced a success or failure."""
        if not permit.probe:
            return
        with self._lock:
            circuit = self._get_circuit(permit.provider_id)
            if circuit.state == CircuitState.HALF_OPEN:
                circuit.probe_in_flight = False

    def record_success(self, permit: CircuitPermit) -> None:
        """Record a successful call made under ``permit``.

        Only the half-open probe closes a tripped circuit. A success from a
        call admitted before the circuit opened just updates the counters.
        """
        provider_id = permit.provider_id
        with self._lock:
            circuit = self._get_circuit(provider_id)
            circuit.total_successes += 1

            if circuit.state == CircuitState.CLOSED:
                circuit.consecutive_failures = 0
            elif permit.probe and circuit.state == CircuitState.HALF_OPEN:
                circuit.consecutive_failures = 0
                circuit.probe_in_flight = False
                logger.info("Circuit for %s CLOSED (recovered)", provider_id)
                self._transition(provider_id, circuit, CircuitState.CLOSED)

    def record_failure(self, permit: CircuitPermit) -> CircuitState:
        """Record a terminal failure of the call made under ``permit``.

        Returns the new state. While the circuit is OPEN or HALF_OPEN, a
        failure from a non-probe call only updates the counters.
        """
        provider_id = permit.provider_id
        with self._lock:
            circuit = self._get_circuit(provider_id)
            circuit.consecutive_failures += 1
            circuit.total_failures += 1

            if circuit.state == CircuitState.HALF_OPEN and permit.probe:
                circuit.probe_in_flight = False
                circuit.opened_at = self._clock()
                self._transition(provider_id, circuit, CircuitState.OPEN)
                logger.warning("Circuit for %s re-OPENED after failed probe", provider_id)

            elif circuit.state == CircuitState.CLOSED and circuit.consecutive_failures >= self.failure_threshold:
                circuit.opened_at = self._clock()
                self._transition(provider_id, circuit, CircuitState.OPEN)
                logger.warning(
                    "Circuit for %s OPENED after %d consecutive failures",
                    provider_id,
                    circuit.consecutive_failures,
                )

            return circuit.state

    def get_state(self, provider_id: str) -> HealthState:
        """Snapshot of a provider's health state."""
        with self._lock:
            return replace(self._get_circuit(provider_id))

    def get_circuit_state(self, provider_id: str) -> dict:
        """Get the current state of a provider's circuit as a dict."""
        circuit = self.get_state(provider_id)
        return {
            "provider": provider_id,
            "state": circuit.state.value,
            "consecutive_failures": circuit.consecutive_failures,
            "probe_in_flight": circuit.probe_in_flight,
            "total_failures": circuit.total_failures,
            "total_successes": circuit.total_successes,
        }

    def get_all_states(self, provider_ids: list[str] | None = None) -> list[dict]:
        """Get circuit states for the given providers (default: all tracked)."""
        if provider_ids is None:
            with self._lock:
                provider_ids = list(self._circuits)
        return [self.get_circuit_state(p) for p in provider_ids]

    def reset(self, provider_id: str) -> None:
        """Manually reset a provider's circuit to CLOSED."""
        with self._lock:
            self._circuits[provider_id] = HealthState()
        logger.info("Circuit for %s manually RESET", provider_id)

    def forget(self, provider_id: str) -> None:
        with self._lock:
            self._circuits.pop(provider_id, None)
