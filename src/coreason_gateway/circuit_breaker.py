# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_gateway

import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from coreason_gateway.config import BreakerConfig
from coreason_gateway.events import EventEmitter, EventType
from coreason_gateway.models import CircuitBreakerState, CircuitState
from coreason_gateway.utils.logger import logger


@dataclass(frozen=True)
class BreakerPermit:
    """Ticket handed out by `try_acquire`; exactly one outcome call must consume it."""

    provider: str
    probe: bool
    generation: int


class CircuitBreaker:
    """
    Per-provider circuit breaker.

    - closed: requests pass. Consecutive failures reaching `failure_threshold` open the circuit.
    - open: requests are rejected without a call. After `open_duration` the next
      acquisition moves the circuit to half_open.
    - half_open: at most `half_open_probe_limit` probes in flight. A probe success closes
      the circuit and resets counters; a probe failure reopens it.

    Every transition happens under one lock, so concurrent outcome reports are linearized.
    Permits carry the generation they were issued in; outcomes from an earlier
    generation cannot drive a later state.
    """

    def __init__(self, provider: str, config: BreakerConfig, events: Optional[EventEmitter] = None) -> None:
        self.provider = provider
        self.config = config
        self._events = events
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._last_failure_at: Optional[float] = None
        self._opened_at: Optional[float] = None
        self._probes = 0
        self._generation = 0
        self.trips = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def is_available(self) -> bool:
        """
        Read-only check used for candidate filtering. Never transitions state.
        """
        if not self.config.enabled:
            return True
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                return self._open_elapsed(time.time())
            return self._probes < self.config.half_open_probe_limit

    def try_acquire(self) -> Optional[BreakerPermit]:
        """
        Returns a permit if a call may proceed, None if the circuit rejects it.
        """
        if not self.config.enabled:
            return BreakerPermit(self.provider, probe=False, generation=self._generation)

        pending: List[Tuple[EventType, Dict[str, Any]]] = []
        with self._lock:
            now = time.time()
            if self._state == CircuitState.OPEN:
                if not self._open_elapsed(now):
                    return None
                self._transition(CircuitState.HALF_OPEN)
                logger.info(f"Circuit for {self.provider} is half-open after {self.config.open_duration}s")
                pending.append((EventType.BREAKER_HALF_OPEN, {"provider": self.provider}))

            if self._state == CircuitState.HALF_OPEN:
                if self._probes >= self.config.half_open_probe_limit:
                    permit = None
                else:
                    self._probes += 1
                    permit = BreakerPermit(self.provider, probe=True, generation=self._generation)
                    logger.debug(f"Issued probe {self._probes}/{self.config.half_open_probe_limit} to {self.provider}")
            else:
                permit = BreakerPermit(self.provider, probe=False, generation=self._generation)

        self._publish(pending)
        return permit

    def record_success(self, permit: BreakerPermit) -> None:
        if not self.config.enabled:
            return

        pending: List[Tuple[EventType, Dict[str, Any]]] = []
        with self._lock:
            if permit.generation != self._generation:
                logger.debug(f"Ignoring stale success for {self.provider}")
                return

            if self._state == CircuitState.HALF_OPEN and permit.probe:
                self._probes -= 1
                self._successes += 1
                self._transition(CircuitState.CLOSED)
                logger.info(f"Provider {self.provider} probe succeeded. Circuit closed.")
                pending.append((EventType.BREAKER_CLOSED, {"provider": self.provider}))
            elif self._state == CircuitState.CLOSED:
                self._failures = 0

        self._publish(pending)

    def record_failure(self, permit: BreakerPermit) -> None:
        if not self.config.enabled:
            return

        pending: List[Tuple[EventType, Dict[str, Any]]] = []
        with self._lock:
            now = time.time()
            self._last_failure_at = now

            if permit.generation != self._generation:
                logger.debug(f"Ignoring stale failure for {self.provider}")
                return

            if self._state == CircuitState.HALF_OPEN and permit.probe:
                self._probes -= 1
                self._failures += 1
                self._trip(now, pending)
                logger.error(f"Provider {self.provider} probe failed. Circuit reopened.")
            elif self._state == CircuitState.CLOSED:
                self._failures += 1
                logger.warning(
                    f"Recorded failure for {self.provider}. "
                    f"Consecutive failures: {self._failures}/{self.config.failure_threshold}"
                )
                if self._failures >= self.config.failure_threshold:
                    self._trip(now, pending)
                    logger.error(f"Provider {self.provider} exceeded failure threshold. Circuit opened.")

        self._publish(pending)

    def release(self, permit: BreakerPermit) -> None:
        """
        Returns a permit without an outcome (cancelled call, or an outcome that
        does not say anything about provider health).
        """
        if not self.config.enabled or not permit.probe:
            return
        with self._lock:
            if permit.generation == self._generation and self._state == CircuitState.HALF_OPEN:
                self._probes -= 1

    def reset(self) -> None:
        with self._lock:
            self._transition(CircuitState.CLOSED)
            self._last_failure_at = None
        logger.info(f"Circuit for {self.provider} manually reset")

    def snapshot(self) -> CircuitBreakerState:
        with self._lock:
            return CircuitBreakerState(
                provider=self.provider,
                state=self._state,
                consecutive_failures=self._failures,
                consecutive_successes=self._successes,
                last_failure_at=self._last_failure_at,
                opened_at=self._opened_at,
                half_open_probes=self._probes,
            )

    def _open_elapsed(self, now: float) -> bool:
        return self._opened_at is not None and now - self._opened_at >= self.config.open_duration

    def _trip(self, now: float, pending: List[Tuple[EventType, Dict[str, Any]]]) -> None:
        failures = self._failures
        self._transition(CircuitState.OPEN)
        self._failures = failures
        self._opened_at = now
        self.trips += 1
        pending.append(
            (EventType.BREAKER_OPENED, {"provider": self.provider, "failures": failures, "opened_at": now})
        )

    def _transition(self, state: CircuitState) -> None:
        # Caller holds the lock. Every transition starts a new generation.
        self._state = state
        self._generation += 1
        self._probes = 0
        if state == CircuitState.CLOSED:
            self._failures = 0
            self._successes = 0
            self._opened_at = None

    def _publish(self, pending: List[Tuple[EventType, Dict[str, Any]]]) -> None:
        if self._events is None:
            return
        for event_type, payload in pending:
            self._events.emit(event_type, **payload)
