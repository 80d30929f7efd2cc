# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_gateway

import asyncio
import random
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Deque, Dict, List, Mapping, NoReturn, Optional, Tuple, Union

from coreason_gateway.adapters import build_adapter, classify_exception
from coreason_gateway.admission import AdmissionController
from coreason_gateway.circuit_breaker import BreakerPermit, CircuitBreaker
from coreason_gateway.config import GatewayConfig, ProviderConfig
from coreason_gateway.errors import (
    AllProvidersFailedError,
    AttemptFailure,
    BackpressureError,
    CircuitOpenError,
    ErrorKind,
    NoCapableProviderError,
    ProviderError,
    describe_attempts,
)
from coreason_gateway.events import EventEmitter, EventType
from coreason_gateway.interfaces import ProviderAdapter
from coreason_gateway.models import (
    CircuitBreakerState,
    GatewayRequest,
    GatewayResponse,
    ModelDefinition,
    RoutingStrategy,
    StreamDelta,
)
from coreason_gateway.registry import ModelRegistry
from coreason_gateway.utils.logger import logger


@dataclass(frozen=True)
class Candidate:
    provider: str
    model: ModelDefinition


@dataclass
class _ProviderSlot:
    config: ProviderConfig
    adapter: ProviderAdapter
    breaker: CircuitBreaker
    admission: AdmissionController
    latencies: Deque[float] = field(default_factory=deque)
    selected: int = 0
    successes: int = 0
    failures: int = 0
    healthy: Optional[bool] = None

    def average_latency(self) -> Optional[float]:
        if not self.latencies:
            return None
        return sum(self.latencies) / len(self.latencies)


class ProviderRouter:
    """
    Selects a provider for each request and dispatches it with failover.

    Candidates are the enabled providers that can serve the request's capabilities
    (and model hint) and whose breaker is not open, ordered by the active strategy
    with configuration order breaking ties. Each dispatch attempt goes through the
    provider's breaker and admission controller. Retryable failures count against
    the breaker and move on to the next candidate; non-retryable failures abort.
    """

    def __init__(
        self,
        config: GatewayConfig,
        events: Optional[EventEmitter] = None,
        adapters: Optional[Mapping[str, ProviderAdapter]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config
        self.strategy = config.router.strategy
        self.registry = ModelRegistry()
        self._events = events
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._rr_counter = 0
        self._stats = {"total_requests": 0, "successful_requests": 0, "failed_requests": 0, "failovers": 0}
        self._health_task: Optional["asyncio.Task[None]"] = None

        self._providers: Dict[str, _ProviderSlot] = {}
        for provider_config in config.providers:
            adapter = (adapters or {}).get(provider_config.id) or build_adapter(provider_config)
            self.registry.register_models(adapter.models(), default_model=provider_config.default_model)
            self._providers[provider_config.id] = _ProviderSlot(
                config=provider_config,
                adapter=adapter,
                breaker=CircuitBreaker(provider_config.id, config.breaker, events),
                admission=AdmissionController(
                    provider_config.id,
                    config.admission,
                    provider_config.max_concurrent or config.admission.max_concurrent,
                ),
                latencies=deque(maxlen=config.router.latency_window),
            )
        enabled = [p.id for p in config.providers if p.enabled]
        logger.info(f"ProviderRouter initialized with providers {enabled} (strategy: {self.strategy.value})")

    def adapter(self, provider: str) -> ProviderAdapter:
        return self._providers[provider].adapter

    def breaker(self, provider: str) -> CircuitBreaker:
        return self._providers[provider].breaker

    def admission(self, provider: str) -> AdmissionController:
        return self._providers[provider].admission

    def set_strategy(self, strategy: Union[RoutingStrategy, str]) -> None:
        self.strategy = RoutingStrategy(strategy)
        logger.info(f"Routing strategy set to {self.strategy.value}")

    def capable(self, request: GatewayRequest) -> List[Candidate]:
        """
        Enabled providers able to serve the request, in configuration order,
        regardless of breaker state. A provider hint is honoured here.
        """
        options = request.options
        candidates: List[Candidate] = []
        for provider_id, slot in self._providers.items():
            if not slot.config.enabled:
                continue
            if options.provider and not self.config.router.enable_failover and provider_id != options.provider:
                continue
            model = self.registry.resolve(provider_id, options.required_capabilities, options.model)
            if model is not None:
                candidates.append(Candidate(provider_id, model))
        return candidates

    def candidates(self, request: GatewayRequest) -> List[Candidate]:
        """Capable providers whose breaker admits traffic, in dispatch order."""
        available = [c for c in self.capable(request) if self._providers[c.provider].breaker.is_available()]
        return self._order(available, request)

    def estimate_cost(self, request: GatewayRequest) -> Tuple[Candidate, float]:
        """
        Highest estimated cost among the capable providers, so a failover can
        never land on a model the budget pre-check did not account for.
        """
        capable = self.capable(request)
        if not capable:
            raise NoCapableProviderError(self._no_capable_message(request))
        output_tokens = request.estimated_output_tokens()
        priced = [(c, c.model.estimate_cost(request.estimated_tokens, output_tokens)) for c in capable]
        return max(priced, key=lambda item: item[1])

    async def dispatch(self, request: GatewayRequest) -> GatewayResponse:
        """
        Runs the request against the ordered candidates until one succeeds.

        Raises:
            NoCapableProviderError: If no enabled provider can serve the request.
            CircuitOpenError: If every capable provider's breaker is open (no adapter call is made).
            ProviderError: On a non-retryable failure.
            BackpressureError: If every candidate was at capacity.
            AllProvidersFailedError: If the failover attempts were exhausted.
        """
        ordered = self._begin(request)
        attempts: List[AttemptFailure] = []
        dispatched = 0
        last_failed: Optional[str] = None

        backoff_due = False

        for candidate in ordered:
            if dispatched >= self._max_attempts():
                break
            if backoff_due:
                await self._backoff(request, dispatched)
                backoff_due = False
            slot = self._providers[candidate.provider]
            permit = await self._admit(slot, candidate, attempts)
            if permit is None:
                continue

            dispatched += 1
            try:
                self._announce(request, candidate, dispatched, last_failed, attempts)
                started = time.monotonic()
                response = await asyncio.wait_for(
                    slot.adapter.complete(request, candidate.model), timeout=slot.config.timeout
                )
            except asyncio.CancelledError:
                slot.breaker.release(permit)
                raise
            except Exception as e:
                self._on_failure(slot, candidate, permit, e, attempts)
                last_failed = candidate.provider
                backoff_due = True
                continue
            finally:
                slot.admission.release()

            self._on_success(slot, permit, time.monotonic() - started)
            return response

        self._exhausted(request, attempts, dispatched)

    async def stream(self, request: GatewayRequest) -> AsyncIterator[Union[StreamDelta, GatewayResponse]]:
        """
        Streaming dispatch. Failover is only possible until the first delta has been
        yielded; after that a failure is raised to the caller.
        """
        ordered = self._begin(request)
        attempts: List[AttemptFailure] = []
        dispatched = 0
        last_failed: Optional[str] = None

        backoff_due = False

        for candidate in ordered:
            if dispatched >= self._max_attempts():
                break
            if backoff_due:
                await self._backoff(request, dispatched)
                backoff_due = False
            slot = self._providers[candidate.provider]
            permit = await self._admit(slot, candidate, attempts)
            if permit is None:
                continue

            dispatched += 1
            emitted = False
            settled = False
            try:
                self._announce(request, candidate, dispatched, last_failed, attempts)
                started = time.monotonic()
                iterator = slot.adapter.complete_stream(request, candidate.model).__aiter__()
                while True:
                    try:
                        item = await asyncio.wait_for(iterator.__anext__(), timeout=slot.config.timeout)
                    except StopAsyncIteration:
                        break
                    if isinstance(item, GatewayResponse):
                        self._on_success(slot, permit, time.monotonic() - started)
                        settled = True
                    emitted = True
                    yield item
                if not settled:
                    raise ProviderError(
                        "Stream ended without a final response", ErrorKind.SERVER_ERROR, candidate.provider
                    )
                return
            except (asyncio.CancelledError, GeneratorExit):
                if not settled:
                    slot.breaker.release(permit)
                raise
            except Exception as e:
                if settled:
                    raise
                error = self._on_failure(slot, candidate, permit, e, attempts)
                if emitted:
                    with self._lock:
                        self._stats["failed_requests"] += 1
                    error.attempts = list(attempts)
                    raise error from e
                last_failed = candidate.provider
                backoff_due = True
                continue
            finally:
                slot.admission.release()

        self._exhausted(request, attempts, dispatched)

    def reset_circuit_breaker(self, provider: Optional[str] = None) -> None:
        targets = [provider] if provider else list(self._providers)
        for provider_id in targets:
            self._providers[provider_id].breaker.reset()

    def breaker_states(self) -> Dict[str, CircuitBreakerState]:
        return {provider_id: slot.breaker.snapshot() for provider_id, slot in self._providers.items()}

    async def check_health(self) -> Dict[str, bool]:
        ids = [p for p, slot in self._providers.items() if slot.config.enabled]
        results = await asyncio.gather(
            *(self._providers[p].adapter.check_health() for p in ids), return_exceptions=True
        )
        health: Dict[str, bool] = {}
        for provider_id, result in zip(ids, results):
            if isinstance(result, BaseException):
                logger.warning(f"Health check for {provider_id} raised: {result}")
            health[provider_id] = result is True
            self._providers[provider_id].healthy = health[provider_id]
        return health

    def start_health_monitoring(self, interval: Optional[float] = None) -> "asyncio.Task[None]":
        """
        Starts a background task that checks every enabled provider each `interval`
        seconds (default `router.health_check_interval`) and emits health-checked or
        health-check-failed events. Calling it again while running returns the same task.
        """
        if self._health_task is not None and not self._health_task.done():
            return self._health_task
        period = interval if interval is not None else self.config.router.health_check_interval
        self._health_task = asyncio.get_running_loop().create_task(self._monitor_health(period))
        logger.info(f"Health monitoring started (every {period}s)")
        return self._health_task

    async def stop_health_monitoring(self) -> None:
        task, self._health_task = self._health_task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("Health monitoring stopped")

    @property
    def monitoring(self) -> bool:
        return self._health_task is not None and not self._health_task.done()

    async def _monitor_health(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self._health_round()

    async def _health_round(self) -> None:
        for provider_id, slot in self._providers.items():
            if not slot.config.enabled:
                continue
            try:
                healthy = await slot.adapter.check_health()
            except Exception as e:
                slot.healthy = False
                logger.warning(f"Health check for {provider_id} raised: {e}")
                self._emit(EventType.HEALTH_CHECK_FAILED, provider=provider_id, error=str(e))
                continue
            slot.healthy = healthy is True
            self._emit(EventType.HEALTH_CHECKED, provider=provider_id, healthy=slot.healthy)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats: Dict[str, Any] = dict(self._stats)
        providers: Dict[str, Any] = {}
        trips = 0
        for provider_id, slot in self._providers.items():
            snapshot = slot.breaker.snapshot()
            trips += slot.breaker.trips
            with self._lock:
                providers[provider_id] = {
                    "enabled": slot.config.enabled,
                    "routing_decisions": slot.selected,
                    "successes": slot.successes,
                    "failures": slot.failures,
                    "average_latency": slot.average_latency(),
                    "circuit_state": snapshot.state.value,
                    "consecutive_failures": snapshot.consecutive_failures,
                    "admission": slot.admission.snapshot(),
                    "healthy": slot.healthy,
                }
        stats["strategy"] = self.strategy.value
        stats["circuit_breaker_trips"] = trips
        stats["providers"] = providers
        return stats

    def _max_attempts(self) -> int:
        return self.config.router.max_failover_attempts if self.config.router.enable_failover else 1

    def _begin(self, request: GatewayRequest) -> List[Candidate]:
        with self._lock:
            self._stats["total_requests"] += 1

        capable = self.capable(request)
        if not capable:
            with self._lock:
                self._stats["failed_requests"] += 1
            message = self._no_capable_message(request)
            logger.error(message)
            raise NoCapableProviderError(message)

        available = [c for c in capable if self._providers[c.provider].breaker.is_available()]
        if not available:
            with self._lock:
                self._stats["failed_requests"] += 1
            raise self._all_open(capable)

        ordered = self._order(available, request)
        logger.debug(
            f"Routing request {request.request_id} ({self.strategy.value}): "
            f"{[f'{c.provider}/{c.model.id}' for c in ordered]}"
        )
        self._emit(
            EventType.ROUTING_DECISION,
            request_id=request.request_id,
            strategy=self.strategy.value,
            candidates=[c.provider for c in ordered],
            selected=ordered[0].provider,
            model=ordered[0].model.id,
        )
        return ordered

    async def _admit(
        self, slot: _ProviderSlot, candidate: Candidate, attempts: List[AttemptFailure]
    ) -> Optional[BreakerPermit]:
        permit = slot.breaker.try_acquire()
        if permit is None:
            logger.debug(f"Skipping {candidate.provider}: circuit open")
            attempts.append(
                AttemptFailure(provider=candidate.provider, model=candidate.model.id, reason="circuit open")
            )
            return None
        try:
            await slot.admission.acquire()
        except BackpressureError as e:
            slot.breaker.release(permit)
            logger.warning(f"Skipping {candidate.provider}: {e}")
            attempts.append(
                AttemptFailure(provider=candidate.provider, model=candidate.model.id, reason=f"backpressure: {e}")
            )
            return None
        except asyncio.CancelledError:
            slot.breaker.release(permit)
            raise
        with self._lock:
            slot.selected += 1
        return permit

    async def _backoff(self, request: GatewayRequest, failed_attempts: int) -> None:
        # Called before the next candidate's breaker permit and admission slot are taken.
        delay = self.config.router.backoff.delay_for(failed_attempts)
        if delay > 0:
            logger.debug(f"Backing off {delay:.2f}s before failing over request {request.request_id}")
            await asyncio.sleep(delay)

    def _announce(
        self,
        request: GatewayRequest,
        candidate: Candidate,
        dispatched: int,
        last_failed: Optional[str],
        attempts: List[AttemptFailure],
    ) -> None:
        if dispatched <= 1:
            logger.info(f"Dispatching request {request.request_id} to {candidate.provider}/{candidate.model.id}")
            return

        with self._lock:
            self._stats["failovers"] += 1
        logger.warning(
            f"Failing over request {request.request_id} from {last_failed} to {candidate.provider} "
            f"(attempt {dispatched}/{self._max_attempts()})"
        )
        self._emit(
            EventType.FAILOVER,
            request_id=request.request_id,
            from_provider=last_failed,
            to_provider=candidate.provider,
            attempt=dispatched,
            reason=attempts[-1].reason if attempts else None,
        )

    def _on_success(self, slot: _ProviderSlot, permit: BreakerPermit, latency: float) -> None:
        slot.breaker.record_success(permit)
        with self._lock:
            slot.latencies.append(latency)
            slot.successes += 1
            self._stats["successful_requests"] += 1

    def _on_failure(
        self,
        slot: _ProviderSlot,
        candidate: Candidate,
        permit: BreakerPermit,
        exc: BaseException,
        attempts: List[AttemptFailure],
    ) -> ProviderError:
        error = classify_exception(exc, candidate.provider)
        if error.retryable:
            slot.breaker.record_failure(permit)
        else:
            slot.breaker.release(permit)
        with self._lock:
            slot.failures += 1
        attempts.append(
            AttemptFailure(
                provider=candidate.provider,
                model=candidate.model.id,
                reason=str(error),
                kind=error.kind,
                retryable=error.retryable,
            )
        )
        logger.warning(f"Attempt on {candidate.provider}/{candidate.model.id} failed: {error}")

        if not error.retryable:
            with self._lock:
                self._stats["failed_requests"] += 1
            error.attempts = list(attempts)
            if error is exc:
                raise error
            raise error from exc
        return error

    def _exhausted(self, request: GatewayRequest, attempts: List[AttemptFailure], dispatched: int) -> NoReturn:
        with self._lock:
            self._stats["failed_requests"] += 1
        states = self.breaker_states()

        if dispatched == 0 and attempts and all(a.reason == "circuit open" for a in attempts):
            raise CircuitOpenError(
                f"All capable providers have open circuits: {describe_attempts(attempts)}",
                states={a.provider: states[a.provider] for a in attempts},
                attempts=attempts,
            )
        if dispatched == 0 and attempts and all(a.reason.startswith("backpressure") for a in attempts):
            error = BackpressureError(
                f"All capable providers are at capacity: {describe_attempts(attempts)}", provider=attempts[-1].provider
            )
            error.attempts = list(attempts)
            raise error

        message = f"All providers failed for request {request.request_id} after {dispatched} attempt(s): " + (
            describe_attempts(attempts)
        )
        logger.error(message)
        raise AllProvidersFailedError(message, attempts=attempts, states=states)

    def _all_open(self, capable: List[Candidate]) -> CircuitOpenError:
        states = {c.provider: self._providers[c.provider].breaker.snapshot() for c in capable}
        details = ", ".join(
            f"{p} ({s.state.value} since {s.opened_at:.0f})" if s.opened_at else f"{p} ({s.state.value})"
            for p, s in states.items()
        )
        attempts = [
            AttemptFailure(provider=c.provider, model=c.model.id, reason=f"circuit {states[c.provider].state.value}")
            for c in capable
        ]
        logger.error(f"Failing fast: every capable provider's circuit is open: {details}")
        return CircuitOpenError(
            f"All capable providers have open circuits: {details}", states=states, attempts=attempts
        )

    def _no_capable_message(self, request: GatewayRequest) -> str:
        options = request.options
        needs = [c.value for c in options.required_capabilities]
        message = f"No enabled provider can serve capabilities {needs}"
        if options.model:
            message += f" with model '{options.model}'"
        if options.provider:
            message += f" (provider hint: {options.provider})"
        return message

    def _order(self, candidates: List[Candidate], request: GatewayRequest) -> List[Candidate]:
        if not candidates:
            return []
        position = {provider_id: i for i, provider_id in enumerate(self._providers)}

        if self.strategy == RoutingStrategy.COST_BASED:
            output_tokens = request.estimated_output_tokens()
            ordered = sorted(
                candidates,
                key=lambda c: (c.model.estimate_cost(request.estimated_tokens, output_tokens), position[c.provider]),
            )
        elif self.strategy == RoutingStrategy.PERFORMANCE_BASED:
            # Providers without latency samples rank after measured ones.
            def latency_key(c: Candidate) -> Tuple[float, int]:
                average = self._providers[c.provider].average_latency()
                return (average if average is not None else float("inf"), position[c.provider])

            with self._lock:
                ordered = sorted(candidates, key=latency_key)
        elif self.strategy == RoutingStrategy.QUALITY_BASED:
            ranking = {p: i for i, p in enumerate(self.config.router.quality_ranking)}
            ordered = sorted(candidates, key=lambda c: (ranking.get(c.provider, len(ranking)), position[c.provider]))
        elif self.strategy == RoutingStrategy.ROUND_ROBIN:
            with self._lock:
                offset = self._rr_counter % len(candidates)
                self._rr_counter += 1
            ordered = candidates[offset:] + candidates[:offset]
        else:
            ordered = self._weighted(candidates)

        hint = request.options.provider
        if hint:
            ordered = [c for c in ordered if c.provider == hint] + [c for c in ordered if c.provider != hint]
        return ordered

    def _weighted(self, candidates: List[Candidate]) -> List[Candidate]:
        """Weighted sampling without replacement; zero-weight providers go last in config order."""
        remaining = [c for c in candidates if self._providers[c.provider].config.weight > 0]
        ordered: List[Candidate] = []
        with self._lock:
            while remaining:
                weights = [self._providers[c.provider].config.weight for c in remaining]
                pick = self._rng.uniform(0, sum(weights))
                cumulative = 0.0
                chosen = remaining[-1]
                for candidate, weight in zip(remaining, weights):
                    cumulative += weight
                    if pick < cumulative:
                        chosen = candidate
                        break
                ordered.append(chosen)
                remaining.remove(chosen)
        return ordered + [c for c in candidates if self._providers[c.provider].config.weight <= 0]

    def _emit(self, event_type: EventType, **payload: Any) -> None:
        if self._events is not None:
            self._events.emit(event_type, **payload)
