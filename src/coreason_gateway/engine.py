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
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Sequence, Union

from coreason_gateway.cache.engine import CacheEngine
from coreason_gateway.config import CacheHitAccounting, GatewayConfig, load_config
from coreason_gateway.errors import GatewayError
from coreason_gateway.events import EventEmitter, EventType
from coreason_gateway.gatekeeper import Gatekeeper
from coreason_gateway.interfaces import Embedder, EventSubscriber, ProviderAdapter, RemoteCacheClient
from coreason_gateway.ledger import UsageLedger
from coreason_gateway.models import (
    GatewayRequest,
    GatewayResponse,
    Message,
    RequestOptions,
    StreamDelta,
    UsageOutcome,
    UsageRecord,
)
from coreason_gateway.router import ProviderRouter
from coreason_gateway.tracker import Reservation, TokenTracker
from coreason_gateway.utils.logger import logger

MessagesInput = Union[GatewayRequest, Sequence[Union[Message, Dict[str, Any]]]]


class Gateway:
    """
    Composes the cache, budget tracker and provider router into one request path:
    cache lookup -> budget reservation -> routed dispatch -> cache write-through -> usage record.

    Every collaborator is built from the given config and owned by this instance;
    events go to the subscribers passed in.
    """

    def __init__(
        self,
        config: GatewayConfig,
        subscribers: Optional[Sequence[EventSubscriber]] = None,
        adapters: Optional[Mapping[str, ProviderAdapter]] = None,
        embedder: Optional[Embedder] = None,
        remote_client: Optional[RemoteCacheClient] = None,
        rng: Optional[random.Random] = None,
        ledger: Optional[UsageLedger] = None,
    ) -> None:
        logger.info("Initializing Gateway")
        self.config = config
        self.events = EventEmitter(subscribers)
        self.gatekeeper = Gatekeeper()
        self.router = ProviderRouter(config, events=self.events, adapters=adapters, rng=rng)
        self.cache = CacheEngine(config.cache, events=self.events, embedder=embedder, remote_client=remote_client)
        self.tracker = TokenTracker(config.budget, events=self.events, ledger=ledger)

    @classmethod
    def from_yaml(cls, path: Union[str, Path], **kwargs: Any) -> "Gateway":
        return cls(load_config(path), **kwargs)

    def get_client(self) -> "SmartClient":  # type: ignore[name-defined] # noqa: F821
        """
        Returns an OpenAI-style client bound to this gateway.
        """
        from coreason_gateway.smart_client import SmartClient

        return SmartClient(self)

    def prepare(
        self,
        messages: MessagesInput,
        options: Optional[Union[RequestOptions, Dict[str, Any]]] = None,
        stream: bool = False,
    ) -> GatewayRequest:
        if isinstance(messages, GatewayRequest):
            return messages
        if isinstance(options, dict):
            options = RequestOptions.model_validate(options)
        return self.gatekeeper.prepare(messages, options, stream=stream)

    async def complete(
        self,
        messages: MessagesInput,
        options: Optional[Union[RequestOptions, Dict[str, Any]]] = None,
    ) -> GatewayResponse:
        """
        Serves one chat completion.

        Raises:
            BudgetExceededError: If the estimated cost does not fit a budget, or a
                cache hit billed at its original cost does not.
            NoCapableProviderError, CircuitOpenError, BackpressureError,
            ProviderError, AllProvidersFailedError: From routing and dispatch.
        """
        request = self.prepare(messages, options)
        self._emit(EventType.REQUEST_STARTED, request_id=request.request_id, user_id=request.user_id, stream=False)

        cached = await self.cache.lookup(request)
        if cached is not None:
            self._account_cache_hit(request, cached)
            self._completed(request, cached)
            return cached

        reservation = self._reserve(request)
        try:
            response = await self.router.dispatch(request)
        except asyncio.CancelledError:
            self._cancelled(request, reservation)
            raise
        except GatewayError as e:
            self._failed(request, reservation, e)
            raise

        self._settle(request, reservation, response)
        await self.cache.store(request, response)
        self._completed(request, response)
        return response

    async def stream(
        self,
        messages: MessagesInput,
        options: Optional[Union[RequestOptions, Dict[str, Any]]] = None,
    ) -> AsyncIterator[Union[StreamDelta, GatewayResponse]]:
        """
        Streams a chat completion as deltas followed by the final GatewayResponse.
        Cache hits are replayed as a stream.
        """
        request = self.prepare(messages, options, stream=True)
        self._emit(EventType.REQUEST_STARTED, request_id=request.request_id, user_id=request.user_id, stream=True)

        cached = await self.cache.lookup(request)
        if cached is not None:
            self._account_cache_hit(request, cached)
            async for item in CacheEngine.replay(cached):
                yield item
            self._completed(request, cached)
            return

        reservation = self._reserve(request)
        final: Optional[GatewayResponse] = None
        try:
            async for item in self.router.stream(request):
                if isinstance(item, GatewayResponse):
                    final = item
                yield item
        except (asyncio.CancelledError, GeneratorExit):
            if final is not None:
                self._settle(request, reservation, final)
            else:
                self._cancelled(request, reservation)
            raise
        except GatewayError as e:
            self._failed(request, reservation, e)
            raise

        if final is None:
            # Router streams always end with a response; guard against a silent empty stream.
            self._cancelled(request, reservation)
            return
        self._settle(request, reservation, final)
        await self.cache.store(request, final)
        self._completed(request, final)

    def stats(self) -> Dict[str, Any]:
        return {
            "router": self.router.get_stats(),
            "cache": self.cache.stats.model_dump(),
            "cache_analytics": self.cache.analytics(),
            "budget": self.tracker.get_budget_status(),
        }

    async def check_health(self) -> Dict[str, bool]:
        return await self.router.check_health()

    def start_health_monitoring(self, interval: Optional[float] = None) -> "asyncio.Task[None]":
        """Starts periodic provider health checks; `close()` stops them."""
        return self.router.start_health_monitoring(interval)

    async def close(self) -> None:
        await self.router.stop_health_monitoring()
        await self.cache.close()
        self.tracker.close()
        logger.info("Gateway closed")

    async def __aenter__(self) -> "Gateway":
        if self.config.router.health_monitoring:
            self.start_health_monitoring()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _reserve(self, request: GatewayRequest) -> Reservation:
        try:
            candidate, estimate = self.router.estimate_cost(request)
            return self.tracker.reserve(
                request.request_id,
                estimate,
                user_id=request.user_id,
                provider=candidate.provider,
                model=candidate.model.id,
            )
        except GatewayError as e:
            self._emit(EventType.REQUEST_FAILED, request_id=request.request_id, error=str(e), kind=type(e).__name__)
            raise

    def _settle(self, request: GatewayRequest, reservation: Reservation, response: GatewayResponse) -> None:
        usage = response.usage
        self.tracker.settle(
            reservation,
            UsageRecord(
                provider=response.provider,
                model=response.model,
                user_id=request.user_id,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                cached_tokens=usage.cached_tokens,
                thinking_tokens=usage.thinking_tokens,
                cost=response.cost,
                success=True,
                outcome=UsageOutcome.SUCCESS,
                latency=response.latency,
                request_id=request.request_id,
            ),
        )

    def _failed(self, request: GatewayRequest, reservation: Reservation, error: GatewayError) -> None:
        last = error.attempts[-1] if error.attempts else None
        self.tracker.settle(
            reservation,
            UsageRecord(
                provider=last.provider if last else "",
                model=(last.model or "") if last else "",
                user_id=request.user_id,
                cost=0.0,
                success=False,
                outcome=UsageOutcome.FAILED,
                request_id=request.request_id,
            ),
        )
        logger.error(f"Request {request.request_id} failed: {error}")
        self._emit(
            EventType.REQUEST_FAILED,
            request_id=request.request_id,
            error=str(error),
            kind=type(error).__name__,
            attempts=[a.model_dump(mode="json") for a in error.attempts],
        )

    def _cancelled(self, request: GatewayRequest, reservation: Reservation) -> None:
        self.tracker.cancel(reservation)
        self._emit(EventType.REQUEST_FAILED, request_id=request.request_id, error="cancelled", kind="cancelled")

    def _account_cache_hit(self, request: GatewayRequest, response: GatewayResponse) -> None:
        """
        Books a cache hit per `cache_hit_accounting`. Billed hits go through the
        same reservation as a dispatch, so an exhausted budget raises
        BudgetExceededError instead of serving the hit.
        """
        policy = self.config.cache_hit_accounting
        if policy == CacheHitAccounting.NONE:
            return
        usage = response.usage
        record = UsageRecord(
            provider=response.provider,
            model=response.model,
            user_id=request.user_id,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cached_tokens=usage.cached_tokens,
            thinking_tokens=usage.thinking_tokens,
            cost=response.cost if policy == CacheHitAccounting.ORIGINAL_COST else 0.0,
            success=True,
            outcome=UsageOutcome.CACHED,
            request_id=request.request_id,
        )
        if policy == CacheHitAccounting.ZERO_COST:
            self.tracker.record(record)
            return

        try:
            reservation = self.tracker.reserve(
                request.request_id,
                record.cost,
                user_id=request.user_id,
                provider=response.provider,
                model=response.model,
            )
        except GatewayError as e:
            self._emit(EventType.REQUEST_FAILED, request_id=request.request_id, error=str(e), kind=type(e).__name__)
            raise
        self.tracker.settle(reservation, record)

    def _completed(self, request: GatewayRequest, response: GatewayResponse) -> None:
        logger.info(
            f"Request {request.request_id} served by {response.provider}/{response.model}"
            f"{f' [{response.cache_tag}]' if response.cache_tag else ''} "
            f"({response.usage.total_tokens} tokens, ${response.cost:.6f})"
        )
        self._emit(
            EventType.REQUEST_COMPLETED,
            request_id=request.request_id,
            provider=response.provider,
            model=response.model,
            cost=response.cost,
            latency=response.latency,
            cache_layer=response.cache_layer.value if response.cache_layer else None,
        )

    def _emit(self, event_type: EventType, **payload: Any) -> None:
        self.events.emit(event_type, **payload)
