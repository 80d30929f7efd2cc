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
import threading
import time
from collections import deque
from typing import AsyncIterator, Callable, ClassVar, Deque, Iterable, List, Optional, Union

from coreason_gateway.config import ProviderConfig
from coreason_gateway.errors import ProviderError
from coreason_gateway.gatekeeper import estimate_text_tokens
from coreason_gateway.models import (
    Capability,
    GatewayRequest,
    GatewayResponse,
    ModelDefinition,
    StreamDelta,
    TokenUsage,
)

ScriptStep = Union[str, GatewayResponse, BaseException, Callable[[GatewayRequest, ModelDefinition], str]]


class ScriptedAdapter:
    """
    In-process adapter that replays a script instead of calling a vendor.

    Each call consumes the next step: a string is returned as the reply, a
    GatewayResponse is returned as-is, an exception is raised, a callable is
    invoked with (request, model) and its string returned. When the script
    is exhausted the adapter answers with `reply` (from `extra.reply` when built
    from config, otherwise an echo of the last user message).
    """

    kind: ClassVar[str] = "stub"
    catalog: ClassVar[List[ModelDefinition]] = [
        ModelDefinition(
            id="stub-model",
            capabilities=[Capability.VISION, Capability.TOOLS, Capability.STREAMING, Capability.THINKING],
        )
    ]

    def __init__(
        self,
        config: ProviderConfig,
        script: Optional[Iterable[ScriptStep]] = None,
        delay: float = 0.0,
        reply: Optional[str] = None,
    ) -> None:
        self.config = config
        self.provider_id = config.id
        source = config.models if config.models is not None else self.catalog
        self._models = [m.model_copy(update={"provider": config.id}) for m in source]
        self._script: Deque[ScriptStep] = deque(script or [])
        self.delay = float(config.extra.get("delay", delay))
        self.reply = config.extra.get("reply", reply)
        self.healthy = True

        self._lock = threading.Lock()
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.requests: List[GatewayRequest] = []

    def models(self) -> List[ModelDefinition]:
        return list(self._models)

    def push(self, *steps: ScriptStep) -> None:
        with self._lock:
            self._script.extend(steps)

    async def complete(self, request: GatewayRequest, model: ModelDefinition) -> GatewayResponse:
        step = self._begin(request)
        started = time.monotonic()
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            return self._respond(step, request, model, time.monotonic() - started)
        finally:
            self._end()

    async def complete_stream(
        self, request: GatewayRequest, model: ModelDefinition
    ) -> AsyncIterator[Union[StreamDelta, GatewayResponse]]:
        step = self._begin(request)
        started = time.monotonic()
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            response = self._respond(step, request, model, time.monotonic() - started)
            words = response.content.split(" ")
            for index, word in enumerate(words):
                text = word if index == len(words) - 1 else f"{word} "
                yield StreamDelta(content=text, index=index, provider=self.provider_id, model=model.id)
            yield response
        finally:
            self._end()

    async def check_health(self) -> bool:
        return self.healthy

    def _begin(self, request: GatewayRequest) -> Optional[ScriptStep]:
        with self._lock:
            self.calls += 1
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            self.requests.append(request)
            return self._script.popleft() if self._script else None

    def _end(self) -> None:
        with self._lock:
            self.in_flight -= 1

    def _respond(
        self, step: Optional[ScriptStep], request: GatewayRequest, model: ModelDefinition, latency: float
    ) -> GatewayResponse:
        if isinstance(step, ProviderError):
            raise step
        if isinstance(step, BaseException):
            raise step
        if isinstance(step, GatewayResponse):
            return step

        if callable(step):
            content = step(request, model)
        elif isinstance(step, str):
            content = step
        else:
            content = self.reply if self.reply is not None else self._echo(request)

        usage = TokenUsage(input_tokens=request.estimated_tokens, output_tokens=estimate_text_tokens(content))
        return GatewayResponse(
            content=content,
            usage=usage,
            cost=model.cost_for(usage),
            latency=latency,
            finish_reason="stop",
            provider=self.provider_id,
            model=model.id,
        )

    @staticmethod
    def _echo(request: GatewayRequest) -> str:
        for message in reversed(request.messages):
            if message.role == "user" and isinstance(message.content, str):
                return message.content
        return ""
