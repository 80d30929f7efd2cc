# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_gateway

from typing import TYPE_CHECKING, Any, AsyncIterator, List, Optional, Protocol, Union, runtime_checkable

from coreason_gateway.models import GatewayRequest, GatewayResponse, ModelDefinition, StreamDelta

if TYPE_CHECKING:  # pragma: no cover
    from coreason_gateway.events import GatewayEvent


@runtime_checkable
class ProviderAdapter(Protocol):
    """
    Protocol for one vendor backend.
    Implementations hide the vendor wire format and classify every failure
    as a ProviderError. They hold no mutable state shared between calls.
    """

    provider_id: str

    def models(self) -> List[ModelDefinition]:
        """
        Returns the catalog of models this provider serves.
        """
        ...

    async def complete(self, request: GatewayRequest, model: ModelDefinition) -> GatewayResponse:
        """
        Runs a single non-streaming completion against `model`.
        """
        ...

    def complete_stream(
        self, request: GatewayRequest, model: ModelDefinition
    ) -> AsyncIterator[Union[StreamDelta, GatewayResponse]]:
        """
        Yields content deltas, terminated by exactly one final GatewayResponse.
        """
        ...

    async def check_health(self) -> bool:
        """
        Cheap liveness probe. Never raises.
        """
        ...


@runtime_checkable
class EventSubscriber(Protocol):
    """
    Receives gateway events (request lifecycle, routing, cache, breaker, budget).
    """

    def __call__(self, event: "GatewayEvent") -> None: ...


@runtime_checkable
class Embedder(Protocol):
    """
    Turns normalized request text into a vector for the similarity cache layer.
    """

    async def embed(self, text: str) -> List[float]: ...


@runtime_checkable
class RemoteCacheClient(Protocol):
    """
    Subset of the `redis.asyncio.Redis` API used by the remote cache layer.
    """

    async def get(self, name: str) -> Optional[Union[str, bytes]]: ...

    async def set(self, name: str, value: str, ex: Optional[int] = None) -> Optional[bool]: ...

    async def delete(self, *names: str) -> int: ...

    def scan_iter(self, match: Optional[str] = None) -> AsyncIterator[Any]: ...
