from typing import Any, Callable, List, Optional

import pytest

from coreason_gateway.config import (
    BackoffConfig,
    CacheConfig,
    GatewayConfig,
    ProviderConfig,
    RouterConfig,
    SimilarityConfig,
)
from coreason_gateway.events import EventRecorder
from coreason_gateway.models import Capability, ModelDefinition, ModelPricing

ALL_CAPABILITIES = [Capability.VISION, Capability.TOOLS, Capability.STREAMING, Capability.THINKING]


def _stub_config(
    provider_id: str,
    input_price: float = 0.000001,
    output_price: float = 0.000002,
    capabilities: Optional[List[Capability]] = None,
    **kwargs: Any,
) -> ProviderConfig:
    model = ModelDefinition(
        id=f"{provider_id}-model",
        capabilities=ALL_CAPABILITIES if capabilities is None else capabilities,
        pricing=ModelPricing(input=input_price, output=output_price),
    )
    return ProviderConfig(id=provider_id, kind="stub", models=[model], **kwargs)


def _gateway_config(providers: List[ProviderConfig], **sections: Any) -> GatewayConfig:
    # No backoff and exact-match caching only, unless a test asks otherwise.
    values: dict = {
        "router": RouterConfig(backoff=BackoffConfig(initial_delay=0.0)),
        "cache": CacheConfig(similarity=SimilarityConfig(enabled=False)),
    }
    values.update(sections)
    return GatewayConfig(providers=providers, **values)


@pytest.fixture
def stub_config() -> Callable[..., ProviderConfig]:
    return _stub_config


@pytest.fixture
def gateway_config() -> Callable[..., GatewayConfig]:
    return _gateway_config


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def messages() -> List[dict]:
    return [{"role": "user", "content": "What is the capital of France?"}]
