from typing import Callable, List, cast
from unittest.mock import patch

import pytest

from coreason_gateway.adapters.stub import ScriptedAdapter
from coreason_gateway.config import GatewayConfig, ProviderConfig
from coreason_gateway.engine import Gateway
from coreason_gateway.models import GatewayResponse, StreamDelta
from coreason_gateway.smart_client import SmartClient


@pytest.fixture
def gateway(stub_config: Callable[..., ProviderConfig], gateway_config: Callable[..., GatewayConfig]) -> Gateway:
    return Gateway(gateway_config([stub_config("a"), stub_config("b", input_price=0.001)]))


def test_get_client_returns_smart_client(gateway: Gateway) -> None:
    client = gateway.get_client()
    assert isinstance(client, SmartClient)
    assert hasattr(client.chat.completions, "create")


@pytest.mark.asyncio
async def test_create_maps_openai_options(gateway: Gateway, messages: List[dict]) -> None:
    client = gateway.get_client()

    response = await client.chat.completions.create(
        messages=messages, provider="b", user="alice", temperature=0.2, max_tokens=50
    )

    assert isinstance(response, GatewayResponse)
    assert response.provider == "b"
    request = cast(ScriptedAdapter, gateway.router.adapter("b")).requests[-1]
    assert request.options.user_id == "alice"
    assert request.options.temperature == 0.2
    assert request.options.max_tokens == 50
    assert gateway.tracker.ledger.records()[-1].user_id == "alice"


@pytest.mark.asyncio
async def test_unknown_options_are_ignored(gateway: Gateway, messages: List[dict]) -> None:
    client = gateway.get_client()
    with patch("coreason_gateway.smart_client.logger") as mock_logger:
        response = await client.chat.completions.create(messages=messages, presence_penalty=0.5)
    mock_logger.warning.assert_called_with("Ignoring unsupported completion option: presence_penalty")
    assert isinstance(response, GatewayResponse)
    assert cast(ScriptedAdapter, gateway.router.adapter("a")).calls == 1


@pytest.mark.asyncio
async def test_create_streaming(gateway: Gateway) -> None:
    cast(ScriptedAdapter, gateway.router.adapter("a")).push("bonjour tout le monde")
    client = gateway.get_client()

    stream = await client.chat.completions.create(messages=[{"role": "user", "content": "greet me"}], stream=True)
    items = [item async for item in stream]  # type: ignore[union-attr]

    assert "".join(i.content for i in items if isinstance(i, StreamDelta)) == "bonjour tout le monde"
    assert isinstance(items[-1], GatewayResponse)
