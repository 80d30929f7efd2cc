import asyncio
from types import SimpleNamespace
from typing import Any, List
from unittest.mock import AsyncMock, patch

import pytest
from litellm.exceptions import (
    APIConnectionError,
    AuthenticationError,
    BadRequestError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from coreason_gateway.adapters import ADAPTER_TYPES, OpenAIAdapter, ScriptedAdapter, build_adapter, classify_exception
from coreason_gateway.config import ProviderConfig
from coreason_gateway.errors import ErrorKind, ProviderError
from coreason_gateway.gatekeeper import Gatekeeper
from coreason_gateway.models import GatewayRequest, GatewayResponse, RequestOptions, StreamDelta


def _usage(prompt: int, completion: int, cached: int = 0, reasoning: int = 0) -> SimpleNamespace:
    return SimpleNamespace(
        prompt_tokens=prompt,
        completion_tokens=completion,
        prompt_tokens_details=SimpleNamespace(cached_tokens=cached),
        completion_tokens_details=SimpleNamespace(reasoning_tokens=reasoning),
    )


def _completion(content: str, usage: SimpleNamespace) -> SimpleNamespace:
    message = SimpleNamespace(content=content)
    return SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason="stop")], usage=usage)


@pytest.fixture
def request_() -> GatewayRequest:
    return Gatekeeper().prepare(
        [{"role": "user", "content": "hello there"}], RequestOptions(temperature=0.2, max_tokens=100_000, user_id="u1")
    )


@pytest.fixture
def openai() -> OpenAIAdapter:
    return OpenAIAdapter(ProviderConfig(id="openai-main", kind="openai", api_key="sk-test", timeout=15))


@pytest.mark.parametrize(
    "error, kind, retryable",
    [
        (RateLimitError("Limit Hit", model="m", llm_provider="openai"), ErrorKind.RATE_LIMITED, True),
        (ServiceUnavailableError("Down", model="m", llm_provider="openai"), ErrorKind.SERVER_ERROR, True),
        (APIConnectionError("Reset", model="m", llm_provider="openai"), ErrorKind.SERVER_ERROR, True),
        (Timeout("Slow", model="m", llm_provider="openai"), ErrorKind.TIMEOUT, True),
        (AuthenticationError("Bad key", model="m", llm_provider="openai"), ErrorKind.AUTH, False),
        (BadRequestError("Bad Prompt", model="m", llm_provider="openai"), ErrorKind.INVALID_REQUEST, False),
        (asyncio.TimeoutError(), ErrorKind.TIMEOUT, True),
        (ConnectionResetError("peer reset"), ErrorKind.SERVER_ERROR, True),
    ],
)
def test_classify_exception(error: BaseException, kind: ErrorKind, retryable: bool) -> None:
    classified = classify_exception(error, "openai")
    assert classified.kind == kind
    assert classified.retryable is retryable
    assert classified.provider == "openai"


def test_classify_by_status_code() -> None:
    error = RuntimeError("too many")
    error.status_code = 429  # type: ignore[attr-defined]
    assert classify_exception(error, "p").kind == ErrorKind.RATE_LIMITED


def test_classify_passes_provider_errors_through() -> None:
    original = ProviderError("nope", ErrorKind.AUTH, "p")
    assert classify_exception(original, "other") is original


def test_catalog_is_bound_to_provider_id(openai: OpenAIAdapter) -> None:
    models = openai.models()
    assert models
    assert all(m.provider == "openai-main" for m in models)


def test_build_kwargs(openai: OpenAIAdapter, request_: GatewayRequest) -> None:
    model = openai.models()[0]
    kwargs = openai.build_kwargs(request_, model)
    assert kwargs["model"] == f"openai/{model.id}"
    assert kwargs["api_key"] == "sk-test"
    assert kwargs["timeout"] == 15
    assert kwargs["temperature"] == 0.2
    assert kwargs["max_tokens"] == model.max_output_tokens
    assert kwargs["user"] == "u1"
    assert kwargs["messages"] == [{"role": "user", "content": "hello there"}]


@pytest.mark.asyncio
async def test_complete_parses_usage_and_cost(openai: OpenAIAdapter, request_: GatewayRequest) -> None:
    model = openai.models()[0]
    with patch("coreason_gateway.adapters.base.acompletion", new_callable=AsyncMock) as mock_completion:
        mock_completion.return_value = _completion("Paris", _usage(100, 50, cached=40))
        response = await openai.complete(request_, model)

    mock_completion.assert_awaited_once()
    assert response.content == "Paris"
    assert response.provider == "openai-main"
    assert response.usage.input_tokens == 100
    assert response.usage.cached_tokens == 40
    assert response.cost == pytest.approx(model.cost_for(response.usage))
    assert response.finish_reason == "stop"


@pytest.mark.asyncio
async def test_complete_classifies_failures(openai: OpenAIAdapter, request_: GatewayRequest) -> None:
    with patch("coreason_gateway.adapters.base.acompletion", new_callable=AsyncMock) as mock_completion:
        mock_completion.side_effect = RateLimitError("Limit Hit", model="m", llm_provider="openai")
        with pytest.raises(ProviderError) as exc_info:
            await openai.complete(request_, openai.models()[0])

    assert exc_info.value.kind == ErrorKind.RATE_LIMITED
    assert isinstance(exc_info.value.__cause__, RateLimitError)


def test_reasoning_tokens_billed_once() -> None:
    usage = OpenAIAdapter.parse_usage(_usage(10, 30, reasoning=20))
    assert usage.output_tokens == 10
    assert usage.thinking_tokens == 20
    assert usage.total_tokens == 40


@pytest.mark.asyncio
async def test_complete_stream(openai: OpenAIAdapter, request_: GatewayRequest) -> None:
    chunks = [
        SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="Par"), finish_reason=None)]),
        SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="is"), finish_reason="stop")]),
        SimpleNamespace(choices=[], usage=_usage(12, 2)),
    ]

    async def fake_stream() -> Any:
        for chunk in chunks:
            yield chunk

    with patch("coreason_gateway.adapters.base.acompletion", new_callable=AsyncMock) as mock_completion:
        mock_completion.return_value = fake_stream()
        items = [item async for item in openai.complete_stream(request_, openai.models()[0])]

    assert mock_completion.call_args.kwargs["stream"] is True
    deltas = [i for i in items if isinstance(i, StreamDelta)]
    assert [d.content for d in deltas] == ["Par", "is"]
    final = items[-1]
    assert isinstance(final, GatewayResponse)
    assert final.content == "Paris"
    assert final.usage.input_tokens == 12
    assert final.finish_reason == "stop"


@pytest.mark.asyncio
async def test_check_health(openai: OpenAIAdapter) -> None:
    with patch("coreason_gateway.adapters.base.acompletion", new_callable=AsyncMock) as mock_completion:
        assert await openai.check_health() is True
        mock_completion.side_effect = ServiceUnavailableError("Down", model="m", llm_provider="openai")
        assert await openai.check_health() is False


def test_build_adapter_by_kind() -> None:
    for kind in ("openai", "anthropic", "vertex", "grok", "copilot", "stub"):
        adapter = build_adapter(ProviderConfig(id=f"{kind}-1", kind=kind))
        assert isinstance(adapter, ADAPTER_TYPES[kind])
        assert adapter.provider_id == f"{kind}-1"


def test_build_adapter_unknown_kind() -> None:
    with pytest.raises(ValueError, match="Unknown provider kind"):
        build_adapter(ProviderConfig(id="x", kind="carrier-pigeon"))


@pytest.mark.asyncio
async def test_scripted_adapter_replays_script(request_: GatewayRequest) -> None:
    adapter = ScriptedAdapter(ProviderConfig(id="stub", kind="stub"))
    model = adapter.models()[0]
    adapter.push("first", ProviderError("down", ErrorKind.SERVER_ERROR, "stub"))

    assert (await adapter.complete(request_, model)).content == "first"
    with pytest.raises(ProviderError):
        await adapter.complete(request_, model)
    # Script exhausted: echo the last user message.
    assert (await adapter.complete(request_, model)).content == "hello there"
    assert adapter.calls == 3


@pytest.mark.asyncio
async def test_scripted_adapter_streams_words(request_: GatewayRequest) -> None:
    adapter = ScriptedAdapter(ProviderConfig(id="stub", kind="stub", extra={"reply": "one two three"}))
    items: List[Any] = [item async for item in adapter.complete_stream(request_, adapter.models()[0])]
    assert "".join(i.content for i in items[:-1]) == "one two three"
    assert isinstance(items[-1], GatewayResponse)
