import pytest

from coreason_gateway.gatekeeper import IMAGE_TOKEN_ESTIMATE, Gatekeeper, estimate_text_tokens
from coreason_gateway.models import Capability, Message, RequestOptions


@pytest.fixture
def gatekeeper() -> Gatekeeper:
    return Gatekeeper()


def test_plain_text_request(gatekeeper: Gatekeeper) -> None:
    request = gatekeeper.prepare([{"role": "user", "content": "Hi, are you there?"}])
    assert request.options.required_capabilities == []
    assert request.estimated_tokens == estimate_text_tokens("Hi, are you there?")
    assert len(request.cache_key) == 64
    assert request.request_id


def test_empty_messages_rejected(gatekeeper: Gatekeeper) -> None:
    with pytest.raises(ValueError, match="at least one message"):
        gatekeeper.prepare([])


def test_image_content_requires_vision(gatekeeper: Gatekeeper) -> None:
    messages = [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": "What is in this picture?"},
                {"type": "image_url", "image_url": {"url": "https://example.com/cat.png"}},
            ],
        }
    ]
    request = gatekeeper.prepare(messages)
    assert request.options.required_capabilities == [Capability.VISION]
    assert request.estimated_tokens == IMAGE_TOKEN_ESTIMATE + estimate_text_tokens("What is in this picture?")


def test_tools_reasoning_and_streaming_inferred(gatekeeper: Gatekeeper) -> None:
    options = RequestOptions(
        tools=[{"type": "function", "function": {"name": "lookup"}}],
        reasoning_effort="high",
    )
    request = gatekeeper.prepare([Message(role="user", content="Plan my trip")], options, stream=True)
    assert request.options.required_capabilities == [Capability.TOOLS, Capability.THINKING, Capability.STREAMING]


def test_explicit_capabilities_are_kept_without_duplicates(gatekeeper: Gatekeeper) -> None:
    options = RequestOptions(required_capabilities=[Capability.STREAMING, Capability.VISION])
    request = gatekeeper.prepare([{"role": "user", "content": "hi"}], options, stream=True)
    assert request.options.required_capabilities == [Capability.STREAMING, Capability.VISION]


def test_cache_key_ignores_whitespace_case_and_user(gatekeeper: Gatekeeper) -> None:
    first = gatekeeper.prepare([{"role": "user", "content": "  What is   the capital of France? "}])
    second = gatekeeper.prepare(
        [{"role": "user", "content": "what is the capital of france?"}], RequestOptions(user_id="bob")
    )
    assert first.cache_key == second.cache_key


def test_cache_key_depends_on_answer_shaping_options(gatekeeper: Gatekeeper) -> None:
    messages = [{"role": "user", "content": "Tell me a joke"}]
    base = gatekeeper.prepare(messages)
    assert gatekeeper.prepare(messages, RequestOptions(temperature=1.5)).cache_key != base.cache_key
    assert gatekeeper.prepare(messages, RequestOptions(model="gpt-4o-2024-11-20")).cache_key != base.cache_key
    assert gatekeeper.prepare(messages, RequestOptions(provider="openai")).cache_key != base.cache_key


def test_estimate_text_tokens_rounds_up() -> None:
    assert estimate_text_tokens("") == 0
    assert estimate_text_tokens("abc") == 1
    assert estimate_text_tokens("abcde") == 2
