# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_gateway

import pytest

from coreason_gateway.models import Capability, ModelDefinition
from coreason_gateway.registry import ModelRegistry


@pytest.fixture
def registry() -> ModelRegistry:
    registry = ModelRegistry()
    registry.register_models(
        [
            ModelDefinition(id="mini", provider="openai", capabilities=[Capability.STREAMING]),
            ModelDefinition(
                id="thinker", provider="openai", capabilities=[Capability.STREAMING, Capability.THINKING]
            ),
            ModelDefinition(id="sonnet", provider="anthropic", capabilities=[Capability.VISION]),
        ]
    )
    return registry


def test_register_and_get(registry: ModelRegistry) -> None:
    model = registry.get_model("openai", "thinker")
    assert model is not None
    assert model.id == "thinker"
    assert registry.get_model("openai", "unknown") is None


def test_register_updates_existing(registry: ModelRegistry) -> None:
    registry.register_model(ModelDefinition(id="mini", provider="openai", context_window=8_000))
    model = registry.get_model("openai", "mini")
    assert model is not None
    assert model.context_window == 8_000


def test_list_models_filters(registry: ModelRegistry) -> None:
    assert [m.id for m in registry.list_models()] == ["mini", "thinker", "sonnet"]
    assert [m.id for m in registry.list_models(provider="openai")] == ["mini", "thinker"]
    assert [m.id for m in registry.list_models(capabilities=[Capability.THINKING])] == ["thinker"]


def test_resolve_prefers_default_then_first_capable(registry: ModelRegistry) -> None:
    resolved = registry.resolve("openai")
    assert resolved is not None and resolved.id == "mini"

    resolved = registry.resolve("openai", [Capability.THINKING])
    assert resolved is not None and resolved.id == "thinker"

    big = ModelDefinition(id="big", provider="openai", capabilities=[Capability.STREAMING])
    registry.register_model(big, default=True)
    resolved = registry.resolve("openai", [Capability.STREAMING])
    assert resolved is not None and resolved.id == "big"


def test_resolve_with_model_hint(registry: ModelRegistry) -> None:
    resolved = registry.resolve("openai", model_hint="thinker")
    assert resolved is not None and resolved.id == "thinker"
    assert registry.resolve("anthropic", model_hint="thinker") is None
    assert registry.resolve("openai", [Capability.VISION], model_hint="thinker") is None


def test_providers_and_clear(registry: ModelRegistry) -> None:
    assert registry.providers() == ["openai", "anthropic"]
    registry.clear()
    assert registry.list_models() == []
    assert registry.resolve("openai") is None
