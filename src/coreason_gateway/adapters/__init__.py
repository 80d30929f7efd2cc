# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_gateway

from typing import Any, Dict, Type

from coreason_gateway.adapters.base import LiteLLMAdapter, classify_exception
from coreason_gateway.adapters.stub import ScriptedAdapter
from coreason_gateway.adapters.vendors import (
    AnthropicAdapter,
    CopilotAdapter,
    GrokAdapter,
    OpenAIAdapter,
    VertexAdapter,
)
from coreason_gateway.config import ProviderConfig
from coreason_gateway.interfaces import ProviderAdapter

ADAPTER_TYPES: Dict[str, Type[Any]] = {
    cls.kind: cls
    for cls in (OpenAIAdapter, AnthropicAdapter, VertexAdapter, GrokAdapter, CopilotAdapter, ScriptedAdapter)
}


def build_adapter(config: ProviderConfig) -> ProviderAdapter:
    """
    Instantiates the adapter variant named by `config.kind`.

    Raises:
        ValueError: If no adapter is registered for the kind.
    """
    try:
        adapter_cls = ADAPTER_TYPES[config.kind]
    except KeyError:
        raise ValueError(
            f"Unknown provider kind '{config.kind}' for provider '{config.id}'. Known kinds: {sorted(ADAPTER_TYPES)}"
        ) from None
    adapter: ProviderAdapter = adapter_cls(config)
    return adapter


__all__ = [
    "ADAPTER_TYPES",
    "AnthropicAdapter",
    "CopilotAdapter",
    "GrokAdapter",
    "LiteLLMAdapter",
    "OpenAIAdapter",
    "ScriptedAdapter",
    "VertexAdapter",
    "build_adapter",
    "classify_exception",
]
