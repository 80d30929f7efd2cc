# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_gateway

from typing import ClassVar, List

from coreason_gateway.adapters.base import LiteLLMAdapter
from coreason_gateway.models import Capability, ModelDefinition, ModelPricing

VISION = Capability.VISION
TOOLS = Capability.TOOLS
STREAMING = Capability.STREAMING
THINKING = Capability.THINKING


class OpenAIAdapter(LiteLLMAdapter):
    kind: ClassVar[str] = "openai"
    model_prefix: ClassVar[str] = "openai/"
    catalog: ClassVar[List[ModelDefinition]] = [
        ModelDefinition(
            id="gpt-5.1-instant",
            context_window=200_000,
            max_output_tokens=16_384,
            capabilities=[VISION, TOOLS, STREAMING],
            pricing=ModelPricing(input=0.000005, output=0.00002, cached_input=0.0000025),
        ),
        ModelDefinition(
            id="gpt-5.1-thinking",
            context_window=200_000,
            max_output_tokens=32_768,
            capabilities=[VISION, TOOLS, STREAMING, THINKING],
            pricing=ModelPricing(input=0.00001, output=0.00004, cached_input=0.000005, thinking=0.00002),
        ),
        ModelDefinition(
            id="gpt-4o-2024-11-20",
            context_window=128_000,
            max_output_tokens=16_384,
            capabilities=[VISION, TOOLS, STREAMING],
            pricing=ModelPricing(input=0.0000025, output=0.00001, cached_input=0.00000125),
        ),
    ]


class AnthropicAdapter(LiteLLMAdapter):
    kind: ClassVar[str] = "anthropic"
    model_prefix: ClassVar[str] = "anthropic/"
    catalog: ClassVar[List[ModelDefinition]] = [
        ModelDefinition(
            id="claude-4.5-sonnet-20250514",
            context_window=200_000,
            max_output_tokens=8_192,
            capabilities=[VISION, TOOLS, STREAMING, THINKING],
            pricing=ModelPricing(input=0.000003, output=0.000015, cached_input=0.0000003),
        ),
        ModelDefinition(
            id="claude-4.5-opus-20250514",
            context_window=200_000,
            max_output_tokens=16_384,
            capabilities=[VISION, TOOLS, STREAMING, THINKING],
            pricing=ModelPricing(input=0.000015, output=0.000075, cached_input=0.0000015),
        ),
    ]


class VertexAdapter(LiteLLMAdapter):
    kind: ClassVar[str] = "vertex"
    model_prefix: ClassVar[str] = "vertex_ai/"
    catalog: ClassVar[List[ModelDefinition]] = [
        ModelDefinition(
            id="gemini-3-pro",
            context_window=2_000_000,
            max_output_tokens=32_768,
            capabilities=[VISION, TOOLS, STREAMING],
            pricing=ModelPricing(input=0.000002, output=0.00001),
        ),
        ModelDefinition(
            id="gemini-2.5-flash-002",
            context_window=1_000_000,
            max_output_tokens=8_192,
            capabilities=[VISION, TOOLS, STREAMING],
            pricing=ModelPricing(input=0.0000001, output=0.0000004),
        ),
    ]


class GrokAdapter(LiteLLMAdapter):
    kind: ClassVar[str] = "grok"
    model_prefix: ClassVar[str] = "xai/"
    catalog: ClassVar[List[ModelDefinition]] = [
        ModelDefinition(
            id="grok-4.1-eq",
            context_window=128_000,
            max_output_tokens=16_384,
            capabilities=[VISION, TOOLS, STREAMING],
            pricing=ModelPricing(input=0.000008, output=0.000024, cached_input=0.000004),
        ),
        ModelDefinition(
            id="grok-4-thinking",
            context_window=128_000,
            max_output_tokens=32_768,
            capabilities=[VISION, TOOLS, STREAMING, THINKING],
            pricing=ModelPricing(input=0.00001, output=0.00003, cached_input=0.000005, thinking=0.000015),
        ),
    ]


class CopilotAdapter(LiteLLMAdapter):
    """Copilot 365 deployments, reached through their Azure OpenAI endpoint."""

    kind: ClassVar[str] = "copilot"
    model_prefix: ClassVar[str] = "azure/"
    catalog: ClassVar[List[ModelDefinition]] = [
        ModelDefinition(
            id="copilot-365-gpt4",
            context_window=128_000,
            max_output_tokens=16_384,
            capabilities=[VISION, TOOLS, STREAMING],
            pricing=ModelPricing(input=0.00001, output=0.00003),
        ),
        ModelDefinition(
            id="copilot-m365-hybrid",
            context_window=128_000,
            max_output_tokens=16_384,
            capabilities=[VISION, TOOLS, STREAMING],
            pricing=ModelPricing(input=0.000012, output=0.000036),
        ),
    ]
