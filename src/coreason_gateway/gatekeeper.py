# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_gateway

import math
from typing import Any, Dict, List, Optional, Sequence, Union

from coreason_gateway.cache.keys import build_cache_key
from coreason_gateway.models import Capability, GatewayRequest, Message, RequestOptions
from coreason_gateway.utils.logger import logger

CHARS_PER_TOKEN = 4
IMAGE_TOKEN_ESTIMATE = 765
IMAGE_PART_TYPES = frozenset({"image_url", "image", "input_image"})


def estimate_text_tokens(text: str) -> int:
    """
    Cheap token estimate (~4 characters per token). Used for budget pre-checks and
    cost-based routing, never for billing.
    """
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class Gatekeeper:
    """
    The Gatekeeper turns raw chat messages into a GatewayRequest before routing.
    It derives the capabilities a provider must have, estimates the prompt size
    and computes the cache key. It stays lightweight to avoid adding latency.
    """

    def prepare(
        self,
        messages: Sequence[Union[Message, Dict[str, Any]]],
        options: Optional[RequestOptions] = None,
        stream: bool = False,
    ) -> GatewayRequest:
        """
        Builds an immutable GatewayRequest.

        Capability inference (added to any explicitly required capabilities):
        - image content parts -> vision
        - tool definitions -> tools
        - a reasoning effort -> thinking
        - streaming delivery -> streaming
        """
        parsed = [m if isinstance(m, Message) else Message.model_validate(m) for m in messages]
        if not parsed:
            raise ValueError("A request needs at least one message")

        options = options or RequestOptions()
        inferred = self.infer_capabilities(parsed, options, stream=stream)
        required = list(dict.fromkeys([*options.required_capabilities, *inferred]))
        if required != list(options.required_capabilities):
            options = options.model_copy(update={"required_capabilities": required})

        estimated = self.estimate_tokens(parsed)
        request = GatewayRequest(
            messages=parsed,
            options=options,
            cache_key=build_cache_key(parsed, options),
            estimated_tokens=estimated,
        )
        logger.debug(
            f"Gatekeeper prepared request {request.request_id}: messages={len(parsed)}, "
            f"estimated_tokens={estimated}, capabilities={[c.value for c in required]}"
        )
        return request

    def infer_capabilities(
        self, messages: Sequence[Message], options: RequestOptions, stream: bool = False
    ) -> List[Capability]:
        capabilities: List[Capability] = []
        if any(self._has_image(m) for m in messages):
            capabilities.append(Capability.VISION)
        if options.tools:
            capabilities.append(Capability.TOOLS)
        if options.reasoning_effort:
            capabilities.append(Capability.THINKING)
        if stream:
            capabilities.append(Capability.STREAMING)
        return capabilities

    def estimate_tokens(self, messages: Sequence[Message]) -> int:
        total = 0
        for message in messages:
            if isinstance(message.content, str):
                total += estimate_text_tokens(message.content)
                continue
            for part in message.content:
                if part.get("type") in IMAGE_PART_TYPES:
                    total += IMAGE_TOKEN_ESTIMATE
                elif isinstance(part.get("text"), str):
                    total += estimate_text_tokens(part["text"])
        return total

    @staticmethod
    def _has_image(message: Message) -> bool:
        if isinstance(message.content, str):
            return False
        return any(part.get("type") in IMAGE_PART_TYPES for part in message.content)
