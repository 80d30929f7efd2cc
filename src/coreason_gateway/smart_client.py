# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_gateway

from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional, Union

from coreason_gateway.models import GatewayResponse, RequestOptions, StreamDelta
from coreason_gateway.utils.logger import logger

if TYPE_CHECKING:  # pragma: no cover
    from coreason_gateway.engine import Gateway

# OpenAI-style keyword -> RequestOptions field
_OPTION_ALIASES = {"user": "user_id"}


class CompletionsWrapper:
    """Proxy for chat.completions."""

    def __init__(self, gateway: "Gateway") -> None:
        self.gateway = gateway

    async def create(
        self, messages: List[Dict[str, Any]], stream: bool = False, **kwargs: Any
    ) -> Union[GatewayResponse, AsyncIterator[Union[StreamDelta, GatewayResponse]]]:
        """Runs a chat completion through the gateway.

        Args:
            messages: A list of message dictionaries (role, content).
            stream: Return an async iterator of deltas instead of a response.
            **kwargs: OpenAI-style options (`model`, `provider`, `temperature`,
                `max_tokens`, `user`, `tools`, `response_format`, `reasoning_effort`,
                `required_capabilities`). Unknown keywords are ignored with a warning.

        Returns:
            A GatewayResponse, or an async iterator when `stream` is set.
        """
        options = self._options(kwargs)
        if stream:
            return self.gateway.stream(messages, options)
        return await self.gateway.complete(messages, options)

    @staticmethod
    def _options(kwargs: Dict[str, Any]) -> Optional[RequestOptions]:
        fields: Dict[str, Any] = {}
        for key, value in kwargs.items():
            name = _OPTION_ALIASES.get(key, key)
            if name not in RequestOptions.model_fields:
                logger.warning(f"Ignoring unsupported completion option: {key}")
                continue
            fields[name] = value
        return RequestOptions.model_validate(fields) if fields else None


class ChatWrapper:
    """Proxy for chat namespace."""

    def __init__(self, gateway: "Gateway") -> None:
        self.completions = CompletionsWrapper(gateway)


class SmartClient:
    """Client mimicking the OpenAI interface on top of a Gateway.

    Provider selection, failover, caching and budget enforcement all happen
    behind `client.chat.completions.create(...)`.
    """

    def __init__(self, gateway: "Gateway") -> None:
        self.chat = ChatWrapper(gateway)
