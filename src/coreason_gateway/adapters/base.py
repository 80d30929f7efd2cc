# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_gateway

import asyncio
import time
from typing import Any, AsyncIterator, ClassVar, Dict, List, Optional, Union

from litellm import acompletion
from litellm.exceptions import (
    APIConnectionError,
    APIError,
    AuthenticationError,
    BadRequestError,
    InternalServerError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from coreason_gateway.config import ProviderConfig
from coreason_gateway.errors import ErrorKind, ProviderError
from coreason_gateway.gatekeeper import estimate_text_tokens
from coreason_gateway.models import GatewayRequest, GatewayResponse, ModelDefinition, StreamDelta, TokenUsage
from coreason_gateway.utils.logger import logger

# Checked in order; litellm's BadRequestError family is matched before the generic APIError.
_CLASSIFICATION = (
    (Timeout, ErrorKind.TIMEOUT),
    (RateLimitError, ErrorKind.RATE_LIMITED),
    (AuthenticationError, ErrorKind.AUTH),
    (PermissionDeniedError, ErrorKind.AUTH),
    (BadRequestError, ErrorKind.INVALID_REQUEST),
    (NotFoundError, ErrorKind.INVALID_REQUEST),
    (ServiceUnavailableError, ErrorKind.SERVER_ERROR),
    (InternalServerError, ErrorKind.SERVER_ERROR),
    (APIConnectionError, ErrorKind.SERVER_ERROR),
    (APIError, ErrorKind.SERVER_ERROR),
)


def classify_exception(error: BaseException, provider: str) -> ProviderError:
    """
    Maps a vendor/SDK exception onto the gateway error taxonomy.
    Unknown exceptions are treated as retryable server errors.
    """
    if isinstance(error, ProviderError):
        return error
    if isinstance(error, asyncio.TimeoutError):
        return ProviderError(f"Call timed out: {error}", ErrorKind.TIMEOUT, provider)

    status_code = getattr(error, "status_code", None)
    for exc_type, kind in _CLASSIFICATION:
        if isinstance(error, exc_type):
            return ProviderError(str(error), kind, provider, status_code=status_code)

    if isinstance(status_code, int):
        if status_code == 429:
            return ProviderError(str(error), ErrorKind.RATE_LIMITED, provider, status_code=status_code)
        if status_code in (401, 403):
            return ProviderError(str(error), ErrorKind.AUTH, provider, status_code=status_code)
        if 400 <= status_code < 500:
            return ProviderError(str(error), ErrorKind.INVALID_REQUEST, provider, status_code=status_code)

    return ProviderError(f"{type(error).__name__}: {error}", ErrorKind.SERVER_ERROR, provider, status_code=status_code)


class LiteLLMAdapter:
    """
    Provider adapter backed by `litellm.acompletion`.
    Vendor subclasses only declare their litellm model prefix and default catalog.
    """

    kind: ClassVar[str] = "litellm"
    model_prefix: ClassVar[str] = ""
    catalog: ClassVar[List[ModelDefinition]] = []

    def __init__(self, config: ProviderConfig) -> None:
        self.config = config
        self.provider_id = config.id
        source = config.models if config.models is not None else self.catalog
        self._models = [m.model_copy(update={"provider": config.id}) for m in source]

    def models(self) -> List[ModelDefinition]:
        return list(self._models)

    def litellm_model(self, model: ModelDefinition) -> str:
        return f"{self.model_prefix}{model.id}"

    def build_kwargs(self, request: GatewayRequest, model: ModelDefinition) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": self.litellm_model(model),
            "messages": [m.model_dump(exclude_none=True) for m in request.messages],
            "timeout": self.config.timeout,
            "num_retries": self.config.retry_budget,
        }
        if self.config.api_key:
            kwargs["api_key"] = self.config.api_key
        if self.config.api_base:
            kwargs["api_base"] = self.config.api_base

        options = request.options
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature
        if options.max_tokens is not None:
            kwargs["max_tokens"] = min(options.max_tokens, model.max_output_tokens)
        if options.tools:
            kwargs["tools"] = options.tools
        if options.response_format:
            kwargs["response_format"] = options.response_format
        if options.reasoning_effort:
            kwargs["reasoning_effort"] = options.reasoning_effort
        if options.user_id:
            kwargs["user"] = options.user_id

        kwargs.update(self.config.extra)
        return kwargs

    async def complete(self, request: GatewayRequest, model: ModelDefinition) -> GatewayResponse:
        kwargs = self.build_kwargs(request, model)
        started = time.monotonic()
        try:
            raw = await acompletion(**kwargs)
        except Exception as e:
            error = classify_exception(e, self.provider_id)
            logger.warning(f"{self.provider_id} call failed ({error.kind.value}): {e}")
            raise error from e

        return self.parse_response(raw, model, time.monotonic() - started)

    async def complete_stream(
        self, request: GatewayRequest, model: ModelDefinition
    ) -> AsyncIterator[Union[StreamDelta, GatewayResponse]]:
        kwargs = self.build_kwargs(request, model)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        started = time.monotonic()
        parts: List[str] = []
        finish_reason: Optional[str] = None
        raw_usage: Any = None
        try:
            stream = await acompletion(**kwargs)
            async for chunk in stream:
                if getattr(chunk, "usage", None) is not None:
                    raw_usage = chunk.usage
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
                text = getattr(choice.delta, "content", None)
                if text:
                    yield StreamDelta(content=text, index=len(parts), provider=self.provider_id, model=model.id)
                    parts.append(text)
        except Exception as e:
            error = classify_exception(e, self.provider_id)
            logger.warning(f"{self.provider_id} stream failed ({error.kind.value}): {e}")
            raise error from e

        content = "".join(parts)
        if raw_usage is not None:
            usage = self.parse_usage(raw_usage)
        else:
            usage = TokenUsage(input_tokens=request.estimated_tokens, output_tokens=estimate_text_tokens(content))
        yield GatewayResponse(
            content=content,
            usage=usage,
            cost=model.cost_for(usage),
            latency=time.monotonic() - started,
            finish_reason=finish_reason,
            provider=self.provider_id,
            model=model.id,
        )

    async def check_health(self) -> bool:
        if not self._models:
            return False
        model = self._models[0]
        try:
            await acompletion(
                model=self.litellm_model(model),
                messages=[{"role": "user", "content": "ping"}],
                max_tokens=1,
                timeout=self.config.timeout,
                **({"api_key": self.config.api_key} if self.config.api_key else {}),
                **({"api_base": self.config.api_base} if self.config.api_base else {}),
            )
            return True
        except Exception as e:
            logger.warning(f"Health check failed for {self.provider_id}: {e}")
            return False

    def parse_response(self, raw: Any, model: ModelDefinition, latency: float) -> GatewayResponse:
        choice = raw.choices[0]
        message = getattr(choice, "message", None)
        content = getattr(message, "content", None) or ""
        usage = self.parse_usage(getattr(raw, "usage", None))
        return GatewayResponse(
            content=content,
            usage=usage,
            cost=model.cost_for(usage),
            latency=latency,
            finish_reason=getattr(choice, "finish_reason", None),
            provider=self.provider_id,
            model=model.id,
        )

    @staticmethod
    def parse_usage(raw_usage: Any) -> TokenUsage:
        if raw_usage is None:
            return TokenUsage()
        prompt = int(getattr(raw_usage, "prompt_tokens", 0) or 0)
        completion = int(getattr(raw_usage, "completion_tokens", 0) or 0)
        cached = int(getattr(getattr(raw_usage, "prompt_tokens_details", None), "cached_tokens", 0) or 0)
        thinking = int(getattr(getattr(raw_usage, "completion_tokens_details", None), "reasoning_tokens", 0) or 0)
        # completion_tokens already includes reasoning tokens; bill them once, at the thinking rate.
        thinking = min(thinking, completion)
        return TokenUsage(
            input_tokens=prompt,
            output_tokens=completion - thinking,
            cached_tokens=min(cached, prompt),
            thinking_tokens=thinking,
        )
