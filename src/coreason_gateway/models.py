# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_gateway

import time
import uuid
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class Capability(str, Enum):
    VISION = "vision"
    TOOLS = "tools"
    STREAMING = "streaming"
    THINKING = "thinking"


class RoutingStrategy(str, Enum):
    COST_BASED = "cost-based"
    PERFORMANCE_BASED = "performance-based"
    QUALITY_BASED = "quality-based"
    ROUND_ROBIN = "round-robin"
    WEIGHTED = "weighted"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CacheLayer(str, Enum):
    MEMORY = "memory"
    PERSISTENT = "persistent"
    REMOTE = "remote"
    SIMILARITY = "similarity"


class UsageOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    CACHED = "cached"


class BudgetScope(str, Enum):
    DAILY = "daily"
    MONTHLY = "monthly"
    USER = "user"


class ModelPricing(BaseModel):
    """USD cost per single token."""

    model_config = ConfigDict(frozen=True)

    input: float = Field(0.0, ge=0.0)
    output: float = Field(0.0, ge=0.0)
    cached_input: Optional[float] = Field(None, ge=0.0)
    thinking: Optional[float] = Field(None, ge=0.0)


class TokenUsage(BaseModel):
    model_config = ConfigDict(frozen=True)

    input_tokens: int = Field(0, ge=0)
    output_tokens: int = Field(0, ge=0)
    cached_tokens: int = Field(0, ge=0)
    thinking_tokens: int = Field(0, ge=0)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens + self.thinking_tokens


class ModelDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str  # e.g. "gpt-4o-2024-11-20"
    provider: str = ""  # e.g. "openai"; bound by the owning adapter when empty
    context_window: int = Field(128_000, gt=0)
    max_output_tokens: int = Field(4_096, gt=0)
    capabilities: List[Capability] = Field(default_factory=list)
    pricing: ModelPricing = Field(default_factory=ModelPricing)

    def supports(self, required: Iterable[Capability]) -> bool:
        return set(required).issubset(self.capabilities)

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        return input_tokens * self.pricing.input + output_tokens * self.pricing.output

    def cost_for(self, usage: TokenUsage) -> float:
        """
        Prices a usage breakdown.
        Cached input tokens are billed at the cached rate when the model has one,
        thinking tokens at the thinking rate (falling back to the output rate).
        """
        cached = min(usage.cached_tokens, usage.input_tokens)
        if self.pricing.cached_input is not None:
            cost = (usage.input_tokens - cached) * self.pricing.input + cached * self.pricing.cached_input
        else:
            cost = usage.input_tokens * self.pricing.input

        cost += usage.output_tokens * self.pricing.output

        thinking_rate = self.pricing.thinking if self.pricing.thinking is not None else self.pricing.output
        cost += usage.thinking_tokens * thinking_rate
        return cost


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: str
    content: Union[str, List[Dict[str, Any]]]
    name: Optional[str] = None


class RequestOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(None, gt=0)
    required_capabilities: List[Capability] = Field(default_factory=list)
    provider: Optional[str] = None  # provider hint
    model: Optional[str] = None  # model hint
    user_id: Optional[str] = None
    tools: Optional[List[Dict[str, Any]]] = None
    response_format: Optional[Dict[str, Any]] = None
    reasoning_effort: Optional[str] = None


class GatewayRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    messages: List[Message]
    options: RequestOptions = Field(default_factory=RequestOptions)
    cache_key: str
    estimated_tokens: int = Field(0, ge=0)
    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def user_id(self) -> Optional[str]:
        return self.options.user_id

    def estimated_output_tokens(self) -> int:
        return self.options.max_tokens if self.options.max_tokens is not None else self.estimated_tokens


class GatewayResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    content: str
    usage: TokenUsage = Field(default_factory=TokenUsage)
    cost: float = Field(0.0, ge=0.0)
    latency: float = Field(0.0, ge=0.0)  # seconds
    finish_reason: Optional[str] = None
    provider: str
    model: str
    created_at: float = Field(default_factory=time.time)
    cache_layer: Optional[CacheLayer] = None
    similarity: Optional[float] = None

    @property
    def cache_tag(self) -> Optional[str]:
        if self.cache_layer is None:
            return None
        return f"cache-hit:{self.cache_layer.value}"


class StreamDelta(BaseModel):
    model_config = ConfigDict(frozen=True)

    content: str
    index: int = Field(0, ge=0)
    provider: str
    model: str


class CircuitBreakerState(BaseModel):
    """Read-only snapshot of one provider's breaker."""

    model_config = ConfigDict(frozen=True)

    provider: str
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_failure_at: Optional[float] = None
    opened_at: Optional[float] = None
    half_open_probes: int = 0


class CacheEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    response: GatewayResponse
    layer: CacheLayer
    created_at: float = Field(default_factory=time.time)
    ttl: float = Field(..., gt=0)
    embedding: Optional[List[float]] = None

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now - self.created_at >= self.ttl


class UsageRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    model: str
    user_id: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    thinking_tokens: int = 0
    cost: float = 0.0
    success: bool = True
    outcome: UsageOutcome = UsageOutcome.SUCCESS
    latency: float = 0.0
    request_id: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens + self.thinking_tokens


class BudgetStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    scope: BudgetScope
    identifier: Optional[str] = None  # user id for per-user scopes
    period: str
    limit: Optional[float] = None
    consumed: float = 0.0
    reserved: float = 0.0
    alert_threshold: float = 0.8
    exceeded: bool = False

    @property
    def remaining(self) -> Optional[float]:
        if self.limit is None:
            return None
        return self.limit - self.consumed

    @property
    def percent(self) -> float:
        if not self.limit:
            return 0.0
        return self.consumed / self.limit * 100
