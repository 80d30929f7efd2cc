# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_gateway

from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

from coreason_gateway.models import ModelDefinition, RoutingStrategy
from coreason_gateway.utils.logger import logger


class AdmissionMode(str, Enum):
    QUEUE = "queue"
    REJECT = "reject"


class SimilarityMetric(str, Enum):
    COSINE = "cosine"
    DOT = "dot"
    EUCLIDEAN = "euclidean"
    JACCARD = "jaccard"  # word sets of the normalized request text
    LEVENSHTEIN = "levenshtein"  # edit distance over the normalized request text


class CacheHitAccounting(str, Enum):
    """What the budget ledger does when a request is answered from cache."""

    NONE = "none"  # no usage record, nothing consumed
    ZERO_COST = "zero_cost"  # a `cached` usage record with zero cost
    ORIGINAL_COST = "original_cost"  # a `cached` usage record billed at the original response cost


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ProviderConfig(_Frozen):
    id: str
    kind: str  # adapter variant, e.g. "openai", "anthropic", "stub"
    enabled: bool = True
    timeout: float = Field(60.0, gt=0)  # seconds, per adapter call
    retry_budget: int = Field(0, ge=0)  # vendor-level retries inside one adapter call
    default_model: Optional[str] = None
    models: Optional[List[ModelDefinition]] = None  # overrides the adapter's built-in catalog
    api_key: Optional[str] = Field(None, repr=False)
    api_base: Optional[str] = None
    weight: float = Field(1.0, ge=0.0)
    max_concurrent: Optional[int] = Field(None, gt=0)  # overrides AdmissionConfig.max_concurrent
    extra: Dict[str, Any] = Field(default_factory=dict)


class BackoffConfig(_Frozen):
    initial_delay: float = Field(0.5, ge=0.0)
    max_delay: float = Field(10.0, ge=0.0)
    multiplier: float = Field(2.0, ge=1.0)

    def delay_for(self, attempt: int) -> float:
        """Delay before failover attempt number `attempt` (1-based)."""
        return float(min(self.initial_delay * self.multiplier ** max(attempt - 1, 0), self.max_delay))


class RouterConfig(_Frozen):
    strategy: RoutingStrategy = RoutingStrategy.COST_BASED
    max_failover_attempts: int = Field(3, ge=1)  # dispatch attempts per request, first one included
    enable_failover: bool = True
    quality_ranking: List[str] = Field(default_factory=list)
    latency_window: int = Field(50, gt=0)
    backoff: BackoffConfig = Field(default_factory=BackoffConfig)
    health_check_interval: float = Field(60.0, gt=0)  # seconds between background health rounds
    health_monitoring: bool = False  # start the background health task when the Gateway is entered


class BreakerConfig(_Frozen):
    enabled: bool = True
    failure_threshold: int = Field(5, ge=1)
    open_duration: float = Field(60.0, gt=0)  # seconds
    half_open_probe_limit: int = Field(1, ge=1)


class AdmissionConfig(_Frozen):
    enabled: bool = True
    max_concurrent: int = Field(10, gt=0)
    queue_size: int = Field(100, ge=0)
    queue_timeout: float = Field(120.0, gt=0)
    mode: AdmissionMode = AdmissionMode.QUEUE


class MemoryCacheConfig(_Frozen):
    enabled: bool = True
    max_entries: int = Field(500, gt=0)
    ttl: float = Field(3600.0, gt=0)


class PersistentCacheConfig(_Frozen):
    enabled: bool = False
    path: str = "gateway-cache.db"
    max_entries: int = Field(10_000, gt=0)
    ttl: float = Field(86_400.0, gt=0)


class RemoteCacheConfig(_Frozen):
    enabled: bool = False
    url: str = "redis://localhost:6379/0"
    ttl: float = Field(604_800.0, gt=0)
    key_prefix: str = "coreason:gateway:"


class SimilarityConfig(_Frozen):
    enabled: bool = True
    threshold: float = Field(0.85, gt=0.0, le=1.0)
    metric: SimilarityMetric = SimilarityMetric.COSINE
    max_entries: int = Field(1_000, gt=0)
    ttl: float = Field(3600.0, gt=0)
    dimensions: int = Field(256, gt=0)  # hashing embedder width
    embedding_model: Optional[str] = None  # litellm embedding model; local hashing embedder when unset


class CacheConfig(_Frozen):
    enabled: bool = True
    memory: MemoryCacheConfig = Field(default_factory=MemoryCacheConfig)
    persistent: PersistentCacheConfig = Field(default_factory=PersistentCacheConfig)
    remote: RemoteCacheConfig = Field(default_factory=RemoteCacheConfig)
    similarity: SimilarityConfig = Field(default_factory=SimilarityConfig)
    analytics_window: int = Field(1_000, gt=0)


class BudgetConfig(_Frozen):
    daily_limit: Optional[float] = Field(None, gt=0)
    monthly_limit: Optional[float] = Field(None, gt=0)
    per_user_limit: Optional[float] = Field(None, gt=0)  # monthly, per user
    user_limits: Dict[str, float] = Field(default_factory=dict)
    alert_threshold: float = Field(0.8, gt=0.0, le=1.0)
    ledger_path: Optional[str] = None  # SQLite file; in-memory ledger when unset
    retention_days: int = Field(90, gt=0)

    def limit_for_user(self, user_id: str) -> Optional[float]:
        return self.user_limits.get(user_id, self.per_user_limit)


class GatewayConfig(_Frozen):
    providers: List[ProviderConfig] = Field(default_factory=list)
    router: RouterConfig = Field(default_factory=RouterConfig)
    breaker: BreakerConfig = Field(default_factory=BreakerConfig)
    admission: AdmissionConfig = Field(default_factory=AdmissionConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    cache_hit_accounting: CacheHitAccounting = CacheHitAccounting.NONE

    @model_validator(mode="after")
    def _check_providers(self) -> "GatewayConfig":
        ids = [p.id for p in self.providers]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"Duplicate provider ids: {duplicates}")

        unknown = [p for p in self.router.quality_ranking if p not in ids]
        if unknown:
            logger.warning(f"quality_ranking references unknown providers: {unknown}")
        return self

    def provider(self, provider_id: str) -> Optional[ProviderConfig]:
        for p in self.providers:
            if p.id == provider_id:
                return p
        return None


def load_config(path: Union[str, Path]) -> GatewayConfig:
    """
    Loads and validates a GatewayConfig from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the YAML is malformed.
        ValueError: If the file is empty or not a mapping.
        pydantic.ValidationError: If the content does not validate.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Gateway config file not found: {path}")

    with open(config_path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not raw:
        raise ValueError(f"Gateway config file is empty: {path}")
    if not isinstance(raw, dict):
        raise ValueError(f"Gateway config must be a mapping, got {type(raw).__name__}")

    config = GatewayConfig.model_validate(raw)
    logger.info(f"Loaded gateway config from {config_path} ({len(config.providers)} providers)")
    return config
