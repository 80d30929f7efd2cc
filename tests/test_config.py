from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from coreason_gateway.config import (
    BackoffConfig,
    BudgetConfig,
    CacheHitAccounting,
    GatewayConfig,
    ProviderConfig,
    load_config,
)
from coreason_gateway.models import RoutingStrategy

CONFIG_YAML = """
providers:
  - id: openai
    kind: openai
    api_key: sk-test
    timeout: 30
  - id: claude
    kind: anthropic
    default_model: claude-4.5-opus-20250514
router:
  strategy: quality-based
  quality_ranking: [claude, openai]
  max_failover_attempts: 2
breaker:
  failure_threshold: 3
  open_duration: 15
cache:
  persistent:
    enabled: true
    path: /tmp/gateway-cache.db
  similarity:
    threshold: 0.9
    metric: dot
budget:
  daily_limit: 50
  user_limits:
    alice: 5
cache_hit_accounting: zero_cost
"""


def test_load_config(tmp_path: Path) -> None:
    path = tmp_path / "gateway.yaml"
    path.write_text(CONFIG_YAML, encoding="utf-8")

    config = load_config(path)

    assert [p.id for p in config.providers] == ["openai", "claude"]
    assert config.providers[0].timeout == 30.0
    assert config.router.strategy == RoutingStrategy.QUALITY_BASED
    assert config.router.max_failover_attempts == 2
    assert config.breaker.failure_threshold == 3
    assert config.cache.persistent.enabled is True
    assert config.cache.similarity.metric.value == "dot"
    assert config.budget.limit_for_user("alice") == 5.0
    assert config.budget.limit_for_user("bob") is None
    assert config.cache_hit_accounting == CacheHitAccounting.ZERO_COST
    assert config.provider("claude") is not None
    assert config.provider("missing") is None


def test_defaults() -> None:
    config = GatewayConfig()
    assert config.router.strategy == RoutingStrategy.COST_BASED
    assert config.router.max_failover_attempts == 3
    assert config.breaker.failure_threshold == 5
    assert config.breaker.open_duration == 60.0
    assert config.admission.max_concurrent == 10
    assert config.cache.memory.enabled is True
    assert config.cache.persistent.enabled is False
    assert config.cache.remote.enabled is False
    assert config.cache_hit_accounting == CacheHitAccounting.NONE


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_empty_and_non_mapping_files(tmp_path: Path) -> None:
    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    with pytest.raises(ValueError, match="empty"):
        load_config(empty)

    listing = tmp_path / "list.yaml"
    listing.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError, match="mapping"):
        load_config(listing)


def test_malformed_yaml(tmp_path: Path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("providers: [unclosed", encoding="utf-8")
    with pytest.raises(yaml.YAMLError):
        load_config(path)


def test_duplicate_provider_ids_rejected() -> None:
    with pytest.raises(ValidationError, match="Duplicate provider ids"):
        GatewayConfig(providers=[ProviderConfig(id="a", kind="stub"), ProviderConfig(id="a", kind="stub")])


def test_unknown_fields_rejected() -> None:
    with pytest.raises(ValidationError):
        BudgetConfig.model_validate({"daily_limit": 1, "dialy_limit": 2})


def test_invalid_values_rejected() -> None:
    with pytest.raises(ValidationError):
        ProviderConfig(id="a", kind="stub", timeout=0)
    with pytest.raises(ValidationError):
        BudgetConfig(alert_threshold=1.5)


def test_api_key_hidden_from_repr() -> None:
    assert "sk-secret" not in repr(ProviderConfig(id="a", kind="openai", api_key="sk-secret"))


def test_backoff_delays() -> None:
    backoff = BackoffConfig(initial_delay=0.5, multiplier=2.0, max_delay=3.0)
    assert [backoff.delay_for(n) for n in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 3.0]
