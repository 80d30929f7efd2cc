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
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict

from coreason_gateway.models import BudgetScope, CircuitBreakerState


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    AUTH = "auth"
    SERVER_ERROR = "server_error"
    INVALID_REQUEST = "invalid_request"


RETRYABLE_KINDS = frozenset({ErrorKind.TIMEOUT, ErrorKind.RATE_LIMITED, ErrorKind.SERVER_ERROR})


class AttemptFailure(BaseModel):
    """One provider attempt that did not produce a response."""

    model_config = ConfigDict(frozen=True)

    provider: str
    model: Optional[str] = None
    reason: str
    kind: Optional[ErrorKind] = None  # None for circuit-open and backpressure skips
    retryable: bool = True


class GatewayError(Exception):
    """Base class for every error surfaced by the gateway."""

    def __init__(self, message: str, attempts: Optional[Sequence[AttemptFailure]] = None) -> None:
        super().__init__(message)
        self.attempts: List[AttemptFailure] = list(attempts or [])


class ProviderError(GatewayError):
    """
    A classified failure of a single adapter call.
    `retryable` decides whether the router fails over to the next candidate.
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        provider: str,
        retryable: Optional[bool] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.provider = provider
        self.retryable = kind in RETRYABLE_KINDS if retryable is None else retryable
        self.status_code = status_code

    def __str__(self) -> str:
        return f"[{self.provider}:{self.kind.value}] {self.args[0]}"


class CircuitOpenError(GatewayError):
    """Fail-fast rejection: no adapter call was attempted."""

    def __init__(
        self,
        message: str,
        states: Optional[Dict[str, CircuitBreakerState]] = None,
        attempts: Optional[Sequence[AttemptFailure]] = None,
    ) -> None:
        super().__init__(message, attempts)
        self.states: Dict[str, CircuitBreakerState] = dict(states or {})


class BackpressureError(GatewayError):
    """A provider is at its concurrency cap and its queue cannot take the request."""

    def __init__(self, message: str, provider: str) -> None:
        super().__init__(message)
        self.provider = provider


class BudgetExceededError(GatewayError):
    def __init__(
        self,
        message: str,
        scope: BudgetScope,
        limit: float,
        consumed: float,
        estimate: float,
        identifier: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.scope = scope
        self.limit = limit
        self.consumed = consumed
        self.estimate = estimate
        self.identifier = identifier


class CacheError(GatewayError):
    """Local failure of one cache layer. Absorbed by the CacheEngine."""

    def __init__(self, message: str, layer: str) -> None:
        super().__init__(message)
        self.layer = layer


class NoCapableProviderError(GatewayError, RuntimeError):
    """No enabled provider can serve the request's capabilities or model hint."""


class AllProvidersFailedError(GatewayError, RuntimeError):
    def __init__(
        self,
        message: str,
        attempts: Sequence[AttemptFailure],
        states: Optional[Dict[str, CircuitBreakerState]] = None,
    ) -> None:
        super().__init__(message, attempts)
        self.states: Dict[str, CircuitBreakerState] = dict(states or {})


def describe_attempts(attempts: Sequence[AttemptFailure]) -> str:
    if not attempts:
        return "no providers attempted"
    return "; ".join(f"{a.provider}: {a.reason}" for a in attempts)
