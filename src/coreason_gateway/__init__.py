# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_gateway

from coreason_gateway.config import GatewayConfig, load_config
from coreason_gateway.engine import Gateway
from coreason_gateway.errors import (
    AllProvidersFailedError,
    BackpressureError,
    BudgetExceededError,
    CacheError,
    CircuitOpenError,
    GatewayError,
    NoCapableProviderError,
    ProviderError,
)
from coreason_gateway.events import EventRecorder, EventType, GatewayEvent
from coreason_gateway.models import GatewayRequest, GatewayResponse, RequestOptions, StreamDelta
from coreason_gateway.smart_client import SmartClient

__version__ = "0.1.0"

__all__ = [
    "AllProvidersFailedError",
    "BackpressureError",
    "BudgetExceededError",
    "CacheError",
    "CircuitOpenError",
    "EventRecorder",
    "EventType",
    "Gateway",
    "GatewayConfig",
    "GatewayError",
    "GatewayEvent",
    "GatewayRequest",
    "GatewayResponse",
    "NoCapableProviderError",
    "ProviderError",
    "RequestOptions",
    "SmartClient",
    "StreamDelta",
    "load_config",
]
