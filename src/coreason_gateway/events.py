# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_gateway

import threading
import time
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from coreason_gateway.interfaces import EventSubscriber
from coreason_gateway.utils.logger import logger


class EventType(str, Enum):
    REQUEST_STARTED = "request-started"
    REQUEST_COMPLETED = "request-completed"
    REQUEST_FAILED = "request-failed"
    ROUTING_DECISION = "routing-decision"
    FAILOVER = "failover"
    CACHE_HIT = "cache-hit"
    CACHE_MISS = "cache-miss"
    BREAKER_OPENED = "breaker-opened"
    BREAKER_HALF_OPEN = "breaker-half-open"
    BREAKER_CLOSED = "breaker-closed"
    BUDGET_WARNING = "budget-warning"
    BUDGET_EXCEEDED = "budget-exceeded"
    HEALTH_CHECKED = "health-checked"
    HEALTH_CHECK_FAILED = "health-check-failed"


class GatewayEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: EventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)


class EventEmitter:
    """
    Delivers gateway events to an explicitly injected list of subscribers.
    Delivery is synchronous and in subscription order. A failing subscriber is
    logged and skipped so observability can never break a request.
    """

    def __init__(self, subscribers: Optional[Iterable[EventSubscriber]] = None) -> None:
        self._lock = threading.Lock()
        self._subscribers: List[EventSubscriber] = list(subscribers or [])

    def subscribe(self, subscriber: EventSubscriber) -> None:
        with self._lock:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: EventSubscriber) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    def emit(self, event_type: EventType, **payload: Any) -> GatewayEvent:
        event = GatewayEvent(type=event_type, payload=payload)
        with self._lock:
            subscribers = list(self._subscribers)

        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception as e:
                logger.error(f"Event subscriber failed on {event_type.value}: {e}")
        return event


class EventRecorder:
    """Subscriber that keeps every event in memory. Handy for dashboards and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: List[GatewayEvent] = []

    def __call__(self, event: GatewayEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: EventType) -> List[GatewayEvent]:
        with self._lock:
            return [e for e in self.events if e.type == event_type]

    def types(self) -> List[EventType]:
        with self._lock:
            return [e.type for e in self.events]
