from typing import List

from coreason_gateway.events import EventEmitter, EventRecorder, EventType, GatewayEvent


def test_emit_delivers_in_subscription_order() -> None:
    seen: List[str] = []
    emitter = EventEmitter([lambda e: seen.append("first"), lambda e: seen.append("second")])

    event = emitter.emit(EventType.CACHE_MISS, request_id="r1", key="k")

    assert seen == ["first", "second"]
    assert event.type == EventType.CACHE_MISS
    assert event.payload == {"request_id": "r1", "key": "k"}


def test_failing_subscriber_does_not_break_delivery() -> None:
    recorder = EventRecorder()

    def broken(event: GatewayEvent) -> None:
        raise RuntimeError("dashboard offline")

    emitter = EventEmitter([broken, recorder])
    emitter.emit(EventType.FAILOVER, from_provider="a", to_provider="b")

    assert recorder.types() == [EventType.FAILOVER]


def test_subscribe_and_unsubscribe() -> None:
    recorder = EventRecorder()
    emitter = EventEmitter()
    emitter.subscribe(recorder)
    emitter.emit(EventType.REQUEST_STARTED)
    emitter.unsubscribe(recorder)
    emitter.unsubscribe(recorder)
    emitter.emit(EventType.REQUEST_COMPLETED)

    assert recorder.types() == [EventType.REQUEST_STARTED]
    assert len(recorder.of_type(EventType.REQUEST_STARTED)) == 1
