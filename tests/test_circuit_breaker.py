from unittest.mock import patch

import pytest

from coreason_gateway.circuit_breaker import CircuitBreaker
from coreason_gateway.config import BreakerConfig
from coreason_gateway.events import EventEmitter, EventRecorder, EventType
from coreason_gateway.models import CircuitState


@pytest.fixture
def breaker(recorder: EventRecorder) -> CircuitBreaker:
    config = BreakerConfig(failure_threshold=3, open_duration=30.0, half_open_probe_limit=1)
    return CircuitBreaker("azure", config, EventEmitter([recorder]))


def _fail(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        permit = breaker.try_acquire()
        assert permit is not None
        breaker.record_failure(permit)


def test_initial_state(breaker: CircuitBreaker) -> None:
    assert breaker.state == CircuitState.CLOSED
    assert breaker.is_available() is True
    assert breaker.snapshot().consecutive_failures == 0


def test_trips_at_threshold(breaker: CircuitBreaker, recorder: EventRecorder) -> None:
    _fail(breaker, 2)
    assert breaker.state == CircuitState.CLOSED

    _fail(breaker, 1)
    assert breaker.state == CircuitState.OPEN
    assert breaker.is_available() is False
    assert breaker.try_acquire() is None
    assert breaker.trips == 1

    opened = recorder.of_type(EventType.BREAKER_OPENED)
    assert len(opened) == 1
    assert opened[0].payload["provider"] == "azure"
    assert opened[0].payload["failures"] == 3


def test_success_resets_consecutive_failures(breaker: CircuitBreaker) -> None:
    _fail(breaker, 2)
    permit = breaker.try_acquire()
    assert permit is not None
    breaker.record_success(permit)
    assert breaker.snapshot().consecutive_failures == 0

    _fail(breaker, 2)
    assert breaker.state == CircuitState.CLOSED


def test_open_duration_moves_to_half_open(breaker: CircuitBreaker, recorder: EventRecorder) -> None:
    with patch("time.time") as mock_time:
        mock_time.return_value = 1000.0
        _fail(breaker, 3)
        assert breaker.snapshot().opened_at == 1000.0

        mock_time.return_value = 1029.0
        assert breaker.is_available() is False
        assert breaker.try_acquire() is None

        mock_time.return_value = 1030.0
        assert breaker.is_available() is True
        permit = breaker.try_acquire()
        assert permit is not None
        assert permit.probe is True
        assert breaker.state == CircuitState.HALF_OPEN

    assert EventType.BREAKER_HALF_OPEN in recorder.types()


def test_probe_limit_rejects_extra_requests(breaker: CircuitBreaker) -> None:
    with patch("time.time") as mock_time:
        mock_time.return_value = 1000.0
        _fail(breaker, 3)
        mock_time.return_value = 1100.0

        probe = breaker.try_acquire()
        assert probe is not None
        # Probe limit is 1: the next request is rejected as if open.
        assert breaker.try_acquire() is None
        assert breaker.is_available() is False

        breaker.release(probe)
        assert breaker.try_acquire() is not None


def test_probe_success_closes_and_resets(breaker: CircuitBreaker, recorder: EventRecorder) -> None:
    with patch("time.time") as mock_time:
        mock_time.return_value = 1000.0
        _fail(breaker, 3)
        mock_time.return_value = 1100.0

        probe = breaker.try_acquire()
        assert probe is not None
        breaker.record_success(probe)

    snapshot = breaker.snapshot()
    assert snapshot.state == CircuitState.CLOSED
    assert snapshot.consecutive_failures == 0
    assert snapshot.consecutive_successes == 0
    assert snapshot.opened_at is None
    assert EventType.BREAKER_CLOSED in recorder.types()


def test_probe_failure_reopens_with_new_open_time(breaker: CircuitBreaker) -> None:
    with patch("time.time") as mock_time:
        mock_time.return_value = 1000.0
        _fail(breaker, 3)

        mock_time.return_value = 1100.0
        probe = breaker.try_acquire()
        assert probe is not None
        breaker.record_failure(probe)

        assert breaker.state == CircuitState.OPEN
        assert breaker.snapshot().opened_at == 1100.0
        assert breaker.trips == 2

        mock_time.return_value = 1129.0
        assert breaker.try_acquire() is None


def test_stale_permit_is_ignored(breaker: CircuitBreaker) -> None:
    # A call admitted while closed finishes after the circuit opened.
    late = breaker.try_acquire()
    assert late is not None
    _fail(breaker, 3)
    assert breaker.state == CircuitState.OPEN

    breaker.record_success(late)
    assert breaker.state == CircuitState.OPEN


def test_multiple_probes_allowed() -> None:
    breaker = CircuitBreaker("aws", BreakerConfig(failure_threshold=1, open_duration=1.0, half_open_probe_limit=2))
    with patch("time.time") as mock_time:
        mock_time.return_value = 0.0
        _fail(breaker, 1)
        mock_time.return_value = 5.0

        first = breaker.try_acquire()
        second = breaker.try_acquire()
        assert first is not None and second is not None
        assert breaker.try_acquire() is None
        assert breaker.snapshot().half_open_probes == 2


def test_manual_reset(breaker: CircuitBreaker) -> None:
    _fail(breaker, 3)
    breaker.reset()
    assert breaker.state == CircuitState.CLOSED
    assert breaker.try_acquire() is not None


def test_disabled_breaker_never_opens() -> None:
    breaker = CircuitBreaker("gcp", BreakerConfig(enabled=False, failure_threshold=1))
    _fail(breaker, 10)
    assert breaker.state == CircuitState.CLOSED
    assert breaker.is_available() is True
