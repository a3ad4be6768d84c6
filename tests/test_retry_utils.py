from pathlib import Path
import random
import sys

import pytest
import requests

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from retry_utils import RetryPolicy, base_retry_delay, compute_retry_delay, is_socket_error
from scheduler_errors import TransportError


def test_base_delays_grow_and_cap() -> None:
    socket = [base_retry_delay(n, socket_error=True) for n in range(1, 8)]
    other = [base_retry_delay(n, socket_error=False) for n in range(1, 8)]
    assert socket == [5, 10, 20, 40, 60, 60, 60]
    assert other == [1, 2, 4, 8, 10, 10, 10]
    assert all(s > o for s, o in zip(socket, other))


def test_compute_retry_delay_adds_bounded_jitter() -> None:
    rng = random.Random(11)
    for attempt in range(1, 6):
        base = base_retry_delay(attempt, socket_error=True)
        assert base <= compute_retry_delay(attempt, socket_error=True, rng=rng) <= base + 2


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (requests.ConnectionError("boom"), True),
        (requests.Timeout("slow"), True),
        (RuntimeError("socket hang up"), True),
        (RuntimeError("net::ERR_CONNECTION_RESET"), True),
        (TransportError("x", socket_error=True), True),
        (RuntimeError("HTTP 500"), False),
        (ValueError("bad json"), False),
    ],
)
def test_is_socket_error(exc: BaseException, expected: bool) -> None:
    assert is_socket_error(exc) is expected


def test_call_succeeds_after_transient_failures() -> None:
    attempts = []
    waits = []

    def operation() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise requests.HTTPError("502 from upstream")
        return "ok"

    policy = RetryPolicy(3, rng=random.Random(0))
    assert policy.call(operation, sleep=lambda s: waits.append(s)) == "ok"
    assert len(attempts) == 3
    assert len(waits) == 2
    assert 1 <= waits[0] <= 3


def test_call_exhaustion_reports_socket_class() -> None:
    waits = []

    def operation() -> None:
        raise requests.ConnectionError("connection reset by peer")

    with pytest.raises(TransportError) as info:
        RetryPolicy(3, rng=random.Random(0)).call(operation, description="GET days", sleep=waits.append)

    assert info.value.socket_error is True
    assert info.value.retries_exhausted is True
    assert info.value.attempts == 3
    assert len(waits) == 2
    assert waits[0] >= 5


def test_interrupted_sleep_stops_retrying() -> None:
    calls = []

    def operation() -> None:
        calls.append(1)
        raise requests.ConnectionError("refused")

    with pytest.raises(TransportError) as info:
        RetryPolicy(5).call(operation, sleep=lambda s: False)

    assert len(calls) == 1
    assert info.value.retries_exhausted is False


def test_non_transport_errors_propagate_immediately() -> None:
    calls = []

    def operation() -> None:
        calls.append(1)
        raise ValueError("not retryable")

    with pytest.raises(ValueError):
        RetryPolicy(3).call(operation, sleep=lambda s: True)
    assert len(calls) == 1
