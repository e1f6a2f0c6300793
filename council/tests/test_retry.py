from __future__ import annotations

from typing import List

import httpx
import pytest

from council.errors import BroadcastRejected, TransportError
from council.utils.retry import Idempotency, Retrier, RetryError, RetryPolicy, call_with_retry


class Flaky:
    def __init__(self, failures: int, exc: Exception) -> None:
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def __call__(self, value: str = "ok") -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return value


def test_backoff_grows_and_caps() -> None:
    pol = RetryPolicy(attempts=10, base_delay=0.5, multiplier=2.0, max_delay=3.0, jitter_fraction=0.0)
    assert [pol.backoff_seconds(i) for i in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]
    assert pol.with_jitter(2.0) == 2.0


def test_jitter_stays_in_band() -> None:
    pol = RetryPolicy(jitter_fraction=0.2)
    for _ in range(50):
        assert 0.8 <= pol.with_jitter(1.0) <= 1.2


def test_transient_errors_are_retried() -> None:
    fn = Flaky(2, TransportError("down"))
    sleeps: List[float] = []
    pol = RetryPolicy(attempts=5, base_delay=0.1, jitter_fraction=0.0)
    assert call_with_retry(fn, "hi", policy=pol, sleep=sleeps.append) == "hi"
    assert fn.calls == 3
    assert sleeps == [0.1, 0.2]


def test_httpx_transport_errors_are_transient() -> None:
    fn = Flaky(1, httpx.ConnectError("refused"))
    assert Retrier.immediate().call(fn) == "ok"
    assert fn.calls == 2


def test_exhaustion_raises_retry_error() -> None:
    fn = Flaky(10, TransportError("down"))
    with pytest.raises(RetryError) as ei:
        Retrier.immediate(attempts=3).call(fn, label="lookup")
    assert fn.calls == 3
    assert ei.value.attempts == 3
    assert isinstance(ei.value.last_exception, TransportError)
    assert isinstance(ei.value.__cause__, TransportError)


def test_non_idempotent_is_attempted_once() -> None:
    fn = Flaky(1, TransportError("down"))
    with pytest.raises(RetryError):
        Retrier.immediate(attempts=5).call(fn, idempotency=Idempotency.NON_IDEMPOTENT)
    assert fn.calls == 1


def test_domain_errors_propagate_immediately() -> None:
    fn = Flaky(1, BroadcastRejected(reason="double spend"))
    with pytest.raises(BroadcastRejected):
        Retrier.immediate(attempts=5).call(fn)
    assert fn.calls == 1


def test_on_retry_callback() -> None:
    fn = Flaky(2, TimeoutError())
    seen: List[int] = []
    Retrier.immediate().call(fn, on_retry=lambda attempt, exc, delay: seen.append(attempt))
    assert seen == [1, 2]
