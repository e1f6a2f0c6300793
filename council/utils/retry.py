"""
Retry-with-backoff for every collaborator boundary.

One generic helper wraps discovery lookups, channel sends/fetches, staging
uploads and broadcast submission. Each call site declares whether the
operation is idempotent:

- IDEMPOTENT      : retried with exponential backoff on transient errors
- NON_IDEMPOTENT  : attempted exactly once (broadcast submission)

Only transient failures are retried (TransportError, OSError, TimeoutError
and httpx transport errors). Anything else propagates immediately. When the
attempt budget is exhausted a RetryError is raised; callers map it onto
their own domain error (DiscoveryError, ChannelError, ...).

Example
-------
    from council.utils.retry import Retrier, RetryPolicy, Idempotency

    retry = Retrier(RetryPolicy(attempts=4, base_delay=0.2))
    tokens = retry.call(resolver.children, anchor_id, label="discovery.children")
    retry.call(broadcaster.broadcast, raw_hex, idempotency=Idempotency.NON_IDEMPOTENT)
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

import httpx

from ..errors import TransportError

__all__ = [
    "Idempotency",
    "RetryError",
    "RetryPolicy",
    "Retrier",
    "TRANSIENT_ERRORS",
    "call_with_retry",
    "is_transient",
]

log = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (
    TransportError,
    httpx.TransportError,
    TimeoutError,
    OSError,
)


class Idempotency(Enum):
    IDEMPOTENT = "idempotent"
    NON_IDEMPOTENT = "non_idempotent"


class RetryError(RuntimeError):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, last_exception: BaseException, attempts: int, label: Optional[str] = None) -> None:
        where = f"{label}: " if label else ""
        super().__init__(f"{where}exhausted after {attempts} attempts: {last_exception!r}")
        self.last_exception = last_exception
        self.attempts = attempts
        self.label = label


@dataclass(frozen=True)
class RetryPolicy:
    """
    Backoff policy parameters.

    attempts: Total attempts (first try included) for idempotent calls.
    base_delay: Delay before the first retry.
    multiplier: Exponential scale factor per attempt.
    max_delay: Upper bound for a single delay.
    jitter_fraction: +/- fraction applied as random jitter.
    """

    attempts: int = 5
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter_fraction: float = 0.2

    def backoff_seconds(self, attempt: int) -> float:
        """
        Delay after the given failed attempt (1-based).
        attempt = 1 → base_delay
        """
        a = max(1, int(attempt))
        raw = self.base_delay * (self.multiplier ** (a - 1))
        return float(min(self.max_delay, raw))

    def with_jitter(self, seconds: float) -> float:
        jf = self.jitter_fraction
        if jf <= 0:
            return seconds
        jitter = seconds * jf * (2.0 * random.random() - 1.0)
        return max(0.0, seconds + jitter)


def is_transient(exc: BaseException, retry_on: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS) -> bool:
    return isinstance(exc, retry_on)


def call_with_retry(
    fn: Callable[..., T],
    *args: Any,
    policy: Optional[RetryPolicy] = None,
    idempotency: Idempotency = Idempotency.IDEMPOTENT,
    retry_on: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    label: Optional[str] = None,
    **kwargs: Any,
) -> T:
    """
    Call `fn(*args, **kwargs)` and return its first successful result.

    Non-transient exceptions propagate unchanged. Transient ones are retried
    up to `policy.attempts` total attempts (1 for NON_IDEMPOTENT), after which
    RetryError is raised with the last exception chained.
    """
    pol = policy or RetryPolicy()
    max_attempts = 1 if idempotency is Idempotency.NON_IDEMPOTENT else max(1, pol.attempts)
    name = label or getattr(fn, "__qualname__", repr(fn))

    attempt = 0
    while True:
        attempt += 1
        try:
            return fn(*args, **kwargs)
        except retry_on as exc:
            if attempt >= max_attempts:
                log.warning("retry: %s gave up after %d attempt(s): %s", name, attempt, exc)
                raise RetryError(exc, attempts=attempt, label=name) from exc
            delay = pol.with_jitter(pol.backoff_seconds(attempt))
            log.info(
                "retry: %s failed (attempt %d/%d), sleeping %.2fs: %s",
                name,
                attempt,
                max_attempts,
                delay,
                exc,
            )
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            sleep(delay)


class Retrier:
    """
    A RetryPolicy bound to a sleep function, so components can take a single
    injectable collaborator (tests pass `sleep=lambda s: None`).
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        retry_on: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.sleep = sleep
        self.retry_on = retry_on

    def call(
        self,
        fn: Callable[..., T],
        *args: Any,
        idempotency: Idempotency = Idempotency.IDEMPOTENT,
        label: Optional[str] = None,
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
        **kwargs: Any,
    ) -> T:
        return call_with_retry(
            fn,
            *args,
            policy=self.policy,
            idempotency=idempotency,
            retry_on=self.retry_on,
            sleep=self.sleep,
            on_retry=on_retry,
            label=label,
            **kwargs,
        )

    @classmethod
    def immediate(cls, attempts: int = 3) -> "Retrier":
        """No-delay retrier, handy for tests and local runs."""
        return cls(RetryPolicy(attempts=attempts, base_delay=0.0, jitter_fraction=0.0), sleep=lambda _s: None)
