"""Retry / dead-letter policy for failed deliveries.

The policy is a pure function of the delivery's retry counter and the
configured ceiling:

- ``retry_count < max_retries`` -> ``REQUEUE`` (after an optional delay)
- otherwise                     -> ``DEAD_LETTER``

A processing callable that always fails is therefore requeued exactly
``max_retries`` times and dead-lettered on the following attempt.

The broker redelivers a requeued message immediately. When a backoff is
configured the consumer sleeps before requeueing; because prefetch bounds
the number of in-flight deliveries, the sleep throttles the whole consumer,
which is the intended backpressure.

Examples
--------
>>> policy = RetryPolicy(max_retries=3)
>>> [policy.decide(n).action for n in range(5)]
['requeue', 'requeue', 'requeue', 'dead_letter', 'dead_letter']

>>> next_delay_ms(5, [100, 200, 400])  # clamped to last
400
"""
from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Sequence

from marketing_mq.config import Settings
from marketing_mq.constants import HEADER_RETRY_COUNT


ACTION_REQUEUE = "requeue"
ACTION_DEAD_LETTER = "dead_letter"


def next_delay_ms(retry_count: int, delays: Sequence[int] | None = None, jitter: float = 0.0) -> int:
    """Return the backoff delay in milliseconds before requeueing.

    ``retry_count`` is zero-based (the first retry has ``retry_count == 0``).
    Falls back to the last provided delay if ``retry_count`` exceeds bounds;
    an empty or missing sequence means no delay.

    Examples
    --------
    >>> next_delay_ms(1, [100, 200, 400])
    200
    >>> next_delay_ms(0, [])
    0
    """
    if not delays:
        return 0
    idx = max(min(retry_count, len(delays) - 1), 0)
    base = delays[idx]
    # Add small jitter (+/- jitter%) to avoid thundering herd
    if jitter <= 0:
        return int(base)
    delta = base * jitter
    return max(int(random.uniform(base - delta, base + delta)), 0)


def _as_int(value: Any) -> int:
    if isinstance(value, bytes):
        value = value.decode("ascii", errors="ignore")
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0


def retry_count_from_headers(headers: Optional[Mapping[str, Any]]) -> int:
    """Return how many times a delivery has already been retried.

    Only our ``x-retry-count`` header counts. The quorum-queue
    ``x-delivery-count`` is ignored: it also grows on crash redeliveries,
    which must not use up the retry budget. Missing or malformed values
    count as zero.
    """
    if not headers:
        return 0
    return _as_int(headers.get(HEADER_RETRY_COUNT))


@dataclass(frozen=True)
class RetryDecision:
    """Decision computed for a failed delivery.

    Attributes
    ----------
    action: str
        ``"requeue"`` or ``"dead_letter"``.
    delay_ms: int
        Delay to wait before requeueing (0 for dead-letter decisions).
    next_retry_count: int
        Value of ``x-retry-count`` to publish with the requeued copy.
    max_retries: int
        Ceiling the decision was made against.
    """
    action: str
    delay_ms: int
    next_retry_count: int
    max_retries: int

    @property
    def should_retry(self) -> bool:
        return self.action == ACTION_REQUEUE


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retries followed by dead-lettering.

    Attributes
    ----------
    max_retries: int
        Number of requeues allowed before the delivery is dead-lettered.
    delays_ms: list[int]
        Optional backoff sequence applied before each requeue.
    jitter: float
        Jitter fraction (0.1 = +/-10%) applied to the delay.

    Examples
    --------
    >>> RetryPolicy(max_retries=1).decide(0)
    RetryDecision(action='requeue', delay_ms=0, next_retry_count=1, max_retries=1)
    """
    max_retries: int = 3
    delays_ms: List[int] = field(default_factory=list)
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            delays_ms=list(settings.retry_delays_ms),
            jitter=settings.retry_jitter,
        )

    def decide(self, retry_count: int) -> RetryDecision:
        retry_count = max(int(retry_count), 0)
        if retry_count >= self.max_retries:
            return RetryDecision(
                action=ACTION_DEAD_LETTER,
                delay_ms=0,
                next_retry_count=retry_count,
                max_retries=self.max_retries,
            )
        return RetryDecision(
            action=ACTION_REQUEUE,
            delay_ms=next_delay_ms(retry_count, self.delays_ms, self.jitter),
            next_retry_count=retry_count + 1,
            max_retries=self.max_retries,
        )
