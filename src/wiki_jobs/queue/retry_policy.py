"""Retry policy applied when a claimed or running job fails."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(slots=True)
class RetryDecision:
    """Outcome of one failure evaluation."""

    retry: bool
    retries: int
    not_before: datetime | None = None


def decide_on_failure(
    *,
    retries: int,
    max_retries: int,
    now: datetime,
    backoff_seconds: float = 0.0,
    backoff_max_seconds: float = 900.0,
) -> RetryDecision:
    """Return to pending with one more retry, or fail terminally at the ceiling.

    ``retries`` is never incremented past ``max_retries``: the failure that finds the
    counter already at the ceiling is terminal and leaves it unchanged.
    """

    if retries >= max_retries:
        return RetryDecision(retry=False, retries=retries)

    next_retries = retries + 1
    delay = compute_backoff_delay(
        retry_number=next_retries,
        base_seconds=backoff_seconds,
        max_seconds=backoff_max_seconds,
    )
    not_before = now + timedelta(seconds=delay) if delay > 0 else None
    return RetryDecision(retry=True, retries=next_retries, not_before=not_before)


def compute_backoff_delay(*, retry_number: int, base_seconds: float, max_seconds: float) -> float:
    """Exponential delay before retry ``retry_number`` becomes claimable again."""

    if base_seconds <= 0:
        return 0.0
    return min(max_seconds, base_seconds * (2 ** max(retry_number - 1, 0)))
