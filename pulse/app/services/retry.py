from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Callable

import httpx


RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
# Virtualization manager answers 596 when a cluster peer is temporarily unreachable
PVE_TEMPORARY_STATUS = 596


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """How a client retries a failed request.

    ``max_attempts`` counts retries after the initial request.
    ``delay`` maps the 1-based retry number to seconds to wait.
    """

    max_attempts: int
    is_retryable: Callable[[Exception], bool]
    delay: Callable[[int], float]


def is_network_error(error: Exception) -> bool:
    return isinstance(error, httpx.TransportError)


def is_retryable_status(error: Exception) -> bool:
    if not isinstance(error, httpx.HTTPStatusError):
        return False
    return error.response.status_code in RETRYABLE_STATUS_CODES


def is_pve_retryable(error: Exception) -> bool:
    if is_network_error(error) or is_retryable_status(error):
        return True
    return isinstance(error, httpx.HTTPStatusError) and error.response.status_code == PVE_TEMPORARY_STATUS


def is_pbs_retryable(error: Exception) -> bool:
    return is_network_error(error) or is_retryable_status(error)


def exponential_delay(base_seconds: float) -> Callable[[int], float]:
    """Return ``base * 2**attempt`` plus up to 20% jitter."""

    def _delay(attempt: int) -> float:
        delay = base_seconds * (2 ** max(0, attempt))
        return delay + delay * 0.2 * random.random()

    return _delay


def no_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=0, is_retryable=lambda _: False, delay=lambda _: 0.0)
