"""Retry policy, endpoint rotation and RPC error classification.

Nothing in this module touches the network. :class:`RetryPolicy` computes
backoff delays; :class:`EndpointRotator` hands out endpoint URLs in
round-robin order and remembers which ones are cooling down after
rate-limiting or transient upstream failures.
"""

from __future__ import annotations

import itertools
import logging
import random
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Exponent cap keeps 2**attempt from overflowing into absurd delays.
_MAX_BACKOFF_EXPONENT = 20

_RATE_LIMIT_MARKERS = (
    "429",
    "too many requests",
    "rate limit",
    "limit exceeded",
    "request limit",
    "-32005",
)
_TRANSIENT_MARKERS = (
    "temporary internal error",
    "please retry",
    "timeout",
    "timed out",
    "502",
    "503",
    "504",
    "code:19",
    "code: 19",
    "code:30",
    "code: 30",
)
_RANGE_TOO_WIDE_MARKERS = (
    "-32701",
    "specify an address",
    "query returned more than",
    "too many results",
    "block range is too wide",
    "exceed maximum block range",
    "log response size exceeded",
)


class RpcError(Exception):
    """Base exception for RPC failures."""


class RateLimitError(RpcError):
    """Raised when an endpoint rejects a call for exceeding its rate limit."""


class BlockRangeTooWideError(RpcError):
    """Raised when a log query spans more blocks or results than the provider allows."""


class RpcShutdownError(RpcError):
    """Raised when a retry loop is aborted because the client is shutting down."""


class RetryError(RpcError):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: Exception | None = None) -> None:
        super().__init__(message)
        self.last_exception = last_exception


def _error_text(error: BaseException | str) -> str:
    return str(error).lower()


def is_rate_limited(error: BaseException | str) -> bool:
    """True when the error text indicates provider rate-limiting."""
    if isinstance(error, RateLimitError):
        return True
    text = _error_text(error)
    return any(marker in text for marker in _RATE_LIMIT_MARKERS)


def is_transient(error: BaseException | str) -> bool:
    """True for upstream failures worth retrying on a different endpoint."""
    text = _error_text(error)
    return any(marker in text for marker in _TRANSIENT_MARKERS)


def is_range_too_wide(error: BaseException | str) -> bool:
    """True when a log query must be split into smaller block ranges."""
    if isinstance(error, BlockRangeTooWideError):
        return True
    text = _error_text(error)
    return any(marker in text for marker in _RANGE_TOO_WIDE_MARKERS)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with symmetric jitter.

    Attributes:
        base_delay_seconds: Delay before the first retry.
        jitter_factor: Relative jitter; 0.2 spreads each delay over +/-20%.
        max_attempts: Upper bound on attempts per call.
    """

    base_delay_seconds: float = 1.0
    jitter_factor: float = 0.2
    max_attempts: int = 5

    def __post_init__(self) -> None:
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError("jitter_factor must be within [0, 1]")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def default(cls) -> RetryPolicy:
        return cls()

    @classmethod
    def from_settings(cls, base_delay_ms: int, jitter_factor: float, max_attempts: int) -> RetryPolicy:
        return cls(
            base_delay_seconds=base_delay_ms / 1000.0,
            jitter_factor=jitter_factor,
            max_attempts=max_attempts,
        )

    def delay_seconds(self, attempt: int, *, rng: random.Random | None = None) -> float:
        """Backoff before retry number ``attempt`` (0-based).

        Returns ``base * 2**attempt`` scaled by a random factor in
        ``[1 - jitter, 1 + jitter]``, never negative.
        """
        exponent = min(max(attempt, 0), _MAX_BACKOFF_EXPONENT)
        delay = self.base_delay_seconds * (2**exponent)
        if self.jitter_factor > 0 and delay > 0:
            uniform = (rng or random).uniform(-1.0, 1.0)
            delay *= 1.0 + uniform * self.jitter_factor
        return max(0.0, delay)


class EndpointRotator:
    """Round-robin endpoint selection with per-endpoint cooldown.

    The rotation cursor is an ``itertools.count``; advancing it is a single
    C-level call, so concurrent tasks and threads never observe the same
    cursor value twice.

    Example:
        ```python
        rotator = EndpointRotator(["https://a", "https://b"])
        rotator.next_endpoint()  # https://a
        rotator.cool_down("https://b", 60.0, reason="rate limited")
        rotator.next_available_endpoint()  # https://a
        ```
    """

    def __init__(
        self,
        endpoints: Sequence[str],
        policy: RetryPolicy | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not endpoints:
            raise ValueError("EndpointRotator requires at least one endpoint")
        self._endpoints = tuple(endpoints)
        self.policy = policy or RetryPolicy.default()
        self._clock = clock
        self._cursor = itertools.count()
        self._cooldown_until: dict[str, float] = {}

    @property
    def endpoints(self) -> tuple[str, ...]:
        return self._endpoints

    def __len__(self) -> int:
        return len(self._endpoints)

    def next_endpoint(self) -> str:
        """Next endpoint in round-robin order, ignoring cooldowns."""
        return self._endpoints[next(self._cursor) % len(self._endpoints)]

    def cool_down(self, endpoint: str, seconds: float, *, reason: str = "") -> None:
        """Skip ``endpoint`` for ``seconds`` in :meth:`next_available_endpoint`."""
        if endpoint not in self._endpoints:
            return
        until = self._clock() + max(0.0, seconds)
        # Never shorten an existing cooldown.
        if until > self._cooldown_until.get(endpoint, 0.0):
            self._cooldown_until[endpoint] = until
        logger.info("Cooling down RPC endpoint for %.0fs (%s)", seconds, reason or "unspecified")

    def is_cooling_down(self, endpoint: str) -> bool:
        until = self._cooldown_until.get(endpoint)
        if until is None:
            return False
        if self._clock() >= until:
            self._cooldown_until.pop(endpoint, None)
            return False
        return True

    def next_available_endpoint(self) -> str:
        """Next endpoint not in cooldown.

        Tries each endpoint at most once; when all are cooling down, falls
        back to plain round-robin so callers always get an endpoint.
        """
        for _ in range(len(self._endpoints)):
            candidate = self.next_endpoint()
            if not self.is_cooling_down(candidate):
                return candidate
        return self.next_endpoint()
