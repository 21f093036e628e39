"""Quota tracking for the Discogs API (60 authenticated requests per minute)."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Mapping, Protocol

logger = logging.getLogger(__name__)

RATE_LIMIT_AUTHENTICATED = 60
RATE_LIMIT_WINDOW_MS = 60_000
LOW_WATERMARK = 5

REMAINING_HEADER = "X-Discogs-Ratelimit-Remaining"
LIMIT_HEADER = "X-Discogs-Ratelimit"

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class RateLimitState:
    remaining: int = RATE_LIMIT_AUTHENTICATED
    limit: int = RATE_LIMIT_AUTHENTICATED


class RateLimiter(Protocol):
    """Capability consulted before and after every provider call.

    A multi-instance deployment can back this with a shared counter.
    """

    async def acquire(self) -> None: ...

    def on_response(self, headers: Mapping[str, str]) -> None: ...

    @property
    def state(self) -> RateLimitState: ...


class LocalRateLimiter:
    """Process-local limiter fed by the provider's quota headers."""

    def __init__(self, *, sleep: SleepFunc = asyncio.sleep):
        self._state = RateLimitState()
        self._sleep = sleep

    @property
    def state(self) -> RateLimitState:
        return replace(self._state)

    def wait_seconds(self) -> float:
        """Seconds to pause before the next call, zero while quota is healthy."""

        if self._state.remaining > LOW_WATERMARK:
            return 0.0
        limit = max(self._state.limit, 1)
        return math.ceil(RATE_LIMIT_WINDOW_MS / limit) / 1000

    async def acquire(self) -> None:
        delay = self.wait_seconds()
        if delay <= 0:
            return
        logger.info(
            "Discogs rate limit low (%s remaining). Waiting %.0fms.",
            self._state.remaining,
            delay * 1000,
        )
        await self._sleep(delay)

    def on_response(self, headers: Mapping[str, str]) -> None:
        remaining = _header_int(headers, REMAINING_HEADER)
        limit = _header_int(headers, LIMIT_HEADER)
        if remaining is not None:
            self._state.remaining = remaining
        if limit is not None and limit > 0:
            self._state.limit = limit


def _header_int(headers: Mapping[str, str], name: str) -> int | None:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
