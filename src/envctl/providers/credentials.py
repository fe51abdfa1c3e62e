"""Short-lived bearer credential cache for the compute provider.

The provider issues password-grant tokens with an ``expires_in`` lifetime.
``BearerTokenCache`` hands out the cached token until it is within
``refresh_margin_seconds`` of expiry, then refreshes it. Concurrent callers
that find the token stale share a single refresh.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN_SECONDS = 300.0


@dataclass(frozen=True, slots=True)
class IssuedToken:
    access_token: str
    expires_in: float
    """Lifetime in seconds as reported by the token endpoint."""


TokenFetcher = Callable[[], Awaitable[IssuedToken]]


class BearerTokenCache:
    """Single-flight cache around a token fetcher.

    Args:
        fetch: Coroutine performing the credential exchange.
        refresh_margin_seconds: Refresh this long before the reported expiry.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        fetch: TokenFetcher,
        *,
        refresh_margin_seconds: float = DEFAULT_REFRESH_MARGIN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self._margin = float(refresh_margin_seconds)
        self._clock = clock
        self._token: str | None = None
        self._refresh_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def is_fresh(self) -> bool:
        return self._token is not None and self._clock() < self._refresh_at

    def invalidate(self) -> None:
        self._token = None
        self._refresh_at = 0.0

    async def get(self) -> str:
        if self.is_fresh:
            return self._token  # type: ignore[return-value]
        async with self._lock:
            # Another caller may have refreshed while we waited.
            if self.is_fresh:
                return self._token  # type: ignore[return-value]
            issued = await self._fetch()
            self._token = issued.access_token
            self._refresh_at = self._clock() + max(issued.expires_in - self._margin, 0.0)
            logger.info("Compute credential refreshed (valid for %.0fs)", issued.expires_in)
            return self._token
