"""
Bearer token lease for the Daraja OAuth endpoint.

One instance is owned by each DarajaClient. Refresh is single-flight: concurrent
callers that find the lease expired queue on a lock, and all but the first find a
fresh token when they get in.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 3599
SAFETY_MARGIN_SECONDS = 60

TokenFetcher = Callable[[], Awaitable[Tuple[str, int]]]


class AccessTokenCache:
    def __init__(
        self,
        fetch: TokenFetcher,
        *,
        clock: Callable[[], float] = time.monotonic,
        safety_margin: float = SAFETY_MARGIN_SECONDS,
    ) -> None:
        self._fetch = fetch
        self._clock = clock
        self._safety_margin = safety_margin
        self._token: Optional[str] = None
        self._expires_at: float = 0.0
        self._lock = asyncio.Lock()

    @property
    def is_valid(self) -> bool:
        return self._token is not None and self._clock() < self._expires_at

    async def get_token(self) -> str:
        if self.is_valid:
            return self._token

        async with self._lock:
            # Another task may have refreshed while we waited.
            if self.is_valid:
                return self._token

            token, lease_seconds = await self._fetch()
            self._token = token
            self._expires_at = self._clock() + lease_seconds - self._safety_margin
            logger.info("[Daraja] Obtained access token (lease=%ss)", lease_seconds)
            return token

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0
