from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable

from payrecon.utils.clock import Clock

from .base import AccessToken

logger = logging.getLogger(__name__)


class TokenCache:
    """In-memory access-token holder for one provider.

    The token is fetched lazily, refreshed ``refresh_margin`` before its
    declared expiry, and dropped on ``invalidate``. Concurrent callers share a
    single in-flight refresh.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[AccessToken]],
        clock: Clock,
        refresh_margin: timedelta = timedelta(seconds=60),
        provider: str | None = None,
    ):
        self._fetch = fetch
        self._clock = clock
        self._refresh_margin = refresh_margin
        self._provider = provider
        self._token: AccessToken | None = None
        self._lock = asyncio.Lock()

    def _is_fresh(self, token: AccessToken | None) -> bool:
        if token is None:
            return False
        if token.expires_at is None:
            return True
        return self._clock.now() < token.expires_at - self._refresh_margin

    @property
    def current(self) -> AccessToken | None:
        return self._token

    async def get(self) -> AccessToken:
        token = self._token
        if self._is_fresh(token):
            return token  # type: ignore[return-value]
        async with self._lock:
            token = self._token
            if self._is_fresh(token):
                return token  # type: ignore[return-value]
            token = await self._fetch()
            self._token = token
            logger.info(
                "access token refreshed",
                extra={"provider": self._provider, "event": "token_refresh"},
            )
            return token

    def invalidate(self, stale: AccessToken | None = None) -> None:
        """Drop the cached token; with ``stale`` only if it is still the cached one."""
        if stale is None or self._token is stale:
            self._token = None
