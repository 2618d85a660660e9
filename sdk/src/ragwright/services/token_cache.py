from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Final

logger = logging.getLogger(__name__)

# Tokens are refreshed this many seconds before they actually expire.
EXPIRY_SLOP_S: Final[float] = 120.0


@dataclass(frozen=True)
class AccessToken:
    token: str
    expires_on: float


TokenRefresher = Callable[[], Awaitable[AccessToken]]


class TokenCache:
    """Process-wide bearer token cache with single-flight refresh.

    Concurrent callers that find no valid token for a key share one in-flight
    refresh instead of each starting their own.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._tokens: dict[str, AccessToken] = {}
        self._refreshing: dict[str, asyncio.Task[AccessToken]] = {}

    def _is_fresh(self, token: AccessToken | None) -> bool:
        return token is not None and token.expires_on - EXPIRY_SLOP_S > self._clock()

    async def get_token(self, cache_key: str, refresher: TokenRefresher) -> str:
        cached = self._tokens.get(cache_key)
        if self._is_fresh(cached):
            assert cached is not None
            return cached.token

        task = self._refreshing.get(cache_key)
        if task is None:
            task = asyncio.ensure_future(self._refresh(cache_key, refresher))
            self._refreshing[cache_key] = task

        # A cancelled waiter must not cancel the refresh other callers share.
        token = await asyncio.shield(task)
        return token.token

    async def _refresh(self, cache_key: str, refresher: TokenRefresher) -> AccessToken:
        try:
            token = await refresher()
            self._tokens[cache_key] = token
            return token
        except Exception:
            logger.warning("Token refresh failed for cache key %s", cache_key)
            raise
        finally:
            self._refreshing.pop(cache_key, None)

    async def authorization_headers(
        self,
        *,
        cache_key: str,
        refresher: TokenRefresher | None = None,
        api_key: str | None = None,
        api_key_header: str = "api-key",
    ) -> dict[str, str]:
        if api_key:
            return {api_key_header: api_key}
        if refresher is None:
            raise ValueError("Either api_key or refresher is required for authorization")
        token = await self.get_token(cache_key, refresher)
        return {"Authorization": f"Bearer {token}"}

    def invalidate(self, cache_key: str | None = None) -> None:
        if cache_key is None:
            self._tokens.clear()
            return
        self._tokens.pop(cache_key, None)
