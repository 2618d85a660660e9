from __future__ import annotations

import hashlib
from typing import Any, Final, Protocol

import httpx

from ragwright.errors import RagwrightConfigurationError, WebSearchError
from ragwright.retrieval.types import now_iso
from ragwright.schemas.rag_chat import WebResult

GOOGLE_SEARCH_URL: Final[str] = "https://customsearch.googleapis.com/customsearch/v1"
# The Custom Search API returns at most ten items per page.
_MAX_PAGE_SIZE = 10


class WebSearchBackend(Protocol):
    async def search(self, query: str, count: int) -> list[WebResult]: ...


def _result_id(url: str) -> str:
    return "web_" + hashlib.sha1(url.encode("utf-8")).hexdigest()[:16]


class GoogleWebSearch:
    """Web search through the Google Custom Search JSON API."""

    def __init__(
        self,
        *,
        api_key: str,
        engine_id: str,
        timeout_s: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
        base_url: str = GOOGLE_SEARCH_URL,
    ) -> None:
        if not api_key.strip() or not engine_id.strip():
            raise RagwrightConfigurationError(
                "GOOGLE_SEARCH_API_KEY and GOOGLE_SEARCH_ENGINE_ID are required for web search"
            )
        self._api_key = api_key.strip()
        self._engine_id = engine_id.strip()
        self._timeout_s = timeout_s
        self._base_url = base_url
        self._client = http_client or httpx.AsyncClient()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def search(self, query: str, count: int) -> list[WebResult]:
        if not query.strip():
            return []

        response = await self._client.get(
            self._base_url,
            params={
                "key": self._api_key,
                "cx": self._engine_id,
                "q": query,
                "num": max(1, min(count, _MAX_PAGE_SIZE)),
            },
            timeout=self._timeout_s,
        )
        if response.status_code >= 400:
            raise WebSearchError(
                f"Web search failed with HTTP {response.status_code}",
                status_code=response.status_code,
            )

        payload: dict[str, Any] = response.json()
        fetched_at = now_iso()
        results: list[WebResult] = []
        for item in payload.get("items") or []:
            if not isinstance(item, dict):
                continue
            url = str(item.get("link") or "").strip()
            if not url:
                continue
            results.append(
                WebResult(
                    id=_result_id(url),
                    title=str(item.get("title") or url),
                    url=url,
                    snippet=str(item.get("snippet") or ""),
                    rank=len(results) + 1,
                    fetched_at=fetched_at,
                )
            )
            if len(results) >= count:
                break
        return results
