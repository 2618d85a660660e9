from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from ragwright.errors import RagwrightConfigurationError, SearchBackendError
from ragwright.retrieval.evidence_merger import enforce_reranker_threshold
from ragwright.retrieval.search_auth import AsyncTokenCredential, credential_refresher
from ragwright.retrieval.types import KnowledgeAgentResult, SearchResult
from ragwright.schemas.rag_chat import ChatMessage, Reference
from ragwright.services.token_cache import TokenCache, TokenRefresher

logger = logging.getLogger(__name__)

_SEARCH_SCOPE_KEY = "azure-search"


class SearchBackend(Protocol):
    async def hybrid_search(
        self,
        query: str,
        *,
        top: int,
        filter: str | None = None,
        reranker_threshold: float | None = None,
        index_name: str | None = None,
    ) -> SearchResult: ...

    async def vector_search(
        self,
        query: str,
        *,
        top: int,
        filter: str | None = None,
        index_name: str | None = None,
    ) -> SearchResult: ...

    async def invoke_knowledge_agent(
        self,
        messages: Sequence[ChatMessage],
        *,
        filter: str | None = None,
        correlation_id: str,
    ) -> KnowledgeAgentResult: ...


def _first_str(entry: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def _as_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _as_float(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def normalize_agent_reference(entry: object, index: int) -> Reference:
    """Map one loosely shaped knowledge agent reference onto ``Reference``."""

    fallback_id = f"knowledge_{index + 1}"
    if not isinstance(entry, dict):
        return Reference(
            id=fallback_id,
            title=f"Knowledge Result {index + 1}",
            content=entry if isinstance(entry, str) else "",
        )

    source_data = entry.get("sourceData")
    data: dict[str, Any] = dict(source_data) if isinstance(source_data, dict) else {}
    merged = {**data, **entry}

    ref_id = _first_str(merged, "id", "docKey", "chunkId", "sourceId", "documentId") or fallback_id
    title = _first_str(merged, "title", "heading", "sourceTitle", "displayName") or ref_id
    content = _first_str(merged, "content", "page_chunk", "chunk", "text", "body") or ""
    url = _first_str(merged, "url", "sourceUrl", "uri")
    page_number = _as_int(merged.get("page_number", merged.get("pageNumber")))
    score = _as_float(merged.get("rerankerScore", merged.get("score")))
    return Reference(
        id=ref_id,
        title=title,
        content=content,
        url=url,
        page_number=page_number,
        score=score,
        metadata={"source": "knowledge_agent"},
    )


def _agent_answer(payload: dict[str, Any]) -> str | None:
    response = payload.get("response")
    if isinstance(response, str):
        return response.strip() or None
    if not isinstance(response, list):
        return None
    parts: list[str] = []
    for message in response:
        if not isinstance(message, dict):
            continue
        for content in message.get("content") or []:
            if isinstance(content, dict) and isinstance(content.get("text"), str):
                parts.append(content["text"])
    text = "\n".join(parts).strip()
    return text or None


class AzureSearchBackend:
    """Search backend speaking the Azure AI Search REST data plane."""

    def __init__(
        self,
        *,
        endpoint: str,
        index_name: str,
        api_version: str,
        api_key: str | None = None,
        knowledge_agent_name: str | None = None,
        semantic_configuration: str = "default",
        vector_field: str = "page_embedding_text_3_large",
        content_field: str = "page_chunk",
        timeout_s: float = 30.0,
        knowledge_agent_timeout_s: float = 60.0,
        token_cache: TokenCache | None = None,
        token_refresher: TokenRefresher | None = None,
        credential: AsyncTokenCredential | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not endpoint.strip():
            raise RagwrightConfigurationError("Search endpoint must not be empty")
        if token_refresher is None and credential is not None:
            token_refresher = credential_refresher(credential)
        if not api_key and token_refresher is None:
            raise RagwrightConfigurationError(
                "Search backend needs AZURE_SEARCH_API_KEY, a credential or a token refresher"
            )
        self._endpoint = endpoint.strip().rstrip("/")
        self._index_name = index_name
        self._api_version = api_version
        self._api_key = api_key
        self._knowledge_agent_name = knowledge_agent_name
        self._semantic_configuration = semantic_configuration
        self._vector_field = vector_field
        self._content_field = content_field
        self._timeout_s = timeout_s
        self._knowledge_agent_timeout_s = knowledge_agent_timeout_s
        self._token_cache = token_cache or TokenCache()
        self._token_refresher = token_refresher
        self._credential = credential
        self._client = http_client or httpx.AsyncClient()

    @property
    def has_knowledge_agent(self) -> bool:
        return bool(self._knowledge_agent_name)

    async def aclose(self) -> None:
        await self._client.aclose()
        if self._credential is not None:
            await self._credential.close()

    def _url(self, path: str) -> str:
        return f"{self._endpoint}/{path}?api-version={self._api_version}"

    async def _headers(self, correlation_id: str | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        headers.update(
            await self._token_cache.authorization_headers(
                cache_key=_SEARCH_SCOPE_KEY,
                refresher=self._token_refresher,
                api_key=self._api_key,
            )
        )
        if correlation_id:
            headers["x-ms-client-request-id"] = correlation_id
        return headers

    async def _post(
        self,
        operation: str,
        url: str,
        payload: dict[str, Any],
        *,
        correlation_id: str | None,
        timeout_s: float,
    ) -> tuple[dict[str, Any], str | None]:
        response = await self._client.post(
            url,
            json=payload,
            headers=await self._headers(correlation_id),
            timeout=timeout_s,
        )
        request_id = response.headers.get("x-ms-request-id") or response.headers.get("request-id")
        if response.status_code >= 400:
            detail = response.text[:300]
            raise SearchBackendError(
                f"{operation} failed with HTTP {response.status_code}: {detail}",
                status_code=response.status_code,
                correlation_id=correlation_id,
                request_id=request_id,
            )
        body = response.json()
        return (body if isinstance(body, dict) else {}), request_id

    def _docs_url(self, index_name: str | None) -> str:
        encoded = quote(index_name or self._index_name, safe="")
        return self._url(f"indexes('{encoded}')/docs/search")

    def _map_documents(self, documents: list[Any], *, reranked: bool) -> list[Reference]:
        references: list[Reference] = []
        for idx, document in enumerate(documents):
            if not isinstance(document, dict):
                continue
            score = document.get("@search.rerankerScore") if reranked else None
            if score is None:
                score = document.get("@search.score")
            page_number = _as_int(document.get("page_number"))
            references.append(
                Reference(
                    id=str(document.get("id") or document.get("chunk_id") or f"result_{idx}"),
                    title=f"Page {page_number if page_number is not None else idx + 1}",
                    content=str(document.get(self._content_field) or document.get("content") or ""),
                    page_number=page_number,
                    score=_as_float(score),
                    url=_first_str(document, "url"),
                )
            )
        return references

    async def hybrid_search(
        self,
        query: str,
        *,
        top: int,
        filter: str | None = None,
        reranker_threshold: float | None = None,
        index_name: str | None = None,
    ) -> SearchResult:
        # Over-fetch so the reranker threshold still leaves ``top`` candidates.
        candidates = max(top * 2, top)
        payload: dict[str, Any] = {
            "search": query,
            "queryType": "semantic",
            "semanticConfiguration": self._semantic_configuration,
            "top": candidates,
            "select": f"id,{self._content_field},page_number",
            "searchFields": self._content_field,
            "vectorQueries": [
                {
                    "kind": "text",
                    "text": query,
                    "fields": self._vector_field,
                    "k": candidates,
                }
            ],
        }
        if filter:
            payload["filter"] = filter
        body, _request_id = await self._post(
            "hybrid search",
            self._docs_url(index_name),
            payload,
            correlation_id=None,
            timeout_s=self._timeout_s,
        )
        references = self._map_documents(list(body.get("value") or []), reranked=True)
        kept = enforce_reranker_threshold(references, reranker_threshold, source="hybrid")
        return SearchResult(references=kept[:top], coverage=_as_float(body.get("@search.coverage")))

    async def vector_search(
        self,
        query: str,
        *,
        top: int,
        filter: str | None = None,
        index_name: str | None = None,
    ) -> SearchResult:
        payload: dict[str, Any] = {
            "top": top,
            "select": f"id,{self._content_field},page_number",
            "vectorQueries": [
                {"kind": "text", "text": query, "fields": self._vector_field, "k": top}
            ],
        }
        if filter:
            payload["filter"] = filter
        body, _request_id = await self._post(
            "vector search",
            self._docs_url(index_name),
            payload,
            correlation_id=None,
            timeout_s=self._timeout_s,
        )
        references = self._map_documents(list(body.get("value") or []), reranked=False)
        return SearchResult(references=references[:top])

    async def invoke_knowledge_agent(
        self,
        messages: Sequence[ChatMessage],
        *,
        filter: str | None = None,
        correlation_id: str,
    ) -> KnowledgeAgentResult:
        if not self._knowledge_agent_name:
            raise RagwrightConfigurationError("AZURE_KNOWLEDGE_AGENT_NAME is not configured")
        if not messages:
            raise ValueError("Knowledge agent invocation requires a non-empty conversation")

        target: dict[str, Any] = {"indexName": self._index_name}
        if filter:
            target["filterAddOn"] = filter
        payload = {
            "messages": [
                {"role": message.role, "content": [{"type": "text", "text": message.content}]}
                for message in messages
            ],
            "targetIndexParams": [target],
        }
        agent = quote(self._knowledge_agent_name, safe="")
        body, request_id = await self._post(
            "knowledge agent retrieve",
            self._url(f"agents('{agent}')/retrieve"),
            payload,
            correlation_id=correlation_id,
            timeout_s=self._knowledge_agent_timeout_s,
        )
        raw_references = body.get("references")
        references = [
            normalize_agent_reference(entry, idx)
            for idx, entry in enumerate(raw_references if isinstance(raw_references, list) else [])
        ]
        activity = body.get("activity")
        return KnowledgeAgentResult(
            references=references,
            answer=_agent_answer(body),
            grounding={"activity": activity} if isinstance(activity, list) else None,
            correlation_id=correlation_id,
            request_id=request_id,
        )
