from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any

import httpx
import pytest

import ragwright.context as context_module
from ragwright.context import build_context
from ragwright.errors import RagwrightConfigurationError, SearchBackendError, WebSearchError
from ragwright.retrieval.search_auth import SEARCH_TOKEN_SCOPE
from ragwright.retrieval.search_backend import AzureSearchBackend, normalize_agent_reference
from ragwright.retrieval.web_search import GoogleWebSearch
from ragwright.schemas.rag_chat import ChatMessage
from ragwright.services.completion import (
    CompletionRequest,
    OpenAIResponsesBackend,
    build_response_kwargs,
    parse_json_object,
)
from ragwright.services.token_cache import AccessToken


def _search_backend(handler: Any, **kwargs: Any) -> AzureSearchBackend:
    options: dict[str, Any] = {
        "endpoint": "https://search.example/",
        "index_name": "docs",
        "api_version": "2025-08-01-preview",
        "api_key": "search-key",
        "knowledge_agent_name": "agent",
    }
    options.update(kwargs)
    return AzureSearchBackend(
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        **options,
    )


class _FakeCredential:
    def __init__(self) -> None:
        self.scopes: list[tuple[str, ...]] = []
        self.closed = False

    async def get_token(self, *scopes: str, **_kwargs: Any) -> Any:
        self.scopes.append(scopes)
        return SimpleNamespace(token="mi-token", expires_on=4_102_444_800)

    async def close(self) -> None:
        self.closed = True


def _document(doc_id: str, chunk: str, page: int, score: float) -> dict[str, Any]:
    return {
        "id": doc_id,
        "page_chunk": chunk,
        "page_number": page,
        "@search.rerankerScore": score,
    }


def test_parse_json_object_strips_fences() -> None:
    assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}
    with pytest.raises(ValueError):
        parse_json_object("no json here")


def test_response_kwargs_omit_previous_response_id_without_storage() -> None:
    request = CompletionRequest(
        model="gpt-4o",
        messages=[ChatMessage(role="user", content="hi")],
        previous_response_id="resp_1",
        store=False,
        json_schema={"type": "object"},
        schema_name="plan",
        max_output_tokens=100,
    )

    kwargs = build_response_kwargs(request)

    assert "previous_response_id" not in kwargs
    assert kwargs["store"] is False
    assert kwargs["max_output_tokens"] == 100
    assert kwargs["text"]["format"]["name"] == "plan"
    assert kwargs["input"] == [{"role": "user", "content": "hi"}]


def test_response_kwargs_keep_previous_response_id_with_storage() -> None:
    request = CompletionRequest(
        model="gpt-4o",
        messages=[ChatMessage(role="user", content="hi")],
        previous_response_id="resp_1",
        store=True,
    )

    assert build_response_kwargs(request)["previous_response_id"] == "resp_1"


@pytest.mark.asyncio
async def test_openai_backend_maps_response_fields() -> None:
    captured: dict[str, Any] = {}

    async def create(**kwargs: Any) -> Any:
        captured.update(kwargs)
        return SimpleNamespace(
            id="resp_9",
            output_text=" answer [1] ",
            usage=SimpleNamespace(input_tokens=3, output_tokens=4, total_tokens=7),
        )

    client = SimpleNamespace(responses=SimpleNamespace(create=create))
    backend = OpenAIResponsesBackend(client=client)  # type: ignore[arg-type]

    completion = await backend.complete(
        CompletionRequest(model="gpt-4o", messages=[ChatMessage(role="user", content="q")])
    )

    assert completion.text == "answer [1]"
    assert completion.id == "resp_9"
    assert completion.usage == {"input_tokens": 3, "output_tokens": 4, "total_tokens": 7}
    assert captured["model"] == "gpt-4o"


@pytest.mark.asyncio
async def test_hybrid_search_applies_threshold_and_top() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "@search.coverage": 97.5,
                "value": [
                    _document("a", "alpha", 1, 3.2),
                    _document("b", "beta", 2, 1.0),
                    _document("c", "gamma", 3, 2.7),
                ],
            },
        )

    backend = _search_backend(handler)

    result = await backend.hybrid_search("alpha?", top=1, reranker_threshold=2.5, filter="x eq 1")

    assert [ref.id for ref in result.references] == ["a"]
    assert result.references[0].title == "Page 1"
    assert result.coverage == 97.5
    assert "indexes('docs')/docs/search?api-version=2025-08-01-preview" in seen["url"]
    assert seen["headers"]["api-key"] == "search-key"
    assert seen["body"]["top"] == 2
    assert seen["body"]["queryType"] == "semantic"
    assert seen["body"]["filter"] == "x eq 1"


@pytest.mark.asyncio
async def test_search_error_surfaces_status_and_request_id() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="busy", headers={"x-ms-request-id": "req-1"})

    backend = _search_backend(handler)

    with pytest.raises(SearchBackendError) as exc_info:
        await backend.vector_search("q", top=3)

    assert exc_info.value.status_code == 503
    assert exc_info.value.request_id == "req-1"


@pytest.mark.asyncio
async def test_knowledge_agent_invocation_normalizes_references() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            headers={"x-ms-request-id": "req-7"},
            json={
                "response": [{"content": [{"type": "text", "text": "Summary text"}]}],
                "references": [
                    {
                        "docKey": "k1",
                        "sourceData": {"title": "Handbook", "page_chunk": "c1"},
                        "rerankerScore": 2.9,
                    },
                    "loose text",
                ],
                "activity": [{"type": "search"}],
            },
        )

    backend = _search_backend(handler)

    result = await backend.invoke_knowledge_agent(
        [ChatMessage(role="user", content="q")], filter="f", correlation_id="corr-1"
    )

    assert "agents('agent')/retrieve" in seen["url"]
    assert seen["headers"]["x-ms-client-request-id"] == "corr-1"
    assert seen["body"]["targetIndexParams"] == [{"indexName": "docs", "filterAddOn": "f"}]
    assert result.answer == "Summary text"
    assert result.request_id == "req-7"
    assert [ref.id for ref in result.references] == ["k1", "knowledge_2"]
    assert result.references[0].title == "Handbook"
    assert result.references[0].score == 2.9
    assert result.grounding == {"activity": [{"type": "search"}]}


@pytest.mark.asyncio
async def test_search_backend_uses_bearer_token_without_api_key() -> None:
    seen: dict[str, str] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["authorization"] = request.headers["authorization"]
        return httpx.Response(200, json={"value": []})

    async def refresher() -> AccessToken:
        return AccessToken(token="aad-token", expires_on=4_102_444_800.0)

    backend = _search_backend(handler, api_key=None, token_refresher=refresher)

    await backend.vector_search("q", top=1)

    assert seen["authorization"] == "Bearer aad-token"


@pytest.mark.asyncio
async def test_search_backend_caches_managed_identity_tokens() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["authorization"])
        return httpx.Response(200, json={"value": []})

    credential = _FakeCredential()
    backend = _search_backend(handler, api_key=None, credential=credential)

    await backend.vector_search("q", top=1)
    await backend.hybrid_search("q", top=1)
    await backend.aclose()

    assert seen == ["Bearer mi-token", "Bearer mi-token"]
    assert credential.scopes == [(SEARCH_TOKEN_SCOPE,)]
    assert credential.closed is True


@pytest.mark.asyncio
async def test_build_context_falls_back_to_default_credential_without_search_key(
    monkeypatch: pytest.MonkeyPatch, with_settings: Any, completion: Any
) -> None:
    credential = _FakeCredential()
    monkeypatch.setattr(context_module, "default_search_credential", lambda: credential)
    settings = with_settings(search_endpoint="https://x.search.windows.net", search_api_key=None)

    context = build_context(settings, completion=completion)

    assert isinstance(context.search_backend, AzureSearchBackend)
    assert context.gates["adaptive_retrieval"] is True
    await context.aclose()
    assert credential.closed is True


def test_search_backend_requires_credentials() -> None:
    with pytest.raises(RagwrightConfigurationError):
        AzureSearchBackend(endpoint="https://search.example", index_name="d", api_version="v")


def test_normalize_agent_reference_falls_back_to_positional_id() -> None:
    reference = normalize_agent_reference({"content": "body"}, 4)

    assert reference.id == "knowledge_5"
    assert reference.content == "body"
    assert reference.metadata == {"source": "knowledge_agent"}


@pytest.mark.asyncio
async def test_google_web_search_maps_items() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        return httpx.Response(
            200,
            json={
                "items": [
                    {"title": "One", "link": "https://a.example", "snippet": "s1"},
                    {"title": "No link"},
                    {"title": "Two", "link": "https://b.example", "snippet": "s2"},
                ]
            },
        )

    search = GoogleWebSearch(
        api_key="g-key",
        engine_id="cx-1",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

    results = await search.search("news", 25)

    assert seen["params"]["num"] == "10"
    assert seen["params"]["cx"] == "cx-1"
    assert [(r.title, r.rank) for r in results] == [("One", 1), ("Two", 2)]
    assert results[0].id.startswith("web_")


@pytest.mark.asyncio
async def test_google_web_search_raises_on_http_error() -> None:
    search = GoogleWebSearch(
        api_key="g-key",
        engine_id="cx-1",
        http_client=httpx.AsyncClient(
            transport=httpx.MockTransport(lambda _request: httpx.Response(429))
        ),
    )

    with pytest.raises(WebSearchError) as exc_info:
        await search.search("news", 3)

    assert exc_info.value.status_code == 429
