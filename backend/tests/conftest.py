import json
from collections.abc import AsyncIterator, Sequence
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from ragwright.context import RagwrightContext, build_context
from ragwright.retrieval.types import KnowledgeAgentResult, SearchResult
from ragwright.schemas.rag_chat import ChatMessage, Reference
from ragwright.services.completion import Completion, CompletionChunk, CompletionRequest
from ragwright.settings import Settings

from ragwright_backend.app import create_app

ANSWER = "Refunds are issued within 14 days [1]."

_STRUCTURED = {
    "intent": {"intent": "faq", "confidence": 0.9, "reasoning": "how-to"},
    "plan": {"action": "retrieve", "reasoning": "policy question", "confidence": 0.9},
    "critique": {"score": 0.9, "reasoning": "grounded", "action": "accept", "suggestions": []},
}


class _FakeCompletion:
    def __init__(self) -> None:
        self.fail_synthesis = False
        self.requests: list[CompletionRequest] = []

    def _text(self, request: CompletionRequest) -> str:
        self.requests.append(request)
        if request.schema_name is not None:
            return json.dumps(_STRUCTURED[request.schema_name])
        if self.fail_synthesis:
            raise RuntimeError("completion backend unavailable")
        return ANSWER

    async def complete(self, request: CompletionRequest) -> Completion:
        return Completion(text=self._text(request), id=f"resp_{len(self.requests)}")

    async def stream(self, request: CompletionRequest) -> AsyncIterator[CompletionChunk]:
        text = self._text(request)
        for idx, word in enumerate(text.split(" ")):
            yield CompletionChunk(delta=word if idx == 0 else f" {word}")
        yield CompletionChunk(completion=Completion(text=text, id=f"resp_{len(self.requests)}"))


class _FakeSearchBackend:
    has_knowledge_agent = True

    def __init__(self) -> None:
        self._references = [
            Reference(
                id=f"policy_{idx}",
                title=f"Refund policy {idx}",
                content=f"Refund rule number {idx}.",
                page_number=idx,
                score=3.1,
            )
            for idx in range(1, 4)
        ]

    async def hybrid_search(self, query: str, **_kwargs: Any) -> SearchResult:
        return SearchResult(references=list(self._references), coverage=100.0)

    async def vector_search(self, query: str, **_kwargs: Any) -> SearchResult:
        return SearchResult(references=list(self._references))

    async def invoke_knowledge_agent(
        self, messages: Sequence[ChatMessage], **_kwargs: Any
    ) -> KnowledgeAgentResult:
        return KnowledgeAgentResult(references=list(self._references))


@pytest.fixture
def fake_completion() -> _FakeCompletion:
    return _FakeCompletion()


@pytest.fixture
def ragwright_context(fake_completion: _FakeCompletion) -> RagwrightContext:
    settings = Settings(
        openai_api_key="test-key",
        retry_initial_delay_s=0.0,
        retry_max_delay_s=0.0,
        request_timeout_s=5.0,
        knowledge_agent_timeout_s=5.0,
    )
    return build_context(
        settings,
        completion=fake_completion,
        search_backend=_FakeSearchBackend(),
        web_search=None,
        use_default_backends=False,
    )


@pytest.fixture
def app(ragwright_context: RagwrightContext) -> FastAPI:
    return create_app(service_name="ragwright-test", context=ragwright_context)


@pytest_asyncio.fixture()
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://testserver",
    ) as async_client:
        yield async_client
