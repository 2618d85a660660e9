from __future__ import annotations

import json
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import replace
from typing import Any

import pytest

from ragwright.features import resolve_features
from ragwright.retrieval.types import KnowledgeAgentResult, SearchResult
from ragwright.schemas.rag_chat import ChatMessage, Reference, WebResult
from ragwright.services.completion import Completion, CompletionChunk, CompletionRequest
from ragwright.settings import Settings

Scripted = str | Exception


def _next(queue: list[Any]) -> Any:
    # The last scripted item repeats once the queue is drained.
    return queue.pop(0) if len(queue) > 1 else queue[0]


class ScriptedCompletion:
    """Completion backend that answers by ``schema_name`` from scripted queues.

    Synthesis requests (no schema) use the ``None`` key.
    """

    def __init__(self, script: dict[str | None, list[Scripted]] | None = None) -> None:
        self.script: dict[str | None, list[Scripted]] = {
            "intent": [json.dumps({"intent": "research", "confidence": 0.9, "reasoning": "r"})],
            "plan": [json.dumps({"action": "retrieve", "reasoning": "kb", "confidence": 0.9})],
            "critique": [
                json.dumps(
                    {"score": 0.95, "reasoning": "grounded", "action": "accept", "suggestions": []}
                )
            ],
            "quality_assessment": [json.dumps({"coverage": 0.9})],
            None: ["The answer is grounded [1]."],
        }
        self.script.update(script or {})
        self.requests: list[CompletionRequest] = []

    def calls(self, schema_name: str | None) -> list[CompletionRequest]:
        return [request for request in self.requests if request.schema_name == schema_name]

    def _take(self, request: CompletionRequest) -> str:
        self.requests.append(request)
        item = _next(self.script[request.schema_name])
        if isinstance(item, Exception):
            raise item
        return item

    async def complete(self, request: CompletionRequest) -> Completion:
        text = self._take(request)
        return Completion(text=text, id=f"resp_{len(self.requests)}", usage={"total_tokens": 7})

    async def stream(self, request: CompletionRequest) -> AsyncIterator[CompletionChunk]:
        text = self._take(request)
        words = text.split(" ")
        for idx, word in enumerate(words):
            yield CompletionChunk(delta=word if idx == 0 else f" {word}")
        yield CompletionChunk(
            completion=Completion(text=text, id=f"resp_{len(self.requests)}", usage={})
        )


class FakeSearchBackend:
    """Scripted search backend; each method consumes its own queue."""

    def __init__(
        self,
        *,
        hybrid: list[SearchResult | Exception] | None = None,
        vector: list[SearchResult | Exception] | None = None,
        agent: list[KnowledgeAgentResult | Exception] | None = None,
        has_knowledge_agent: bool = True,
    ) -> None:
        self._hybrid = hybrid or [SearchResult(references=[])]
        self._vector = vector or [SearchResult(references=[])]
        self._agent = agent or [KnowledgeAgentResult(references=[])]
        self.has_knowledge_agent = has_knowledge_agent
        self.hybrid_calls: list[dict[str, Any]] = []
        self.vector_calls: list[dict[str, Any]] = []
        self.agent_calls: list[dict[str, Any]] = []

    @staticmethod
    def _resolve(queue: list[Any]) -> Any:
        item = _next(queue)
        if isinstance(item, Exception):
            raise item
        return item

    async def hybrid_search(
        self,
        query: str,
        *,
        top: int,
        filter: str | None = None,
        reranker_threshold: float | None = None,
        index_name: str | None = None,
    ) -> SearchResult:
        self.hybrid_calls.append(
            {
                "query": query,
                "top": top,
                "filter": filter,
                "reranker_threshold": reranker_threshold,
                "index_name": index_name,
            }
        )
        return self._resolve(self._hybrid)

    async def vector_search(
        self,
        query: str,
        *,
        top: int,
        filter: str | None = None,
        index_name: str | None = None,
    ) -> SearchResult:
        self.vector_calls.append({"query": query, "top": top, "filter": filter})
        return self._resolve(self._vector)

    async def invoke_knowledge_agent(
        self,
        messages: Sequence[ChatMessage],
        *,
        filter: str | None = None,
        correlation_id: str,
    ) -> KnowledgeAgentResult:
        self.agent_calls.append(
            {"messages": list(messages), "filter": filter, "correlation_id": correlation_id}
        )
        return self._resolve(self._agent)


class FakeWebSearch:
    def __init__(self, results: list[WebResult] | Exception | None = None) -> None:
        self._results = results if results is not None else []
        self.queries: list[tuple[str, int]] = []

    async def search(self, query: str, count: int) -> list[WebResult]:
        self.queries.append((query, count))
        if isinstance(self._results, Exception):
            raise self._results
        return list(self._results)[:count]


def make_refs(count: int, *, prefix: str = "doc", score: float = 3.0) -> list[Reference]:
    return [
        Reference(
            id=f"{prefix}_{idx}",
            title=f"{prefix.title()} {idx}",
            content=f"{prefix} content number {idx} about topic {idx * 7}",
            page_number=idx,
            score=score,
        )
        for idx in range(1, count + 1)
    ]


def make_web_results(count: int) -> list[WebResult]:
    return [
        WebResult(
            id=f"web_{idx}",
            title=f"Web {idx}",
            url=f"https://example.com/{idx}",
            snippet=f"snippet {idx}",
            rank=idx,
            fetched_at="2026-01-01T00:00:00+00:00",
        )
        for idx in range(1, count + 1)
    ]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        openai_api_key="test-key",
        chat_model="gpt-4o",
        utility_model="gpt-4o-mini",
        retry_initial_delay_s=0.0,
        retry_max_delay_s=0.0,
        request_timeout_s=5.0,
        knowledge_agent_timeout_s=5.0,
    )


@pytest.fixture
def features_for() -> Callable[..., Any]:
    def _build(settings: Settings, **overrides: bool) -> Any:
        return resolve_features(settings.features, overrides=overrides)

    return _build


@pytest.fixture
def with_settings(settings: Settings) -> Callable[..., Settings]:
    def _build(**changes: Any) -> Settings:
        return replace(settings, **changes)

    return _build


@pytest.fixture
def completion() -> ScriptedCompletion:
    return ScriptedCompletion()


@pytest.fixture
def completion_factory() -> type[ScriptedCompletion]:
    return ScriptedCompletion


@pytest.fixture
def search_factory() -> type[FakeSearchBackend]:
    return FakeSearchBackend


@pytest.fixture
def web_factory() -> type[FakeWebSearch]:
    return FakeWebSearch


@pytest.fixture
def refs() -> Callable[..., list[Reference]]:
    return make_refs


@pytest.fixture
def web_results() -> Callable[[int], list[WebResult]]:
    return make_web_results
