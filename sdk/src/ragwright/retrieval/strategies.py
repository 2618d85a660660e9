from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Sequence
from enum import StrEnum
from typing import ClassVar, Protocol

import anyio

from ragwright.errors import KnowledgeAgentError
from ragwright.retrieval.evidence_merger import enforce_reranker_threshold
from ragwright.retrieval.search_backend import SearchBackend
from ragwright.retrieval.types import SearchOptions, StrategyResult
from ragwright.schemas.rag_chat import ChatMessage, Reference
from ragwright.settings import FederatedIndex, Settings

logger = logging.getLogger(__name__)


class RetrievalStrategyKind(StrEnum):
    HYBRID = "hybrid"
    VECTOR = "vector"
    KNOWLEDGE_AGENT = "knowledge_agent"
    FEDERATED = "federated"


class RetrievalStrategy(Protocol):
    kind: ClassVar[RetrievalStrategyKind]

    async def search(self, query: str, options: SearchOptions) -> StrategyResult: ...


class HybridSearchStrategy:
    """Vector + keyword search reranked by the managed semantic ranker."""

    kind: ClassVar[RetrievalStrategyKind] = RetrievalStrategyKind.HYBRID

    def __init__(self, *, backend: SearchBackend) -> None:
        self._backend = backend

    async def search(self, query: str, options: SearchOptions) -> StrategyResult:
        result = await self._backend.hybrid_search(
            query,
            top=options.top,
            filter=options.filter,
            reranker_threshold=options.reranker_threshold,
            index_name=options.index_name,
        )
        return StrategyResult(
            references=result.references,
            coverage=result.coverage,
            diagnostics={"threshold": options.reranker_threshold},
        )


class VectorSearchStrategy:
    """Pure embedding similarity; it has no reranker to fail."""

    kind: ClassVar[RetrievalStrategyKind] = RetrievalStrategyKind.VECTOR

    def __init__(self, *, backend: SearchBackend) -> None:
        self._backend = backend

    async def search(self, query: str, options: SearchOptions) -> StrategyResult:
        result = await self._backend.vector_search(
            query,
            top=options.top,
            filter=options.filter,
            index_name=options.index_name,
        )
        return StrategyResult(references=result.references, coverage=result.coverage)


def build_agent_messages(
    history: Sequence[ChatMessage],
    query: str,
    *,
    max_messages: int,
) -> list[ChatMessage]:
    """Recent non-system turns, ending with the user's current question."""

    turns = [message for message in history if message.role != "system" and message.content.strip()]
    last = turns[-1] if turns else None
    if query.strip() and (last is None or last.role != "user" or last.content != query):
        turns.append(ChatMessage(role="user", content=query))
    return turns[-max(1, max_messages) :]


class KnowledgeAgentStrategy:
    """Managed agentic retrieval over the whole recent conversation."""

    kind: ClassVar[RetrievalStrategyKind] = RetrievalStrategyKind.KNOWLEDGE_AGENT

    def __init__(self, *, backend: SearchBackend, max_messages: int = 30) -> None:
        self._backend = backend
        self._max_messages = max_messages

    async def search(self, query: str, options: SearchOptions) -> StrategyResult:
        correlation_id = options.correlation_id or uuid.uuid4().hex
        messages = build_agent_messages(options.messages, query, max_messages=self._max_messages)
        try:
            result = await self._backend.invoke_knowledge_agent(
                messages,
                filter=options.filter,
                correlation_id=correlation_id,
            )
        except KnowledgeAgentError:
            raise
        except Exception as exc:
            status_code = getattr(exc, "status_code", None)
            request_id = getattr(exc, "request_id", None)
            raise KnowledgeAgentError(
                f"Knowledge agent invocation failed: {exc}",
                phase="invocation",
                status_code=status_code if isinstance(status_code, int) else None,
                correlation_id=correlation_id,
                request_id=request_id if isinstance(request_id, str) else None,
            ) from exc

        references = enforce_reranker_threshold(
            result.references, options.reranker_threshold, source="knowledge_agent"
        )
        return StrategyResult(
            references=references,
            answer=result.answer,
            grounding=result.grounding,
            diagnostics={
                "correlation_id": result.correlation_id or correlation_id,
                "request_id": result.request_id,
            },
        )


class FederatedSearchStrategy:
    """Fans a query out to several indexes and merges by weighted score."""

    kind: ClassVar[RetrievalStrategyKind] = RetrievalStrategyKind.FEDERATED

    def __init__(self, *, backend: SearchBackend, indexes: Sequence[FederatedIndex]) -> None:
        self._backend = backend
        self._indexes = list(indexes)

    async def search(self, query: str, options: SearchOptions) -> StrategyResult:
        if len(self._indexes) <= 1:
            name = self._indexes[0].name if self._indexes else options.index_name
            result = await self._backend.hybrid_search(
                query,
                top=options.top,
                filter=options.filter,
                reranker_threshold=options.reranker_threshold,
                index_name=name,
            )
            return StrategyResult(
                references=result.references,
                coverage=result.coverage,
                diagnostics={"index_breakdown": {name or "default": len(result.references)}},
            )

        per_index = max(1, math.ceil(options.top * 1.5 / len(self._indexes)))
        breakdown: dict[str, int] = {}
        weighted: list[tuple[float, Reference]] = []

        async def run_index(index: FederatedIndex) -> None:
            try:
                result = await self._backend.hybrid_search(
                    query,
                    top=per_index,
                    filter=options.filter,
                    reranker_threshold=options.reranker_threshold,
                    index_name=index.name,
                )
            except Exception as exc:
                breakdown[index.name] = 0
                logger.warning("Federated search failed for index %r: %s", index.name, exc)
                return

            breakdown[index.name] = len(result.references)
            for reference in result.references:
                metadata = dict(reference.metadata or {})
                metadata.update(
                    source_index=index.name,
                    source_type=index.type,
                    source_weight=index.weight,
                )
                weighted.append(
                    (
                        (reference.score or 0.0) * index.weight,
                        reference.model_copy(update={"metadata": metadata}),
                    )
                )

        async with anyio.create_task_group() as tg:
            for index in self._indexes:
                tg.start_soon(run_index, index)

        weighted.sort(key=lambda item: item[0], reverse=True)
        unique: list[Reference] = []
        seen: set[str] = set()
        for _score, reference in weighted:
            if reference.id in seen:
                continue
            seen.add(reference.id)
            unique.append(reference)
            if len(unique) >= options.top:
                break

        return StrategyResult(references=unique, diagnostics={"index_breakdown": breakdown})


def build_strategy(
    kind: RetrievalStrategyKind,
    *,
    backend: SearchBackend,
    settings: Settings,
) -> RetrievalStrategy:
    if kind is RetrievalStrategyKind.HYBRID:
        return HybridSearchStrategy(backend=backend)
    if kind is RetrievalStrategyKind.VECTOR:
        return VectorSearchStrategy(backend=backend)
    if kind is RetrievalStrategyKind.KNOWLEDGE_AGENT:
        return KnowledgeAgentStrategy(
            backend=backend, max_messages=settings.knowledge_agent_max_messages
        )
    if kind is RetrievalStrategyKind.FEDERATED:
        indexes = settings.federated_indexes or (FederatedIndex(name=settings.search_index_name),)
        return FederatedSearchStrategy(backend=backend, indexes=indexes)
    raise ValueError(f"Unknown retrieval strategy: {kind!r}")
