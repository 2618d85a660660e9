from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from ragwright.retrieval.adaptive import lexical_diversity
from ragwright.retrieval.fallback import RetrievalPipeline, RetrievalRequest
from ragwright.retrieval.types import KnowledgeAgentResult, SearchResult
from ragwright.schemas.rag_chat import ChatMessage, Reference
from ragwright.settings import FederatedIndex

_REQUEST = httpx.Request("POST", "https://search.example")


def _connect_error() -> httpx.ConnectError:
    return httpx.ConnectError("connection reset", request=_REQUEST)


def _request(features: Any, query: str = "What is the refund policy?") -> RetrievalRequest:
    return RetrievalRequest(
        query=query,
        features=features,
        messages=(ChatMessage(role="user", content=query),),
        correlation_id="corr-test",
    )


@pytest.mark.asyncio
async def test_primary_search_meeting_min_docs_runs_one_stage(
    settings: Any, features_for: Any, search_factory: Any, refs: Any
) -> None:
    backend = search_factory(hybrid=[SearchResult(references=refs(5), coverage=95.0)])
    pipeline = RetrievalPipeline(backend=backend, settings=settings)

    outcome = await pipeline.run(_request(features_for(settings, knowledge_agent=False)))

    assert len(outcome.references) == 5
    assert outcome.fallback_triggered is False
    assert outcome.fallback_attempts == 0
    assert [step.type for step in outcome.activity] == ["search"]
    assert outcome.diagnostics.strategy == "hybrid"
    assert outcome.diagnostics.coverage == 95.0
    assert backend.hybrid_calls[0]["reranker_threshold"] == settings.reranker_threshold


@pytest.mark.asyncio
async def test_ladder_stops_at_expanded_stage_when_it_meets_min_docs(
    with_settings: Any, features_for: Any, search_factory: Any, refs: Any
) -> None:
    settings = with_settings(retrieval_min_docs=2)
    backend = search_factory(
        hybrid=[
            SearchResult(references=[]),
            SearchResult(references=[]),
            SearchResult(references=refs(2)),
        ]
    )
    pipeline = RetrievalPipeline(backend=backend, settings=settings)

    outcome = await pipeline.run(_request(features_for(settings, knowledge_agent=False)))

    assert outcome.fallback_attempts == 2
    assert outcome.fallback_triggered is True
    assert [step.type for step in outcome.activity] == [
        "search",
        "fallback_search",
        "fallback_search_expanded",
    ]
    assert len(outcome.references) == 2
    assert backend.vector_calls == []
    thresholds = [call["reranker_threshold"] for call in backend.hybrid_calls]
    assert thresholds == [2.5, 1.5, settings.threshold_floor]
    assert backend.hybrid_calls[2]["top"] == settings.rag_top_k * 2
    assert outcome.diagnostics.fallback_reason == "insufficient_results"


@pytest.mark.asyncio
async def test_ladder_accumulates_references_across_stages(
    settings: Any, features_for: Any, search_factory: Any, refs: Any
) -> None:
    backend = search_factory(
        hybrid=[
            SearchResult(references=refs(1, prefix="primary")),
            SearchResult(references=refs(1, prefix="relaxed")),
            SearchResult(references=refs(1, prefix="expanded")),
        ],
        vector=[SearchResult(references=refs(2, prefix="vector"))],
    )
    pipeline = RetrievalPipeline(backend=backend, settings=settings)

    outcome = await pipeline.run(_request(features_for(settings, knowledge_agent=False)))

    assert [ref.id for ref in outcome.references] == [
        "primary_1",
        "relaxed_1",
        "expanded_1",
    ]
    assert outcome.fallback_attempts == 2
    assert backend.vector_calls == []


@pytest.mark.asyncio
async def test_vector_search_is_the_last_stage(
    settings: Any, features_for: Any, search_factory: Any, refs: Any
) -> None:
    backend = search_factory(
        hybrid=[SearchResult(references=[])],
        vector=[SearchResult(references=refs(4, prefix="vector"))],
    )
    pipeline = RetrievalPipeline(backend=backend, settings=settings)

    outcome = await pipeline.run(_request(features_for(settings, knowledge_agent=False)))

    assert outcome.fallback_attempts == 3
    assert outcome.activity[-1].type == "fallback_vector_search"
    assert outcome.diagnostics.attempted == ["hybrid", "hybrid", "hybrid", "vector"]
    assert len(outcome.references) == 4


@pytest.mark.asyncio
async def test_transient_stage_failure_degrades_to_next_stage(
    settings: Any, features_for: Any, search_factory: Any, refs: Any
) -> None:
    backend = search_factory(
        hybrid=[
            _connect_error(),
            _connect_error(),
            _connect_error(),
            SearchResult(references=refs(3)),
        ]
    )
    pipeline = RetrievalPipeline(backend=backend, settings=settings)

    outcome = await pipeline.run(_request(features_for(settings, knowledge_agent=False)))

    assert [step.type for step in outcome.activity][:3] == [
        "search",
        "search_failed",
        "fallback_search",
    ]
    assert len(outcome.references) == 3
    assert outcome.fallback_attempts == 1


@pytest.mark.asyncio
async def test_knowledge_agent_success_short_circuits_the_ladder(
    settings: Any, features_for: Any, search_factory: Any, refs: Any
) -> None:
    backend = search_factory(
        agent=[KnowledgeAgentResult(references=refs(3), answer="Agent summary", request_id="r")]
    )
    pipeline = RetrievalPipeline(backend=backend, settings=settings)

    outcome = await pipeline.run(_request(features_for(settings)))

    assert outcome.diagnostics.strategy == "knowledge_agent"
    assert outcome.knowledge_agent_answer == "Agent summary"
    assert outcome.fallback_triggered is False
    assert backend.hybrid_calls == []
    assert backend.agent_calls[0]["correlation_id"] == "corr-test"


@pytest.mark.asyncio
async def test_knowledge_agent_partial_results_are_merged_first(
    settings: Any, features_for: Any, search_factory: Any, refs: Any
) -> None:
    backend = search_factory(
        agent=[KnowledgeAgentResult(references=refs(1, prefix="agent"), answer="partial")],
        hybrid=[SearchResult(references=refs(2, prefix="hybrid"))],
    )
    pipeline = RetrievalPipeline(backend=backend, settings=settings)

    outcome = await pipeline.run(_request(features_for(settings)))

    assert [ref.id for ref in outcome.references] == ["agent_1", "hybrid_1", "hybrid_2"]
    assert outcome.diagnostics.knowledge_agent is not None
    assert outcome.diagnostics.knowledge_agent.phase == "partial_results"
    assert outcome.fallback_triggered is True
    assert outcome.knowledge_agent_answer is None


@pytest.mark.asyncio
async def test_knowledge_agent_failure_is_not_retried_within_the_request(
    settings: Any, features_for: Any, search_factory: Any
) -> None:
    backend = search_factory(
        agent=[_connect_error()],
        hybrid=[SearchResult(references=[])],
        vector=[_connect_error()],
    )
    pipeline = RetrievalPipeline(backend=backend, settings=settings)

    outcome = await pipeline.run(_request(features_for(settings)))

    assert len(backend.agent_calls) == 1
    assert outcome.diagnostics.knowledge_agent is not None
    assert outcome.diagnostics.knowledge_agent.phase == "invocation"
    assert outcome.diagnostics.knowledge_agent.correlation_id == "corr-test"
    activity_types = [step.type for step in outcome.activity]
    assert activity_types[0] == "knowledge_agent_fallback"
    assert "knowledge_agent_skipped" in activity_types
    assert activity_types[-1] == "fallback_search_error"
    assert outcome.diagnostics.retry_count == 1
    assert outcome.references == []


@pytest.mark.asyncio
async def test_safety_net_vector_search_after_permanent_failure(
    settings: Any, features_for: Any, search_factory: Any, refs: Any
) -> None:
    backend = search_factory(
        hybrid=[ValueError("malformed filter")],
        vector=[SearchResult(references=refs(2, prefix="vector"))],
    )
    pipeline = RetrievalPipeline(backend=backend, settings=settings)

    outcome = await pipeline.run(_request(features_for(settings, knowledge_agent=False)))

    assert len(backend.hybrid_calls) == 1
    assert [ref.id for ref in outcome.references] == ["vector_1", "vector_2"]
    assert outcome.activity[-1].type == "fallback_vector_search"
    assert outcome.diagnostics.fallback_reason == "pipeline_error: malformed filter"


@pytest.mark.asyncio
async def test_low_coverage_is_reported_as_activity(
    settings: Any, features_for: Any, search_factory: Any, refs: Any
) -> None:
    backend = search_factory(hybrid=[SearchResult(references=refs(3), coverage=42.0)])
    pipeline = RetrievalPipeline(backend=backend, settings=settings)

    outcome = await pipeline.run(_request(features_for(settings, knowledge_agent=False)))

    assert [step.type for step in outcome.activity] == ["search", "low_coverage"]
    assert outcome.fallback_triggered is False


@pytest.mark.asyncio
async def test_federated_search_runs_before_the_ladder(
    with_settings: Any, features_for: Any, search_factory: Any, refs: Any
) -> None:
    settings = with_settings(
        federated_indexes=(
            FederatedIndex(name="ragwright", type="primary"),
            FederatedIndex(name="policies", weight=2.0),
        )
    )
    backend = search_factory(hybrid=[SearchResult(references=refs(3))])
    pipeline = RetrievalPipeline(backend=backend, settings=settings)

    outcome = await pipeline.run(
        _request(features_for(settings, knowledge_agent=False, multi_index_federation=True))
    )

    assert outcome.diagnostics.strategy == "federated"
    assert outcome.diagnostics.index_breakdown == {"ragwright": 3, "policies": 3}
    assert {call["index_name"] for call in backend.hybrid_calls} == {"ragwright", "policies"}
    assert len(outcome.references) == 3


@pytest.mark.asyncio
async def test_adaptive_retrieval_reformulates_weak_queries(
    settings: Any,
    features_for: Any,
    search_factory: Any,
    completion_factory: Any,
    refs: Any,
) -> None:
    completion = completion_factory(
        {
            "quality_assessment": [
                json.dumps({"coverage": 0.1}),
                json.dumps({"coverage": 0.9}),
            ],
            None: ['"refund policy for annual plans"'],
        }
    )
    backend = search_factory(hybrid=[SearchResult(references=refs(3))])
    pipeline = RetrievalPipeline(backend=backend, settings=settings, completion=completion)

    outcome = await pipeline.run(
        _request(
            features_for(settings, knowledge_agent=False, adaptive_retrieval=True),
            query="refunds?",
        )
    )

    assert [call["query"] for call in backend.hybrid_calls] == [
        "refunds?",
        "refund policy for annual plans",
    ]
    assert outcome.diagnostics.adaptive is not None
    assert outcome.diagnostics.adaptive.reformulations == ["refund policy for annual plans"]
    assert [attempt["attempt"] for attempt in outcome.diagnostics.adaptive.attempts] == [1, 2]


def test_lexical_diversity_bounds() -> None:
    same = [Reference(id=str(i), content="alpha beta gamma") for i in range(3)]
    distinct = [
        Reference(id="1", content="alpha beta"),
        Reference(id="2", content="gamma delta"),
    ]

    assert lexical_diversity(same) == 0.0
    assert lexical_diversity(distinct) == 1.0
    assert lexical_diversity(same[:1]) == 1.0
