from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field

from ragwright.errors import KnowledgeAgentError
from ragwright.features import FeatureResolution
from ragwright.retrieval.adaptive import AdaptiveRetriever
from ragwright.retrieval.evidence_merger import merge_references
from ragwright.retrieval.search_backend import SearchBackend
from ragwright.retrieval.strategies import (
    HybridSearchStrategy,
    KnowledgeAgentStrategy,
    RetrievalStrategy,
    RetrievalStrategyKind,
    VectorSearchStrategy,
    build_strategy,
)
from ragwright.retrieval.types import (
    RetrievalOutcome,
    RetrievalOutcomeBuilder,
    SearchOptions,
    StrategyResult,
)
from ragwright.schemas.rag_chat import ChatMessage, Reference
from ragwright.services.completion import CompletionBackend
from ragwright.services.resilience import RetryContext, is_retryable_error, with_retry
from ragwright.settings import Settings

logger = logging.getLogger(__name__)

# Whole-ladder retries on top of the per-call retries each stage already gets.
_LADDER_RETRIES = 1


@dataclass(frozen=True)
class RetrievalRequest:
    query: str
    features: FeatureResolution
    messages: Sequence[ChatMessage] = ()
    filter: str | None = None
    correlation_id: str | None = None


@dataclass
class _LadderState:
    agent_failed: bool = False
    agent_references: list[Reference] = field(default_factory=list)


class RetrievalPipeline:
    """Degradation ladder that tries to return at least ``retrieval_min_docs`` references.

    Stages, each only when the previous one came up short:

    1. knowledge agent (when enabled), then hybrid search at the configured
       reranker threshold (optionally through adaptive reformulation)
    2. hybrid search at the fallback threshold
    3. hybrid search at the threshold floor with twice the ``top``
    4. vector search

    Knowledge agent references are kept and merged ahead of later stages.
    If the ladder itself raises, one direct vector search is the safety net.
    """

    def __init__(
        self,
        *,
        backend: SearchBackend,
        settings: Settings,
        completion: CompletionBackend | None = None,
    ) -> None:
        self._settings = settings
        self._hybrid = HybridSearchStrategy(backend=backend)
        self._vector = VectorSearchStrategy(backend=backend)
        self._agent = KnowledgeAgentStrategy(
            backend=backend, max_messages=settings.knowledge_agent_max_messages
        )
        self._federated: RetrievalStrategy = build_strategy(
            RetrievalStrategyKind.FEDERATED, backend=backend, settings=settings
        )
        self._call_policy = settings.retry_policy()
        self._agent_policy = settings.retry_policy(
            timeout_s=settings.knowledge_agent_timeout_s, max_retries=0
        )
        self._adaptive: AdaptiveRetriever | None = None
        if completion is not None:
            self._adaptive = AdaptiveRetriever(
                strategy=self._hybrid,
                completion=completion,
                model=settings.utility_model,
                retry_policy=self._call_policy,
                max_attempts=settings.adaptive_max_attempts,
                min_coverage=settings.adaptive_min_coverage,
                min_diversity=settings.adaptive_min_diversity,
            )

    async def run(self, request: RetrievalRequest) -> RetrievalOutcome:
        settings = self._settings
        use_agent = request.features.is_enabled("knowledge_agent")
        builder = RetrievalOutcomeBuilder(
            strategy=(
                RetrievalStrategyKind.KNOWLEDGE_AGENT if use_agent else RetrievalStrategyKind.HYBRID
            ).value
        )

        if request.features.is_enabled("multi_index_federation"):
            federated = await self._try_federated(request, builder)
            if federated:
                builder.use_strategy(RetrievalStrategyKind.FEDERATED.value)
                builder.set_references(federated)
                return builder.build()

        state = _LadderState()

        async def attempt(context: RetryContext) -> list[Reference]:
            builder.record_retry(context.attempt)
            return await self._run_ladder(request, builder, state, use_agent=use_agent)

        try:
            references = await with_retry(
                "direct-search",
                attempt,
                max_retries=_LADDER_RETRIES,
                timeout_s=None,
                retryable_errors=self._call_policy.retryable_errors,
                initial_delay_s=settings.retry_initial_delay_s,
                max_delay_s=settings.retry_max_delay_s,
            )
        except Exception as exc:
            references = await self._safety_net(request, builder, exc)

        builder.set_references(references)
        return builder.build()

    async def _try_federated(
        self, request: RetrievalRequest, builder: RetrievalOutcomeBuilder
    ) -> list[Reference]:
        options = SearchOptions(
            top=self._settings.rag_top_k,
            filter=request.filter,
            reranker_threshold=self._settings.reranker_threshold,
        )
        try:
            result = await self._call_policy.run(
                "federated-search", lambda _ctx: self._federated.search(request.query, options)
            )
        except Exception as exc:
            logger.warning("Federated search failed, continuing with the fallback ladder: %s", exc)
            builder.add_activity("federated_search_failed", f"Federated search failed: {exc}")
            return []

        builder.record_attempt(RetrievalStrategyKind.FEDERATED.value)
        breakdown = result.diagnostics.get("index_breakdown")
        if isinstance(breakdown, dict):
            builder.record_index_breakdown(breakdown)
        builder.add_activity(
            "federated_search",
            f"Federated search returned {len(result.references)} result(s)",
        )
        return result.references

    async def _run_agent(
        self,
        request: RetrievalRequest,
        builder: RetrievalOutcomeBuilder,
        state: _LadderState,
    ) -> list[Reference] | None:
        """Return the agent's references when they suffice, else ``None``."""

        settings = self._settings
        correlation_id = request.correlation_id or uuid.uuid4().hex
        options = SearchOptions(
            top=settings.rag_top_k,
            filter=request.filter,
            reranker_threshold=settings.reranker_threshold,
            messages=tuple(request.messages),
            correlation_id=correlation_id,
        )
        try:
            result = await self._agent_policy.run(
                "knowledge-agent", lambda _ctx: self._agent.search(request.query, options)
            )
        except Exception as exc:
            error = (
                exc
                if isinstance(exc, KnowledgeAgentError)
                else KnowledgeAgentError(
                    f"Knowledge agent invocation failed: {exc}",
                    phase="invocation",
                    correlation_id=correlation_id,
                )
            )
            logger.warning(
                "Knowledge agent invocation failed (correlation_id=%s, status=%s): %s",
                error.correlation_id,
                error.status_code,
                error,
            )
            state.agent_failed = True
            builder.record_knowledge_agent_failure(error)
            return None

        if len(result.references) >= settings.retrieval_min_docs:
            builder.record_knowledge_agent_success(result)
            return result.references

        phase = "partial_results" if result.references else "zero_results"
        builder.record_knowledge_agent_failure(
            KnowledgeAgentError(
                f"Knowledge agent returned {len(result.references)} reference(s)",
                phase=phase,
                correlation_id=result.diagnostics.get("correlation_id") or correlation_id,
                request_id=result.diagnostics.get("request_id"),
            ),
            partial=result.references,
        )
        state.agent_references = list(result.references)
        return None

    async def _search_stage(
        self,
        label: str,
        strategy: RetrievalStrategy,
        query: str,
        options: SearchOptions,
        *,
        last_stage: bool = False,
    ) -> StrategyResult | None:
        """Run one stage; ``None`` means transient failures exhausted its retries."""

        try:
            return await self._call_policy.run(label, lambda _ctx: strategy.search(query, options))
        except Exception as exc:
            if last_stage or not is_retryable_error(exc, self._call_policy.retryable_errors):
                raise
            logger.warning("%s failed after retries, degrading to the next stage: %s", label, exc)
            return None

    async def _run_primary(
        self,
        request: RetrievalRequest,
        builder: RetrievalOutcomeBuilder,
        options: SearchOptions,
    ) -> StrategyResult | None:
        if self._adaptive is not None and request.features.is_enabled("adaptive_retrieval"):
            try:
                adaptive = await self._adaptive.run(request.query, options)
            except Exception as exc:
                if not is_retryable_error(exc, self._call_policy.retryable_errors):
                    raise
                logger.warning("Adaptive retrieval failed, degrading: %s", exc)
                return None
            builder.record_adaptive(adaptive.diagnostics())
            return adaptive.result
        return await self._search_stage("hybrid-search", self._hybrid, request.query, options)

    async def _run_ladder(
        self,
        request: RetrievalRequest,
        builder: RetrievalOutcomeBuilder,
        state: _LadderState,
        *,
        use_agent: bool,
    ) -> list[Reference]:
        settings = self._settings
        top = settings.rag_top_k
        min_docs = settings.retrieval_min_docs

        if use_agent:
            if state.agent_failed:
                builder.add_activity(
                    "knowledge_agent_skipped",
                    "Knowledge agent skipped after an invocation failure earlier in this request",
                )
            else:
                agent_references = await self._run_agent(request, builder, state)
                if agent_references is not None:
                    return agent_references

        preferred = state.agent_references

        primary_options = SearchOptions(
            top=top, filter=request.filter, reranker_threshold=settings.reranker_threshold
        )
        primary = await self._run_primary(request, builder, primary_options)
        primary_refs = primary.references if primary is not None else []
        builder.record_primary_search(
            strategy=RetrievalStrategyKind.HYBRID.value,
            count=len(primary_refs),
            threshold=settings.reranker_threshold,
            coverage=primary.coverage if primary is not None else None,
        )
        if primary is None:
            builder.add_activity("search_failed", "Hybrid search failed after retries")
        elif primary.coverage is not None and primary.coverage < settings.search_min_coverage:
            builder.add_activity(
                "low_coverage",
                f"Search coverage {primary.coverage:.1f}% is below "
                f"{settings.search_min_coverage:.1f}%",
            )
        merged = merge_references(preferred, primary_refs)
        if len(merged) >= min_docs:
            return merged

        fallback_threshold = settings.fallback_reranker_threshold
        relaxed = await self._search_stage(
            "fallback-search",
            self._hybrid,
            request.query,
            SearchOptions(top=top, filter=request.filter, reranker_threshold=fallback_threshold),
        )
        relaxed_refs = relaxed.references if relaxed is not None else []
        builder.record_fallback_stage(
            "fallback_search",
            _stage_description(
                f"Hybrid search at reranker threshold {fallback_threshold}", relaxed
            ),
            strategy=RetrievalStrategyKind.HYBRID.value,
            threshold=fallback_threshold,
            reason="insufficient_results",
        )
        merged = merge_references(preferred, merged, relaxed_refs)
        if len(merged) >= min_docs:
            return merged

        floor = settings.threshold_floor
        expanded = await self._search_stage(
            "fallback-search-expanded",
            self._hybrid,
            request.query,
            SearchOptions(top=top * 2, filter=request.filter, reranker_threshold=floor),
        )
        builder.record_fallback_stage(
            "fallback_search_expanded",
            _stage_description(
                f"Hybrid search at threshold floor {floor} with top {top * 2}", expanded
            ),
            strategy=RetrievalStrategyKind.HYBRID.value,
            threshold=floor,
            reason="insufficient_results",
        )
        merged = merge_references(
            preferred, merged, expanded.references if expanded is not None else []
        )
        if len(merged) >= min_docs:
            return merged

        vector = await self._search_stage(
            "fallback-vector-search",
            self._vector,
            request.query,
            SearchOptions(top=top, filter=request.filter),
            last_stage=True,
        )
        builder.record_fallback_stage(
            "fallback_vector_search",
            _stage_description("Vector search", vector),
            strategy=RetrievalStrategyKind.VECTOR.value,
            reason="insufficient_results",
        )
        return merge_references(preferred, merged, vector.references if vector is not None else [])

    async def _safety_net(
        self,
        request: RetrievalRequest,
        builder: RetrievalOutcomeBuilder,
        error: Exception,
    ) -> list[Reference]:
        logger.warning("Retrieval pipeline failed (%s); running direct vector search", error)
        try:
            async with asyncio.timeout(self._settings.request_timeout_s):
                result = await self._vector.search(
                    request.query,
                    SearchOptions(top=self._settings.rag_top_k, filter=request.filter),
                )
        except Exception as exc:
            logger.warning("Safety-net vector search failed: %s", exc)
            builder.mark_fallback(f"vector_safety_net_failed: {exc}")
            builder.add_activity("fallback_search_error", f"Direct vector search failed: {exc}")
            return []

        builder.record_fallback_stage(
            "fallback_vector_search",
            f"Direct vector search after pipeline failure returned {len(result.references)} "
            "result(s)",
            strategy=RetrievalStrategyKind.VECTOR.value,
            reason=f"pipeline_error: {error}",
        )
        return result.references


def _stage_description(prefix: str, result: StrategyResult | None) -> str:
    if result is None:
        return f"{prefix} failed after retries"
    return f"{prefix} returned {len(result.references)} result(s)"
