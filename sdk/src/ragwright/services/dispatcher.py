from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Final

import anyio

from ragwright.features import FeatureResolution
from ragwright.retrieval.evidence_merger import (
    dedupe_web_results,
    merge_references,
    reciprocal_rank_fusion,
    web_result_to_reference,
)
from ragwright.retrieval.fallback import RetrievalPipeline, RetrievalRequest
from ragwright.retrieval.types import RetrievalOutcome, now_iso
from ragwright.retrieval.web_search import WebSearchBackend
from ragwright.schemas.rag_chat import ActivityStep, ChatMessage, Plan, Reference, WebResult
from ragwright.services.context_budget import format_reference_context
from ragwright.services.resilience import RetryPolicy
from ragwright.services.web_context import WebContext, build_web_context
from ragwright.settings import Settings

logger = logging.getLogger(__name__)

RRF_K: Final[int] = 60
RERANKING_TOP_K: Final[int] = 10


@dataclass(frozen=True)
class DispatchResult:
    """Evidence gathered for one turn.

    ``citations`` is the single ordered list the answer's ``[n]`` markers
    index into; ``context_text`` numbers its blocks in the same order.
    """

    citations: list[Reference]
    context_text: str
    activity: list[ActivityStep]
    retrieval: RetrievalOutcome | None = None
    web_results: list[WebResult] = field(default_factory=list)
    web_context: WebContext | None = None
    escalated: bool = False
    reranked: bool = False
    retrieval_time_ms: int | None = None

    @property
    def reference_count(self) -> int:
        return len(self.retrieval.references) if self.retrieval is not None else 0


def _activity(step_type: str, description: str) -> ActivityStep:
    return ActivityStep(type=step_type, description=description, timestamp=now_iso())


class ToolDispatcher:
    """Runs knowledge base and web retrieval as the plan asks.

    Low-confidence plans escalate to dual retrieval, with both sources
    queried concurrently. Knowledge base references always lead the
    citation list unless web reranking fuses the two.
    """

    def __init__(
        self,
        *,
        pipeline: RetrievalPipeline | None,
        web_search: WebSearchBackend | None,
        settings: Settings,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._web_search = web_search
        self._settings = settings
        self._retry_policy = retry_policy or settings.retry_policy()

    def wants_dual_retrieval(self, plan: Plan) -> bool:
        return plan.confidence < self._settings.planner_confidence_dual_retrieval

    async def dispatch(
        self,
        *,
        plan: Plan,
        question: str,
        messages: Sequence[ChatMessage],
        features: FeatureResolution,
        correlation_id: str | None = None,
    ) -> DispatchResult:
        settings = self._settings
        activity: list[ActivityStep] = []
        escalated = self.wants_dual_retrieval(plan)
        if escalated:
            activity.append(
                _activity(
                    "confidence_escalation",
                    f"Confidence {plan.confidence:.2f} below threshold "
                    f"{settings.planner_confidence_dual_retrieval:.2f}. Executing dual retrieval.",
                )
            )

        web_available = self._web_search is not None and features.is_enabled("web_search")
        want_web = web_available and (escalated or plan.action == "web_search")
        want_kb = self._pipeline is not None and (
            escalated
            or plan.action == "retrieve"
            or (plan.action == "web_search" and not web_available)
        )
        if plan.action == "web_search" and not web_available:
            activity.append(
                _activity(
                    "web_search_unavailable",
                    "Web search is disabled or not configured; using the knowledge base",
                )
            )

        if not want_kb and not want_web:
            return DispatchResult(citations=[], context_text="", activity=activity)

        holder: dict[str, object] = {}
        started = time.perf_counter()

        async def run_kb() -> None:
            assert self._pipeline is not None
            holder["kb"] = await self._pipeline.run(
                RetrievalRequest(
                    query=question,
                    features=features,
                    messages=tuple(messages),
                    correlation_id=correlation_id,
                )
            )

        async def run_web() -> None:
            holder["web"] = await self._search_web(question, activity)

        async with anyio.create_task_group() as tg:
            if want_kb:
                tg.start_soon(run_kb)
            if want_web:
                tg.start_soon(run_web)

        retrieval_time_ms = int((time.perf_counter() - started) * 1000)
        outcome = holder.get("kb")
        retrieval = outcome if isinstance(outcome, RetrievalOutcome) else None
        web_results = holder.get("web")
        web_list: list[WebResult] = web_results if isinstance(web_results, list) else []

        kb_refs = list(retrieval.references) if retrieval is not None else []
        if retrieval is not None:
            activity = [*retrieval.activity, *activity]
        return self._assemble(
            kb_refs=kb_refs,
            web_results=web_list,
            retrieval=retrieval,
            activity=activity,
            features=features,
            escalated=escalated,
            retrieval_time_ms=retrieval_time_ms,
        )

    async def _search_web(self, query: str, activity: list[ActivityStep]) -> list[WebResult]:
        assert self._web_search is not None
        web_search = self._web_search
        count = self._settings.web_results_max
        try:
            results = await self._retry_policy.run(
                "web-search", lambda _ctx: web_search.search(query, count)
            )
        except Exception as exc:
            logger.warning("Web search failed: %s", exc)
            activity.append(_activity("web_search_error", f"Web search failed: {exc}"))
            return []
        activity.append(
            _activity("web_search", f'Fetched {len(results)} web result(s) for "{query}"')
        )
        return results

    def _assemble(
        self,
        *,
        kb_refs: list[Reference],
        web_results: list[WebResult],
        retrieval: RetrievalOutcome | None,
        activity: list[ActivityStep],
        features: FeatureResolution,
        escalated: bool,
        retrieval_time_ms: int,
    ) -> DispatchResult:
        settings = self._settings
        model = settings.chat_model
        # One citation number per distinct web result.
        web_results = dedupe_web_results(web_results, exclude=kb_refs)

        web_context: WebContext | None = None
        if features.is_enabled("web_reranking") and kb_refs and web_results:
            web_refs = [web_result_to_reference(result) for result in web_results]
            citations = reciprocal_rank_fusion([kb_refs, web_refs], k=RRF_K, top_k=RERANKING_TOP_K)
            kept_web_ids = {
                ref.id for ref in citations if (ref.metadata or {}).get("source") == "web"
            }
            fused_web = [result for result in web_results if result.id in kept_web_ids]
            web_context = build_web_context(
                fused_web,
                max_results=settings.web_results_max,
                max_tokens=settings.web_context_max_tokens,
                model=model,
            )
            activity.append(
                _activity(
                    "reranking",
                    f"Applied RRF to {len(kb_refs)} knowledge base and {len(web_results)} web "
                    f"result(s) for {len(citations)} combined",
                )
            )
            context_text = format_reference_context(citations)
            reranked = True
        else:
            web_refs = []
            if web_results:
                web_context = build_web_context(
                    web_results,
                    max_results=settings.web_results_max,
                    max_tokens=settings.web_context_max_tokens,
                    model=model,
                    start_index=len(kb_refs) + 1,
                )
                web_refs = [web_result_to_reference(result) for result in web_context.results]
            citations = merge_references(kb_refs, web_refs)
            sections = [format_reference_context(kb_refs)] if kb_refs else []
            if web_context is not None and web_context.text:
                sections.append(web_context.text)
            context_text = "\n\n".join(sections)
            reranked = False

        if web_context is not None and web_context.trimmed:
            activity.append(
                _activity(
                    "web_context_trim",
                    f"Web context truncated to {len(web_context.results)} result(s) "
                    f"({web_context.tokens} tokens)",
                )
            )

        if retrieval is not None and retrieval.knowledge_agent_answer and context_text:
            context_text = (
                f"{context_text}\n\nKnowledge agent summary:\n{retrieval.knowledge_agent_answer}"
            )

        return DispatchResult(
            citations=citations,
            context_text=context_text,
            activity=activity,
            retrieval=retrieval,
            web_results=list(web_context.results) if web_context is not None else [],
            web_context=web_context,
            escalated=escalated,
            reranked=reranked,
            retrieval_time_ms=retrieval_time_ms,
        )
