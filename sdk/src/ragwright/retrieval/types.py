from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from ragwright.errors import KnowledgeAgentError
from ragwright.schemas.rag_chat import (
    ActivityStep,
    AdaptiveDiagnostics,
    ChatMessage,
    KnowledgeAgentDiagnostics,
    Reference,
    RetrievalDiagnostics,
)


def now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


@dataclass(frozen=True)
class SearchOptions:
    top: int
    filter: str | None = None
    reranker_threshold: float | None = None
    index_name: str | None = None
    messages: tuple[ChatMessage, ...] = ()
    correlation_id: str | None = None


@dataclass(frozen=True)
class SearchResult:
    references: list[Reference]
    coverage: float | None = None


@dataclass(frozen=True)
class KnowledgeAgentResult:
    references: list[Reference]
    answer: str | None = None
    grounding: dict[str, Any] | None = None
    correlation_id: str | None = None
    request_id: str | None = None


@dataclass(frozen=True)
class StrategyResult:
    references: list[Reference]
    coverage: float | None = None
    answer: str | None = None
    grounding: dict[str, Any] | None = None
    diagnostics: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RetrievalOutcome:
    references: list[Reference]
    activity: list[ActivityStep]
    fallback_triggered: bool
    fallback_attempts: int
    diagnostics: RetrievalDiagnostics
    knowledge_agent_answer: str | None = None
    knowledge_agent_grounding: dict[str, Any] | None = None


def _score_stats(references: list[Reference]) -> tuple[float | None, float | None, float | None]:
    scores = [ref.score for ref in references if ref.score is not None]
    if not scores:
        return None, None, None
    return sum(scores) / len(scores), min(scores), max(scores)


class RetrievalOutcomeBuilder:
    """Accumulates the result of one retrieval run step by step."""

    def __init__(self, *, strategy: str) -> None:
        self._strategy = strategy
        self._activity: list[ActivityStep] = []
        self._attempted: list[str] = []
        self._references: list[Reference] = []
        self._fallback_triggered = False
        self._fallback_attempts = 0
        self._retry_count = 0
        self._threshold_used: float | None = None
        self._coverage: float | None = None
        self._fallback_reason: str | None = None
        self._agent: KnowledgeAgentDiagnostics | None = None
        self._agent_answer: str | None = None
        self._agent_grounding: dict[str, Any] | None = None
        self._index_breakdown: dict[str, int] | None = None
        self._adaptive: AdaptiveDiagnostics | None = None

    @property
    def fallback_attempts(self) -> int:
        return self._fallback_attempts

    def use_strategy(self, strategy: str) -> None:
        self._strategy = strategy

    @property
    def references(self) -> list[Reference]:
        return list(self._references)

    def add_activity(self, step_type: str, description: str) -> None:
        self._activity.append(
            ActivityStep(type=step_type, description=description, timestamp=now_iso())
        )

    def record_attempt(self, strategy: str, *, threshold: float | None = None) -> None:
        self._attempted.append(strategy)
        if threshold is not None:
            self._threshold_used = threshold

    def record_primary_search(
        self,
        *,
        strategy: str,
        count: int,
        threshold: float | None,
        coverage: float | None,
    ) -> None:
        self.record_attempt(strategy, threshold=threshold)
        self._coverage = coverage
        self.add_activity("search", f"{strategy} search returned {count} result(s)")

    def record_fallback_stage(
        self,
        step_type: str,
        description: str,
        *,
        strategy: str,
        threshold: float | None = None,
        reason: str | None = None,
    ) -> None:
        self._fallback_triggered = True
        self._fallback_attempts += 1
        self.record_attempt(strategy, threshold=threshold)
        if reason is not None:
            self._fallback_reason = reason
        self.add_activity(step_type, description)

    def mark_fallback(self, reason: str) -> None:
        self._fallback_triggered = True
        self._fallback_reason = reason

    def record_retry(self, attempt: int) -> None:
        self._retry_count = max(self._retry_count, attempt)

    def record_knowledge_agent_success(self, result: StrategyResult) -> None:
        self.record_attempt("knowledge_agent")
        self._agent = KnowledgeAgentDiagnostics(
            correlation_id=result.diagnostics.get("correlation_id"),
            request_id=result.diagnostics.get("request_id"),
            documents=len(result.references),
        )
        self._agent_answer = result.answer
        self._agent_grounding = result.grounding
        self.add_activity(
            "knowledge_agent",
            f"Knowledge agent returned {len(result.references)} reference(s)",
        )

    def record_knowledge_agent_failure(
        self,
        error: KnowledgeAgentError,
        *,
        partial: list[Reference] | None = None,
    ) -> None:
        self.record_attempt("knowledge_agent")
        self._agent = KnowledgeAgentDiagnostics(
            phase=error.phase,
            status_code=error.status_code,
            correlation_id=error.correlation_id,
            request_id=error.request_id,
            message=str(error),
            documents=len(partial or []),
        )
        self.mark_fallback(f"knowledge_agent_{error.phase}")
        self.add_activity(
            "knowledge_agent_fallback",
            f"Knowledge agent {error.phase.replace('_', ' ')}; falling back to direct search",
        )

    def record_coverage(self, coverage: float | None) -> None:
        self._coverage = coverage

    def record_index_breakdown(self, breakdown: dict[str, int]) -> None:
        self._index_breakdown = dict(breakdown)

    def record_adaptive(self, adaptive: AdaptiveDiagnostics) -> None:
        self._adaptive = adaptive

    def set_references(self, references: list[Reference]) -> None:
        self._references = list(references)

    def build(self) -> RetrievalOutcome:
        mean_score, min_score, max_score = _score_stats(self._references)
        diagnostics = RetrievalDiagnostics(
            strategy=self._strategy,
            attempted=list(self._attempted),
            succeeded=bool(self._references),
            retry_count=self._retry_count,
            documents=len(self._references),
            mean_score=mean_score,
            min_score=min_score,
            max_score=max_score,
            threshold_used=self._threshold_used,
            coverage=self._coverage,
            fallback_reason=self._fallback_reason,
            knowledge_agent=self._agent,
            index_breakdown=self._index_breakdown,
            adaptive=self._adaptive,
        )
        # A degraded evidence set must not also carry the agent's confident summary.
        keep_agent_answer = not self._fallback_triggered
        return RetrievalOutcome(
            references=list(self._references),
            activity=list(self._activity),
            fallback_triggered=self._fallback_triggered,
            fallback_attempts=self._fallback_attempts,
            diagnostics=diagnostics,
            knowledge_agent_answer=self._agent_answer if keep_agent_answer else None,
            knowledge_agent_grounding=self._agent_grounding if keep_agent_answer else None,
        )
