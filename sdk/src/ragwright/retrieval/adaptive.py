from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from ragwright.retrieval.strategies import RetrievalStrategy
from ragwright.retrieval.types import SearchOptions, StrategyResult
from ragwright.schemas.rag_chat import AdaptiveDiagnostics, ChatMessage, Reference
from ragwright.services.completion import CompletionBackend, CompletionRequest, parse_json_object
from ragwright.services.resilience import RetryPolicy

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"[a-z0-9]+")

_COVERAGE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {"coverage": {"type": "number", "minimum": 0, "maximum": 1}},
    "required": ["coverage"],
}

# Semantic reranker scores fall roughly in 0..3 for useful matches.
_AUTHORITY_SCALE = 3.0
_NEUTRAL_COVERAGE = 0.5


@dataclass(frozen=True)
class RetrievalQuality:
    coverage: float
    diversity: float
    authority: float


@dataclass
class AdaptiveRetrievalResult:
    result: StrategyResult
    quality: RetrievalQuality
    attempts: list[dict[str, Any]] = field(default_factory=list)
    reformulations: list[str] = field(default_factory=list)

    def diagnostics(self) -> AdaptiveDiagnostics:
        return AdaptiveDiagnostics(
            attempts=list(self.attempts),
            reformulations=list(self.reformulations),
        )


def _query_hash(query: str) -> str:
    return hashlib.sha256(query.encode("utf-8")).hexdigest()[:12]


def lexical_diversity(references: list[Reference]) -> float:
    """One minus the mean pairwise Jaccard overlap of the references' words."""

    if len(references) < 2:
        return 1.0
    word_sets = [set(_WORD_RE.findall((ref.content or "").lower())) for ref in references]
    word_sets = [words for words in word_sets if words]
    if len(word_sets) < 2:
        return _NEUTRAL_COVERAGE

    total = 0.0
    pairs = 0
    for i in range(len(word_sets)):
        for j in range(i + 1, len(word_sets)):
            union = word_sets[i] | word_sets[j]
            total += len(word_sets[i] & word_sets[j]) / len(union)
            pairs += 1
    return 1.0 - total / pairs


class AdaptiveRetriever:
    """Hybrid retrieval that reformulates the query while results look weak.

    Runs at most ``max_attempts`` searches; every attempt is recorded in order
    and the final attempt's references are returned.
    """

    def __init__(
        self,
        *,
        strategy: RetrievalStrategy,
        completion: CompletionBackend,
        model: str,
        retry_policy: RetryPolicy,
        max_attempts: int = 3,
        min_coverage: float = 0.4,
        min_diversity: float = 0.3,
    ) -> None:
        self._strategy = strategy
        self._completion = completion
        self._model = model
        self._retry_policy = retry_policy
        self._max_attempts = max(1, max_attempts)
        self._min_coverage = min_coverage
        self._min_diversity = min_diversity

    async def assess(self, references: list[Reference], query: str) -> RetrievalQuality:
        scores = [ref.score for ref in references if ref.score is not None]
        average = sum(scores) / len(scores) if scores else 0.0
        return RetrievalQuality(
            coverage=await self._assess_coverage(references, query),
            diversity=lexical_diversity(references),
            authority=min(average / _AUTHORITY_SCALE, 1.0),
        )

    async def _assess_coverage(self, references: list[Reference], query: str) -> float:
        if not references:
            return 0.0
        preview = "\n\n".join(
            f"[{idx}] {(ref.content or '')[:200]}" for idx, ref in enumerate(references[:5], 1)
        )
        request = CompletionRequest(
            model=self._model,
            messages=[
                ChatMessage(
                    role="system",
                    content=(
                        "Rate 0.0-1.0 how well these documents cover all aspects of the "
                        'question. Return only a JSON object with a "coverage" number field.'
                    ),
                ),
                ChatMessage(role="user", content=f"Question: {query}\n\nDocuments:\n{preview}"),
            ],
            temperature=0.0,
            json_schema=_COVERAGE_SCHEMA,
            schema_name="quality_assessment",
        )
        try:
            completion = await self._retry_policy.run(
                "adaptive-coverage", lambda _ctx: self._completion.complete(request)
            )
            coverage = parse_json_object(completion.text).get("coverage")
        except Exception as exc:
            logger.warning("Coverage assessment failed, using neutral score: %s", exc)
            return _NEUTRAL_COVERAGE
        if isinstance(coverage, (int, float)) and not isinstance(coverage, bool):
            return min(max(float(coverage), 0.0), 1.0)
        return _NEUTRAL_COVERAGE

    async def _reformulate(self, query: str, quality: RetrievalQuality, retrieved: int) -> str:
        request = CompletionRequest(
            model=self._model,
            messages=[
                ChatMessage(
                    role="system",
                    content=(
                        "Reformulate this search query to be more specific, keyword-rich, and "
                        "improve retrieval recall. Return ONLY the reformulated query."
                    ),
                ),
                ChatMessage(
                    role="user",
                    content=(
                        f"Original query: {query}\n\nCurrent retrieval:\n"
                        f"- Coverage: {quality.coverage:.2f} (target: >={self._min_coverage})\n"
                        f"- Diversity: {quality.diversity:.2f} (target: >={self._min_diversity})\n"
                        f"- Documents retrieved: {retrieved}"
                    ),
                ),
            ],
            temperature=0.3,
        )
        completion = await self._retry_policy.run(
            "adaptive-reformulate", lambda _ctx: self._completion.complete(request)
        )
        return completion.text.strip().strip('"')

    def _needs_reformulation(self, quality: RetrievalQuality) -> bool:
        return quality.coverage < self._min_coverage or quality.diversity < self._min_diversity

    async def run(self, query: str, options: SearchOptions) -> AdaptiveRetrievalResult:
        attempts: list[dict[str, Any]] = []
        reformulations: list[str] = []
        current_query = query

        for attempt in range(1, self._max_attempts + 1):
            result = await self._strategy.search(current_query, options)
            quality = await self.assess(result.references, current_query)
            attempts.append(
                {
                    "attempt": attempt,
                    "query": current_query,
                    "documents": len(result.references),
                    "coverage": round(quality.coverage, 3),
                    "diversity": round(quality.diversity, 3),
                    "authority": round(quality.authority, 3),
                }
            )

            if attempt >= self._max_attempts or not self._needs_reformulation(quality):
                break

            logger.info(
                "Adaptive retrieval quality low (coverage=%.3f diversity=%.3f) for query %s",
                quality.coverage,
                quality.diversity,
                _query_hash(current_query),
            )
            try:
                reformulated = await self._reformulate(
                    current_query, quality, len(result.references)
                )
            except Exception as exc:
                logger.warning("Query reformulation failed, keeping current results: %s", exc)
                break
            if not reformulated or reformulated == current_query:
                break
            reformulations.append(reformulated)
            current_query = reformulated

        return AdaptiveRetrievalResult(
            result=result,
            quality=quality,
            attempts=attempts,
            reformulations=reformulations,
        )
