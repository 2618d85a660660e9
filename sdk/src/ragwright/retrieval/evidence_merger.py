from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable

from ragwright.schemas.rag_chat import Reference, WebResult

logger = logging.getLogger(__name__)

_CONTENT_KEY_PREFIX = 64


def reference_key(reference: Reference) -> str:
    if reference.id:
        return reference.id
    content = (reference.content or "")[:_CONTENT_KEY_PREFIX]
    page = "" if reference.page_number is None else str(reference.page_number)
    return f"{reference.url or ''}|{page}|{content}"


def merge_references(
    preferred: Iterable[Reference],
    *others: Iterable[Reference],
    limit: int | None = None,
) -> list[Reference]:
    """Deduplicating union that keeps the preferred list's items first."""

    merged: list[Reference] = []
    seen: set[str] = set()
    for source in (preferred, *others):
        for reference in source:
            key = reference_key(reference)
            if key in seen:
                continue
            seen.add(key)
            merged.append(reference)
    if limit is not None:
        return merged[: max(0, limit)]
    return merged


def enforce_reranker_threshold(
    references: list[Reference],
    threshold: float | None,
    *,
    source: str = "search",
) -> list[Reference]:
    """Drop references scoring below ``threshold``.

    A missing or non-positive threshold disables filtering. Unscored
    references count as zero.
    """

    if threshold is None or threshold <= 0:
        return list(references)

    kept = [ref for ref in references if (ref.score or 0.0) >= threshold]
    removed = len(references) - len(kept)
    if removed:
        logger.info(
            "Reranker threshold %.2f removed %d of %d %s result(s)",
            threshold,
            removed,
            len(references),
            source,
        )
    return kept


def web_result_to_reference(result: WebResult) -> Reference:
    content = "\n".join(part for part in (result.snippet, result.body or "") if part)
    return Reference(
        id=result.id,
        title=result.title,
        content=content,
        url=result.url,
        score=None,
        metadata={"source": "web", "rank": result.rank},
    )


def dedupe_web_results(
    results: Iterable[WebResult], *, exclude: Iterable[Reference] = ()
) -> list[WebResult]:
    """Drop web results whose citation key repeats or is already taken by ``exclude``."""

    seen = {reference_key(reference) for reference in exclude}
    unique: list[WebResult] = []
    for result in results:
        key = reference_key(web_result_to_reference(result))
        if key in seen:
            continue
        seen.add(key)
        unique.append(result)
    return unique


def reciprocal_rank_fusion(
    ranked_lists: list[list[Reference]],
    *,
    k: int = 60,
    source_weights: list[float] | None = None,
    top_k: int | None = None,
) -> list[Reference]:
    """Merge and rerank evidence lists using reciprocal rank fusion (RRF)."""

    weights = source_weights or [1.0] * len(ranked_lists)
    fused_scores: dict[str, float] = defaultdict(float)
    exemplar: dict[str, Reference] = {}

    for weight, references in zip(weights, ranked_lists, strict=False):
        for rank, reference in enumerate(references, start=1):
            key = reference_key(reference)
            fused_scores[key] += weight / (k + rank)
            exemplar.setdefault(key, reference)

    merged: list[Reference] = []
    for key, score in fused_scores.items():
        base = exemplar[key]
        metadata = dict(base.metadata or {})
        metadata["rrf_score"] = score
        if base.score is not None:
            metadata.setdefault("original_score", base.score)
        merged.append(base.model_copy(update={"metadata": metadata}))

    merged.sort(key=lambda ref: (-float((ref.metadata or {})["rrf_score"]), ref.id))
    if top_k is not None:
        return merged[: max(1, top_k)]
    return merged
