from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from ragwright.schemas.rag_chat import WebContextSummary, WebResult
from ragwright.services.context_budget import estimate_tokens, trim_to_tokens


@dataclass(frozen=True)
class WebContext:
    text: str
    tokens: int
    trimmed: bool
    results: list[WebResult]

    def summary(self) -> WebContextSummary:
        return WebContextSummary(
            tokens=self.tokens,
            trimmed=self.trimmed,
            results=[
                {"id": result.id, "title": result.title, "url": result.url, "rank": result.rank}
                for result in self.results
            ],
        )


def build_web_context(
    results: Sequence[WebResult],
    *,
    max_results: int,
    max_tokens: int,
    model: str,
    start_index: int = 1,
) -> WebContext:
    """Render web results as numbered blocks within a token budget.

    Numbering starts at ``start_index`` so web blocks can follow knowledge
    base references in one citation sequence.
    """

    selected = list(results)[: max(0, max_results)]
    blocks: list[str] = []
    kept: list[WebResult] = []
    used = 0
    trimmed = len(selected) < len(results)

    for offset, result in enumerate(selected):
        body = "\n".join(part for part in (result.snippet, result.body or "") if part).strip()
        block = f"[{start_index + offset}] {result.title}\n{result.url}\n{body}".strip()
        cost = estimate_tokens(block, model=model)
        remaining = max_tokens - used
        if cost > remaining:
            trimmed = True
            if remaining > 0 and not kept:
                block, _ = trim_to_tokens(block, remaining, model=model)
                blocks.append(block)
                kept.append(result)
                used += estimate_tokens(block, model=model)
            break
        blocks.append(block)
        kept.append(result)
        used += cost

    return WebContext(text="\n\n".join(blocks), tokens=used, trimmed=trimmed, results=kept)
