from __future__ import annotations

import logging
from typing import Any

from ragwright.schemas.rag_chat import ChatMessage, Critique
from ragwright.services.completion import CompletionBackend, CompletionRequest, parse_json_object
from ragwright.services.resilience import RetryPolicy

logger = logging.getLogger(__name__)

_CRITIQUE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "score": {"type": "number", "minimum": 0, "maximum": 1},
        "reasoning": {"type": "string"},
        "action": {"type": "string", "enum": ["accept", "revise"]},
        "suggestions": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["score", "reasoning", "action", "suggestions"],
}

_CRITIC_INSTRUCTIONS = (
    "You are a strict fact-checking reviewer. Evaluate whether the draft answer is fully "
    "supported by the evidence, cites it with [n] markers that exist in the evidence, and "
    "answers the question asked. Score from 0 (unsupported) to 1 (fully grounded and complete). "
    'Choose "accept" when the draft can be shown to the user as is, otherwise "revise" and list '
    "concrete suggestions for the next draft."
)


def apply_acceptance_rule(critique: Critique, threshold: float) -> Critique:
    """Accept when the reviewer says so or the score clears ``threshold``."""

    if critique.action == "accept" or critique.score >= threshold:
        return critique.model_copy(update={"action": "accept"})
    return critique


class Critic:
    """Scores a draft against its evidence; never fails the request."""

    def __init__(
        self,
        *,
        completion: CompletionBackend,
        model: str,
        threshold: float = 0.8,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._completion = completion
        self._model = model
        self._threshold = threshold
        self._retry_policy = retry_policy or RetryPolicy(max_retries=0)

    @property
    def threshold(self) -> float:
        return self._threshold

    async def critique(self, draft: str, context: str, question: str) -> Critique:
        request = CompletionRequest(
            model=self._model,
            messages=[
                ChatMessage(role="system", content=_CRITIC_INSTRUCTIONS),
                ChatMessage(
                    role="user",
                    content=(
                        f"Question: {question}\n\nEvidence:\n{context or '(no evidence)'}"
                        f"\n\nDraft answer:\n{draft}"
                    ),
                ),
            ],
            temperature=0.0,
            json_schema=_CRITIQUE_SCHEMA,
            schema_name="critique",
        )
        completion_backend = self._completion
        try:
            completion = await self._retry_policy.run(
                "critic", lambda _ctx: completion_backend.complete(request)
            )
            payload = parse_json_object(completion.text)
            critique = Critique(
                score=float(payload["score"]),
                reasoning=str(payload.get("reasoning") or ""),
                action=payload["action"],
                suggestions=[str(item) for item in payload.get("suggestions") or []],
            )
        except Exception as exc:
            logger.warning("Critic evaluation failed, accepting draft: %s", exc)
            return Critique(
                score=self._threshold,
                reasoning=f"Critic evaluation failed: {exc}",
                action="accept",
                suggestions=[],
            )
        return apply_acceptance_rule(critique, self._threshold)
