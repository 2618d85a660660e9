from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from typing import Any, Final

from ragwright.schemas.rag_chat import ChatMessage, Plan
from ragwright.services.completion import CompletionBackend, CompletionRequest, parse_json_object
from ragwright.services.resilience import RetryPolicy

logger = logging.getLogger(__name__)

QUESTION_LENGTH_THRESHOLD: Final[int] = 60
# Confidence ceiling for heuristic plans used after the model planner failed.
FALLBACK_CONFIDENCE: Final[float] = 0.3

_RECENCY_RE = re.compile(
    r"\b(latest|current|currently|today|recent|recently|news|breaking|"
    r"this (?:week|month|year)|right now)\b",
    re.IGNORECASE,
)
_INTERROGATIVE_RE = re.compile(
    r"^\s*(who|what|when|where|why|how|which|whose|whom|is|are|was|were|do|does|did|"
    r"can|could|should|would|will|explain|describe|compare|list|summarize|tell me)\b",
    re.IGNORECASE,
)

_PLAN_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "action": {"type": "string", "enum": ["retrieve", "answer", "web_search"]},
        "reasoning": {"type": "string"},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
    },
    "required": ["action", "reasoning", "confidence"],
}

_PLANNER_INSTRUCTIONS = (
    "You decide how an assistant should answer the latest user turn. Choose one action:\n"
    "- retrieve: the answer needs facts from the internal knowledge base\n"
    "- web_search: the user asks for current or recent information from the open web\n"
    "- answer: small talk or a reply that needs no evidence\n"
    "Return JSON with action, a one-sentence reasoning, and your confidence from 0 to 1."
)


def heuristic_plan(messages: Sequence[ChatMessage]) -> Plan:
    if not messages:
        return Plan(action="answer", reasoning="No messages to plan for", confidence=1.0)

    last = messages[-1]
    if last.role != "user":
        return Plan(
            action="answer",
            reasoning="Last turn is not from the user; nothing to retrieve for",
            confidence=1.0,
        )

    text = last.content.strip()
    if _RECENCY_RE.search(text):
        return Plan(
            action="web_search",
            reasoning="Question asks for recent or current information",
            confidence=0.6,
        )
    if "?" in text or _INTERROGATIVE_RE.search(text):
        return Plan(
            action="retrieve",
            reasoning="Question-like input needs grounding evidence",
            confidence=0.7,
        )
    if len(text) > QUESTION_LENGTH_THRESHOLD:
        return Plan(
            action="retrieve",
            reasoning="Long request likely needs grounding evidence",
            confidence=0.5,
        )
    return Plan(action="answer", reasoning="Conversational turn", confidence=0.6)


class Planner:
    """Chooses retrieve / answer / web_search for the latest turn.

    Uses a structured model call when available and falls back to the
    heuristic on any failure; planning never fails a request.
    """

    def __init__(
        self,
        *,
        completion: CompletionBackend | None = None,
        model: str | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._completion = completion
        self._model = model
        self._retry_policy = retry_policy or RetryPolicy(max_retries=0)

    async def decide_plan(
        self, messages: Sequence[ChatMessage], *, use_model: bool = True
    ) -> Plan:
        heuristic = heuristic_plan(messages)
        if not messages or messages[-1].role != "user":
            return heuristic
        if not use_model or self._completion is None or not self._model:
            return heuristic

        try:
            return await self._model_plan(messages)
        except Exception as exc:
            logger.warning("Planner model call failed, using heuristic plan: %s", exc)
            return heuristic.model_copy(
                update={
                    "confidence": min(heuristic.confidence, FALLBACK_CONFIDENCE),
                    "source": "fallback",
                    "reasoning": f"{heuristic.reasoning} (planner fallback)",
                }
            )

    async def _model_plan(self, messages: Sequence[ChatMessage]) -> Plan:
        assert self._completion is not None and self._model is not None
        recent = [message for message in messages if message.role != "system"][-6:]
        transcript = "\n".join(f"{message.role}: {message.content}" for message in recent)
        request = CompletionRequest(
            model=self._model,
            messages=[
                ChatMessage(role="system", content=_PLANNER_INSTRUCTIONS),
                ChatMessage(role="user", content=transcript),
            ],
            temperature=0.0,
            json_schema=_PLAN_SCHEMA,
            schema_name="plan",
        )
        completion_backend = self._completion
        completion = await self._retry_policy.run(
            "planner", lambda _ctx: completion_backend.complete(request)
        )
        payload = parse_json_object(completion.text)
        return Plan(
            action=payload["action"],
            reasoning=str(payload.get("reasoning") or "").strip() or "Model plan",
            confidence=float(payload["confidence"]),
            source="model",
        )
