from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Final

from ragwright.schemas.rag_chat import ChatMessage, Intent, RouteSummary
from ragwright.services.completion import CompletionBackend, CompletionRequest, parse_json_object
from ragwright.services.resilience import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouteConfig:
    intent: Intent
    model: str
    max_tokens: int
    prompt_hint: str


@dataclass(frozen=True)
class IntentRoute:
    config: RouteConfig
    confidence: float
    reasoning: str

    @property
    def intent(self) -> Intent:
        return self.config.intent

    def summary(self) -> RouteSummary:
        return RouteSummary(
            intent=self.config.intent,
            confidence=self.confidence,
            reasoning=self.reasoning,
            model=self.config.model,
            max_output_tokens=self.config.max_tokens,
        )


def build_route_configs(*, chat_model: str, utility_model: str) -> dict[Intent, RouteConfig]:
    return {
        "faq": RouteConfig(
            intent="faq",
            model=utility_model,
            max_tokens=800,
            prompt_hint="Answer briefly and directly; one short paragraph is enough.",
        ),
        "research": RouteConfig(
            intent="research",
            model=chat_model,
            max_tokens=4000,
            prompt_hint=(
                "Give a thorough, well-structured answer that compares sources "
                "and notes where they disagree."
            ),
        ),
        "factual_lookup": RouteConfig(
            intent="factual_lookup",
            model=utility_model,
            max_tokens=600,
            prompt_hint="State the requested fact precisely and cite the exact source.",
        ),
        "conversational": RouteConfig(
            intent="conversational",
            model=utility_model,
            max_tokens=400,
            prompt_hint="Reply in a friendly conversational tone.",
        ),
    }


_GREETING_RE = re.compile(
    r"^\s*(hi|hello|hey|thanks|thank you|good (?:morning|afternoon|evening)|bye)\b",
    re.IGNORECASE,
)
_LOOKUP_RE = re.compile(
    r"^\s*(when|where|who|how (?:much|many|old|long)|what is the (?:date|number|name|price))\b",
    re.IGNORECASE,
)
_RESEARCH_RE = re.compile(
    r"\b(compare|analy[sz]e|explain why|pros and cons|trade-?offs?|in depth|detailed|"
    r"evaluate|impact of)\b",
    re.IGNORECASE,
)
_FAQ_RE = re.compile(r"^\s*(how (?:do|can|should) i|can i|is it possible|what is)\b", re.IGNORECASE)

_INTENT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "intent": {
            "type": "string",
            "enum": ["faq", "research", "factual_lookup", "conversational"],
        },
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        "reasoning": {"type": "string"},
    },
    "required": ["intent", "confidence", "reasoning"],
}

_ROUTER_INSTRUCTIONS = (
    "Classify the user's latest message into one intent:\n"
    "- faq: a common how-to or policy question with a short answer\n"
    "- research: an open question that needs synthesis across several sources\n"
    "- factual_lookup: a single precise fact (a date, number, name)\n"
    "- conversational: greetings, thanks, or chit-chat\n"
    "Return JSON with intent, confidence from 0 to 1, and a one-sentence reasoning."
)

DEFAULT_INTENT: Final[Intent] = "research"


def heuristic_intent(question: str) -> tuple[Intent, float, str]:
    text = question.strip()
    if not text or _GREETING_RE.search(text):
        return "conversational", 0.6, "Greeting or short social turn"
    if _RESEARCH_RE.search(text):
        return "research", 0.6, "Request asks for analysis or comparison"
    if _LOOKUP_RE.search(text):
        return "factual_lookup", 0.55, "Question asks for a single fact"
    if _FAQ_RE.search(text):
        return "faq", 0.5, "How-to style question"
    return DEFAULT_INTENT, 0.4, "No specific intent signal; defaulting to research"


class IntentRouter:
    """Maps the latest user turn to a route that picks the synthesis model and style."""

    def __init__(
        self,
        *,
        routes: dict[Intent, RouteConfig],
        completion: CompletionBackend | None = None,
        model: str | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._routes = routes
        self._completion = completion
        self._model = model
        self._retry_policy = retry_policy or RetryPolicy(max_retries=0)

    def route_for(self, intent: Intent) -> RouteConfig:
        return self._routes[intent]

    async def classify(self, messages: Sequence[ChatMessage], *, enabled: bool) -> IntentRoute:
        if not enabled:
            return IntentRoute(
                config=self._routes[DEFAULT_INTENT],
                confidence=1.0,
                reasoning="Intent routing disabled",
            )

        question = next(
            (message.content for message in reversed(messages) if message.role == "user"), ""
        )
        if self._completion is not None and self._model:
            try:
                return await self._model_route(question)
            except Exception as exc:
                logger.warning("Intent classification failed, using heuristic route: %s", exc)

        intent, confidence, reasoning = heuristic_intent(question)
        return IntentRoute(config=self._routes[intent], confidence=confidence, reasoning=reasoning)

    async def _model_route(self, question: str) -> IntentRoute:
        assert self._completion is not None and self._model is not None
        request = CompletionRequest(
            model=self._model,
            messages=[
                ChatMessage(role="system", content=_ROUTER_INSTRUCTIONS),
                ChatMessage(role="user", content=question),
            ],
            temperature=0.0,
            json_schema=_INTENT_SCHEMA,
            schema_name="intent",
        )
        completion_backend = self._completion
        completion = await self._retry_policy.run(
            "intent-router", lambda _ctx: completion_backend.complete(request)
        )
        payload = parse_json_object(completion.text)
        intent = payload["intent"]
        if intent not in self._routes:
            raise ValueError(f"Unknown intent {intent!r}")
        confidence = min(max(float(payload.get("confidence", 0.0)), 0.0), 1.0)
        return IntentRoute(
            config=self._routes[intent],
            confidence=confidence,
            reasoning=str(payload.get("reasoning") or "").strip() or "Model route",
        )
