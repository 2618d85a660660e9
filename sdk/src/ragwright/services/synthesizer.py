from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Final

from ragwright.errors import SynthesisError
from ragwright.features import FeatureResolution
from ragwright.schemas.rag_chat import ChatMessage, Reference
from ragwright.services.citation_validator import NO_EVIDENCE_ANSWER, CitationValidator
from ragwright.services.completion import CompletionBackend, CompletionRequest
from ragwright.services.intent_router import RouteConfig
from ragwright.services.resilience import RetryPolicy

logger = logging.getLogger(__name__)

SYSTEM_PROMPT: Final[str] = (
    "Respond using ONLY the provided context. Cite evidence inline as [1], [2], etc., "
    "using the numbers of the context blocks. "
    'Say "I do not know" if grounding is insufficient.'
)
SYNTHESIS_TEMPERATURE: Final[float] = 0.4


@dataclass(frozen=True)
class SynthesisResult:
    answer: str
    citations: list[Reference]
    response_id: str | None = None
    usage: dict[str, int] = field(default_factory=dict)
    citation_issues: list[str] = field(default_factory=list)


def build_user_prompt(
    question: str, context: str, revision_notes: Sequence[str] | None = None
) -> str:
    prompt = f"Question: {question}\n\nContext:\n{context}"
    notes = [note.strip() for note in revision_notes or [] if note and note.strip()]
    if notes:
        numbered = "\n".join(f"{idx}. {note}" for idx, note in enumerate(notes, start=1))
        prompt += f"\n\nRevision guidance (address these issues):\n{numbered}"
    return prompt


class AnswerSynthesizer:
    """Generates a cited answer from assembled context.

    Every answer passes through citation validation before it is returned;
    an answer whose markers do not line up with ``citations`` is replaced by
    an "I do not know" sentence.
    """

    def __init__(
        self,
        *,
        completion: CompletionBackend,
        model: str,
        retry_policy: RetryPolicy | None = None,
        citation_validator: CitationValidator | None = None,
    ) -> None:
        self._completion = completion
        self._model = model
        self._retry_policy = retry_policy or RetryPolicy()
        self._citation_validator = citation_validator or CitationValidator()

    def _request(
        self,
        *,
        question: str,
        context: str,
        revision_notes: Sequence[str] | None,
        previous_response_id: str | None,
        route: RouteConfig | None,
        features: FeatureResolution,
    ) -> CompletionRequest:
        system_prompt = SYSTEM_PROMPT
        if route is not None and route.prompt_hint:
            system_prompt = f"{system_prompt}\n{route.prompt_hint}"
        store = features.is_enabled("response_storage")
        return CompletionRequest(
            model=route.model if route is not None else self._model,
            messages=[
                ChatMessage(role="system", content=system_prompt),
                ChatMessage(
                    role="user", content=build_user_prompt(question, context, revision_notes)
                ),
            ],
            temperature=SYNTHESIS_TEMPERATURE,
            max_output_tokens=route.max_tokens if route is not None else None,
            previous_response_id=previous_response_id if store else None,
            store=store,
        )

    def _finalize(
        self,
        text: str,
        citations: list[Reference],
        *,
        response_id: str | None,
        usage: dict[str, int],
    ) -> SynthesisResult:
        answer = text.strip() or "I do not know."
        validation = self._citation_validator.validate_answer(answer, citations)
        if not validation.ok:
            logger.warning("Citation validation failed: %s", "; ".join(validation.issues))
            answer = validation.replacement_answer or answer
        return SynthesisResult(
            answer=answer,
            citations=citations,
            response_id=response_id,
            usage=usage,
            citation_issues=list(validation.issues),
        )

    async def answer(
        self,
        question: str,
        context: str,
        citations: list[Reference] | None = None,
        revision_notes: Sequence[str] | None = None,
        previous_response_id: str | None = None,
        route: RouteConfig | None = None,
        *,
        features: FeatureResolution,
    ) -> SynthesisResult:
        references = list(citations or [])
        if not context.strip():
            return SynthesisResult(answer=NO_EVIDENCE_ANSWER, citations=references)

        request = self._request(
            question=question,
            context=context,
            revision_notes=revision_notes,
            previous_response_id=previous_response_id,
            route=route,
            features=features,
        )
        completion_backend = self._completion
        try:
            completion = await self._retry_policy.run(
                "synthesis", lambda _ctx: completion_backend.complete(request)
            )
        except Exception as exc:
            raise SynthesisError(f"Answer synthesis failed: {exc}") from exc

        return self._finalize(
            completion.text, references, response_id=completion.id, usage=completion.usage
        )

    async def stream_answer(
        self,
        question: str,
        context: str,
        citations: list[Reference] | None = None,
        revision_notes: Sequence[str] | None = None,
        previous_response_id: str | None = None,
        route: RouteConfig | None = None,
        *,
        features: FeatureResolution,
    ) -> AsyncIterator[str | SynthesisResult]:
        """Yield token deltas as they arrive, then one final ``SynthesisResult``.

        Opening the stream is retried like ``answer`` until the first chunk
        arrives; each chunk must arrive within the retry policy's timeout.
        """

        references = list(citations or [])
        if not context.strip():
            yield NO_EVIDENCE_ANSWER
            yield SynthesisResult(answer=NO_EVIDENCE_ANSWER, citations=references)
            return

        request = self._request(
            question=question,
            context=context,
            revision_notes=revision_notes,
            previous_response_id=previous_response_id,
            route=route,
            features=features,
        )
        parts: list[str] = []
        response_id: str | None = None
        usage: dict[str, int] = {}
        completion_backend = self._completion
        try:
            async for chunk in self._retry_policy.stream(
                "synthesis", lambda _ctx: completion_backend.stream(request)
            ):
                if chunk.delta:
                    parts.append(chunk.delta)
                    yield chunk.delta
                if chunk.completion is not None:
                    response_id = chunk.completion.id
                    usage = chunk.completion.usage
                    if chunk.completion.text:
                        parts = [chunk.completion.text]
        except Exception as exc:
            raise SynthesisError(f"Streaming answer synthesis failed: {exc}") from exc

        yield self._finalize("".join(parts), references, response_id=response_id, usage=usage)
