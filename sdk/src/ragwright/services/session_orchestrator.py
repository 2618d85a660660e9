from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from collections.abc import AsyncGenerator, Callable, Mapping, Sequence
from contextlib import suppress
from typing import Any, cast

from ragwright.features import FeatureResolution, resolve_features, sanitize_feature_overrides
from ragwright.retrieval.types import now_iso
from ragwright.schemas.rag_chat import (
    ChatMessage,
    ChatMetadata,
    ChatResponse,
    ContextBudget,
    Critique,
    CritiqueRecord,
    FeatureSummary,
    SessionMode,
    SessionTrace,
    TraceEvent,
)
from ragwright.services.context_budget import (
    build_history_context,
    estimate_tokens,
    latest_user_question,
)
from ragwright.services.critic import Critic, apply_acceptance_rule
from ragwright.services.dispatcher import DispatchResult, ToolDispatcher
from ragwright.services.intent_router import IntentRoute, IntentRouter
from ragwright.services.planner import Planner
from ragwright.services.session_store import SessionStore
from ragwright.services.synthesizer import AnswerSynthesizer, SynthesisResult
from ragwright.services.telemetry import TelemetrySink
from ragwright.settings import Settings

logger = logging.getLogger(__name__)

EventSink = Callable[[str, dict[str, Any]], None]

_STREAM_DONE = object()


def _discard_event(_event: str, _data: dict[str, Any]) -> None:
    return None


def derive_session_id(messages: Sequence[ChatMessage], fingerprint: str | None = None) -> str:
    """Stable id for a conversation: hash of its opening turns, else a random id."""

    opening = [message for message in messages if message.role != "system"][:2]
    if not opening:
        return uuid.uuid4().hex
    digest = hashlib.sha1()
    for message in opening:
        digest.update(f"{message.role}:{message.content}\n".encode())
    if fingerprint:
        digest.update(fingerprint.encode())
    return digest.hexdigest()


def _revision_notes(critique: Critique) -> list[str]:
    if critique.suggestions:
        return list(critique.suggestions)
    return [critique.reasoning] if critique.reasoning else []


class _SessionRun:
    """Per-request state: the trace and the event sink that feeds it."""

    def __init__(self, trace: SessionTrace, emit: EventSink) -> None:
        self.trace = trace
        self._emit = emit

    def emit(self, event: str, data: dict[str, Any]) -> None:
        self.trace.events.append(TraceEvent(event=event, timestamp=now_iso()))
        self._emit(event, data)

    def status(self, stage: str, **extra: Any) -> None:
        self.emit("status", {"stage": stage, **extra})


class SessionOrchestrator:
    """Runs one chat turn end to end.

    routing -> planning -> dispatching -> synthesizing -> critiquing ->
    finalizing, announcing each stage as a ``status`` event. Sync and stream
    callers share this path; stream mode additionally forwards token deltas.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        router: IntentRouter,
        planner: Planner,
        dispatcher: ToolDispatcher,
        synthesizer: AnswerSynthesizer,
        critic: Critic | None,
        session_store: SessionStore,
        telemetry: TelemetrySink,
        gates: Mapping[str, bool] | None = None,
    ) -> None:
        self._settings = settings
        self._router = router
        self._planner = planner
        self._dispatcher = dispatcher
        self._synthesizer = synthesizer
        self._critic = critic
        self._session_store = session_store
        self._telemetry = telemetry
        self._gates = dict(gates or {})
        self._background: set[asyncio.Task[None]] = set()

    def resolve_features(
        self,
        session_id: str | None,
        *,
        overrides: Mapping[str, object] | None = None,
        persisted: Mapping[str, object] | None = None,
    ) -> FeatureResolution:
        if persisted is None and session_id:
            persisted = self._session_store.load_persisted_features(session_id)
        return resolve_features(
            self._settings.features,
            persisted=persisted,
            overrides=overrides,
            gates=self._gates,
        )

    async def run_session(
        self,
        messages: Sequence[ChatMessage],
        *,
        mode: SessionMode = "sync",
        session_id: str | None = None,
        emit: EventSink | None = None,
        feature_overrides: Mapping[str, object] | None = None,
        persisted_features: Mapping[str, object] | None = None,
    ) -> ChatResponse:
        resolved_session_id = session_id or derive_session_id(messages)
        trace = SessionTrace(
            session_id=resolved_session_id,
            trace_id=uuid.uuid4().hex,
            mode=mode,
            question=latest_user_question(messages),
            started_at=now_iso(),
        )
        run = _SessionRun(trace, emit if mode == "stream" and emit else _discard_event)

        try:
            response = await self._run(
                run,
                list(messages),
                feature_overrides=feature_overrides,
                persisted_features=persisted_features,
            )
        except asyncio.CancelledError:
            self._finalize_failed(trace, "cancelled")
            raise
        except Exception as exc:
            logger.exception("Session %s failed", resolved_session_id)
            self._finalize_failed(trace, f"{type(exc).__name__}: {exc}")
            run.emit("error", {"message": str(exc), "type": type(exc).__name__})
            raise

        self._telemetry.record(trace)
        return response

    def _finalize_failed(self, trace: SessionTrace, error: str) -> None:
        trace.status = "failed"
        trace.error = error
        trace.completed_at = now_iso()
        self._telemetry.record(trace)

    async def _run(
        self,
        run: _SessionRun,
        messages: list[ChatMessage],
        *,
        feature_overrides: Mapping[str, object] | None,
        persisted_features: Mapping[str, object] | None,
    ) -> ChatResponse:
        settings = self._settings
        trace = run.trace
        session_id = trace.session_id
        question = trace.question or ""

        overrides = sanitize_feature_overrides(feature_overrides)
        features = self.resolve_features(
            session_id, overrides=overrides, persisted=persisted_features
        )
        if overrides:
            self._persist_in_background(
                self._session_store.save_persisted_features, session_id, overrides
            )
        feature_summary = FeatureSummary(
            resolved=dict(features.resolved),
            sources=dict(features.sources),
            gates=dict(features.gates),
        )
        trace.features = feature_summary
        run.emit("features", feature_summary.model_dump())

        run.status("routing")
        route = await self._router.classify(messages, enabled=features.is_enabled("intent_routing"))
        trace.route = route.summary()
        run.emit("route", trace.route.model_dump())

        run.status("planning")
        plan = await self._planner.decide_plan(
            messages, use_model=features.is_enabled("llm_planner")
        )
        trace.plan = plan
        run.emit("plan", plan.model_dump())

        history = build_history_context(
            messages,
            model=settings.chat_model,
            max_turns=settings.context_max_recent_turns,
            token_cap=settings.context_history_token_cap,
        )
        run.emit(
            "context",
            {"history": history.text, "turns": history.turns, "trimmed": history.trimmed},
        )

        run.status("dispatching")
        dispatch = await self._dispatcher.dispatch(
            plan=plan,
            question=question,
            messages=messages,
            features=features,
            correlation_id=trace.trace_id,
        )
        self._emit_dispatch(run, dispatch)
        if dispatch.retrieval is not None:
            trace.retrieval = dispatch.retrieval.diagnostics
        if dispatch.web_context is not None:
            trace.web_context = dispatch.web_context.summary()

        context_text = dispatch.context_text or history.text
        web_tokens = dispatch.web_context.tokens if dispatch.web_context is not None else 0
        context_budget = ContextBudget(
            history_tokens=history.tokens,
            reference_tokens=max(
                estimate_tokens(dispatch.context_text, model=settings.chat_model) - web_tokens, 0
            ),
            web_tokens=web_tokens,
        )
        trace.context_budget = context_budget

        result, critiques, syntheses = await self._synthesize_with_review(
            run,
            question=question,
            context_text=context_text,
            dispatch=dispatch,
            route=route,
            features=features,
        )

        answer = result.answer
        final_critique = critiques[-1] if critiques else None
        if final_critique is not None and final_critique.action == "revise":
            notes = _revision_notes(final_critique)
            if notes:
                answer = f"{answer}\n\n[Quality review notes: {'; '.join(notes)}]"
        trace.critique_history = critiques

        run.status("finalizing")
        retrieval = dispatch.retrieval
        response = ChatResponse(
            answer=answer,
            citations=result.citations,
            activity=dispatch.activity,
            metadata=ChatMetadata(
                session_id=session_id,
                trace_id=trace.trace_id,
                route=trace.route,
                plan=plan,
                retrieval=retrieval.diagnostics if retrieval is not None else None,
                fallback_triggered=retrieval.fallback_triggered if retrieval is not None else False,
                fallback_attempts=retrieval.fallback_attempts if retrieval is not None else 0,
                critique_history=critiques,
                critic_iterations=syntheses,
                context_budget=context_budget,
                web_context=trace.web_context,
                features=feature_summary,
                response_id=result.response_id,
                retrieval_time_ms=dispatch.retrieval_time_ms,
            ),
        )

        self._persist_in_background(
            self._session_store.save_transcript,
            session_id,
            question=question,
            answer=answer,
            citations=list(result.citations),
        )

        run.emit("complete", response.model_dump(mode="json"))
        run.emit(
            "telemetry",
            {
                "trace_id": trace.trace_id,
                "plan": plan.model_dump(),
                "route": trace.route.model_dump(),
                "context_budget": context_budget.model_dump(),
                "retrieval": trace.retrieval.model_dump() if trace.retrieval else None,
                "critic_iterations": syntheses,
            },
        )
        trace.status = "completed"
        trace.completed_at = now_iso()
        run.emit("trace", {"session": trace.model_dump(mode="json")})
        run.emit("done", {"status": "complete"})
        logger.info(
            "Session %s completed (intent=%s, plan=%s, citations=%d, syntheses=%d)",
            session_id,
            route.intent,
            plan.action,
            len(result.citations),
            syntheses,
        )
        return response

    def _emit_dispatch(self, run: _SessionRun, dispatch: DispatchResult) -> None:
        run.emit(
            "tool",
            {
                "references": dispatch.reference_count,
                "web_results": len(dispatch.web_results),
                "escalated": dispatch.escalated,
                "reranked": dispatch.reranked,
            },
        )
        if dispatch.web_context is not None:
            payload = dispatch.web_context.summary().model_dump()
            payload["text"] = dispatch.web_context.text
            run.emit("web_context", payload)
        run.emit(
            "citations",
            {"citations": [citation.model_dump() for citation in dispatch.citations]},
        )
        run.emit("activity", {"steps": [step.model_dump() for step in dispatch.activity]})

    async def _synthesize_once(
        self,
        run: _SessionRun,
        *,
        attempt: int,
        question: str,
        context_text: str,
        dispatch: DispatchResult,
        route: IntentRoute,
        features: FeatureResolution,
        revision_notes: list[str] | None,
        previous_response_id: str | None,
    ) -> SynthesisResult:
        if run.trace.mode != "stream":
            return await self._synthesizer.answer(
                question,
                context_text,
                dispatch.citations,
                revision_notes,
                previous_response_id,
                route.config,
                features=features,
            )

        result: SynthesisResult | None = None
        async for item in self._synthesizer.stream_answer(
            question,
            context_text,
            dispatch.citations,
            revision_notes,
            previous_response_id,
            route.config,
            features=features,
        ):
            if isinstance(item, SynthesisResult):
                result = item
            else:
                run.emit("token", {"delta": item, "attempt": attempt})
        if result is None:
            raise RuntimeError("Streaming synthesis ended without a result")
        return result

    async def _synthesize_with_review(
        self,
        run: _SessionRun,
        *,
        question: str,
        context_text: str,
        dispatch: DispatchResult,
        route: IntentRoute,
        features: FeatureResolution,
    ) -> tuple[SynthesisResult, list[CritiqueRecord], int]:
        """Draft, critique and revise until accepted or out of retries."""

        use_critic = self._critic is not None and features.is_enabled("critic")
        max_attempts = self._settings.critic_max_retries + 1 if use_critic else 1
        threshold = self._settings.critic_threshold

        critiques: list[CritiqueRecord] = []
        revision_notes: list[str] | None = None
        previous_response_id: str | None = None
        result: SynthesisResult | None = None

        for attempt in range(max_attempts):
            run.status("synthesizing", attempt=attempt, revision=attempt > 0)
            result = await self._synthesize_once(
                run,
                attempt=attempt,
                question=question,
                context_text=context_text,
                dispatch=dispatch,
                route=route,
                features=features,
                revision_notes=revision_notes,
                previous_response_id=previous_response_id,
            )
            run.emit("draft", {"attempt": attempt, "answer": result.answer})
            if not use_critic:
                break

            assert self._critic is not None
            run.status("critiquing", attempt=attempt)
            critique = apply_acceptance_rule(
                await self._critic.critique(result.answer, context_text, question), threshold
            )
            critiques.append(
                CritiqueRecord(
                    attempt=attempt,
                    score=critique.score,
                    action=critique.action,
                    reasoning=critique.reasoning,
                    suggestions=list(critique.suggestions),
                )
            )
            run.emit("critique", {**critique.model_dump(), "attempt": attempt})
            if critique.action == "accept":
                break
            revision_notes = _revision_notes(critique)
            previous_response_id = result.response_id

        assert result is not None
        syntheses = len(critiques) if use_critic else 1
        return result, critiques, syntheses

    def _persist_in_background(
        self, func: Callable[..., None], /, *args: Any, **kwargs: Any
    ) -> None:
        async def persist() -> None:
            try:
                await asyncio.to_thread(func, *args, **kwargs)
            except Exception:
                logger.exception("Background session persistence failed")

        task = asyncio.get_running_loop().create_task(persist())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain_background(self) -> None:
        """Wait for pending persistence tasks; used at shutdown and in tests."""

        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def stream_events(
        self,
        messages: Sequence[ChatMessage],
        *,
        session_id: str | None = None,
        feature_overrides: Mapping[str, object] | None = None,
        persisted_features: Mapping[str, object] | None = None,
    ) -> AsyncGenerator[tuple[str, dict[str, Any]], None]:
        """Run a stream-mode session and yield ``(event, data)`` pairs live.

        The stream always ends with ``done``. Closing the iterator early
        cancels the underlying session task.
        """

        queue: asyncio.Queue[object] = asyncio.Queue()

        def on_event(event: str, data: dict[str, Any]) -> None:
            queue.put_nowait((event, data))

        async def run() -> ChatResponse:
            try:
                return await self.run_session(
                    messages,
                    mode="stream",
                    session_id=session_id,
                    emit=on_event,
                    feature_overrides=feature_overrides,
                    persisted_features=persisted_features,
                )
            finally:
                queue.put_nowait(_STREAM_DONE)

        task: asyncio.Task[ChatResponse] = asyncio.create_task(run())
        try:
            while True:
                item = await queue.get()
                if item is _STREAM_DONE:
                    break
                yield cast(tuple[str, dict[str, Any]], item)
            try:
                await task
            except Exception:
                yield "done", {"status": "error"}
        finally:
            if not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
