from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine, Mapping, Sequence
from dataclasses import replace
from typing import Any, TypeVar, cast

from ragwright.context import RagwrightContext, build_context
from ragwright.errors import RagwrightConfigurationError
from ragwright.features import FeatureResolution
from ragwright.retrieval.search_backend import SearchBackend
from ragwright.retrieval.web_search import WebSearchBackend
from ragwright.schemas.rag_chat import ChatMessage, ChatResponse, TranscriptEntry
from ragwright.services.completion import CompletionBackend
from ragwright.settings import Settings, resolve_openai_api_key, resolve_openai_base_url

Conversation = str | Sequence[ChatMessage] | Sequence[Mapping[str, str]]

T = TypeVar("T")


def _run_awaitable(factory: Callable[[], Awaitable[T]]) -> T:
    """Run an awaitable factory from sync code.

    If an event loop is already running in the current thread (e.g., Jupyter),
    the coroutine is executed in a dedicated thread via asyncio.run.
    """

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(cast(Coroutine[Any, Any, T], factory()))

    if not loop.is_running():
        return loop.run_until_complete(factory())

    result: dict[str, T] = {}
    error: dict[str, BaseException] = {}

    def _target() -> None:
        try:
            result["value"] = asyncio.run(cast(Coroutine[Any, Any, T], factory()))
        except BaseException as exc:  # pragma: no cover
            error["exc"] = exc

    thread = threading.Thread(target=_target, daemon=True)
    thread.start()
    thread.join()

    if "exc" in error:
        raise error["exc"]

    if "value" not in result:  # pragma: no cover
        raise RuntimeError("Async execution failed without an exception")

    return result["value"]


def to_messages(conversation: Conversation) -> list[ChatMessage]:
    if isinstance(conversation, str):
        return [ChatMessage(role="user", content=conversation)]
    messages: list[ChatMessage] = []
    for item in conversation:
        if isinstance(item, ChatMessage):
            messages.append(item)
        else:
            messages.append(ChatMessage.model_validate(dict(item)))
    if not messages:
        raise ValueError("conversation must contain at least one message")
    return messages


class Ragwright:
    """Ragwright SDK facade.

    Wraps one process-wide ``RagwrightContext`` and exposes:

    - ``chat`` / ``achat``: one grounded, critiqued answer for a conversation
    - ``astream``: the same session as live ``(event, data)`` pairs
    - ``features`` and ``transcript``: per-session state

    Parameters
    ----------
    openai_api_key:
        Overrides ``OPENAI_API_KEY``. ``AZURE_OPENAI_API_KEY`` is also accepted
        from the environment as an alias.
    openai_base_url:
        Optional OpenAI-compatible base URL override. Useful for Azure OpenAI
        and other compatible endpoints.
    model:
        Optional override for the synthesis model.
    settings:
        Explicit settings; read from the environment when omitted.
    completion, search_backend, web_search:
        Optional collaborator overrides (tests, custom providers).
    """

    def __init__(
        self,
        openai_api_key: str | None = None,
        *,
        openai_base_url: str | None = None,
        model: str | None = None,
        settings: Settings | None = None,
        completion: CompletionBackend | None = None,
        search_backend: SearchBackend | None = None,
        web_search: WebSearchBackend | None = None,
    ) -> None:
        resolved = settings or Settings.from_env()
        overrides: dict[str, Any] = {}
        api_key = resolve_openai_api_key(openai_api_key)
        if api_key is not None:
            overrides["openai_api_key"] = api_key
        base_url = resolve_openai_base_url(openai_base_url)
        if base_url is not None:
            overrides["openai_base_url"] = base_url
        if model is not None:
            overrides["chat_model"] = model
        if overrides:
            resolved = replace(resolved, **overrides)

        if completion is None and not resolved.openai_api_key:
            raise RagwrightConfigurationError(
                "Missing OpenAI API key. Provide Ragwright(openai_api_key=...) or set "
                "OPENAI_API_KEY / AZURE_OPENAI_API_KEY."
            )

        self._context: RagwrightContext = build_context(
            resolved,
            completion=completion,
            search_backend=search_backend,
            web_search=web_search,
        )

    @property
    def context(self) -> RagwrightContext:
        return self._context

    @property
    def settings(self) -> Settings:
        return self._context.settings

    async def achat(
        self,
        conversation: Conversation,
        *,
        session_id: str | None = None,
        feature_overrides: Mapping[str, object] | None = None,
    ) -> ChatResponse:
        orchestrator = self._context.orchestrator
        try:
            return await orchestrator.run_session(
                to_messages(conversation),
                mode="sync",
                session_id=session_id,
                feature_overrides=feature_overrides,
            )
        finally:
            await orchestrator.drain_background()

    def chat(
        self,
        conversation: Conversation,
        *,
        session_id: str | None = None,
        feature_overrides: Mapping[str, object] | None = None,
    ) -> ChatResponse:
        """Answer a prompt or conversation synchronously."""

        def _factory() -> Any:
            return self.achat(
                conversation, session_id=session_id, feature_overrides=feature_overrides
            )

        return cast(ChatResponse, _run_awaitable(_factory))

    async def astream(
        self,
        conversation: Conversation,
        *,
        session_id: str | None = None,
        feature_overrides: Mapping[str, object] | None = None,
    ) -> AsyncIterator[tuple[str, dict[str, Any]]]:
        orchestrator = self._context.orchestrator
        try:
            async for item in orchestrator.stream_events(
                to_messages(conversation),
                session_id=session_id,
                feature_overrides=feature_overrides,
            ):
                yield item
        finally:
            await orchestrator.drain_background()

    def features(self, session_id: str | None = None) -> FeatureResolution:
        if session_id is None:
            return self._context.config_features()
        return self._context.orchestrator.resolve_features(session_id)

    def transcript(self, session_id: str) -> list[TranscriptEntry]:
        return self._context.session_store.list_transcript(session_id)

    async def aclose(self) -> None:
        await self._context.aclose()
