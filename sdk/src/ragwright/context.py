from __future__ import annotations

import logging
from dataclasses import dataclass

from ragwright.errors import RagwrightConfigurationError
from ragwright.features import FeatureResolution, resolve_features
from ragwright.retrieval.fallback import RetrievalPipeline
from ragwright.retrieval.search_auth import default_search_credential
from ragwright.retrieval.search_backend import AzureSearchBackend, SearchBackend
from ragwright.retrieval.web_search import GoogleWebSearch, WebSearchBackend
from ragwright.services.completion import CompletionBackend, OpenAIResponsesBackend
from ragwright.services.critic import Critic
from ragwright.services.dispatcher import ToolDispatcher
from ragwright.services.intent_router import IntentRouter, build_route_configs
from ragwright.services.planner import Planner
from ragwright.services.session_orchestrator import SessionOrchestrator
from ragwright.services.session_store import InMemorySessionStore, SessionStore
from ragwright.services.synthesizer import AnswerSynthesizer
from ragwright.services.telemetry import InMemoryTelemetryStore, TelemetrySink
from ragwright.services.token_cache import TokenCache
from ragwright.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class RagwrightContext:
    """Collaborators shared by every request in the process."""

    settings: Settings
    token_cache: TokenCache
    completion: CompletionBackend
    search_backend: SearchBackend | None
    web_search: WebSearchBackend | None
    session_store: SessionStore
    telemetry: TelemetrySink
    gates: dict[str, bool]
    orchestrator: SessionOrchestrator

    def config_features(self) -> FeatureResolution:
        return resolve_features(self.settings.features, gates=self.gates)

    async def aclose(self) -> None:
        await self.orchestrator.drain_background()
        for client in (self.search_backend, self.web_search):
            aclose = getattr(client, "aclose", None)
            if aclose is not None:
                await aclose()


def feature_gates(
    settings: Settings,
    *,
    search_backend: SearchBackend | None,
    web_search: WebSearchBackend | None,
) -> dict[str, bool]:
    """Which features have the collaborators they need."""

    has_search = search_backend is not None
    return {
        "knowledge_agent": has_search
        and bool(getattr(search_backend, "has_knowledge_agent", True)),
        "multi_index_federation": has_search and len(settings.federated_indexes) > 1,
        "adaptive_retrieval": has_search,
        "web_search": web_search is not None,
        "web_reranking": has_search and web_search is not None,
    }


def _default_search_backend(settings: Settings, token_cache: TokenCache) -> SearchBackend | None:
    if not settings.search_configured or settings.search_endpoint is None:
        logger.warning("AZURE_SEARCH_ENDPOINT is not set; knowledge base retrieval is disabled")
        return None
    credential = None if settings.search_api_key else default_search_credential()
    return AzureSearchBackend(
        endpoint=settings.search_endpoint,
        index_name=settings.search_index_name,
        api_version=settings.search_api_version,
        api_key=settings.search_api_key,
        knowledge_agent_name=settings.knowledge_agent_name,
        semantic_configuration=settings.semantic_configuration,
        vector_field=settings.vector_field,
        content_field=settings.content_field,
        timeout_s=settings.request_timeout_s,
        knowledge_agent_timeout_s=settings.knowledge_agent_timeout_s,
        token_cache=token_cache,
        credential=credential,
    )


def _default_web_search(settings: Settings) -> WebSearchBackend | None:
    if not settings.web_search_configured:
        return None
    assert settings.google_search_api_key and settings.google_search_engine_id
    return GoogleWebSearch(
        api_key=settings.google_search_api_key,
        engine_id=settings.google_search_engine_id,
        timeout_s=settings.request_timeout_s,
    )


def build_context(
    settings: Settings | None = None,
    *,
    completion: CompletionBackend | None = None,
    search_backend: SearchBackend | None = None,
    web_search: WebSearchBackend | None = None,
    session_store: SessionStore | None = None,
    telemetry: TelemetrySink | None = None,
    token_cache: TokenCache | None = None,
    use_default_backends: bool = True,
) -> RagwrightContext:
    """Wire the process-wide collaborators.

    Backends not passed in are built from ``settings`` when
    ``use_default_backends`` is set; a missing OpenAI key is a configuration
    error because every session needs a completion backend.
    """

    settings = settings or Settings.from_env()
    token_cache = token_cache or TokenCache()

    if completion is None:
        if not settings.openai_api_key:
            raise RagwrightConfigurationError(
                "Missing OpenAI API key. Set OPENAI_API_KEY or AZURE_OPENAI_API_KEY."
            )
        completion = OpenAIResponsesBackend(
            api_key=settings.openai_api_key, base_url=settings.openai_base_url
        )
    if use_default_backends:
        if search_backend is None:
            search_backend = _default_search_backend(settings, token_cache)
        if web_search is None:
            web_search = _default_web_search(settings)

    session_store = session_store or InMemorySessionStore()
    telemetry = telemetry or InMemoryTelemetryStore()
    gates = feature_gates(settings, search_backend=search_backend, web_search=web_search)

    call_policy = settings.retry_policy()
    utility_policy = settings.retry_policy(max_retries=0)
    pipeline = (
        RetrievalPipeline(backend=search_backend, settings=settings, completion=completion)
        if search_backend is not None
        else None
    )
    orchestrator = SessionOrchestrator(
        settings=settings,
        router=IntentRouter(
            routes=build_route_configs(
                chat_model=settings.chat_model, utility_model=settings.utility_model
            ),
            completion=completion,
            model=settings.utility_model,
            retry_policy=utility_policy,
        ),
        planner=Planner(
            completion=completion, model=settings.utility_model, retry_policy=utility_policy
        ),
        dispatcher=ToolDispatcher(
            pipeline=pipeline,
            web_search=web_search,
            settings=settings,
            retry_policy=call_policy,
        ),
        synthesizer=AnswerSynthesizer(
            completion=completion, model=settings.chat_model, retry_policy=call_policy
        ),
        critic=Critic(
            completion=completion,
            model=settings.utility_model,
            threshold=settings.critic_threshold,
            retry_policy=utility_policy,
        ),
        session_store=session_store,
        telemetry=telemetry,
        gates=gates,
    )
    return RagwrightContext(
        settings=settings,
        token_cache=token_cache,
        completion=completion,
        search_backend=search_backend,
        web_search=web_search,
        session_store=session_store,
        telemetry=telemetry,
        gates=gates,
        orchestrator=orchestrator,
    )
