from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Final

from ragwright.features import read_config_features
from ragwright.services.resilience import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_CHAT_MODEL: Final[str] = "gpt-5.2"
DEFAULT_UTILITY_MODEL: Final[str] = "gpt-5-mini"
DEFAULT_SEARCH_API_VERSION: Final[str] = "2025-08-01-preview"
DEFAULT_INDEX_NAME: Final[str] = "ragwright"

_OPENAI_API_KEY_ENV = "OPENAI_API_KEY"
_AZURE_OPENAI_API_KEY_ENV = "AZURE_OPENAI_API_KEY"
_OPENAI_BASE_URL_ENV = "OPENAI_BASE_URL"
_AZURE_OPENAI_BASE_URL_ENV = "AZURE_OPENAI_BASE_URL"
_AZURE_OPENAI_ENDPOINT_ENV = "AZURE_OPENAI_ENDPOINT"


@dataclass(frozen=True)
class FederatedIndex:
    name: str
    weight: float = 1.0
    type: str = "unknown"


def _read_non_empty_env(*names: str) -> str | None:
    for name in names:
        value = os.getenv(name, "").strip()
        if value:
            return value
    return None


def _read_str(name: str, default: str) -> str:
    value = os.getenv(name, default).strip()
    if not value:
        raise ValueError(f"{name} must not be empty")
    return value


def _read_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ValueError(f"{name} must be at least {minimum}")
    return value


def _read_float(
    name: str,
    default: float,
    *,
    minimum: float = 0.0,
    maximum: float | None = None,
) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value < minimum or (maximum is not None and value > maximum):
        upper = f" and at most {maximum}" if maximum is not None else ""
        raise ValueError(f"{name} must be at least {minimum}{upper}")
    return value


def resolve_openai_api_key(explicit_key: str | None = None) -> str | None:
    if explicit_key is not None:
        stripped = explicit_key.strip()
        return stripped or None
    return _read_non_empty_env(_OPENAI_API_KEY_ENV, _AZURE_OPENAI_API_KEY_ENV)


def azure_endpoint_to_base_url(endpoint: str) -> str:
    normalized = endpoint.strip().rstrip("/")
    if normalized.endswith("/openai/v1"):
        return normalized + "/"
    if normalized.endswith("/openai"):
        return normalized + "/v1/"
    return normalized + "/openai/v1/"


def resolve_openai_base_url(explicit_base_url: str | None = None) -> str | None:
    if explicit_base_url is not None:
        stripped = explicit_base_url.strip()
        return stripped or None

    configured_base_url = _read_non_empty_env(_OPENAI_BASE_URL_ENV, _AZURE_OPENAI_BASE_URL_ENV)
    if configured_base_url:
        return configured_base_url

    azure_endpoint = _read_non_empty_env(_AZURE_OPENAI_ENDPOINT_ENV)
    if azure_endpoint:
        return azure_endpoint_to_base_url(azure_endpoint)

    return None


def _parse_weight(raw: object) -> float:
    try:
        weight = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 1.0
    return weight if weight > 0 else 1.0


def parse_federated_indexes(raw: str | None, *, base_index: str) -> tuple[FederatedIndex, ...]:
    """Parse extra index definitions for federated search.

    Accepts a JSON array of ``{"name", "weight", "type"}`` objects or the
    legacy ``name:weight:type;name:weight:type`` form. The base index always
    comes first and is never duplicated.
    """

    indexes: list[FederatedIndex] = [FederatedIndex(name=base_index, weight=1.0, type="primary")]
    seen = {base_index}
    if not raw or not raw.strip():
        return tuple(indexes)

    text = raw.strip()
    entries: list[FederatedIndex] = []
    if text.startswith("["):
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed federated index JSON configuration")
            payload = []
        for item in payload if isinstance(payload, list) else []:
            if not isinstance(item, dict):
                continue
            name = str(item.get("name") or "").strip()
            if not name:
                continue
            entries.append(
                FederatedIndex(
                    name=name,
                    weight=_parse_weight(item.get("weight", 1.0)),
                    type=str(item.get("type") or "unknown"),
                )
            )
    else:
        for segment in text.split(";"):
            parts = [part.strip() for part in segment.split(":")]
            if not parts or not parts[0]:
                continue
            entries.append(
                FederatedIndex(
                    name=parts[0],
                    weight=_parse_weight(parts[1]) if len(parts) > 1 and parts[1] else 1.0,
                    type=parts[2] if len(parts) > 2 and parts[2] else "unknown",
                )
            )

    for entry in entries:
        if entry.name in seen:
            continue
        seen.add(entry.name)
        indexes.append(entry)
    return tuple(indexes)


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, read once from the environment."""

    chat_model: str = DEFAULT_CHAT_MODEL
    utility_model: str = DEFAULT_UTILITY_MODEL
    openai_api_key: str | None = None
    openai_base_url: str | None = None

    search_endpoint: str | None = None
    search_api_key: str | None = None
    search_api_version: str = DEFAULT_SEARCH_API_VERSION
    search_index_name: str = DEFAULT_INDEX_NAME
    knowledge_agent_name: str | None = None
    semantic_configuration: str = "default"
    vector_field: str = "page_embedding_text_3_large"
    content_field: str = "page_chunk"
    federated_indexes: tuple[FederatedIndex, ...] = ()

    google_search_api_key: str | None = None
    google_search_engine_id: str | None = None

    rag_top_k: int = 5
    reranker_threshold: float = 2.5
    fallback_reranker_threshold: float = 1.5
    min_reranker_threshold: float = 0.0
    retrieval_min_docs: int = 3
    search_min_coverage: float = 80.0
    knowledge_agent_max_messages: int = 30

    planner_confidence_dual_retrieval: float = 0.45
    critic_max_retries: int = 1
    critic_threshold: float = 0.8

    web_results_max: int = 6
    web_context_max_tokens: int = 8000
    context_history_token_cap: int = 1800
    context_max_recent_turns: int = 12

    request_timeout_s: float = 30.0
    knowledge_agent_timeout_s: float = 60.0
    max_retries: int = 2
    retry_initial_delay_s: float = 0.5
    retry_max_delay_s: float = 4.0

    adaptive_max_attempts: int = 3
    adaptive_min_coverage: float = 0.4
    adaptive_min_diversity: float = 0.3

    features: dict[str, bool] = field(default_factory=dict)

    def retry_policy(
        self,
        *,
        timeout_s: float | None = None,
        max_retries: int | None = None,
    ) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries if max_retries is None else max_retries,
            timeout_s=self.request_timeout_s if timeout_s is None else timeout_s,
            initial_delay_s=self.retry_initial_delay_s,
            max_delay_s=self.retry_max_delay_s,
        )

    @property
    def threshold_floor(self) -> float:
        return max(min(self.min_reranker_threshold, self.fallback_reranker_threshold), 0.0)

    @property
    def web_search_configured(self) -> bool:
        return bool(self.google_search_api_key and self.google_search_engine_id)

    @property
    def search_configured(self) -> bool:
        return bool(self.search_endpoint)

    @classmethod
    def from_env(cls) -> Settings:
        index_name = _read_str("AZURE_SEARCH_INDEX_NAME", DEFAULT_INDEX_NAME)
        return cls(
            chat_model=_read_str("RAGWRIGHT_CHAT_MODEL", DEFAULT_CHAT_MODEL),
            utility_model=_read_str("RAGWRIGHT_UTILITY_MODEL", DEFAULT_UTILITY_MODEL),
            openai_api_key=resolve_openai_api_key(),
            openai_base_url=resolve_openai_base_url(),
            search_endpoint=_read_non_empty_env("AZURE_SEARCH_ENDPOINT"),
            search_api_key=_read_non_empty_env("AZURE_SEARCH_API_KEY"),
            search_api_version=_read_str(
                "AZURE_SEARCH_DATA_PLANE_API_VERSION", DEFAULT_SEARCH_API_VERSION
            ),
            search_index_name=index_name,
            knowledge_agent_name=_read_non_empty_env("AZURE_KNOWLEDGE_AGENT_NAME"),
            semantic_configuration=_read_str("AZURE_SEARCH_SEMANTIC_CONFIGURATION", "default"),
            vector_field=_read_str("AZURE_SEARCH_VECTOR_FIELD", "page_embedding_text_3_large"),
            content_field=_read_str("AZURE_SEARCH_CONTENT_FIELD", "page_chunk"),
            federated_indexes=parse_federated_indexes(
                os.getenv("RAGWRIGHT_FEDERATED_INDEXES"), base_index=index_name
            ),
            google_search_api_key=_read_non_empty_env("GOOGLE_SEARCH_API_KEY"),
            google_search_engine_id=_read_non_empty_env("GOOGLE_SEARCH_ENGINE_ID"),
            rag_top_k=_read_int("RAG_TOP_K", 5, minimum=1),
            reranker_threshold=_read_float("RERANKER_THRESHOLD", 2.5),
            fallback_reranker_threshold=_read_float("RETRIEVAL_FALLBACK_RERANKER_THRESHOLD", 1.5),
            min_reranker_threshold=_read_float("RETRIEVAL_MIN_RERANKER_THRESHOLD", 0.0),
            retrieval_min_docs=_read_int("RETRIEVAL_MIN_DOCS", 3, minimum=1),
            search_min_coverage=_read_float("SEARCH_MIN_COVERAGE", 80.0, maximum=100.0),
            knowledge_agent_max_messages=_read_int("KNOWLEDGE_AGENT_MAX_MESSAGES", 30, minimum=1),
            planner_confidence_dual_retrieval=_read_float(
                "PLANNER_CONFIDENCE_DUAL_RETRIEVAL", 0.45, maximum=1.0
            ),
            critic_max_retries=_read_int("CRITIC_MAX_RETRIES", 1),
            critic_threshold=_read_float("CRITIC_THRESHOLD", 0.8, maximum=1.0),
            web_results_max=_read_int("WEB_RESULTS_MAX", 6, minimum=1),
            web_context_max_tokens=_read_int("WEB_CONTEXT_MAX_TOKENS", 8000, minimum=1),
            context_history_token_cap=_read_int("CONTEXT_HISTORY_TOKEN_CAP", 1800, minimum=1),
            context_max_recent_turns=_read_int("CONTEXT_MAX_RECENT_TURNS", 12, minimum=1),
            request_timeout_s=_read_int("REQUEST_TIMEOUT_MS", 30000, minimum=1) / 1000.0,
            knowledge_agent_timeout_s=_read_int("KNOWLEDGE_AGENT_TIMEOUT_MS", 60000, minimum=1)
            / 1000.0,
            max_retries=_read_int("RAGWRIGHT_MAX_RETRIES", 2),
            features=read_config_features(),
        )
