from __future__ import annotations

from dataclasses import replace
from typing import Any

import pytest

from ragwright import Ragwright, RagwrightConfigurationError
from ragwright.client import to_messages
from ragwright.retrieval.types import KnowledgeAgentResult
from ragwright.schemas.rag_chat import ChatMessage


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("OPENAI_API_KEY", "AZURE_OPENAI_API_KEY", "OPENAI_BASE_URL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def client(
    clean_env: None, settings: Any, completion: Any, search_factory: Any, refs: Any
) -> Ragwright:
    backend = search_factory(agent=[KnowledgeAgentResult(references=refs(3))])
    return Ragwright(settings=settings, completion=completion, search_backend=backend)


def test_missing_api_key_is_a_configuration_error(clean_env: None, settings: Any) -> None:
    with pytest.raises(RagwrightConfigurationError, match="Missing OpenAI API key"):
        Ragwright(settings=replace(settings, openai_api_key=None))


def test_explicit_arguments_override_settings(clean_env: None, settings: Any) -> None:
    client = Ragwright(
        "  explicit-key  ",
        openai_base_url="https://llm.example/v1",
        model="gpt-4.1",
        settings=settings,
    )

    assert client.settings.openai_api_key == "explicit-key"
    assert client.settings.openai_base_url == "https://llm.example/v1"
    assert client.settings.chat_model == "gpt-4.1"


def test_to_messages_accepts_prompts_and_dicts() -> None:
    assert to_messages("hi") == [ChatMessage(role="user", content="hi")]
    assert to_messages([{"role": "assistant", "content": "yo"}])[0].role == "assistant"
    with pytest.raises(ValueError):
        to_messages([])


def test_chat_returns_grounded_answer_and_records_transcript(client: Ragwright) -> None:
    response = client.chat("What does the handbook say?", session_id="s1")

    assert response.answer == "The answer is grounded [1]."
    assert len(response.citations) == 3
    transcript = client.transcript("s1")
    assert [entry.content for entry in transcript] == [
        "What does the handbook say?",
        response.answer,
    ]


def test_chat_persists_session_overrides(client: Ragwright) -> None:
    client.chat("Question?", session_id="s2", feature_overrides={"critic": False})

    assert client.features("s2").is_enabled("critic") is False
    assert client.features().is_enabled("critic") is True


def test_features_reflect_missing_collaborators(
    clean_env: None, settings: Any, completion: Any
) -> None:
    client = Ragwright(settings=settings, completion=completion)

    payload = client.features().as_payload()

    assert payload["gates"]["web_search"] is False  # type: ignore[index]
    assert payload["resolved"]["knowledge_agent"] is False  # type: ignore[index]


@pytest.mark.asyncio
async def test_astream_yields_events_until_done(client: Ragwright) -> None:
    events = [item async for item in client.astream("Stream it", session_id="s3")]

    assert events[-1] == ("done", {"status": "complete"})
    assert [entry.role for entry in client.transcript("s3")] == ["user", "assistant"]
    await client.aclose()
