from __future__ import annotations

from ragwright.errors import (
    RagwrightConfigurationError,
    SearchBackendError,
    SynthesisError,
)

from ragwright_backend.schemas.errors import error_from_exception


def test_configuration_errors_are_not_recoverable() -> None:
    payload = error_from_exception(
        RagwrightConfigurationError("Missing OpenAI API key"),
        code="chat_failed",
        default_message="Chat request failed",
    )

    assert payload.error.recoverable is False
    assert payload.error.message == "Missing OpenAI API key"
    assert len(payload.error.request_id) == 32


def test_upstream_correlation_id_becomes_request_id() -> None:
    upstream = SearchBackendError("busy", status_code=503, correlation_id="corr-9")
    try:
        raise SynthesisError("synthesis failed") from upstream
    except SynthesisError as exc:
        payload = error_from_exception(exc, code="chat_failed", default_message="failed")

    assert payload.error.recoverable is True
    assert payload.error.request_id == "corr-9"


def test_empty_message_uses_default() -> None:
    payload = error_from_exception(
        RuntimeError(), code="chat_failed", default_message="Chat request failed"
    )

    assert payload.error.message == "Chat request failed"
    assert payload.model_dump()["error"]["code"] == "chat_failed"
