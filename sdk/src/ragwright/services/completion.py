from __future__ import annotations

import json
import re
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import openai
from openai import AsyncOpenAI

from ragwright.errors import CompletionBackendError
from ragwright.schemas.rag_chat import ChatMessage

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


@dataclass(frozen=True)
class CompletionRequest:
    model: str
    messages: Sequence[ChatMessage]
    temperature: float | None = None
    max_output_tokens: int | None = None
    json_schema: dict[str, Any] | None = None
    schema_name: str | None = None
    previous_response_id: str | None = None
    store: bool = False


@dataclass(frozen=True)
class Completion:
    text: str
    id: str | None = None
    usage: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class CompletionChunk:
    """A streamed token delta; the final chunk carries the full completion."""

    delta: str = ""
    completion: Completion | None = None


class CompletionBackend(Protocol):
    async def complete(self, request: CompletionRequest) -> Completion: ...

    def stream(self, request: CompletionRequest) -> AsyncIterator[CompletionChunk]: ...


def parse_json_object(text: str) -> dict[str, Any]:
    """Extract the first JSON object from model output (may be wrapped in fences)."""

    match = _JSON_OBJECT_RE.search(text)
    if match is None:
        raise ValueError("Model output did not contain a JSON object")
    payload = json.loads(match.group())
    if not isinstance(payload, dict):
        raise ValueError("Model output JSON is not an object")
    return payload


def build_response_kwargs(request: CompletionRequest) -> dict[str, Any]:
    """Translate a completion request into Responses API keyword arguments.

    ``previous_response_id`` is only included when the request stores its
    response upstream; the API rejects continuations of unstored responses.
    """

    kwargs: dict[str, Any] = {
        "model": request.model,
        "input": [
            {"role": message.role, "content": message.content} for message in request.messages
        ],
        "store": request.store,
    }
    if request.temperature is not None:
        kwargs["temperature"] = request.temperature
    if request.max_output_tokens is not None:
        kwargs["max_output_tokens"] = request.max_output_tokens
    if request.json_schema is not None:
        kwargs["text"] = {
            "format": {
                "type": "json_schema",
                "name": request.schema_name or "structured_output",
                "schema": request.json_schema,
                "strict": True,
            }
        }
    if request.store and request.previous_response_id:
        kwargs["previous_response_id"] = request.previous_response_id
    return kwargs


def _usage_dict(usage: object) -> dict[str, int]:
    if usage is None:
        return {}
    values: dict[str, int] = {}
    for name in ("input_tokens", "output_tokens", "total_tokens"):
        value = getattr(usage, name, None)
        if isinstance(value, int):
            values[name] = value
    return values


def _output_text(response: object) -> str:
    output_text = getattr(response, "output_text", None)
    return output_text.strip() if isinstance(output_text, str) else ""


def _wrap_api_error(exc: openai.APIError) -> CompletionBackendError:
    status_code = getattr(exc, "status_code", None)
    request_id = getattr(exc, "request_id", None)
    return CompletionBackendError(
        f"{type(exc).__name__}: {exc}",
        status_code=status_code if isinstance(status_code, int) else None,
        request_id=request_id if isinstance(request_id, str) else None,
    )


class OpenAIResponsesBackend:
    """Completion backend on top of the OpenAI Responses API."""

    def __init__(
        self,
        *,
        client: AsyncOpenAI | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ) -> None:
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def complete(self, request: CompletionRequest) -> Completion:
        try:
            response = await self._client.responses.create(**build_response_kwargs(request))
        except openai.APIError as exc:
            raise _wrap_api_error(exc) from exc
        return Completion(
            text=_output_text(response),
            id=getattr(response, "id", None),
            usage=_usage_dict(getattr(response, "usage", None)),
        )

    async def stream(self, request: CompletionRequest) -> AsyncIterator[CompletionChunk]:
        parts: list[str] = []
        final: Completion | None = None
        try:
            events = await self._client.responses.create(
                **build_response_kwargs(request), stream=True
            )
            async for event in events:
                event_type = getattr(event, "type", "")
                if event_type == "response.output_text.delta":
                    delta = str(getattr(event, "delta", "") or "")
                    if delta:
                        parts.append(delta)
                        yield CompletionChunk(delta=delta)
                elif event_type == "response.completed":
                    response = getattr(event, "response", None)
                    final = Completion(
                        text=_output_text(response) or "".join(parts).strip(),
                        id=getattr(response, "id", None),
                        usage=_usage_dict(getattr(response, "usage", None)),
                    )
                elif event_type in ("response.failed", "error"):
                    raise CompletionBackendError(f"Streaming completion failed: {event_type}")
        except openai.APIError as exc:
            raise _wrap_api_error(exc) from exc

        yield CompletionChunk(completion=final or Completion(text="".join(parts).strip()))
