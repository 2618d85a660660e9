from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from ragwright.context import RagwrightContext
from ragwright.schemas.rag_chat import ChatRequest, ChatResponse
from ragwright.services.session_orchestrator import derive_session_id

from ragwright_backend.api.system import CONTEXT_DEPENDENCY
from ragwright_backend.schemas.errors import ApiErrorResponse, error_from_exception

logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"


def _client_fingerprint(request: Request) -> str | None:
    host = request.client.host if request.client is not None else ""
    user_agent = request.headers.get("user-agent", "")
    fingerprint = f"{host}|{user_agent}".strip("|")
    return fingerprint or None


def _session_id(body: ChatRequest, request: Request) -> str:
    return body.session_id or derive_session_id(body.messages, _client_fingerprint(request))


def _ndjson_line(event: str, data: dict[str, object]) -> str:
    return json.dumps({"event": event, "data": data}, default=str) + "\n"


def build_rag_chat_router() -> APIRouter:
    router = APIRouter(prefix="/v1", tags=["chat"])

    @router.post(
        "/chat",
        response_model=ChatResponse,
        status_code=200,
        responses={
            500: {"model": ApiErrorResponse},
        },
        summary="Answer a conversation with grounded, cited evidence",
    )
    async def post_chat(
        body: ChatRequest,
        request: Request,
        context: RagwrightContext = CONTEXT_DEPENDENCY,
    ) -> ChatResponse | JSONResponse:
        try:
            return await context.orchestrator.run_session(
                body.messages,
                mode="sync",
                session_id=_session_id(body, request),
                feature_overrides=body.feature_overrides,
            )
        except Exception as exc:
            logger.warning("Chat request failed: %s", exc)
            payload = error_from_exception(
                exc, code="chat_failed", default_message="Chat request failed"
            )
            return JSONResponse(status_code=500, content=payload.model_dump())

    @router.post(
        "/chat/stream",
        response_model=None,
        status_code=200,
        summary="Stream session events and answer tokens as NDJSON",
    )
    async def post_chat_stream(
        body: ChatRequest,
        request: Request,
        context: RagwrightContext = CONTEXT_DEPENDENCY,
    ) -> Response:
        session_id = _session_id(body, request)
        events = context.orchestrator.stream_events(
            body.messages,
            session_id=session_id,
            feature_overrides=body.feature_overrides,
        )

        async def event_stream() -> AsyncIterator[str]:
            try:
                async for event, data in events:
                    yield _ndjson_line(event, data)
            finally:
                await events.aclose()

        return StreamingResponse(
            event_stream(),
            media_type=NDJSON_MEDIA_TYPE,
            headers={
                "cache-control": "no-cache",
                "x-accel-buffering": "no",
            },
        )

    return router
