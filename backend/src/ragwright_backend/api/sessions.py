from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Query
from ragwright.context import RagwrightContext
from ragwright.features import sanitize_feature_overrides
from ragwright.schemas.rag_chat import (
    FeatureSummary,
    SessionFeaturesResponse,
    SessionFeaturesUpdate,
    SessionMessagesResponse,
    TelemetryResponse,
)

from ragwright_backend.api.system import CONTEXT_DEPENDENCY


def _features_response(context: RagwrightContext, session_id: str) -> SessionFeaturesResponse:
    persisted = context.session_store.load_persisted_features(session_id) or {}
    resolution = context.orchestrator.resolve_features(session_id, persisted=persisted)
    return SessionFeaturesResponse(
        session_id=session_id,
        persisted=persisted,
        features=FeatureSummary(
            resolved=dict(resolution.resolved),
            sources=dict(resolution.sources),
            gates=dict(resolution.gates),
        ),
    )


def build_sessions_router() -> APIRouter:
    router = APIRouter(prefix="/v1", tags=["sessions"])

    @router.get(
        "/sessions/{session_id}/features",
        response_model=SessionFeaturesResponse,
        summary="Feature overrides persisted for a session",
    )
    async def get_session_features(
        session_id: str,
        context: RagwrightContext = CONTEXT_DEPENDENCY,
    ) -> SessionFeaturesResponse:
        return _features_response(context, session_id)

    @router.put(
        "/sessions/{session_id}/features",
        response_model=SessionFeaturesResponse,
        summary="Persist feature overrides for a session",
    )
    async def put_session_features(
        session_id: str,
        body: SessionFeaturesUpdate,
        context: RagwrightContext = CONTEXT_DEPENDENCY,
    ) -> SessionFeaturesResponse:
        context.session_store.save_persisted_features(
            session_id, sanitize_feature_overrides(body.features)
        )
        return _features_response(context, session_id)

    @router.get(
        "/sessions/{session_id}/messages",
        response_model=SessionMessagesResponse,
        summary="Stored transcript for a session",
    )
    async def get_session_messages(
        session_id: str,
        context: RagwrightContext = CONTEXT_DEPENDENCY,
    ) -> SessionMessagesResponse:
        return SessionMessagesResponse(
            session_id=session_id,
            messages=context.session_store.list_transcript(session_id),
        )

    @router.get(
        "/telemetry",
        response_model=TelemetryResponse,
        summary="Recent session traces",
    )
    async def get_telemetry(
        limit: Annotated[int, Query(ge=1, le=200)] = 50,
        context: RagwrightContext = CONTEXT_DEPENDENCY,
    ) -> TelemetryResponse:
        return TelemetryResponse(sessions=context.telemetry.recent(limit))

    return router
