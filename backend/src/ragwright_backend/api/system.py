from typing import Final, Literal, cast

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict
from ragwright.context import RagwrightContext
from ragwright.schemas.rag_chat import FeatureSummary

STATUS_OK: Final[Literal["ok"]] = "ok"


class HealthResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: Literal["ok"]
    service: str
    version: str


def get_ragwright_context(request: Request) -> RagwrightContext:
    context = getattr(request.app.state, "ragwright_context", None)
    if context is None:  # pragma: no cover
        raise RuntimeError("Ragwright context not configured")
    return cast(RagwrightContext, context)


CONTEXT_DEPENDENCY = Depends(get_ragwright_context)


def build_system_router(*, service_name: str, version: str) -> APIRouter:
    router = APIRouter(tags=["system"])

    @router.get("/health", response_model=HealthResponse, summary="Health check")
    async def health() -> HealthResponse:
        return HealthResponse(status=STATUS_OK, service=service_name, version=version)

    @router.get(
        "/v1/features",
        response_model=FeatureSummary,
        summary="Process-level feature flag resolution",
    )
    async def features(context: RagwrightContext = CONTEXT_DEPENDENCY) -> FeatureSummary:
        resolution = context.config_features()
        return FeatureSummary(
            resolved=dict(resolution.resolved),
            sources=dict(resolution.sources),
            gates=dict(resolution.gates),
        )

    return router
