import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Final

import uvicorn
from fastapi import FastAPI
from ragwright.context import RagwrightContext, build_context

from ragwright_backend.api import (
    build_rag_chat_router,
    build_sessions_router,
    build_system_router,
)

DEFAULT_SERVICE_NAME: Final[str] = "ragwright-backend"
DEFAULT_HOST: Final[str] = "0.0.0.0"
DEFAULT_PORT: Final[int] = 8000
SERVICE_VERSION: Final[str] = "0.1.0"

logger = logging.getLogger(__name__)


def create_app(
    *,
    service_name: str = DEFAULT_SERVICE_NAME,
    context: RagwrightContext | None = None,
) -> FastAPI:
    normalized_service_name = service_name.strip()
    if not normalized_service_name:
        raise ValueError("service_name must not be empty")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if getattr(app.state, "ragwright_context", None) is None:
            app.state.ragwright_context = build_context()
        yield
        await app.state.ragwright_context.aclose()

    app = FastAPI(
        title="ragwright-backend",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )

    # Shared state; built lazily at startup when not injected.
    app.state.ragwright_context = context

    app.include_router(
        build_system_router(service_name=normalized_service_name, version=SERVICE_VERSION)
    )
    app.include_router(build_rag_chat_router())
    app.include_router(build_sessions_router())
    return app


app = create_app()


def _read_server_host() -> str:
    configured_host = os.getenv("RAGWRIGHT_BACKEND_HOST", DEFAULT_HOST).strip()
    if not configured_host:
        raise ValueError("RAGWRIGHT_BACKEND_HOST must not be empty")

    return configured_host


def _read_server_port() -> int:
    configured_port = os.getenv("RAGWRIGHT_BACKEND_PORT", str(DEFAULT_PORT)).strip()
    if not configured_port:
        raise ValueError("RAGWRIGHT_BACKEND_PORT must not be empty")

    port = int(configured_port)
    if port <= 0:
        raise ValueError("RAGWRIGHT_BACKEND_PORT must be greater than zero")

    return port


def main() -> None:
    logging.basicConfig(
        level=os.getenv("RAGWRIGHT_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting ragwright backend on %s:%s", _read_server_host(), _read_server_port())
    uvicorn.run(
        "ragwright_backend.app:app",
        host=_read_server_host(),
        port=_read_server_port(),
        reload=False,
    )
