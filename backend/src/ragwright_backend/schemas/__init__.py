"""Pydantic schemas for the ragwright backend API."""

from ragwright.schemas.rag_chat import ChatRequest, ChatResponse, FeatureSummary, SessionTrace

from ragwright_backend.schemas.errors import (
    ApiError,
    ApiErrorResponse,
    error_from_exception,
    error_response,
)

__all__ = [
    "ApiError",
    "ApiErrorResponse",
    "ChatRequest",
    "ChatResponse",
    "FeatureSummary",
    "SessionTrace",
    "error_from_exception",
    "error_response",
]
