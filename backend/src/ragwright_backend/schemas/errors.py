from __future__ import annotations

import uuid

from pydantic import BaseModel, ConfigDict, Field
from ragwright.errors import RagwrightConfigurationError, UpstreamServiceError


class ApiError(BaseModel):
    """Error body returned by non-2xx endpoints.

    ``request_id`` echoes the upstream correlation id when the failure came
    from a remote dependency, so one id traces the request across systems.
    """

    model_config = ConfigDict(extra="forbid")

    code: str = Field(..., description="Stable machine-readable error code")
    message: str = Field(..., description="Human-friendly error message")
    recoverable: bool = Field(
        ..., description="Whether the client can retry without changing input"
    )
    request_id: str = Field(..., description="Per-request correlation identifier")


class ApiErrorResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    error: ApiError


def new_request_id() -> str:
    return uuid.uuid4().hex


def error_response(
    *,
    code: str,
    message: str,
    recoverable: bool,
    request_id: str | None = None,
) -> ApiErrorResponse:
    return ApiErrorResponse(
        error=ApiError(
            code=code,
            message=message,
            recoverable=recoverable,
            request_id=request_id or new_request_id(),
        )
    )


def error_from_exception(
    exc: BaseException, *, code: str, default_message: str
) -> ApiErrorResponse:
    # Misconfiguration does not go away on retry; everything else might.
    recoverable = not isinstance(exc, RagwrightConfigurationError)
    request_id: str | None = None
    cause = exc if isinstance(exc, UpstreamServiceError) else exc.__cause__
    if isinstance(cause, UpstreamServiceError):
        request_id = cause.correlation_id or cause.request_id
    return error_response(
        code=code,
        message=str(exc) or default_message,
        recoverable=recoverable,
        request_id=request_id,
    )
