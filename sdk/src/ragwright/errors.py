from __future__ import annotations

from typing import Literal

KnowledgeAgentFailurePhase = Literal["invocation", "zero_results", "partial_results"]


class RagwrightError(RuntimeError):
    """Base error for the Ragwright SDK."""


class RagwrightConfigurationError(RagwrightError):
    """Raised when a required setting or credential is missing or invalid."""


class UpstreamServiceError(RagwrightError):
    """Raised when a remote dependency answers with a failure.

    Carries the HTTP status and the tracing identifiers the upstream returned so
    failures can be correlated across systems.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        correlation_id: str | None = None,
        request_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.correlation_id = correlation_id
        self.request_id = request_id


class SearchBackendError(UpstreamServiceError):
    """Raised when the search service rejects or fails a request."""


class CompletionBackendError(UpstreamServiceError):
    """Raised when the hosted completion API fails."""


class WebSearchError(UpstreamServiceError):
    """Raised when the web search provider fails."""


class KnowledgeAgentError(UpstreamServiceError):
    """Raised when a knowledge agent invocation does not yield usable grounding."""

    def __init__(
        self,
        message: str,
        *,
        phase: KnowledgeAgentFailurePhase,
        status_code: int | None = None,
        correlation_id: str | None = None,
        request_id: str | None = None,
    ) -> None:
        super().__init__(
            message,
            status_code=status_code,
            correlation_id=correlation_id,
            request_id=request_id,
        )
        self.phase: KnowledgeAgentFailurePhase = phase


class SynthesisError(RagwrightError):
    """Raised when no answer could be synthesized for a session."""
