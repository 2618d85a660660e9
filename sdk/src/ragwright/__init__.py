"""Ragwright Python SDK."""

from .client import Ragwright
from .context import RagwrightContext, build_context
from .errors import (
    CompletionBackendError,
    KnowledgeAgentError,
    RagwrightConfigurationError,
    RagwrightError,
    SearchBackendError,
    SynthesisError,
    UpstreamServiceError,
    WebSearchError,
)
from .settings import Settings

__all__ = [
    "CompletionBackendError",
    "KnowledgeAgentError",
    "Ragwright",
    "RagwrightConfigurationError",
    "RagwrightContext",
    "RagwrightError",
    "SearchBackendError",
    "Settings",
    "SynthesisError",
    "UpstreamServiceError",
    "WebSearchError",
    "build_context",
]
