"""Public schema exports for the Ragwright SDK."""

from ragwright.schemas.rag_chat import (
    ActivityStep,
    ChatMessage,
    ChatMetadata,
    ChatRequest,
    ChatResponse,
    Critique,
    CritiqueRecord,
    FeatureSummary,
    Plan,
    Reference,
    RetrievalDiagnostics,
    SessionFeaturesResponse,
    SessionFeaturesUpdate,
    SessionMessagesResponse,
    SessionTrace,
    TelemetryResponse,
    TranscriptEntry,
    WebResult,
)

__all__ = [
    "ActivityStep",
    "ChatMessage",
    "ChatMetadata",
    "ChatRequest",
    "ChatResponse",
    "Critique",
    "CritiqueRecord",
    "FeatureSummary",
    "Plan",
    "Reference",
    "RetrievalDiagnostics",
    "SessionFeaturesResponse",
    "SessionFeaturesUpdate",
    "SessionMessagesResponse",
    "SessionTrace",
    "TelemetryResponse",
    "TranscriptEntry",
    "WebResult",
]
