from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

MessageRole = Literal["system", "user", "assistant"]
PlanAction = Literal["retrieve", "answer", "web_search"]
PlanSource = Literal["heuristic", "model", "fallback"]
CritiqueAction = Literal["accept", "revise"]
SessionMode = Literal["sync", "stream"]
Intent = Literal["faq", "research", "factual_lookup", "conversational"]


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    role: MessageRole
    content: str


class Reference(BaseModel):
    """One piece of retrieved evidence, cited by position as ``[n]``."""

    model_config = ConfigDict(extra="forbid")

    id: str
    title: str | None = None
    content: str | None = None
    url: str | None = None
    page_number: int | None = Field(default=None, ge=0)
    score: float | None = None
    metadata: dict[str, Any] | None = None


class ActivityStep(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: str
    description: str
    timestamp: str


class WebResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    title: str
    url: str
    snippet: str = ""
    body: str | None = None
    rank: int | None = None
    fetched_at: str


class Plan(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: PlanAction
    reasoning: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    source: PlanSource = "heuristic"


class Critique(BaseModel):
    model_config = ConfigDict(extra="forbid")

    score: float = Field(..., ge=0.0, le=1.0)
    reasoning: str
    action: CritiqueAction
    suggestions: list[str] = Field(default_factory=list)


class CritiqueRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    attempt: int
    score: float
    action: CritiqueAction
    reasoning: str
    suggestions: list[str] = Field(default_factory=list)


class RouteSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    intent: Intent
    confidence: float
    reasoning: str
    model: str
    max_output_tokens: int


class KnowledgeAgentDiagnostics(BaseModel):
    model_config = ConfigDict(extra="forbid")

    phase: Literal["invocation", "zero_results", "partial_results"] | None = None
    status_code: int | None = None
    correlation_id: str | None = None
    request_id: str | None = None
    message: str | None = None
    documents: int = 0


class AdaptiveDiagnostics(BaseModel):
    model_config = ConfigDict(extra="forbid")

    attempts: list[dict[str, Any]] = Field(default_factory=list)
    reformulations: list[str] = Field(default_factory=list)


class RetrievalDiagnostics(BaseModel):
    model_config = ConfigDict(extra="forbid")

    strategy: str
    attempted: list[str] = Field(default_factory=list)
    succeeded: bool = False
    retry_count: int = 0
    documents: int = 0
    mean_score: float | None = None
    min_score: float | None = None
    max_score: float | None = None
    threshold_used: float | None = None
    coverage: float | None = None
    fallback_reason: str | None = None
    knowledge_agent: KnowledgeAgentDiagnostics | None = None
    index_breakdown: dict[str, int] | None = None
    adaptive: AdaptiveDiagnostics | None = None


class ContextBudget(BaseModel):
    model_config = ConfigDict(extra="forbid")

    history_tokens: int = 0
    reference_tokens: int = 0
    web_tokens: int = 0


class WebContextSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tokens: int
    trimmed: bool
    results: list[dict[str, Any]] = Field(default_factory=list)


class FeatureSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    resolved: dict[str, bool]
    sources: dict[str, str]
    gates: dict[str, bool]


class ChatMetadata(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    trace_id: str
    route: RouteSummary | None = None
    plan: Plan
    retrieval: RetrievalDiagnostics | None = None
    fallback_triggered: bool = False
    fallback_attempts: int = 0
    critique_history: list[CritiqueRecord] = Field(default_factory=list)
    critic_iterations: int = 0
    context_budget: ContextBudget
    web_context: WebContextSummary | None = None
    features: FeatureSummary
    response_id: str | None = None
    retrieval_time_ms: int | None = None


class ChatResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    answer: str
    citations: list[Reference]
    activity: list[ActivityStep]
    metadata: ChatMetadata


class TraceEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    event: str
    timestamp: str


class SessionTrace(BaseModel):
    """Aggregate record of one session run, owned by the orchestrator."""

    model_config = ConfigDict(extra="forbid")

    session_id: str
    trace_id: str
    mode: SessionMode
    question: str | None = None
    started_at: str
    completed_at: str | None = None
    status: Literal["running", "completed", "failed"] = "running"
    error: str | None = None
    route: RouteSummary | None = None
    plan: Plan | None = None
    retrieval: RetrievalDiagnostics | None = None
    critique_history: list[CritiqueRecord] = Field(default_factory=list)
    context_budget: ContextBudget | None = None
    web_context: WebContextSummary | None = None
    features: FeatureSummary | None = None
    events: list[TraceEvent] = Field(default_factory=list)


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    messages: list[ChatMessage] = Field(..., min_length=1)
    session_id: str | None = None
    feature_overrides: dict[str, Any] | None = None

    @field_validator("session_id")
    @classmethod
    def _blank_session_id_is_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None


class TranscriptEntry(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    role: MessageRole
    content: str
    citations: list[Reference] = Field(default_factory=list)
    created_at: str


class SessionFeaturesUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    features: dict[str, Any]


class SessionFeaturesResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    persisted: dict[str, bool]
    features: FeatureSummary


class SessionMessagesResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    messages: list[TranscriptEntry]


class TelemetryResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    sessions: list[SessionTrace]
