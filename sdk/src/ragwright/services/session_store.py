from __future__ import annotations

import threading
from collections import OrderedDict
from collections.abc import Mapping
from typing import Any, Protocol

from ragwright.features import sanitize_feature_overrides
from ragwright.retrieval.types import now_iso
from ragwright.schemas.rag_chat import MessageRole, Reference, TranscriptEntry


class SessionStore(Protocol):
    def load_persisted_features(self, session_id: str) -> dict[str, bool] | None: ...

    def save_persisted_features(self, session_id: str, features: Mapping[str, object]) -> None: ...

    def save_transcript(
        self,
        session_id: str,
        *,
        question: str,
        answer: str,
        citations: list[Reference],
    ) -> None: ...

    def list_transcript(self, session_id: str) -> list[TranscriptEntry]: ...


class InMemorySessionStore:
    """Thread-safe, bounded store for per-session transcripts and feature overrides.

    The least recently written session is evicted once ``max_sessions`` is
    exceeded; each transcript keeps its newest ``max_turns`` entries.
    """

    def __init__(self, *, max_turns: int = 50, max_sessions: int = 1000) -> None:
        self._lock = threading.RLock()
        self._max_turns = max(2, max_turns)
        self._max_sessions = max(1, max_sessions)
        self._transcripts: OrderedDict[str, list[TranscriptEntry]] = OrderedDict()
        self._features: OrderedDict[str, dict[str, bool]] = OrderedDict()

    def _touch(self, table: OrderedDict[str, Any], session_id: str) -> None:
        table.move_to_end(session_id)
        while len(table) > self._max_sessions:
            table.popitem(last=False)

    def load_persisted_features(self, session_id: str) -> dict[str, bool] | None:
        with self._lock:
            features = self._features.get(session_id)
            return dict(features) if features is not None else None

    def save_persisted_features(self, session_id: str, features: Mapping[str, object]) -> None:
        sanitized = sanitize_feature_overrides(features)
        with self._lock:
            merged = dict(self._features.get(session_id, {}))
            merged.update(sanitized)
            self._features[session_id] = merged
            self._touch(self._features, session_id)

    def _append(
        self,
        turns: list[TranscriptEntry],
        role: MessageRole,
        content: str,
        citations: list[Reference] | None = None,
    ) -> None:
        turns.append(
            TranscriptEntry(
                role=role,
                content=content,
                citations=list(citations or []),
                created_at=now_iso(),
            )
        )

    def save_transcript(
        self,
        session_id: str,
        *,
        question: str,
        answer: str,
        citations: list[Reference],
    ) -> None:
        with self._lock:
            turns = list(self._transcripts.get(session_id, []))
            self._append(turns, "user", question)
            self._append(turns, "assistant", answer, citations)
            if len(turns) > self._max_turns:
                turns = turns[-self._max_turns :]
            self._transcripts[session_id] = turns
            self._touch(self._transcripts, session_id)

    def list_transcript(self, session_id: str) -> list[TranscriptEntry]:
        with self._lock:
            return list(self._transcripts.get(session_id, []))
