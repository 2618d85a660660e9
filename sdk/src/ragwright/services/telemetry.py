from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Protocol

from ragwright.schemas.rag_chat import SessionTrace

logger = logging.getLogger(__name__)


class TelemetrySink(Protocol):
    def record(self, trace: SessionTrace) -> None: ...

    def recent(self, limit: int = 50) -> list[SessionTrace]: ...


class InMemoryTelemetryStore:
    """Keeps the most recent finalized session traces, newest first on read."""

    def __init__(self, *, max_entries: int = 200) -> None:
        self._lock = threading.Lock()
        self._traces: deque[SessionTrace] = deque(maxlen=max(1, max_entries))

    def record(self, trace: SessionTrace) -> None:
        with self._lock:
            self._traces.append(trace.model_copy(deep=True))
        logger.debug(
            "Recorded session trace %s (status=%s, events=%d)",
            trace.trace_id,
            trace.status,
            len(trace.events),
        )

    def recent(self, limit: int = 50) -> list[SessionTrace]:
        with self._lock:
            traces = list(self._traces)
        traces.reverse()
        return traces[: max(0, limit)]

    def clear(self) -> None:
        with self._lock:
            self._traces.clear()
