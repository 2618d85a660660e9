from __future__ import annotations

from typing import Any

from ragwright.schemas.rag_chat import SessionTrace
from ragwright.services.session_store import InMemorySessionStore
from ragwright.services.telemetry import InMemoryTelemetryStore


def _trace(trace_id: str) -> SessionTrace:
    return SessionTrace(
        session_id="s",
        trace_id=trace_id,
        mode="sync",
        started_at="2026-01-01T00:00:00+00:00",
    )


def test_feature_overrides_merge_and_drop_unknown_values() -> None:
    store = InMemorySessionStore()

    store.save_persisted_features("s1", {"critic": False, "unknown": True})
    store.save_persisted_features("s1", {"web_search": "true", "llm_planner": 1})

    assert store.load_persisted_features("s1") == {"critic": False, "web_search": True}
    assert store.load_persisted_features("missing") is None


def test_loaded_features_are_copies() -> None:
    store = InMemorySessionStore()
    store.save_persisted_features("s1", {"critic": True})

    loaded = store.load_persisted_features("s1")
    assert loaded is not None
    loaded["critic"] = False

    assert store.load_persisted_features("s1") == {"critic": True}


def test_transcript_keeps_newest_turns(refs: Any) -> None:
    store = InMemorySessionStore(max_turns=4)

    for idx in range(3):
        store.save_transcript("s1", question=f"q{idx}", answer=f"a{idx}", citations=refs(1))

    transcript = store.list_transcript("s1")
    assert [entry.content for entry in transcript] == ["q1", "a1", "q2", "a2"]
    assert transcript[0].citations == []
    assert [ref.id for ref in transcript[1].citations] == ["doc_1"]


def test_least_recently_written_session_is_evicted(refs: Any) -> None:
    store = InMemorySessionStore(max_sessions=2)

    store.save_transcript("s1", question="q", answer="a", citations=[])
    store.save_transcript("s2", question="q", answer="a", citations=[])
    store.save_transcript("s1", question="q again", answer="a", citations=[])
    store.save_transcript("s3", question="q", answer="a", citations=[])

    assert store.list_transcript("s2") == []
    assert len(store.list_transcript("s1")) == 4
    assert len(store.list_transcript("s3")) == 2


def test_telemetry_returns_newest_first_within_capacity() -> None:
    telemetry = InMemoryTelemetryStore(max_entries=3)

    for idx in range(5):
        telemetry.record(_trace(f"t{idx}"))

    assert [trace.trace_id for trace in telemetry.recent()] == ["t4", "t3", "t2"]
    assert [trace.trace_id for trace in telemetry.recent(limit=1)] == ["t4"]
    assert telemetry.recent(limit=0) == []


def test_telemetry_stores_snapshots() -> None:
    telemetry = InMemoryTelemetryStore()
    trace = _trace("t1")

    telemetry.record(trace)
    trace.status = "failed"

    assert telemetry.recent()[0].status == "running"
    telemetry.clear()
    assert telemetry.recent() == []
