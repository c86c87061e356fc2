"""
Event emission and in-memory event store tests.

Verifies:
- every event carries the envelope (ts, session_id, component, event_type,
  severity, correlation_id, pii)
- chunk helpers correlate by request id
- the store filters by session, type and correlation id and stays bounded
"""
import json
from datetime import datetime, timedelta, timezone

import pytest

from observability.event_store import EventStore, event_store
from observability.events import Component, EventEmitter, Severity, pipeline_emitter


@pytest.fixture(autouse=True)
def cleanup():
    yield
    event_store.clear()


def _emitted(capsys):
    out = capsys.readouterr().out
    return [json.loads(line) for line in out.splitlines() if line.strip()]


class TestEventFormat:
    """Envelope fields."""

    def test_required_fields(self, capsys):
        emitter = EventEmitter(Component.INGEST_API)
        emitter.emit("test.event", "huddle_1", severity=Severity.INFO)

        (event,) = _emitted(capsys)
        for key in ("ts", "session_id", "component", "event_type", "severity", "correlation_id", "pii"):
            assert key in event
        assert event["component"] == "ingest_api"
        assert event["event_type"] == "test.event"
        assert event["severity"] == "info"

    def test_correlation_defaults_to_session(self, capsys):
        EventEmitter(Component.PIPELINE).emit("test.event", "huddle_1")

        (event,) = _emitted(capsys)
        assert event["correlation_id"] == "huddle_1"
        assert event["pii"]["contains_pii"] is False

    def test_timestamp_is_iso8601(self, capsys):
        EventEmitter(Component.STORE).emit("test.event", "huddle_1")

        (event,) = _emitted(capsys)
        ts = datetime.fromisoformat(event["ts"])
        assert ts.tzinfo is not None


class TestChunkEvents:
    def test_chunk_received(self, capsys):
        pipeline_emitter.chunk_received(
            session_id="launch",
            request_id="req-1",
            source="voice",
            conversation_id="conv_1",
            duration_ms=4200,
            audio_bytes=1024,
        )

        (event,) = _emitted(capsys)
        assert event["event_type"] == "chunk.received"
        assert event["correlation_id"] == "req-1"
        assert event["duration_ms"] == 4200
        assert event["audio_bytes"] == 1024

    def test_chunk_persisted_counts(self, capsys):
        pipeline_emitter.chunk_persisted(
            session_id="huddle_1",
            request_id="req-2",
            chunk_id="chunk_1",
            sequence=3,
            created=2,
            updated=1,
            removed=0,
            latency_ms=12,
        )

        (event,) = _emitted(capsys)
        assert event["event_type"] == "chunk.persisted"
        assert event["items"] == {"created": 2, "updated": 1, "removed": 0}
        assert event["sequence"] == 3

    def test_fallback_and_failure_severity(self, capsys):
        pipeline_emitter.transcription_fallback("h", "req-3", "gpt-4o-mini-transcribe", "whisper-1")
        pipeline_emitter.chunk_failed("h", "req-3", "analysis:request", {"name": "PipelineStageError"})

        fallback, failed = _emitted(capsys)
        assert fallback["severity"] == "warn"
        assert fallback["fallback_model"] == "whisper-1"
        assert failed["severity"] == "error"
        assert failed["stage"] == "analysis:request"

    def test_events_are_stored(self, capsys):
        pipeline_emitter.chunk_skipped("huddle_1", "req-4", reason="too_short", duration_ms=1200)

        stored = event_store.query(session_id="huddle_1")
        assert len(stored) == 1
        assert stored[0]["event_type"] == "chunk.skipped"
        assert stored[0]["reason"] == "too_short"


class TestEventStore:
    def _event(self, session_id, event_type, correlation_id=None, ts=None):
        return {
            "ts": (ts or datetime.now(timezone.utc)).isoformat(),
            "session_id": session_id,
            "component": "planning_pipeline",
            "event_type": event_type,
            "severity": "info",
            "correlation_id": correlation_id or session_id,
        }

    def test_query_filters(self):
        store = EventStore()
        store.store(self._event("a", "chunk.received", "req-1"))
        store.store(self._event("a", "chunk.persisted", "req-1"))
        store.store(self._event("a", "chunk.received", "req-2"))
        store.store(self._event("b", "chunk.received", "req-3"))

        assert len(store.query(session_id="a")) == 3
        assert len(store.query(session_id="a", event_type="chunk.received")) == 2
        assert len(store.query(correlation_id="req-1")) == 2
        assert len(store.query(session_id="a", limit=1)) == 1

    def test_query_since(self):
        store = EventStore()
        now = datetime.now(timezone.utc)
        store.store(self._event("a", "old", ts=now - timedelta(minutes=5)))
        store.store(self._event("a", "new", ts=now))

        events = store.query(session_id="a", since=now - timedelta(minutes=1))
        assert [e["event_type"] for e in events] == ["new"]

    def test_bounded(self):
        store = EventStore(max_events=3)
        for i in range(5):
            store.store(self._event("a", f"e{i}"))

        assert [e["event_type"] for e in store.query()] == ["e2", "e3", "e4"]
        assert store.get_stats()["total_events"] == 3

    def test_payload_fields_are_flattened(self):
        store = EventStore()
        event = self._event("a", "action.dropped")
        event["reason"] = "empty_patch"
        store.store(event)

        (stored,) = store.query()
        assert stored["reason"] == "empty_patch"
