"""
Chunk lifecycle tests.
Tests chunk creation, state transitions, and terminal states.
"""
import json

import pytest

from observability.event_store import event_store
from planning_pipeline.chunk import ChunkLifecycle, ChunkState, InvalidChunkTransition


@pytest.fixture(autouse=True)
def cleanup():
    yield
    event_store.clear()


class TestChunkLifecycle:
    """Test ChunkLifecycle transitions."""

    def test_starts_received(self):
        chunk = ChunkLifecycle(request_id="req-1", session_key="huddle_1")

        assert chunk.state == ChunkState.RECEIVED
        assert not chunk.is_terminal()
        assert len(chunk.history) == 1

    def test_request_id_required(self):
        with pytest.raises(ValueError):
            ChunkLifecycle(request_id="", session_key="huddle_1")

    def test_voice_path(self, capsys):
        chunk = ChunkLifecycle(request_id="req-1", session_key="huddle_1")

        for state in (
            ChunkState.TRANSCRIBING,
            ChunkState.INTERPRETING,
            ChunkState.NORMALIZING,
            ChunkState.APPLYING,
            ChunkState.PERSISTED,
        ):
            chunk.transition_to(state)

        assert chunk.state == ChunkState.PERSISTED
        assert chunk.is_terminal()
        assert [s for s, _ in chunk.history][-1] == ChunkState.PERSISTED

    def test_text_path_skips_transcription(self, capsys):
        chunk = ChunkLifecycle(request_id="req-1", session_key="huddle_1")

        old_state = chunk.transition_to(ChunkState.INTERPRETING)

        assert old_state == ChunkState.RECEIVED
        assert chunk.state == ChunkState.INTERPRETING

    def test_skip_is_terminal(self, capsys):
        chunk = ChunkLifecycle(request_id="req-1", session_key="huddle_1")
        chunk.transition_to(ChunkState.SKIPPED)

        assert chunk.is_terminal()
        with pytest.raises(InvalidChunkTransition):
            chunk.transition_to(ChunkState.TRANSCRIBING)

    def test_no_backwards_transition(self, capsys):
        chunk = ChunkLifecycle(request_id="req-1", session_key="huddle_1")
        chunk.transition_to(ChunkState.INTERPRETING)

        with pytest.raises(InvalidChunkTransition):
            chunk.transition_to(ChunkState.TRANSCRIBING)

    def test_fail_records_stage(self, capsys):
        chunk = ChunkLifecycle(request_id="req-1", session_key="huddle_1")
        chunk.transition_to(ChunkState.TRANSCRIBING)

        chunk.fail("transcription:primary")

        assert chunk.state == ChunkState.FAILED
        assert chunk.failed_stage == "transcription:primary"
        with pytest.raises(InvalidChunkTransition):
            chunk.fail("analysis:request")

    def test_failed_needs_fail(self):
        chunk = ChunkLifecycle(request_id="req-1", session_key="huddle_1")

        with pytest.raises(InvalidChunkTransition):
            chunk.transition_to(ChunkState.FAILED)

    def test_transitions_emit_events(self, capsys):
        chunk = ChunkLifecycle(request_id="req-7", session_key="huddle_1")
        chunk.transition_to(ChunkState.TRANSCRIBING)

        (line,) = [l for l in capsys.readouterr().out.splitlines() if l.strip()]
        event = json.loads(line)
        assert event["event_type"] == "chunk.state_changed"
        assert event["from_state"] == "received"
        assert event["to_state"] == "transcribing"
        assert event["correlation_id"] == "req-7"
        assert len(event_store.query(correlation_id="req-7")) == 1
