"""
Speak-to-huddle pipeline tests (scripted speech model and interpreter).

Verifies:
- audio chunk -> transcript -> actions -> persisted chunk and items
- dependencies across chunks resolve through known items
- format rejection falls back and the model used is recorded on the chunk
- chunks sharing a conversation id are processed strictly in order
- short clips produce nothing; empty-patch updates are dropped
- failures surface as SpeakToHuddleError tagged with the request id
"""
import asyncio
import logging

import pytest

from logging_setup import setup_logging
from observability.event_store import event_store
from planning_pipeline.errors import (
    PipelineStageError,
    SessionResolutionFailure,
    SpeakToHuddleError,
    ValidationError,
)
from planning_pipeline.pipeline import (
    SpeakRequest,
    SpeakToHuddlePipeline,
    TextChunkRequest,
    parse_request,
)
from planning_pipeline.store import InMemoryHuddleStore
from planning_pipeline.testing import ScriptedInterpreter, ScriptedSpeechModel
from planning_pipeline.transcription import TranscriptionAdapter

AUDIT_AUDIO = b"audio-audit"
TIP_AUDIO = b"audio-tip"
AUDIT_TEXT = "Task: audit current onboarding screens for gaps."
TIP_TEXT = "Next we write the tip copy, but only after the audit."

AUDIT_ACTIONS = {
    "actions": [
        {
            "kind": "createItem",
            "itemKey": "task_audit_flow",
            "type": "task",
            "text": "Audit current onboarding screens for gaps.",
            "speakerLabel": None,
            "blockedByKeys": None,
            "needsResearch": None,
        }
    ],
    "rationale": None,
}

TIP_ACTIONS = {
    "actions": [
        {
            "kind": "createItem",
            "itemKey": "task_write_tip_copy",
            "type": "task",
            "text": "Write contextual tip copy.",
            "speakerLabel": None,
            "blockedByKeys": ["task_audit_flow"],
            "needsResearch": None,
        }
    ],
    "rationale": None,
}


@pytest.fixture(autouse=True)
def cleanup():
    yield
    event_store.clear()


@pytest.fixture
def info_logging(capsys):
    root_logger = logging.getLogger()
    level = root_logger.level
    handlers = root_logger.handlers[:]
    setup_logging(level="INFO")

    yield

    root_logger.handlers = handlers
    root_logger.setLevel(level)


@pytest.fixture
def store():
    s = InMemoryHuddleStore()
    s.create_huddle(slug="onboarding-sync", huddle_id="huddle_1")
    return s


@pytest.fixture
def speech():
    return ScriptedSpeechModel(transcripts={AUDIT_AUDIO: AUDIT_TEXT, TIP_AUDIO: TIP_TEXT})


@pytest.fixture
def interpreter():
    return ScriptedInterpreter(responses={AUDIT_TEXT: AUDIT_ACTIONS, TIP_TEXT: TIP_ACTIONS})


@pytest.fixture
def pipeline(store, speech, interpreter):
    transcription = TranscriptionAdapter(speech, primary_model="gpt-4o-mini-transcribe", fallback_model="whisper-1")
    return SpeakToHuddlePipeline(store=store, transcription=transcription, interpreter=interpreter)


def _speak(audio=AUDIT_AUDIO, **fields):
    data = {
        "huddleSlug": "onboarding-sync",
        "speakerId": "spk_1",
        "speakerLabel": "Ana",
        "audio": audio,
        "mimeType": "audio/webm;codecs=opus",
        "durationMs": 4200,
    }
    data.update(fields)
    return parse_request(SpeakRequest, data)


class TestRequests:
    def test_request_id_is_generated(self):
        assert _speak().request_id

    def test_identifier_required(self):
        with pytest.raises(ValidationError) as exc_info:
            _speak(huddleSlug=None)

        assert "huddleId or huddleSlug" in str(exc_info.value)

    def test_blank_fields(self):
        request = _speak(huddleId="  ", huddleSlug="onboarding-sync", conversationId="", durationMs="")

        assert request.huddle_id is None
        assert request.conversation_id is None
        assert request.duration_ms is None

    def test_speaker_required(self):
        with pytest.raises(ValidationError):
            _speak(speakerId=" ")

    def test_duration_must_be_finite(self):
        with pytest.raises(ValidationError):
            _speak(durationMs="nan")


class TestSpeak:
    @pytest.mark.asyncio
    async def test_audio_chunk_creates_item(self, pipeline, store, capsys):
        result = await pipeline.speak(_speak(requestId="req-1"))

        assert result.transcript.text == AUDIT_TEXT
        assert result.transcript.sequence == 1
        assert result.request_id == "req-1"
        assert result.conversation_id == "conv_scripted_1"
        assert result.mutation.created_items[0]["itemKey"] == "task_audit_flow"

        snapshot = await store.get_huddle(huddle_id="huddle_1")
        (item,) = snapshot.planning_items
        assert item.item_key == "task_audit_flow"
        assert item.speaker_id == "spk_1"

        (chunk,) = await store.list_chunks("huddle_1")
        assert chunk.text == AUDIT_TEXT
        assert chunk.metadata["transcriptionModel"] == "gpt-4o-mini-transcribe"
        assert chunk.metadata["receivedMimeType"] == "audio/webm;codecs=opus"
        assert chunk.audio.mime_type == "audio/webm"
        assert chunk.audio.size == len(AUDIT_AUDIO)

        body = result.to_dict()
        assert body["transcript"] == {"text": AUDIT_TEXT, "chunkId": chunk.chunk_id, "sequence": 1}
        assert body["requestId"] == "req-1"

    @pytest.mark.asyncio
    async def test_dependency_on_earlier_chunk(self, pipeline, store, interpreter, capsys):
        await pipeline.speak(_speak(AUDIT_AUDIO, conversationId="conv_1"))
        result = await pipeline.speak(_speak(TIP_AUDIO, conversationId="conv_1"))

        assert result.transcript.sequence == 2
        assert interpreter.known_keys_seen(TIP_TEXT) == ["task_audit_flow"]

        snapshot = await store.get_huddle(huddle_id="huddle_1")
        items = {item.item_key: item for item in snapshot.planning_items}
        assert items["task_write_tip_copy"].blocked_by_keys == ["task_audit_flow"]
        assert items["task_write_tip_copy"].order == 2

    @pytest.mark.asyncio
    async def test_fallback_model_is_recorded(self, store, interpreter, capsys):
        speech = ScriptedSpeechModel(text=AUDIT_TEXT, rejects_format=["gpt-4o-mini-transcribe"])
        transcription = TranscriptionAdapter(speech, primary_model="gpt-4o-mini-transcribe", fallback_model="whisper-1")
        pipeline = SpeakToHuddlePipeline(store=store, transcription=transcription, interpreter=interpreter)

        result = await pipeline.speak(_speak(requestId="req-fb"))

        assert result.transcription_model == "whisper-1"
        (chunk,) = await store.list_chunks("huddle_1")
        assert chunk.metadata["transcriptionModel"] == "whisper-1"
        assert event_store.query(correlation_id="req-fb", event_type="transcription.fallback")

    @pytest.mark.asyncio
    async def test_short_clip_is_skipped(self, pipeline, store, speech, interpreter, capsys):
        result = await pipeline.speak(_speak(durationMs=1500, requestId="req-short"))

        assert result is None
        assert speech.calls == []
        assert interpreter.requests == []
        assert await store.list_chunks("huddle_1") == []
        assert event_store.query(correlation_id="req-short", event_type="chunk.skipped")

    @pytest.mark.asyncio
    async def test_empty_patch_update_is_dropped(self, store, speech, capsys):
        interpreter = ScriptedInterpreter(
            responses={
                AUDIT_TEXT: {
                    "actions": [
                        {"kind": "updateItem", "targetKey": "task_audit_flow", "patch": {"text": None, "blockedByKeys": None}},
                        AUDIT_ACTIONS["actions"][0],
                    ],
                    "rationale": None,
                }
            }
        )
        transcription = TranscriptionAdapter(speech, primary_model="gpt-4o-mini-transcribe", fallback_model="whisper-1")
        pipeline = SpeakToHuddlePipeline(store=store, transcription=transcription, interpreter=interpreter)

        result = await pipeline.speak(_speak(requestId="req-drop"))

        assert result.dropped_actions == [{"kind": "updateItem", "targetKey": "task_audit_flow", "reason": "empty_patch"}]
        assert [c["itemKey"] for c in result.mutation.created_items] == ["task_audit_flow"]
        assert event_store.query(correlation_id="req-drop", event_type="action.dropped")

    @pytest.mark.asyncio
    async def test_no_actions_still_persists_chunk(self, pipeline, store, speech, capsys):
        speech.text = "How was everyone's weekend?"

        result = await pipeline.speak(_speak(b"small-talk"))

        assert result.mutation.created_items == []
        assert len(await store.list_chunks("huddle_1")) == 1

    @pytest.mark.asyncio
    async def test_speak_text(self, pipeline, store, speech, capsys):
        request = parse_request(
            TextChunkRequest,
            {"huddleId": "huddle_1", "speakerId": "spk_2", "speakerLabel": "Bo", "text": AUDIT_TEXT},
        )

        result = await pipeline.speak_text(request)

        assert speech.calls == []
        assert result.transcription_model is None
        (chunk,) = await store.list_chunks("huddle_1")
        assert chunk.source == "text"
        assert chunk.speaker_label == "Bo"

    @pytest.mark.asyncio
    async def test_speak_under_info_logging(self, pipeline, store, info_logging, capsys):
        result = await pipeline.speak(_speak(requestId="req-info"))

        assert result.transcript.sequence == 1
        assert len(await store.list_chunks("huddle_1")) == 1
        output = capsys.readouterr().out
        assert "Voice transcription pipeline completed" in output
        assert "Transcript chunk committed" in output

    @pytest.mark.asyncio
    async def test_user_api_key_reaches_models(self, pipeline, speech, interpreter, info_logging, capsys):
        await pipeline.speak(_speak(requestId="req-key", userApiKey="sk-subscriber-0123456789"))

        assert speech.api_keys == ["sk-subscriber-0123456789"]
        assert interpreter.requests[0].user_api_key == "sk-subscriber-0123456789"
        assert "sk-subscriber-0123456789" not in capsys.readouterr().out


class TestConversationOrdering:
    @pytest.mark.asyncio
    async def test_shared_conversation_sees_previous_items(self, store, speech, capsys):
        # the first chunk is slow to interpret; the second must still wait for it
        interpreter = ScriptedInterpreter(
            responses={AUDIT_TEXT: AUDIT_ACTIONS, TIP_TEXT: TIP_ACTIONS},
            delays={AUDIT_TEXT: 0.05},
        )
        transcription = TranscriptionAdapter(speech, primary_model="gpt-4o-mini-transcribe", fallback_model="whisper-1")
        pipeline = SpeakToHuddlePipeline(store=store, transcription=transcription, interpreter=interpreter)

        first, second = await asyncio.gather(
            pipeline.speak(_speak(AUDIT_AUDIO, conversationId="conv_1", requestId="req-a")),
            pipeline.speak(_speak(TIP_AUDIO, conversationId="conv_1", requestId="req-b")),
        )

        assert (first.transcript.sequence, second.transcript.sequence) == (1, 2)
        assert interpreter.completed == [AUDIT_TEXT, TIP_TEXT]
        assert interpreter.known_keys_seen(TIP_TEXT) == ["task_audit_flow"]
        assert event_store.query(correlation_id="req-b", event_type="conversation.queued")

        snapshot = await store.get_huddle(huddle_id="huddle_1")
        tip = next(i for i in snapshot.planning_items if i.item_key == "task_write_tip_copy")
        assert tip.blocked_by_keys == ["task_audit_flow"]

    @pytest.mark.asyncio
    async def test_failure_does_not_block_conversation(self, store, speech, capsys):
        interpreter = ScriptedInterpreter(
            responses={AUDIT_TEXT: RuntimeError("model down"), TIP_TEXT: TIP_ACTIONS},
            delays={AUDIT_TEXT: 0.02},
        )
        transcription = TranscriptionAdapter(speech, primary_model="gpt-4o-mini-transcribe", fallback_model="whisper-1")
        pipeline = SpeakToHuddlePipeline(store=store, transcription=transcription, interpreter=interpreter)

        first, second = await asyncio.gather(
            pipeline.speak(_speak(AUDIT_AUDIO, conversationId="conv_1")),
            pipeline.speak(_speak(TIP_AUDIO, conversationId="conv_1")),
            return_exceptions=True,
        )

        assert isinstance(first, SpeakToHuddleError)
        assert second.transcript.sequence == 1
        # the dependency target never existed, so the edge is dropped
        snapshot = await store.get_huddle(huddle_id="huddle_1")
        assert snapshot.planning_items[0].blocked_by_keys == []
        assert pipeline.serializer.active_keys() == []


class TestFailures:
    @pytest.mark.asyncio
    async def test_interpreter_failure_is_reported(self, store, speech, capsys):
        interpreter = ScriptedInterpreter(responses={AUDIT_TEXT: RuntimeError("model down")})
        transcription = TranscriptionAdapter(speech, primary_model="gpt-4o-mini-transcribe", fallback_model="whisper-1")
        pipeline = SpeakToHuddlePipeline(store=store, transcription=transcription, interpreter=interpreter)

        with pytest.raises(SpeakToHuddleError) as exc_info:
            await pipeline.speak(_speak(requestId="req-fail"))

        error = exc_info.value
        assert str(error).startswith("Transcription failed (request req-fail): ")
        assert "model down" in str(error)
        assert error.request_id == "req-fail"
        assert error.stage == "analysis:request"
        assert isinstance(error.__cause__, PipelineStageError)

        assert await store.list_chunks("huddle_1") == []
        (failed,) = event_store.query(correlation_id="req-fail", event_type="chunk.failed")
        assert failed["stage"] == "analysis:request"

    @pytest.mark.asyncio
    async def test_unknown_huddle(self, pipeline, interpreter, capsys):
        with pytest.raises(SpeakToHuddleError) as exc_info:
            await pipeline.speak(_speak(huddleSlug="no-such-huddle", requestId="req-404"))

        assert exc_info.value.stage == "store:resolveHuddle"
        assert isinstance(exc_info.value.__cause__, SessionResolutionFailure)
        assert interpreter.requests == []

    @pytest.mark.asyncio
    async def test_transcription_failure(self, store, interpreter, capsys):
        speech = ScriptedSpeechModel(fails=["gpt-4o-mini-transcribe"])
        transcription = TranscriptionAdapter(speech, primary_model="gpt-4o-mini-transcribe", fallback_model="whisper-1")
        pipeline = SpeakToHuddlePipeline(store=store, transcription=transcription, interpreter=interpreter)

        with pytest.raises(SpeakToHuddleError) as exc_info:
            await pipeline.speak(_speak(requestId="req-tx"))

        assert exc_info.value.stage.startswith("transcription")
        assert "unavailable" in str(exc_info.value)
        assert interpreter.requests == []

    @pytest.mark.asyncio
    async def test_credentials_never_leak(self, store, speech, capsys):
        interpreter = ScriptedInterpreter(
            responses={AUDIT_TEXT: RuntimeError("Incorrect API key provided: sk-abcdefghijklmnop")}
        )
        transcription = TranscriptionAdapter(speech, primary_model="gpt-4o-mini-transcribe", fallback_model="whisper-1")
        pipeline = SpeakToHuddlePipeline(store=store, transcription=transcription, interpreter=interpreter)

        with pytest.raises(SpeakToHuddleError) as exc_info:
            await pipeline.speak(_speak())

        assert "sk-abcdefghijklmnop" not in str(exc_info.value)
