"""
Speak-to-huddle orchestration.

One submitted audio chunk goes through:

    validate -> (skip if too short) -> conversation gate ->
    transcribe -> resolve huddle -> interpret -> normalize -> persist

The conversation gate is taken before transcription, so every chunk sharing a
conversation id runs the whole pipeline in submission order. Chunks without a
conversation id are not gated.

Any failure is reported as ``SpeakToHuddleError`` whose message starts with
the request id and carries a bounded, credential-free diagnostic summary.
"""
from __future__ import annotations

import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Optional, Type, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from logging_setup import get_logger, Component, StructuredLogger
from observability.events import pipeline_emitter
from .actions import normalize_actions
from .chunk import ChunkLifecycle, ChunkState
from .config import PipelineConfig, get_config
from .diagnostics import build_error_summary, serialize_error, truncate
from .errors import PipelineError, PipelineStageError, SpeakToHuddleError, ValidationError
from .interpreter import InterpretationRequest, Interpreter, OpenAIInterpreter
from .models import AudioDescriptor, MutationResult
from .serializer import ConversationSerializer
from .store import (
    HttpHuddleStore,
    HuddleStore,
    InMemoryHuddleStore,
    TranscriptMutation,
    resolve_huddle,
)
from .transcription import OpenAISpeechModel, TranscriptionAdapter, normalize_mime_type

logger = get_logger(Component.PIPELINE)

ERROR_SUMMARY_LIMIT = 600

T = TypeVar("T")
R = TypeVar("R", bound=BaseModel)


# --- Requests ---


class ChunkRequest(BaseModel):
    """Fields shared by every ingestion request."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)

    huddle_id: Optional[str] = Field(default=None, alias="huddleId")
    huddle_slug: Optional[str] = Field(default=None, alias="huddleSlug")
    speaker_id: str = Field(..., alias="speakerId", min_length=1)
    speaker_label: str = Field(..., alias="speakerLabel", min_length=1)
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    request_id: Optional[str] = Field(default=None, alias="requestId")
    # subscriber key for the model calls; never logged or echoed back
    user_api_key: Optional[str] = Field(default=None, alias="userApiKey", repr=False, exclude=True)

    @field_validator("huddle_id", "huddle_slug", "conversation_id", "request_id", "user_api_key", mode="before")
    @classmethod
    def _blank_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _identify(self):
        if not self.huddle_id and not self.huddle_slug:
            raise ValueError("Provide either huddleId or huddleSlug.")
        if not self.request_id:
            self.request_id = str(uuid.uuid4())
        return self

    @property
    def session_key(self) -> str:
        """Best identifier before the huddle is resolved."""
        return self.huddle_id or self.huddle_slug or ""


class SpeakRequest(ChunkRequest):
    audio: bytes
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    filename: Optional[str] = None
    duration_ms: Optional[float] = Field(default=None, alias="durationMs")

    @field_validator("duration_ms", mode="before")
    @classmethod
    def _blank_duration(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("duration_ms")
    @classmethod
    def _finite_duration(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and not math.isfinite(value):
            raise ValueError("durationMs must be a finite number")
        return value


class TextChunkRequest(ChunkRequest):
    """A typed transcript line; skips transcription."""

    text: str = Field(..., min_length=1)


def parse_request(model: Type[R], data: Dict[str, Any]) -> R:
    """Validate ``data`` into ``model``; raises our ValidationError, never pydantic's."""
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        problems = []
        for err in exc.errors():
            location = ".".join(str(part) for part in err.get("loc", ())) or "request"
            problems.append(f"{location}: {err.get('msg')}")
        raise ValidationError("; ".join(problems), stage="parse:request") from exc


# --- Results ---


@dataclass(frozen=True)
class TranscriptRef:
    text: str
    chunk_id: str
    sequence: int


@dataclass
class SpeakResult:
    transcript: TranscriptRef
    mutation: MutationResult
    conversation_id: Optional[str]
    request_id: str
    transcription_model: Optional[str] = None
    dropped_actions: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transcript": {
                "text": self.transcript.text,
                "chunkId": self.transcript.chunk_id,
                "sequence": self.transcript.sequence,
            },
            "mutation": self.mutation.to_dict(),
            "conversationId": self.conversation_id,
            "requestId": self.request_id,
        }


@dataclass(frozen=True)
class _ChunkInput:
    """A chunk with its transcript in hand, ready for interpretation."""

    request: ChunkRequest
    text: str
    source: str
    transcript_metadata: Dict[str, Any] = field(default_factory=dict)
    audio: Optional[AudioDescriptor] = None
    transcription_model: Optional[str] = None


# --- Pipeline ---


class SpeakToHuddlePipeline:
    def __init__(
        self,
        store: HuddleStore,
        transcription: TranscriptionAdapter,
        interpreter: Interpreter,
        serializer: Optional[ConversationSerializer] = None,
    ):
        self.store = store
        self.transcription = transcription
        self.interpreter = interpreter
        self.serializer = serializer or ConversationSerializer()

    async def speak(self, request: SpeakRequest) -> Optional[SpeakResult]:
        """
        Process one audio chunk.

        Returns None for clips shorter than the minimum duration; nothing is
        transcribed, interpreted or persisted for them.
        """
        log = logger.with_session(request.session_key)
        pipeline_emitter.chunk_received(
            session_id=request.session_key,
            request_id=request.request_id,
            source="voice",
            conversation_id=request.conversation_id,
            duration_ms=request.duration_ms,
            audio_bytes=len(request.audio),
        )
        lifecycle = ChunkLifecycle(request_id=request.request_id, session_key=request.session_key)

        if self.transcription.is_too_short(request.duration_ms):
            lifecycle.transition_to(ChunkState.SKIPPED)
            pipeline_emitter.chunk_skipped(
                session_id=request.session_key,
                request_id=request.request_id,
                reason="too_short",
                duration_ms=request.duration_ms,
            )
            log.debug(
                "Skipping short audio clip",
                request_id=request.request_id,
                duration_ms=request.duration_ms,
            )
            return None

        log.info(
            "Processing voice transcription request",
            request_id=request.request_id,
            huddle_id=request.huddle_id,
            huddle_slug=request.huddle_slug,
            conversation_id=request.conversation_id,
            duration_ms=request.duration_ms,
            mime_type=normalize_mime_type(request.mime_type),
            audio_bytes=len(request.audio),
        )
        return await self._gated(request, lifecycle, log, lambda: self._run_voice(request, lifecycle, log))

    async def speak_text(self, request: TextChunkRequest) -> SpeakResult:
        """Process a typed transcript line through interpretation and persistence."""
        log = logger.with_session(request.session_key)
        pipeline_emitter.chunk_received(
            session_id=request.session_key,
            request_id=request.request_id,
            source="text",
            conversation_id=request.conversation_id,
        )
        lifecycle = ChunkLifecycle(request_id=request.request_id, session_key=request.session_key)

        async def run() -> SpeakResult:
            lifecycle.transition_to(ChunkState.INTERPRETING)
            return await self._interpret_and_apply(
                _ChunkInput(request=request, text=request.text, source="text"),
                lifecycle,
                log,
            )

        return await self._gated(request, lifecycle, log, run)

    async def _gated(self, request: ChunkRequest, lifecycle: ChunkLifecycle, log: StructuredLogger, task):
        key = request.conversation_id
        if self.serializer.is_busy(key):
            log.info("Conversation busy, queuing new transcript", request_id=request.request_id, conversation_id=key)
            pipeline_emitter.conversation_queued(
                session_id=request.session_key,
                request_id=request.request_id,
                conversation_id=key,
            )
        try:
            return await self.serializer.run(key, task)
        except Exception as error:
            raise self._report_failure(error, request, lifecycle, log) from error

    async def _run_voice(
        self,
        request: SpeakRequest,
        lifecycle: ChunkLifecycle,
        log: StructuredLogger,
    ) -> Optional[SpeakResult]:
        lifecycle.transition_to(ChunkState.TRANSCRIBING)

        def on_fallback(primary_model: str, fallback_model: str) -> None:
            pipeline_emitter.transcription_fallback(
                session_id=request.session_key,
                request_id=request.request_id,
                primary_model=primary_model,
                fallback_model=fallback_model,
            )

        transcription = await self._stage(
            "transcription",
            self.transcription.transcribe(
                request.audio,
                request.mime_type,
                duration_ms=request.duration_ms,
                filename=request.filename,
                user_api_key=request.user_api_key,
                log=log,
                on_fallback=on_fallback,
            ),
        )
        if transcription.skipped:
            lifecycle.transition_to(ChunkState.SKIPPED)
            pipeline_emitter.chunk_skipped(
                session_id=request.session_key,
                request_id=request.request_id,
                reason="too_short",
                duration_ms=request.duration_ms,
            )
            return None

        lifecycle.transition_to(ChunkState.INTERPRETING)

        transcript_metadata: Dict[str, Any] = {"transcriptionModel": transcription.model}
        if transcription.usage:
            transcript_metadata["transcriptionUsage"] = transcription.usage
        if request.mime_type:
            transcript_metadata["receivedMimeType"] = request.mime_type

        return await self._interpret_and_apply(
            _ChunkInput(
                request=request,
                text=transcription.text,
                source="voice",
                transcript_metadata=transcript_metadata,
                audio=AudioDescriptor(
                    mime_type=normalize_mime_type(request.mime_type),
                    size=len(request.audio),
                    duration_ms=request.duration_ms,
                ),
                transcription_model=transcription.model,
            ),
            lifecycle,
            log,
        )

    async def _interpret_and_apply(
        self,
        chunk: _ChunkInput,
        lifecycle: ChunkLifecycle,
        log: StructuredLogger,
    ) -> SpeakResult:
        request = chunk.request
        started = time.time()

        huddle = await self._stage(
            "store:resolveHuddle",
            resolve_huddle(self.store, huddle_id=request.huddle_id, slug=request.huddle_slug),
        )
        log = logger.with_session(huddle.huddle_id)
        known_items = huddle.known_items()

        log.info(
            "Running transcript analysis for transcript",
            request_id=request.request_id,
            stage="analysis:run",
            known_item_count=len(known_items),
        )
        analysis = await self._stage(
            "analysis:request",
            self.interpreter.interpret(
                InterpretationRequest(
                    chunk_id=f"{chunk.source}-{uuid.uuid4()}",
                    speaker_id=request.speaker_id,
                    speaker_label=request.speaker_label,
                    text=chunk.text,
                    known_items=known_items,
                    conversation_id=request.conversation_id,
                    session_id=huddle.huddle_id,
                    user_api_key=request.user_api_key,
                )
            ),
        )

        lifecycle.transition_to(ChunkState.NORMALIZING)
        normalized = normalize_actions(analysis.batch, session_id=huddle.huddle_id)
        for dropped in normalized.dropped:
            pipeline_emitter.action_dropped(
                session_id=huddle.huddle_id,
                request_id=request.request_id,
                kind=dropped.kind,
                target_key=dropped.target_key,
                reason=dropped.reason,
            )

        lifecycle.transition_to(ChunkState.APPLYING)
        mutation = await self._stage(
            "store:processVoiceTranscript",
            self.store.process_voice_transcript(
                TranscriptMutation(
                    session_id=huddle.huddle_id,
                    speaker_id=request.speaker_id,
                    speaker_label=request.speaker_label,
                    text=chunk.text,
                    actions=tuple(normalized.actions),
                    conversation_id=analysis.conversation_id,
                    transcript_metadata=chunk.transcript_metadata,
                    audio=chunk.audio,
                    request_id=request.request_id,
                    source=chunk.source,
                )
            ),
        )

        lifecycle.transition_to(ChunkState.PERSISTED)
        latency_ms = int((time.time() - started) * 1000)
        pipeline_emitter.chunk_persisted(
            session_id=huddle.huddle_id,
            request_id=request.request_id,
            chunk_id=mutation.chunk_id,
            sequence=mutation.sequence,
            created=len(mutation.created_items),
            updated=len(mutation.updated_items),
            removed=len(mutation.removed_items),
            latency_ms=latency_ms,
        )
        log.info(
            "Voice transcription pipeline completed",
            request_id=request.request_id,
            conversation_id=analysis.conversation_id,
            chunk_id=mutation.chunk_id,
            sequence=mutation.sequence,
            action_count=len(normalized.actions),
            latency_ms=latency_ms,
        )

        return SpeakResult(
            transcript=TranscriptRef(text=chunk.text, chunk_id=mutation.chunk_id, sequence=mutation.sequence),
            mutation=mutation,
            conversation_id=analysis.conversation_id,
            request_id=request.request_id,
            transcription_model=chunk.transcription_model,
            dropped_actions=[
                {"kind": d.kind, "targetKey": d.target_key, "reason": d.reason}
                for d in normalized.dropped
            ],
        )

    @staticmethod
    async def _stage(stage: str, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable``; foreign exceptions are tagged with ``stage``."""
        try:
            return await awaitable
        except PipelineError:
            raise
        except Exception as exc:
            summary = build_error_summary(serialize_error(exc))
            raise PipelineStageError(stage, f"{stage} failed: {summary}", exc) from exc

    @staticmethod
    def _report_failure(
        error: BaseException,
        request: ChunkRequest,
        lifecycle: ChunkLifecycle,
        log: StructuredLogger,
    ) -> SpeakToHuddleError:
        info = serialize_error(error)
        stage = info.get("stage") or "pipeline"
        if not lifecycle.is_terminal():
            lifecycle.fail(stage)

        pipeline_emitter.chunk_failed(
            session_id=request.session_key,
            request_id=request.request_id,
            stage=stage,
            error=info,
        )
        log.error("speakToHuddle failed", request_id=request.request_id, stage=stage, error=info)

        summary = truncate(build_error_summary(info), ERROR_SUMMARY_LIMIT) or "Unknown error"
        return SpeakToHuddleError(
            f"Transcription failed (request {request.request_id}): {summary}",
            request_id=request.request_id,
            stage=stage,
            error=info,
        )


def build_store(config: PipelineConfig) -> HuddleStore:
    if config.persistence_url:
        return HttpHuddleStore(config.persistence_url, timeout_seconds=config.persistence_timeout_seconds)
    return InMemoryHuddleStore(
        merge_policy=config.create_merge_policy,
        dependency_policy=config.dependency_policy,
    )


def build_pipeline(
    config: Optional[PipelineConfig] = None,
    store: Optional[HuddleStore] = None,
) -> SpeakToHuddlePipeline:
    """Wire the OpenAI-backed pipeline from configuration."""
    config = config or get_config()
    return SpeakToHuddlePipeline(
        store=store or build_store(config),
        transcription=TranscriptionAdapter(
            OpenAISpeechModel(),
            primary_model=config.transcription_model,
            fallback_model=config.fallback_transcription_model,
            min_duration_ms=config.min_duration_ms,
        ),
        interpreter=OpenAIInterpreter(model=config.responses_model),
    )
