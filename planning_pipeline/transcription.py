"""
Transcription adapter.

Audio goes to the primary speech model. If that model rejects the container or
codec, the adapter retries exactly once with the fallback model. Clips shorter
than the minimum duration are skipped without any model call.

Speech models report a structured ``TranscriptionOutcome``; recognising a
provider's "unsupported format" error is the model adapter's job, so nothing
above this module inspects provider error text.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol

import openai

from logging_setup import get_logger, Component, StructuredLogger
from .diagnostics import build_error_summary, serialize_error
from .errors import TranscriptionFailure, UnsupportedAudioFormat, ValidationError
from .openai_client import get_openai_client

logger = get_logger(Component.TRANSCRIPTION)

DEFAULT_MIME_TYPE = "audio/webm"

_EXTENSIONS = {
    "audio/webm": "webm",
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/mp4": "mp4",
    "audio/m4a": "m4a",
    "audio/x-m4a": "m4a",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/flac": "flac",
}


def normalize_mime_type(value: Optional[str]) -> str:
    """``audio/webm;codecs=opus`` -> ``audio/webm``; blank -> ``audio/webm``."""
    if not value:
        return DEFAULT_MIME_TYPE
    base = value.split(";", 1)[0].strip().lower()
    return base or DEFAULT_MIME_TYPE


def default_filename(mime_type: str) -> str:
    extension = _EXTENSIONS.get(mime_type, "webm")
    return f"voice-{int(time.time() * 1000)}.{extension}"


class TranscriptionOutcome(str, Enum):
    OK = "ok"
    UNSUPPORTED_FORMAT = "unsupported_format"
    OTHER_FAILURE = "other_failure"


@dataclass(frozen=True)
class TranscriptionAttempt:
    """Result of a single speech-model call."""

    outcome: TranscriptionOutcome
    model: str
    text: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class TranscriptionResult:
    skipped: bool
    text: Optional[str] = None
    model: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None
    used_fallback: bool = False

    @classmethod
    def skip(cls) -> "TranscriptionResult":
        return cls(skipped=True)


class SpeechModel(Protocol):
    async def transcribe(
        self,
        audio: bytes,
        *,
        filename: str,
        mime_type: str,
        model: str,
        user_api_key: Optional[str] = None,
    ) -> TranscriptionAttempt:
        ...


def is_unsupported_audio_error(error: BaseException) -> bool:
    """OpenAI signals a rejected container/codec via code or message text."""
    if getattr(error, "code", None) == "unsupported_value":
        return True
    message = getattr(error, "message", None) or str(error)
    return "unsupported file format" in message.lower()


class OpenAISpeechModel:
    """Speech model backed by the OpenAI audio transcription endpoint."""

    def __init__(
        self,
        user_api_key: Optional[str] = None,
        client_factory: Callable[[Optional[str]], Any] = get_openai_client,
    ):
        self._user_api_key = user_api_key
        self._client_factory = client_factory

    async def transcribe(
        self,
        audio: bytes,
        *,
        filename: str,
        mime_type: str,
        model: str,
        user_api_key: Optional[str] = None,
    ) -> TranscriptionAttempt:
        client = self._client_factory(user_api_key or self._user_api_key)
        try:
            transcription = await client.audio.transcriptions.create(
                file=(filename, audio, mime_type),
                model=model,
            )
        except openai.OpenAIError as exc:
            outcome = (
                TranscriptionOutcome.UNSUPPORTED_FORMAT
                if is_unsupported_audio_error(exc)
                else TranscriptionOutcome.OTHER_FAILURE
            )
            return TranscriptionAttempt(outcome=outcome, model=model, error=exc)

        usage = getattr(transcription, "usage", None)
        if usage is not None and hasattr(usage, "model_dump"):
            usage = usage.model_dump()
        return TranscriptionAttempt(
            outcome=TranscriptionOutcome.OK,
            model=model,
            text=getattr(transcription, "text", None),
            usage=usage if isinstance(usage, dict) else None,
        )


class TranscriptionAdapter:
    """Primary model first, one fallback retry on format rejection."""

    def __init__(
        self,
        speech_model: SpeechModel,
        primary_model: str,
        fallback_model: str,
        min_duration_ms: int = 3000,
    ):
        self.speech_model = speech_model
        self.primary_model = primary_model
        self.fallback_model = fallback_model
        self.min_duration_ms = min_duration_ms

    def is_too_short(self, duration_ms: Optional[float]) -> bool:
        return duration_ms is not None and duration_ms < self.min_duration_ms

    async def transcribe(
        self,
        audio: bytes,
        mime_type: Optional[str],
        duration_ms: Optional[float] = None,
        filename: Optional[str] = None,
        user_api_key: Optional[str] = None,
        log: Optional[StructuredLogger] = None,
        on_fallback: Optional[Callable[[str, str], None]] = None,
    ) -> TranscriptionResult:
        log = log or logger

        if self.is_too_short(duration_ms):
            log.debug("Skipping short audio clip", duration_ms=duration_ms)
            return TranscriptionResult.skip()

        if not audio:
            raise ValidationError("Received empty audio payload.")

        mime_type = normalize_mime_type(mime_type)
        filename = filename.strip() if filename and filename.strip() else default_filename(mime_type)

        log.info(
            "Submitting audio to transcription model",
            model=self.primary_model,
            mime_type=mime_type,
            audio_bytes=len(audio),
            stage="transcription:primary",
        )
        started = time.time()
        attempt = await self.speech_model.transcribe(
            audio, filename=filename, mime_type=mime_type, model=self.primary_model, user_api_key=user_api_key
        )
        used_fallback = False

        if attempt.outcome is not TranscriptionOutcome.OK:
            log.error(
                "Primary transcription attempt failed",
                model=self.primary_model,
                outcome=attempt.outcome.value,
                stage="transcription:primary:error",
                error=serialize_error(attempt.error) if attempt.error else None,
            )
            if attempt.outcome is not TranscriptionOutcome.UNSUPPORTED_FORMAT:
                raise self._failure(
                    "Transcription failed", attempt, stage="transcription:primary"
                )
            if self.fallback_model == self.primary_model:
                raise UnsupportedAudioFormat(
                    f"Transcription model {self.primary_model} rejected {mime_type} audio",
                    stage="transcription:primary",
                ) from attempt.error

            log.warning(
                "Primary transcription model rejected format, retrying with fallback model",
                primary_model=self.primary_model,
                fallback_model=self.fallback_model,
                stage="transcription:fallback",
            )
            if on_fallback is not None:
                on_fallback(self.primary_model, self.fallback_model)

            rejected = UnsupportedAudioFormat(
                f"Transcription model {self.primary_model} rejected {mime_type} audio",
                stage="transcription:primary",
            )
            rejected.__cause__ = attempt.error
            attempt = await self.speech_model.transcribe(
                audio, filename=filename, mime_type=mime_type, model=self.fallback_model, user_api_key=user_api_key
            )
            used_fallback = True
            if attempt.outcome is not TranscriptionOutcome.OK:
                log.error(
                    "Fallback transcription attempt failed",
                    model=self.fallback_model,
                    outcome=attempt.outcome.value,
                    stage="transcription:fallback:error",
                    error=serialize_error(attempt.error) if attempt.error else None,
                )
                failure = self._failure(
                    "Transcription failed after fallback", attempt, stage="transcription:fallback"
                )
                if failure.__cause__ is None:
                    failure.__cause__ = rejected
                raise failure

        text = (attempt.text or "").strip()
        if not text:
            raise TranscriptionFailure(
                f"Speech model {attempt.model} did not return transcript text.",
                stage="transcription:complete",
            )

        log.info(
            "Transcription completed",
            model=attempt.model,
            used_fallback=used_fallback,
            transcript_length=len(text),
            latency_ms=int((time.time() - started) * 1000),
            stage="transcription:complete",
        )
        log.debug_pii("Transcript preview", text=text[:120] + ("…" if len(text) > 120 else ""))

        return TranscriptionResult(
            skipped=False,
            text=text,
            model=attempt.model,
            usage=attempt.usage,
            used_fallback=used_fallback,
        )

    @staticmethod
    def _failure(prefix: str, attempt: TranscriptionAttempt, stage: str) -> TranscriptionFailure:
        if attempt.error is not None:
            summary = build_error_summary(serialize_error(attempt.error))
        else:
            summary = f"model {attempt.model} returned {attempt.outcome.value}"
        failure = TranscriptionFailure(f"{prefix}: {summary}", stage=stage)
        failure.__cause__ = attempt.error
        return failure
