"""
Error taxonomy for the planning pipeline.

Every fatal failure carries the pipeline stage it happened in. Non-fatal
conditions (empty patches, unknown item keys) are logged and skipped and never
show up here.
"""
from typing import Any, Optional


class PipelineError(Exception):
    """Base class for pipeline failures."""

    stage: str = "pipeline"

    def __init__(self, message: str, *, stage: Optional[str] = None, **details: Any):
        super().__init__(message)
        if stage is not None:
            self.stage = stage
        for key, value in details.items():
            setattr(self, key, value)


class ValidationError(PipelineError):
    """Malformed request, rejected before any side effect."""

    stage = "parse:request"


class UnsupportedAudioFormat(PipelineError):
    """The speech model rejected the audio container/codec."""

    stage = "transcription"


class TranscriptionFailure(PipelineError):
    """No usable transcript could be produced."""

    stage = "transcription"


class InterpretationFailure(PipelineError):
    """Model output was not schema-conformant JSON."""

    stage = "analysis"


class SessionResolutionFailure(PipelineError):
    """The huddle identifier (id or slug) could not be resolved."""

    stage = "store:resolveHuddle"


class PersistenceFailure(PipelineError):
    """The storage layer rejected the transcript mutation."""

    stage = "store:processVoiceTranscript"


class PipelineStageError(PipelineError):
    """Wraps any failure with the stage at which it occurred."""

    def __init__(self, stage: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, stage=stage)
        self.__cause__ = cause


class SpeakToHuddleError(Exception):
    """
    Outermost error raised to the ingestion caller.

    The message is prefixed with the request id when one is known so a failure
    report can be matched to its log lines.
    """

    def __init__(
        self,
        message: str,
        *,
        request_id: Optional[str] = None,
        stage: Optional[str] = None,
        error: Optional[dict] = None,
    ):
        super().__init__(message)
        self.request_id = request_id
        self.stage = stage
        self.error = error or {}
