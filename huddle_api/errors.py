"""
Maps pipeline failures to stable API error categories and HTTP statuses.

Clients get a category and the request-id-prefixed summary; stack traces and
provider payloads stay in the logs.
"""
from typing import Optional, Tuple

from planning_pipeline.errors import (
    InterpretationFailure,
    PersistenceFailure,
    PipelineError,
    PipelineStageError,
    SessionResolutionFailure,
    TranscriptionFailure,
    UnsupportedAudioFormat,
    ValidationError,
)


class ApiErrorCategory:
    """Stable error categories returned in the ``error`` field."""

    INVALID_REQUEST = "request.invalid"
    HUDDLE_NOT_FOUND = "huddle.not_found"
    UNSUPPORTED_AUDIO = "transcription.unsupported_audio"
    TRANSCRIPTION_FAILED = "transcription.failed"
    INTERPRETATION_FAILED = "analysis.failed"
    PERSISTENCE_FAILED = "store.failed"
    UNKNOWN_ERROR = "pipeline.unknown_error"


_BY_CLASS = (
    (ValidationError, 422, ApiErrorCategory.INVALID_REQUEST),
    (SessionResolutionFailure, 404, ApiErrorCategory.HUDDLE_NOT_FOUND),
    (UnsupportedAudioFormat, 502, ApiErrorCategory.UNSUPPORTED_AUDIO),
    (TranscriptionFailure, 502, ApiErrorCategory.TRANSCRIPTION_FAILED),
    (InterpretationFailure, 502, ApiErrorCategory.INTERPRETATION_FAILED),
    (PersistenceFailure, 502, ApiErrorCategory.PERSISTENCE_FAILED),
)

_BY_STAGE_PREFIX = (
    ("parse", 422, ApiErrorCategory.INVALID_REQUEST),
    ("transcription", 502, ApiErrorCategory.TRANSCRIPTION_FAILED),
    ("analysis", 502, ApiErrorCategory.INTERPRETATION_FAILED),
    ("store", 502, ApiErrorCategory.PERSISTENCE_FAILED),
)


def root_pipeline_error(error: BaseException) -> Optional[PipelineError]:
    """
    First specific PipelineError in the cause chain.

    Stage wrappers are skipped; if the chain holds nothing but wrappers the
    outermost wrapper is returned.
    """
    wrapper: Optional[PipelineError] = None
    seen = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, PipelineError):
            if not isinstance(current, PipelineStageError):
                return current
            wrapper = wrapper or current
        current = current.__cause__
    return wrapper


def classify_error(error: BaseException) -> Tuple[int, str]:
    """Return (HTTP status, error category) for a failure raised by the pipeline."""
    root = root_pipeline_error(error)
    if root is None:
        return 500, ApiErrorCategory.UNKNOWN_ERROR

    for cls, status, category in _BY_CLASS:
        if isinstance(root, cls):
            return status, category

    stage = getattr(root, "stage", "") or ""
    for prefix, status, category in _BY_STAGE_PREFIX:
        if stage.startswith(prefix):
            return status, category

    return 502, ApiErrorCategory.UNKNOWN_ERROR
