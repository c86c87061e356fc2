"""
Structured JSON event emission (shared).

Every chunk that enters the planning pipeline leaves a trail of events keyed by
the huddle (session) id and correlated by request id. Events are written as one
JSON line to stdout and kept in the in-memory event store for the read API.
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .event_store import event_store


class Component(str, Enum):
    """Event producers."""

    INGEST_API = "ingest_api"
    PIPELINE = "planning_pipeline"
    STORE = "huddle_store"


class Severity(str, Enum):
    """Event severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


DEFAULT_PII = {"contains_pii": False, "fields": [], "handling": "none"}


class EventEmitter:
    """Emits structured JSON events."""

    def __init__(self, component: Component):
        self.component = component

    def emit(
        self,
        event_type: str,
        session_id: str,
        severity: Severity = Severity.INFO,
        correlation_id: Optional[str] = None,
        pii: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        event = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "session_id": session_id,
            "component": self.component.value,
            "event_type": event_type,
            "severity": severity.value,
            "correlation_id": correlation_id or session_id,
            "pii": pii or DEFAULT_PII,
        }
        event.update(kwargs)

        sys.stdout.write(json.dumps(event, ensure_ascii=False, default=str))
        sys.stdout.write("\n")
        sys.stdout.flush()

        event_store.store(event)

    def chunk_received(
        self,
        session_id: str,
        request_id: str,
        source: str,
        conversation_id: Optional[str] = None,
        duration_ms: Optional[float] = None,
        audio_bytes: Optional[int] = None,
    ) -> None:
        """Emit chunk.received event."""
        self.emit(
            "chunk.received",
            session_id,
            correlation_id=request_id,
            source=source,
            conversation_id=conversation_id,
            duration_ms=duration_ms,
            audio_bytes=audio_bytes,
        )

    def chunk_state_changed(
        self,
        session_id: str,
        request_id: str,
        from_state: str,
        to_state: str,
    ) -> None:
        """Emit chunk.state_changed event."""
        self.emit(
            "chunk.state_changed",
            session_id,
            severity=Severity.DEBUG,
            correlation_id=request_id,
            from_state=from_state,
            to_state=to_state,
        )

    def chunk_skipped(
        self,
        session_id: str,
        request_id: str,
        reason: str,
        duration_ms: Optional[float] = None,
    ) -> None:
        """Emit chunk.skipped event."""
        self.emit(
            "chunk.skipped",
            session_id,
            correlation_id=request_id,
            reason=reason,
            duration_ms=duration_ms,
        )

    def transcription_fallback(
        self,
        session_id: str,
        request_id: str,
        primary_model: str,
        fallback_model: str,
    ) -> None:
        """Emit transcription.fallback event."""
        self.emit(
            "transcription.fallback",
            session_id,
            severity=Severity.WARN,
            correlation_id=request_id,
            primary_model=primary_model,
            fallback_model=fallback_model,
        )

    def conversation_queued(
        self,
        session_id: str,
        request_id: str,
        conversation_id: str,
    ) -> None:
        """Emit conversation.queued event (another chunk holds the conversation)."""
        self.emit(
            "conversation.queued",
            session_id,
            correlation_id=request_id,
            conversation_id=conversation_id,
        )

    def action_dropped(
        self,
        session_id: str,
        request_id: str,
        kind: str,
        target_key: Optional[str],
        reason: str,
    ) -> None:
        """Emit action.dropped event (normalizer filtered an action out)."""
        self.emit(
            "action.dropped",
            session_id,
            severity=Severity.WARN,
            correlation_id=request_id,
            kind=kind,
            target_key=target_key,
            reason=reason,
        )

    def chunk_persisted(
        self,
        session_id: str,
        request_id: str,
        chunk_id: str,
        sequence: int,
        created: int,
        updated: int,
        removed: int,
        latency_ms: Optional[int] = None,
    ) -> None:
        """Emit chunk.persisted event."""
        self.emit(
            "chunk.persisted",
            session_id,
            correlation_id=request_id,
            chunk_id=chunk_id,
            sequence=sequence,
            items={"created": created, "updated": updated, "removed": removed},
            latency_ms=latency_ms,
        )

    def chunk_failed(
        self,
        session_id: str,
        request_id: str,
        stage: str,
        error: Dict[str, Any],
    ) -> None:
        """Emit chunk.failed event with the serialized (redacted) error."""
        self.emit(
            "chunk.failed",
            session_id,
            severity=Severity.ERROR,
            correlation_id=request_id,
            stage=stage,
            error=error,
        )


pipeline_emitter = EventEmitter(Component.PIPELINE)
