"""
Huddle API.

This module exposes:
- Ingestion: speak (multipart audio) and typed transcript lines
- Read API: huddle with its planning items, transcript chunks, chunk events
- Write API: create a huddle (in-memory store only)

Failures surface as ``{"error": <category>, "message": ..., "requestId": ...}``
with the status chosen by ``huddle_api.errors.classify_error``.
"""

from __future__ import annotations

import time
from typing import Any, Dict, NoReturn, Optional

from fastapi import APIRouter, Body, File, Form, HTTPException, Query, UploadFile
from pydantic import BaseModel, Field

from logging_setup import get_logger, Component
from observability.event_store import event_store
from observability.events import Component as ObsComponent, EventEmitter, Severity
from planning_pipeline.errors import PipelineError, SpeakToHuddleError, ValidationError
from planning_pipeline.pipeline import (
    SpeakRequest,
    SpeakToHuddlePipeline,
    TextChunkRequest,
    build_pipeline,
    parse_request,
)
from planning_pipeline.store import InMemoryHuddleStore, resolve_huddle

from .errors import classify_error


router = APIRouter(prefix="/huddles", tags=["huddles"])
logger = get_logger(Component.API)
emitter = EventEmitter(ObsComponent.INGEST_API)

_pipeline: Optional[SpeakToHuddlePipeline] = None


def get_pipeline() -> SpeakToHuddlePipeline:
    """Get or build the process-wide pipeline."""
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline()
    return _pipeline


def set_pipeline(pipeline: Optional[SpeakToHuddlePipeline]) -> None:
    """Install a pipeline (tests, embedding). None resets to lazy build."""
    global _pipeline
    _pipeline = pipeline


def _raise_http(error: BaseException, request_id: Optional[str] = None) -> NoReturn:
    status, category = classify_error(error)
    raise HTTPException(
        status_code=status,
        detail={"error": category, "message": str(error), "requestId": request_id},
    )


def _reject(session_id: str, error: ValidationError, request_id: Optional[str] = None) -> NoReturn:
    emitter.emit(
        "ingest.rejected",
        session_id=session_id,
        severity=Severity.WARN,
        correlation_id=request_id,
        reason=str(error),
    )
    logger.warning("Rejected ingestion request", session_id=session_id, reason=str(error))
    _raise_http(error, request_id)


async def _resolve(pipeline: SpeakToHuddlePipeline, identifier: str):
    try:
        return await resolve_huddle(pipeline.store, huddle_id=identifier, slug=identifier)
    except PipelineError as e:
        _raise_http(e)


def _memory_store(pipeline: SpeakToHuddlePipeline) -> InMemoryHuddleStore:
    if not isinstance(pipeline.store, InMemoryHuddleStore):
        raise HTTPException(status_code=501, detail="not_supported_by_persistence_service")
    return pipeline.store


# --- Ingestion ---


@router.post("/speak")
async def speak_to_huddle(
    audio: Optional[UploadFile] = File(None),
    huddleId: Optional[str] = Form(None),
    huddleSlug: Optional[str] = Form(None),
    speakerId: Optional[str] = Form(None),
    speakerLabel: Optional[str] = Form(None),
    durationMs: Optional[str] = Form(None),
    requestId: Optional[str] = Form(None),
    conversationId: Optional[str] = Form(None),
    mimeType: Optional[str] = Form(None),
    userApiKey: Optional[str] = Form(None),
) -> Optional[Dict[str, Any]]:
    """
    Transcribe one recorded chunk and apply it to the huddle's planning graph.

    Returns null when the clip is shorter than the minimum duration.
    """
    session_key = huddleId or huddleSlug or ""
    if audio is None:
        _reject(session_key, ValidationError("Audio blob is required."), requestId)

    content = await audio.read()
    declared = audio.content_type if audio.content_type and audio.content_type.strip() else mimeType

    try:
        request = parse_request(
            SpeakRequest,
            {
                "audio": content,
                "mimeType": declared,
                "filename": audio.filename,
                "huddleId": huddleId,
                "huddleSlug": huddleSlug,
                "speakerId": speakerId,
                "speakerLabel": speakerLabel,
                "durationMs": durationMs,
                "requestId": requestId,
                "conversationId": conversationId,
                "userApiKey": userApiKey,
            },
        )
    except ValidationError as e:
        _reject(session_key, e, requestId)

    try:
        result = await get_pipeline().speak(request)
    except SpeakToHuddleError as e:
        _raise_http(e, e.request_id)

    return result.to_dict() if result is not None else None


class TranscriptLine(BaseModel):
    speakerId: Optional[str] = None
    speakerLabel: Optional[str] = None
    text: Optional[str] = None
    conversationId: Optional[str] = None
    requestId: Optional[str] = None
    userApiKey: Optional[str] = None


@router.post("/{identifier}/transcript")
async def add_transcript_line(identifier: str, line: TranscriptLine = Body(...)) -> Dict[str, Any]:
    """Apply a typed transcript line as if it had been spoken."""
    try:
        request = parse_request(
            TextChunkRequest,
            {"huddleId": identifier, "huddleSlug": identifier, **line.model_dump()},
        )
    except ValidationError as e:
        _reject(identifier, e, line.requestId)

    try:
        result = await get_pipeline().speak_text(request)
    except SpeakToHuddleError as e:
        _raise_http(e, e.request_id)

    return result.to_dict()


# --- Read API ---


class CreateHuddleRequest(BaseModel):
    slug: Optional[str] = Field(None, description="Human-readable identifier, unique")
    name: Optional[str] = None


@router.post("", status_code=201)
async def create_huddle(req: CreateHuddleRequest) -> Dict[str, Any]:
    store = _memory_store(get_pipeline())
    try:
        snapshot = store.create_huddle(slug=req.slug, name=req.name)
    except ValidationError as e:
        raise HTTPException(status_code=409, detail={"error": "huddle.conflict", "message": str(e)})
    return snapshot.to_dict()


@router.get("/{identifier}")
async def get_huddle(identifier: str) -> Dict[str, Any]:
    """Huddle details with planning items in graph order."""
    huddle = await _resolve(get_pipeline(), identifier)
    return huddle.to_dict()


@router.get("/{identifier}/chunks")
async def list_chunks(identifier: str) -> Dict[str, Any]:
    """Transcript chunks in sequence order."""
    pipeline = get_pipeline()
    store = _memory_store(pipeline)
    huddle = await _resolve(pipeline, identifier)
    chunks = await store.list_chunks(huddle.huddle_id)
    return {
        "huddleId": huddle.huddle_id,
        "chunks": [chunk.to_dict() for chunk in chunks],
        "count": len(chunks),
    }


@router.get("/{identifier}/events")
async def get_huddle_events(
    identifier: str,
    event_type: Optional[str] = Query(None, description="Filter by event_type"),
    request_id: Optional[str] = Query(None, description="Filter by correlation (request) id"),
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Max events to return"),
) -> Dict[str, Any]:
    """
    Chunk lifecycle events for a huddle.

    Events emitted before the huddle was resolved are keyed by whatever
    identifier the client sent, so both the id and the slug are queried.
    """
    start_ts = time.time()
    huddle = await _resolve(get_pipeline(), identifier)

    keys = {huddle.huddle_id}
    if huddle.slug:
        keys.add(huddle.slug)

    events = []
    for key in keys:
        events.extend(event_store.query(session_id=key, event_type=event_type, correlation_id=request_id))
    events.sort(key=lambda e: e["ts"])
    if limit:
        events = events[:limit]

    logger.debug(
        "Events queried",
        session_id=huddle.huddle_id,
        count=len(events),
        latency_ms=int((time.time() - start_ts) * 1000),
    )
    return {
        "huddleId": huddle.huddle_id,
        "events": events,
        "count": len(events),
    }
