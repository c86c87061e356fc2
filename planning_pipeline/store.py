"""
Persistence boundary for huddles, transcript chunks and planning items.

``process_voice_transcript`` is the single write path: it allocates the next
chunk sequence, records the chunk, applies the normalized actions to the
huddle's planning graph and returns what changed. A chunk and its mutations
commit together or not at all.

Two implementations:
- ``InMemoryHuddleStore``: the default; used by the API when no persistence
  service is configured, and by the tests
- ``HttpHuddleStore``: delegates to a remote persistence service over HTTP
"""
from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence
from urllib.parse import quote

import aiohttp

from logging_setup import get_logger, Component
from observability.events import pipeline_emitter
from .actions import Action
from .config import CreateMergePolicy, DependencyPolicy
from .diagnostics import truncate, RESPONSE_BODY_LIMIT
from .errors import PersistenceFailure, SessionResolutionFailure, ValidationError
from .graph import GraphMutator, MutationContext, SessionGraph
from .models import (
    AudioDescriptor,
    ConversationSession,
    HuddleSnapshot,
    MutationResult,
    PlanningItem,
    TranscriptChunk,
)

logger = get_logger(Component.STORE)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class TranscriptMutation:
    """One transcribed chunk plus the actions to apply for it."""

    session_id: str
    speaker_id: str
    speaker_label: str
    text: str
    actions: Sequence[Action] = ()
    conversation_id: Optional[str] = None
    transcript_metadata: Dict[str, Any] = field(default_factory=dict)
    audio: Optional[AudioDescriptor] = None
    request_id: Optional[str] = None
    source: str = "voice"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "speakerId": self.speaker_id,
            "speakerLabel": self.speaker_label,
            "text": self.text,
            "actions": [action.to_dict() for action in self.actions],
        }
        if self.conversation_id:
            payload["conversationId"] = self.conversation_id
        if self.transcript_metadata:
            payload["transcriptMetadata"] = dict(self.transcript_metadata)
        if self.audio is not None:
            payload["audio"] = self.audio.to_dict()
        if self.request_id:
            payload["requestId"] = self.request_id
        return payload


class HuddleStore(Protocol):
    async def get_huddle(
        self,
        huddle_id: Optional[str] = None,
        slug: Optional[str] = None,
    ) -> Optional[HuddleSnapshot]:
        ...

    async def process_voice_transcript(self, mutation: TranscriptMutation) -> MutationResult:
        ...


async def resolve_huddle(
    store: HuddleStore,
    huddle_id: Optional[str] = None,
    slug: Optional[str] = None,
) -> HuddleSnapshot:
    """Slug first, then id. Raises SessionResolutionFailure when neither resolves."""
    if slug:
        snapshot = await store.get_huddle(slug=slug)
        if snapshot is not None:
            return snapshot
    if huddle_id:
        snapshot = await store.get_huddle(huddle_id=huddle_id)
        if snapshot is not None:
            return snapshot
    raise SessionResolutionFailure(
        f"Huddle not found (slug={slug!r}, id={huddle_id!r})",
        huddle_id=huddle_id,
        slug=slug,
    )


@dataclass
class _HuddleRecord:
    huddle_id: str
    slug: Optional[str]
    name: Optional[str]
    graph: SessionGraph
    chunks: List[TranscriptChunk] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class InMemoryHuddleStore:
    """Process-local store. One lock per huddle guards the write path."""

    def __init__(
        self,
        merge_policy: CreateMergePolicy = CreateMergePolicy.MERGE,
        dependency_policy: DependencyPolicy = DependencyPolicy.ENFORCED,
        mutator: Optional[GraphMutator] = None,
    ):
        self.mutator = mutator or GraphMutator(merge_policy, dependency_policy)
        self._huddles: Dict[str, _HuddleRecord] = {}
        self._slugs: Dict[str, str] = {}
        self._conversations: Dict[str, ConversationSession] = {}

    def create_huddle(
        self,
        slug: Optional[str] = None,
        name: Optional[str] = None,
        huddle_id: Optional[str] = None,
    ) -> HuddleSnapshot:
        huddle_id = huddle_id or f"huddle_{uuid.uuid4().hex[:12]}"
        if huddle_id in self._huddles:
            raise ValidationError(f"Huddle {huddle_id} already exists")
        if slug is not None:
            slug = slug.strip()
            if not slug:
                raise ValidationError("slug must not be blank")
            if slug in self._slugs:
                raise ValidationError(f"Slug {slug!r} is already taken")
            self._slugs[slug] = huddle_id

        self._huddles[huddle_id] = _HuddleRecord(
            huddle_id=huddle_id,
            slug=slug,
            name=name,
            graph=SessionGraph(session_id=huddle_id),
        )
        logger.info("Huddle created", huddle_id=huddle_id, slug=slug)
        return self._snapshot(self._huddles[huddle_id])

    async def get_huddle(
        self,
        huddle_id: Optional[str] = None,
        slug: Optional[str] = None,
    ) -> Optional[HuddleSnapshot]:
        record = self._lookup(huddle_id=huddle_id, slug=slug)
        return self._snapshot(record) if record else None

    async def list_chunks(self, huddle_id: str) -> List[TranscriptChunk]:
        record = self._huddles.get(huddle_id)
        if record is None:
            raise SessionResolutionFailure(f"Huddle {huddle_id} not found", huddle_id=huddle_id)
        return sorted(record.chunks, key=lambda c: c.sequence)

    def get_conversation(self, conversation_id: str) -> Optional[ConversationSession]:
        return self._conversations.get(conversation_id)

    async def process_voice_transcript(self, mutation: TranscriptMutation) -> MutationResult:
        record = self._huddles.get(mutation.session_id)
        if record is None:
            raise SessionResolutionFailure(
                f"Huddle {mutation.session_id} not found",
                stage="store:processVoiceTranscript",
                huddle_id=mutation.session_id,
            )

        async with record.lock:
            started = time.time()
            sequence = max((c.sequence for c in record.chunks), default=0) + 1
            created_at = _now_iso()
            chunk_id = f"chunk_{uuid.uuid4().hex[:16]}"

            # apply to a working copy; the record is only touched on success
            working = record.graph.copy()
            outcome = self.mutator.apply(
                working,
                mutation.actions,
                MutationContext(
                    chunk_id=chunk_id,
                    speaker_id=mutation.speaker_id,
                    speaker_label=mutation.speaker_label,
                    timestamp=created_at,
                    conversation_id=mutation.conversation_id,
                    request_id=mutation.request_id,
                    source=mutation.source,
                ),
            )

            metadata: Dict[str, Any] = {
                "source": mutation.source,
                "speakerId": mutation.speaker_id,
                "speakerLabel": mutation.speaker_label,
            }
            if mutation.audio is not None:
                metadata["audio"] = mutation.audio.to_dict()
            if mutation.conversation_id:
                metadata["conversationId"] = mutation.conversation_id
            metadata.update(mutation.transcript_metadata)
            if mutation.request_id:
                metadata["requestId"] = mutation.request_id

            chunk = TranscriptChunk(
                chunk_id=chunk_id,
                session_id=record.huddle_id,
                sequence=sequence,
                speaker_id=mutation.speaker_id,
                speaker_label=mutation.speaker_label,
                text=mutation.text,
                created_at=created_at,
                source=mutation.source,
                audio=mutation.audio,
                metadata=metadata,
                resulting_events=outcome.events,
            )

            record.graph = working
            record.chunks.append(chunk)

            if mutation.conversation_id:
                conversation = self._conversations.get(mutation.conversation_id)
                if conversation is None:
                    conversation = ConversationSession(
                        conversation_id=mutation.conversation_id,
                        session_id=record.huddle_id,
                    )
                    self._conversations[mutation.conversation_id] = conversation
                conversation.last_sequence_applied = sequence

        for skipped in outcome.skipped:
            pipeline_emitter.emit(
                "action.skipped",
                record.huddle_id,
                correlation_id=mutation.request_id,
                kind=skipped["kind"],
                target_key=skipped["targetKey"],
                reason=skipped["reason"],
            )

        logger.with_session(record.huddle_id).info(
            "Transcript chunk committed",
            chunk_id=chunk_id,
            sequence=sequence,
            request_id=mutation.request_id,
            created_count=len(outcome.created),
            updated_count=len(outcome.updated),
            removed_count=len(outcome.removed),
            latency_ms=int((time.time() - started) * 1000),
        )
        return MutationResult(
            chunk_id=chunk_id,
            sequence=sequence,
            created_items=outcome.created,
            updated_items=outcome.updated,
            removed_items=outcome.removed,
        )

    def _lookup(self, huddle_id: Optional[str], slug: Optional[str]) -> Optional[_HuddleRecord]:
        if slug:
            resolved = self._slugs.get(slug)
            if resolved is not None:
                return self._huddles.get(resolved)
            return None
        if huddle_id:
            return self._huddles.get(huddle_id)
        return None

    @staticmethod
    def _snapshot(record: _HuddleRecord) -> HuddleSnapshot:
        # callers get copies; the graph is only mutated under the huddle lock
        return HuddleSnapshot(
            huddle_id=record.huddle_id,
            slug=record.slug,
            name=record.name,
            planning_items=record.graph.copy().ordered_items(),
        )


class HttpHuddleStore:
    """
    HuddleStore backed by a remote persistence service.

    Endpoints (relative to ``base_url``):
    - GET  /huddles/by-slug/{slug}
    - GET  /huddles/{id}
    - POST /huddles/{id}/voice-transcripts
    """

    def __init__(self, base_url: str, timeout_seconds: int = 10):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def get_huddle(
        self,
        huddle_id: Optional[str] = None,
        slug: Optional[str] = None,
    ) -> Optional[HuddleSnapshot]:
        if slug:
            endpoint = f"{self.base_url}/huddles/by-slug/{quote(slug, safe='')}"
        elif huddle_id:
            endpoint = f"{self.base_url}/huddles/{quote(huddle_id, safe='')}"
        else:
            return None

        start_ts = time.time()
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as s:
                async with s.get(endpoint) as resp:
                    body = await resp.text()
                    logger.info(
                        "Persistence service huddle lookup",
                        endpoint=endpoint,
                        status=resp.status,
                        latency_ms=int((time.time() - start_ts) * 1000),
                    )
                    if resp.status == 404:
                        return None
                    if not 200 <= resp.status < 300:
                        raise SessionResolutionFailure(
                            f"Huddle lookup failed with status {resp.status}",
                            status=resp.status,
                            response=_ResponseInfo(resp.status, resp.reason, body),
                        )
                    data = await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise SessionResolutionFailure(f"Huddle lookup request failed: {e}") from e

        if not isinstance(data, dict):
            raise PersistenceFailure(
                f"Persistence service returned an unexpected huddle body: {truncate(str(data), 200)}"
            )
        remote_id = data.get("id") or data.get("_id")
        if not remote_id:
            raise PersistenceFailure(
                f"Persistence service returned a huddle without an id: {truncate(str(data), 200)}"
            )

        return HuddleSnapshot(
            huddle_id=str(remote_id),
            slug=data.get("slug"),
            name=data.get("name"),
            planning_items=[PlanningItem.from_dict(item) for item in data.get("planningItems") or []],
        )

    async def process_voice_transcript(self, mutation: TranscriptMutation) -> MutationResult:
        endpoint = f"{self.base_url}/huddles/{quote(mutation.session_id, safe='')}/voice-transcripts"
        start_ts = time.time()
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as s:
                async with s.post(endpoint, json=mutation.to_dict()) as resp:
                    body = await resp.text()
                    logger.with_session(mutation.session_id).info(
                        "Persistence service transcript response",
                        endpoint=endpoint,
                        status=resp.status,
                        request_id=mutation.request_id,
                        action_count=len(mutation.actions),
                        latency_ms=int((time.time() - start_ts) * 1000),
                    )
                    if resp.status == 404:
                        raise SessionResolutionFailure(
                            f"Huddle {mutation.session_id} not found",
                            stage="store:processVoiceTranscript",
                            status=resp.status,
                            response=_ResponseInfo(resp.status, resp.reason, body),
                        )
                    if not 200 <= resp.status < 300:
                        raise PersistenceFailure(
                            f"Persistence service rejected transcript with status {resp.status}",
                            status=resp.status,
                            response=_ResponseInfo(resp.status, resp.reason, body),
                        )
                    data = await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise PersistenceFailure(f"Persistence request failed: {e}") from e

        try:
            return MutationResult.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceFailure(
                f"Persistence service returned an unexpected body: {truncate(str(data), 200)}"
            ) from e


@dataclass(frozen=True)
class _ResponseInfo:
    """The parts of an HTTP response that diagnostics may report."""

    status: int
    reason: Optional[str]
    text: str

    def __post_init__(self):
        object.__setattr__(self, "text", truncate(self.text, RESPONSE_BODY_LIMIT))
