"""
Domain records shared by the pipeline, the graph mutator and the stores.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class PlanningItemType(str, Enum):
    """Kinds of meeting output a planning item can represent."""
    IDEA = "idea"
    TASK = "task"
    DEPENDENCY = "dependency"
    OWNER = "owner"
    RISK = "risk"
    OUTCOME = "outcome"
    DECISION = "decision"
    SUMMARY = "summary"

    @property
    def label(self) -> str:
        return PLANNING_ITEM_TYPE_LABELS[self]


PLANNING_ITEM_TYPES = tuple(t.value for t in PlanningItemType)

PLANNING_ITEM_TYPE_LABELS: Dict[PlanningItemType, str] = {
    PlanningItemType.IDEA: "Idea",
    PlanningItemType.TASK: "Task",
    PlanningItemType.DEPENDENCY: "Dependency",
    PlanningItemType.OWNER: "Owner",
    PlanningItemType.RISK: "Risk",
    PlanningItemType.OUTCOME: "Outcome",
    PlanningItemType.DECISION: "Decision",
    PlanningItemType.SUMMARY: "Summary Note",
}


@dataclass
class PlanningItem:
    """
    One node of a huddle's planning graph.

    ``item_key`` is the deterministic, session-scoped key the interpreter uses
    to refer to the item; at most one item per (session_id, item_key).
    """

    item_id: str
    item_key: str
    session_id: str
    type: PlanningItemType
    text: str
    order: int
    timestamp: str
    speaker_id: Optional[str] = None
    speaker_label: Optional[str] = None
    blocked_by_keys: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.item_id,
            "itemKey": self.item_key,
            "sessionId": self.session_id,
            "type": self.type.value,
            "text": self.text,
            "order": self.order,
            "timestamp": self.timestamp,
            "speakerId": self.speaker_id,
            "speakerLabel": self.speaker_label,
            "blockedByKeys": list(self.blocked_by_keys),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlanningItem":
        metadata = dict(data.get("metadata") or {})
        return cls(
            item_id=str(data.get("id") or data.get("_id")),
            item_key=data.get("itemKey") or metadata.get("itemKey"),
            session_id=str(data.get("sessionId") or data.get("huddleId") or ""),
            type=PlanningItemType(data["type"]),
            text=data["text"],
            order=int(data.get("order") or 0),
            timestamp=data.get("timestamp") or "",
            speaker_id=data.get("speakerId"),
            speaker_label=data.get("speakerLabel"),
            blocked_by_keys=list(data.get("blockedByKeys") or []),
            metadata=metadata,
        )


@dataclass(frozen=True)
class AudioDescriptor:
    """What was received, never the audio itself."""

    mime_type: str
    size: Optional[int] = None
    duration_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"mimeType": self.mime_type}
        if self.size is not None:
            result["size"] = self.size
        if self.duration_ms is not None:
            result["durationMs"] = self.duration_ms
        return result


@dataclass(frozen=True)
class TranscriptChunk:
    """A persisted span of speech. Created once, never mutated."""

    chunk_id: str
    session_id: str
    sequence: int
    speaker_id: str
    speaker_label: str
    text: str
    created_at: str
    source: str = "voice"
    audio: Optional[AudioDescriptor] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    resulting_events: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        metadata = dict(self.metadata)
        if self.resulting_events:
            metadata["planningItemEvents"] = [dict(e) for e in self.resulting_events]
        return {
            "id": self.chunk_id,
            "sessionId": self.session_id,
            "sequence": self.sequence,
            "source": self.source,
            "speakerId": self.speaker_id,
            "speakerLabel": self.speaker_label,
            "payload": self.text,
            "createdAt": self.created_at,
            "audio": self.audio.to_dict() if self.audio else None,
            "metadata": metadata,
        }


@dataclass
class ConversationSession:
    """An AI dialogue context reused by every chunk of one logical conversation."""

    conversation_id: str
    session_id: str
    last_sequence_applied: int = 0


@dataclass(frozen=True)
class KnownItem:
    """Compact view of an existing item handed to the interpreter."""

    item_key: str
    type: PlanningItemType
    text: str


@dataclass
class HuddleSnapshot:
    """A resolved huddle and its current planning items."""

    huddle_id: str
    slug: Optional[str]
    planning_items: List[PlanningItem] = field(default_factory=list)
    name: Optional[str] = None

    def known_items(self) -> List[KnownItem]:
        """Items that carry an itemKey, in graph order."""
        items = sorted(self.planning_items, key=lambda item: item.order)
        return [
            KnownItem(item_key=item.item_key, type=item.type, text=item.text)
            for item in items
            if item.item_key
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.huddle_id,
            "slug": self.slug,
            "name": self.name,
            "planningItems": [
                item.to_dict() for item in sorted(self.planning_items, key=lambda i: i.order)
            ],
        }


@dataclass
class MutationResult:
    """Returned by the persistence boundary for one applied chunk."""

    chunk_id: str
    sequence: int
    created_items: List[Dict[str, Any]] = field(default_factory=list)
    updated_items: List[Dict[str, Any]] = field(default_factory=list)
    removed_items: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunkId": self.chunk_id,
            "sequence": self.sequence,
            "createdItems": self.created_items,
            "updatedItems": self.updated_items,
            "removedItems": self.removed_items,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MutationResult":
        return cls(
            chunk_id=str(data["chunkId"]),
            sequence=int(data["sequence"]),
            created_items=list(data.get("createdItems") or []),
            updated_items=list(data.get("updatedItems") or []),
            removed_items=list(data.get("removedItems") or []),
        )
