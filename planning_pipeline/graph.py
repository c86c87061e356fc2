"""
Planning item graph mutator.

Applies a normalized action batch, in order, to one huddle's item collection.
The mutator works on the ``SessionGraph`` it is given; stores hand it a copy
and commit the copy only when the whole batch went through, which is what
makes a chunk all-or-nothing.

Rules:
- items are keyed by ``item_key``; there is never more than one item per key
- createItem on an existing key upserts according to ``CreateMergePolicy``
- updateItem / removeItem on an unknown key is a logged no-op
- new items get the session's next ``order`` value (monotonic, never reused)
- blockedBy keys that do not resolve are dropped; with
  ``DependencyPolicy.ENFORCED`` only task -> task edges survive
- removing an item, or retyping a task under ENFORCED, scrubs its key from
  every other item's blockedBy
"""
from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from logging_setup import get_logger, Component, StructuredLogger
from .actions import Action, CreateItem, RemoveItem, UpdateItem
from .config import CreateMergePolicy, DependencyPolicy
from .models import PlanningItem, PlanningItemType

logger = get_logger(Component.GRAPH)

EVENT_CREATED = "planningItemCreated"
EVENT_UPDATED = "planningItemUpdated"
EVENT_REMOVED = "planningItemRemoved"


def new_item_id() -> str:
    return f"item_{uuid.uuid4().hex[:16]}"


@dataclass
class SessionGraph:
    """A huddle's planning items keyed by item_key, plus its order counter."""

    session_id: str
    items: Dict[str, PlanningItem] = field(default_factory=dict)
    next_order: int = 1

    @classmethod
    def from_items(cls, session_id: str, items: Iterable[PlanningItem]) -> "SessionGraph":
        graph = cls(session_id=session_id)
        for item in sorted(items, key=lambda i: i.order):
            if not item.item_key:
                continue
            graph.items[item.item_key] = item
            graph.next_order = max(graph.next_order, item.order + 1)
        return graph

    def copy(self) -> "SessionGraph":
        return SessionGraph(
            session_id=self.session_id,
            items=copy.deepcopy(self.items),
            next_order=self.next_order,
        )

    def ordered_items(self) -> List[PlanningItem]:
        return sorted(self.items.values(), key=lambda item: item.order)

    def take_order(self) -> int:
        order = self.next_order
        self.next_order += 1
        return order


@dataclass(frozen=True)
class MutationContext:
    """Who said it and where it came from; stamped onto items and events."""

    chunk_id: str
    speaker_id: str
    speaker_label: str
    timestamp: str
    conversation_id: Optional[str] = None
    request_id: Optional[str] = None
    source: str = "voice"


@dataclass
class MutationOutcome:
    created: List[Dict[str, Any]] = field(default_factory=list)
    updated: List[Dict[str, Any]] = field(default_factory=list)
    removed: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    events: List[Dict[str, Any]] = field(default_factory=list)


def _event(kind: str, item: PlanningItem) -> Dict[str, Any]:
    return {
        "kind": kind,
        "itemId": item.item_id,
        "itemKey": item.item_key,
        "itemType": item.type.value,
        "itemText": item.text,
    }


def _scrub_dependency(graph: SessionGraph, key: str) -> List[str]:
    """Drop ``key`` from every item's blockedBy; returns the keys of the items touched."""
    touched = []
    for other in graph.items.values():
        if key in other.blocked_by_keys:
            other.blocked_by_keys = [k for k in other.blocked_by_keys if k != key]
            touched.append(other.item_key)
    return touched


class GraphMutator:
    def __init__(
        self,
        merge_policy: CreateMergePolicy = CreateMergePolicy.MERGE,
        dependency_policy: DependencyPolicy = DependencyPolicy.ENFORCED,
        id_factory: Callable[[], str] = new_item_id,
    ):
        self.merge_policy = merge_policy
        self.dependency_policy = dependency_policy
        self._id_factory = id_factory

    def apply(
        self,
        graph: SessionGraph,
        actions: Sequence[Action],
        context: MutationContext,
    ) -> MutationOutcome:
        log = logger.with_session(graph.session_id)
        outcome = MutationOutcome()

        for action in actions:
            if isinstance(action, CreateItem):
                self._create(graph, action, context, outcome, log)
            elif isinstance(action, UpdateItem):
                self._update(graph, action, outcome, log)
            elif isinstance(action, RemoveItem):
                self._remove(graph, action, outcome, log)
            else:
                raise TypeError(f"Unsupported action: {action!r}")

        log.info(
            "Applied planning actions",
            chunk_id=context.chunk_id,
            action_count=len(actions),
            created_count=len(outcome.created),
            updated_count=len(outcome.updated),
            removed_count=len(outcome.removed),
            skipped_count=len(outcome.skipped),
        )
        return outcome

    # --- actions ---

    def _create(
        self,
        graph: SessionGraph,
        action: CreateItem,
        context: MutationContext,
        outcome: MutationOutcome,
        log: StructuredLogger,
    ) -> None:
        blocked_by = self._resolve_blocked_by(
            graph, action.item_key, action.type, action.blocked_by_keys or (), log
        )
        existing = graph.items.get(action.item_key)

        if existing is None:
            metadata: Dict[str, Any] = {
                "itemKey": action.item_key,
                "sourceChunkId": context.chunk_id,
                "source": context.source,
            }
            if context.conversation_id:
                metadata["conversationId"] = context.conversation_id
            if context.request_id:
                metadata["requestId"] = context.request_id
            if action.type is PlanningItemType.IDEA:
                metadata["needsResearch"] = action.needs_research is True

            item = PlanningItem(
                item_id=self._id_factory(),
                item_key=action.item_key,
                session_id=graph.session_id,
                type=action.type,
                text=action.text,
                order=graph.take_order(),
                timestamp=context.timestamp,
                speaker_id=context.speaker_id,
                speaker_label=action.speaker_label or context.speaker_label,
                blocked_by_keys=blocked_by,
                metadata=metadata,
            )
            graph.items[item.item_key] = item
            outcome.created.append({
                "itemKey": item.item_key,
                "id": item.item_id,
                "type": item.type.value,
                "text": item.text,
            })
            outcome.events.append(_event(EVENT_CREATED, item))
            return

        log.info(
            "createItem targets an existing key, upserting",
            item_key=action.item_key,
            policy=self.merge_policy.value,
        )
        if self.merge_policy is CreateMergePolicy.REPLACE:
            existing.type = action.type
            existing.text = action.text
            existing.speaker_id = context.speaker_id
            existing.speaker_label = action.speaker_label or context.speaker_label
            existing.blocked_by_keys = blocked_by
            existing.timestamp = context.timestamp
            metadata = {
                "itemKey": existing.item_key,
                "sourceChunkId": context.chunk_id,
                "source": context.source,
            }
            if context.conversation_id:
                metadata["conversationId"] = context.conversation_id
            if context.request_id:
                metadata["requestId"] = context.request_id
            if action.type is PlanningItemType.IDEA:
                metadata["needsResearch"] = action.needs_research is True
            existing.metadata = metadata
        else:
            existing.type = action.type
            existing.text = action.text
            if action.speaker_label:
                existing.speaker_label = action.speaker_label
            if action.blocked_by_keys is not None:
                existing.blocked_by_keys = blocked_by
            elif (
                self.dependency_policy is DependencyPolicy.ENFORCED
                and existing.type is not PlanningItemType.TASK
            ):
                existing.blocked_by_keys = []
            if action.type is PlanningItemType.IDEA:
                if action.needs_research is not None or "needsResearch" not in existing.metadata:
                    existing.metadata["needsResearch"] = action.needs_research is True
            else:
                existing.metadata.pop("needsResearch", None)
            existing.metadata["lastChunkId"] = context.chunk_id

        if (
            self.dependency_policy is DependencyPolicy.ENFORCED
            and existing.type is not PlanningItemType.TASK
        ):
            existing.blocked_by_keys = []
            scrubbed = _scrub_dependency(graph, existing.item_key)
            if scrubbed:
                log.info(
                    "Item is no longer a task, dropping dependencies on it",
                    item_key=existing.item_key,
                    item_type=existing.type.value,
                    dependents=scrubbed,
                )

        outcome.updated.append({"itemKey": existing.item_key, "id": existing.item_id})
        outcome.events.append(_event(EVENT_UPDATED, existing))

    def _update(
        self,
        graph: SessionGraph,
        action: UpdateItem,
        outcome: MutationOutcome,
        log: StructuredLogger,
    ) -> None:
        item = graph.items.get(action.target_key)
        if item is None:
            log.warning("updateItem targets unknown key, skipping", target_key=action.target_key)
            outcome.skipped.append({"kind": action.kind, "targetKey": action.target_key, "reason": "unknown_key"})
            return

        if action.patch.text is not None:
            item.text = action.patch.text
        if action.patch.blocked_by_keys is not None:
            item.blocked_by_keys = self._resolve_blocked_by(
                graph, item.item_key, item.type, action.patch.blocked_by_keys, log
            )

        outcome.updated.append({"itemKey": item.item_key, "id": item.item_id})
        outcome.events.append(_event(EVENT_UPDATED, item))

    def _remove(
        self,
        graph: SessionGraph,
        action: RemoveItem,
        outcome: MutationOutcome,
        log: StructuredLogger,
    ) -> None:
        item = graph.items.pop(action.target_key, None)
        if item is None:
            log.warning("removeItem targets unknown key, skipping", target_key=action.target_key)
            outcome.skipped.append({"kind": action.kind, "targetKey": action.target_key, "reason": "unknown_key"})
            return

        _scrub_dependency(graph, item.item_key)

        outcome.removed.append({"itemKey": item.item_key, "id": item.item_id})
        outcome.events.append(_event(EVENT_REMOVED, item))

    # --- dependencies ---

    def _resolve_blocked_by(
        self,
        graph: SessionGraph,
        owner_key: str,
        owner_type: PlanningItemType,
        keys: Iterable[str],
        log: StructuredLogger,
    ) -> List[str]:
        resolved: List[str] = []
        for key in keys:
            if key == owner_key or key in resolved:
                continue
            target = graph.items.get(key)
            if target is None:
                log.warning("Dropping dependency on unknown key", item_key=owner_key, blocked_by=key)
                continue
            is_task_edge = owner_type is PlanningItemType.TASK and target.type is PlanningItemType.TASK
            if not is_task_edge:
                if self.dependency_policy is DependencyPolicy.ENFORCED:
                    log.warning(
                        "Dropping non task-to-task dependency",
                        item_key=owner_key,
                        item_type=owner_type.value,
                        blocked_by=key,
                        blocked_by_type=target.type.value,
                    )
                    continue
                log.info(
                    "Keeping non task-to-task dependency (advisory policy)",
                    item_key=owner_key,
                    blocked_by=key,
                )
            resolved.append(key)
        return resolved
