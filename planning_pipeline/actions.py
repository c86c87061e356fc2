"""
Structured planning actions.

Two representations live here:

- Wire models (pydantic): what the interpreter's model is allowed to emit. A
  discriminated union on ``kind`` with one validator set per variant. Nullable
  fields mirror the strict JSON schema, where every key is required and "no
  value" is spelled ``null``.
- Domain actions (frozen dataclasses): what the graph mutator applies. ``None``
  always means "field omitted / no change", never "clear".

``normalize_actions`` turns the first into the second.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from logging_setup import get_logger, Component
from .models import PLANNING_ITEM_TYPES, PlanningItemType

logger = get_logger(Component.NORMALIZER)


def _clean_keys(value: Optional[List[str]]) -> Optional[List[str]]:
    """Strip, drop blanks and duplicates (first occurrence wins)."""
    if value is None:
        return None
    seen = []
    for key in value:
        if not isinstance(key, str):
            raise ValueError("blockedByKeys entries must be strings")
        key = key.strip()
        if key and key not in seen:
            seen.append(key)
    return seen


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CreateItemWire(_WireModel):
    kind: Literal["createItem"]
    item_key: str = Field(..., alias="itemKey", min_length=1)
    type: PlanningItemType
    text: str = Field(..., min_length=1)
    speaker_label: Optional[str] = Field(default=None, alias="speakerLabel")
    blocked_by_keys: Optional[List[str]] = Field(default=None, alias="blockedByKeys")
    needs_research: Optional[bool] = Field(default=None, alias="needsResearch")

    @field_validator("item_key", "text")
    @classmethod
    def _non_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("speaker_label")
    @classmethod
    def _blank_label_is_null(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("blocked_by_keys")
    @classmethod
    def _keys(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return _clean_keys(value)


class UpdatePatchWire(_WireModel):
    text: Optional[str] = None
    blocked_by_keys: Optional[List[str]] = Field(default=None, alias="blockedByKeys")

    @field_validator("text")
    @classmethod
    def _blank_text_is_null(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("blocked_by_keys")
    @classmethod
    def _keys(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return _clean_keys(value)

    @property
    def has_changes(self) -> bool:
        return self.text is not None or self.blocked_by_keys is not None


class UpdateItemWire(_WireModel):
    kind: Literal["updateItem"]
    target_key: str = Field(..., alias="targetKey", min_length=1)
    patch: UpdatePatchWire = Field(default_factory=UpdatePatchWire)

    @field_validator("target_key")
    @classmethod
    def _strip_key(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class RemoveItemWire(_WireModel):
    kind: Literal["removeItem"]
    target_key: str = Field(..., alias="targetKey", min_length=1)

    @field_validator("target_key")
    @classmethod
    def _strip_key(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


WireAction = Annotated[
    Union[CreateItemWire, UpdateItemWire, RemoveItemWire],
    Field(discriminator="kind"),
]


class ActionBatch(_WireModel):
    """Ordered list of planning updates for one chunk, as emitted by the model."""

    actions: List[WireAction] = Field(default_factory=list)
    rationale: Optional[str] = None


# Strict structured-output schema handed to the Responses API. Every property is
# required; optional values are expressed as null.
_NULLABLE_STRING = {"type": ["string", "null"]}
_NULLABLE_KEYS = {
    "anyOf": [
        {"type": "array", "items": {"type": "string"}},
        {"type": "null"},
    ],
    "description": "List of existing item keys this item depends on; null when none or unchanged.",
}

ACTION_BATCH_SCHEMA_NAME = "transcript_analysis_response"

ACTION_BATCH_JSON_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "required": ["actions", "rationale"],
    "properties": {
        "actions": {
            "type": "array",
            "description": "Ordered list of structured planning item updates.",
            "items": {
                "anyOf": [
                    {
                        "type": "object",
                        "additionalProperties": False,
                        "required": [
                            "kind", "itemKey", "type", "text",
                            "speakerLabel", "blockedByKeys", "needsResearch",
                        ],
                        "properties": {
                            "kind": {"type": "string", "enum": ["createItem"]},
                            "itemKey": {"type": "string"},
                            "type": {"type": "string", "enum": list(PLANNING_ITEM_TYPES)},
                            "text": {"type": "string"},
                            "speakerLabel": {
                                **_NULLABLE_STRING,
                                "description": "Use null to fall back to the default speaker label.",
                            },
                            "blockedByKeys": _NULLABLE_KEYS,
                            "needsResearch": {
                                "type": ["boolean", "null"],
                                "description": "Boolean for idea items; null for every other type.",
                            },
                        },
                    },
                    {
                        "type": "object",
                        "additionalProperties": False,
                        "required": ["kind", "targetKey", "patch"],
                        "properties": {
                            "kind": {"type": "string", "enum": ["updateItem"]},
                            "targetKey": {"type": "string"},
                            "patch": {
                                "type": "object",
                                "additionalProperties": False,
                                "required": ["text", "blockedByKeys"],
                                "properties": {
                                    "text": _NULLABLE_STRING,
                                    "blockedByKeys": _NULLABLE_KEYS,
                                },
                            },
                        },
                    },
                    {
                        "type": "object",
                        "additionalProperties": False,
                        "required": ["kind", "targetKey"],
                        "properties": {
                            "kind": {"type": "string", "enum": ["removeItem"]},
                            "targetKey": {"type": "string"},
                        },
                    },
                ]
            },
        },
        "rationale": {
            **_NULLABLE_STRING,
            "description": "Optional reasoning summary for the generated actions; null when omitted.",
        },
    },
}


# --- Domain actions ---


@dataclass(frozen=True)
class CreateItem:
    item_key: str
    type: PlanningItemType
    text: str
    speaker_label: Optional[str] = None
    blocked_by_keys: Optional[Tuple[str, ...]] = None
    needs_research: Optional[bool] = None

    kind: ClassVar[str] = "createItem"

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "kind": self.kind,
            "itemKey": self.item_key,
            "type": self.type.value,
            "text": self.text,
        }
        if self.speaker_label is not None:
            result["speakerLabel"] = self.speaker_label
        if self.blocked_by_keys is not None:
            result["blockedByKeys"] = list(self.blocked_by_keys)
        if self.needs_research is not None:
            result["needsResearch"] = self.needs_research
        return result


@dataclass(frozen=True)
class ItemPatch:
    text: Optional[str] = None
    blocked_by_keys: Optional[Tuple[str, ...]] = None

    @property
    def is_empty(self) -> bool:
        return self.text is None and self.blocked_by_keys is None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.text is not None:
            result["text"] = self.text
        if self.blocked_by_keys is not None:
            result["blockedByKeys"] = list(self.blocked_by_keys)
        return result


@dataclass(frozen=True)
class UpdateItem:
    target_key: str
    patch: ItemPatch = field(default_factory=ItemPatch)

    kind: ClassVar[str] = "updateItem"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "targetKey": self.target_key, "patch": self.patch.to_dict()}


@dataclass(frozen=True)
class RemoveItem:
    target_key: str

    kind: ClassVar[str] = "removeItem"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "targetKey": self.target_key}


Action = Union[CreateItem, UpdateItem, RemoveItem]


@dataclass(frozen=True)
class DroppedAction:
    """An action filtered out by the normalizer, kept for diagnostics."""

    kind: str
    target_key: Optional[str]
    reason: str


@dataclass
class NormalizedBatch:
    actions: List[Action] = field(default_factory=list)
    dropped: List[DroppedAction] = field(default_factory=list)
    rationale: Optional[str] = None


def _keys_or_none(keys: Optional[List[str]]) -> Optional[Tuple[str, ...]]:
    # an empty list carries no dependency information; treat it like null
    if not keys:
        return None
    return tuple(keys)


def normalize_action(action: Union[CreateItemWire, UpdateItemWire, RemoveItemWire]) -> Optional[Action]:
    """Convert one wire action; returns None when the action has no effect."""
    if isinstance(action, CreateItemWire):
        if action.type is PlanningItemType.IDEA:
            needs_research: Optional[bool] = action.needs_research is True
        else:
            needs_research = None
        return CreateItem(
            item_key=action.item_key,
            type=action.type,
            text=action.text,
            speaker_label=action.speaker_label,
            blocked_by_keys=_keys_or_none(action.blocked_by_keys),
            needs_research=needs_research,
        )

    if isinstance(action, UpdateItemWire):
        if not action.patch.has_changes:
            return None
        return UpdateItem(
            target_key=action.target_key,
            patch=ItemPatch(
                text=action.patch.text,
                blocked_by_keys=(
                    tuple(action.patch.blocked_by_keys)
                    if action.patch.blocked_by_keys is not None
                    else None
                ),
            ),
        )

    return RemoveItem(target_key=action.target_key)


def normalize_actions(batch: ActionBatch, session_id: Optional[str] = None) -> NormalizedBatch:
    """
    Prepare a validated batch for the graph mutator.

    - updateItem actions whose patch carries no present field are dropped and
      logged; they never fail the batch
    - null fields become omitted fields
    - needsResearch is a boolean for ideas and unset for everything else
    - order is preserved

    The task-only dependency policy is not checked here; the mutator owns it.
    """
    log = logger.with_session(session_id) if session_id else logger
    result = NormalizedBatch(rationale=batch.rationale)

    for wire_action in batch.actions:
        normalized = normalize_action(wire_action)
        if normalized is None:
            target_key = getattr(wire_action, "target_key", None)
            log.warning(
                "Dropped updateItem action with empty patch",
                target_key=target_key,
            )
            result.dropped.append(
                DroppedAction(kind=wire_action.kind, target_key=target_key, reason="empty_patch")
            )
            continue
        result.actions.append(normalized)

    if result.dropped:
        log.info(
            "Filtered out invalid update actions",
            original_count=len(batch.actions),
            filtered_count=len(result.actions),
            removed=len(result.dropped),
        )

    return result


def action_from_dict(data: Dict[str, Any]) -> Action:
    """Rebuild a domain action from its ``to_dict`` form (used by the HTTP store boundary)."""
    kind = data.get("kind")
    if kind == "createItem":
        blocked = data.get("blockedByKeys")
        return CreateItem(
            item_key=data["itemKey"],
            type=PlanningItemType(data["type"]),
            text=data["text"],
            speaker_label=data.get("speakerLabel"),
            blocked_by_keys=tuple(blocked) if blocked is not None else None,
            needs_research=data.get("needsResearch"),
        )
    if kind == "updateItem":
        patch = data.get("patch") or {}
        blocked = patch.get("blockedByKeys")
        return UpdateItem(
            target_key=data["targetKey"],
            patch=ItemPatch(
                text=patch.get("text"),
                blocked_by_keys=tuple(blocked) if blocked is not None else None,
            ),
        )
    if kind == "removeItem":
        return RemoveItem(target_key=data["targetKey"])
    raise ValueError(f"Unknown action kind: {kind!r}")
