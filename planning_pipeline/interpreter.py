"""
Structured interpreter.

Given a chunk of speech, the speaker, and the huddle's known items, ask the
model for an ordered batch of createItem / updateItem / removeItem actions that
conforms to ``ACTION_BATCH_JSON_SCHEMA``.

The model keeps one server-side conversation per logical conversation so later
chunks are interpreted with earlier ones in context. Everything behind
``Interpreter.interpret`` is replaceable; ``planning_pipeline.testing`` ships a
deterministic implementation.
"""
from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol

import openai
import pydantic
import yaml

from logging_setup import get_logger, Component, StructuredLogger
from .actions import ACTION_BATCH_JSON_SCHEMA, ACTION_BATCH_SCHEMA_NAME, ActionBatch
from .diagnostics import build_error_summary, serialize_error
from .errors import InterpretationFailure, PipelineStageError
from .models import KnownItem
from .openai_client import get_openai_client

logger = get_logger(Component.INTERPRETER)

PROMPTS_DIR = Path(__file__).parent / "prompts"


@dataclass(frozen=True)
class InterpretationRequest:
    chunk_id: str
    speaker_id: str
    speaker_label: str
    text: str
    known_items: List[KnownItem] = field(default_factory=list)
    conversation_id: Optional[str] = None
    session_id: Optional[str] = None
    user_api_key: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class InterpretationResult:
    conversation_id: str
    batch: ActionBatch


class Interpreter(Protocol):
    async def interpret(self, request: InterpretationRequest) -> InterpretationResult:
        ...


def load_instructions(name: str = "transcript_analysis") -> str:
    """Load system instructions from ``prompts/<name>.yaml``."""
    path = PROMPTS_DIR / f"{name}.yaml"
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict) or not isinstance(data.get("instructions"), str):
        raise ValueError(f"Prompt file {path} must define an 'instructions' string")
    return data["instructions"].strip()


def _collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def build_user_prompt(request: InterpretationRequest) -> str:
    base = f'Speaker ({request.speaker_id}, {request.speaker_label}) said:\n"""{request.text}"""\n'
    if not request.known_items:
        return f"{base}\nGenerate the structured planning actions that should occur."

    known = "\n".join(
        f"- {item.item_key} ({item.type.value}): {_collapse_whitespace(item.text)}"
        for item in request.known_items
    )
    return (
        f"{base}\nExisting items (keys -> summary):\n{known}\n"
        "Only reference these existing keys when declaring dependencies.\n"
        "Generate the structured planning actions that should occur."
    )


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def extract_structured_payload(response: Any, log: Optional[StructuredLogger] = None) -> Any:
    """
    Pull the JSON document out of a Responses API result.

    ``output_text`` is tried first, then every ``output_text`` content block of
    every ``message`` output item. The first block that parses wins.
    """
    log = log or logger

    output_text = _field(response, "output_text")
    if isinstance(output_text, str) and output_text.strip():
        try:
            return json.loads(output_text)
        except ValueError:
            log.warning("Failed to parse response output_text as JSON", length=len(output_text))

    for item in _field(response, "output") or []:
        if _field(item, "type") != "message":
            continue
        for content in _field(item, "content") or []:
            if _field(content, "type") != "output_text":
                continue
            text = _field(content, "text")
            if not isinstance(text, str):
                continue
            try:
                return json.loads(text)
            except ValueError:
                log.warning("Failed to parse output_text content as JSON", length=len(text))

    raise InterpretationFailure(
        "Model response did not include valid structured output.",
        stage="analysis:extract",
    )


def parse_action_batch(payload: Any) -> ActionBatch:
    try:
        return ActionBatch.model_validate(payload)
    except pydantic.ValidationError as exc:
        raise InterpretationFailure(
            f"Model output did not match the action schema ({exc.error_count()} error(s))",
            stage="analysis:validate",
        ) from exc


class OpenAIInterpreter:
    """Interpreter backed by OpenAI conversations + the Responses API."""

    def __init__(
        self,
        model: str,
        instructions: Optional[str] = None,
        user_api_key: Optional[str] = None,
        client_factory: Callable[[Optional[str]], Any] = get_openai_client,
    ):
        self.model = model
        self.instructions = instructions or load_instructions()
        self._user_api_key = user_api_key
        self._client_factory = client_factory

    @property
    def text_format(self) -> Dict[str, Any]:
        return {
            "format": {
                "type": "json_schema",
                "name": ACTION_BATCH_SCHEMA_NAME,
                "schema": ACTION_BATCH_JSON_SCHEMA,
                "strict": True,
            }
        }

    async def interpret(self, request: InterpretationRequest) -> InterpretationResult:
        log = logger.with_session(request.session_id) if request.session_id else logger
        client = self._client_factory(request.user_api_key or self._user_api_key)
        started = time.time()

        try:
            conversation_id = request.conversation_id
            if not conversation_id:
                metadata = {"mode": "transcript_analysis"}
                if request.session_id:
                    metadata["huddleId"] = request.session_id
                conversation = await client.conversations.create(metadata=metadata)
                conversation_id = conversation.id
                log.info("Created interpretation conversation", conversation_id=conversation_id)

            await client.conversations.items.create(
                conversation_id,
                items=[
                    {
                        "type": "message",
                        "role": "user",
                        "content": [{"type": "input_text", "text": build_user_prompt(request)}],
                    }
                ],
            )

            response = await client.responses.create(
                model=self.model,
                instructions=self.instructions,
                conversation=conversation_id,
                input=[],
                text=self.text_format,
            )
        except openai.OpenAIError as exc:
            info = serialize_error(exc)
            log.error("Interpretation request failed", stage="analysis:request", error=info)
            raise PipelineStageError(
                "analysis:request",
                f"Model request failed: {build_error_summary(info)}",
                exc,
            ) from exc

        batch = parse_action_batch(extract_structured_payload(response, log))

        log.info(
            "Transcript analysis produced actions",
            conversation_id=conversation_id,
            chunk_id=request.chunk_id,
            action_count=len(batch.actions),
            known_item_count=len(request.known_items),
            latency_ms=int((time.time() - started) * 1000),
        )
        return InterpretationResult(conversation_id=conversation_id, batch=batch)
