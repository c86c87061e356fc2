"""
Deterministic stand-ins for the model-backed components.

``ScriptedInterpreter`` answers from a table keyed by transcript text and
records every request (including the known items it was shown), which makes
ordering and visibility properties observable. ``ScriptedSpeechModel`` returns
canned transcripts and can be told to reject or fail specific models.
"""
from __future__ import annotations

import asyncio
import itertools
from typing import Any, Dict, Iterable, List, Optional, Union

from .actions import ActionBatch
from .interpreter import InterpretationRequest, InterpretationResult, parse_action_batch
from .transcription import TranscriptionAttempt, TranscriptionOutcome

ScriptedResponse = Union[ActionBatch, Dict[str, Any], BaseException]


class ScriptedInterpreter:
    def __init__(
        self,
        responses: Optional[Dict[str, ScriptedResponse]] = None,
        default: Optional[ScriptedResponse] = None,
        delays: Optional[Dict[str, float]] = None,
    ):
        self.responses = dict(responses or {})
        self.default = default
        self.delays = dict(delays or {})
        self.requests: List[InterpretationRequest] = []
        self.completed: List[str] = []
        self._ids = itertools.count(1)

    async def interpret(self, request: InterpretationRequest) -> InterpretationResult:
        self.requests.append(request)
        delay = self.delays.get(request.text)
        if delay:
            await asyncio.sleep(delay)

        conversation_id = request.conversation_id or f"conv_scripted_{next(self._ids)}"
        response = self.responses.get(request.text, self.default)
        if isinstance(response, BaseException):
            raise response
        if response is None:
            batch = ActionBatch(actions=[], rationale=None)
        elif isinstance(response, ActionBatch):
            batch = response
        else:
            batch = parse_action_batch(response)

        self.completed.append(request.text)
        return InterpretationResult(conversation_id=conversation_id, batch=batch)

    def known_keys_seen(self, text: str) -> List[str]:
        """Item keys the interpreter was shown for the (last) request with ``text``."""
        for request in reversed(self.requests):
            if request.text == text:
                return [item.item_key for item in request.known_items]
        raise KeyError(text)


class ScriptedSpeechModel:
    def __init__(
        self,
        text: str = "",
        transcripts: Optional[Dict[bytes, str]] = None,
        rejects_format: Iterable[str] = (),
        fails: Iterable[str] = (),
    ):
        self.text = text
        self.transcripts = dict(transcripts or {})
        self.rejects_format = set(rejects_format)
        self.fails = set(fails)
        self.calls: List[Dict[str, Any]] = []
        self.api_keys: List[Optional[str]] = []

    async def transcribe(
        self,
        audio: bytes,
        *,
        filename: str,
        mime_type: str,
        model: str,
        user_api_key: Optional[str] = None,
    ) -> TranscriptionAttempt:
        self.calls.append({"model": model, "filename": filename, "mime_type": mime_type, "size": len(audio)})
        self.api_keys.append(user_api_key)
        if model in self.rejects_format:
            return TranscriptionAttempt(
                outcome=TranscriptionOutcome.UNSUPPORTED_FORMAT,
                model=model,
                error=RuntimeError(f"Unsupported file format for {model}"),
            )
        if model in self.fails:
            return TranscriptionAttempt(
                outcome=TranscriptionOutcome.OTHER_FAILURE,
                model=model,
                error=RuntimeError(f"{model} is unavailable"),
            )
        return TranscriptionAttempt(
            outcome=TranscriptionOutcome.OK,
            model=model,
            text=self.transcripts.get(audio, self.text),
        )

    @property
    def models_called(self) -> List[str]:
        return [call["model"] for call in self.calls]
