"""
Per-chunk lifecycle.

received -> transcribing -> skipped (terminal)
                         -> interpreting -> normalizing -> applying -> persisted (terminal)
any non-terminal state   -> failed(stage) (terminal)

Text chunks skip transcription and go straight from received to interpreting.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from observability.events import pipeline_emitter


class ChunkState(str, Enum):
    RECEIVED = "received"
    TRANSCRIBING = "transcribing"
    SKIPPED = "skipped"
    INTERPRETING = "interpreting"
    NORMALIZING = "normalizing"
    APPLYING = "applying"
    PERSISTED = "persisted"
    FAILED = "failed"


TERMINAL_STATES = frozenset({ChunkState.SKIPPED, ChunkState.PERSISTED, ChunkState.FAILED})

_ALLOWED: Dict[ChunkState, Set[ChunkState]] = {
    ChunkState.RECEIVED: {ChunkState.TRANSCRIBING, ChunkState.INTERPRETING, ChunkState.SKIPPED},
    ChunkState.TRANSCRIBING: {ChunkState.SKIPPED, ChunkState.INTERPRETING},
    ChunkState.INTERPRETING: {ChunkState.NORMALIZING},
    ChunkState.NORMALIZING: {ChunkState.APPLYING},
    ChunkState.APPLYING: {ChunkState.PERSISTED},
}


class InvalidChunkTransition(RuntimeError):
    pass


@dataclass
class ChunkLifecycle:
    """Tracks one chunk through the pipeline; transitions are monotonic."""

    request_id: str
    session_key: str
    state: ChunkState = ChunkState.RECEIVED
    failed_stage: Optional[str] = None
    history: List[Tuple[ChunkState, datetime]] = field(default_factory=list)

    def __post_init__(self):
        if not self.request_id:
            raise ValueError("request_id is required")
        self.history.append((self.state, datetime.now(timezone.utc)))

    def transition_to(self, new_state: ChunkState) -> ChunkState:
        """
        Move to ``new_state`` and emit chunk.state_changed.
        Returns the previous state.
        """
        if new_state is ChunkState.FAILED:
            raise InvalidChunkTransition("use fail(stage) to enter the failed state")
        if new_state not in _ALLOWED.get(self.state, set()):
            raise InvalidChunkTransition(f"{self.state.value} -> {new_state.value}")
        return self._set(new_state)

    def fail(self, stage: str) -> ChunkState:
        if self.is_terminal():
            raise InvalidChunkTransition(f"{self.state.value} is terminal")
        self.failed_stage = stage
        return self._set(ChunkState.FAILED)

    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def _set(self, new_state: ChunkState) -> ChunkState:
        old_state = self.state
        self.state = new_state
        self.history.append((new_state, datetime.now(timezone.utc)))
        pipeline_emitter.chunk_state_changed(
            session_id=self.session_key,
            request_id=self.request_id,
            from_state=old_state.value,
            to_state=new_state.value,
        )
        return old_state
