"""
Conversation serializer.

At most one task per conversation key is in flight. A task submitted under key
``k`` starts only after the previous task under ``k`` has settled, whether it
succeeded or failed. Tasks without a key run immediately.

The registry is an owned object (one per pipeline) rather than module state.
Entries disappear as soon as their chain drains, so memory is bounded by the
number of conversations that currently have work queued.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from logging_setup import get_logger, Component

logger = get_logger(Component.SERIALIZER)

T = TypeVar("T")


class ConversationSerializer:
    def __init__(self):
        # key -> future of the most recently queued task (settles when it does)
        self._tails: Dict[str, asyncio.Future] = {}

    def is_busy(self, key: Optional[str]) -> bool:
        return key is not None and key in self._tails

    def active_keys(self) -> List[str]:
        return list(self._tails)

    async def run(self, key: Optional[str], task: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``task`` once every earlier task under ``key`` has settled.

        The chain position is taken synchronously on entry, so submission order
        is execution order even if callers are interleaved on the event loop.
        """
        if key is None:
            return await task()

        previous = self._tails.get(key)
        settled: asyncio.Future = asyncio.get_running_loop().create_future()
        self._tails[key] = settled

        if previous is not None:
            logger.debug("Conversation busy, queuing task", conversation_id=key)

        try:
            if previous is not None:
                # shield: a cancelled waiter must not cancel the shared tail
                await asyncio.shield(previous)
            return await task()
        finally:
            if previous is not None and not previous.done():
                # cancelled while waiting: successors still wait for the predecessor
                previous.add_done_callback(lambda _f: self._settle(key, settled))
            else:
                self._settle(key, settled)

    def _settle(self, key: str, settled: asyncio.Future) -> None:
        if not settled.done():
            settled.set_result(None)
        if self._tails.get(key) is settled:
            del self._tails[key]

    async def drain(self) -> None:
        """Wait until every queued chain has settled."""
        while self._tails:
            await asyncio.gather(*list(self._tails.values()))
