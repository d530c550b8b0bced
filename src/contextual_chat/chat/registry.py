"""
Conversation id -> cancellation handle registry.

A handle exists in the registry exactly while a request for its
conversation is outstanding. Registering a new request for an id cancels
and replaces the earlier handle, so two sends for one conversation never
interleave their output.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterable, AsyncIterator, Callable, Dict, List, Optional, Tuple, TypeVar

logger = logging.getLogger("quart.app")

T = TypeVar("T")


class CancellationHandle:
    """Cooperative cancellation signal for one in-flight request."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], object]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def add_callback(self, callback: Callable[[], object]) -> None:
        """Run `callback` on cancellation (immediately if already cancelled)."""
        if self.cancelled:
            callback()
            return
        self._callbacks.append(callback)

    def cancel(self) -> None:
        if self.cancelled:
            return
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Cancellation callback failed for conversation {self.conversation_id}: {e}", exc_info=True)

    async def wait(self) -> None:
        await self._event.wait()


class CancellationRegistry:

    def __init__(self):
        self._handles: Dict[str, CancellationHandle] = {}
        self._lock = asyncio.Lock()

    async def register(self, conversation_id: str) -> CancellationHandle:
        async with self._lock:
            previous = self._handles.get(conversation_id)
            handle = CancellationHandle(conversation_id)
            self._handles[conversation_id] = handle
            if previous is not None and not previous.cancelled:
                logger.warning(f"Cancelling previous in-flight request for conversation {conversation_id}.")
                previous.cancel()
        return handle

    async def abort(self, conversation_id: str) -> bool:
        async with self._lock:
            handle = self._handles.pop(conversation_id, None)
            if handle is None:
                return False
            handle.cancel()
        logger.info(f"Aborted in-flight request for conversation {conversation_id}.")
        return True

    async def release(self, handle: CancellationHandle) -> None:
        """Remove `handle` if it is still the live one for its conversation."""
        async with self._lock:
            if self._handles.get(handle.conversation_id) is handle:
                del self._handles[handle.conversation_id]

    def get(self, conversation_id: str) -> Optional[CancellationHandle]:
        return self._handles.get(conversation_id)

    def active_ids(self) -> List[str]:
        return list(self._handles)

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)


async def iterate_until_cancelled(source: AsyncIterable[T], handle: CancellationHandle) -> AsyncIterator[T]:
    """
    Yield items from `source` until it ends or `handle` is cancelled.

    Each read is raced against the cancellation signal, so an abort also
    interrupts a read that is still waiting on the network. The source is
    closed on exit.
    """
    iterator = source.__aiter__()
    try:
        while not handle.cancelled:
            read = asyncio.ensure_future(_next_item(iterator))
            stop = asyncio.ensure_future(handle.wait())
            try:
                await asyncio.wait({read, stop}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                stop.cancel()
                if not read.done():
                    read.cancel()
                    await asyncio.wait({read})
            if read.cancelled():
                return
            found, item = read.result()
            if not found or handle.cancelled:
                return
            yield item
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


async def _next_item(iterator: AsyncIterator[T]) -> Tuple[bool, Optional[T]]:
    try:
        return True, await iterator.__anext__()
    except StopAsyncIteration:
        return False, None
