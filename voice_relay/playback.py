"""Serialized playback of synthesized utterances."""

import asyncio
import logging
from collections import deque
from typing import Callable

from voice_relay._types import AudioQueueItem
from voice_relay.output import AudioOutput, PlaybackHandle

logger = logging.getLogger(__name__)


class AudioPlaybackQueue:
    """Plays queued audio items one at a time with a silence gap between them.

    Exactly one item is audible at any moment. After each item finishes the
    queue waits ``gap`` seconds before the next item may start. ``clear()``
    drops pending items and silences the current one immediately.
    """

    def __init__(self, output: AudioOutput, gap: float = 0.5):
        """Initialize playback queue.

        Args:
            output: Audio output that plays scheduled sources
            gap: Silence in seconds inserted after each item
        """
        if gap < 0:
            raise ValueError("gap must be non-negative")
        self.output = output
        self.gap = gap
        self._items: deque[AudioQueueItem] = deque()
        self._current: PlaybackHandle | None = None
        self._current_item: AudioQueueItem | None = None
        self._drain_task: asyncio.Task | None = None
        self._closed = False

    @property
    def is_playing(self) -> bool:
        return self._current is not None

    @property
    def current_item_id(self) -> str | None:
        return self._current_item.id if self._current_item else None

    @property
    def pending(self) -> int:
        return len(self._items)

    @property
    def is_draining(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    def enqueue(self, item: AudioQueueItem) -> None:
        """Append an item and start draining if idle.

        Raises:
            RuntimeError: If the queue has been closed
        """
        if self._closed:
            raise RuntimeError("Cannot enqueue on a closed playback queue")

        self._items.append(item)
        logger.debug("Enqueued audio item %s (%.2fs, pending=%d)", item.id, item.duration, len(self._items))
        if not self.is_draining:
            self._drain_task = asyncio.create_task(self._drain())

    def clear(self) -> None:
        """Discard pending items and stop the item currently sounding."""
        dropped = len(self._items)
        self._items.clear()
        if self._current is not None:
            logger.info("Stopping current audio item %s", self.current_item_id)
            self._current.stop()
        if dropped:
            logger.info("Cleared %d pending audio items", dropped)

    async def join(self) -> None:
        """Wait until every queued item (and its gap) has been processed."""
        while self.is_draining:
            task = self._drain_task
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if task.cancelled():
                    return
                raise

    async def close(self) -> None:
        """Clear the queue and cancel draining. Safe to call repeatedly."""
        self._closed = True
        self.clear()
        task, self._drain_task = self._drain_task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _drain(self) -> None:
        while self._items:
            item = self._items.popleft()
            try:
                await self._play(item)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Error playing audio item %s: %s", item.id, e, exc_info=True)

            if self.gap > 0:
                await asyncio.sleep(self.gap)

    async def _play(self, item: AudioQueueItem) -> None:
        handle = self.output.schedule(item.samples, item.sample_rate)
        self._current = handle
        self._current_item = item
        _run_callback(item.on_start, "start", item.id)
        try:
            await handle.wait()
        except asyncio.CancelledError:
            handle.stop()
            raise
        finally:
            self._current = None
            self._current_item = None
        _run_callback(item.on_end, "end", item.id)


def _run_callback(callback: Callable[[], None] | None, name: str, item_id: str) -> None:
    if callback is None:
        return
    try:
        callback()
    except Exception as e:
        logger.warning("Audio item %s %s callback failed: %s", item_id, name, e)
