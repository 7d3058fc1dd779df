"""Bounded per-run event channel between the registry and one consumer."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from fit_check.orchestrator.events import (
    PipelineCompleteEvent,
    PipelineErrorEvent,
    PipelineEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_SIZE = 1000

_CLOSED = object()


class EventChannel:
    """Sink that buffers events for a single async consumer.

    ``put`` never blocks the producer: when the buffer is full the oldest
    event is dropped. The channel closes itself after ``pipeline:complete``
    or ``pipeline:error``; suspended runs are closed by the caller.
    """

    def __init__(self, maxsize: int = DEFAULT_CHANNEL_SIZE) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, event: PipelineEvent) -> None:
        if self._closed:
            logger.debug("Channel closed, ignoring %s", event.type)
            return
        self._push(event)
        if isinstance(event, (PipelineCompleteEvent, PipelineErrorEvent)):
            self.close()

    __call__ = put

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._push(_CLOSED)

    async def get(self) -> PipelineEvent | None:
        """Next event, or ``None`` once the channel is closed and drained."""

        item = await self._queue.get()
        if item is _CLOSED:
            # keep the marker for any later reader
            self._queue.put_nowait(_CLOSED)
            return None
        return item  # type: ignore[return-value]

    async def __aiter__(self) -> AsyncIterator[PipelineEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event

    def _push(self, item: object) -> None:
        if self._queue.full():
            dropped = self._queue.get_nowait()
            self.dropped += 1
            logger.warning(
                "Event channel full, dropped oldest event %s",
                getattr(dropped, "type", dropped),
            )
        self._queue.put_nowait(item)
