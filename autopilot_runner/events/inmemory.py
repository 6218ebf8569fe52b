"""In-memory event channel backed by an asyncio queue."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import AsyncIterator, Deque, List, Optional

from ..contracts import RunEvent
from .base import BaseEventChannel

_END = object()


class InMemoryEventChannel(BaseEventChannel):
    """Single-consumer channel for one run.

    A bounded history of published events is kept so callers that did not
    subscribe (tests, the CLI summary) can still inspect what happened.
    """

    def __init__(self, history_size: Optional[int] = 5000) -> None:
        self._queue: "asyncio.Queue[object]" = asyncio.Queue()
        self._history: Deque[RunEvent] = deque(maxlen=history_size)
        self._closed = False

    def publish(self, event: RunEvent) -> None:
        if self._closed:
            return
        self._history.append(event)
        self._queue.put_nowait(event)

    async def subscribe(self) -> AsyncIterator[RunEvent]:
        while True:
            item = await self._queue.get()
            if item is _END:
                break
            yield item  # type: ignore[misc]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_END)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def history(self) -> List[RunEvent]:
        return list(self._history)
