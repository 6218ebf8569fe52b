"""In-memory snapshot store."""

from __future__ import annotations

import asyncio
from typing import Any, Dict

from .models import RunSnapshot
from .store import SnapshotStore


class InMemorySnapshotStore(SnapshotStore):
    """Keep the snapshot in local memory.

    Useful for tests or dry runs. Nothing survives a process restart.
    """

    def __init__(self) -> None:
        self._snapshot = RunSnapshot()
        self._lock = asyncio.Lock()
        self.writes = 0

    async def read(self) -> RunSnapshot:
        return self._snapshot.model_copy(deep=True)

    async def write(self, patch: Dict[str, Any]) -> RunSnapshot:
        async with self._lock:
            self._snapshot = self._snapshot.merged(patch)
            self.writes += 1
            return self._snapshot.model_copy(deep=True)

    async def reset(self) -> None:
        async with self._lock:
            self._snapshot = RunSnapshot()
