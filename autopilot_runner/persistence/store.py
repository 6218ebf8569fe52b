"""Snapshot store abstraction."""

from __future__ import annotations

from typing import Any, Dict, Protocol

from .models import RunSnapshot


class SnapshotStore(Protocol):
    """Protocol for last-run snapshot backends."""

    async def read(self) -> RunSnapshot:
        """Return the current snapshot, or an empty one."""

    async def write(self, patch: Dict[str, Any]) -> RunSnapshot:
        """Shallow-merge ``patch`` into the snapshot and persist it."""

    async def reset(self) -> None:
        """Clear the snapshot at the start of a run."""
