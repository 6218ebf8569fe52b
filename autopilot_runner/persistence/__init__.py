"""Persistence of the last-run snapshot."""

from __future__ import annotations

from typing import Optional

from ..config import AutopilotConfig, load_config
from .inmemory import InMemorySnapshotStore
from .jsonfile import JsonFileSnapshotStore
from .models import ChallengeResource, RunSnapshot
from .store import SnapshotStore

_store_instance: SnapshotStore | None = None


def get_snapshot_store(
    path: Optional[str] = None, config: Optional[AutopilotConfig] = None
) -> SnapshotStore:
    """Factory function to obtain the snapshot store.

    The backend is selected from ``path``, which can be provided explicitly or
    taken from the loaded configuration. ``:memory:`` selects the in-memory
    store; anything else is a JSON file path.
    """

    global _store_instance
    if _store_instance is not None and path is None and config is None:
        return _store_instance

    if path is None:
        config = config or load_config()
        path = config.snapshot_path

    if path == ":memory:":
        _store_instance = InMemorySnapshotStore()
    else:
        _store_instance = JsonFileSnapshotStore(path)
    return _store_instance


__all__ = [
    "ChallengeResource",
    "RunSnapshot",
    "SnapshotStore",
    "InMemorySnapshotStore",
    "JsonFileSnapshotStore",
    "get_snapshot_store",
]
