"""JSON file snapshot store."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict

from pydantic import ValidationError

from .models import RunSnapshot
from .store import SnapshotStore

logger = logging.getLogger(__name__)


class JsonFileSnapshotStore(SnapshotStore):
    """Persist the snapshot as an indented JSON document."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Helper methods
    def _read(self) -> RunSnapshot:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            return RunSnapshot(**raw) if isinstance(raw, dict) else RunSnapshot()
        except FileNotFoundError:
            return RunSnapshot()
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning(f"Could not read run snapshot {self.path}: {exc}")
            return RunSnapshot()

    def _write(self, snapshot: RunSnapshot) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(snapshot.to_json_dict(), indent=2), encoding="utf-8")

    def _merge(self, patch: Dict[str, Any]) -> RunSnapshot:
        snapshot = self._read().merged(patch)
        self._write(snapshot)
        return snapshot

    # ------------------------------------------------------------------
    # Store API
    async def read(self) -> RunSnapshot:
        return await asyncio.to_thread(self._read)

    async def write(self, patch: Dict[str, Any]) -> RunSnapshot:
        async with self._lock:
            return await asyncio.to_thread(self._merge, patch)

    async def reset(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._write, RunSnapshot())
