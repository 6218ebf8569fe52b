"""Event channels and the run logger."""

from __future__ import annotations

from .base import BaseEventChannel
from .inmemory import InMemoryEventChannel
from .logger import RunLogger


def get_event_channel() -> BaseEventChannel:
    """Return a fresh channel for one run."""
    return InMemoryEventChannel()


__all__ = ["BaseEventChannel", "InMemoryEventChannel", "RunLogger", "get_event_channel"]
