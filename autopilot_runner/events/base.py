"""Base event channel interface for run event streams."""

from __future__ import annotations

import abc
from typing import AsyncIterator

from ..contracts import RunEvent


class BaseEventChannel(metaclass=abc.ABCMeta):
    """Abstract push channel carrying the events of one run."""

    @abc.abstractmethod
    def publish(self, event: RunEvent) -> None:
        """Push an event without blocking the caller."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(self) -> AsyncIterator[RunEvent]:
        """Yield events in publish order until the channel is closed."""
        raise NotImplementedError

    @abc.abstractmethod
    def close(self) -> None:
        """Mark the end of the stream."""
        raise NotImplementedError

    @property
    def closed(self) -> bool:
        return False
