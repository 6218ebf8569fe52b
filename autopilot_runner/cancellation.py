"""Cooperative cancellation for flow runs."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class RunCancelled(Exception):
    """Raised at a check or wait point once the run has been cancelled."""

    def __init__(self, message: str = "Run cancelled") -> None:
        super().__init__(message)


class StopEarly(Exception):
    """Raised after the requested step completes in ``toStep`` mode."""

    def __init__(self, step: str) -> None:
        super().__init__(f"Stopped at step '{step}'")
        self.step = step


class CancellationToken:
    """Single-use cancellation signal shared by every step of one run.

    ``check`` is cheap enough to call around every remote call. ``wait`` is a
    sleep that is interrupted as soon as the token is cancelled.
    """

    def __init__(self, on_cancel_observed: Optional[Callable[[], None]] = None) -> None:
        self._event = asyncio.Event()
        self._on_cancel_observed = on_cancel_observed
        self._notified = False

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Signal cancellation. Idempotent."""
        if not self._event.is_set():
            logger.info("Cancellation signalled")
        self._event.set()

    def on_cancel_observed(self, callback: Optional[Callable[[], None]]) -> None:
        self._on_cancel_observed = callback

    def check(self) -> None:
        """Raise :class:`RunCancelled` if the token has been cancelled."""
        if not self._event.is_set():
            return
        if not self._notified:
            self._notified = True
            if self._on_cancel_observed is not None:
                self._on_cancel_observed()
        raise RunCancelled()

    async def wait(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first."""
        self.check()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            return
        self.check()
