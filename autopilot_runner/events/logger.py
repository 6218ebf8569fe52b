"""Run logger publishing log and step events to a channel."""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from ..contracts import CallRecord, LogEvent, LogLevel, StepEvent, StepStatus
from .base import BaseEventChannel

logger = logging.getLogger("autopilot_runner.run")

_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class RunLogger:
    """Emit structured run events and mirror log lines to ``logging``."""

    def __init__(self, channel: Optional[BaseEventChannel] = None) -> None:
        self.channel = channel

    def log(
        self,
        level: LogLevel,
        message: str,
        data: Any = None,
        progress: Optional[float] = None,
    ) -> LogEvent:
        event = LogEvent(level=level, message=message, data=data, progress=progress)
        if data is not None:
            logger.log(_LEVELS[level], f"{message} {data}")
        else:
            logger.log(_LEVELS[level], message)
        self._publish(event)
        return event

    def info(self, message: str, data: Any = None, progress: Optional[float] = None) -> LogEvent:
        return self.log(LogLevel.INFO, message, data, progress)

    def warn(self, message: str, data: Any = None, progress: Optional[float] = None) -> LogEvent:
        return self.log(LogLevel.WARN, message, data, progress)

    def error(self, message: str, data: Any = None, progress: Optional[float] = None) -> LogEvent:
        return self.log(LogLevel.ERROR, message, data, progress)

    def step(
        self,
        step: str,
        status: StepStatus,
        requests: Optional[List[CallRecord]] = None,
        failed_requests: Optional[List[CallRecord]] = None,
    ) -> StepEvent:
        event = StepEvent(
            step=step,
            status=status,
            requests=requests or None,
            failed_requests=failed_requests or None,
        )
        logger.debug(f"step {step} -> {status.value}")
        self._publish(event)
        return event

    def _publish(self, event) -> None:
        if self.channel is not None:
            self.channel.publish(event)
