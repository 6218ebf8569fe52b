"""Autopilot runner: end-to-end challenge lifecycle flows against the platform API."""

from .cancellation import CancellationToken, RunCancelled, StopEarly
from .config import AutopilotConfig, load_config
from .contracts import FlowVariant, RunMode
from .controller import RunController
from .flows import build_flow, steps_for
from .persistence import get_snapshot_store

__version__ = "0.1.0"
__all__ = [
    "AutopilotConfig",
    "CancellationToken",
    "FlowVariant",
    "RunCancelled",
    "RunController",
    "RunMode",
    "StopEarly",
    "build_flow",
    "get_snapshot_store",
    "load_config",
    "steps_for",
]
