"""Exception types raised by the autopilot runner."""

from __future__ import annotations

from typing import Any, Dict, Optional


class AutopilotError(Exception):
    """Base class for runner errors."""


class ConfigurationError(AutopilotError):
    """Raised when configuration or secrets cannot be loaded."""


class ArtifactError(AutopilotError):
    """Raised when the submission artifact cannot be prepared."""


class FlowError(AutopilotError):
    """A step could not satisfy a required invariant and the flow must stop."""


class PollTimeout(FlowError):
    """A bounded polling loop exhausted its attempts."""


class ApiError(AutopilotError):
    """A remote call failed.

    Carries the request context so the step executor can turn it into a
    call record. ``request_id`` is the id of the record already written for
    the failed attempt, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        method: Optional[str] = None,
        endpoint: Optional[str] = None,
        status: Optional[int] = None,
        request_body: Any = None,
        response_body: Any = None,
        response_headers: Optional[Dict[str, Any]] = None,
        duration_ms: Optional[int] = None,
        request_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.method = method
        self.endpoint = endpoint
        self.status = status
        self.request_body = request_body
        self.response_body = response_body
        self.response_headers = response_headers
        self.duration_ms = duration_ms
        self.request_id = request_id

    @property
    def is_gateway_timeout(self) -> bool:
        return self.status == 504 or "504" in str(self)
