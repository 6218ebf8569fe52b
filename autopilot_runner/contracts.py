"""Core contracts shared by the flow engine, event stream and controller."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    SUCCESS = "success"
    FAILURE = "failure"


class CallOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class RunMode(str, Enum):
    FULL = "full"
    TO_STEP = "toStep"


class FlowVariant(str, Enum):
    """Flow variants selectable by the run controller."""

    FULL = "full"
    FIRST2FINISH = "first2finish"
    TOPGEAR = "topgear"
    TOPGEAR_LATE = "topgearLate"
    DESIGN = "design"
    DESIGN_SINGLE = "designSingle"
    DESIGN_FAIL_SCREENING = "designFailScreening"
    DESIGN_FAIL_REVIEW = "designFailReview"

    @classmethod
    def parse(cls, value: str) -> "FlowVariant":
        """Resolve a variant name case-insensitively."""
        normalized = (value or "").strip().lower()
        for variant in cls:
            if variant.value.lower() == normalized:
                return variant
        raise ValueError(f"Unknown flow variant: {value}")


class CallRecord(BaseModel):
    """One attempt at a remote operation.

    Records sharing an ``id`` describe the same logical attempt.
    """

    id: str
    method: Optional[str] = None
    endpoint: Optional[str] = None
    status: Optional[int] = None
    message: Optional[str] = None
    request_body: Any = None
    response_body: Any = None
    response_headers: Optional[Dict[str, Any]] = None
    timestamp: str = Field(default_factory=utc_now_iso)
    duration_ms: Optional[int] = None
    outcome: CallOutcome = CallOutcome.SUCCESS


class LogEvent(BaseModel):
    type: Literal["log"] = "log"
    level: LogLevel = LogLevel.INFO
    message: str
    data: Any = None
    progress: Optional[float] = None


class StepEvent(BaseModel):
    type: Literal["step"] = "step"
    step: str
    status: StepStatus
    requests: Optional[List[CallRecord]] = None
    failed_requests: Optional[List[CallRecord]] = None
    timestamp: str = Field(default_factory=utc_now_iso)


RunEvent = Union[LogEvent, StepEvent]


class RoleName(str, Enum):
    """Resource role names known to the flows."""

    SUBMITTER = "Submitter"
    REVIEWER = "Reviewer"
    COPILOT = "Copilot"
    ITERATIVE_REVIEWER = "Iterative Reviewer"
    SCREENER = "Screener"
    PRIMARY_SCREENER = "Primary Screener"
    APPROVER = "Approver"
    CHECKPOINT_SCREENER = "Checkpoint Screener"
    CHECKPOINT_REVIEWER = "Checkpoint Reviewer"


class PhaseName(str, Enum):
    """Timeline phase names polled by the flows."""

    REGISTRATION = "Registration"
    SUBMISSION = "Submission"
    TOPGEAR_SUBMISSION = "Topgear Submission"
    REVIEW = "Review"
    ITERATIVE_REVIEW = "Iterative Review"
    APPEALS = "Appeals"
    APPEALS_RESPONSE = "Appeals Response"
    CHECKPOINT_SUBMISSION = "Checkpoint Submission"
    CHECKPOINT_SCREENING = "Checkpoint Screening"
    CHECKPOINT_REVIEW = "Checkpoint Review"
    SCREENING = "Screening"
    APPROVAL = "Approval"


# Optional roles are tried in this order when the preferred one is missing.
ROLE_FALLBACKS: Dict[RoleName, Tuple[RoleName, ...]] = {
    RoleName.SCREENER: (RoleName.SCREENER, RoleName.PRIMARY_SCREENER),
}


class RoleDirectory:
    """Typed lookup of resource role ids keyed by :class:`RoleName`.

    Roles returned by the platform that are not part of the enumeration are
    ignored.
    """

    def __init__(self, ids: Optional[Dict[RoleName, str]] = None) -> None:
        self._ids: Dict[RoleName, str] = dict(ids or {})

    @classmethod
    def from_roles(cls, roles: Iterable[Any]) -> "RoleDirectory":
        known = {role.value: role for role in RoleName}
        ids: Dict[RoleName, str] = {}
        for role in roles or []:
            if not isinstance(role, dict):
                continue
            name, role_id = role.get("name"), role.get("id")
            if name in known and role_id:
                ids[known[name]] = str(role_id)
        return cls(ids)

    @classmethod
    def from_names(cls, mapping: Optional[Dict[str, str]]) -> "RoleDirectory":
        known = {role.value: role for role in RoleName}
        return cls({known[k]: v for k, v in (mapping or {}).items() if k in known and v})

    def get(self, role: RoleName) -> Optional[str]:
        return self._ids.get(role)

    def resolve(self, role: RoleName) -> Optional[Tuple[RoleName, str]]:
        """Return the first available role of ``role``'s fallback chain."""
        for candidate in ROLE_FALLBACKS.get(role, (role,)):
            role_id = self._ids.get(candidate)
            if role_id:
                return candidate, role_id
        return None

    def missing(self, *roles: RoleName) -> List[RoleName]:
        return [role for role in roles if role not in self._ids]

    def as_names(self) -> Dict[str, str]:
        return {role.value: role_id for role, role_id in self._ids.items()}

    def __contains__(self, role: object) -> bool:
        return role in self._ids

    def __len__(self) -> int:
        return len(self._ids)
