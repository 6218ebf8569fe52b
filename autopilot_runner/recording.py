"""Per-step call recording and the step execution wrapper."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional, TypeVar

from .contracts import CallOutcome, CallRecord, StepStatus, utc_now_iso
from .errors import ApiError
from .events import RunLogger
from .utils.ids import short_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DETAIL_FIELDS = (
    "method",
    "endpoint",
    "status",
    "message",
    "request_body",
    "response_body",
    "response_headers",
    "duration_ms",
    "timestamp",
    "outcome",
)


class StepContext:
    """Collects the call records of one step.

    Records are upserted by id: a second detail with the same id updates the
    existing record in place. Every change re-emits the step's aggregate
    state through ``emit``.
    """

    def __init__(
        self,
        step: str,
        emit: Callable[[StepStatus, List[CallRecord], List[CallRecord]], None],
    ) -> None:
        self.step = step
        self.status = StepStatus.PENDING
        self._emit = emit
        self._requests: List[CallRecord] = []
        self._failures: List[CallRecord] = []

    # ------------------------------------------------------------------
    # Recording
    def record_request(
        self,
        id: Optional[str] = None,
        *,
        method: Optional[str] = None,
        endpoint: Optional[str] = None,
        status: Optional[int] = None,
        message: Optional[str] = None,
        request_body: Any = None,
        response_body: Any = None,
        response_headers: Optional[dict] = None,
        duration_ms: Optional[int] = None,
        timestamp: Optional[str] = None,
        outcome: Optional[CallOutcome] = None,
    ) -> CallRecord:
        """Insert or update the record ``id`` and re-emit the step state."""
        record_id = id or short_id(10)
        entry = self._find(record_id)
        if entry is None:
            entry = CallRecord(
                id=record_id,
                outcome=outcome or CallOutcome.SUCCESS,
                timestamp=timestamp or utc_now_iso(),
            )
            self._requests.append(entry)

        detail = {
            "method": method,
            "endpoint": endpoint,
            "status": status,
            "message": message,
            "request_body": request_body,
            "response_body": response_body,
            "response_headers": response_headers,
            "duration_ms": duration_ms,
            "timestamp": timestamp,
            "outcome": outcome,
        }
        for field in _DETAIL_FIELDS:
            value = detail[field]
            if value is not None:
                setattr(entry, field, value)

        self._track_failure(entry)
        self._dispatch()
        return entry

    def record_failure(self, error: BaseException, **overrides: Any) -> CallRecord:
        """Record ``error`` as a failed call and mark the step as failing."""
        detail = _failure_detail(error)
        detail.update({k: v for k, v in overrides.items() if v is not None})
        detail["outcome"] = CallOutcome.FAILURE
        record_id = overrides.get("id") or getattr(error, "request_id", None) or short_id(10)
        detail.pop("id", None)
        entry = self.record_request(record_id, **detail)
        self._dispatch(StepStatus.FAILURE)
        return entry

    # ------------------------------------------------------------------
    # Snapshots
    def get_requests(self) -> List[CallRecord]:
        return _clone(self._requests)

    def get_failures(self) -> List[CallRecord]:
        return _clone(self._failures)

    # ------------------------------------------------------------------
    # Internals
    def _find(self, record_id: str) -> Optional[CallRecord]:
        for entry in self._requests:
            if entry.id == record_id:
                return entry
        return None

    def _track_failure(self, entry: CallRecord) -> None:
        index = next(
            (i for i, failure in enumerate(self._failures) if failure.id == entry.id), None
        )
        if entry.outcome == CallOutcome.FAILURE:
            if index is None:
                self._failures.append(entry)
        elif index is not None:
            del self._failures[index]

    def _dispatch(self, status: Optional[StepStatus] = None) -> None:
        if status is not None:
            self.status = status
        self._emit(self.status, _clone(self._requests), _clone(self._failures))


def _clone(entries: Iterable[CallRecord]) -> List[CallRecord]:
    return [entry.model_copy(deep=True) for entry in entries]


def _failure_detail(error: BaseException) -> dict:
    detail: dict = {"message": str(error) or error.__class__.__name__}
    if isinstance(error, ApiError):
        detail.update(
            method=error.method,
            endpoint=error.endpoint,
            status=error.status,
            request_body=error.request_body,
            response_body=error.response_body,
            response_headers=error.response_headers,
            duration_ms=error.duration_ms,
        )
    return detail


class StepExecutor:
    """Runs named steps one at a time and reports their status transitions."""

    def __init__(self, log: RunLogger) -> None:
        self.log = log
        self._active: Optional[StepContext] = None

    @property
    def active_step(self) -> Optional[str]:
        return self._active.step if self._active is not None else None

    def initialize(self, steps: Iterable[str]) -> None:
        """Emit a ``pending`` transition for every step of the plan."""
        for step in steps:
            self.log.step(step, StepStatus.PENDING)

    def context(self, step: str) -> StepContext:
        def emit(status: StepStatus, requests: List[CallRecord], failures: List[CallRecord]) -> None:
            self.log.step(step, status, requests, failures)

        return StepContext(step, emit)

    async def run(self, step: str, runner: Callable[[StepContext], Awaitable[T]]) -> T:
        """Execute ``runner`` as step ``step``.

        Unexpected exceptions are recorded against the step and re-raised.
        """
        if self._active is not None:
            raise RuntimeError(
                f"Cannot start step '{step}' while '{self._active.step}' is still running"
            )
        ctx = self.context(step)
        self._active = ctx
        ctx._dispatch(StepStatus.IN_PROGRESS)
        try:
            result = await runner(ctx)
        except Exception as exc:
            ctx.record_failure(exc)
            raise
        finally:
            self._active = None
        ctx._dispatch(StepStatus.SUCCESS if not ctx._failures else StepStatus.FAILURE)
        return result
