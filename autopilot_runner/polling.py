"""Polling of remote challenge state until phases reach a wanted state."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .cancellation import CancellationToken
from .errors import ApiError, PollTimeout
from .events import RunLogger

logger = logging.getLogger(__name__)

LATE_TRANSITION_GRACE = 15.0


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def phases_by_name(challenge: Any) -> Dict[str, Dict[str, Any]]:
    phases = challenge.get("phases") if isinstance(challenge, dict) else None
    result: Dict[str, Dict[str, Any]] = {}
    for phase in phases or []:
        if isinstance(phase, dict) and isinstance(phase.get("name"), str):
            result[phase["name"]] = phase
    return result


def phases_satisfied(
    challenge: Any, must_open: Iterable[str], must_closed: Iterable[str] = ()
) -> bool:
    by_name = phases_by_name(challenge)
    open_ok = all(by_name.get(name, {}).get("isOpen") is True for name in must_open)
    closed_ok = all(by_name.get(name, {}).get("isOpen") is False for name in must_closed)
    return open_ok and closed_ok


class PhasePoller:
    """Poll a challenge through a platform session until a condition holds.

    Polling is unbounded unless a call site passes ``max_attempts``. Every
    sleep goes through the cancellation token so a cancelled run leaves the
    loop at once.
    """

    def __init__(
        self,
        log: RunLogger,
        cancel: CancellationToken,
        interval: float = 10.0,
        grace: float = LATE_TRANSITION_GRACE,
    ) -> None:
        self.log = log
        self.cancel = cancel
        self.interval = interval
        self.grace = grace

    async def await_phases(
        self,
        api,
        challenge_id: str,
        must_open: Sequence[str],
        must_closed: Sequence[str] = (),
        *,
        stage: str,
        progress: Optional[float] = None,
        interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Return the challenge once every phase in ``must_open`` is open and
        every phase in ``must_closed`` is closed."""
        self.log.info(
            f"Waiting for phases to open/close: open={', '.join(must_open)} close={', '.join(must_closed)}"
        )
        challenge = await self.await_condition(
            api,
            challenge_id,
            lambda ch: phases_satisfied(ch, must_open, must_closed),
            stage=stage,
            watch=list(must_open) + list(must_closed),
            interval=interval,
            max_attempts=max_attempts,
        )
        self.log.info(
            "Phase state ok", {"mustOpen": list(must_open), "mustClose": list(must_closed)}, progress
        )
        return challenge

    async def await_condition(
        self,
        api,
        challenge_id: str,
        predicate: Callable[[Dict[str, Any]], bool],
        *,
        stage: str,
        watch: Optional[List[str]] = None,
        interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Poll ``get_challenge`` until ``predicate`` accepts the response.

        Gateway timeouts are retried silently and other API errors are
        retried with a warning. ``watch`` names the phases checked for a
        late transition.
        """
        wait_seconds = self.interval if interval is None else interval
        warned = False
        attempt = 0
        while True:
            attempt += 1
            self.cancel.check()
            try:
                challenge = await api.get_challenge(challenge_id)
                self.cancel.check()
                self.log.info("Challenge refresh", {"stage": stage, "challenge": challenge})
                if predicate(challenge):
                    return challenge
                if not warned:
                    late = self._late_phase(challenge, watch)
                    if late:
                        self.log.warn(
                            f"Autopilot did not transition '{late}' within {int(self.grace)}s of end date",
                            {"phase": late},
                        )
                        warned = True
            except ApiError as exc:
                if not exc.is_gateway_timeout:
                    self.log.warn("Polling challenge failed; will retry", {"error": str(exc)})
            if max_attempts is not None and attempt >= max_attempts:
                raise PollTimeout(f"Condition for '{stage}' not met after {attempt} attempts")
            await self.cancel.wait(wait_seconds)

    def _late_phase(self, challenge: Dict[str, Any], watch: Optional[List[str]]) -> Optional[str]:
        if not watch:
            return None
        by_name = phases_by_name(challenge)
        now = datetime.now(timezone.utc)
        for name in watch:
            phase = by_name.get(name)
            if not phase:
                continue
            end = parse_timestamp(phase.get("scheduledEndDate"))
            if end is not None and (now - end).total_seconds() > self.grace:
                return name
        return None
