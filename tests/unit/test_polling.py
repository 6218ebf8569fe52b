"""Tests for the challenge phase poller."""

from datetime import datetime, timezone

import pytest

from autopilot_runner.cancellation import CancellationToken, RunCancelled
from autopilot_runner.contracts import LogEvent, LogLevel
from autopilot_runner.errors import ApiError, PollTimeout
from autopilot_runner.events import InMemoryEventChannel, RunLogger
from autopilot_runner.polling import PhasePoller, parse_timestamp, phases_satisfied


class ScriptedSession:
    """Returns (or raises) the scripted responses in order, repeating the last."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    async def get_challenge(self, challenge_id):
        self.calls += 1
        response = self.responses[min(self.calls, len(self.responses)) - 1]
        if isinstance(response, Exception):
            raise response
        return response


def challenge(**phases):
    return {
        "id": "c1",
        "phases": [
            {"name": name.replace("_", " "), "isOpen": state} if not isinstance(state, dict)
            else {"name": name.replace("_", " "), **state}
            for name, state in phases.items()
        ],
    }


def make_poller(cancel=None):
    channel = InMemoryEventChannel()
    poller = PhasePoller(RunLogger(channel), cancel or CancellationToken(), interval=0)
    return poller, channel


def warnings(channel):
    return [e.message for e in channel.history if isinstance(e, LogEvent) and e.level == LogLevel.WARN]


def test_phases_satisfied_requires_explicit_state():
    ch = challenge(Registration=True, Submission=False)
    assert phases_satisfied(ch, ["Registration"], ["Submission"])
    assert not phases_satisfied(ch, ["Registration", "Review"])
    # a phase missing from the challenge is not closed either
    assert not phases_satisfied(ch, [], ["Review"])


@pytest.mark.asyncio
async def test_returns_on_first_satisfying_poll():
    poller, channel = make_poller()
    session = ScriptedSession(challenge(Registration=True, Submission=True))

    result = await poller.await_phases(session, "c1", ["Registration", "Submission"], stage="awaitRegSubOpen")

    assert session.calls == 1
    assert result["id"] == "c1"
    messages = [e.message for e in channel.history]
    assert messages[0].startswith("Waiting for phases to open/close: open=Registration, Submission")
    assert messages[-1] == "Phase state ok"


@pytest.mark.asyncio
async def test_retries_after_api_errors():
    poller, channel = make_poller()
    session = ScriptedSession(
        ApiError("Request failed with status code 500", status=500),
        challenge(Review=False),
        challenge(Review=True),
    )

    await poller.await_phases(session, "c1", ["Review"], stage="awaitReviewOpen")

    assert session.calls == 3
    assert warnings(channel) == ["Polling challenge failed; will retry"]


@pytest.mark.asyncio
async def test_gateway_timeouts_are_retried_silently():
    poller, channel = make_poller()
    session = ScriptedSession(
        ApiError("Request failed with status code 504", status=504),
        challenge(Review=True),
    )

    await poller.await_phases(session, "c1", ["Review"], stage="awaitReviewOpen")

    assert session.calls == 2
    assert warnings(channel) == []


@pytest.mark.asyncio
async def test_bounded_polling_raises_poll_timeout():
    poller, _ = make_poller()
    session = ScriptedSession(challenge(Review=False))

    with pytest.raises(PollTimeout):
        await poller.await_phases(session, "c1", ["Review"], stage="awaitReviewOpen", max_attempts=3)
    assert session.calls == 3


@pytest.mark.asyncio
async def test_late_transition_is_warned_once():
    poller, channel = make_poller()
    stale = challenge(Submission={"isOpen": True, "scheduledEndDate": "2020-01-01T00:00:00Z"})
    session = ScriptedSession(stale, stale, stale, challenge(Submission=False))

    await poller.await_phases(session, "c1", [], ["Submission"], stage="awaitSubmissionClose")

    assert warnings(channel) == ["Autopilot did not transition 'Submission' within 15s of end date"]


@pytest.mark.asyncio
async def test_cancelled_poll_stops_immediately():
    cancel = CancellationToken()
    poller, _ = make_poller(cancel)
    cancel.cancel()
    session = ScriptedSession(challenge(Review=True))

    with pytest.raises(RunCancelled):
        await poller.await_phases(session, "c1", ["Review"], stage="awaitReviewOpen")
    assert session.calls == 0


def test_parse_timestamp():
    assert parse_timestamp("2026-01-01T00:00:00Z") == datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp("2026-01-01T02:00:00+02:00") == datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp("2026-01-01T00:00:00").tzinfo is not None
    assert parse_timestamp("") is None
    assert parse_timestamp("not a date") is None
    assert parse_timestamp(None) is None
