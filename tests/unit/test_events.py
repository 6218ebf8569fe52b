import logging

import pytest

from autopilot_runner.contracts import LogLevel, StepStatus
from autopilot_runner.events import InMemoryEventChannel, RunLogger, get_event_channel


@pytest.mark.asyncio
async def test_subscribe_yields_events_until_closed():
    channel = get_event_channel()
    log = RunLogger(channel)

    log.info("Run started", {"flow": "full"})
    log.step("token", StepStatus.PENDING)
    channel.close()
    log.info("dropped after close")

    events = [event async for event in channel.subscribe()]
    assert [e.type for e in events] == ["log", "step"]
    assert events[0].data == {"flow": "full"}
    assert channel.closed
    assert len(channel.history) == 2


def test_history_is_bounded():
    channel = InMemoryEventChannel(history_size=2)
    log = RunLogger(channel)
    for index in range(5):
        log.info(f"message {index}")
    assert [e.message for e in channel.history] == ["message 3", "message 4"]


def test_logger_mirrors_to_logging(caplog):
    log = RunLogger()
    with caplog.at_level(logging.INFO, logger="autopilot_runner.run"):
        event = log.warn("Patch review failed", {"reviewId": "r1"}, 40)
        log.error("Run failed")

    assert event.level == LogLevel.WARN
    assert event.progress == 40
    assert "Patch review failed" in caplog.text
    assert any(record.levelno == logging.ERROR for record in caplog.records)


def test_step_event_omits_empty_request_lists():
    event = RunLogger().step("activate", StepStatus.SUCCESS, [], [])
    assert event.requests is None
    assert event.failed_requests is None
