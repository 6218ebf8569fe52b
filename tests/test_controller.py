import asyncio
import contextlib

import pytest

from fakes import FakePlatform, make_controller, messages, standard_platform, step_statuses

from autopilot_runner.contracts import FlowVariant, LogEvent, RunMode, StepEvent, StepStatus
from autopilot_runner.flows import FlowTimings, steps_for


def stalled_platform() -> FakePlatform:
    """A challenge whose phases never open."""
    return FakePlatform(["Registration", "Submission"])


async def wait_until(predicate, timeout: float = 5.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0)

    await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
async def test_starting_a_run_preempts_the_active_one(tmp_path):
    platform = stalled_platform()
    controller = make_controller(
        tmp_path, platform, timings=FlowTimings(phase_interval=30), preempt_grace=2.0
    )

    first = await controller.start(FlowVariant.FULL)
    await wait_until(lambda: platform.count("get_challenge") > 0)
    calls_before = len(platform.calls)

    second = await controller.start(FlowVariant.FULL, RunMode.TO_STEP, "createChallenge")

    # the first run is fully stopped before the second one starts
    assert first.done
    assert first.channel.closed
    assert controller.current is second
    await second.wait()
    assert controller.current is None

    first_logs = messages(first.channel.history)
    assert "Cancellation requested" in first_logs
    assert "Run cancelled" in first_logs
    assert "Run failed" not in first_logs
    assert step_statuses(first.channel.history, "awaitRegSubOpen")[-1] == "failure"

    second_logs = messages(second.channel.history)
    assert second_logs[0] == "Run started"
    assert "Stopped at requested step" in second_logs
    assert "Run cancelled" not in second_logs
    assert [name for name, _ in platform.calls[calls_before:]] == ["create_challenge"]


@pytest.mark.asyncio
async def test_closing_the_stream_cancels_the_run(tmp_path):
    platform = stalled_platform()
    controller = make_controller(tmp_path, platform, timings=FlowTimings(phase_interval=30))

    seen = []
    async with contextlib.aclosing(controller.stream(FlowVariant.FULL)) as events:
        async for event in events:
            seen.append(event)
            handle = controller.current
            if isinstance(event, StepEvent) and event.step == "activate" and event.status == StepStatus.SUCCESS:
                break

    assert handle.done
    assert controller.current is None
    logs = messages(handle.channel.history)
    assert "Run cancelled" in logs
    assert "Run failed" not in logs
    assert "Stopped at requested step" not in logs
    assert isinstance(seen[0], LogEvent) and seen[0].message == "Run started"


@pytest.mark.asyncio
async def test_stream_yields_every_event_until_the_run_ends(tmp_path):
    controller = make_controller(tmp_path, standard_platform())

    events = [event async for event in controller.stream("full", "toStep", "activate")]

    assert events[0].message == "Run started"
    assert events[-1].message == "Stopped at requested step"
    pending = [e.step for e in events if isinstance(e, StepEvent) and e.status == StepStatus.PENDING]
    assert pending == steps_for(FlowVariant.FULL)
    assert controller.current is None


@pytest.mark.asyncio
async def test_cancel_reports_whether_a_run_was_active(tmp_path):
    platform = stalled_platform()
    controller = make_controller(tmp_path, platform, timings=FlowTimings(phase_interval=30))
    assert await controller.cancel() is False

    handle = await controller.start(FlowVariant.FIRST2FINISH)
    await wait_until(lambda: platform.count("get_challenge") > 0)

    assert await controller.cancel() is True
    assert handle.done
    assert "Run cancelled" in messages(handle.channel.history)
    assert await controller.cancel() is False


@pytest.mark.asyncio
async def test_stuck_run_is_cancelled_after_grace_period(tmp_path):
    platform = stalled_platform()
    controller = make_controller(tmp_path, platform, preempt_grace=0.05)
    handle = await controller.start(FlowVariant.FULL)

    # a step blocked outside any cancellation point
    release = asyncio.Event()

    async def blocked(ctx):
        await release.wait()

    handle.flow.step_await_reg_sub_open = blocked
    await wait_until(lambda: handle.flow.executor.active_step == "awaitRegSubOpen")

    assert await controller.cancel() is True
    assert handle.task.cancelled()
    assert "Run cancelled" in messages(handle.channel.history)


@pytest.mark.asyncio
async def test_aclose_cancels_and_closes_platform(tmp_path):
    platform = stalled_platform()
    controller = make_controller(tmp_path, platform, timings=FlowTimings(phase_interval=30))
    handle = await controller.start(FlowVariant.DESIGN)
    await wait_until(lambda: platform.count("get_challenge") > 0)

    await controller.aclose()

    assert handle.done
    assert platform.closed


@pytest.mark.asyncio
async def test_failing_run_reports_error_event(tmp_path):
    platform = standard_platform()
    platform.fail("create_challenge")
    controller = make_controller(tmp_path, platform)

    handle = await controller.start(FlowVariant.FULL)
    await handle.wait()

    events = handle.channel.history
    failure = next(e for e in events if isinstance(e, LogEvent) and e.message == "Run failed")
    assert failure.level.value == "error"
    assert "500" in failure.data
    assert step_statuses(events, "createChallenge")[-1] == "failure"
    assert step_statuses(events, "updateDraft") == ["pending"]
