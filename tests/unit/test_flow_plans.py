import pytest

from autopilot_runner.artifacts import InMemoryArtifactStore
from autopilot_runner.config import AutopilotConfig
from autopilot_runner.contracts import FlowVariant, PhaseName
from autopilot_runner.flows import DesignFlow, IterativeFlow, StandardFlow, build_flow, steps_for
from autopilot_runner.persistence import InMemorySnapshotStore
from fakes import FakePlatform, FakeTokenProvider


def deps():
    return dict(
        platform=FakePlatform([]),
        token_provider=FakeTokenProvider(),
        artifact_store=InMemoryArtifactStore(),
        snapshot_store=InMemorySnapshotStore(),
    )


def test_standard_plan():
    assert steps_for(FlowVariant.FULL) == list(StandardFlow.steps)
    assert steps_for(FlowVariant.DESIGN_SINGLE) == list(StandardFlow.steps)


def test_iterative_plans_depend_on_variant():
    f2f = steps_for(FlowVariant.FIRST2FINISH)
    assert "awaitSubmissionEnd" not in f2f
    assert "postMortem" not in f2f
    assert f2f[-3:] == ["processReviews", "finalSubmission", "awaitWinner"]

    topgear = steps_for(FlowVariant.TOPGEAR)
    assert topgear.index("awaitSubmissionEnd") == topgear.index("assignResources") + 1
    assert "awaitSubmissionEnd" not in steps_for(FlowVariant.TOPGEAR_LATE)


def test_post_mortem_step_is_opt_in():
    config = AutopilotConfig(flows={"first2finish": {"enablePostMortem": True}})
    plan = steps_for(FlowVariant.FIRST2FINISH, config)
    assert plan.index("postMortem") == plan.index("finalSubmission") + 1


def test_design_plans_are_identical_across_fail_modes():
    plan = steps_for(FlowVariant.DESIGN)
    assert plan == steps_for(FlowVariant.DESIGN_FAIL_SCREENING) == steps_for(FlowVariant.DESIGN_FAIL_REVIEW)
    assert len(plan) == 21


@pytest.mark.parametrize("variant", list(FlowVariant))
def test_every_planned_step_has_a_handler(variant):
    config = AutopilotConfig(flows={"first2finish": {"enablePostMortem": True}})
    flow = build_flow(variant, config, **deps())
    assert flow.plan() == steps_for(variant, config)
    for step in flow.plan():
        assert callable(flow.handler(step))


def test_build_flow_applies_variant_options():
    config = AutopilotConfig()

    topgear = build_flow(FlowVariant.TOPGEAR_LATE, config, **deps())
    assert isinstance(topgear, IterativeFlow)
    assert topgear.submission_phase == PhaseName.TOPGEAR_SUBMISSION.value
    assert topgear.late is True
    assert topgear.overlap_final_submission is False

    f2f = build_flow(FlowVariant.FIRST2FINISH, config, **deps())
    assert f2f.overlap_final_submission is True
    assert f2f.config is config.flows.first2finish

    design = build_flow(FlowVariant.DESIGN_FAIL_SCREENING, config, **deps())
    assert isinstance(design, DesignFlow)
    assert design.fail_mode == "screening"


def test_progress_skips_token_step():
    flow = build_flow(FlowVariant.FULL, AutopilotConfig(), **deps())
    plan = flow.plan()
    assert flow.progress_for("token") is None
    assert flow.progress_for(plan[1]) == round(100 / (len(plan) - 1), 2)
    assert flow.progress_for(plan[-1]) == 100


def test_unknown_step_has_no_handler():
    flow = build_flow(FlowVariant.FULL, AutopilotConfig(), **deps())
    with pytest.raises(NotImplementedError):
        flow.handler("launchRocket")
