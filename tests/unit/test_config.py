"""Tests for configuration loading."""

import pytest

from autopilot_runner.config import (
    DEFAULT_PRIZES,
    DEFAULT_REVIEWER,
    DESIGN_SINGLE_TIMELINE_TEMPLATE_ID,
    FIRST2FINISH_TIMELINE_TEMPLATE_ID,
    TOPGEAR_TIMELINE_TEMPLATE_ID,
    DesignConfig,
    First2FinishConfig,
    FlowConfig,
    TopgearConfig,
    load_config,
)
from autopilot_runner.errors import ConfigurationError


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
api:
  base_url: https://api.example.test/v6
snapshot_path: /tmp/snap.json
flows:
  fullChallenge:
    challengeNamePrefix: "Nightly - "
    reviewers: [alice, bob]
    submissionsPerSubmitter: 2
  design_challenge:
    reviewer: carol
"""
    )
    monkeypatch.setenv("AUTOPILOT_CONFIG", str(config_path))
    monkeypatch.delenv("AUTOPILOT_API_BASE_URL", raising=False)
    monkeypatch.delenv("AUTOPILOT_SNAPSHOT_PATH", raising=False)

    config = load_config()
    assert config.api.base_url == "https://api.example.test/v6"
    assert config.snapshot_path == "/tmp/snap.json"
    full = config.flows.full_challenge
    assert full.challenge_name_prefix == "Nightly - "
    assert full.reviewers == ["alice", "bob"]
    assert full.submissions_per_submitter == 2
    assert config.flows.design_challenge.approver == "carol"
    assert config.flows.design_single_challenge.timeline_template_id == DESIGN_SINGLE_TIMELINE_TEMPLATE_ID


def test_environment_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("snapshot_path: from-file.json\n")
    monkeypatch.setenv("AUTOPILOT_API_BASE_URL", "http://localhost:3000")
    monkeypatch.setenv("AUTOPILOT_SNAPSHOT_PATH", ":memory:")
    monkeypatch.setenv("AUTOPILOT_SECRETS_PATH", "/run/secrets/m2m.json")
    monkeypatch.delenv("AWS_REGION", raising=False)
    monkeypatch.setenv("AWS_DEFAULT_REGION", "eu-west-1")

    config = load_config(str(config_path))
    assert config.api.base_url == "http://localhost:3000"
    assert config.snapshot_path == ":memory:"
    assert config.auth.secrets_path == "/run/secrets/m2m.json"
    assert config.storage.region == "eu-west-1"
    assert config.storage.resolved_upload_base_url == "https://topcoder-dev-submissions-dmz.s3.eu-west-1.amazonaws.com"


def test_missing_default_config_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("AUTOPILOT_CONFIG", str(tmp_path / "absent.yaml"))
    config = load_config()
    assert config.flows.full_challenge.reviewers == ["liuliquan", "marioskranitsas"]


def test_explicit_missing_path_is_an_error(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(str(tmp_path / "absent.yaml"))


def test_non_mapping_config_is_rejected(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("- just\n- a list\n")
    with pytest.raises(ConfigurationError):
        load_config(str(config_path))


def test_invalid_values_raise_configuration_error(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("flows:\n  fullChallenge:\n    projectId: not-a-number\n")
    with pytest.raises(ConfigurationError):
        load_config(str(config_path))


def test_blank_values_fall_back_to_defaults():
    config = FlowConfig(screener="  ", reviewers=["", " dave "], submitters=[], copilotHandle=None)
    assert config.screener == DEFAULT_REVIEWER
    assert config.reviewers == ["dave"]
    assert config.submitters == ["devtest140"]
    assert config.copilot_handle == "TCConnCopilot"


def test_name_prefix_keeps_its_separator():
    assert FlowConfig(challengeNamePrefix="Nightly - ").challenge_name_prefix == "Nightly - "
    assert FlowConfig(challenge_name_prefix="   ").challenge_name_prefix == "Autopilot Test - "
    assert FlowConfig(screener=" erin ").screener == "erin"


def test_prizes_are_padded_to_three_places():
    assert FlowConfig(prizes=[1000]).prizes == [1000.0, 200.0, 100.0]
    assert FlowConfig(prizes=["x", 50, 25, 10, 5]).prizes == [50.0, 25.0, 10.0]
    assert FlowConfig(prizes="junk").prizes == DEFAULT_PRIZES


def test_iterative_submitters_are_normalised():
    config = First2FinishConfig(submitters=["a", "a"], timelineTemplateId="custom")
    assert config.submitters == ["devtest140", "devtest141"]
    assert config.timeline_template_id == FIRST2FINISH_TIMELINE_TEMPLATE_ID

    config = First2FinishConfig(submitters=["a", "b", "a"], prizes=[750, 10])
    assert config.submitters == ["a", "b"]
    assert config.prize == 750

    topgear = TopgearConfig(submitters=["solo"])
    assert topgear.submitters == ["solo"]
    assert topgear.timeline_template_id == TOPGEAR_TIMELINE_TEMPLATE_ID
    assert TopgearConfig().submitters == ["devtest140"]


def test_design_handles_and_scorecards_fall_back():
    config = DesignConfig(reviewer="erin", scorecardId="sc-main", checkpointScorecardId="sc-ckpt")
    assert config.screener == "erin"
    assert config.screening_reviewer == "erin"
    assert config.approver == "erin"
    assert config.checkpoint_screener == "erin"
    assert config.checkpoint_reviewer == "erin"
    assert config.review_scorecard_id == "sc-main"
    assert config.approval_scorecard_id == "sc-main"
    assert config.checkpoint_screening_scorecard_id == "sc-ckpt"

    config = DesignConfig(screeningReviewer="sam", approver="ann", checkpointPrizeCount=-3)
    assert config.screener == "sam"
    assert config.checkpoint_screener == "sam"
    assert config.approver == "ann"
    assert config.reviewer == DEFAULT_REVIEWER
    assert config.checkpoint_prize_count == 0
