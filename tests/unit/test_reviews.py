"""Tests for the scorecard, review and appeal helpers."""

import random

import pytest

from autopilot_runner.cancellation import CancellationToken
from autopilot_runner.contracts import LogEvent, LogLevel
from autopilot_runner.events import InMemoryEventChannel, RunLogger
from autopilot_runner.flows.reviews import (
    ReviewTypeResolver,
    as_list,
    collect_questions,
    final_answer_after_appeal,
    find_pending_review,
    normalize_resources,
    outcome_review_items,
    resource_id_for_handle,
    scripted_review_items,
)
from fakes import REVIEW_TYPES, SCORECARD, FakePlatform

QUESTIONS = collect_questions(SCORECARD)
YES_NO, SCALE = QUESTIONS


def review(id, submission="s1", resource=None, phase=None, status="PENDING", **extra):
    return {"id": id, "submissionId": submission, "resourceId": resource, "phaseId": phase, "status": status, **extra}


def test_list_shapes():
    assert as_list([1, 2]) == [1, 2]
    assert as_list({"data": [3]}) == [3]
    assert as_list({"result": []}) == []
    assert as_list(None) == []
    assert [q["id"] for q in QUESTIONS] == ["q-yes", "q-scale"]


def test_pending_review_prefers_resource_then_phase():
    reviews = [
        review("r1", resource="other", phase="ph-Review"),
        review("r2", resource="me", phase="ph-Screening"),
        review("r3", resource="me", phase="ph-Review"),
        review("r4", resource="me", phase="ph-Review", status="COMPLETED"),
    ]
    assert find_pending_review(reviews, "s1", "me", ["ph-Review"])["id"] == "r3"
    assert find_pending_review(reviews, "s1", "me", ["ph-Approval"])["id"] == "r2"
    assert find_pending_review(reviews, "s1", "me", ["ph-Review"], exclude=["r3"])["id"] == "r2"


def test_pending_review_without_resource_requires_single_match():
    reviews = [
        review("r1", phase="ph-Review"),
        review("r2", phase="ph-Screening"),
    ]
    assert find_pending_review(reviews, "s1", None, ["ph-Screening"])["id"] == "r2"
    # two pending reviews and no hint that tells them apart
    assert find_pending_review(reviews, "s1", "stranger") is None
    assert find_pending_review(reviews[:1], "s1", "stranger")["id"] == "r1"
    assert find_pending_review(reviews, "s2") is None


def test_fallback_skips_reviews_of_another_phase():
    other_round = review("r1", resource="reviewer", phase="ph-Checkpoint Review")
    assert find_pending_review([other_round], "s1", "screener", ["ph-Checkpoint Screening"]) is None
    assert find_pending_review([other_round], "s1", "screener")["id"] == "r1"

    unphased = review("r2", resource="reviewer")
    found = find_pending_review([other_round, unphased], "s1", "screener", ["ph-Checkpoint Screening"])
    assert found["id"] == "r2"


def test_iterative_hint_breaks_ties():
    reviews = [
        review("r1", typeId="REVIEW"),
        review("r2", metadata={"reviewType": "iterative"}),
    ]
    assert find_pending_review(reviews, "s1")["id"] == "r2"


def test_resources_are_matched_by_handle_and_role():
    resources = normalize_resources(
        [
            {"id": 1, "memberId": 7, "memberHandle": "Alice", "roleId": "submitter"},
            {"id": 2, "memberId": 7, "memberHandle": "alice", "roleId": "reviewer"},
            {"memberHandle": "nobody"},
        ]
    )
    assert [r.id for r in resources] == ["1", "2"]
    assert resource_id_for_handle(resources, "ALICE", "reviewer") == "2"
    assert resource_id_for_handle(resources, "alice") == "1"
    assert resource_id_for_handle(resources, "bob") is None


def test_outcome_items_are_deterministic():
    failing = outcome_review_items(QUESTIONS, "fail")
    passing = outcome_review_items(QUESTIONS, "pass")
    assert [i["initialAnswer"] for i in failing] == ["NO", "4"]
    assert [i["initialAnswer"] for i in passing] == ["YES", "10"]
    assert "Changes requested" in failing[0]["reviewItemComments"][0]["content"]


def test_scripted_items_keep_existing_ids():
    existing = [{"id": "item-9", "scorecardQuestionId": "q-scale"}]
    items = scripted_review_items(QUESTIONS, random.Random(1), passed=True, existing_items=existing)
    assert [i["initialAnswer"] for i in items] == ["YES", "10"]
    assert "id" not in items[0]
    assert items[1]["id"] == "item-9"
    assert "**Recorded Answer:** 10" in items[1]["reviewItemComments"][0]["content"]

    failing = scripted_review_items(QUESTIONS, random.Random(1), passed=False)
    assert [i["initialAnswer"] for i in failing] == ["NO", "1"]

    randomised = scripted_review_items(QUESTIONS, random.Random(1))
    assert randomised[0]["initialAnswer"] in ("YES", "NO")
    assert 1 <= int(randomised[1]["initialAnswer"]) <= 10


@pytest.mark.parametrize(
    "question, item, accepted, expected",
    [
        (YES_NO, {"initialAnswer": "NO"}, True, "YES"),
        (YES_NO, {"initialAnswer": "YES"}, True, "YES"),
        (SCALE, {"initialAnswer": "7"}, True, "8"),
        (SCALE, {"initialAnswer": "10"}, True, "10"),
        (SCALE, {"initialAnswer": "4", "finalAnswer": "6"}, True, "6"),
        (SCALE, {"initialAnswer": "4", "finalAnswer": "6"}, False, "6"),
        (SCALE, {"initialAnswer": "4"}, False, "4"),
        (None, {"initialAnswer": "2.5"}, True, "3.5"),
        (None, {"initialAnswer": "n/a"}, True, "n/a"),
    ],
)
def test_final_answer_after_appeal(question, item, accepted, expected):
    assert final_answer_after_appeal(question, item, accepted) == expected


def _resolver():
    channel = InMemoryEventChannel()
    return ReviewTypeResolver(RunLogger(channel), CancellationToken(), retry_interval=0), channel


@pytest.mark.asyncio
async def test_review_types_are_loaded_once_and_matched_by_name():
    platform = FakePlatform([])
    api = platform.bind("tok")
    resolver, channel = _resolver()

    assert await resolver.resolve(api, ["Iterative Review", "review"]) == "rt-review"
    assert await resolver.resolve(api, ["Checkpoint Screening"]) == "rt-checkpoint-screening"
    assert await resolver.resolve(api, ["Legacy"]) is None
    assert await resolver.resolve(api, ["Legacy"]) is None
    assert await resolver.resolve(api, ["  "]) is None

    assert platform.count("list_review_types") == 1
    warnings = [e for e in channel.history if isinstance(e, LogEvent) and e.level == LogLevel.WARN]
    assert len(warnings) == 1
    assert len(REVIEW_TYPES) - 1 == len(await resolver.lookup(api))


@pytest.mark.asyncio
async def test_review_type_lookup_gives_up_after_failures():
    platform = FakePlatform([])
    platform.fail("list_review_types")
    resolver, channel = _resolver()

    assert await resolver.resolve(platform.bind("tok"), ["Review"]) is None
    assert platform.count("list_review_types") == 3
    messages = [e.message for e in channel.history if isinstance(e, LogEvent)]
    assert messages.count("Failed to load review types") == 3
    assert "No active review types available to match phase names" in messages
