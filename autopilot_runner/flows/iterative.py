"""Iterative (First2Finish / Topgear) challenge flow.

Submissions are reviewed one at a time in the Iterative Review phase: the
initial batch is failed on purpose, then a final submission is passed and
must become the winner.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, ClassVar, Dict, List, Optional, Tuple

from pydantic import BaseModel

from ..artifacts import SubmissionArtifact, load_submission_artifact
from ..contracts import PhaseName, RoleDirectory, RoleName
from ..errors import ApiError, FlowError
from ..platform import PlatformSession
from ..polling import parse_timestamp, phases_by_name
from ..recording import StepContext
from ..utils.ids import collect_ids, to_string_id
from .base import BaseFlow, now_iso
from .reviews import (
    DEFAULT_REVIEW_TYPE_ID,
    added_resource_id,
    as_list,
    find_pending_review,
    is_pending,
    outcome_review_items,
)

logger = logging.getLogger(__name__)

ITERATIVE_REVIEW_PHASE_ID = "003a4b14-de5d-43fc-9e35-835dbeb6af1f"
INITIAL_SUBMISSIONS_PER_SUBMITTER = 2
POST_MORTEM_PATTERN = re.compile(r"post[- ]?mortem", re.IGNORECASE)

_PHASE_PATCH_KEYS = (
    "id",
    "phaseId",
    "duration",
    "name",
    "predecessor",
    "predecessorId",
    "scheduledStartDate",
    "scheduledEndDate",
    "fixedStartDate",
    "actualStartDate",
    "actualEndDate",
)


class ReviewerAssignment(BaseModel):
    resource_id: str
    handle: str


class SubmissionRecord(BaseModel):
    id: str
    handle: str
    member_id: str
    index: int


# ----------------------------------------------------------------------
# Phase helpers


def sanitize_phase_patch(phase: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only the phase fields accepted by a challenge PATCH."""
    payload = {key: phase[key] for key in _PHASE_PATCH_KEYS if key in phase and phase[key] is not None}
    if phase.get("predecessors") is not None:
        predecessors = phase["predecessors"]
        payload["predecessors"] = list(predecessors) if isinstance(predecessors, list) else predecessors
    if isinstance(payload.get("duration"), str):
        try:
            payload["duration"] = float(payload["duration"])
        except ValueError:
            pass
        else:
            if payload["duration"].is_integer():
                payload["duration"] = int(payload["duration"])
    return payload


def phase_identifiers(phase: Optional[Dict[str, Any]]) -> List[str]:
    return collect_ids(phase or {}, ("id", "phaseId", "phase_id", "legacyId"))


def predecessor_identifiers(phase: Optional[Dict[str, Any]]) -> List[str]:
    if not phase:
        return []
    ids: List[str] = []

    def add(value: Any) -> None:
        if isinstance(value, dict):
            for nested in collect_ids(value, ("id", "phaseId", "phase_id")):
                add(nested)
            return
        value = to_string_id(value)
        if value and value not in ids:
            ids.append(value)

    for key in ("predecessor", "predecessorId", "predecessor_id"):
        add(phase.get(key))
    for entry in phase.get("predecessors") or []:
        add(entry)
    return ids


def open_iterative_phase_ids(challenge: Dict[str, Any]) -> List[str]:
    """Ids of the open Iterative Review phase, or an empty list when closed."""
    ids: List[str] = []
    for phase in challenge.get("phases") or []:
        if not isinstance(phase, dict) or phase.get("name") != PhaseName.ITERATIVE_REVIEW.value:
            continue
        if not phase.get("isOpen"):
            continue
        for pid in phase_identifiers(phase):
            if pid not in ids:
                ids.append(pid)
    return ids


def _find_phase(phases: List[Any], name: str) -> Optional[Dict[str, Any]]:
    wanted = name.strip().lower()
    for phase in phases:
        if isinstance(phase, dict) and isinstance(phase.get("name"), str):
            if phase["name"].strip().lower() == wanted:
                return phase
    return None


# ----------------------------------------------------------------------
# Submission queue


class SubmissionQueue:
    """Creates iterative submissions and completes their reviews."""

    def __init__(
        self,
        flow: "IterativeFlow",
        reviewer: ReviewerAssignment,
        artifact: SubmissionArtifact,
        questions: List[Dict[str, Any]],
        submissions: Dict[str, List[str]],
        reviews: Dict[str, str],
    ) -> None:
        self.flow = flow
        self.reviewer = reviewer
        self.artifact = artifact
        self.questions = questions
        self.submissions = submissions
        self.reviews = reviews
        self.records: List[SubmissionRecord] = []
        self._next_index = 1

    @property
    def submitters(self) -> List[str]:
        return list(self.flow.config.submitters)

    async def queue_submission(self, ctx: StepContext, handle: Optional[str] = None) -> SubmissionRecord:
        flow = self.flow
        index = self._next_index
        self._next_index += 1
        handle = handle or self.submitters[(index - 1) % len(self.submitters)]
        api = flow.api(ctx)
        member_id = await flow.member_id(api, handle)
        upload = await flow.artifact_store.upload(self.artifact, ctx)
        flow.cancel.check()
        payload = {
            "challengeId": flow.challenge_id,
            "memberId": member_id,
            "type": "CONTEST_SUBMISSION",
            "url": upload.url,
        }
        submission = await flow.call(api.create_submission(payload))
        flow.log.info(
            "Submission created",
            {"id": submission["id"], "handle": handle, "storageKey": upload.key, "index": index},
        )
        self.submissions.setdefault(handle, []).append(str(submission["id"]))
        await flow.snapshots.write({"submissions": self.submissions})
        record = SubmissionRecord(id=str(submission["id"]), handle=handle, member_id=member_id, index=index)
        self.records.append(record)
        return record

    async def _locate_pending(self, api: PlatformSession, ctx: StepContext, record: SubmissionRecord):
        flow = self.flow
        for attempt in range(flow.timings.review_attempts):
            flow.cancel.check()
            phase_hints: List[str] = []
            try:
                phase_hints = open_iterative_phase_ids(await flow.call(api.get_challenge(flow.challenge_id)))
            except ApiError as exc:
                flow.log.warn(
                    "Failed to refresh challenge while locating pending iterative review; will retry",
                    {"step": ctx.step, "attempt": attempt + 1, "error": str(exc)},
                )
            reviews = as_list(await flow.call(api.list_reviews(flow.challenge_id)))
            pending = find_pending_review(
                reviews,
                record.id,
                self.reviewer.resource_id,
                phase_hints or [ITERATIVE_REVIEW_PHASE_ID],
            )
            if pending is not None:
                return pending
            await flow.cancel.wait(flow.timings.review_interval)
        raise FlowError(f"Pending review not found for submission {record.id}")

    async def complete_review(
        self,
        ctx: StepContext,
        record: SubmissionRecord,
        outcome: str,
        after_patch: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> Any:
        """Answer the pending review of ``record`` with ``outcome``.

        ``after_patch`` is started, without being awaited, right after the
        review is patched and is awaited once a failed review has settled.
        Its result is returned.
        """
        flow = self.flow
        api = flow.api(ctx)
        flow.cancel.check()
        await flow.ensure_iterative_phase(ctx, expect_open=True)
        pending = await self._locate_pending(api, ctx, record)

        score = 100 if outcome == "pass" else 10
        payload = {
            "scorecardId": pending.get("scorecardId") or flow.config.scorecard_id,
            "typeId": pending.get("typeId") or DEFAULT_REVIEW_TYPE_ID,
            "metadata": {"outcome": outcome, "score": score},
            "score": score,
            "isPassing": outcome == "pass",
            "status": "COMPLETED",
            "reviewDate": now_iso(),
            "committed": True,
            "reviewItems": outcome_review_items(self.questions, outcome),
        }
        review_id = str(pending["id"])
        await flow.call(api.update_review(review_id, payload))
        flow.log.info(
            "Review completed", {"submissionId": record.id, "outcome": outcome}, flow.progress_for(ctx.step)
        )
        pending_task = asyncio.create_task(after_patch()) if after_patch is not None else None
        try:
            self.reviews[f"{self.reviewer.handle}:{record.handle}:{record.id}"] = review_id
            await flow.snapshots.write({"reviews": self.reviews})
            if outcome == "fail":
                await self.await_transition(api, ctx, record)
        except BaseException:
            if pending_task is not None:
                pending_task.cancel()
            raise
        return await pending_task if pending_task is not None else None

    async def await_transition(self, api: PlatformSession, ctx: StepContext, record: SubmissionRecord) -> str:
        """Wait until a failed review closes the phase or reopens a review."""
        flow = self.flow
        for attempt in range(flow.timings.review_attempts):
            flow.cancel.check()
            phase_hints: List[str] = []
            try:
                challenge = await flow.call(api.get_challenge(flow.challenge_id))
                phase_hints = open_iterative_phase_ids(challenge)
                if not phase_hints:
                    flow.log.info(
                        "Iterative review phase closed after failing review",
                        {"step": ctx.step},
                        flow.progress_for(ctx.step),
                    )
                    return "closed"
            except ApiError as exc:
                flow.log.warn(
                    "Failed to refresh challenge while monitoring iterative review transition; will retry",
                    {"step": ctx.step, "attempt": attempt + 1, "error": str(exc)},
                )
            reviews = as_list(await flow.call(api.list_reviews(flow.challenge_id)))
            pending = find_pending_review(reviews, record.id, self.reviewer.resource_id, phase_hints)
            if pending is not None:
                flow.log.info(
                    "Detected pending iterative review after failure",
                    {
                        "step": ctx.step,
                        "submissionId": record.id,
                        "reviewId": to_string_id(pending.get("id")),
                        "phaseIds": phase_hints,
                    },
                )
                return "pending"
            await flow.cancel.wait(flow.timings.review_interval)
        flow.log.warn(
            "Timed out waiting for iterative review to close or reopen",
            {"step": ctx.step, "submissionId": record.id},
        )
        return "timeout"


# ----------------------------------------------------------------------
# Flow


class IterativeFlow(BaseFlow):
    """First2Finish and Topgear flows.

    ``submission_phase`` selects the submission phase name, ``late`` makes
    the final submission wait for that phase's scheduled end, and
    ``overlap_final_submission`` creates the winning submission while the
    last failed review is still settling.
    """

    name: ClassVar[str] = "First2Finish"
    complete_message: ClassVar[str] = "First2Finish flow complete"
    steps: ClassVar[Tuple[str, ...]] = (
        "token",
        "createChallenge",
        "updateDraft",
        "activate",
        "awaitRegSubOpen",
        "assignResources",
        "awaitSubmissionEnd",
        "loadInitialSubmissions",
        "processReviews",
        "finalSubmission",
        "postMortem",
        "awaitWinner",
    )

    def __init__(
        self,
        config,
        *,
        submission_phase: str = PhaseName.SUBMISSION.value,
        late: bool = False,
        overlap_final_submission: bool = False,
        **kwargs,
    ) -> None:
        super().__init__(config, **kwargs)
        self.submission_phase = submission_phase
        self.late = late
        self.overlap_final_submission = overlap_final_submission and not late
        self.reviewer: Optional[ReviewerAssignment] = None
        self.queue: Optional[SubmissionQueue] = None
        self.initial_batch: List[SubmissionRecord] = []
        self.prequeued: Optional[SubmissionRecord] = None
        self.winning_submission: Optional[SubmissionRecord] = None

    @property
    def is_topgear(self) -> bool:
        return self.submission_phase.strip().lower() == PhaseName.TOPGEAR_SUBMISSION.value.lower()

    @classmethod
    def plan_for(
        cls,
        config,
        submission_phase: str = PhaseName.SUBMISSION.value,
        late: bool = False,
        **options: Any,
    ) -> List[str]:
        plan = list(cls.steps)
        topgear = submission_phase.strip().lower() == PhaseName.TOPGEAR_SUBMISSION.value.lower()
        if not (topgear and not late):
            plan.remove("awaitSubmissionEnd")
        if not config.enable_post_mortem:
            plan.remove("postMortem")
        return plan

    def plan(self) -> List[str]:
        return self.plan_for(self.config, self.submission_phase, self.late)

    def challenge_payload(self, name: str) -> Dict[str, Any]:
        payload = super().challenge_payload(name)
        payload["description"] = "First2Finish end-to-end test"
        payload["discussions"] = [{"name": f"{name} Discussion", "type": "CHALLENGE", "provider": "vanilla"}]
        return payload

    async def ensure_iterative_phase(self, ctx: StepContext, expect_open: bool) -> None:
        phase = [PhaseName.ITERATIVE_REVIEW.value]
        await self.poller.await_phases(
            self.api(ctx),
            self.challenge_id,
            phase if expect_open else [],
            [] if expect_open else phase,
            stage=ctx.step,
            progress=self.progress_for(ctx.step),
            interval=self.timings.iterative_interval,
        )

    # ------------------------------------------------------------------
    # Setup
    async def step_update_draft(self, ctx: StepContext) -> Dict[str, Any]:
        self.cancel.check()
        self.log.info("Updating challenge to DRAFT with condensed timeline...")
        api = self.api(ctx)
        reviewers = [
            {
                "scorecardId": self.config.scorecard_id,
                "isMemberReview": True,
                "memberReviewerCount": 1,
                "phaseId": ITERATIVE_REVIEW_PHASE_ID,
                "basePayment": 10,
                "incrementalPayment": 10,
                "type": "ITERATIVE_REVIEW",
            }
        ]
        body = self.draft_payload(
            "First2Finish autopilot test",
            [
                {"type": "PLACEMENT", "prizes": [{"type": "USD", "value": self.config.prize}]},
                {"type": "COPILOT", "prizes": [{"type": "USD", "value": 100}]},
            ],
            reviewers=reviewers,
            direct_project_id=self.config.project_id,
        )
        await self.sanity_check_reviewer_phases(api, reviewers)
        updated = await self.call(api.update_challenge(self.challenge_id, body))
        if self.is_topgear:
            await self.ensure_concurrent_registration(api)
        self.log.info(
            "Challenge updated to DRAFT",
            {"challengeId": self.challenge_id, "request": body},
            self.progress_for(ctx.step),
        )
        return updated

    async def ensure_concurrent_registration(self, api: PlatformSession) -> None:
        """Let the submission phase run alongside Registration.

        Drops a submission-phase predecessor pointing at Registration and
        aligns its start with Registration's start.
        """
        self.log.info(
            "Ensuring Topgear submission phase does not depend on Registration",
            {"challengeId": self.challenge_id, "submissionPhaseName": self.submission_phase},
        )
        challenge = await self.call(api.get_challenge(self.challenge_id))
        phases = challenge.get("phases") or []
        if not phases:
            self.log.warn(
                "Challenge returned no phases when attempting to adjust submission predecessor",
                {"challengeId": self.challenge_id},
            )
            return
        registration = _find_phase(phases, PhaseName.REGISTRATION.value)
        submission = _find_phase(phases, self.submission_phase)
        if submission is None:
            self.log.warn(
                "Submission phase not found while attempting to adjust predecessor",
                {"challengeId": self.challenge_id, "submissionPhaseName": self.submission_phase},
            )
            return

        registration_ids = set(phase_identifiers(registration))
        depends = any(pid in registration_ids for pid in predecessor_identifiers(submission))
        registration_start = None
        if registration:
            registration_start = (
                registration.get("scheduledStartDate")
                or registration.get("actualStartDate")
                or registration.get("fixedStartDate")
            )

        patch = sanitize_phase_patch(submission)
        mutated = False
        if depends:
            patch.update(predecessor=None, predecessorId=None, predecessors=[])
            mutated = True
        if registration_start and patch.get("scheduledStartDate") != registration_start:
            patch["scheduledStartDate"] = registration_start
            start = parse_timestamp(registration_start)
            duration = patch.get("duration")
            if start is not None and isinstance(duration, (int, float)):
                end = start + timedelta(seconds=duration)
                patch["scheduledEndDate"] = end.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
            mutated = True

        if not mutated:
            self.log.info(
                "Topgear submission phase already concurrent with Registration",
                {"challengeId": self.challenge_id, "submissionPhaseName": self.submission_phase},
            )
            return
        await self.call(api.patch_challenge(self.challenge_id, {"phases": [patch]}))
        self.log.info(
            "Updated Topgear submission phase to remove Registration predecessor",
            {
                "challengeId": self.challenge_id,
                "submissionPhaseId": to_string_id(patch.get("id")) or to_string_id(patch.get("phaseId")),
                "submissionPhaseName": self.submission_phase,
                "removedDependency": depends,
                "alignedStartWithRegistration": bool(registration_start),
            },
        )

    async def step_await_reg_sub_open(self, ctx: StepContext) -> None:
        await self.await_phases(
            ctx,
            [PhaseName.REGISTRATION.value, self.submission_phase],
            interval=self.timings.iterative_interval,
        )

    async def step_assign_resources(self, ctx: StepContext) -> ReviewerAssignment:
        self.cancel.check()
        self.log.info("Assigning resources (copilot, iterative reviewer, submitters)...")
        api = self.api(ctx)
        snapshot = await self.snapshots.read()
        reviewer_resources = dict(snapshot.reviewer_resources or {})

        roles = RoleDirectory.from_roles(await self.call(api.list_resource_roles()))
        if RoleName.SUBMITTER not in roles:
            self.log.warn("Submitter role not found; submissions may fail")
        if RoleName.ITERATIVE_REVIEWER not in roles:
            self.log.warn("Iterative Reviewer role not found; review assignment may fail")

        if self.config.copilot_handle and RoleName.COPILOT in roles:
            member_id = await self.member_id(api, self.config.copilot_handle)
            await self.call(
                api.add_resource(
                    {
                        "challengeId": self.challenge_id,
                        "memberId": member_id,
                        "roleId": roles.get(RoleName.COPILOT),
                    }
                )
            )
            self.log.info("Added copilot", {"handle": self.config.copilot_handle})

        resource_id = reviewer_resources.get(self.config.reviewer)
        if not resource_id and RoleName.ITERATIVE_REVIEWER in roles:
            member_id = await self.member_id(api, self.config.reviewer)
            added = await self.call(
                api.add_resource(
                    {
                        "challengeId": self.challenge_id,
                        "memberId": member_id,
                        "roleId": roles.get(RoleName.ITERATIVE_REVIEWER),
                    }
                )
            )
            resource_id = added_resource_id(added)
            self.log.info("Added iterative reviewer", {"handle": self.config.reviewer, "resourceId": resource_id})
            if resource_id:
                reviewer_resources[self.config.reviewer] = resource_id
                await self.snapshots.write({"reviewer_resources": reviewer_resources})

        if RoleName.SUBMITTER in roles:
            for handle in self.config.submitters:
                member_id = await self.member_id(api, handle)
                payload = {
                    "challengeId": self.challenge_id,
                    "memberId": member_id,
                    "roleId": roles.get(RoleName.SUBMITTER),
                }
                try:
                    await self.call(api.add_resource(payload))
                    self.log.info("Added submitter", {"handle": handle})
                except ApiError as exc:
                    self.log.warn(
                        "Failed to add submitter resource (may already exist)",
                        {"handle": handle, "error": str(exc)},
                    )

        if not resource_id:
            raise FlowError("Failed to assign iterative reviewer resource")

        await self.snapshots.write(
            {"challenge_id": self.challenge_id, "reviewer_resources": reviewer_resources, "submissions": {}}
        )
        self.reviewer = ReviewerAssignment(resource_id=resource_id, handle=self.config.reviewer)
        self.log.info(
            "Resources assigned",
            {"reviewer": self.config.reviewer, "submitters": len(self.config.submitters)},
            self.progress_for(ctx.step),
        )
        return self.reviewer

    async def _await_scheduled_end(self, ctx: StepContext) -> bool:
        """Poll until the submission phase's scheduled end has passed."""
        api = self.api(ctx)
        announced = False
        while True:
            self.cancel.check()
            try:
                challenge = await self.call(api.get_challenge(self.challenge_id))
                self.log.info("Challenge refresh", {"stage": ctx.step, "challenge": challenge})
                phase = phases_by_name(challenge).get(self.submission_phase) or {}
                end = parse_timestamp(phase.get("scheduledEndDate"))
                if end is not None:
                    remaining = (end - datetime.now(timezone.utc)).total_seconds() + 1
                    if remaining <= 0:
                        return phase.get("isOpen") is True
                    delay = min(remaining, 15.0)
                    if not announced:
                        self.log.info("Waiting for scheduled end of submission phase", {"seconds": round(delay, 1)})
                        announced = True
                    await self.cancel.wait(max(1.0, delay))
                    continue
            except ApiError as exc:
                self.log.warn(
                    "Failed to refresh challenge while waiting for scheduled end; will retry",
                    {"error": str(exc)},
                )
            await self.cancel.wait(self.timings.iterative_interval)

    async def step_await_submission_end(self, ctx: StepContext) -> None:
        self.log.info(f"Waiting until {self.submission_phase} scheduled end is reached...")
        is_open = await self._await_scheduled_end(ctx)
        self.log.info(
            f"{self.submission_phase} scheduled end reached", {"isOpen": is_open}, self.progress_for(ctx.step)
        )

    # ------------------------------------------------------------------
    # Submissions and reviews
    async def _prepare_queue(self, ctx: StepContext) -> SubmissionQueue:
        if self.reviewer is None:
            raise FlowError("No iterative reviewer assigned")
        snapshot = await self.snapshots.read()
        self.cancel.check()
        self.log.info("Preparing submission artifact from disk", {"configuredPath": self.config.submission_zip_path})
        artifact = await load_submission_artifact(self.config.submission_zip_path)
        self.cancel.check()
        self.log.info("Submission artifact ready", {"path": artifact.absolute_path, "size": artifact.size})
        self.log.info("Fetching scorecard for iterative reviews", {"scorecardId": self.config.scorecard_id})
        questions = await self.load_questions(self.api(ctx), self.config.scorecard_id)
        self.log.info("Scorecard fetched", {"questionCount": len(questions)})
        return SubmissionQueue(
            self,
            self.reviewer,
            artifact,
            questions,
            dict(snapshot.submissions or {}),
            dict(snapshot.reviews or {}),
        )

    async def step_load_initial_submissions(self, ctx: StepContext) -> List[SubmissionRecord]:
        if not self.config.submitters:
            raise FlowError("First2Finish flow requires at least one submitter handle")
        self.queue = await self._prepare_queue(ctx)
        per_submitter = 1 if self.is_topgear else INITIAL_SUBMISSIONS_PER_SUBMITTER
        submitters = self.queue.submitters
        self.log.info(
            "Creating initial submission batch for iterative queue",
            {"perSubmitter": per_submitter, "submitters": submitters, "delaySeconds": self.timings.submission_delay},
        )
        batch: List[SubmissionRecord] = []
        for round_number in range(per_submitter):
            for position, handle in enumerate(submitters):
                self.cancel.check()
                record = await self.queue.queue_submission(ctx, handle)
                self.log.info(
                    "Initial submission queued",
                    {"submissionId": record.id, "handle": record.handle, "round": round_number + 1, "position": record.index},
                )
                batch.append(record)
                last = round_number == per_submitter - 1 and position == len(submitters) - 1
                if not last:
                    await self.cancel.wait(self.timings.submission_delay)
        self.initial_batch = batch
        self.log.info("Initial submission batch created", {"count": len(batch)}, self.progress_for(ctx.step))
        return batch

    async def step_process_reviews(self, ctx: StepContext) -> None:
        queue = self._require_queue()
        to_process = self.initial_batch[:1] if self.is_topgear else list(self.initial_batch)
        for position, record in enumerate(to_process):
            self.cancel.check()
            self.log.info(
                "Processing initial submission with failing review",
                {"submissionId": record.id, "handle": record.handle},
            )
            after_patch = None
            if self.overlap_final_submission and position == len(to_process) - 1:
                final_handle = queue.submitters[0]
                self.log.info("Queueing final submission while the last failing review settles", {"handle": final_handle})
                after_patch = functools.partial(queue.queue_submission, ctx, final_handle)
            result = await queue.complete_review(ctx, record, "fail", after_patch=after_patch)
            if after_patch is not None:
                self.prequeued = result

        if self.prequeued is None:
            await self.ensure_iterative_phase(ctx, expect_open=False)
            self.log.info(
                "Initial failing reviews completed; iterative review phase closed",
                {"processed": len(to_process)},
                self.progress_for(ctx.step),
            )
        else:
            self.log.info(
                "Initial failing reviews completed; final submission already queued",
                {"processed": len(to_process), "finalSubmissionId": self.prequeued.id},
                self.progress_for(ctx.step),
            )

    async def step_final_submission(self, ctx: StepContext) -> SubmissionRecord:
        queue = self._require_queue()
        if not queue.submitters:
            raise FlowError("First2Finish flow requires at least one submitter handle")

        if self.late:
            self.log.info(
                "Late mode enabled: waiting for submission phase scheduled end before final submission",
                {"submissionPhaseName": self.submission_phase},
            )
            await self._await_scheduled_end(ctx)
            self.log.info("Submission phase scheduled end reached; proceeding with late submission")
            await self._validate_late_phases(ctx)
        elif self.prequeued is None:
            await self.cancel.wait(self.timings.submission_delay)

        if self.prequeued is not None:
            winning = self.prequeued
        else:
            final_handle = queue.submitters[0]
            self.log.info(
                "Creating LATE final submission for passing review"
                if self.late
                else "Creating final submission for passing review",
                {"handle": final_handle},
            )
            winning = await queue.queue_submission(ctx, final_handle)
        await queue.complete_review(ctx, winning, "pass")
        self.winning_submission = winning
        self.log.info(
            "Iterative submission process completed",
            {
                "totalCreated": len(queue.records),
                "initialFailures": len(self.initial_batch),
                "winningSubmissionId": winning.id,
                "winningHandle": winning.handle,
            },
            self.progress_for(ctx.step),
        )
        return winning

    async def _validate_late_phases(self, ctx: StepContext) -> None:
        challenge = await self.call(self.api(ctx).get_challenge(self.challenge_id))
        by_name = phases_by_name(challenge)
        submission_open = (by_name.get(self.submission_phase) or {}).get("isOpen") is True
        registration_open = (by_name.get(PhaseName.REGISTRATION.value) or {}).get("isOpen") is True
        if not submission_open or not registration_open:
            raise FlowError(
                f"Expected Registration and {self.submission_phase} to remain open before passing review "
                f"(late mode). Observed: registrationOpen={str(registration_open).lower()}, "
                f"submissionOpen={str(submission_open).lower()}"
            )
        self.log.info(
            "Validated Registration and Submission are still open prior to passing review (late mode)",
            {
                "registrationOpen": registration_open,
                "submissionOpen": submission_open,
                "submissionPhaseName": self.submission_phase,
            },
        )

    def _require_queue(self) -> SubmissionQueue:
        if self.queue is None:
            raise FlowError("Initial submissions have not been loaded")
        return self.queue

    # ------------------------------------------------------------------
    # Wrap-up
    async def step_post_mortem(self, ctx: StepContext) -> int:
        if not self.config.enable_post_mortem:
            self.log.info("Post-Mortem disabled; skipping")
            return 0
        self.log.info("Processing Post-Mortem phase if present...")
        api = self.api(ctx)
        for _ in range(self.timings.review_attempts):
            self.cancel.check()
            challenge = await self.call(api.get_challenge(self.challenge_id))
            self.log.info("Challenge refresh", {"stage": ctx.step, "challenge": challenge})
            phase = next(
                (
                    p
                    for p in challenge.get("phases") or []
                    if isinstance(p, dict) and isinstance(p.get("name"), str) and POST_MORTEM_PATTERN.search(p["name"])
                ),
                None,
            )
            if phase and phase.get("isOpen"):
                try:
                    completed = await self._complete_post_mortem(api, phase)
                except ApiError as exc:
                    self.log.warn("Error while processing post-mortem phase", {"error": str(exc)})
                    completed = None
                if completed:
                    self.log.info("Post-mortem step processed", {"completed": completed}, self.progress_for(ctx.step))
                    return completed
            await self.cancel.wait(self.timings.review_interval)
        self.log.warn("Post-mortem phase not detected or no pending reviews; continuing")
        return 0

    async def _complete_post_mortem(self, api: PlatformSession, phase: Dict[str, Any]) -> int:
        snapshot = await self.snapshots.read()
        reviewer_resources = snapshot.reviewer_resources or {}
        own = reviewer_resources.get(self.config.reviewer)
        resource_ids = [own] if own else list(dict.fromkeys(reviewer_resources.values()))
        phase_id = to_string_id(phase.get("id")) or to_string_id(phase.get("phaseId"))

        pending = []
        for review in as_list(await self.call(api.list_reviews(self.challenge_id))):
            if not is_pending(review):
                continue
            metadata = review.get("metadata") if isinstance(review.get("metadata"), dict) else {}
            review_phase = (
                to_string_id(review.get("phaseId"))
                or to_string_id(review.get("reviewPhaseId"))
                or to_string_id(metadata.get("phaseId"))
            )
            if not review_phase or review_phase != phase_id:
                continue
            resource = to_string_id(review.get("resourceId"))
            if not resource_ids or (resource and resource in resource_ids):
                pending.append(review)
        if not pending:
            return 0

        questions = await self.load_questions(api, self.config.scorecard_id)
        for review in pending:
            payload = {
                "scorecardId": review.get("scorecardId") or self.config.scorecard_id,
                "typeId": review.get("typeId") or DEFAULT_REVIEW_TYPE_ID,
                "metadata": review.get("metadata") or {},
                "status": "COMPLETED",
                "reviewDate": now_iso(),
                "committed": True,
                "reviewItems": outcome_review_items(questions, "pass"),
            }
            try:
                await self.call(api.update_review(str(review["id"]), payload))
                self.log.info("Post-mortem review completed", {"reviewId": str(review["id"])})
            except ApiError as exc:
                self.log.warn(
                    "Failed to complete post-mortem review", {"reviewId": str(review["id"]), "error": str(exc)}
                )
        return len(pending)

    async def step_await_winner(self, ctx: StepContext) -> Dict[str, Any]:
        if self.winning_submission is None:
            raise FlowError("No winning submission recorded")
        winner = self.winning_submission.handle
        self.log.info(f"Waiting for {self.submission_phase} phase to close and winner assignment...")

        def settled(challenge: Dict[str, Any]) -> bool:
            phases = [p for p in challenge.get("phases") or [] if isinstance(p, dict)]
            submission = phases_by_name(challenge).get(self.submission_phase)
            iterative_open = any(
                p.get("name") == PhaseName.ITERATIVE_REVIEW.value and p.get("isOpen") for p in phases
            )
            post_mortem_open = any(
                isinstance(p.get("name"), str) and POST_MORTEM_PATTERN.search(p["name"]) and p.get("isOpen")
                for p in phases
            )
            winners = [w.get("handle") for w in challenge.get("winners") or [] if isinstance(w, dict)]
            return (
                submission is not None
                and submission.get("isOpen") is False
                and winner in winners
                and not iterative_open
                and not post_mortem_open
            )

        challenge = await self.poller.await_condition(
            self.api(ctx),
            self.challenge_id,
            settled,
            stage=ctx.step,
            interval=self.timings.iterative_interval,
        )
        self.log.info(
            "Winner assigned and submission phase closed",
            {"winner": winner, "submissionPhaseName": self.submission_phase},
            self.progress_for(ctx.step),
        )
        return challenge
