"""Design challenge flow with checkpoint, screening and approval rounds."""

from __future__ import annotations

import logging
from typing import Any, ClassVar, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from ..artifacts import load_submission_artifact
from ..contracts import PhaseName, RoleDirectory, RoleName
from ..errors import ApiError, FlowError
from ..platform import PlatformSession
from ..polling import phases_by_name
from ..recording import StepContext
from ..utils.ids import collect_ids, to_string_id
from .base import DESIGN_SKILL, BaseFlow, now_iso
from .reviews import (
    DEFAULT_REVIEW_TYPE_ID,
    ReviewTypeResolver,
    added_resource_id,
    as_list,
    find_pending_review,
    is_pending,
    scripted_review_items,
)

logger = logging.getLogger(__name__)

SUBMISSION_LIMIT = '{"unlimited":"true","limit":"false","count":""}'

# phase name -> (scorecard attribute, base coefficient, incremental coefficient)
REVIEWER_PHASES: Tuple[Tuple[str, str, float, float], ...] = (
    (PhaseName.REVIEW.value, "review_scorecard_id", 0.13, 0.2),
    (PhaseName.CHECKPOINT_REVIEW.value, "checkpoint_review_scorecard_id", 0.13, 0.2),
    (PhaseName.CHECKPOINT_SCREENING.value, "checkpoint_screening_scorecard_id", 0.13, 0.1),
    (PhaseName.SCREENING.value, "screening_scorecard_id", 0.13, 0.1),
    (PhaseName.APPROVAL.value, "approval_scorecard_id", 0.13, 0.1),
)


class ReviewRound(BaseModel):
    """One review round patched by the design flow."""

    label: str
    scorecard_attr: str
    handle_attr: str
    submissions_key: str
    phase_hints: List[str]
    role_hint: RoleName
    # None answers randomly; otherwise every review passes or fails
    passed: Optional[bool] = None
    fail_first_per_handle: bool = False


class DesignFlow(BaseFlow):
    """Design challenge flow.

    ``fail_mode`` set to ``"screening"`` fails every screening review and
    ``"review"`` fails every main review.
    """

    name: ClassVar[str] = "Design"
    complete_message: ClassVar[str] = "Design Challenge flow complete"
    steps: ClassVar[Tuple[str, ...]] = (
        "token",
        "createChallenge",
        "updateDraft",
        "activate",
        "awaitRegCkptOpen",
        "assignResources",
        "createCheckpointSubmissions",
        "awaitCheckpointScreeningOpen",
        "createCheckpointScreeningReviews",
        "awaitCheckpointReviewOpen",
        "createCheckpointReviews",
        "awaitSubmissionOpen",
        "createSubmissions",
        "awaitScreeningOpen",
        "createScreeningReviews",
        "awaitReviewOpen",
        "createReviews",
        "awaitApprovalOpen",
        "createApprovalReview",
        "awaitAllClosed",
        "awaitCompletion",
    )

    def __init__(self, config, *, fail_mode: Optional[str] = None, **kwargs) -> None:
        if fail_mode not in (None, "screening", "review"):
            raise ValueError(f"Unsupported design fail mode: {fail_mode}")
        super().__init__(config, **kwargs)
        self.fail_mode = fail_mode
        self.review_types = ReviewTypeResolver(
            self.log, self.cancel, retry_interval=self.timings.lookup_interval
        )
        self._fallback_warned: set = set()

    def challenge_payload(self, name: str) -> Dict[str, Any]:
        payload = super().challenge_payload(name)
        payload["description"] = "Design Challenge end-to-end test"
        payload["discussions"] = [{"name": f"{name} Discussion", "type": "CHALLENGE", "provider": "vanilla"}]
        payload["metadata"] = [{"name": "submissionLimit", "value": SUBMISSION_LIMIT}]
        return payload

    # ------------------------------------------------------------------
    # Setup
    async def _phase_ids_by_name(self, api: PlatformSession, names: Sequence[str]) -> Dict[str, str]:
        """Phase template ids of ``names`` on the created challenge."""
        found: Dict[str, str] = {}
        for attempt in range(3):
            self.cancel.check()
            try:
                by_name = phases_by_name(await self.call(api.get_challenge(self.challenge_id)))
            except ApiError as exc:
                self.log.warn(
                    "Failed to load challenge while locating phase ID",
                    {"challengeId": self.challenge_id, "attempt": attempt + 1, "error": str(exc)},
                )
                by_name = {}
            for name in names:
                ids = collect_ids(by_name.get(name) or {}, ("phaseId", "phase_id", "id", "legacyId"))
                if ids:
                    found[name] = ids[0]
            if len(found) == len(names):
                break
            await self.cancel.wait(self.timings.lookup_interval)
        return found

    def _prize_sets(self) -> List[Dict[str, Any]]:
        prize_sets = [{"type": "PLACEMENT", "prizes": [{"type": "USD", "value": v} for v in self.config.prizes]}]
        if self.config.checkpoint_prize_amount > 0 and self.config.checkpoint_prize_count > 0:
            prize_sets.append(
                {
                    "type": "CHECKPOINT",
                    "prizes": [
                        {"type": "USD", "value": self.config.checkpoint_prize_amount}
                        for _ in range(self.config.checkpoint_prize_count)
                    ],
                }
            )
        prize_sets.append({"type": "COPILOT", "prizes": [{"type": "USD", "value": 100}]})
        return prize_sets

    async def step_update_draft(self, ctx: StepContext) -> Dict[str, Any]:
        self.cancel.check()
        self.log.info("Updating challenge to DRAFT with design-specific reviewers...")
        api = self.api(ctx)
        phase_ids = await self._phase_ids_by_name(api, [phase for phase, *_ in REVIEWER_PHASES])

        reviewers: List[Dict[str, Any]] = []
        for phase, scorecard_attr, base, incremental in REVIEWER_PHASES:
            phase_id = phase_ids.get(phase)
            if not phase_id:
                self.log.warn("Phase not found on challenge; reviewer not configured", {"phase": phase})
                continue
            reviewers.append(
                {
                    "scorecardId": getattr(self.config, scorecard_attr),
                    "isMemberReview": True,
                    "memberReviewerCount": 1,
                    "phaseId": phase_id,
                    "baseCoefficient": base,
                    "incrementalCoefficient": incremental,
                    "type": "REGULAR_REVIEW",
                }
            )
        await self.sanity_check_reviewer_phases(api, reviewers)

        body = self.draft_payload(
            "Design Challenge API Tester", self._prize_sets(), reviewers=reviewers, skill=DESIGN_SKILL
        )
        updated = await self.call(api.update_challenge(self.challenge_id, body))
        self.log.info(
            "Challenge updated to DRAFT",
            {"challengeId": self.challenge_id, "request": body},
            self.progress_for(ctx.step),
        )
        self.log.info(
            "Configured review settings",
            {
                "challengeId": self.challenge_id,
                "reviewer": self.config.reviewer,
                "checkpoints": {
                    "screener": self.config.checkpoint_screener,
                    "reviewer": self.config.checkpoint_reviewer,
                },
                "screening": self.config.screener,
                "approval": self.config.approver,
            },
        )
        return updated

    async def step_await_reg_ckpt_open(self, ctx: StepContext) -> None:
        await self.await_phases(
            ctx, [PhaseName.REGISTRATION.value, PhaseName.CHECKPOINT_SUBMISSION.value]
        )

    async def step_assign_resources(self, ctx: StepContext) -> Dict[str, Dict[str, str]]:
        self.cancel.check()
        self.log.info("Assigning resources (copilot, reviewers, screeners, approver, submitters)...")
        api = self.api(ctx)
        snapshot = await self.snapshots.read()
        reviewer_resources = dict(snapshot.reviewer_resources or {})
        by_handle: Dict[str, Dict[str, str]] = {
            handle: dict(roles) for handle, roles in (snapshot.reviewer_resources_by_handle or {}).items()
        }

        roles = RoleDirectory.from_roles(await self.call(api.list_resource_roles()))
        screener_role = roles.resolve(RoleName.SCREENER)
        for role, message in (
            (RoleName.SUBMITTER, "Submitter role not found; submissions may fail"),
            (RoleName.REVIEWER, "Reviewer role not found; review assignment may fail"),
            (RoleName.APPROVER, "Approver role not found; approval assignment may fail"),
            (RoleName.CHECKPOINT_SCREENER, "Checkpoint Screener role not found; checkpoint screening may fail"),
            (RoleName.CHECKPOINT_REVIEWER, "Checkpoint Reviewer role not found; checkpoint review assignment may fail"),
        ):
            if role not in roles:
                self.log.warn(message)
        if screener_role is None:
            self.log.warn("Screener role not found; screening assignment may fail")
        elif screener_role[0] == RoleName.PRIMARY_SCREENER:
            self.log.warn("Screener role not found; falling back to Primary Screener")

        def remember(handle: str, role: RoleName, resource_id: Optional[str]) -> None:
            if not resource_id:
                return
            entry = by_handle.setdefault(handle, {})
            entry[role.value] = resource_id
            if role in (RoleName.SCREENER, RoleName.PRIMARY_SCREENER):
                entry[RoleName.SCREENER.value] = resource_id
                entry[RoleName.PRIMARY_SCREENER.value] = resource_id

        async def add(handle: str, role: RoleName, role_id: str, label: Optional[str] = None) -> Optional[str]:
            member_id = await self.member_id(api, handle)
            payload = {"challengeId": self.challenge_id, "memberId": member_id, "roleId": role_id}
            try:
                added = await self.call(api.add_resource(payload))
            except ApiError as exc:
                if label is None:
                    raise
                self.log.warn(
                    f"Failed to add {label} resource (may already exist)", {"handle": handle, "error": str(exc)}
                )
                return None
            resource_id = added_resource_id(added)
            remember(handle, role, resource_id)
            self.log.info(f"Added {role.value.lower()}", {"handle": handle, "resourceId": resource_id})
            return resource_id

        if self.config.copilot_handle and RoleName.COPILOT in roles:
            await add(self.config.copilot_handle, RoleName.COPILOT, roles.get(RoleName.COPILOT))

        if RoleName.REVIEWER in roles:
            resource_id = await add(self.config.reviewer, RoleName.REVIEWER, roles.get(RoleName.REVIEWER))
            if resource_id:
                reviewer_resources[self.config.reviewer] = resource_id

        if self.config.screener:
            if screener_role is None:
                self.log.warn(
                    "Screener handle configured but no Screener role is available",
                    {"handle": self.config.screener},
                )
            else:
                await add(self.config.screener, screener_role[0], screener_role[1], "screener")

        if self.config.approver and RoleName.APPROVER in roles:
            resource_id = await add(self.config.approver, RoleName.APPROVER, roles.get(RoleName.APPROVER), "approver")
            if resource_id and self.config.approver not in reviewer_resources:
                reviewer_resources[self.config.approver] = resource_id

        if self.config.checkpoint_screener and RoleName.CHECKPOINT_SCREENER in roles:
            await add(
                self.config.checkpoint_screener,
                RoleName.CHECKPOINT_SCREENER,
                roles.get(RoleName.CHECKPOINT_SCREENER),
                "checkpoint screener",
            )
        if self.config.checkpoint_reviewer and RoleName.CHECKPOINT_REVIEWER in roles:
            await add(
                self.config.checkpoint_reviewer,
                RoleName.CHECKPOINT_REVIEWER,
                roles.get(RoleName.CHECKPOINT_REVIEWER),
                "checkpoint reviewer",
            )

        if RoleName.SUBMITTER in roles:
            for handle in self.config.submitters:
                await add(handle, RoleName.SUBMITTER, roles.get(RoleName.SUBMITTER), "submitter")

        await self.snapshots.write(
            {
                "reviewer_resources": reviewer_resources,
                "reviewer_resources_by_handle": by_handle,
                "resource_role_ids": roles.as_names(),
            }
        )
        self.log.info(
            "Resources assigned",
            {
                "reviewer": self.config.reviewer,
                "screener": self.config.screener,
                "approver": self.config.approver,
                "checkpointScreener": self.config.checkpoint_screener,
                "checkpointReviewer": self.config.checkpoint_reviewer,
                "submitters": len(self.config.submitters),
            },
            self.progress_for(ctx.step),
        )
        return by_handle

    # ------------------------------------------------------------------
    # Submissions
    async def _create_submissions(self, ctx: StepContext, submission_type: str, key: str) -> Dict[str, List[str]]:
        api = self.api(ctx)
        artifact = await load_submission_artifact(self.config.submission_zip_path)
        self.cancel.check()
        snapshot = await self.snapshots.read()
        created: Dict[str, List[str]] = dict(getattr(snapshot, key) or {})
        for handle in self.config.submitters:
            member_id = await self.member_id(api, handle)
            for _ in range(self.config.submissions_per_submitter):
                self.cancel.check()
                upload = await self.artifact_store.upload(artifact, ctx)
                payload = {
                    "challengeId": self.challenge_id,
                    "memberId": member_id,
                    "type": submission_type,
                    "url": upload.url,
                }
                submission = await self.call(api.create_submission(payload))
                created.setdefault(handle, []).append(str(submission["id"]))
                await self.snapshots.write({key: created})
                self.log.info(
                    "Submission created",
                    {"handle": handle, "submissionId": submission["id"], "type": submission_type},
                )
        return created

    async def step_create_checkpoint_submissions(self, ctx: StepContext) -> Dict[str, List[str]]:
        self.log.info("Creating checkpoint submissions...")
        created = await self._create_submissions(ctx, "CHECKPOINT_SUBMISSION", "checkpoint_submissions")
        self.log.info(
            "Checkpoint submissions created",
            {"count": sum(len(ids) for ids in created.values())},
            self.progress_for(ctx.step),
        )
        return created

    async def step_create_submissions(self, ctx: StepContext) -> Dict[str, List[str]]:
        self.log.info("Creating final submissions...")
        created = await self._create_submissions(ctx, "CONTEST_SUBMISSION", "submissions")
        self.log.info(
            "Final submissions created",
            {"count": sum(len(ids) for ids in created.values())},
            self.progress_for(ctx.step),
        )
        return created

    # ------------------------------------------------------------------
    # Phase waits
    async def step_await_checkpoint_screening_open(self, ctx: StepContext) -> None:
        await self.await_phases(
            ctx,
            [PhaseName.CHECKPOINT_SCREENING.value],
            [PhaseName.REGISTRATION.value, PhaseName.CHECKPOINT_SUBMISSION.value],
        )

    async def step_await_checkpoint_review_open(self, ctx: StepContext) -> None:
        await self.await_phases(
            ctx,
            [PhaseName.CHECKPOINT_REVIEW.value],
            [
                PhaseName.REGISTRATION.value,
                PhaseName.CHECKPOINT_SUBMISSION.value,
                PhaseName.CHECKPOINT_SCREENING.value,
            ],
        )

    async def step_await_submission_open(self, ctx: StepContext) -> None:
        await self.await_phases(ctx, [PhaseName.SUBMISSION.value], [PhaseName.CHECKPOINT_REVIEW.value])

    async def step_await_screening_open(self, ctx: StepContext) -> None:
        await self.await_phases(ctx, [PhaseName.SCREENING.value], [PhaseName.SUBMISSION.value])

    async def step_await_review_open(self, ctx: StepContext) -> None:
        await self.await_phases(ctx, [PhaseName.REVIEW.value], [PhaseName.SCREENING.value])

    async def step_await_approval_open(self, ctx: StepContext) -> None:
        await self.await_phases(ctx, [PhaseName.APPROVAL.value], [PhaseName.REVIEW.value])

    # ------------------------------------------------------------------
    # Review rounds
    def review_rounds(self) -> Dict[str, ReviewRound]:
        return {
            "checkpointScreening": ReviewRound(
                label="checkpoint screening",
                scorecard_attr="checkpoint_screening_scorecard_id",
                handle_attr="checkpoint_screener",
                submissions_key="checkpoint_submissions",
                phase_hints=[PhaseName.CHECKPOINT_SCREENING.value],
                role_hint=RoleName.CHECKPOINT_SCREENER,
                fail_first_per_handle=True,
            ),
            "checkpointReview": ReviewRound(
                label="checkpoint review",
                scorecard_attr="checkpoint_review_scorecard_id",
                handle_attr="checkpoint_reviewer",
                submissions_key="checkpoint_submissions",
                phase_hints=[PhaseName.CHECKPOINT_REVIEW.value],
                role_hint=RoleName.CHECKPOINT_REVIEWER,
            ),
            "screening": ReviewRound(
                label="screening",
                scorecard_attr="screening_scorecard_id",
                handle_attr="screener",
                submissions_key="submissions",
                phase_hints=[PhaseName.SCREENING.value],
                role_hint=RoleName.SCREENER,
                passed=False if self.fail_mode == "screening" else None,
            ),
            "review": ReviewRound(
                label="review",
                scorecard_attr="review_scorecard_id",
                handle_attr="reviewer",
                submissions_key="submissions",
                phase_hints=[PhaseName.ITERATIVE_REVIEW.value, PhaseName.REVIEW.value],
                role_hint=RoleName.REVIEWER,
                passed=False if self.fail_mode == "review" else None,
            ),
        }

    def _candidate_resources(self, snapshot, handle: str, role_hint: RoleName) -> List[str]:
        """Resource ids of ``handle``: the hinted role first, then its other roles."""
        candidates: List[str] = []
        roles = (snapshot.reviewer_resources_by_handle or {}).get(handle) or {}
        for resource_id in [roles.get(role_hint.value), *roles.values(), (snapshot.reviewer_resources or {}).get(handle)]:
            if resource_id and resource_id not in candidates:
                candidates.append(resource_id)
        return candidates

    async def _phase_runtime_ids(self, api: PlatformSession, names: Sequence[str]) -> List[str]:
        try:
            by_name = phases_by_name(await self.call(api.get_challenge(self.challenge_id)))
        except ApiError as exc:
            self.log.warn("Failed to load challenge phases for review matching", {"error": str(exc)})
            return []
        ids: List[str] = []
        for name in names:
            for pid in collect_ids(by_name.get(name) or {}, ("id", "phaseId")):
                if pid not in ids:
                    ids.append(pid)
        return ids

    async def _review_type_id(self, api: PlatformSession, pending: Dict[str, Any], hints: Sequence[str], label: str) -> str:
        existing = to_string_id(pending.get("typeId"))
        if existing:
            return existing
        resolved = await self.review_types.resolve(api, hints)
        if resolved:
            return resolved
        if label not in self._fallback_warned:
            self._fallback_warned.add(label)
            self.log.warn(f"Falling back to default review type ID for {label}", {"phaseNames": list(hints)})
        return DEFAULT_REVIEW_TYPE_ID

    async def _discover_pending(
        self,
        api: PlatformSession,
        submission_ids: List[str],
        resource_ids: List[str],
        phase_ids: List[str],
    ) -> Dict[str, Dict[str, Any]]:
        matched: Dict[str, Dict[str, Any]] = {}
        for attempt in range(self.timings.review_attempts):
            self.cancel.check()
            reviews = as_list(await self.call(api.list_reviews(self.challenge_id)))
            matched = {}
            claimed: List[str] = []
            for submission_id in submission_ids:
                pending = None
                for resource_id in resource_ids or [None]:
                    pending = find_pending_review(reviews, submission_id, resource_id, phase_ids, exclude=claimed)
                    if pending is not None:
                        break
                if pending is None and resource_ids:
                    pending = find_pending_review(reviews, submission_id, None, phase_ids, exclude=claimed)
                if pending is not None:
                    claimed.append(str(pending["id"]))
                    matched[submission_id] = pending
            self.log.info("Pending reviews discovered", {"count": len(matched), "attempt": attempt + 1})
            if len(matched) == len(submission_ids):
                break
            await self.cancel.wait(self.timings.review_interval)
        return matched

    async def patch_round(self, ctx: StepContext, key: str) -> int:
        """Complete the pending reviews of one round. Returns the patched count."""
        review_round = self.review_rounds()[key]
        api = self.api(ctx)
        scorecard_id = getattr(self.config, review_round.scorecard_attr)
        handle = getattr(self.config, review_round.handle_attr)
        snapshot = await self.snapshots.read()
        by_submitter: Dict[str, List[str]] = getattr(snapshot, review_round.submissions_key) or {}
        submission_ids = [sid for ids in by_submitter.values() for sid in ids]
        if not submission_ids:
            self.log.warn(f"No submissions recorded for {review_round.label}; nothing to review")
            return 0
        failing = set()
        if review_round.fail_first_per_handle:
            failing = {ids[0] for ids in by_submitter.values() if ids}

        self.log.info("Loading target scorecard for questions", {"scorecardId": scorecard_id, "round": review_round.label})
        questions = await self.load_questions(api, scorecard_id)
        resource_ids = self._candidate_resources(snapshot, handle, review_round.role_hint)
        phase_ids = await self._phase_runtime_ids(api, review_round.phase_hints)
        matched = await self._discover_pending(api, submission_ids, resource_ids, phase_ids)

        reviews = dict(snapshot.reviews or {})
        submitter_of = {sid: submitter for submitter, ids in by_submitter.items() for sid in ids}
        patched = 0
        for submission_id, pending in matched.items():
            self.cancel.check()
            passed = review_round.passed
            if review_round.fail_first_per_handle:
                passed = submission_id not in failing
            payload: Dict[str, Any] = {
                "scorecardId": pending.get("scorecardId") or scorecard_id,
                "typeId": await self._review_type_id(api, pending, review_round.phase_hints, review_round.label),
                "status": "COMPLETED",
                "reviewDate": now_iso(),
                "committed": True,
                "reviewItems": scripted_review_items(
                    questions, self.rng, passed, existing_items=pending.get("reviewItems") or ()
                ),
            }
            if passed is not None:
                outcome = "pass" if passed else "fail"
                payload["metadata"] = {"outcome": outcome, "score": 100 if passed else 10}
                payload["isPassing"] = passed
            else:
                payload["metadata"] = pending.get("metadata") or {}
            review_id = str(pending["id"])
            try:
                await self.call(api.update_review(review_id, payload))
            except ApiError as exc:
                self.log.warn(
                    "Patch review failed",
                    {"reviewId": review_id, "submissionId": submission_id, "round": review_round.label, "error": str(exc)},
                )
                ctx.record_failure(exc, request_body=payload)
                continue
            patched += 1
            reviews[f"{handle}:{submitter_of.get(submission_id)}:{submission_id}"] = review_id
            await self.snapshots.write({"reviews": reviews})
            self.log.info(
                "Patched review",
                {"reviewId": review_id, "submissionId": submission_id, "round": review_round.label, "passed": passed},
            )

        if patched == 0:
            raise FlowError(f"No pending {review_round.label} reviews could be completed for {len(submission_ids)} submissions")
        if patched < len(submission_ids):
            self.log.warn(
                f"Some {review_round.label} reviews were not completed",
                {"expected": len(submission_ids), "patched": patched},
            )
        self.log.info("Reviews patched", {"count": patched, "round": review_round.label}, self.progress_for(ctx.step))
        return patched

    async def step_create_checkpoint_screening_reviews(self, ctx: StepContext) -> int:
        return await self.patch_round(ctx, "checkpointScreening")

    async def step_create_checkpoint_reviews(self, ctx: StepContext) -> int:
        return await self.patch_round(ctx, "checkpointReview")

    async def step_create_screening_reviews(self, ctx: StepContext) -> int:
        return await self.patch_round(ctx, "screening")

    async def step_create_reviews(self, ctx: StepContext) -> int:
        return await self.patch_round(ctx, "review")

    # ------------------------------------------------------------------
    # Approval
    async def _complete_approval(self, ctx: StepContext, passed: bool) -> Optional[str]:
        result = "pass" if passed else "fail"
        self.log.info(f"Searching for pending Approval review to mark as {result}...")
        api = self.api(ctx)
        target = None
        for _ in range(self.timings.review_attempts):
            self.cancel.check()
            pending = [r for r in as_list(await self.call(api.list_reviews(self.challenge_id))) if is_pending(r)]
            phase_ids = set(await self._phase_runtime_ids(api, [PhaseName.APPROVAL.value]))
            in_phase = [
                r for r in pending if phase_ids & set(collect_ids(r, ("phaseId", "reviewPhaseId")))
            ]
            target = (in_phase or pending or [None])[0]
            if target is not None:
                break
            await self.cancel.wait(self.timings.review_interval)
        if target is None:
            self.log.warn("No pending approval reviews found")
            return None

        scorecard_id = target.get("scorecardId") or self.config.approval_scorecard_id
        questions = await self.load_questions(api, scorecard_id)
        payload = {
            "scorecardId": scorecard_id,
            "typeId": await self._review_type_id(api, target, [PhaseName.APPROVAL.value], "approval review"),
            "metadata": {"outcome": result, "score": 100 if passed else 10},
            "isPassing": passed,
            "status": "COMPLETED",
            "reviewDate": now_iso(),
            "committed": True,
            "reviewItems": scripted_review_items(
                questions, self.rng, passed, existing_items=target.get("reviewItems") or ()
            ),
        }
        review_id = str(target["id"])
        try:
            await self.call(api.update_review(review_id, payload))
        except ApiError as exc:
            self.log.warn("Failed to complete approval review", {"reviewId": review_id, "error": str(exc)})
            ctx.record_failure(exc, request_body=payload)
            return None
        self.log.info("Approval review completed", {"reviewId": review_id, "result": result})
        return review_id

    async def _await_approval(self, ctx: StepContext, is_open: bool) -> None:
        self.log.info(f"Waiting for Approval phase to {'open' if is_open else 'close'}...")
        phase = [PhaseName.APPROVAL.value]
        await self.poller.await_phases(
            self.api(ctx),
            self.challenge_id,
            phase if is_open else [],
            [] if is_open else phase,
            stage=ctx.step,
            interval=self.timings.iterative_interval,
        )

    async def step_create_approval_review(self, ctx: StepContext) -> None:
        """Fail the first approval, wait for the phase to reopen, then pass it."""
        failed = await self._complete_approval(ctx, passed=False)
        if failed is not None:
            await self._await_approval(ctx, is_open=False)
            await self._await_approval(ctx, is_open=True)
        await self._complete_approval(ctx, passed=True)
        self.log.info("Approval round processed", None, self.progress_for(ctx.step))
