"""Standard challenge flow: submissions, reviews, appeals and completion."""

from __future__ import annotations

import logging
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from ..artifacts import load_submission_artifact
from ..contracts import PhaseName, RoleDirectory, RoleName
from ..errors import ApiError
from ..recording import StepContext
from ..utils.ids import to_string_id
from .base import BaseFlow, now_iso
from .reviews import (
    DEFAULT_REVIEW_TYPE_ID,
    added_resource_id,
    as_list,
    final_answer_after_appeal,
    find_pending_review,
    normalize_resources,
    random_review_items,
    resource_id_for_handle,
)

logger = logging.getLogger(__name__)

APPEAL_PROBABILITY = 0.5
APPEAL_ACCEPT_PROBABILITY = 0.5
APPEAL_CONTENT = "Appeal: We believe this should be adjusted."


class StandardFlow(BaseFlow):
    """Create, run and complete a standard challenge with appeals."""

    name: ClassVar[str] = "standard"
    steps: ClassVar[Tuple[str, ...]] = (
        "token",
        "createChallenge",
        "updateDraft",
        "activate",
        "awaitRegSubOpen",
        "assignResources",
        "createSubmissions",
        "awaitReviewOpen",
        "createReviews",
        "awaitAppealsOpen",
        "createAppeals",
        "awaitAppealsResponseOpen",
        "appealResponses",
        "awaitAllClosed",
        "awaitCompletion",
    )

    def __init__(self, config, **kwargs) -> None:
        super().__init__(config, **kwargs)
        self.questions: List[Dict[str, Any]] = []
        self.reviews: List[Dict[str, Any]] = []
        self.appeals: List[Dict[str, Any]] = []

    # ------------------------------------------------------------------
    # Setup
    async def step_update_draft(self, ctx: StepContext) -> Dict[str, Any]:
        self.cancel.check()
        self.log.info("Updating challenge to DRAFT with 1-minute timeline...")
        body = self.draft_payload("Challenge API Tester", self.placement_prizes(self.config.prizes))
        updated = await self.call(self.api(ctx).update_challenge(self.challenge_id, body))
        self.log.info(
            "Challenge updated to DRAFT",
            {"challengeId": self.challenge_id, "request": body},
            self.progress_for(ctx.step),
        )
        return updated

    async def step_await_reg_sub_open(self, ctx: StepContext) -> None:
        await self.await_phases(ctx, [PhaseName.REGISTRATION.value, PhaseName.SUBMISSION.value])

    async def step_assign_resources(self, ctx: StepContext) -> None:
        self.cancel.check()
        self.log.info("Assigning resources (copilot, reviewers, submitters)...")
        api = self.api(ctx)
        snapshot = await self.snapshots.read()
        reviewer_resources = dict(snapshot.reviewer_resources or {})
        changed = False

        roles = RoleDirectory.from_roles(await self.call(api.list_resource_roles()))
        self.log.info("Fetched resource roles", {"count": len(roles)})
        missing = roles.missing(RoleName.SUBMITTER, RoleName.REVIEWER, RoleName.COPILOT)
        if missing:
            self.log.warn(
                "Could not find one or more required resource role IDs",
                {"missing": [role.value for role in missing]},
            )

        if self.config.copilot_handle:
            member_id = await self.member_id(api, self.config.copilot_handle)
            payload = {
                "challengeId": self.challenge_id,
                "memberId": member_id,
                "roleId": roles.get(RoleName.COPILOT),
            }
            await self.call(api.add_resource(payload))
            self.log.info("Added copilot", {"handle": self.config.copilot_handle})

        for handle in self.config.reviewers:
            member_id = await self.member_id(api, handle)
            payload = {
                "challengeId": self.challenge_id,
                "memberId": member_id,
                "roleId": roles.get(RoleName.REVIEWER),
            }
            added = await self.call(api.add_resource(payload))
            self.log.info("Added reviewer", {"handle": handle})
            resource_id = added_resource_id(added)
            if resource_id:
                reviewer_resources[handle] = resource_id
                changed = True
            else:
                self.log.warn(
                    "Reviewer resource created but no id returned; cannot map resourceId",
                    {"handle": handle},
                )

        for handle in self.config.submitters:
            member_id = await self.member_id(api, handle)
            payload = {
                "challengeId": self.challenge_id,
                "memberId": member_id,
                "roleId": roles.get(RoleName.SUBMITTER),
            }
            await self.call(api.add_resource(payload))
            self.log.info("Added submitter", {"handle": handle})

        challenge_resources = None
        try:
            challenge_resources = normalize_resources(
                as_list(await self.call(api.list_resources(self.challenge_id)))
            )
            for handle in self.config.reviewers:
                preferred = resource_id_for_handle(
                    challenge_resources, handle, roles.get(RoleName.REVIEWER)
                )
                if preferred and reviewer_resources.get(handle) != preferred:
                    reviewer_resources[handle] = preferred
                    changed = True
        except ApiError as exc:
            self.log.warn("Failed to fetch challenge resources after assignment", {"error": str(exc)})

        self.log.info(
            "Resources assigned",
            {
                "copilot": 1 if self.config.copilot_handle else 0,
                "reviewers": len(self.config.reviewers),
                "submitters": len(self.config.submitters),
            },
            self.progress_for(ctx.step),
        )
        patch: Dict[str, Any] = {}
        if challenge_resources is not None:
            patch["challenge_resources"] = challenge_resources
        if len(roles):
            patch["resource_role_ids"] = roles.as_names()
        if changed:
            patch["reviewer_resources"] = reviewer_resources
        if patch:
            await self.snapshots.write(patch)

    async def step_create_submissions(self, ctx: StepContext) -> int:
        self.log.info("Creating submissions...")
        api = self.api(ctx)
        artifact = await load_submission_artifact(self.config.submission_zip_path)
        self.cancel.check()
        snapshot = await self.snapshots.read()
        submissions = dict(snapshot.submissions or {})
        created = 0
        for handle in self.config.submitters:
            member_id = await self.member_id(api, handle)
            for _ in range(self.config.submissions_per_submitter):
                self.cancel.check()
                upload = await self.artifact_store.upload(artifact, ctx)
                payload = {
                    "challengeId": self.challenge_id,
                    "memberId": member_id,
                    "type": "CONTEST_SUBMISSION",
                    "url": upload.url,
                }
                submission = await self.call(api.create_submission(payload))
                self.log.info("Submission created", {"handle": handle, "submissionId": submission["id"]})
                submissions.setdefault(handle, []).append(str(submission["id"]))
                await self.snapshots.write({"submissions": submissions})
                created += 1
        self.log.info("Submissions created", {"count": created}, self.progress_for(ctx.step))
        return created

    # ------------------------------------------------------------------
    # Reviews
    async def step_await_review_open(self, ctx: StepContext) -> None:
        await self.await_phases(
            ctx,
            [PhaseName.REVIEW.value],
            [PhaseName.REGISTRATION.value, PhaseName.SUBMISSION.value],
        )

    async def step_create_reviews(self, ctx: StepContext) -> List[Dict[str, Any]]:
        """Complete one review per reviewer and submission.

        The pending review the platform opened for the pair is patched when
        it can be identified; otherwise the review is created.
        """
        self.log.info("Creating reviews for each submission by each reviewer...")
        api = self.api(ctx)
        self.questions = await self.load_questions(api, self.config.scorecard_id)
        snapshot = await self.snapshots.read()
        reviewer_map = snapshot.reviewer_resources or {}
        reviews_by_key = dict(snapshot.reviews or {})

        reviewers = []
        for handle in self.config.reviewers:
            resource_id = reviewer_map.get(handle)
            if not resource_id:
                self.log.warn(
                    "No reviewer resource ID recorded; skipping reviewer for review creation",
                    {"reviewer": handle},
                )
                continue
            reviewers.append((handle, resource_id))
        if not reviewers:
            self.log.warn("No reviewer resources available; skipping review creation")
            self.reviews = []
            return self.reviews

        try:
            existing = as_list(await self.call(api.list_reviews(self.challenge_id)))
        except ApiError as exc:
            self.log.warn("Failed to list pending reviews; creating reviews instead", {"error": str(exc)})
            existing = []
        claimed: List[str] = []

        created: List[Dict[str, Any]] = []
        for submitter in self.config.submitters:
            sub_ids = (snapshot.submissions or {}).get(submitter) or []
            if not sub_ids:
                self.log.warn("No submission IDs recorded for submitter; skipping", {"submitterHandle": submitter})
                continue
            for submission_id in sub_ids:
                for reviewer, resource_id in reviewers:
                    self.cancel.check()
                    pending = find_pending_review(existing, submission_id, resource_id, exclude=claimed)
                    payload = {
                        "scorecardId": self.config.scorecard_id,
                        "typeId": DEFAULT_REVIEW_TYPE_ID,
                        "metadata": {},
                        "status": "COMPLETED",
                        "reviewDate": now_iso(),
                        "committed": True,
                        "reviewItems": random_review_items(self.questions, self.rng),
                    }
                    try:
                        if pending is not None:
                            review_id = str(pending["id"])
                            claimed.append(review_id)
                            payload["scorecardId"] = pending.get("scorecardId") or self.config.scorecard_id
                            payload["typeId"] = to_string_id(pending.get("typeId")) or DEFAULT_REVIEW_TYPE_ID
                            response = await self.call(api.update_review(review_id, payload))
                        else:
                            payload.update(resourceId=resource_id, submissionId=submission_id)
                            response = await self.call(api.create_review(payload))
                    except ApiError as exc:
                        self.log.warn(
                            "Create review failed (check submissionId/phaseId requirements in your env)",
                            {
                                "reviewer": reviewer,
                                "submitter": submitter,
                                "submissionId": submission_id,
                                "error": str(exc),
                            },
                        )
                        ctx.record_failure(exc, request_body=payload)
                        continue
                    record = dict(response or {})
                    record["resourceId"] = record.get("resourceId") or resource_id
                    record["reviewerHandle"] = reviewer
                    created.append(record)
                    reviews_by_key[f"{reviewer}:{submitter}:{submission_id}"] = str(record.get("id"))
                    await self.snapshots.write({"reviews": reviews_by_key})
                    self.log.info(
                        "Created review",
                        {
                            "reviewer": reviewer,
                            "submitter": submitter,
                            "submissionId": submission_id,
                            "reviewId": record.get("id"),
                        },
                    )
        self.reviews = created
        self.log.info("Reviews created", {"count": len(created)}, self.progress_for(ctx.step))
        return created

    # ------------------------------------------------------------------
    # Appeals
    async def step_await_appeals_open(self, ctx: StepContext) -> None:
        await self.await_phases(ctx, [PhaseName.APPEALS.value], [PhaseName.REVIEW.value])

    async def _challenge_resources(self, api, snapshot, role: RoleName, purpose: str):
        """Resources and role ids from the snapshot, refreshed when missing."""
        resources = list(snapshot.challenge_resources or [])
        role_ids = dict(snapshot.resource_role_ids or {})
        patch: Dict[str, Any] = {}
        if not resources and self.challenge_id:
            try:
                resources = normalize_resources(as_list(await self.call(api.list_resources(self.challenge_id))))
                patch["challenge_resources"] = resources
            except ApiError as exc:
                self.log.warn(f"Failed to load challenge resources for {purpose}", {"error": str(exc)})
        if not role_ids.get(role.value):
            try:
                fetched = RoleDirectory.from_roles(await self.call(api.list_resource_roles()))
                role_ids.update(fetched.as_names())
                if role_ids.get(role.value):
                    patch["resource_role_ids"] = role_ids
            except ApiError as exc:
                self.log.warn(f"Failed to refresh resource role IDs for {purpose}", {"error": str(exc)})
        if patch:
            await self.snapshots.write(patch)
        return resources, role_ids

    async def step_create_appeals(self, ctx: StepContext) -> List[Dict[str, Any]]:
        """File appeals on random review item comments, once per comment."""
        self.log.info("Creating random appeals for review items...")
        api = self.api(ctx)
        questions_by_id = {str(q["id"]): q for q in self.questions}
        snapshot = await self.snapshots.read()
        appeal_ids = list(snapshot.appeals or [])
        appealed = list(snapshot.appealed_comment_ids or [])

        resources, role_ids = await self._challenge_resources(api, snapshot, RoleName.SUBMITTER, "appeals")
        if not resources:
            self.log.warn("No challenge resources available; appeals may not be created")
        submitter_role = role_ids.get(RoleName.SUBMITTER.value)

        appeals: List[Dict[str, Any]] = []
        for review in self.reviews:
            for item in review.get("reviewItems") or []:
                for comment in item.get("reviewItemComments") or []:
                    self.cancel.check()
                    comment_id = to_string_id(comment.get("id"))
                    if not comment_id:
                        continue
                    if comment_id in appealed:
                        self.log.info(
                            "Skipping appeal creation for already appealed comment",
                            {"reviewItemCommentId": comment_id},
                        )
                        continue
                    if self.rng.random() >= APPEAL_PROBABILITY or not self.config.submitters:
                        continue
                    submitter = self.rng.choice(self.config.submitters)
                    resource_id = resource_id_for_handle(resources, submitter, submitter_role)
                    if not resource_id:
                        self.log.warn(
                            "No challenge resource found for submitter; skipping appeal creation",
                            {"submitterHandle": submitter},
                        )
                        continue
                    payload = {
                        "resourceId": resource_id,
                        "reviewItemCommentId": comment_id,
                        "content": APPEAL_CONTENT,
                    }
                    appealed.append(comment_id)
                    try:
                        appeal = await self.call(api.create_appeal(payload))
                    except ApiError as exc:
                        self.log.warn("Create appeal failed", {"error": str(exc)})
                        await self.snapshots.write({"appealed_comment_ids": appealed})
                        ctx.record_failure(exc, request_body=payload)
                        continue
                    appeals.append(
                        {
                            "appeal": appeal,
                            "review": review,
                            "reviewItem": item,
                            "question": questions_by_id.get(str(item.get("scorecardQuestionId"))),
                        }
                    )
                    appeal_ids.append(str(appeal.get("id")))
                    await self.snapshots.write({"appeals": appeal_ids, "appealed_comment_ids": appealed})
                    self.log.info("Appeal created", {"appealId": appeal.get("id"), "by": submitter})

        self.appeals = appeals
        self.log.info("Appeals created", {"count": len(appeals)}, self.progress_for(ctx.step))
        return appeals

    async def step_await_appeals_response_open(self, ctx: StepContext) -> None:
        await self.await_phases(ctx, [PhaseName.APPEALS_RESPONSE.value], [PhaseName.APPEALS.value])

    def _reviewer_resource_id(self, review: Dict[str, Any], resources, reviewer_role: Optional[str]) -> Optional[str]:
        if review.get("resourceId"):
            return str(review["resourceId"])
        handle = review.get("reviewerHandle")
        return resource_id_for_handle(resources, handle, reviewer_role) if handle else None

    async def step_appeal_responses(self, ctx: StepContext) -> None:
        self.log.info("Creating appeal responses and updating scores when successful...")
        api = self.api(ctx)
        snapshot = await self.snapshots.read()
        resources, role_ids = await self._challenge_resources(
            api, snapshot, RoleName.REVIEWER, "appeal responses"
        )
        reviewer_role = role_ids.get(RoleName.REVIEWER.value)

        for entry in self.appeals:
            self.cancel.check()
            accepted = self.rng.random() < APPEAL_ACCEPT_PROBABILITY
            appeal_id = str(entry["appeal"].get("id"))
            resource_id = self._reviewer_resource_id(entry["review"], resources, reviewer_role)
            if not resource_id:
                self.log.warn(
                    "No reviewer resourceId found for appeal response; skipping",
                    {"appealId": appeal_id, "reviewerHandle": entry["review"].get("reviewerHandle")},
                )
                continue
            payload = {
                "appealId": appeal_id,
                "resourceId": resource_id,
                "content": "Appeal accepted. Score adjusted." if accepted else "Appeal rejected. Score stands.",
                "success": accepted,
            }
            try:
                await self.call(api.respond_to_appeal(appeal_id, payload))
            except ApiError as exc:
                self.log.warn("Appeal response failed", {"error": str(exc)})
                ctx.record_failure(exc, request_body=payload)
                continue
            self.log.info("Appeal response posted", {"appealId": appeal_id, "success": accepted})
            await self._update_appealed_item(ctx, api, entry, accepted)

        self.log.info(
            "Appeal responses processed", {"count": len(self.appeals)}, self.progress_for(ctx.step)
        )

    async def _update_appealed_item(self, ctx: StepContext, api, entry: Dict[str, Any], accepted: bool) -> None:
        item = entry.get("reviewItem") or {}
        item_id = to_string_id(item.get("id"))
        review_id = to_string_id((entry.get("review") or {}).get("id"))
        question_id = to_string_id(item.get("scorecardQuestionId"))
        initial = item.get("initialAnswer", item.get("finalAnswer"))
        if not item_id or not review_id or not question_id or initial is None:
            self.log.warn(
                "Missing review item details; skipping review item update after appeal response",
                {
                    "appealId": entry["appeal"].get("id"),
                    "reviewItemId": item_id,
                    "reviewId": review_id,
                    "scorecardQuestionId": question_id,
                    "hasInitialAnswer": initial is not None,
                },
            )
            return
        final_answer = final_answer_after_appeal(entry.get("question"), item, accepted)
        payload = {
            "scorecardQuestionId": question_id,
            "initialAnswer": str(initial),
            "finalAnswer": final_answer,
            "reviewId": review_id,
        }
        try:
            await self.call(api.update_review_item(item_id, payload))
        except ApiError as exc:
            self.log.warn("Failed to update review item", {"error": str(exc)})
            ctx.record_failure(exc, request_body={"reviewItemId": item_id, **payload})
            return
        self.log.info(
            "Review item updated",
            {"reviewItemId": item_id, "reviewId": review_id, "finalAnswer": final_answer},
        )
