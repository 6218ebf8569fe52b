"""Base class of the flow state machines."""

from __future__ import annotations

import logging
import random
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, ClassVar, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from ..artifacts import ArtifactStore
from ..auth import TokenProvider
from ..cancellation import CancellationToken, StopEarly
from ..contracts import RunMode
from ..errors import ApiError
from ..events import RunLogger
from ..persistence import SnapshotStore
from ..platform import PlatformClient, PlatformSession
from ..polling import PhasePoller
from ..recording import StepContext, StepExecutor
from ..utils.ids import short_id, to_string_id
from .reviews import collect_questions

logger = logging.getLogger(__name__)

TOKEN_STEP = "token"
JAVA_SKILL = {"name": "Java", "id": "63bb7cfc-b0d4-4584-820a-18c503b4b0fe"}
DESIGN_SKILL = {"name": "Design", "id": "63bb7cfc-b0d4-4584-820a-18c503b4b0fe"}
LEGACY_DIRECT_PROJECT_ID = 33540


class FlowTimings(BaseModel):
    """Poll intervals and retry limits, in seconds."""

    phase_interval: float = 10.0
    iterative_interval: float = 5.0
    review_interval: float = 5.0
    review_attempts: int = 12
    lookup_interval: float = 0.5
    submission_delay: float = 10.0
    late_transition_grace: float = 15.0


def _snake(step: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", step).lower()


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class BaseFlow:
    """Ordered, cancellable sequence of named steps for one challenge type.

    Each step name maps to a ``step_<snake_name>`` coroutine taking the
    step context. Subclasses declare ``steps`` and may narrow the executed
    plan by overriding :meth:`plan`.
    """

    name: ClassVar[str] = "flow"
    steps: ClassVar[Tuple[str, ...]] = ()
    complete_message: ClassVar[str] = "Flow complete"

    def __init__(
        self,
        config: Any,
        *,
        platform: PlatformClient,
        token_provider: TokenProvider,
        artifact_store: ArtifactStore,
        snapshot_store: SnapshotStore,
        log: Optional[RunLogger] = None,
        cancel: Optional[CancellationToken] = None,
        timings: Optional[FlowTimings] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config
        self.platform = platform
        self.token_provider = token_provider
        self.artifact_store = artifact_store
        self.snapshots = snapshot_store
        self.log = log or RunLogger()
        self.cancel = cancel or CancellationToken()
        self.timings = timings or FlowTimings()
        self.rng = rng or random.Random()
        self.executor = StepExecutor(self.log)
        self.poller = PhasePoller(
            self.log,
            self.cancel,
            interval=self.timings.phase_interval,
            grace=self.timings.late_transition_grace,
        )
        self.token: Optional[str] = None
        self.challenge_id: Optional[str] = None
        self.challenge_name: Optional[str] = None

    # ------------------------------------------------------------------
    # Plan and progress
    @classmethod
    def plan_for(cls, config: Any, **options: Any) -> List[str]:
        """Steps a flow built from ``config`` and ``options`` would execute."""
        return list(cls.steps)

    def plan(self) -> List[str]:
        """Steps executed by this run, in order."""
        return list(self.steps)

    def progress_for(self, step: str) -> Optional[float]:
        progress_steps = [s for s in self.plan() if s != TOKEN_STEP]
        if step not in progress_steps:
            return None
        return round((progress_steps.index(step) + 1) / len(progress_steps) * 100, 2)

    def maybe_stop(self, mode: RunMode, to_step: Optional[str], current: str) -> None:
        if mode == RunMode.TO_STEP and to_step == current:
            self.log.info(f"Stopping at step '{current}' as requested", {"step": current}, 100)
            raise StopEarly(current)

    def handler(self, step: str) -> Callable[[StepContext], Awaitable[Any]]:
        runner = getattr(self, f"step_{_snake(step)}", None)
        if runner is None:
            raise NotImplementedError(f"{type(self).__name__} has no handler for step '{step}'")
        return runner

    # ------------------------------------------------------------------
    # Run
    async def run(self, mode: RunMode = RunMode.FULL, to_step: Optional[str] = None) -> None:
        """Execute the plan, or stop right after ``to_step`` in ``toStep`` mode.

        Raises:
            StopEarly: once ``to_step`` has completed.
            RunCancelled: at the first check or wait after cancellation.
        """
        mode = RunMode(mode)
        plan = self.plan()
        if mode == RunMode.TO_STEP and to_step not in plan:
            raise ValueError(f"Unknown step '{to_step}' for the {self.name} flow")

        self.cancel.on_cancel_observed(lambda: self.log.info("Cancellation requested"))
        await self.snapshots.reset()
        self.executor.initialize(plan)

        for step in plan:
            self.cancel.check()
            await self.executor.run(step, self.handler(step))
            self.maybe_stop(mode, to_step, step)

        self.log.info(self.complete_message, {"challengeId": self.challenge_id}, 100)

    # ------------------------------------------------------------------
    # Helpers
    def api(self, ctx: Optional[StepContext] = None) -> PlatformSession:
        if self.token is None:
            raise RuntimeError("No access token; the token step has not run")
        return self.platform.bind(self.token, ctx)

    async def call(self, awaitable: Awaitable[Any]) -> Any:
        """Await a remote call between two cancellation checks."""
        self.cancel.check()
        result = await awaitable
        self.cancel.check()
        return result

    async def member_id(self, api: PlatformSession, handle: str) -> str:
        member = await self.call(api.get_member(handle))
        return str(member.get("userId"))

    async def load_questions(self, api: PlatformSession, scorecard_id: str) -> List[Dict[str, Any]]:
        scorecard = await self.call(api.get_scorecard(scorecard_id))
        return collect_questions(scorecard)

    async def await_phases(
        self,
        ctx: StepContext,
        must_open: Sequence[str],
        must_closed: Sequence[str] = (),
        interval: Optional[float] = None,
    ) -> Dict[str, Any]:
        return await self.poller.await_phases(
            self.api(ctx),
            self.challenge_id,
            list(must_open),
            list(must_closed),
            stage=ctx.step,
            progress=self.progress_for(ctx.step),
            interval=interval,
        )

    def challenge_payload(self, name: str) -> Dict[str, Any]:
        return {
            "name": name,
            "typeId": self.config.challenge_type_id,
            "trackId": self.config.challenge_track_id,
            "timelineTemplateId": self.config.timeline_template_id,
            "projectId": self.config.project_id,
            "status": "NEW",
            "description": "End-to-end test",
        }

    def draft_payload(
        self,
        description: str,
        prize_sets: List[Dict[str, Any]],
        *,
        reviewers: Optional[List[Dict[str, Any]]] = None,
        skill: Optional[Dict[str, str]] = None,
        direct_project_id: int = LEGACY_DIRECT_PROJECT_ID,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "typeId": self.config.challenge_type_id,
            "trackId": self.config.challenge_track_id,
            "name": f"{self.config.challenge_name_prefix}{short_id(6)}",
            "description": description,
            "tags": [],
            "groups": [],
            "metadata": [],
            "startDate": now_iso(),
            "prizeSets": prize_sets,
            "winners": [],
            "discussions": [],
            "task": {"isTask": False, "isAssigned": False},
            "skills": [skill or JAVA_SKILL],
            "legacy": {
                "reviewType": "COMMUNITY",
                "confidentialityType": "public",
                "directProjectId": direct_project_id,
                "isTask": False,
                "useSchedulingAPI": False,
                "pureV5Task": False,
                "pureV5": False,
                "selfService": False,
            },
            "timelineTemplateId": self.config.timeline_template_id,
            "projectId": self.config.project_id,
            "status": "DRAFT",
            "attachmentIds": [],
        }
        if reviewers is not None:
            body["reviewers"] = reviewers
        return body

    @staticmethod
    def placement_prizes(values: Sequence[float]) -> List[Dict[str, Any]]:
        return [
            {"type": "PLACEMENT", "prizes": [{"type": "USD", "value": v} for v in values]},
            {"type": "COPILOT", "prizes": [{"type": "USD", "value": 100}]},
        ]

    async def sanity_check_reviewer_phases(
        self, api: PlatformSession, reviewers: Sequence[Dict[str, Any]]
    ) -> None:
        """Warn when a draft reviewer's phase id is not a phase template id."""
        try:
            challenge = await self.call(api.get_challenge(self.challenge_id))
        except ApiError as exc:
            self.log.warn(
                "Reviewer phaseId sanity check failed (non-fatal)",
                {"challengeId": self.challenge_id, "error": str(exc)},
            )
            return
        phases = [p for p in challenge.get("phases") or [] if isinstance(p, dict)]
        template_ids = {
            pid for pid in (to_string_id(p.get("phaseId")) or to_string_id(p.get("phase_id")) for p in phases) if pid
        }
        runtime_ids = {pid for pid in (to_string_id(p.get("id")) for p in phases) if pid}
        unknown = [
            r["phaseId"] for r in reviewers if r.get("phaseId") and r["phaseId"] not in template_ids
        ]
        if unknown:
            self.log.warn(
                "Reviewer phaseId sanity check: some IDs are not template IDs",
                {
                    "challengeId": self.challenge_id,
                    "unknownPhaseIds": sorted(set(unknown)),
                    "lookLikeRuntimeIds": sorted(set(unknown) & runtime_ids),
                    "knownTemplateIdsCount": len(template_ids),
                },
            )
        else:
            self.log.info(
                "Reviewer phaseId sanity check passed",
                {
                    "challengeId": self.challenge_id,
                    "reviewers": len(reviewers),
                    "templateIds": len(template_ids),
                },
            )

    # ------------------------------------------------------------------
    # Steps shared by every flow
    async def step_token(self, ctx: StepContext) -> str:
        self.cancel.check()
        self.log.info("Generating M2M token...")
        self.token = await self.token_provider.get_token(ctx)
        self.cancel.check()
        self.log.info("Token acquired")
        return self.token

    async def step_create_challenge(self, ctx: StepContext) -> Dict[str, Any]:
        self.cancel.check()
        self.log.info(f"Creating {self.name} challenge...")
        name = f"{self.config.challenge_name_prefix}{short_id(8)}"
        payload = self.challenge_payload(name)
        challenge = await self.call(self.api(ctx).create_challenge(payload))
        self.challenge_id = str(challenge["id"])
        self.challenge_name = challenge.get("name") or name
        await self.snapshots.write(
            {"challenge_id": self.challenge_id, "challenge_name": self.challenge_name}
        )
        self.log.info(
            "Challenge created",
            {"id": self.challenge_id, "name": name, "request": payload, "responseId": self.challenge_id},
            self.progress_for(ctx.step),
        )
        return challenge

    async def step_activate(self, ctx: StepContext) -> Dict[str, Any]:
        self.cancel.check()
        self.log.info("Activating challenge...")
        active = await self.call(self.api(ctx).activate_challenge(self.challenge_id))
        self.log.info(
            "Challenge set ACTIVE",
            {"challengeId": self.challenge_id, "request": {"status": "ACTIVE"}},
            self.progress_for(ctx.step),
        )
        return active

    async def step_await_all_closed(self, ctx: StepContext) -> Dict[str, Any]:
        self.log.info("Waiting for all phases to be closed...")
        challenge = await self.poller.await_condition(
            self.api(ctx),
            self.challenge_id,
            lambda ch: all(p.get("isOpen") is False for p in ch.get("phases") or []),
            stage=ctx.step,
        )
        self.log.info("All phases are closed", None, self.progress_for(ctx.step))
        return challenge

    async def step_await_completion(self, ctx: StepContext) -> Dict[str, Any]:
        self.log.info("Waiting for challenge to reach COMPLETED and winners set...")
        challenge = await self.poller.await_condition(
            self.api(ctx),
            self.challenge_id,
            lambda ch: ch.get("status") == "COMPLETED" and bool(ch.get("winners")),
            stage=ctx.step,
        )
        self.log.info(
            "Challenge completed with winners",
            {"winners": challenge.get("winners")},
            self.progress_for(ctx.step),
        )
        return challenge
