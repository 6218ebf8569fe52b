"""Scorecard, review and appeal helpers shared by the flow machines."""

from __future__ import annotations

import logging
import random
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..cancellation import CancellationToken
from ..errors import ApiError
from ..events import RunLogger
from ..persistence import ChallengeResource
from ..utils.ids import collect_ids, to_string_id

logger = logging.getLogger(__name__)

PENDING_STATUSES = ("PENDING", "IN_PROGRESS")
DEFAULT_REVIEW_TYPE_ID = "REVIEW"

ITERATIVE_PASS_COMMENT = "\n".join(
    [
        "**Status:** ✅ Passed iterative review",
        "",
        "### Validation Notes",
        "- [x] Automated smoke tests completed",
        "- [x] Lint checks are clean",
        "",
        "`Command:` `npm run verify`",
        "",
        "![Passing evidence](https://placehold.co/640x320?text=Passing+Evidence)",
        "![Log excerpt](https://placehold.co/640x320?text=System+Logs)",
        "",
        "> _Markdown payload for validation purposes._",
    ]
)

ITERATIVE_FAIL_COMMENT = "\n".join(
    [
        "**Status:** ❌ Changes requested",
        "",
        "### Findings",
        "1. UI regression detected on primary button.",
        "2. Automated tests surfaced a failing contract check.",
        "",
        "`Command:` `npm run lint && npm test`",
        "",
        "![Blocking issue](https://placehold.co/640x320?text=Blocking+Issue)",
        "![Error logs](https://placehold.co/640x320?text=Error+Logs)",
        "",
        "> Please address the findings and resubmit.",
    ]
)


# ----------------------------------------------------------------------
# Response shapes


def as_list(response: Any) -> List[Any]:
    """Return the records of a list response (bare array or ``{data: [...]}``)."""
    if isinstance(response, list):
        return response
    if isinstance(response, dict) and isinstance(response.get("data"), list):
        return response["data"]
    return []


def collect_questions(scorecard: Any) -> List[Dict[str, Any]]:
    """Flatten ``scorecardGroups -> sections -> questions``."""
    questions: List[Dict[str, Any]] = []
    if not isinstance(scorecard, dict):
        return questions
    for group in scorecard.get("scorecardGroups") or []:
        for section in (group or {}).get("sections") or []:
            for question in (section or {}).get("questions") or []:
                if isinstance(question, dict) and question.get("id") is not None:
                    questions.append(question)
    return questions


def normalize_resources(resources: Iterable[Any]) -> List[ChallengeResource]:
    normalized: List[ChallengeResource] = []
    for res in resources or []:
        if not isinstance(res, dict) or res.get("id") is None:
            continue
        handle = res.get("memberHandle")
        normalized.append(
            ChallengeResource(
                id=str(res["id"]),
                member_id=str(res["memberId"]) if res.get("memberId") is not None else None,
                member_handle=handle if isinstance(handle, str) else None,
                role_id=str(res["roleId"]) if res.get("roleId") is not None else None,
            )
        )
    return normalized


def resource_id_for_handle(
    resources: Sequence[ChallengeResource], handle: str, role_id: Optional[str] = None
) -> Optional[str]:
    """Return the resource id of ``handle``, preferring the one holding ``role_id``."""
    if not handle:
        return None
    entries = [
        r for r in resources if r.member_handle and r.member_handle.lower() == handle.lower()
    ]
    if not entries:
        return None
    if role_id:
        for entry in entries:
            if entry.role_id == role_id:
                return entry.id
    return entries[0].id


def added_resource_id(added: Any) -> Optional[str]:
    if not isinstance(added, dict):
        return None
    return to_string_id(added.get("id")) or to_string_id(added.get("resourceId"))


def is_pending(review: Any) -> bool:
    status = review.get("status") if isinstance(review, dict) else None
    return isinstance(status, str) and status.upper() in PENDING_STATUSES


# ----------------------------------------------------------------------
# Pending review matching


def _is_iterative(review: Dict[str, Any]) -> bool:
    metadata = review.get("metadata") if isinstance(review.get("metadata"), dict) else {}
    hints = collect_ids(review, ("type", "typeId", "reviewType")) + collect_ids(
        metadata, ("reviewType",)
    )
    return any("ITERATIVE" in hint.upper() for hint in hints)


def _phase_ids(review: Dict[str, Any]) -> List[str]:
    metadata = review.get("metadata") if isinstance(review.get("metadata"), dict) else {}
    return collect_ids(review, ("phaseId", "phase_id", "reviewPhaseId")) + collect_ids(
        metadata, ("phaseId", "reviewPhaseId")
    )


def find_pending_review(
    reviews: Iterable[Any],
    submission_id: str,
    resource_id: Optional[str] = None,
    phase_ids: Sequence[str] = (),
    exclude: Iterable[str] = (),
) -> Optional[Dict[str, Any]]:
    """Locate the pending review of ``submission_id``.

    Reviews held by ``resource_id`` win, narrowed by phase and then by
    iterative type. Without a resource match, a phase or iterative hint is
    used only when it singles out one review, and finally the only pending
    review of the submission is taken. Reviews that name a phase other than
    ``phase_ids`` are skipped there. Anything ambiguous returns ``None``.
    """
    wanted_phases = {pid for pid in (to_string_id(p) for p in phase_ids) if pid}
    wanted_resource = to_string_id(resource_id)
    excluded = set(exclude)

    candidates = []
    for review in reviews or []:
        if not isinstance(review, dict) or not is_pending(review):
            continue
        if to_string_id(review.get("submissionId")) != to_string_id(submission_id):
            continue
        if to_string_id(review.get("id")) in excluded:
            continue
        own_phases = set(_phase_ids(review))
        candidates.append(
            {
                "review": review,
                "resource": wanted_resource is not None
                and to_string_id(review.get("resourceId")) == wanted_resource,
                "phase": bool(wanted_phases & own_phases),
                "other_phase": bool(wanted_phases and own_phases and not wanted_phases & own_phases),
                "iterative": _is_iterative(review),
            }
        )

    for tier in (
        lambda c: c["resource"] and c["phase"],
        lambda c: c["resource"] and c["iterative"],
        lambda c: c["resource"],
    ):
        matched = [c for c in candidates if tier(c)]
        if matched:
            return matched[0]["review"]

    eligible = [c for c in candidates if not c["other_phase"]]
    for tier in (
        lambda c: c["phase"] and c["iterative"],
        lambda c: c["phase"],
        lambda c: c["iterative"],
        lambda c: True,
    ):
        matched = [c for c in eligible if tier(c)]
        if len(matched) == 1:
            return matched[0]["review"]
        if len(matched) > 1:
            return None
    return None


# ----------------------------------------------------------------------
# Review items


def random_review_items(
    questions: Sequence[Dict[str, Any]], rng: random.Random
) -> List[Dict[str, Any]]:
    """Randomised answers for a standard review."""
    items = []
    for q in questions:
        if q.get("type") == "YES_NO":
            items.append(
                {
                    "scorecardQuestionId": q["id"],
                    "initialAnswer": rng.choice(["YES", "NO"]),
                    "reviewItemComments": [
                        {
                            "content": f"Auto review for {q.get('description')}",
                            "type": rng.choice(["COMMENT", "REQUIRED", "RECOMMENDED"]),
                            "sortOrder": 1,
                        }
                    ],
                }
            )
        elif q.get("type") == "SCALE":
            low, high = q.get("scaleMin") or 1, q.get("scaleMax") or 10
            items.append(
                {
                    "scorecardQuestionId": q["id"],
                    "initialAnswer": str(rng.randint(low, high)),
                    "reviewItemComments": [
                        {
                            "content": f"Auto review score between {q.get('scaleMin')}-{q.get('scaleMax')}",
                            "type": rng.choice(["COMMENT", "REQUIRED", "RECOMMENDED"]),
                            "sortOrder": 1,
                        }
                    ],
                }
            )
        else:
            items.append(
                {
                    "scorecardQuestionId": q["id"],
                    "initialAnswer": "YES",
                    "reviewItemComments": [{"content": "Auto answer", "type": "COMMENT", "sortOrder": 1}],
                }
            )
    return items


def outcome_review_items(questions: Sequence[Dict[str, Any]], outcome: str) -> List[Dict[str, Any]]:
    """Deterministic pass/fail answers with the iterative markdown comment."""
    passed = outcome == "pass"
    comment = ITERATIVE_PASS_COMMENT if passed else ITERATIVE_FAIL_COMMENT
    items = []
    for q in questions:
        if q.get("type") == "SCALE":
            low = q["scaleMin"] if isinstance(q.get("scaleMin"), (int, float)) else 0
            high = q["scaleMax"] if isinstance(q.get("scaleMax"), (int, float)) else 100
            answer = str(high if passed else max(low, int(high * 0.4)))
        else:
            answer = "YES" if passed else "NO"
        items.append(
            {
                "scorecardQuestionId": q["id"],
                "initialAnswer": answer,
                "reviewItemComments": [{"content": comment, "type": "COMMENT", "sortOrder": 1}],
            }
        )
    return items


def markdown_comment(question: Dict[str, Any], answer: str, extra_lines: Sequence[str] = ()) -> str:
    description = question.get("description")
    description = description.strip() if isinstance(description, str) else ""
    if not description:
        description = f"Question {question.get('id', '')}".strip() or "Review item"
    lines = [
        "### Automated Review Summary",
        "",
        f"**Question:** {description}",
        f"**Recorded Answer:** {answer}",
    ]
    if extra_lines:
        lines += ["", *extra_lines]
    lines += ["", "```bash", "npm run verify", "```"]
    return "\n".join(lines)


def scripted_review_items(
    questions: Sequence[Dict[str, Any]],
    rng: random.Random,
    passed: Optional[bool] = None,
    existing_items: Iterable[Any] = (),
) -> List[Dict[str, Any]]:
    """Design review answers.

    ``passed`` forces every answer to the top (or bottom) of its range;
    ``None`` answers randomly. Ids of ``existing_items`` are kept so the
    patch updates the items the platform already created.
    """
    existing = {
        str(item["scorecardQuestionId"]): item
        for item in existing_items or []
        if isinstance(item, dict) and item.get("scorecardQuestionId") is not None
    }
    items = []
    for q in questions:
        if q.get("type") == "YES_NO":
            answer = rng.choice(["YES", "NO"]) if passed is None else ("YES" if passed else "NO")
        elif q.get("type") == "SCALE":
            low = q["scaleMin"] if isinstance(q.get("scaleMin"), (int, float)) else 1
            high = q["scaleMax"] if isinstance(q.get("scaleMax"), (int, float)) else 10
            value = rng.randint(int(low), int(high)) if passed is None else (high if passed else low)
            answer = str(value)
        else:
            answer = "YES" if passed in (None, True) else "NO"
        payload: Dict[str, Any] = {
            "scorecardQuestionId": q["id"],
            "initialAnswer": answer,
            "reviewItemComments": [
                {"content": markdown_comment(q, answer), "type": "COMMENT", "sortOrder": 1}
            ],
        }
        current = existing.get(str(q["id"]))
        if current is not None and current.get("id") is not None:
            payload["id"] = current["id"]
        items.append(payload)
    return items


# ----------------------------------------------------------------------
# Appeals


def _number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if number == number and number not in (float("inf"), float("-inf")) else None


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def final_answer_after_appeal(
    question: Optional[Dict[str, Any]], review_item: Dict[str, Any], accepted: bool
) -> str:
    """Answer recorded on a review item once its appeal has been answered.

    An accepted appeal flips a NO to YES, or raises a numeric answer by one
    without going past the question's scale maximum. A rejected appeal keeps
    the existing final answer, else the initial one.
    """
    initial = str(review_item.get("initialAnswer", review_item.get("finalAnswer")))
    existing_final = (
        str(review_item["finalAnswer"]) if review_item.get("finalAnswer") is not None else None
    )
    if not accepted:
        return existing_final or initial

    question = question or {}
    question_type = question.get("type")
    if isinstance(question_type, str) and question_type.upper() == "YES_NO":
        normalized = initial.strip().upper()
        return "YES" if normalized == "NO" else (normalized or "YES")

    initial_number = _number(initial)
    if initial_number is None:
        return initial
    final_number = _number(existing_final)
    scale_max = _number(question.get("scaleMax", review_item.get("scaleMax")))
    target = (
        final_number
        if final_number is not None and final_number > initial_number
        else initial_number + 1
    )
    if scale_max is not None:
        target = min(target, scale_max)
    if target < initial_number:
        target = min(scale_max, initial_number + 1) if scale_max is not None else initial_number
    return _format_number(target)


# ----------------------------------------------------------------------
# Review types


class ReviewTypeResolver:
    """Resolve a review type id from phase names using the active review types.

    The lookup is loaded once per run and a missing match is warned about
    once per set of phase names.
    """

    def __init__(
        self,
        log: RunLogger,
        cancel: CancellationToken,
        attempts: int = 3,
        retry_interval: float = 0.5,
    ) -> None:
        self.log = log
        self.cancel = cancel
        self.attempts = attempts
        self.retry_interval = retry_interval
        self._lookup: Optional[Dict[str, Dict[str, str]]] = None
        self._warned: set = set()

    @staticmethod
    def _records(response: Any) -> List[Any]:
        if isinstance(response, list):
            return response
        if not isinstance(response, dict):
            return []
        result = response.get("result") if isinstance(response.get("result"), dict) else {}
        for candidate in (
            result.get("content"),
            response.get("content"),
            result.get("data"),
            response.get("data"),
        ):
            if isinstance(candidate, list):
                return candidate
        return []

    async def lookup(self, api) -> Dict[str, Dict[str, str]]:
        if self._lookup is not None:
            return self._lookup
        for attempt in range(self.attempts):
            self.cancel.check()
            if attempt == 0:
                self.log.info("Loading review types from API...")
            try:
                response = await api.list_review_types(per_page=100)
            except ApiError as exc:
                self.log.warn("Failed to load review types", {"attempt": attempt + 1, "error": str(exc)})
            else:
                self.cancel.check()
                lookup: Dict[str, Dict[str, str]] = {}
                for item in self._records(response):
                    if not isinstance(item, dict) or item.get("isActive") is not True:
                        continue
                    name = item.get("name").strip() if isinstance(item.get("name"), str) else ""
                    type_id = to_string_id(item.get("id"))
                    if name and type_id:
                        lookup.setdefault(name.lower(), {"id": type_id, "name": name})
                self.log.info("Active review types loaded", {"count": len(lookup)})
                self._lookup = lookup
                return lookup
            if attempt < self.attempts - 1:
                await self.cancel.wait(self.retry_interval)
        self._lookup = {}
        return self._lookup

    async def resolve(self, api, phase_names: Sequence[str]) -> Optional[str]:
        candidates = [name.strip() for name in phase_names if isinstance(name, str) and name.strip()]
        if not candidates:
            return None
        lookup = await self.lookup(api)
        for candidate in candidates:
            entry = lookup.get(candidate.lower())
            if entry:
                return entry["id"]
        key = "|".join(c.lower() for c in candidates)
        if key not in self._warned:
            self._warned.add(key)
            self.log.warn(
                "No matching active review type found for phase names"
                if lookup
                else "No active review types available to match phase names",
                {
                    "phaseCandidates": candidates,
                    "activeReviewTypeNames": [entry["name"] for entry in lookup.values()],
                },
            )
        return None
