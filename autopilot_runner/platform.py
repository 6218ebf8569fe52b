"""Async client for the challenge platform API.

Every call made through a :class:`PlatformSession` is recorded on the step
context the session was bound to, so the step stream shows each request and
its outcome.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from .contracts import CallOutcome
from .errors import ApiError
from .recording import StepContext

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.topcoder-dev.com/v6"

METHODS_WITH_BODY = {"POST", "PUT", "PATCH"}


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class PlatformClient:
    """Thin wrapper around one ``httpx.AsyncClient``."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def bind(self, token: str, recorder: Optional[StepContext] = None) -> "PlatformSession":
        return PlatformSession(self, token, recorder)

    async def request(
        self,
        method: str,
        path: str,
        *,
        token: str,
        recorder: Optional[StepContext] = None,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        method = method.upper()
        url = self.url(path)
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        request_body = json if method in METHODS_WITH_BODY else None
        logger.debug(f"-> {method} {url} params={params}")
        started = time.monotonic()
        try:
            response = await self._client.request(
                method, url, json=json, params=params, headers=headers
            )
        except httpx.HTTPError as exc:
            duration = int((time.monotonic() - started) * 1000)
            message = str(exc) or exc.__class__.__name__
            logger.warning(f"<- {method} {url} error ({duration}ms): {message}")
            record_id = self._record(
                recorder,
                method=method,
                endpoint=url,
                message=message,
                request_body=request_body,
                duration_ms=duration,
                outcome=CallOutcome.FAILURE,
            )
            raise ApiError(
                message,
                method=method,
                endpoint=url,
                request_body=request_body,
                duration_ms=duration,
                request_id=record_id,
            ) from exc

        duration = int((time.monotonic() - started) * 1000)
        endpoint = str(response.request.url)
        body = _parse_body(response)
        response_headers = dict(response.headers)

        if response.is_error:
            message = f"Request failed with status code {response.status_code}"
            logger.warning(f"<- {method} {endpoint} {response.status_code} ({duration}ms)")
            record_id = self._record(
                recorder,
                method=method,
                endpoint=endpoint,
                status=response.status_code,
                message=message,
                request_body=request_body,
                response_body=body,
                response_headers=response_headers,
                duration_ms=duration,
                outcome=CallOutcome.FAILURE,
            )
            raise ApiError(
                message,
                method=method,
                endpoint=endpoint,
                status=response.status_code,
                request_body=request_body,
                response_body=body,
                response_headers=response_headers,
                duration_ms=duration,
                request_id=record_id,
            )

        logger.debug(f"<- {method} {endpoint} {response.status_code} ({duration}ms)")
        self._record(
            recorder,
            method=method,
            endpoint=endpoint,
            status=response.status_code,
            request_body=request_body,
            response_body=body,
            response_headers=response_headers,
            duration_ms=duration,
            outcome=CallOutcome.SUCCESS,
        )
        return body

    @staticmethod
    def _record(recorder: Optional[StepContext], **detail: Any) -> Optional[str]:
        if recorder is None:
            return None
        return recorder.record_request(**detail).id

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "PlatformClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


class PlatformSession:
    """Platform operations bound to one token and one step context."""

    def __init__(self, client: PlatformClient, token: str, recorder: Optional[StepContext] = None) -> None:
        self.client = client
        self.token = token
        self.recorder = recorder

    async def _call(self, method: str, path: str, *, json: Any = None, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.client.request(
            method, path, token=self.token, recorder=self.recorder, json=json, params=params
        )

    # ------------------------------------------------------------------
    # Challenges
    async def create_challenge(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call("POST", "/challenges", json=payload)

    async def update_challenge(self, challenge_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call("PUT", f"/challenges/{challenge_id}", json=payload)

    async def patch_challenge(self, challenge_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call("PATCH", f"/challenges/{challenge_id}", json=payload)

    async def activate_challenge(self, challenge_id: str) -> Dict[str, Any]:
        return await self.patch_challenge(challenge_id, {"status": "ACTIVE"})

    async def get_challenge(self, challenge_id: str) -> Dict[str, Any]:
        return await self._call("GET", f"/challenges/{challenge_id}")

    # ------------------------------------------------------------------
    # Members and resources
    async def get_member(self, handle: str) -> Dict[str, Any]:
        return await self._call("GET", f"/members/{quote(handle, safe='')}")

    async def list_resource_roles(self) -> List[Dict[str, Any]]:
        return await self._call("GET", "/resource-roles")

    async def list_resources(self, challenge_id: str) -> Any:
        return await self._call("GET", "/resources", params={"challengeId": challenge_id})

    async def add_resource(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call("POST", "/resources", json=payload)

    # ------------------------------------------------------------------
    # Submissions, scorecards and reviews
    async def create_submission(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call("POST", "/submissions", json=payload)

    async def get_scorecard(self, scorecard_id: str) -> Dict[str, Any]:
        return await self._call("GET", f"/scorecards/{scorecard_id}")

    async def create_review(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call("POST", "/reviews", json=payload)

    async def update_review(self, review_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call("PATCH", f"/reviews/{review_id}", json=payload)

    async def list_reviews(self, challenge_id: str) -> Any:
        return await self._call("GET", "/reviews", params={"challengeId": challenge_id})

    async def list_review_types(self, per_page: int = 100) -> Any:
        return await self._call("GET", "/review-types", params={"perPage": per_page})

    async def update_review_item(self, item_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call("PATCH", f"/review-items/{item_id}", json=payload)

    # ------------------------------------------------------------------
    # Appeals
    async def create_appeal(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call("POST", "/appeals", json=payload)

    async def respond_to_appeal(self, appeal_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call("POST", f"/appeals/{appeal_id}/response", json=payload)

    # ------------------------------------------------------------------
    # Reference data
    async def list_challenge_types(self) -> Any:
        return await self._call("GET", "/challenge-types")

    async def list_challenge_tracks(self) -> Any:
        return await self._call("GET", "/challenge-tracks")

    async def list_scorecards(self, challenge_type: str, challenge_track: str) -> Any:
        if not challenge_type or not challenge_track:
            raise ValueError("challengeType and challengeTrack are required when fetching scorecards")
        return await self._call(
            "GET",
            "/scorecards",
            params={
                "challengeType": challenge_type,
                "challengeTrack": challenge_track.upper(),
                "perPage": 100,
            },
        )
