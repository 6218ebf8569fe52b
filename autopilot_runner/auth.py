"""Machine-to-machine token acquisition."""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Optional, Tuple

import httpx
import jwt
from pydantic import BaseModel, ConfigDict, Field

from .contracts import CallOutcome
from .errors import ApiError, ConfigurationError
from .recording import StepContext

logger = logging.getLogger(__name__)


class M2MSecrets(BaseModel):
    """Client credentials read from ``secrets/m2m.json``."""

    model_config = ConfigDict(populate_by_name=True)

    token_url: str = Field(alias="tokenUrl")
    audience: str
    client_id: str = Field(alias="clientId")
    client_secret: str = Field(alias="clientSecret")

    @classmethod
    def from_file(cls, path: str | Path) -> "M2MSecrets":
        secrets_path = Path(path)
        if not secrets_path.exists():
            raise ConfigurationError(
                "Missing secrets/m2m.json. Copy secrets/m2m.sample.json and fill your clientId/clientSecret."
            )
        try:
            return cls(**json.loads(secrets_path.read_text(encoding="utf-8")))
        except (ValueError, TypeError) as exc:
            raise ConfigurationError(f"Invalid secrets file {secrets_path}: {exc}") from exc


class TokenProvider:
    """Fetch and cache a client-credentials access token."""

    def __init__(
        self,
        secrets_path: str | Path = "secrets/m2m.json",
        secrets: Optional[M2MSecrets] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 15.0,
    ) -> None:
        self.secrets_path = secrets_path
        self._secrets = secrets
        self._transport = transport
        self._timeout = timeout
        self._cached: Optional[Tuple[str, int]] = None

    @property
    def secrets(self) -> M2MSecrets:
        if self._secrets is None:
            self._secrets = M2MSecrets.from_file(self.secrets_path)
        return self._secrets

    def clear(self) -> None:
        self._cached = None

    async def get_token(self, recorder: Optional[StepContext] = None) -> str:
        secrets = self.secrets
        now = int(time.time())
        if self._cached and self._cached[1] - 60 > now:
            return self._cached[0]

        payload = {
            "fresh_token": True,
            "client_id": secrets.client_id,
            "client_secret": secrets.client_secret,
            "audience": secrets.audience,
            "grant_type": "client_credentials",
        }
        started = time.monotonic()
        status = None
        body = None
        headers = None
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.post(
                    secrets.token_url, json=payload, headers={"content-type": "application/json"}
                )
            status = response.status_code
            headers = dict(response.headers)
            body = _parse_body(response)
            response.raise_for_status()
            token = body["access_token"]
        except (httpx.HTTPError, KeyError, TypeError) as exc:
            duration = int((time.monotonic() - started) * 1000)
            message = str(exc) or exc.__class__.__name__
            logger.warning(f"Token request failed: {message}")
            record_id = None
            if recorder is not None:
                record_id = recorder.record_request(
                    method="POST",
                    endpoint=secrets.token_url,
                    status=status,
                    message=message,
                    request_body=payload,
                    response_body=body,
                    response_headers=headers,
                    duration_ms=duration,
                    outcome=CallOutcome.FAILURE,
                ).id
            raise ApiError(
                message,
                method="POST",
                endpoint=secrets.token_url,
                status=status,
                request_body=payload,
                response_body=body,
                response_headers=headers,
                duration_ms=duration,
                request_id=record_id,
            ) from exc

        if recorder is not None:
            recorder.record_request(
                method="POST",
                endpoint=secrets.token_url,
                status=status,
                request_body=payload,
                response_body=body,
                response_headers=headers,
                duration_ms=int((time.monotonic() - started) * 1000),
                outcome=CallOutcome.SUCCESS,
            )
        self._cached = (token, _token_expiry(token, now))
        return token


def _token_expiry(token: str, now: int) -> int:
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return now + 3600
    exp = claims.get("exp")
    return int(exp) if isinstance(exp, (int, float)) else now + 3600


def _parse_body(response: httpx.Response):
    try:
        return response.json()
    except ValueError:
        return response.text or None
