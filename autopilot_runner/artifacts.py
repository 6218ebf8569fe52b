"""Submission artifact loading and upload."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Dict, List, Optional, Protocol

import httpx
from pydantic import BaseModel

from .contracts import CallOutcome
from .errors import ApiError, ArtifactError
from .recording import StepContext
from .utils.ids import short_id

logger = logging.getLogger(__name__)

DEFAULT_BUCKET = "topcoder-dev-submissions-dmz"


class SubmissionArtifact(BaseModel):
    absolute_path: str
    content: bytes
    size: int
    content_type: str = "application/zip"


class UploadResult(BaseModel):
    key: str
    url: str
    etag: Optional[str] = None


def _read_artifact(source_path: str) -> SubmissionArtifact:
    path = Path(source_path)
    if not path.is_absolute():
        path = Path.cwd() / path
    path = path.resolve()
    if not path.exists():
        raise ArtifactError(f"Submission zip file not found at {path}")
    if not path.is_file():
        raise ArtifactError(f"Submission zip path {path} is not a file")
    content = path.read_bytes()
    return SubmissionArtifact(absolute_path=str(path), content=content, size=len(content))


async def load_submission_artifact(source_path: str) -> SubmissionArtifact:
    """Read the submission zip at ``source_path`` (relative to the cwd)."""
    return await asyncio.to_thread(_read_artifact, source_path)


class ArtifactStore(Protocol):
    """Object storage for submission packages."""

    async def upload(
        self, artifact: SubmissionArtifact, recorder: Optional[StepContext] = None
    ) -> UploadResult:
        ...


class HttpArtifactStore:
    """Upload artifacts with a plain HTTP ``PUT`` to the bucket endpoint."""

    def __init__(
        self,
        bucket: str = DEFAULT_BUCKET,
        region: str = "us-east-1",
        public_base_url: str = "https://s3.amazonaws.com",
        upload_base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 60.0,
    ) -> None:
        self.bucket = bucket
        self.region = region
        self.public_base_url = public_base_url.rstrip("/")
        self.upload_base_url = (
            upload_base_url or f"https://{bucket}.s3.{region}.amazonaws.com"
        ).rstrip("/")
        self._transport = transport
        self._timeout = timeout

    async def upload(
        self, artifact: SubmissionArtifact, recorder: Optional[StepContext] = None
    ) -> UploadResult:
        key = f"{short_id(24)}.zip"
        record_id = f"s3-upload-{key}"
        endpoint = f"s3://{self.bucket}/{key}"
        request_body = {
            "path": artifact.absolute_path,
            "size": artifact.size,
            "bucket": self.bucket,
            "region": self.region,
        }
        logger.info(f"Uploading submission artifact {artifact.absolute_path} to {endpoint}")
        if recorder is not None:
            recorder.record_request(record_id, method="PUT", endpoint=endpoint, request_body=request_body)

        started = time.monotonic()
        status = None
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.put(
                    f"{self.upload_base_url}/{key}",
                    content=artifact.content,
                    headers={
                        "Content-Type": artifact.content_type,
                        "Content-Length": str(artifact.size),
                    },
                )
            status = response.status_code
            response.raise_for_status()
        except httpx.HTTPError as exc:
            duration = int((time.monotonic() - started) * 1000)
            message = str(exc) or exc.__class__.__name__
            logger.error(f"Failed to upload submission artifact to {endpoint}: {message}")
            if recorder is not None:
                recorder.record_request(
                    record_id,
                    status=status,
                    message=message,
                    response_body={"name": exc.__class__.__name__},
                    duration_ms=duration,
                    outcome=CallOutcome.FAILURE,
                )
            raise ApiError(
                message,
                method="PUT",
                endpoint=endpoint,
                status=status,
                request_body=request_body,
                duration_ms=duration,
                request_id=record_id,
            ) from exc

        duration = int((time.monotonic() - started) * 1000)
        etag = response.headers.get("etag")
        if recorder is not None:
            recorder.record_request(
                record_id,
                status=status,
                response_headers={"etag": etag} if etag else None,
                duration_ms=duration,
                outcome=CallOutcome.SUCCESS,
            )
        url = f"{self.public_base_url}/{self.bucket}/{key}"
        logger.info(f"Submission artifact uploaded to {url} ({duration}ms)")
        return UploadResult(key=key, url=url, etag=etag)


class InMemoryArtifactStore:
    """Keeps uploaded artifacts in memory."""

    def __init__(self, bucket: str = DEFAULT_BUCKET) -> None:
        self.bucket = bucket
        self.objects: Dict[str, bytes] = {}
        self.uploads: List[UploadResult] = []

    async def upload(
        self, artifact: SubmissionArtifact, recorder: Optional[StepContext] = None
    ) -> UploadResult:
        key = f"{short_id(24)}.zip"
        self.objects[key] = artifact.content
        result = UploadResult(key=key, url=f"memory://{self.bucket}/{key}")
        if recorder is not None:
            recorder.record_request(
                f"s3-upload-{key}",
                method="PUT",
                endpoint=f"memory://{self.bucket}/{key}",
                request_body={"path": artifact.absolute_path, "size": artifact.size},
                status=200,
            )
        self.uploads.append(result)
        return result
