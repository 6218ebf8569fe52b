import httpx
import pytest

from autopilot_runner.artifacts import HttpArtifactStore, InMemoryArtifactStore, load_submission_artifact
from autopilot_runner.contracts import CallOutcome
from autopilot_runner.errors import ApiError, ArtifactError
from autopilot_runner.recording import StepContext


def recorder():
    return StepContext("createSubmissions", lambda *args: None)


@pytest.fixture
def artifact_path(tmp_path):
    path = tmp_path / "submission.zip"
    path.write_bytes(b"PK\x03\x04 fake zip")
    return path


@pytest.mark.asyncio
async def test_load_artifact_relative_to_cwd(artifact_path, monkeypatch):
    monkeypatch.chdir(artifact_path.parent)
    artifact = await load_submission_artifact("submission.zip")
    assert artifact.absolute_path == str(artifact_path.resolve())
    assert artifact.size == len(b"PK\x03\x04 fake zip")
    assert artifact.content_type == "application/zip"


@pytest.mark.asyncio
async def test_missing_or_directory_artifact_is_rejected(tmp_path):
    with pytest.raises(ArtifactError):
        await load_submission_artifact(str(tmp_path / "absent.zip"))
    with pytest.raises(ArtifactError):
        await load_submission_artifact(str(tmp_path))


@pytest.mark.asyncio
async def test_http_upload_puts_bytes_and_records_call(artifact_path):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, headers={"ETag": '"abc"'})

    store = HttpArtifactStore(
        bucket="bucket-1",
        upload_base_url="http://uploads.test/bucket-1/",
        transport=httpx.MockTransport(handler),
    )
    artifact = await load_submission_artifact(str(artifact_path))
    ctx = recorder()

    result = await store.upload(artifact, ctx)

    [request] = seen
    assert request.method == "PUT"
    assert str(request.url) == f"http://uploads.test/bucket-1/{result.key}"
    assert request.content == artifact.content
    assert request.headers["Content-Type"] == "application/zip"
    assert result.url == f"https://s3.amazonaws.com/bucket-1/{result.key}"
    assert result.etag == '"abc"'
    assert result.key.endswith(".zip")

    [record] = ctx.get_requests()
    assert record.id == f"s3-upload-{result.key}"
    assert record.endpoint == f"s3://bucket-1/{result.key}"
    assert record.status == 200
    assert record.outcome == CallOutcome.SUCCESS


@pytest.mark.asyncio
async def test_failed_upload_updates_the_same_record(artifact_path):
    store = HttpArtifactStore(transport=httpx.MockTransport(lambda request: httpx.Response(403)))
    artifact = await load_submission_artifact(str(artifact_path))
    ctx = recorder()

    with pytest.raises(ApiError) as info:
        await store.upload(artifact, ctx)

    [record] = ctx.get_requests()
    assert record.id == info.value.request_id
    assert record.status == 403
    assert record.outcome == CallOutcome.FAILURE
    assert record.response_body == {"name": "HTTPStatusError"}


@pytest.mark.asyncio
async def test_memory_store_keeps_objects(artifact_path):
    store = InMemoryArtifactStore()
    artifact = await load_submission_artifact(str(artifact_path))

    first = await store.upload(artifact)
    second = await store.upload(artifact)

    assert first.key != second.key
    assert store.objects[first.key] == artifact.content
    assert first.url.startswith("memory://topcoder-dev-submissions-dmz/")
