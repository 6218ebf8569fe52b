import json

import httpx
import pytest

from autopilot_runner.contracts import CallOutcome
from autopilot_runner.errors import ApiError
from autopilot_runner.platform import PlatformClient
from autopilot_runner.recording import StepContext


def recorder():
    return StepContext("test", lambda status, requests, failures: None)


def client_for(handler):
    return PlatformClient("https://api.example.test/v6/", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_successful_call_is_recorded():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(201, json={"id": "c1", "status": "NEW"})

    ctx = recorder()
    async with client_for(handler) as client:
        api = client.bind("tok", ctx)
        created = await api.create_challenge({"name": "Autopilot Test - x"})

    assert created == {"id": "c1", "status": "NEW"}
    [request] = seen
    assert request.method == "POST"
    assert str(request.url) == "https://api.example.test/v6/challenges"
    assert request.headers["Authorization"] == "Bearer tok"
    assert json.loads(request.content) == {"name": "Autopilot Test - x"}

    [record] = ctx.get_requests()
    assert record.outcome == CallOutcome.SUCCESS
    assert record.status == 201
    assert record.request_body == {"name": "Autopilot Test - x"}
    assert record.response_body == {"id": "c1", "status": "NEW"}
    assert record.duration_ms is not None


@pytest.mark.asyncio
async def test_error_status_raises_api_error_with_record_id():
    def handler(request):
        return httpx.Response(409, json={"message": "Resource already exists"})

    ctx = recorder()
    async with client_for(handler) as client:
        with pytest.raises(ApiError) as info:
            await client.bind("tok", ctx).add_resource({"roleId": "r1"})

    error = info.value
    assert str(error) == "Request failed with status code 409"
    assert error.status == 409
    assert error.response_body == {"message": "Resource already exists"}
    [failure] = ctx.get_failures()
    assert failure.id == error.request_id
    assert failure.request_body == {"roleId": "r1"}


@pytest.mark.asyncio
async def test_transport_error_becomes_api_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    ctx = recorder()
    async with client_for(handler) as client:
        with pytest.raises(ApiError) as info:
            await client.bind("tok", ctx).get_challenge("c1")

    assert info.value.status is None
    assert "connection refused" in str(info.value)
    assert ctx.get_failures()[0].id == info.value.request_id


@pytest.mark.asyncio
async def test_query_parameters_and_get_bodies():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"data": []})

    ctx = recorder()
    async with client_for(handler) as client:
        api = client.bind("tok", ctx)
        await api.list_reviews("c1")
        await api.list_scorecards("Challenge", "development")
        await api.get_member("weird handle/1")

    assert seen[0].url.params["challengeId"] == "c1"
    assert seen[1].url.params["challengeTrack"] == "DEVELOPMENT"
    assert seen[1].url.params["perPage"] == "100"
    assert seen[2].url.raw_path.endswith(b"/members/weird%20handle%2F1")
    assert all(record.request_body is None for record in ctx.get_requests())


@pytest.mark.asyncio
async def test_list_scorecards_requires_type_and_track():
    async with client_for(lambda request: httpx.Response(200)) as client:
        with pytest.raises(ValueError):
            await client.bind("tok").list_scorecards("Challenge", "")


@pytest.mark.asyncio
async def test_unbound_session_does_not_record():
    async with client_for(lambda request: httpx.Response(204)) as client:
        assert await client.bind("tok").patch_challenge("c1", {"status": "ACTIVE"}) is None
