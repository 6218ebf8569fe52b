import json
import time

import httpx
import jwt
import pytest

from autopilot_runner.auth import M2MSecrets, TokenProvider
from autopilot_runner.contracts import CallOutcome
from autopilot_runner.errors import ApiError, ConfigurationError
from autopilot_runner.recording import StepContext

SECRETS = M2MSecrets(
    tokenUrl="https://auth.example.test/oauth/token",
    audience="https://m2m.example.test/",
    clientId="client",
    clientSecret="secret",
)
SIGNING_KEY = "a-test-signing-key-that-is-long-enough"


def signed(exp):
    return jwt.encode({"sub": "client@clients", "exp": exp}, SIGNING_KEY, algorithm="HS256")


def provider_with(*tokens):
    requests = []
    queue = list(tokens)

    def handler(request):
        requests.append(json.loads(request.content))
        return httpx.Response(200, json={"access_token": queue.pop(0)})

    return TokenProvider(secrets=SECRETS, transport=httpx.MockTransport(handler)), requests


@pytest.mark.asyncio
async def test_token_is_cached_until_close_to_expiry():
    token = signed(int(time.time()) + 3600)
    provider, requests = provider_with(token)

    assert await provider.get_token() == token
    assert await provider.get_token() == token
    assert len(requests) == 1
    assert requests[0]["grant_type"] == "client_credentials"
    assert requests[0]["client_id"] == "client"
    assert requests[0]["audience"] == "https://m2m.example.test/"


@pytest.mark.asyncio
async def test_token_about_to_expire_is_refetched():
    first = signed(int(time.time()) + 30)
    second = signed(int(time.time()) + 3600)
    provider, requests = provider_with(first, second)

    assert await provider.get_token() == first
    assert await provider.get_token() == second
    assert len(requests) == 2


@pytest.mark.asyncio
async def test_opaque_token_is_cached_for_an_hour():
    provider, requests = provider_with("opaque-token", "next-token")
    assert await provider.get_token() == "opaque-token"
    assert await provider.get_token() == "opaque-token"
    assert len(requests) == 1

    provider.clear()
    assert await provider.get_token() == "next-token"
    assert len(requests) == 2


@pytest.mark.asyncio
async def test_token_request_is_recorded():
    provider, _ = provider_with("opaque-token")
    ctx = StepContext("token", lambda *args: None)

    await provider.get_token(ctx)

    [record] = ctx.get_requests()
    assert record.endpoint == "https://auth.example.test/oauth/token"
    assert record.status == 200
    assert record.request_body["client_secret"] == "secret"


@pytest.mark.asyncio
async def test_rejected_credentials_raise_api_error():
    def handler(request):
        return httpx.Response(401, json={"error": "access_denied"})

    provider = TokenProvider(secrets=SECRETS, transport=httpx.MockTransport(handler))
    ctx = StepContext("token", lambda *args: None)

    with pytest.raises(ApiError) as info:
        await provider.get_token(ctx)

    assert info.value.status == 401
    [failure] = ctx.get_failures()
    assert failure.id == info.value.request_id
    assert failure.outcome == CallOutcome.FAILURE
    assert failure.response_body == {"error": "access_denied"}


def test_secrets_from_file(tmp_path):
    path = tmp_path / "m2m.json"
    path.write_text(
        json.dumps(
            {
                "tokenUrl": "https://auth.example.test/oauth/token",
                "audience": "aud",
                "clientId": "id",
                "clientSecret": "sec",
            }
        )
    )
    secrets = M2MSecrets.from_file(path)
    assert secrets.client_id == "id"
    assert TokenProvider(path).secrets.client_secret == "sec"


def test_missing_or_invalid_secrets(tmp_path):
    with pytest.raises(ConfigurationError):
        M2MSecrets.from_file(tmp_path / "absent.json")

    path = tmp_path / "m2m.json"
    path.write_text(json.dumps({"tokenUrl": "x"}))
    with pytest.raises(ConfigurationError):
        M2MSecrets.from_file(path)
