"""Tests for the aiohttp verification client against a stub endpoint."""

import asyncio
import time

import pytest
from aiohttp import web
from aiohttp import test_utils

from miniapp_auth.client.api import VerificationClient, error_from_response
from miniapp_auth.errors import (
    InvalidUserData,
    MalformedInput,
    NetworkOrTimeout,
    RateLimited,
    ServerMisconfigured,
    SignatureInvalid,
    TimestampExpired,
)
from miniapp_auth.schemas import TelegramUser
from miniapp_auth.services.sessions import mint_session_token

from conftest import JWT_SECRET, make_settings


def _stub_app(handler) -> web.Application:
    app = web.Application()
    app.router.add_post("/auth/verify", handler)
    return app


async def _verify_against(handler, init_data: str = "raw", timeout: float = 2.0):
    async with test_utils.TestServer(_stub_app(handler)) as server:
        client = VerificationClient(str(server.make_url("/")), timeout_seconds=timeout)
        try:
            return await client.verify(init_data)
        finally:
            await client.aclose()


async def test_success():
    now = int(time.time())
    token = mint_session_token(TelegramUser(id=123, first_name="Ada"), JWT_SECRET, 86400, now)

    async def handler(request):
        assert await request.json() == {"init_data": "raw"}
        return web.json_response({
            "success": True,
            "user_id": 123,
            "user_data": {"id": 123, "first_name": "Ada"},
            "jwt_token": token,
            "security_info": {"signature_valid": True, "timestamp_valid": True},
        })

    outcome = await _verify_against(handler)
    assert outcome.user.id == 123
    assert outcome.token == token
    assert outcome.expires_at == now + 86400
    assert outcome.security_info["signature_valid"] is True


@pytest.mark.parametrize("status, error, expected", [
    (401, "Invalid signature", SignatureInvalid),
    (400, "InitData expired", TimestampExpired),
    (400, "Invalid user data", InvalidUserData),
    (400, "Invalid initData format", MalformedInput),
    (400, "something new", MalformedInput),
    (401, "something new", SignatureInvalid),
    (429, "slow down", RateLimited),
    (500, "Server configuration error", ServerMisconfigured),
    (500, "Internal server error", NetworkOrTimeout),
    (502, "", NetworkOrTimeout),
])
async def test_error_mapping(status, error, expected):
    async def handler(request):
        return web.json_response({"success": False, "error": error}, status=status)

    with pytest.raises(expected):
        await _verify_against(handler)


async def test_non_json_error_body_is_transient():
    async def handler(request):
        return web.Response(text="<html>Bad Gateway</html>", status=502)

    with pytest.raises(NetworkOrTimeout):
        await _verify_against(handler)


async def test_timeout_is_transient():
    async def handler(request):
        await asyncio.sleep(1)
        return web.json_response({})

    with pytest.raises(NetworkOrTimeout):
        await _verify_against(handler, timeout=0.05)


async def test_malformed_success_body_is_transient():
    async def handler(request):
        return web.json_response({"success": True, "user_data": {"id": 1, "first_name": "A"}, "jwt_token": "nope"})

    with pytest.raises(NetworkOrTimeout):
        await _verify_against(handler)


def test_error_from_response_keeps_security_info():
    error = error_from_response(401, {"error": "Invalid signature", "security_info": {"signature_valid": False}})
    assert isinstance(error, SignatureInvalid)
    assert error.security_info == {"signature_valid": False}
    assert error.retryable is False


async def test_from_settings_uses_configured_timeout():
    client = VerificationClient.from_settings(make_settings(VERIFY_TIMEOUT_SECONDS=2.5), "http://api.test/")
    assert client._timeout.total == 2.5
    await client.aclose()
