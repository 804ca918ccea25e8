"""
HTTP-клиент эндпоинта верификации (aiohttp).

Переводит ответы сервера в таксономию ошибок: детерминированные отказы
(400/401) не повторяются, сеть/таймаут/5xx -> NetworkOrTimeout.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field

import aiohttp
import jwt
from pydantic import ValidationError

from miniapp_auth.config import Settings
from miniapp_auth.errors import (
    ERRORS_BY_MESSAGE,
    AuthError,
    MalformedInput,
    NetworkOrTimeout,
    RateLimited,
    ServerMisconfigured,
    SignatureInvalid,
)
from miniapp_auth.schemas import TelegramUser

logger = logging.getLogger(__name__)

VERIFY_PATH = "/auth/verify"


@dataclass(frozen=True)
class VerificationOutcome:
    user: TelegramUser
    token: str
    expires_at: int
    security_info: dict = field(default_factory=dict)


def error_from_response(status: int, body: dict) -> AuthError:
    message = body.get("error", "") if isinstance(body, dict) else ""
    if status == 429:
        return RateLimited()
    if status in (400, 401):
        error_cls = ERRORS_BY_MESSAGE.get(message, SignatureInvalid if status == 401 else MalformedInput)
        return error_cls(security_info=body.get("security_info"))
    if status == 500 and ERRORS_BY_MESSAGE.get(message) is ServerMisconfigured:
        return ServerMisconfigured()
    return NetworkOrTimeout(f"Verification endpoint answered {status}")


class VerificationClient:
    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ):
        self._url = base_url.rstrip("/") + VERIFY_PATH
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_settings(cls, settings: Settings, base_url: str) -> "VerificationClient":
        return cls(base_url, timeout_seconds=settings.VERIFY_TIMEOUT_SECONDS)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def verify(self, init_data: str) -> VerificationOutcome:
        session = await self._get_session()
        try:
            async with session.post(self._url, json={"init_data": init_data}, timeout=self._timeout) as resp:
                try:
                    body = await resp.json(content_type=None)
                except (json.JSONDecodeError, ValueError):
                    body = {}
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkOrTimeout(f"Verification request failed: {type(e).__name__}") from e

        if status != 200 or not isinstance(body, dict) or not body.get("success"):
            raise error_from_response(status, body if isinstance(body, dict) else {})

        try:
            user = TelegramUser.model_validate(body["user_data"])
            token = body["jwt_token"]
            claims = jwt.decode(token, options={"verify_signature": False})
            expires_at = int(claims["exp"])
        except (KeyError, TypeError, ValueError, ValidationError, jwt.InvalidTokenError) as e:
            raise NetworkOrTimeout("Unexpected verification response") from e

        return VerificationOutcome(
            user=user,
            token=token,
            expires_at=expires_at,
            security_info=body.get("security_info") or {},
        )

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
