"""
Выдача и проверка JWT-сессий после успешной верификации initData.

Токен: HS256, подписан JWT_SECRET (не токеном бота). Подпись покрывает весь
payload, поэтому подмена exp без переподписи ловится при декодировании.
"""
import asyncio
import hmac
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

import jwt
from sqlalchemy.exc import SQLAlchemyError

from miniapp_auth.errors import ServerMisconfigured, TokenInvalid
from miniapp_auth.schemas import TelegramUser

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


@dataclass(frozen=True)
class SessionToken:
    subject_user_id: int
    issued_at: int
    expires_at: int
    signature: str


@dataclass(frozen=True)
class IssuedSession:
    token: str
    session: SessionToken


class ProfileStore(Protocol):
    async def upsert(self, user: TelegramUser, now: datetime | None = None) -> None: ...


def mint_session_token(user: TelegramUser, secret: str, ttl_seconds: int, now: int) -> str:
    if ttl_seconds <= 0:
        raise ValueError("ttl_seconds must be positive")

    payload = {
        "sub": str(user.id),
        "telegram_id": user.id,
        "first_name": user.first_name,
        "iat": now,
        "exp": now + ttl_seconds,
    }
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def decode_session_token(token: str, secret: str, leeway: int = 0) -> SessionToken:
    """Проверяет подпись и срок токена. Любая проблема -> TokenInvalid."""
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[ALGORITHM],
            leeway=leeway,
            options={"require": ["sub", "iat", "exp"]},
        )
        subject = int(payload["sub"])
    except jwt.ExpiredSignatureError as e:
        raise TokenInvalid("Expired token") from e
    except (jwt.InvalidTokenError, ValueError, TypeError) as e:
        raise TokenInvalid("Invalid token") from e

    issued_at, expires_at = payload["iat"], payload["exp"]
    if not isinstance(issued_at, int) or not isinstance(expires_at, int) or expires_at <= issued_at:
        raise TokenInvalid("Invalid token lifetime")

    return SessionToken(
        subject_user_id=subject,
        issued_at=issued_at,
        expires_at=expires_at,
        signature=token.rsplit(".", 1)[-1],
    )


class SessionIssuer:
    """Единственный, кто пишет профили и подписывает токены."""

    def __init__(
        self,
        secret: str,
        ttl_seconds: int,
        profiles: ProfileStore | None = None,
        bot_token: str | None = None,
        clock: Callable[[], float] = time.time,
        profile_timeout_seconds: float = 3.0,
    ):
        if secret and bot_token and hmac.compare_digest(secret.encode(), bot_token.encode()):
            raise ServerMisconfigured("JWT_SECRET must differ from BOT_TOKEN")
        self._secret = secret
        self._ttl_seconds = ttl_seconds
        self._profiles = profiles
        self._clock = clock
        self._profile_timeout = profile_timeout_seconds

    async def issue(self, user: TelegramUser) -> IssuedSession:
        if not self._secret:
            raise ServerMisconfigured("JWT_SECRET is not configured")

        now = int(self._clock())
        if self._profiles is not None:
            try:
                await asyncio.wait_for(
                    self._profiles.upsert(user, datetime.fromtimestamp(now, tz=timezone.utc)),
                    self._profile_timeout,
                )
            except (SQLAlchemyError, OSError, asyncio.TimeoutError):
                # Профиль нужен для учёта, а не для проверки, поэтому токен всё равно выдаём
                logger.exception("Failed to upsert profile for user %s", user.id)

        token = mint_session_token(user, self._secret, self._ttl_seconds, now)
        logger.info("Session issued for user %s, expires in %ss", user.id, self._ttl_seconds)
        return IssuedSession(
            token=token,
            session=SessionToken(
                subject_user_id=user.id,
                issued_at=now,
                expires_at=now + self._ttl_seconds,
                signature=token.rsplit(".", 1)[-1],
            ),
        )
