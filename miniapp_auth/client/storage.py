"""
Локальный кеш сессии на клиенте: память или JSON-файл.

Хранилищу не доверяем: при загрузке сверяем сохранённые поля с
claims самого токена. Расхождение = подмена, сессию удаляем.
"""
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import jwt
from pydantic import ValidationError

from miniapp_auth.schemas import TelegramUser

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocalSession:
    user: TelegramUser
    token: str
    created_at: float
    expires_at: float

    def remaining_seconds(self, now: float) -> float:
        return self.expires_at - now

    def to_dict(self) -> dict:
        return {
            "user": self.user.model_dump(exclude_none=True),
            "token": self.token,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LocalSession":
        return cls(
            user=TelegramUser.model_validate(data["user"]),
            token=str(data["token"]),
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
        )


def session_matches_token(session: LocalSession) -> bool:
    """
    Подпись токена клиент проверить не может (секрет только на сервере),
    но может убедиться, что кеш согласован с тем, что выдал сервер.
    """
    try:
        claims = jwt.decode(session.token, options={"verify_signature": False})
        return int(claims["sub"]) == session.user.id and int(claims["exp"]) == int(session.expires_at)
    except (jwt.InvalidTokenError, KeyError, TypeError, ValueError):
        return False


class SessionStore(Protocol):
    def load(self) -> LocalSession | None: ...

    def save(self, session: LocalSession) -> None: ...

    def clear(self) -> None: ...


class MemorySessionStore:
    def __init__(self, session: LocalSession | None = None):
        self._session = session

    def load(self) -> LocalSession | None:
        return self._session

    def save(self, session: LocalSession) -> None:
        self._session = session

    def clear(self) -> None:
        self._session = None


class FileSessionStore:
    def __init__(self, path: Path | str):
        self.path = Path(path)

    def load(self) -> LocalSession | None:
        if not self.path.exists():
            return None

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return LocalSession.from_dict(data)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, ValidationError):
            logger.warning("Stored session at %s is unreadable, clearing", self.path)
            self.clear()
            return None

    def save(self, session: LocalSession) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(session.to_dict()), encoding="utf-8")

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
