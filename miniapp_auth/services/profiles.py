"""
Хранилище профилей пользователей.

Профиль только upsert-ится по telegram_id и никогда не удаляется.
Повторная выдача сессии тому же пользователю идемпотентна:
одна строка, последние известные поля побеждают.
"""
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from miniapp_auth.models.user_profile import UserProfile
from miniapp_auth.schemas import TelegramUser

# Диалекты с INSERT ... ON CONFLICT DO UPDATE
_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def profile_values(user: TelegramUser, now: datetime) -> dict:
    return {
        "telegram_id": user.id,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "username": user.username,
        "language_code": user.language_code or "en",
        "is_premium": bool(user.is_premium),
        "photo_url": user.photo_url,
        "status": "active",
        "last_active": now,
        "updated_at": now,
    }


class ProfileRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def upsert(self, user: TelegramUser, now: datetime | None = None) -> None:
        now = now or datetime.now(timezone.utc)
        values = profile_values(user, now)

        async with self._session_factory() as session:
            insert = _UPSERT_INSERTS.get(session.bind.dialect.name)
            if insert is None:
                # Прочие диалекты: merge по первичному ключу
                await session.merge(UserProfile(**values))
            else:
                stmt = insert(UserProfile).values(**values)
                update_columns = {k: stmt.excluded[k] for k in values if k != "telegram_id"}
                await session.execute(
                    stmt.on_conflict_do_update(index_elements=["telegram_id"], set_=update_columns)
                )
            await session.commit()

    async def get(self, telegram_id: int) -> UserProfile | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserProfile).where(UserProfile.telegram_id == telegram_id)
            )
            return result.scalar_one_or_none()
