from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

# Базовый класс для всех моделей
class Base(DeclarativeBase):
    pass

def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    # Ставь echo=True, если хочешь видеть SQL запросы в консоли
    return create_async_engine(database_url, echo=echo, pool_pre_ping=True)

def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False обязателен для асинхронной работы
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False
    )
