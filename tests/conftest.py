import time

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from miniapp_auth.config import Settings
from miniapp_auth.database import Base, create_session_factory
from miniapp_auth.main import create_app
from miniapp_auth.models.user_profile import UserProfile  # noqa: F401
from miniapp_auth.security import sign_init_data


BOT_TOKEN = "123456:ABC-DEF1234ghIkl-zyx57W2v1u123ew11"
JWT_SECRET = "test-jwt-secret-that-is-long-enough-for-hs256"


def make_init_data(
    user: dict | None = None,
    auth_date: int | None = None,
    extra_params: dict | None = None,
    bot_token: str = BOT_TOKEN,
) -> str:
    """Build a correctly signed initData string for testing."""
    if auth_date is None:
        auth_date = int(time.time())
    if user is None:
        user = {"id": 123, "first_name": "Ada", "username": "ada"}
    params = {"query_id": "AAHdF6IQAAAAAN0XohDhrOrc", "user": user, "auth_date": auth_date}
    if extra_params:
        params.update(extra_params)
    return sign_init_data(params, bot_token)


def make_settings(**overrides) -> Settings:
    values = {"BOT_TOKEN": BOT_TOKEN, "JWT_SECRET": JWT_SECRET, "_env_file": None}
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def app(settings, session_factory):
    return create_app(settings, session_factory)


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client
