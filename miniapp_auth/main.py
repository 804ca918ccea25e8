import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from aiogram import Bot, Dispatcher
from aiogram.types import BotCommand
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from miniapp_auth.config import Settings, settings as default_settings
from miniapp_auth.bot.handlers import router as bot_router
from miniapp_auth.database import create_engine, create_session_factory
from miniapp_auth.errors import AuthError, MalformedInput
from miniapp_auth.schemas import ErrorResponse, ProfileOut, VerifyRequest, VerifyResponse
from miniapp_auth.security import get_current_session, verify_init_data
from miniapp_auth.services.profiles import ProfileRepository
from miniapp_auth.services.sessions import SessionIssuer, SessionToken

# Настройка логирования
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# --- AIOGRAM SETUP ---
async def set_bot_commands(bot_instance: Bot):
    commands = [
        BotCommand(command="start", description="Открыть витрину"),
    ]
    await bot_instance.set_my_commands(commands)

async def start_bot(app_settings: Settings) -> tuple[Bot, asyncio.Task]:
    bot = Bot(token=app_settings.BOT_TOKEN)
    dp = Dispatcher(webapp_url=app_settings.WEBAPP_URL)
    dp.include_router(bot_router)
    await set_bot_commands(bot)
    return bot, asyncio.create_task(dp.start_polling(bot))

# --- FASTAPI LIFESPAN ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    app_settings: Settings = app.state.settings
    engine = None
    if app.state.session_factory is None:
        logger.info("Startup: Connecting to database...")
        engine = create_engine(app_settings.database_url)
        app.state.session_factory = create_session_factory(engine)

    bot, polling_task = None, None
    if app_settings.BOT_POLLING_ENABLED and app_settings.BOT_TOKEN:
        logger.info("Startup: Setting up bot...")
        bot, polling_task = await start_bot(app_settings)
    yield
    if polling_task is not None:
        logger.info("Shutdown: Stopping bot...")
        polling_task.cancel()
        try:
            await polling_task
        except asyncio.CancelledError:
            pass
        await bot.session.close()
    if engine is not None:
        await engine.dispose()

# --- DEPENDENCIES ---

def get_profiles(request: Request) -> ProfileRepository | None:
    session_factory = request.app.state.session_factory
    if session_factory is None:
        return None
    return ProfileRepository(session_factory)

def get_issuer(
    request: Request,
    profiles: ProfileRepository | None = Depends(get_profiles),
) -> SessionIssuer:
    app_settings: Settings = request.app.state.settings
    return SessionIssuer(
        secret=app_settings.JWT_SECRET,
        ttl_seconds=app_settings.SESSION_TTL_SECONDS,
        profiles=profiles,
        bot_token=app_settings.BOT_TOKEN,
        profile_timeout_seconds=app_settings.PROFILE_UPSERT_TIMEOUT_SECONDS,
    )

# --- ERROR HANDLERS ---
# Пользователю отдаём только общий текст и частичную security_info.
# Код причины пишем в лог для диагностики.

async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    logger.warning("Auth rejected on %s: %s (%s)", request.url.path, exc.reason, exc.detail)
    body = ErrorResponse(error=exc.public_message, security_info=exc.security_info)
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(
        status_code=exc.status_code,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )

async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return await auth_error_handler(request, MalformedInput("Request body is not valid"))

# --- FASTAPI SETUP ---

def create_app(
    app_settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> FastAPI:
    """
    Собирает приложение. Никаких глобальных синглтонов: настройки и фабрика
    сессий БД лежат в app.state, тесты создают изолированные экземпляры.
    """
    app_settings = app_settings or default_settings

    app = FastAPI(title="Diamond Mini App Auth API", lifespan=lifespan)
    app.state.settings = app_settings
    app.state.session_factory = session_factory

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(AuthError, auth_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # --- ENDPOINTS ---

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    @app.post(
        "/auth/verify",
        response_model=VerifyResponse,
        responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    )
    async def verify_telegram(body: VerifyRequest, issuer: SessionIssuer = Depends(get_issuer)):
        """
        Принимает сырой initData, проверяет подпись, свежесть и пользователя,
        обновляет профиль и выдаёт JWT на SESSION_TTL_SECONDS.
        """
        result = verify_init_data(
            body.init_data or "",
            app_settings.BOT_TOKEN,
            app_settings.INIT_DATA_MAX_AGE_SECONDS,
        )
        issued = await issuer.issue(result.user)
        logger.info("Telegram initData verified for user %s", result.user.id)

        return VerifyResponse(
            user_id=result.user.id,
            user_data=result.user.model_dump(exclude_none=True),
            jwt_token=issued.token,
            security_info=result.security_info,
        )

    @app.get("/me")
    async def get_my_profile(
        session: SessionToken = Depends(get_current_session),
        profiles: ProfileRepository | None = Depends(get_profiles),
    ):
        profile = await profiles.get(session.subject_user_id) if profiles is not None else None
        if profile is None:
            raise HTTPException(status_code=404, detail="Profile not found")
        return {
            "status": "authenticated",
            "user": ProfileOut.model_validate(profile).model_dump(mode="json"),
        }

    return app

app = create_app()

def run() -> None:
    uvicorn.run("miniapp_auth.main:app", host="0.0.0.0", port=default_settings.API_PORT)
