from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Секреты. Пустое значение = сервер не настроен (эндпоинт отвечает 500)
    BOT_TOKEN: str = ""
    JWT_SECRET: str = ""

    API_PORT: int = 8000
    # production | development. В production мок-пользователи запрещены
    ENVIRONMENT: str = "production"

    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DB: str = "miniapp"
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    # Если задан, перекрывает POSTGRES_* (удобно для sqlite в тестах)
    DATABASE_URL: str | None = None

    CORS_ORIGINS: list[str] = ["*"]
    WEBAPP_URL: str = ""
    BOT_POLLING_ENABLED: bool = False

    # --- Политика авторизации ---
    # Строгое окно свежести initData на сервере (5 минут)
    INIT_DATA_MAX_AGE_SECONDS: int = 300
    # Время жизни JWT
    SESSION_TTL_SECONDS: int = 86400
    # Клиентское окно "сессией ещё можно пользоваться"
    SESSION_USABLE_MAX_AGE_SECONDS: int = 86400
    # За сколько до истечения клиент обновляет сессию заранее
    SESSION_REFRESH_THRESHOLD_SECONDS: int = 3600
    # Сколько ждать запись профиля, прежде чем выдать токен без неё
    PROFILE_UPSERT_TIMEOUT_SECONDS: float = 3.0

    VERIFY_TIMEOUT_SECONDS: float = 10.0
    VERIFY_MAX_ATTEMPTS: int = 3
    VERIFY_BACKOFF_BASE_SECONDS: float = 0.5

    SIGN_IN_MAX_ATTEMPTS: int = 3
    SIGN_IN_WINDOW_SECONDS: int = 5

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        # Важно: драйвер postgresql+asyncpg для асинхронной работы
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@"
            f"{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.strip().lower() == "production"

settings = Settings()
