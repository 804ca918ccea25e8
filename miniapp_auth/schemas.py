from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator

# Модель пользователя внутри initData (Telegram присылает JSON внутри строки).
# Неизменяемая: создаётся только в security.extract_user
class TelegramUser(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    id: StrictInt
    first_name: str
    last_name: str | None = None
    username: str | None = None
    language_code: str | None = None
    is_premium: bool | None = None
    photo_url: str | None = None

    @field_validator("first_name")
    @classmethod
    def first_name_not_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("first_name must not be empty")
        return value

# Тело запроса на верификацию
class VerifyRequest(BaseModel):
    init_data: str | None = Field(None, description="Raw query string from Telegram WebApp")

class SecurityInfo(BaseModel):
    timestamp_valid: bool | None = None
    age_seconds: float | None = None
    signature_valid: bool | None = None
    replay_protected: bool | None = None

class VerifyResponse(BaseModel):
    success: bool = True
    user_id: int
    user_data: dict
    jwt_token: str
    security_info: SecurityInfo

class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    security_info: SecurityInfo | None = None

class ProfileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    telegram_id: int
    first_name: str
    last_name: str | None = None
    username: str | None = None
    language_code: str | None = None
    is_premium: bool = False
    photo_url: str | None = None
    status: str
    last_active: datetime | None = None
