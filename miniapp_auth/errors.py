"""
Таксономия ошибок авторизации.

Каждая ошибка несёт машинный код причины (reason) для логов и HTTP-статус
для эндпоинта. public_message можно показывать пользователю, в нём
никаких хешей и секретов.
"""

GENERIC_MESSAGE = "Authentication failed, please reopen the app"


class AuthError(Exception):
    reason = "auth_error"
    status_code = 400
    # Есть ли смысл повторить попытку позже: сбой сети или лимит
    retryable = False
    public_message = GENERIC_MESSAGE

    def __init__(self, detail: str | None = None, security_info: dict | None = None):
        super().__init__(detail or self.public_message)
        self.detail = detail or self.public_message
        # Частично посчитанная security_info для тела ответа
        self.security_info = security_info


class MalformedInput(AuthError):
    reason = "malformed_input"
    public_message = "Invalid initData format"


class SignatureInvalid(AuthError):
    reason = "signature_invalid"
    status_code = 401
    public_message = "Invalid signature"


class TimestampExpired(AuthError):
    reason = "timestamp_expired"
    public_message = "InitData expired"


class InvalidUserData(AuthError):
    reason = "invalid_user_data"
    public_message = "Invalid user data"


# Старое имя из таксономии, это один и тот же отказ
MissingUserFields = InvalidUserData


class EnvironmentUnavailable(AuthError):
    """Нет initData от хоста вообще: приложение открыто не из Telegram."""
    reason = "environment_unavailable"
    public_message = "Please open the app from Telegram"


class NetworkOrTimeout(AuthError):
    reason = "network_or_timeout"
    status_code = 503
    retryable = True
    public_message = "Network error, please try again"


class ServerMisconfigured(AuthError):
    reason = "server_misconfigured"
    status_code = 500
    public_message = "Server configuration error"


class TokenInvalid(AuthError):
    reason = "token_invalid"
    status_code = 401
    public_message = "Could not validate credentials"


class RateLimited(AuthError):
    reason = "rate_limited"
    status_code = 429
    retryable = True
    public_message = "Too many sign-in attempts, please wait"

    def __init__(
        self,
        detail: str | None = None,
        security_info: dict | None = None,
        retry_after_seconds: float | None = None,
    ):
        super().__init__(detail, security_info)
        # Через сколько секунд попытка снова будет разрешена, если известно
        self.retry_after_seconds = retry_after_seconds


# Ошибки, которые сервер отдаёт в поле error, -> класс ошибки на клиенте
ERRORS_BY_MESSAGE = {
    cls.public_message: cls
    for cls in (MalformedInput, SignatureInvalid, TimestampExpired, InvalidUserData, ServerMisconfigured)
}
