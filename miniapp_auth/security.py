import hmac
import hashlib
import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from urllib.parse import parse_qsl, quote, urlencode

from fastapi import Header, Request
from pydantic import ValidationError

from miniapp_auth.errors import (
    InvalidUserData,
    MalformedInput,
    ServerMisconfigured,
    SignatureInvalid,
    TimestampExpired,
    TokenInvalid,
)
from miniapp_auth.schemas import TelegramUser
from miniapp_auth.services.sessions import SessionToken, decode_session_token

logger = logging.getLogger(__name__)

# Поля, без которых initData не имеет смысла проверять
REQUIRED_FIELDS = ("user", "auth_date", "hash")


@dataclass(frozen=True)
class VerificationResult:
    user: TelegramUser
    auth_date: int
    age_seconds: float
    security_info: dict = field(default_factory=dict)


def parse_init_data(init_data: str) -> dict[str, str]:
    """Разбирает query string в плоский словарь. При повторе ключа побеждает последнее значение."""
    return dict(parse_qsl(init_data, keep_blank_values=True))


def build_data_check_string(params: Mapping[str, str]) -> str:
    # Сортировка ключей (требование Telegram): key=value\nkey=value...
    return "\n".join(f"{k}={v}" for k, v in sorted(params.items()))


def compute_hash(bot_token: str, data_check_string: str) -> str:
    # Secret key = HMAC-SHA256 от токена бота с ключом "WebAppData"
    secret_key = hmac.new(
        key=b"WebAppData",
        msg=bot_token.encode(),
        digestmod=hashlib.sha256
    ).digest()

    return hmac.new(
        key=secret_key,
        msg=data_check_string.encode(),
        digestmod=hashlib.sha256
    ).hexdigest()


def verify_signature(init_data: str, bot_token: str) -> bool:
    """
    Проверяет подпись initData по схеме Telegram WebApp.
    Никогда не бросает исключений: любая ошибка разбора = False.
    """
    if not init_data or not bot_token:
        return False

    try:
        params = parse_init_data(init_data)
        received_hash = params.pop("hash", None)
        if not received_hash:
            return False

        calculated_hash = compute_hash(bot_token, build_data_check_string(params))
        return hmac.compare_digest(calculated_hash.encode(), received_hash.encode())
    except (ValueError, TypeError, UnicodeError):
        return False


def sign_init_data(params: Mapping[str, object], bot_token: str) -> str:
    """
    Собирает подписанную строку initData из словаря полей.
    Значения-словари сериализуются в JSON (так Telegram кладёт user).
    """
    fields = {}
    for key, value in params.items():
        if isinstance(value, Mapping):
            value = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
        fields[key] = str(value)

    fields.pop("hash", None)
    fields["hash"] = compute_hash(bot_token, build_data_check_string(fields))
    return urlencode(fields, quote_via=quote)


def check_freshness(auth_date: int, now_ms: int, max_age_ms: int) -> bool:
    # Данные из будущего тоже невалидны: это либо рассинхрон часов, либо подделка
    delta = now_ms - auth_date * 1000
    return 0 <= delta <= max_age_ms


def extract_user(init_data: str) -> TelegramUser:
    params = parse_init_data(init_data)
    user_json = params.get("user")
    if not user_json:
        raise InvalidUserData("No user data found")

    try:
        user_data = json.loads(user_json)
    except json.JSONDecodeError as e:
        raise InvalidUserData(f"User JSON is invalid: {e.msg}") from e

    if not isinstance(user_data, dict):
        raise InvalidUserData("User data is not an object")

    try:
        return TelegramUser.model_validate(user_data)
    except ValidationError as e:
        fields = ", ".join(str(err["loc"][0]) for err in e.errors() if err["loc"])
        raise InvalidUserData(f"User data has invalid fields: {fields}") from e


def verify_init_data(
    init_data: str,
    bot_token: str,
    max_age_seconds: int,
    now_ms: int | None = None,
) -> VerificationResult:
    """
    Полная проверка initData: подпись -> свежесть -> пользователь.
    Первая же неудача прерывает проверку. Невалидная подпись сообщается
    раньше устаревшего времени: без подписи auth_date не заслуживает доверия.
    """
    if not bot_token:
        raise ServerMisconfigured("BOT_TOKEN is not configured")

    if not init_data:
        raise MalformedInput("Missing init_data parameter")

    try:
        params = parse_init_data(init_data)
    except ValueError as e:
        raise MalformedInput(f"Cannot parse initData: {e}") from e

    missing = [name for name in REQUIRED_FIELDS if not params.get(name)]
    if missing:
        raise MalformedInput(f"Missing initData fields: {', '.join(missing)}")

    try:
        auth_date = int(params["auth_date"])
    except ValueError as e:
        raise MalformedInput("auth_date is not an integer") from e

    if now_ms is None:
        now_ms = int(time.time() * 1000)
    age_seconds = (now_ms - auth_date * 1000) / 1000
    timestamp_valid = check_freshness(auth_date, now_ms, max_age_seconds * 1000)

    if not verify_signature(init_data, bot_token):
        raise SignatureInvalid(
            "Invalid hash signature",
            security_info={
                "signature_valid": False,
                "timestamp_valid": timestamp_valid,
                "age_seconds": age_seconds,
            },
        )

    if not timestamp_valid:
        raise TimestampExpired(
            f"InitData is outdated: age {age_seconds:.0f}s, max {max_age_seconds}s",
            security_info={
                "signature_valid": True,
                "timestamp_valid": False,
                "age_seconds": age_seconds,
            },
        )

    try:
        user = extract_user(init_data)
    except InvalidUserData as e:
        e.security_info = {
            "signature_valid": True,
            "timestamp_valid": True,
            "age_seconds": age_seconds,
        }
        raise

    return VerificationResult(
        user=user,
        auth_date=auth_date,
        age_seconds=age_seconds,
        security_info={
            "timestamp_valid": True,
            "age_seconds": age_seconds,
            "signature_valid": True,
            # Защита от повтора = строгое окно свежести
            "replay_protected": True,
        },
    )

# --- FASTAPI DEPENDENCY ---
# Вставляется в аргументы эндпоинтов, которым нужен авторизованный пользователь.
# Ищет заголовок Authorization: Bearer <jwt> и проверяет токен сессии.

async def get_current_session(
    request: Request,
    authorization: str | None = Header(None, description="String 'Bearer <jwt>'"),
) -> SessionToken:
    if not authorization or not authorization.startswith("Bearer "):
        raise TokenInvalid("Invalid header format")

    secret = request.app.state.settings.JWT_SECRET
    if not secret:
        raise ServerMisconfigured("JWT_SECRET is not configured")

    return decode_session_token(authorization.split(" ", 1)[1].strip(), secret)
