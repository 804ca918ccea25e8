"""
Клиентский валидатор сессии: единственная машина состояний авторизации.

UNAUTHENTICATED -> VERIFYING -> AUTHENTICATED -> (скоро истекает) -> VERIFYING
Терминальное состояние DENIED несёт причину, по которой UI решает,
показывать "повторить" или "откройте приложение из Telegram".

Жизненный цикл: SessionValidator(...) -> initialize() -> [использование] -> dispose().
"""
import asyncio
import enum
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from miniapp_auth.client.api import VerificationOutcome
from miniapp_auth.client.rate_guard import SIGN_IN_ACTION, RateGuard
from miniapp_auth.client.storage import LocalSession, MemorySessionStore, SessionStore, session_matches_token
from miniapp_auth.config import Settings
from miniapp_auth.errors import AuthError, EnvironmentUnavailable, RateLimited
from miniapp_auth.schemas import TelegramUser

logger = logging.getLogger(__name__)

Verifier = Callable[[str], Awaitable[VerificationOutcome]]
InitDataProvider = Callable[[], str | None]

MOCK_TOKEN = "mock-development-token"


class AuthState(str, enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    VERIFYING = "verifying"
    AUTHENTICATED = "authenticated"
    DENIED = "denied"


class DenialReason(str, enum.Enum):
    ENVIRONMENT_UNAVAILABLE = "environment_unavailable"
    REJECTED = "rejected"
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"

    @property
    def retryable(self) -> bool:
        return self in (DenialReason.TRANSIENT, DenialReason.RATE_LIMITED)


@dataclass(frozen=True)
class Denial:
    reason: DenialReason
    error: AuthError


class AuthDenied(Exception):
    def __init__(self, denial: Denial):
        super().__init__(f"{denial.reason.value}: {denial.error.reason}")
        self.denial = denial

    @property
    def reason(self) -> DenialReason:
        return self.denial.reason


class SessionValidator:
    def __init__(
        self,
        verifier: Verifier,
        init_data_provider: InitDataProvider,
        store: SessionStore | None = None,
        rate_guard: RateGuard | None = None,
        *,
        refresh_threshold_seconds: int = 3600,
        usable_max_age_seconds: int = 86400,
        max_attempts: int = 3,
        backoff_base_seconds: float = 0.5,
        sign_in_max_attempts: int = 3,
        sign_in_window_seconds: int = 5,
        mock_identity: TelegramUser | None = None,
        allow_mock_identity: bool = False,
        production: bool = True,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        # Мок-пользователь отключает границу безопасности, в production он запрещён
        if allow_mock_identity and production:
            raise ValueError("Mock identity cannot be enabled in production")

        self._verifier = verifier
        self._init_data_provider = init_data_provider
        self._store = store or MemorySessionStore()
        self._rate_guard = rate_guard or RateGuard()
        self._refresh_threshold = refresh_threshold_seconds
        self._usable_max_age = usable_max_age_seconds
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base_seconds
        self._sign_in_max_attempts = sign_in_max_attempts
        self._sign_in_window_ms = sign_in_window_seconds * 1000
        self._mock_identity = mock_identity if allow_mock_identity else None
        self._clock = clock
        self._sleep = sleep

        self._session: LocalSession | None = None
        self._state = AuthState.UNAUTHENTICATED
        self._denial: Denial | None = None
        self._inflight: asyncio.Task | None = None
        self._disposed = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        verifier: Verifier,
        init_data_provider: InitDataProvider,
        **kwargs,
    ) -> "SessionValidator":
        kwargs.setdefault("refresh_threshold_seconds", settings.SESSION_REFRESH_THRESHOLD_SECONDS)
        kwargs.setdefault("usable_max_age_seconds", settings.SESSION_USABLE_MAX_AGE_SECONDS)
        kwargs.setdefault("max_attempts", settings.VERIFY_MAX_ATTEMPTS)
        kwargs.setdefault("backoff_base_seconds", settings.VERIFY_BACKOFF_BASE_SECONDS)
        kwargs.setdefault("sign_in_max_attempts", settings.SIGN_IN_MAX_ATTEMPTS)
        kwargs.setdefault("sign_in_window_seconds", settings.SIGN_IN_WINDOW_SECONDS)
        kwargs.setdefault("production", settings.is_production)
        return cls(verifier, init_data_provider, **kwargs)

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def denial(self) -> Denial | None:
        return self._denial

    @property
    def session(self) -> LocalSession | None:
        return self._session

    def initialize(self) -> None:
        """Поднимает сохранённую сессию, если она цела и ещё годна."""
        stored = self._store.load()
        if stored is None:
            self._set_state(AuthState.UNAUTHENTICATED)
            return

        if not session_matches_token(stored):
            logger.warning("Stored session does not match its token, clearing")
            self._drop_session()
            return

        if not self._is_usable(stored):
            logger.info("Stored session expired, clearing")
            self._drop_session()
            return

        self._session = stored
        self._set_state(AuthState.AUTHENTICATED)

    def _is_usable(self, session: LocalSession) -> bool:
        now = self._clock()
        return session.remaining_seconds(now) > 0 and now - session.created_at <= self._usable_max_age

    def _needs_refresh(self, session: LocalSession) -> bool:
        return not self._is_usable(session) or session.remaining_seconds(self._clock()) < self._refresh_threshold

    async def get_current_user(self) -> TelegramUser:
        """Текущий пользователь. Без сети, пока до истечения больше порога обновления."""
        return (await self.ensure_session()).user

    async def get_token(self) -> str:
        return (await self.ensure_session()).token

    async def ensure_session(self) -> LocalSession:
        self._check_not_disposed()

        session = self._session
        if session is not None and not self._needs_refresh(session):
            return session
        try:
            return await self.verify()
        except AuthDenied:
            # Неудачное обновление не отнимает ещё действующую сессию
            if self._session is not None and self._is_usable(self._session):
                return self._session
            raise

    def _check_not_disposed(self) -> None:
        if self._disposed:
            raise RuntimeError("SessionValidator is disposed")

    async def verify(self) -> LocalSession:
        """
        Запускает верификацию. Параллельные вызовы ждут одну и ту же задачу,
        поэтому запрос к серверу уходит ровно один.
        """
        self._check_not_disposed()
        if self._inflight is None:
            self._inflight = asyncio.create_task(self._run_verification())
            self._inflight.add_done_callback(self._clear_inflight)
        # shield: отмена одного ожидающего не отменяет общую верификацию
        return await asyncio.shield(self._inflight)

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _run_verification(self) -> LocalSession:
        self._set_state(AuthState.VERIFYING)

        init_data = self._init_data_provider()
        if not init_data:
            if self._mock_identity is not None:
                return self._start_mock_session()
            self._deny(DenialReason.ENVIRONMENT_UNAVAILABLE, EnvironmentUnavailable("No initData from host"))

        if not self._rate_guard.allow(SIGN_IN_ACTION, self._sign_in_max_attempts, self._sign_in_window_ms):
            retry_after = self._rate_guard.remaining_ms(SIGN_IN_ACTION, self._sign_in_window_ms) / 1000
            self._deny(DenialReason.RATE_LIMITED, RateLimited(retry_after_seconds=retry_after))

        outcome = await self._verify_with_retries(init_data)
        session = LocalSession(
            user=outcome.user,
            token=outcome.token,
            created_at=self._clock(),
            expires_at=outcome.expires_at,
        )
        self._store.save(session)
        self._session = session
        self._denial = None
        self._set_state(AuthState.AUTHENTICATED)
        logger.info("Session established for user %s", outcome.user.id)
        return session

    async def _verify_with_retries(self, init_data: str) -> VerificationOutcome:
        last_error: AuthError | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await self._verifier(init_data)
            except RateLimited as e:
                # Сервер просит подождать, долбить его повторами бессмысленно
                self._deny(DenialReason.RATE_LIMITED, e)
            except AuthError as e:
                if not e.retryable:
                    # Детерминированный отказ: повтор с тем же initData ничего не изменит
                    self._deny(DenialReason.REJECTED, e)
                last_error = e
                logger.warning("Verification attempt %s/%s failed: %s", attempt, self._max_attempts, e.detail)
                if attempt < self._max_attempts:
                    await self._sleep(self._backoff_base * 2 ** (attempt - 1))

        self._deny(DenialReason.TRANSIENT, last_error)

    def _start_mock_session(self) -> LocalSession:
        # Только в памяти: мок-сессия не сохраняется в хранилище
        logger.warning("No initData, using development mock identity %s", self._mock_identity.id)
        now = self._clock()
        session = LocalSession(
            user=self._mock_identity,
            token=MOCK_TOKEN,
            created_at=now,
            expires_at=now + self._usable_max_age,
        )
        self._session = session
        self._set_state(AuthState.AUTHENTICATED)
        return session

    def _deny(self, reason: DenialReason, error: AuthError):
        logger.warning("Authentication denied: %s (%s)", reason.value, error.reason)
        self._denial = Denial(reason=reason, error=error)
        # Сессию удаляем только при явном отказе сервера или если она уже истекла
        if reason is not DenialReason.REJECTED and self._session is not None and self._is_usable(self._session):
            logger.warning("Keeping unexpired session for user %s after failed refresh", self._session.user.id)
            self._set_state(AuthState.AUTHENTICATED)
        else:
            self._drop_session()
            self._set_state(AuthState.DENIED)
        raise AuthDenied(self._denial)

    def _drop_session(self) -> None:
        self._session = None
        self._store.clear()
        self._set_state(AuthState.UNAUTHENTICATED)

    def _set_state(self, state: AuthState) -> None:
        if state is not self._state:
            logger.debug("Auth state %s -> %s", self._state.value, state.value)
            self._state = state

    def sign_out(self) -> None:
        self._drop_session()
        self._denial = None

    async def dispose(self) -> None:
        self._disposed = True
        task = self._inflight
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, AuthDenied):
                pass
        self._inflight = None
