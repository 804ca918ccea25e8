"""
Скользящее окно попыток по имени действия.

Это UX-ограничитель на клиенте, а не граница безопасности: сервер
проверяет подпись initData при каждом запросе независимо от него.
"""
import logging
import time
from collections import deque
from collections.abc import Callable

logger = logging.getLogger(__name__)

SIGN_IN_ACTION = "sign_in"


class RateGuard:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._attempts: dict[str, deque[float]] = {}

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _prune(self, action_key: str, window_ms: int, now_ms: float) -> deque[float]:
        attempts = self._attempts.setdefault(action_key, deque())
        # Удаляем попытки, вышедшие за окно
        while attempts and now_ms - attempts[0] >= window_ms:
            attempts.popleft()
        return attempts

    def allow(self, action_key: str, max_attempts: int, window_ms: int) -> bool:
        """Регистрирует попытку и возвращает True, если лимит ещё не исчерпан."""
        now_ms = self._now_ms()
        attempts = self._prune(action_key, window_ms, now_ms)
        if len(attempts) >= max_attempts:
            logger.warning("Rate limit exceeded for action: %s", action_key)
            return False

        attempts.append(now_ms)
        return True

    def remaining_ms(self, action_key: str, window_ms: int) -> float:
        """Сколько ждать, пока самая старая попытка не выйдет из окна."""
        now_ms = self._now_ms()
        attempts = self._prune(action_key, window_ms, now_ms)
        if not attempts:
            return 0
        return max(0, window_ms - (now_ms - attempts[0]))
