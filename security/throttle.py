import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from flask import current_app

from security.kvstore import KeyValueStore, get_store


@dataclass
class ThrottleStatus:
    allowed: bool
    attempts_left: Optional[int] = None
    remaining_lock_minutes: Optional[int] = None


def normalize_identifier(identifier: str) -> str:
    return (identifier or "").strip().lower()


class LoginThrottle:
    """
    Per-identifier failed-login counter with lockout.

    - the failure counter expires after `window_minutes` without attempts
    - reaching `max_attempts` failures locks for `lock_minutes`, measured
      from the failure that triggered it
    - the lock and the counter expire independently
    """

    def __init__(
        self,
        store: KeyValueStore,
        max_attempts: int = 5,
        window_minutes: int = 15,
        lock_minutes: int = 30,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.max_attempts = max_attempts
        self.window_seconds = window_minutes * 60
        self.lock_seconds = lock_minutes * 60
        self.clock = clock

    def _count_key(self, identifier: str) -> str:
        return f"throttle:count:{normalize_identifier(identifier)}"

    def _lock_key(self, identifier: str) -> str:
        return f"throttle:lock:{normalize_identifier(identifier)}"

    def _lock_status(self, identifier: str) -> Optional[ThrottleStatus]:
        locked_until = self.store.get(self._lock_key(identifier))
        if locked_until is None:
            return None
        seconds_left = float(locked_until) - self.clock()
        if seconds_left <= 0:
            return None
        return ThrottleStatus(allowed=False, remaining_lock_minutes=max(1, math.ceil(seconds_left / 60)))

    def check(self, identifier: str) -> ThrottleStatus:
        locked = self._lock_status(identifier)
        if locked:
            return locked

        count = int(self.store.get(self._count_key(identifier)) or 0)
        return ThrottleStatus(allowed=True, attempts_left=max(self.max_attempts - count, 0))

    def record_failure(self, identifier: str) -> ThrottleStatus:
        count = self.store.incr(self._count_key(identifier), self.window_seconds)

        if count >= self.max_attempts:
            locked = self._lock_status(identifier)
            if locked:
                # failures while locked do not extend the lock
                return locked
            locked_until = self.clock() + self.lock_seconds
            self.store.set(self._lock_key(identifier), repr(locked_until), self.lock_seconds)
            return ThrottleStatus(allowed=False, remaining_lock_minutes=math.ceil(self.lock_seconds / 60))

        return ThrottleStatus(allowed=True, attempts_left=self.max_attempts - count)

    def record_success(self, identifier: str) -> None:
        self.store.delete(self._count_key(identifier), self._lock_key(identifier))


def get_login_throttle() -> LoginThrottle:
    cfg = current_app.config
    return LoginThrottle(
        get_store(),
        max_attempts=cfg.get("MAX_LOGIN_ATTEMPTS", 5),
        window_minutes=cfg.get("LOGIN_ATTEMPT_WINDOW_MINUTES", 15),
        lock_minutes=cfg.get("LOCKOUT_MINUTES", 30),
    )
