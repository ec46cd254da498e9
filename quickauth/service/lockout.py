from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from quickauth.config import Settings
from quickauth.storage.models import LockoutState


@dataclass(frozen=True)
class LockoutPolicy:
    """Brute-force lockout transitions.

    ``Unlocked(n)`` moves to ``Locked(now + lock_duration)`` on the failure
    that brings the count to ``max_attempts``. A failure after an expired
    lock starts counting again from zero. Success resets the count.
    """

    max_attempts: int = 5
    lock_duration: timedelta = timedelta(hours=2)

    @classmethod
    def from_settings(cls, settings: Settings) -> "LockoutPolicy":
        return cls(
            max_attempts=settings.max_login_attempts,
            lock_duration=timedelta(minutes=settings.lockout_minutes),
        )

    def is_locked(self, state: LockoutState, now: datetime) -> bool:
        return state.locked_until is not None and state.locked_until > now

    def register_failure(self, state: LockoutState, now: datetime) -> LockoutState:
        attempts = state.attempts
        if state.locked_until is not None and state.locked_until <= now:
            attempts = 0
        attempts += 1
        locked_until = None
        if attempts >= self.max_attempts:
            locked_until = now + self.lock_duration
        return LockoutState(
            attempts=attempts, last_attempt_at=now, locked_until=locked_until
        )

    def register_success(self, state: LockoutState) -> LockoutState:
        if state.attempts == 0 and state.locked_until is None:
            return state
        return replace(state, attempts=0, locked_until=None)

    def attempts_remaining(self, state: LockoutState) -> int:
        return max(self.max_attempts - state.attempts, 0)
