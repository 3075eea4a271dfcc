"""
auth/guard.py -- Account Guard: failed-login counters and lockout windows.

State per user is (failed_login_attempts, locked_until):

    unlocked --failure--> unlocked (count + 1)
    unlocked --failure, count reaches threshold--> locked until now + duration
    locked   --time passes--> unlocked (fields untouched until next success)
    any      --successful login--> count = 0, locked_until = None

The guard owns the policy (threshold, duration, clock). The arithmetic runs
inside the store as one UPDATE so concurrent failures cannot lose increments
or both slip under the threshold.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Optional

from core.config import Settings, get_settings
from core.db import parse_iso, to_iso

if TYPE_CHECKING:
    from auth.models import Session, User
    from auth.store import UserStore

logger = logging.getLogger("teamguard.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountGuard:
    def __init__(
        self,
        store: UserStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        settings = settings or get_settings()
        self.threshold = settings.lockout_threshold
        self.duration = timedelta(seconds=settings.lockout_duration_seconds)
        self._clock = clock

    def is_locked(self, user: User) -> bool:
        return user.locked_until is not None and parse_iso(user.locked_until) > self._clock()

    def register_failure(self, user: User) -> Optional[User]:
        """Count one failed password check; lock the account when the count reaches the threshold.

        Returns the refreshed user record.
        """
        lock_until = to_iso(self._clock() + self.duration)
        updated = self._store.record_failed_login(user.id, self.threshold, lock_until)
        if updated is not None and updated.locked_until == lock_until:
            logger.warning(
                "Account %s locked after %d failed logins until %s",
                user.id,
                updated.failed_login_attempts,
                updated.locked_until,
            )
        return updated

    def register_success(self, user: User, session: Optional[Session] = None) -> Optional[str]:
        """Clear the counters and persist the login's session in the same transaction."""
        return self._store.record_successful_login(user.id, session)
