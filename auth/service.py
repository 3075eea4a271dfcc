"""
auth/service.py -- Auth Orchestrator: login, registration, refresh, logout,
password change and password reset.

This is the only component that talks to the external collaborators (email
sender, audit sink). Everything else it needs arrives through the
constructor, so tests wire it against in-memory stores and recording fakes.

Login sequence:
  1. Resolve the identifier (username or email). Unknown identifier: burn one
     bcrypt check against a dummy hash, then INVALID_CREDENTIALS.
  2. Run the password check, always, before looking at the lock. A locked
     account therefore costs the same bcrypt work as an unlocked one.
  3. Locked -> ACCOUNT_LOCKED. The counter is not touched while locked.
  4. Wrong password -> AccountGuard.register_failure -> INVALID_CREDENTIALS.
     The attempt that trips the lock also reports INVALID_CREDENTIALS, so the
     response never says "this attempt locked you out".
  5. Not active (pending verification, suspended, inactive) -> ACCOUNT_INACTIVE.
  6. Legacy password scheme -> rehash to bcrypt (one-time migration).
  7. Issue tokens; reset counters, stamp last_login_at and store the session
     in one transaction.

Password reset never reveals whether an email is registered: the request
call returns normally for unknown, throttled and delivery-failed cases alike.

Layer rule: no imports from api/ or teams/.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional

from auth.guard import AccountGuard
from auth.models import PasswordResetToken, PasswordScheme, TokenPair, User, UserStatus
from auth.store import UserStore
from auth.tokens import (
    TokenService,
    burn_password_check,
    hash_password,
    legacy_prehash,
    validate_password_strength,
    verify_password,
)
from core.collaborators import (
    AuditSink,
    EmailSender,
    LoggingAuditSink,
    LoggingEmailSender,
    audited,
    make_audit_event,
)
from core.config import Settings, get_settings
from core.db import to_iso
from core.errors import (
    AppError,
    AuthenticationError,
    AuthorizationError,
    InvalidOperationError,
    NotFoundError,
    ValidationError,
)

if TYPE_CHECKING:
    from cache.store import CacheStore

logger = logging.getLogger("teamguard.auth")

_USER = "user"
_RESET_WINDOW_SECONDS = 3600


class AuthService:
    def __init__(
        self,
        store: UserStore,
        tokens: TokenService,
        guard: AccountGuard,
        cache: CacheStore,
        email: Optional[EmailSender] = None,
        audit: Optional[AuditSink] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._store = store
        self._tokens = tokens
        self._guard = guard
        self._cache = cache
        self._email = email or LoggingEmailSender()
        self._audit = audit or LoggingAuditSink()
        self._settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Login / refresh / logout
    # ------------------------------------------------------------------

    def login(
        self,
        identifier: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[User, TokenPair]:
        user = self._store.get_by_login(identifier)
        if user is None:
            burn_password_check(password)
            self._audit.record(make_audit_event(None, "login", _USER, None, result="failure"))
            raise AuthenticationError("Invalid username or password.", code="INVALID_CREDENTIALS")

        with audited(self._audit, user.id, "login", _USER, user.id):
            password_ok = self._check_password(user, password)
            if self._guard.is_locked(user):
                raise AuthenticationError(
                    "Account is temporarily locked. Try again later.", code="ACCOUNT_LOCKED"
                )
            if not password_ok:
                self._guard.register_failure(user)
                raise AuthenticationError("Invalid username or password.", code="INVALID_CREDENTIALS")
            if user.status != UserStatus.active:
                raise AuthenticationError("Account is not active.", code="ACCOUNT_INACTIVE")

            if user.password_scheme != PasswordScheme.bcrypt:
                self._store.update_password(user.id, hash_password(password), PasswordScheme.bcrypt)
                logger.info("Migrated password of user %s from %s to bcrypt", user.id, user.password_scheme.value)
                user = self._store.get_by_id(user.id) or user

            pair = self._tokens.issue(user)
            session = self._tokens.build_session(user.id, pair, ip_address, user_agent)
            self._guard.register_success(user, session)

        logger.info("User %s logged in from %s", user.id, ip_address or "-")
        return self._store.get_by_id(user.id) or user, pair

    def refresh(
        self,
        refresh_token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        """Rotate a refresh token. Single use: a second call with the same token gets INVALID_TOKEN."""
        try:
            pair = self._tokens.rotate(refresh_token, ip_address, user_agent)
        except AppError:
            self._audit.record(make_audit_event(None, "refresh_token", _USER, None, result="failure"))
            raise
        user_id = self._tokens.verify(pair.access_token)["userId"]
        self._audit.record(make_audit_event(user_id, "refresh_token", _USER, user_id))
        return pair

    def logout(self, user_id: str, access_token: str) -> None:
        """End the session the access token belongs to; the token is denylisted until it expires."""
        with audited(self._audit, user_id, "logout", _USER, user_id):
            self._tokens.revoke(access_token)
        logger.info("User %s logged out", user_id)

    # ------------------------------------------------------------------
    # Registration and verification
    # ------------------------------------------------------------------

    def register(self, username: str, email: str, password: str) -> User:
        """Create a pending_verification user and email the verification token.

        Raises:
            AuthorizationError(REGISTRATION_DISABLED)  self-registration off
            ValidationError(WEAK_PASSWORD)             password policy
            ConflictError(USER_EXISTS)                 username or email taken
        """
        with audited(self._audit, None, "create_user", _USER, None):
            if not self._settings.self_registration_enabled:
                raise AuthorizationError("Self-registration is disabled.", code="REGISTRATION_DISABLED")
            validate_password_strength(password)
            raw_token = secrets.token_urlsafe(32)
            user_id = self._store.create_user(
                User(
                    username=username,
                    email=email,
                    hashed_password=hash_password(password),
                    status=UserStatus.pending_verification,
                    verification_token_hash=self._tokens.digest(raw_token),
                )
            )
        user = self._store.get_by_id(user_id)
        try:
            self._email.send_verification_email(user, raw_token)
        except Exception:
            # The account exists; delivery failures are an operator concern.
            logger.exception("Verification email to user %s could not be sent", user_id)
        logger.info("User %s registered (%s)", user_id, username)
        return user

    def verify_email(self, token: str) -> User:
        user_id = self._store.verify_email(self._tokens.digest(token))
        if user_id is None:
            raise ValidationError("Invalid or already used verification token.", code="INVALID_TOKEN")
        user = self._store.get_by_id(user_id)
        try:
            self._email.send_welcome_email(user)
        except Exception:
            logger.exception("Welcome email to user %s could not be sent", user_id)
        logger.info("User %s verified their email address", user_id)
        return user

    def create_system_admin(self, username: str, email: str, password: str) -> User:
        """Create an active, verified system administrator (operations bootstrap)."""
        with audited(self._audit, None, "create_user", _USER, None):
            validate_password_strength(password)
            user_id = self._store.create_user(
                User(
                    username=username,
                    email=email,
                    hashed_password=hash_password(password),
                    status=UserStatus.active,
                    email_verified=True,
                    is_system_admin=True,
                )
            )
        logger.warning("System administrator %s (%s) created", user_id, username)
        return self._store.get_by_id(user_id)

    def get_user(self, user_id: str) -> User:
        user = self._store.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found.", code="USER_NOT_FOUND")
        return user

    def set_user_status(self, actor_id: str, user_id: str, status: UserStatus) -> User:
        """Activate, suspend, deactivate or delete an account. System administrators only.

        Any status other than active ends every session of the user and
        denylists their outstanding access tokens.

        Raises:
            AuthorizationError(ACCESS_DENIED)   actor is not a system administrator
            InvalidOperationError               actor targets themselves, or the
                                                status is pending_verification
            NotFoundError(USER_NOT_FOUND)       no live user with that id
        """
        status = UserStatus(status)
        with audited(self._audit, actor_id, "change_user_status", _USER, user_id):
            actor = self._store.get_by_id(actor_id)
            if actor is None or not actor.is_system_admin:
                raise AuthorizationError("System administrator access required.", code="ACCESS_DENIED")
            if actor_id == user_id:
                raise InvalidOperationError("You cannot change your own account status.", code="INVALID_OPERATION")
            if status == UserStatus.pending_verification:
                raise InvalidOperationError(
                    "Accounts cannot be returned to pending verification.", code="INVALID_OPERATION"
                )
            previous = self.get_user(user_id)
            if not self._store.update_user(user_id, status=status):
                raise NotFoundError("User not found.", code="USER_NOT_FOUND")
            ended = 0
            if status != UserStatus.active:
                ended = self._tokens.revoke_user_sessions(user_id)
        logger.warning(
            "User %s status %s -> %s by %s; %d session(s) ended",
            user_id,
            previous.status.value,
            status.value,
            actor_id,
            ended,
        )
        return self._store.get_by_id(user_id) or replace(previous, status=status)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        """Replace the password after checking the current one. Every session is ended."""
        with audited(self._audit, user_id, "change_password", _USER, user_id):
            user = self.get_user(user_id)
            if not self._check_password(user, current_password):
                raise ValidationError("Current password is incorrect.", code="INVALID_PASSWORD")
            validate_password_strength(new_password)
            ended = self._store.change_password(user_id, hash_password(new_password))
        logger.info("User %s changed password; %d session(s) ended", user_id, ended)

    def request_password_reset(self, email: str) -> None:
        """Issue a reset token for email if it belongs to an active user.

        Returns normally in every case. At most password_reset_requests_per_hour
        tokens are produced per address per hour.
        """
        attempts = self._cache.incr(f"reset:{email.lower()}", ttl=_RESET_WINDOW_SECONDS)
        if attempts > self._settings.password_reset_requests_per_hour:
            logger.warning("Password reset requests throttled for one address (%d this hour)", attempts)
            return

        user = self._store.get_by_email(email)
        if user is None or user.status != UserStatus.active:
            return

        raw_token = secrets.token_urlsafe(32)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self._settings.reset_token_ttl_seconds)
        self._store.create_reset_token(
            PasswordResetToken(
                user_id=user.id,
                token_hash=self._tokens.digest(raw_token),
                expires_at=to_iso(expires_at),
            )
        )
        try:
            self._email.send_password_reset_email(user, raw_token)
        except Exception:
            logger.exception("Password reset email to user %s could not be sent", user.id)
        self._audit.record(make_audit_event(user.id, "request_password_reset", _USER, user.id))

    def reset_password(self, token: str, new_password: str) -> None:
        """Spend a reset token: new password, counters cleared, every session ended.

        Raises ValidationError(INVALID_RESET_TOKEN) for unknown, used or
        expired tokens.
        """
        with audited(self._audit, None, "reset_user_password", _USER, None):
            validate_password_strength(new_password)
            user_id = self._store.consume_reset_token(self._tokens.digest(token), hash_password(new_password))
            if user_id is None:
                raise ValidationError("Invalid or expired reset token.", code="INVALID_RESET_TOKEN")
        logger.info("Password reset completed for user %s", user_id)

    # ------------------------------------------------------------------

    def _check_password(self, user: User, password: str) -> bool:
        if user.password_scheme == PasswordScheme.legacy_sha256_bcrypt:
            return verify_password(legacy_prehash(password), user.hashed_password)
        return verify_password(password, user.hashed_password)
