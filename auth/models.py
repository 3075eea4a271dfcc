"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services
do the work; these only own the shape.

Timestamps are ISO 8601 strings in UTC with microsecond precision, the same
representation the store writes, so string comparison and datetime parsing
agree.

Layer rule: no imports from api/, teams/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class UserStatus(str, Enum):
    pending_verification = "pending_verification"
    active = "active"
    inactive = "inactive"
    suspended = "suspended"
    deleted = "deleted"


class PasswordScheme(str, Enum):
    """How hashed_password was produced.

    legacy_sha256_bcrypt records were imported from a system whose clients
    sent sha256_hex(password) instead of the password. They are rehashed to
    plain bcrypt on the first successful login and never created afresh.
    """

    bcrypt = "bcrypt"
    legacy_sha256_bcrypt = "legacy_sha256_bcrypt"


@dataclass
class User:
    """An identity that can authenticate against TeamGuard.

    username and email are both unique; login accepts either.
    failed_login_attempts and locked_until are written only by AccountGuard
    (through the store's atomic counter statements). status and
    hashed_password are written only by the auth orchestrator.

    verification_token_hash is the HMAC digest of the emailed verification
    token; it is cleared once the address is verified.
    """

    username: str
    email: str
    hashed_password: str
    id: str | None = None
    password_scheme: PasswordScheme = PasswordScheme.bcrypt
    status: UserStatus = UserStatus.pending_verification
    failed_login_attempts: int = 0
    locked_until: str | None = None
    email_verified: bool = False
    verification_token_hash: str | None = None
    is_system_admin: bool = False
    enterprise_id: str | None = None
    password_changed_at: str | None = None
    last_login_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Session:
    """One logged-in device: the access/refresh pair issued together.

    Only HMAC digests of the tokens are persisted. A session row is the proof
    that its refresh token has not been used yet -- rotation deletes it.
    """

    user_id: str
    session_token_hash: str
    refresh_token_hash: str
    expires_at: str
    id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: str | None = None


@dataclass
class PasswordResetToken:
    """Single-use reset credential. Accepted only while used_at is None and expires_at is in the future."""

    user_id: str
    token_hash: str
    expires_at: str
    id: str | None = None
    used_at: str | None = None
    created_at: str | None = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access-token lifetime in seconds
