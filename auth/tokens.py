"""
auth/tokens.py -- Password hashing, token digests, and the JWT Token Service.

Security design decisions:
  JWT: python-jose with an HMAC algorithm from settings (HS256 by default).
       Access tokens carry userId, username, email, enterpriseId, pwdAt and
       type="access"; refresh tokens carry userId and type="refresh". Both
       carry iat, exp and a random jti, so two pairs issued in the same second
       are still distinct strings.

  Passwords: bcrypt used directly (no passlib wrapper). The cost factor comes
       from BCRYPT_ROUNDS. _DUMMY_HASH lets the login path run one bcrypt
       check even for unknown identifiers, so response time does not reveal
       whether an account exists.

  Stored tokens: session, refresh, verification and reset tokens are never
       persisted raw. The store keeps HMAC-SHA256(SECRET_KEY, token), which is
       deterministic (O(1) lookup by digest) and useless without SECRET_KEY.

  Revocation: verify() is pure -- signature and claims only, no I/O.
       Logout calls revoke(), which drops the session row and denylists the
       token digest in the cache for the token's remaining lifetime.
       is_revoked() is the separate, I/O-backed check the HTTP dependency
       performs after verify(). pwdAt is the user's password_changed_at
       stamp at issue time; once the password changes or is reset the
       stamp moves on and every earlier access token stops matching.

Layer rule: no imports from api/ or teams/. The cache is reached only
through the object passed to TokenService.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Optional

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.models import Session, TokenPair, UserStatus
from core.config import Settings, get_settings
from core.db import to_iso
from core.errors import AuthenticationError, ValidationError

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore
    from cache.store import CacheStore

logger = logging.getLogger("teamguard.auth")

_DENYLIST_PREFIX = "denylist:"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: Optional[int] = None) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input beyond 72 bytes. The API layer caps passwords at
    128 characters, and validate_password_strength() is applied before any
    new password is hashed.
    """
    salt = bcrypt.gensalt(rounds=rounds or get_settings().bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash is treated as a mismatch.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is not a valid bcrypt hash")
        return False


def legacy_prehash(plain: str) -> str:
    """sha256 hex digest applied by the legacy client before bcrypt."""
    return hashlib.sha256(plain.encode("utf-8")).hexdigest()


# Timing equalization: computed once at import so the first unknown-user
# login costs the same as later ones.
_DUMMY_HASH: str = hash_password("teamguard_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run one bcrypt verification against a throwaway hash."""
    verify_password(plain, _DUMMY_HASH)


_STRENGTH_RULES = (
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter."),
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter."),
    (re.compile(r"\d"), "Password must contain at least one number."),
    (re.compile(r"[^A-Za-z0-9]"), "Password must contain at least one special character."),
)

MIN_PASSWORD_LENGTH = 8


def validate_password_strength(password: str) -> None:
    """Raise ValidationError(WEAK_PASSWORD) listing every rule the password breaks."""
    problems = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.")
    problems.extend(message for pattern, message in _STRENGTH_RULES if not pattern.search(password))
    if problems:
        raise ValidationError("Password is too weak.", code="WEAK_PASSWORD", detail=" ".join(problems))


# ---------------------------------------------------------------------------
# Token digests
# ---------------------------------------------------------------------------


def digest_token(raw_token: str, secret_key: Optional[str] = None) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string."""
    key = secret_key or get_settings().secret_key
    return hmac.new(key.encode(), raw_token.encode(), hashlib.sha256).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Token Service
# ---------------------------------------------------------------------------


class TokenService:
    """Issues, verifies, rotates and revokes access/refresh token pairs.

    Dependencies are passed in rather than looked up, so tests can hand in an
    in-memory store, a temp-file cache, fixed settings and a fake clock.

    Usage:
        tokens = TokenService(store, cache)
        pair = tokens.issue(user)
        payload = tokens.verify(pair.access_token)
        new_pair = tokens.rotate(pair.refresh_token)
    """

    def __init__(
        self,
        store: UserStore,
        cache: CacheStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._cache = cache
        self._settings = settings or get_settings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Issue / verify
    # ------------------------------------------------------------------

    def issue(self, user: User) -> TokenPair:
        """Sign a fresh access/refresh pair for user."""
        now = self._clock()
        access_claims = {
            "userId": user.id,
            "username": user.username,
            "email": user.email,
            "pwdAt": user.password_changed_at,
            "type": "access",
            "iat": now,
            "exp": now + timedelta(seconds=self._settings.access_token_ttl_seconds),
            "jti": uuid.uuid4().hex,
        }
        if user.enterprise_id:
            access_claims["enterpriseId"] = user.enterprise_id
        refresh_claims = {
            "userId": user.id,
            "type": "refresh",
            "iat": now,
            "exp": now + timedelta(seconds=self._settings.refresh_token_ttl_seconds),
            "jti": uuid.uuid4().hex,
        }
        return TokenPair(
            access_token=self._encode(access_claims),
            refresh_token=self._encode(refresh_claims),
            expires_in=self._settings.access_token_ttl_seconds,
        )

    def verify(self, token: str, expected_type: str = "access") -> dict:
        """Decode and check a token. Pure: signature, algorithm and claims only.

        Raises AuthenticationError with code TOKEN_EXPIRED once exp has
        passed, INVALID_TOKEN for anything else wrong with the token
        (bad signature, other algorithm, missing userId, wrong type).
        """
        try:
            payload = jwt.decode(
                token,
                self._settings.secret_key,
                algorithms=[self._settings.jwt_algorithm],
                options={"require_exp": True, "require_iat": True},
            )
        except ExpiredSignatureError as exc:
            raise AuthenticationError("Token has expired.", code="TOKEN_EXPIRED") from exc
        except JWTError as exc:
            raise AuthenticationError("Invalid token.", code="INVALID_TOKEN") from exc
        if not payload.get("userId") or payload.get("type") != expected_type:
            raise AuthenticationError("Invalid token.", code="INVALID_TOKEN")
        return payload

    def digest(self, raw_token: str) -> str:
        return digest_token(raw_token, self._settings.secret_key)

    def build_session(
        self,
        user_id: str,
        pair: TokenPair,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        """Session row for a freshly issued pair; it lives as long as the refresh token."""
        expires_at = self._clock() + timedelta(seconds=self._settings.refresh_token_ttl_seconds)
        return Session(
            user_id=user_id,
            session_token_hash=self.digest(pair.access_token),
            refresh_token_hash=self.digest(pair.refresh_token),
            expires_at=to_iso(expires_at),
            ip_address=ip_address,
            user_agent=user_agent,
        )

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def rotate(
        self,
        refresh_token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        """Exchange a refresh token for a new pair, consuming its session.

        The store deletes the old session and inserts the new one in a single
        transaction. A refresh token whose session is gone -- already rotated,
        logged out, or swept -- fails with INVALID_TOKEN, which is also what
        the loser of two concurrent rotations receives.
        """
        try:
            payload = self.verify(refresh_token, expected_type="refresh")
        except AuthenticationError as exc:
            # An expired refresh token is just an unusable one to the client.
            raise AuthenticationError("Invalid refresh token.", code="INVALID_TOKEN") from exc

        user = self._store.get_by_id(payload["userId"])
        if user is None or user.status != UserStatus.active:
            raise AuthenticationError("Invalid refresh token.", code="INVALID_TOKEN")

        pair = self.issue(user)
        replacement = self.build_session(user.id, pair, ip_address, user_agent)
        if not self._store.rotate_session(self.digest(refresh_token), user.id, replacement):
            logger.info("Refresh rejected for user %s: session already consumed or expired", user.id)
            raise AuthenticationError("Invalid refresh token.", code="INVALID_TOKEN")
        return pair

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, session_token: str) -> bool:
        """Delete the session issued with this access token and denylist the token.

        The denylist entry lives exactly as long as the token would have, so
        the cache never holds entries for tokens that are already dead.
        Returns True if a session row was removed.
        """
        token_hash = self.digest(session_token)
        removed = self._store.delete_session_by_token_hash(token_hash)
        try:
            claims = jwt.decode(
                session_token,
                self._settings.secret_key,
                algorithms=[self._settings.jwt_algorithm],
                options={"verify_exp": False},
            )
        except JWTError:
            return removed
        remaining = int(claims.get("exp", 0) - self._clock().timestamp())
        if remaining > 0:
            self._cache.set(_DENYLIST_PREFIX + token_hash, True, ttl=remaining)
        return removed

    def revoke_user_sessions(self, user_id: str) -> int:
        """Denylist the access token of every live session of user_id, then drop the sessions.

        Session rows hold the access token digest, so no raw token is needed.
        Each entry lives for a full access-token lifetime, an upper bound on
        what remains of the token. Returns the number of sessions removed.
        """
        ttl = self._settings.access_token_ttl_seconds
        for session in self._store.list_sessions(user_id):
            self._cache.set(_DENYLIST_PREFIX + session.session_token_hash, True, ttl=ttl)
        return self._store.delete_user_sessions(user_id)

    def is_revoked(self, token: str) -> bool:
        return self._cache.exists(_DENYLIST_PREFIX + self.digest(token))

    def _encode(self, claims: dict) -> str:
        return jwt.encode(claims, self._settings.secret_key, algorithm=self._settings.jwt_algorithm)
