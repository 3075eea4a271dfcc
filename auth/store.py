"""
auth/store.py -- SQLAlchemy Core persistence layer for credential entities.

Pattern: Repository + Data Mapper. UserStore is the repository;
_row_to_user / _row_to_session / _row_to_reset_token are the mappers.
Services never touch SQL directly, and this module holds no policy: it
persists exactly what it is told and reports what happened.

Concurrency:
  Every mutation that must not lose updates is one statement or one
  transaction. Nothing here reads a value into Python, changes it, and writes
  it back:
    - record_failed_login() increments the counter and sets locked_until in
      the same UPDATE, using the pre-update value of the counter.
    - rotate_session() deletes the consumed session and inserts its
      replacement in one transaction; the DELETE row count decides the winner
      when two requests present the same refresh token.
    - consume_reset_token() marks the token used, swaps the password and
      drops all sessions in one transaction.

Soft delete:
  Users with status "deleted" are tombstones. Every user lookup goes through
  _live_users(), so no call site can forget the exclusion.

Security:
  All queries use bound parameters. Session and reset tokens are stored as
  HMAC digests only (see auth/tokens.digest_token).

Layer rule: no imports from api/, teams/, or cache/.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import Boolean, Column, Integer, MetaData, String, Table, Text, case, delete, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import PasswordResetToken, PasswordScheme, Session, User, UserStatus
from core.config import get_settings
from core.db import create_store_engine, new_id, now_iso
from core.errors import ConflictError

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("username", String(64), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("password_scheme", String(32), nullable=False, server_default=PasswordScheme.bcrypt.value),
    Column("status", String(32), nullable=False, server_default=UserStatus.pending_verification.value),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("email_verified", Boolean, nullable=False, server_default="0"),
    Column("verification_token_hash", String(64), unique=True),
    Column("is_system_admin", Boolean, nullable=False, server_default="0"),
    Column("enterprise_id", String(36)),
    Column("password_changed_at", String(32)),
    Column("last_login_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("session_token_hash", String(64), nullable=False, unique=True),
    Column("refresh_token_hash", String(64), nullable=False, unique=True),
    Column("ip_address", String(45)),
    Column("user_agent", String(512)),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
)

_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("used_at", String(32)),
    Column("created_at", String(32), nullable=False),
)


def _live_users():
    """SELECT over users that are not tombstoned."""
    return select(_users).where(_users.c.status != UserStatus.deleted.value)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, Session and PasswordResetToken records.

    Usage:
        store = UserStore("sqlite:///:memory:")
        user_id = store.create_user(User(username="ada", email="ada@example.com", hashed_password=h))
        user = store.get_by_login("ada@example.com")
        store.close()
    """

    def __init__(self, db_url: Optional[str] = None) -> None:
        self.engine: Engine = create_store_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> str:
        """Insert a new user and return its id.

        Raises ConflictError(USER_EXISTS) if the username or email is taken.
        The unique constraints decide, so two concurrent registrations for the
        same name cannot both succeed.
        """
        user_id = user.id or new_id()
        now = now_iso()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _users.insert().values(
                        id=user_id,
                        username=user.username,
                        email=user.email.lower(),
                        hashed_password=user.hashed_password,
                        password_scheme=PasswordScheme(user.password_scheme).value,
                        status=UserStatus(user.status).value,
                        email_verified=user.email_verified,
                        verification_token_hash=user.verification_token_hash,
                        is_system_admin=user.is_system_admin,
                        enterprise_id=user.enterprise_id,
                        password_changed_at=now,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError as exc:
            raise ConflictError("Username or email already exists.", code="USER_EXISTS") from exc
        return user_id

    def get_by_id(self, user_id: str) -> Optional[User]:
        with self.engine.connect() as conn:
            row = conn.execute(_live_users().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> Optional[User]:
        """Exact, case-sensitive username match."""
        with self.engine.connect() as conn:
            row = conn.execute(_live_users().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> Optional[User]:
        """Emails are stored lower-cased, so lookups are case-insensitive."""
        with self.engine.connect() as conn:
            row = conn.execute(_live_users().where(_users.c.email == email.lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_login(self, identifier: str) -> Optional[User]:
        """Resolve a login identifier that may be either a username or an email."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _live_users().where(or_(_users.c.username == identifier, _users.c.email == identifier.lower()))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable profile fields (status, is_system_admin, enterprise_id).

        Returns True if a live row was updated.
        """
        if "status" in fields:
            fields["status"] = UserStatus(fields["status"]).value
        fields["updated_at"] = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                update(_users)
                .where((_users.c.id == user_id) & (_users.c.status != UserStatus.deleted.value))
                .values(**fields)
            )
        return result.rowcount > 0

    def update_password(self, user_id: str, hashed_password: str, scheme: PasswordScheme = PasswordScheme.bcrypt) -> bool:
        """Replace the password hash and stamp password_changed_at."""
        now = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                update(_users)
                .where(_users.c.id == user_id)
                .values(
                    hashed_password=hashed_password,
                    password_scheme=PasswordScheme(scheme).value,
                    password_changed_at=now,
                    updated_at=now,
                )
            )
        return result.rowcount > 0

    def change_password(self, user_id: str, hashed_password: str) -> int:
        """Replace the password and delete every session of the user in one transaction.

        Returns the number of sessions removed.
        """
        now = now_iso()
        with self.engine.begin() as conn:
            conn.execute(
                update(_users)
                .where(_users.c.id == user_id)
                .values(
                    hashed_password=hashed_password,
                    password_scheme=PasswordScheme.bcrypt.value,
                    password_changed_at=now,
                    updated_at=now,
                )
            )
            result = conn.execute(delete(_sessions).where(_sessions.c.user_id == user_id))
        return result.rowcount

    def verify_email(self, token_hash: str) -> Optional[str]:
        """Activate the pending user holding this verification digest.

        Returns the user id, or None if no pending user holds the token.
        The digest is cleared, so a token verifies at most once.
        """
        with self.engine.begin() as conn:
            row = conn.execute(
                select(_users.c.id).where(
                    (_users.c.verification_token_hash == token_hash)
                    & (_users.c.status == UserStatus.pending_verification.value)
                )
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                update(_users)
                .where(_users.c.id == row.id)
                .values(
                    status=UserStatus.active.value,
                    email_verified=True,
                    verification_token_hash=None,
                    updated_at=now_iso(),
                )
            )
        return row.id

    # ------------------------------------------------------------------
    # Failed-login counters (written on behalf of AccountGuard)
    # ------------------------------------------------------------------

    def record_failed_login(self, user_id: str, threshold: int, lock_until: str) -> Optional[User]:
        """Increment failed_login_attempts and lock the account once it reaches threshold.

        One UPDATE statement: the CASE sees the pre-update counter, so
        "failed_login_attempts + 1" is the new value. Two concurrent failures
        are serialized by the row lock and each observes the other's
        increment -- exactly one of them crosses the threshold.

        Returns the user as it is after the update, read in the same transaction.
        """
        new_count = _users.c.failed_login_attempts + 1
        with self.engine.begin() as conn:
            conn.execute(
                update(_users)
                .where(_users.c.id == user_id)
                .values(
                    failed_login_attempts=new_count,
                    locked_until=case((new_count >= threshold, lock_until), else_=_users.c.locked_until),
                    updated_at=now_iso(),
                )
            )
            row = conn.execute(select(_users).where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def record_successful_login(self, user_id: str, session: Optional[Session] = None) -> Optional[str]:
        """Reset the lockout fields, stamp last_login_at and persist the new session, atomically.

        Returns the stored session id (or None when no session was given).
        """
        now = now_iso()
        session_id = None
        with self.engine.begin() as conn:
            conn.execute(
                update(_users)
                .where(_users.c.id == user_id)
                .values(failed_login_attempts=0, locked_until=None, last_login_at=now, updated_at=now)
            )
            if session is not None:
                session_id = _insert_session(conn, session)
        return session_id

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> str:
        with self.engine.begin() as conn:
            return _insert_session(conn, session)

    def list_sessions(self, user_id: str) -> list[Session]:
        """Unexpired sessions of a user, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_sessions)
                .where((_sessions.c.user_id == user_id) & (_sessions.c.expires_at > now_iso()))
                .order_by(_sessions.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def rotate_session(self, refresh_token_hash: str, user_id: str, replacement: Session) -> bool:
        """Consume the session holding refresh_token_hash and store its replacement.

        Returns False (and writes nothing) unless exactly one unexpired
        session for user_id held the digest. Of two concurrent calls with the
        same digest, the second finds zero rows to delete and gets False.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(_sessions).where(
                    (_sessions.c.refresh_token_hash == refresh_token_hash)
                    & (_sessions.c.user_id == user_id)
                    & (_sessions.c.expires_at > now_iso())
                )
            )
            if result.rowcount != 1:
                return False
            _insert_session(conn, replacement)
        return True

    def delete_session_by_token_hash(self, session_token_hash: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(delete(_sessions).where(_sessions.c.session_token_hash == session_token_hash))
        return result.rowcount > 0

    def delete_user_sessions(self, user_id: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(delete(_sessions).where(_sessions.c.user_id == user_id))
        return result.rowcount

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def create_reset_token(self, token: PasswordResetToken) -> str:
        token_id = token.id or new_id()
        with self.engine.begin() as conn:
            conn.execute(
                _reset_tokens.insert().values(
                    id=token_id,
                    user_id=token.user_id,
                    token_hash=token.token_hash,
                    expires_at=token.expires_at,
                    used_at=None,
                    created_at=now_iso(),
                )
            )
        return token_id

    def get_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        """Look up a reset token by digest regardless of state. For inspection and tests."""
        with self.engine.connect() as conn:
            row = conn.execute(select(_reset_tokens).where(_reset_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def consume_reset_token(self, token_hash: str, hashed_password: str) -> Optional[str]:
        """Spend a reset token: mark it used, set the new password, drop every session.

        The conditional UPDATE only matches an unused, unexpired token, so a
        token is accepted at most once even under concurrent submissions.
        Returns the user id, or None if the token was not acceptable.
        """
        now = now_iso()
        with self.engine.begin() as conn:
            row = conn.execute(
                select(_reset_tokens.c.user_id).where(_reset_tokens.c.token_hash == token_hash)
            ).fetchone()
            if row is None:
                return None
            result = conn.execute(
                update(_reset_tokens)
                .where(
                    (_reset_tokens.c.token_hash == token_hash)
                    & _reset_tokens.c.used_at.is_(None)
                    & (_reset_tokens.c.expires_at > now)
                )
                .values(used_at=now)
            )
            if result.rowcount != 1:
                return None
            conn.execute(
                update(_users)
                .where(_users.c.id == row.user_id)
                .values(
                    hashed_password=hashed_password,
                    password_scheme=PasswordScheme.bcrypt.value,
                    password_changed_at=now,
                    failed_login_attempts=0,
                    locked_until=None,
                    updated_at=now,
                )
            )
            conn.execute(delete(_sessions).where(_sessions.c.user_id == row.user_id))
        return row.user_id

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    def purge_expired(self) -> tuple[int, int]:
        """Delete expired sessions and reset tokens. Returns (sessions, reset_tokens) removed.

        Plain DELETE ... WHERE expires_at < now: idempotent, a no-op on an
        empty table, and safe to run from several workers without coordination.
        """
        now = now_iso()
        with self.engine.begin() as conn:
            sessions = conn.execute(delete(_sessions).where(_sessions.c.expires_at < now)).rowcount
            tokens = conn.execute(delete(_reset_tokens).where(_reset_tokens.c.expires_at < now)).rowcount
        return sessions, tokens

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _insert_session(conn, session: Session) -> str:
    session_id = session.id or new_id()
    conn.execute(
        _sessions.insert().values(
            id=session_id,
            user_id=session.user_id,
            session_token_hash=session.session_token_hash,
            refresh_token_hash=session.refresh_token_hash,
            ip_address=session.ip_address,
            user_agent=(session.user_agent or "")[:512] or None,
            expires_at=session.expires_at,
            created_at=now_iso(),
        )
    )
    return session_id


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        password_scheme=PasswordScheme(row.password_scheme),
        status=UserStatus(row.status),
        failed_login_attempts=row.failed_login_attempts,
        locked_until=row.locked_until,
        email_verified=bool(row.email_verified),
        verification_token_hash=row.verification_token_hash,
        is_system_admin=bool(row.is_system_admin),
        enterprise_id=row.enterprise_id,
        password_changed_at=row.password_changed_at,
        last_login_at=row.last_login_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        session_token_hash=row.session_token_hash,
        refresh_token_hash=row.refresh_token_hash,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


def _row_to_reset_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        used_at=row.used_at,
        created_at=row.created_at,
    )
