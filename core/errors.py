"""
core/errors.py -- Typed error taxonomy shared by every layer.

Each error carries a stable machine-readable code and a class-level HTTP
status. Stores and services raise these directly; api/main.py translates any
AppError into the JSON error envelope without re-wrapping it, so the code a
service chose is exactly the code the client sees.

Layer rule: no imports from api/, auth/, teams/, or cache/.
"""

from __future__ import annotations


class AppError(Exception):
    """Base class for all expected, client-facing failures."""

    status_code: int = 500
    default_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str | None = None, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.detail = detail

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class ValidationError(AppError):
    """Malformed or missing input."""

    status_code = 400
    default_code = "VALIDATION_ERROR"


class AuthenticationError(AppError):
    """Bad credentials, invalid or expired token, locked account."""

    status_code = 401
    default_code = "INVALID_CREDENTIALS"


class AuthorizationError(AppError):
    """Authenticated principal lacks the role or permission."""

    status_code = 403
    default_code = "ACCESS_DENIED"


class NotFoundError(AppError):
    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(AppError):
    """Duplicate username, email, team name or membership."""

    status_code = 409
    default_code = "CONFLICT"


class InvalidOperationError(AppError):
    """Structurally disallowed state transition (e.g. demoting an owner)."""

    status_code = 400
    default_code = "INVALID_OPERATION"


class InternalError(AppError):
    """Storage or backend failure."""

    status_code = 500
    default_code = "INTERNAL_ERROR"
