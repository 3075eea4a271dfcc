"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Bearer tokens only: "Authorization: Bearer <access token>". There is no
cookie or API-key path.

get_current_user() runs, in order:
  1. TokenService.verify()      pure signature / claims check
  2. TokenService.is_revoked()  denylist lookup written by logout
  3. UserStore.get_by_id()      the user must still exist and be active
  4. pwdAt claim                must equal the user's password_changed_at,
                                so tokens issued before a password change or
                                reset are rejected

Failures raise AuthenticationError, which api/main.py renders as a 401
envelope with the error's own code (INVALID_TOKEN, TOKEN_EXPIRED, ...).

Layer rule: may import fastapi (this module is part of the DI system); no
imports from teams/ or api/.
"""

from __future__ import annotations

from fastapi import Request

from auth.models import User, UserStatus
from core.errors import AuthenticationError, AuthorizationError

_BEARER_PREFIX = "Bearer "


def get_bearer_token(request: Request) -> str:
    """Return the raw bearer token or raise AuthenticationError(UNAUTHORIZED)."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith(_BEARER_PREFIX) or not auth_header[len(_BEARER_PREFIX):].strip():
        raise AuthenticationError("Authentication required.", code="UNAUTHORIZED")
    return auth_header[len(_BEARER_PREFIX):].strip()


def get_current_user(request: Request) -> User:
    """Require a valid, unrevoked access token for an active user.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    token = get_bearer_token(request)
    token_service = request.app.state.token_service
    payload = token_service.verify(token)
    if token_service.is_revoked(token):
        raise AuthenticationError("Token has been revoked.", code="INVALID_TOKEN")
    user = request.app.state.user_store.get_by_id(payload["userId"])
    if user is None or user.status != UserStatus.active:
        raise AuthenticationError("Invalid token.", code="INVALID_TOKEN")
    if payload.get("pwdAt") != user.password_changed_at:
        raise AuthenticationError("Token was issued before the last password change.", code="INVALID_TOKEN")
    return user


def require_system_admin(request: Request) -> User:
    """Require a system administrator. 401 if unauthenticated, 403 otherwise.

    Use as a FastAPI dependency:
        @router.put("/admin-only")
        def route(user: User = Depends(require_system_admin)): ...
    """
    user = get_current_user(request)
    if not user.is_system_admin:
        raise AuthorizationError("System administrator access required.", code="ACCESS_DENIED")
    return user
