"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/login            -- username-or-email + password; token pair
  POST /api/v1/auth/register         -- self-registration; user is pending_verification
  POST /api/v1/auth/verify-email     -- activate account with the emailed token
  POST /api/v1/auth/refresh          -- single-use refresh token rotation
  POST /api/v1/auth/logout           -- end current session (requires auth)
  POST /api/v1/auth/forgot-password  -- always 200, never discloses existence
  POST /api/v1/auth/reset-password   -- spend reset token, set new password
  POST /api/v1/auth/change-password  -- requires auth and the current password
  GET  /api/v1/auth/me               -- current user (requires auth)
  PUT    /api/v1/auth/users/{user_id}/status -- set account status (system admin)
  DELETE /api/v1/auth/users/{user_id}        -- soft-delete an account (system admin)

Security:
  POST /login is rate-limited per client IP (LOGIN_RATE_LIMIT).
  Login timing equalization lives in AuthService.login -- call it, never
  inline store lookups plus verify_password() here.
  Cache-Control: no-store on every response that carries tokens.

Errors are raised as core.errors.AppError subclasses by the services and
rendered by the handlers in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter, login_rate_limit
from api.models import (
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    TokenResponse,
    UserResponse,
    UserStatusUpdate,
    VerifyEmailRequest,
)
from auth.dependencies import get_bearer_token, get_current_user, require_system_admin
from auth.models import User, UserStatus
from auth.service import AuthService

# Auth policy:
# - POST /auth/login, /register, /verify-email, /refresh,
#        /forgot-password, /reset-password:  public
# - POST /auth/logout, /change-password; GET /auth/me:  bearer token
# - PUT /auth/users/{id}/status, DELETE /auth/users/{id}:  system admin
router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _client(request: Request) -> tuple[str | None, str | None]:
    ip = request.client.host if request.client else None
    return ip, request.headers.get("User-Agent")


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(login_rate_limit)
def login(request: Request, response: Response, body: LoginRequest) -> LoginResponse:
    """Authenticate and return the user with a fresh access/refresh pair.

    Failure codes: INVALID_CREDENTIALS (unknown user or wrong password),
    ACCOUNT_LOCKED, ACCOUNT_INACTIVE -- all 401.
    """
    ip, user_agent = _client(request)
    user, pair = _service(request).login(body.username, body.password, ip, user_agent)
    response.headers["Cache-Control"] = "no-store"
    return LoginResponse(
        user=UserResponse.from_user(user),
        token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
    )


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Create a pending_verification account and send the verification email. 409 on duplicates."""
    user = _service(request).register(body.username, body.email, body.password)
    return RegisterResponse(user=UserResponse.from_user(user))


@router.post("/auth/verify-email", response_model=RegisterResponse)
def verify_email(request: Request, body: VerifyEmailRequest) -> RegisterResponse:
    user = _service(request).verify_email(body.token)
    return RegisterResponse(user=UserResponse.from_user(user))


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, response: Response, body: RefreshRequest) -> TokenResponse:
    """Exchange a refresh token for a new pair. The presented token is spent either way it is used."""
    ip, user_agent = _client(request)
    pair = _service(request).refresh(body.refresh_token, ip, user_agent)
    response.headers["Cache-Control"] = "no-store"
    return TokenResponse(token=pair.access_token, refresh_token=pair.refresh_token, expires_in=pair.expires_in)


@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Always 200 with the same body, whether or not the address is registered."""
    _service(request).request_password_reset(body.email)
    return MessageResponse(message="If the address is registered, a reset link has been sent.")


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    _service(request).reset_password(body.token, body.new_password)
    return MessageResponse(message="Password has been reset. Please log in again.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, current_user: User = Depends(get_current_user)) -> MessageResponse:
    """End the session of the presented access token; the token stops working immediately."""
    _service(request).logout(current_user.id, get_bearer_token(request))
    return MessageResponse(message="Logged out.")


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    """400 INVALID_PASSWORD if currentPassword does not match. All sessions are ended on success."""
    _service(request).change_password(current_user.id, body.current_password, body.new_password)
    return MessageResponse(message="Password changed. Please log in again.")


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return the currently authenticated user."""
    return UserResponse.from_user(current_user)


# ---------------------------------------------------------------------------
# Account administration (system admin)
# ---------------------------------------------------------------------------


@router.put("/auth/users/{user_id}/status", response_model=UserResponse)
def set_user_status(
    request: Request,
    user_id: str,
    body: UserStatusUpdate,
    current_user: User = Depends(require_system_admin),
) -> UserResponse:
    """Activate, suspend or deactivate an account.

    Leaving active ends every session of the user at once. 400 for changes to
    one's own account or back to pending_verification.
    """
    user = _service(request).set_user_status(current_user.id, user_id, body.status)
    return UserResponse.from_user(user)


@router.delete("/auth/users/{user_id}", response_model=MessageResponse)
def delete_user(request: Request, user_id: str, current_user: User = Depends(require_system_admin)) -> MessageResponse:
    _service(request).set_user_status(current_user.id, user_id, UserStatus.deleted)
    return MessageResponse(message="User deleted.")
