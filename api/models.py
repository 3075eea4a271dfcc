"""
API request and response models for the TeamGuard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
teams/models.py, which own the internal domain representation. Route handlers
map between the two through the from_* factory methods below.

Wire format is camelCase (refreshToken, expiresIn, isPrivate, ...). Python
attributes stay snake_case; populate_by_name lets tests and handlers build
models with either spelling.

Separation of concerns: auth/ and teams/ models = domain truth; api/ models =
API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from auth.models import User, UserStatus
from auth.permissions import Action, Effect, PermissionRule, ResourceType, TeamRole
from teams.models import Team, TeamMember

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[A-Za-z0-9_.-]{3,64}$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# bcrypt reads at most 72 bytes; 128 chars keeps typical passwords intact and
# bounds the work a single request can cause.
_PASSWORD_MAX = 128


class _ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


class _FrozenApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Structured error payload. code is a stable machine-readable string."""

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Envelope for every non-2xx response: {"error": {...}}."""

    error: ErrorDetail


class MessageResponse(_FrozenApiModel):
    message: str


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class LoginRequest(_ApiModel):
    """Request body for POST /api/v1/auth/login. username may also be an email address."""

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class RegisterRequest(_ApiModel):
    username: str = Field(pattern=USERNAME_PATTERN)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class RefreshRequest(_ApiModel):
    refresh_token: str = Field(min_length=1)


class VerifyEmailRequest(_ApiModel):
    token: str = Field(min_length=1, max_length=256)


class ForgotPasswordRequest(_ApiModel):
    email: str = Field(min_length=1, max_length=255)


class ResetPasswordRequest(_ApiModel):
    token: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class ChangePasswordRequest(_ApiModel):
    current_password: str = Field(min_length=1, max_length=_PASSWORD_MAX)
    new_password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class UserStatusUpdate(_ApiModel):
    status: UserStatus


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class UserResponse(_FrozenApiModel):
    """Public view of a user. Never includes the password hash or lockout fields."""

    id: str
    username: str
    email: str
    status: str
    email_verified: bool
    is_system_admin: bool
    enterprise_id: Optional[str] = None
    last_login_at: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            status=user.status.value,
            email_verified=user.email_verified,
            is_system_admin=user.is_system_admin,
            enterprise_id=user.enterprise_id,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
        )


class RegisterResponse(_FrozenApiModel):
    user: UserResponse


class TokenResponse(_FrozenApiModel):
    """Response for POST /api/v1/auth/refresh."""

    token: str
    refresh_token: str
    expires_in: int


class LoginResponse(_FrozenApiModel):
    """Response for POST /api/v1/auth/login."""

    user: UserResponse
    token: str
    refresh_token: str
    expires_in: int


# ---------------------------------------------------------------------------
# Teams -- requests
# ---------------------------------------------------------------------------


class TeamCreate(_ApiModel):
    """Request body for POST /api/v1/teams."""

    name: str = Field(min_length=1, max_length=128)
    description: Optional[str] = Field(default=None, max_length=1000)
    max_members: int = Field(default=50, ge=1, le=10000)
    is_private: bool = False
    tags: list[str] = Field(default_factory=list, max_length=20)


class TeamUpdate(_ApiModel):
    """Request body for PUT /api/v1/teams/{team_id}. Omitted fields are left unchanged."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    description: Optional[str] = Field(default=None, max_length=1000)
    max_members: Optional[int] = Field(default=None, ge=1, le=10000)
    is_private: Optional[bool] = None
    tags: Optional[list[str]] = Field(default=None, max_length=20)


class InviteRequest(_ApiModel):
    email: str = Field(min_length=1, max_length=255)
    role: TeamRole = TeamRole.member


class RoleUpdate(_ApiModel):
    role: TeamRole


class TransferOwnershipRequest(_ApiModel):
    user_id: str = Field(min_length=1, max_length=36)


class PermissionRuleModel(_ApiModel):
    """One allow/deny rule. resourceId omitted means every resource of the type."""

    resource_type: ResourceType
    action: Action
    effect: Effect = Effect.allow
    resource_id: Optional[str] = None

    def to_rule(self) -> PermissionRule:
        return PermissionRule(
            resource_type=self.resource_type,
            action=self.action,
            effect=self.effect,
            resource_id=self.resource_id,
        )

    @classmethod
    def from_rule(cls, rule: PermissionRule) -> "PermissionRuleModel":
        return cls(
            resource_type=rule.resource_type,
            action=rule.action,
            effect=rule.effect,
            resource_id=rule.resource_id,
        )


class MemberPermissionsUpdate(_ApiModel):
    """Request body for PUT /api/v1/teams/{team_id}/members/{member_id}/permissions."""

    rules: list[PermissionRuleModel] = Field(default_factory=list, max_length=100)


# ---------------------------------------------------------------------------
# Teams -- responses
# ---------------------------------------------------------------------------


class TeamResponse(_FrozenApiModel):
    id: str
    name: str
    owner_id: str
    description: Optional[str]
    status: str
    max_members: int
    is_private: bool
    tags: list[str]
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_team(cls, team: Team) -> "TeamResponse":
        return cls(
            id=team.id,
            name=team.name,
            owner_id=team.owner_id,
            description=team.description,
            status=team.status.value,
            max_members=team.max_members,
            is_private=team.is_private,
            tags=team.tags,
            created_at=team.created_at,
            updated_at=team.updated_at,
        )


class MemberResponse(_FrozenApiModel):
    id: str
    team_id: str
    user_id: str
    name: Optional[str]
    role: str
    status: str
    permissions: list[PermissionRuleModel] = Field(default_factory=list)
    invited_by: Optional[str] = None
    joined_at: Optional[str] = None

    @classmethod
    def from_member(cls, member: TeamMember) -> "MemberResponse":
        return cls(
            id=member.id,
            team_id=member.team_id,
            user_id=member.user_id,
            name=member.name,
            role=member.role.value,
            status=member.status.value,
            permissions=[PermissionRuleModel.from_rule(r) for r in member.permissions],
            invited_by=member.invited_by,
            joined_at=member.joined_at,
        )


class PermissionsResponse(_FrozenApiModel):
    """Effective, merged rules of the caller in one team."""

    team_id: str
    user_id: str
    rules: list[PermissionRuleModel]
