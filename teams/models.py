"""
teams/models.py -- Domain dataclasses for teams and memberships.

Pattern: Data class (pure data container, zero logic).

Invariant maintained by teams/store.py: Team.owner_id is the user_id of
exactly one TeamMember of that team with role owner and status active.

Layer rule: imports auth/permissions only (for TeamRole and PermissionRule).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from auth.permissions import PermissionRule, TeamRole

DEFAULT_MAX_MEMBERS = 50


class TeamStatus(str, Enum):
    active = "active"
    inactive = "inactive"
    suspended = "suspended"
    deleted = "deleted"


class MemberStatus(str, Enum):
    """pending (invited) -> active -> inactive (removed) | suspended.

    inactive is terminal for a row; the row itself is never deleted.
    """

    pending = "pending"
    active = "active"
    suspended = "suspended"
    inactive = "inactive"


@dataclass
class Team:
    name: str
    owner_id: str
    id: str | None = None
    description: str | None = None
    status: TeamStatus = TeamStatus.active
    max_members: int = DEFAULT_MAX_MEMBERS
    is_private: bool = False
    tags: list[str] = field(default_factory=list)
    enterprise_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class TeamMember:
    """A user's membership in one team. Unique on (team_id, user_id).

    permissions holds per-member overrides, merged with the role's rules
    (deny wins) when the member's effective permissions are computed.
    """

    team_id: str
    user_id: str
    role: TeamRole
    id: str | None = None
    name: str | None = None
    status: MemberStatus = MemberStatus.pending
    permissions: list[PermissionRule] = field(default_factory=list)
    invited_by: str | None = None
    invited_at: str | None = None
    joined_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
