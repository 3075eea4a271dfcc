"""
auth/permissions.py -- Permission Engine: rule evaluation and role tables.

A PermissionRule grants (allow) or forbids (deny) one action on one resource
type, optionally narrowed to a single resource id. A rule without a
resource_id is a wildcard over every resource of its type.

Evaluation (evaluate):
  1. A rule matches when resource_type and action are equal and the rule is
     either a wildcard or names the queried resource_id.
  2. Any matching deny -> False, however many allows also match.
  3. Otherwise True iff some matching rule allows.
  4. Nothing matches -> False.

Role tables are built cumulatively so owner ⊇ admin ⊇ member ⊇ viewer holds
by construction. rules_for() is total over TeamRole: adding a role without a
table fails at import, not at the first request.

OWNER_ONLY_PERMISSIONS are the owner table minus the admin table (team
create, delete, assign_admin, transfer_ownership). Per-member overrides may
deny them but never grant them.

system_admin is a separate table, not a team role: it allows every action on
every resource type.

Pure module: no I/O, no imports from api/, teams/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from core.errors import AuthorizationError


class ResourceType(str, Enum):
    user = "user"
    team = "team"
    project = "project"
    dataset = "dataset"
    workflow = "workflow"
    api = "api"
    enterprise = "enterprise"
    department = "department"
    role = "role"
    system = "system"


class Action(str, Enum):
    create = "create"
    read = "read"
    update = "update"
    delete = "delete"
    execute = "execute"
    share = "share"
    manage = "manage"
    manage_members = "manage_members"
    invite_members = "invite_members"
    assign_admin = "assign_admin"
    transfer_ownership = "transfer_ownership"


class Effect(str, Enum):
    allow = "allow"
    deny = "deny"


class TeamRole(str, Enum):
    owner = "owner"
    admin = "admin"
    member = "member"
    viewer = "viewer"


@dataclass(frozen=True)
class PermissionRule:
    resource_type: ResourceType
    action: Action
    effect: Effect = Effect.allow
    resource_id: Optional[str] = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.resource_type.value, self.action.value, self.resource_id or "*")

    def matches(self, resource_type: ResourceType, action: Action, resource_id: Optional[str] = None) -> bool:
        if self.resource_type != resource_type or self.action != action:
            return False
        return self.resource_id is None or self.resource_id == resource_id

    def to_dict(self) -> dict:
        return {
            "resourceType": self.resource_type.value,
            "action": self.action.value,
            "effect": self.effect.value,
            "resourceId": self.resource_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PermissionRule":
        """Inverse of to_dict(). Raises ValueError on unknown enum values."""
        return cls(
            resource_type=ResourceType(data["resourceType"]),
            action=Action(data["action"]),
            effect=Effect(data.get("effect", Effect.allow.value)),
            resource_id=data.get("resourceId"),
        )


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def evaluate(
    rules: Iterable[PermissionRule],
    resource_type: ResourceType,
    action: Action,
    resource_id: Optional[str] = None,
) -> bool:
    """Deny-wins, default-deny evaluation of rules against one query."""
    allowed = False
    for rule in rules:
        if not rule.matches(resource_type, action, resource_id):
            continue
        if rule.effect == Effect.deny:
            return False
        allowed = True
    return allowed


def merge_rules(*rule_lists: Iterable[PermissionRule]) -> list[PermissionRule]:
    """Combine rule sets from several sources into one, one rule per key.

    Key is (resource_type, action, resource_id or "*"). If any contributor
    denies a key, the merged rule for that key denies. Order of first
    appearance is preserved.
    """
    merged: dict[tuple[str, str, str], PermissionRule] = {}
    for rules in rule_lists:
        for rule in rules:
            existing = merged.get(rule.key)
            if existing is None or (rule.effect == Effect.deny and existing.effect != Effect.deny):
                merged[rule.key] = rule
    return list(merged.values())


def require_permission(
    rules: Iterable[PermissionRule],
    resource_type: ResourceType,
    action: Action,
    resource_id: Optional[str] = None,
) -> None:
    """Raise AuthorizationError(ACCESS_DENIED) unless rules allow the action."""
    if not evaluate(rules, resource_type, action, resource_id):
        raise AuthorizationError(
            f"Permission denied: {resource_type.value}:{action.value}",
            code="ACCESS_DENIED",
        )


# ---------------------------------------------------------------------------
# Role tables
# ---------------------------------------------------------------------------


def _allow(*pairs: tuple[ResourceType, Action]) -> tuple[PermissionRule, ...]:
    return tuple(PermissionRule(resource_type, action) for resource_type, action in pairs)


_T = ResourceType.team
_P = ResourceType.project

_VIEWER = _allow((_T, Action.read), (_P, Action.read))
_MEMBER = _VIEWER + _allow((_P, Action.create), (_P, Action.update))
_ADMIN = _MEMBER + _allow(
    (_T, Action.update),
    (_T, Action.manage_members),
    (_T, Action.invite_members),
    (_P, Action.delete),
    (_P, Action.manage),
)
_OWNER = _ADMIN + _allow(
    (_T, Action.create),
    (_T, Action.delete),
    (_T, Action.assign_admin),
    (_T, Action.transfer_ownership),
)

_ROLE_RULES: dict[TeamRole, tuple[PermissionRule, ...]] = {
    TeamRole.viewer: _VIEWER,
    TeamRole.member: _MEMBER,
    TeamRole.admin: _ADMIN,
    TeamRole.owner: _OWNER,
}

_missing = set(TeamRole) - set(_ROLE_RULES)
if _missing:
    raise RuntimeError(f"No permission table for team roles: {sorted(r.value for r in _missing)}")

SYSTEM_ADMIN_RULES: tuple[PermissionRule, ...] = tuple(
    PermissionRule(resource_type, action) for resource_type in ResourceType for action in Action
)


def rules_for(role: TeamRole) -> tuple[PermissionRule, ...]:
    """Static rule set of a team role."""
    return _ROLE_RULES[TeamRole(role)]


OWNER_ONLY_PERMISSIONS: frozenset[tuple[ResourceType, Action]] = frozenset(
    (r.resource_type, r.action) for r in _OWNER
) - frozenset((r.resource_type, r.action) for r in _ADMIN)


def is_owner_only(rule: PermissionRule) -> bool:
    return (rule.resource_type, rule.action) in OWNER_ONLY_PERMISSIONS
