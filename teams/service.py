"""
teams/service.py -- Team Membership Manager: policy over teams/store.py.

Every mutation is authorized through the Permission Engine before anything is
written. The caller's effective rules are:

  system admin        SYSTEM_ADMIN_RULES (every action, every team)
  active member       rules_for(role) merged with the member's overrides
                      (allow overrides of owner-only actions are ignored)
  anyone else         no rules (default deny)

Pending and suspended members hold no rights until they become active.

Role-mutation rules:
  - The owner row is never changed by update_member_role or removed by
    remove_member / leave_team. Ownership only moves via transfer_ownership.
  - Promotion to admin needs team:assign_admin, which only owners hold.
  - Invitations can never grant the owner role.
  - Overrides are set by member managers on other members only, and may only
    allow what the updater itself holds. Owner-only actions can be denied by
    an override but never allowed.

Every mutating call emits one audit event (success or failure) through the
AuditSink passed at construction.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from auth.permissions import (
    SYSTEM_ADMIN_RULES,
    Action,
    Effect,
    PermissionRule,
    ResourceType,
    TeamRole,
    evaluate,
    is_owner_only,
    merge_rules,
    require_permission,
    rules_for,
)
from auth.store import UserStore
from core.collaborators import AuditSink, LoggingAuditSink, audited
from core.errors import AuthorizationError, InvalidOperationError, NotFoundError
from teams.models import DEFAULT_MAX_MEMBERS, MemberStatus, Team, TeamMember
from teams.store import TeamStore

logger = logging.getLogger("teamguard.teams")

_TEAM = ResourceType.team.value


class TeamService:
    def __init__(self, teams: TeamStore, users: UserStore, audit: Optional[AuditSink] = None) -> None:
        self._teams = teams
        self._users = users
        self._audit = audit or LoggingAuditSink()

    # ------------------------------------------------------------------
    # Permission resolution
    # ------------------------------------------------------------------

    def effective_rules(self, team_id: str, user_id: str) -> list[PermissionRule]:
        """Merged rule set user_id holds in team_id."""
        user = self._users.get_by_id(user_id)
        if user is not None and user.is_system_admin:
            return list(SYSTEM_ADMIN_RULES)
        member = self._teams.get_member(team_id, user_id)
        if member is None or member.status != MemberStatus.active:
            return []
        overrides = [r for r in member.permissions if r.effect == Effect.deny or not is_owner_only(r)]
        return merge_rules(rules_for(member.role), overrides)

    def has_team_permission(
        self,
        user_id: str,
        team_id: str,
        action: Action,
        resource_type: ResourceType = ResourceType.team,
    ) -> bool:
        return evaluate(self.effective_rules(team_id, user_id), resource_type, action, team_id)

    def require_team_permission(
        self,
        user_id: str,
        team_id: str,
        action: Action,
        resource_type: ResourceType = ResourceType.team,
    ) -> None:
        require_permission(self.effective_rules(team_id, user_id), resource_type, action, team_id)

    def get_member_permissions(self, team_id: str, user_id: str) -> list[PermissionRule]:
        """Effective rules of user_id in team_id. Raises TEAM_NOT_FOUND for unknown teams."""
        self._require_team(team_id)
        return self.effective_rules(team_id, user_id)

    # ------------------------------------------------------------------
    # Teams
    # ------------------------------------------------------------------

    def create_team(
        self,
        creator_id: str,
        name: str,
        description: Optional[str] = None,
        max_members: int = DEFAULT_MAX_MEMBERS,
        is_private: bool = False,
        tags: Iterable[str] = (),
    ) -> Team:
        """Create a team owned by creator_id, with its owner membership."""
        with audited(self._audit, creator_id, "create_team", _TEAM, None):
            creator = self._users.get_by_id(creator_id)
            if creator is None:
                raise NotFoundError("Creator not found.", code="USER_NOT_FOUND")
            team = self._teams.create_team(
                Team(
                    name=name,
                    owner_id=creator_id,
                    description=description,
                    max_members=max_members,
                    is_private=is_private,
                    tags=list(tags),
                    enterprise_id=creator.enterprise_id,
                ),
                owner_name=creator.username,
            )
        logger.info("Team %s (%s) created by %s", team.id, team.name, creator_id)
        return team

    def get_team(self, team_id: str, user_id: str) -> Team:
        """Return the team. Private teams are visible to their active members only."""
        team = self._require_team(team_id)
        if team.is_private:
            self.require_team_permission(user_id, team_id, Action.read)
        return team

    def list_user_teams(self, user_id: str) -> list[Team]:
        return self._teams.list_teams_for_user(user_id)

    def update_team(self, team_id: str, user_id: str, **changes) -> Team:
        """Apply changes (name, description, max_members, is_private, tags). Needs team:update."""
        with audited(self._audit, user_id, "update_team", _TEAM, team_id):
            self._require_team(team_id)
            self.require_team_permission(user_id, team_id, Action.update)
            changes = {k: v for k, v in changes.items() if v is not None}
            if "max_members" in changes and changes["max_members"] < self._teams.count_seated(team_id):
                raise InvalidOperationError(
                    "max_members cannot be lower than the current member count.", code="INVALID_OPERATION"
                )
            updated = self._teams.update_team(team_id, **changes)
            if updated is None:
                raise NotFoundError("Team not found.", code="TEAM_NOT_FOUND")
        logger.info("Team %s updated by %s: %s", team_id, user_id, sorted(changes))
        return updated

    def delete_team(self, team_id: str, user_id: str) -> None:
        """Tombstone the team. Only the owner holds team:delete."""
        with audited(self._audit, user_id, "delete_team", _TEAM, team_id):
            self._require_team(team_id)
            self.require_team_permission(user_id, team_id, Action.delete)
            if not self._teams.delete_team(team_id):
                raise NotFoundError("Team not found.", code="TEAM_NOT_FOUND")
        logger.info("Team %s deleted by %s", team_id, user_id)

    def get_team_members(self, team_id: str, user_id: str) -> list[TeamMember]:
        self._require_team(team_id)
        self.require_team_permission(user_id, team_id, Action.read)
        return self._teams.list_members(team_id)

    # ------------------------------------------------------------------
    # Membership lifecycle
    # ------------------------------------------------------------------

    def invite_user(self, team_id: str, email: str, role: TeamRole, inviter_id: str) -> TeamMember:
        """Invite an existing user by email. The membership starts pending.

        Raises:
            AuthorizationError(ACCESS_DENIED)     inviter lacks team:invite_members
            InvalidOperationError                  role is owner, or team is full
            NotFoundError(USER_NOT_FOUND)          no user with that email
            ConflictError(ALREADY_MEMBER)          active or pending membership exists
        """
        role = TeamRole(role)
        with audited(self._audit, inviter_id, "invite_member", _TEAM, team_id):
            team = self._require_team(team_id)
            self.require_team_permission(inviter_id, team_id, Action.invite_members)
            if role == TeamRole.owner:
                raise InvalidOperationError(
                    "Ownership cannot be granted by invitation; transfer ownership instead.",
                    code="INVALID_OPERATION",
                )
            invitee = self._users.get_by_email(email)
            if invitee is None:
                raise NotFoundError("User not found.", code="USER_NOT_FOUND")
            member = self._teams.add_member(
                team_id,
                invitee.id,
                role,
                max_members=team.max_members,
                name=invitee.username,
                invited_by=inviter_id,
            )
        logger.info("User %s invited to team %s as %s by %s", invitee.id, team_id, role.value, inviter_id)
        return member

    def accept_invitation(self, team_id: str, user_id: str) -> TeamMember:
        with audited(self._audit, user_id, "accept_invitation", _TEAM, team_id):
            self._require_team(team_id)
            member = self._teams.get_member(team_id, user_id)
            if member is None:
                raise NotFoundError("You have no invitation to this team.", code="NOT_MEMBER")
            if member.status != MemberStatus.pending:
                raise InvalidOperationError("No pending invitation to accept.", code="INVALID_OPERATION")
            accepted = self._teams.activate_member(team_id, user_id)
            if accepted is None:
                raise InvalidOperationError("No pending invitation to accept.", code="INVALID_OPERATION")
        return accepted

    def update_member_role(self, team_id: str, member_id: str, new_role: TeamRole, updater_id: str) -> TeamMember:
        """Change member_id's role. member_id is the member's user id."""
        new_role = TeamRole(new_role)
        with audited(self._audit, updater_id, "change_user_role", _TEAM, team_id):
            self._require_team(team_id)
            rules = self.effective_rules(team_id, updater_id)
            require_permission(rules, ResourceType.team, Action.manage_members, team_id)
            target = self._teams.get_member(team_id, member_id)
            if target is None:
                raise NotFoundError("Team member not found.", code="MEMBER_NOT_FOUND")
            if target.role == TeamRole.owner:
                raise InvalidOperationError("The owner's role cannot be changed.", code="INVALID_OPERATION")
            if new_role == TeamRole.owner:
                raise InvalidOperationError(
                    "Use ownership transfer to make a member the owner.", code="INVALID_OPERATION"
                )
            if new_role == TeamRole.admin:
                require_permission(rules, ResourceType.team, Action.assign_admin, team_id)
            updated = self._teams.update_member_role(team_id, member_id, new_role)
            if updated is None:
                raise NotFoundError("Team member not found.", code="MEMBER_NOT_FOUND")
        logger.info(
            "Member %s of team %s: role %s -> %s by %s",
            member_id,
            team_id,
            target.role.value,
            new_role.value,
            updater_id,
        )
        return updated

    def set_member_permissions(
        self,
        team_id: str,
        member_id: str,
        rules: Iterable[PermissionRule],
        updater_id: str,
    ) -> TeamMember:
        """Replace member_id's per-member overrides. The owner's rules are fixed.

        Raises:
            AuthorizationError(ACCESS_DENIED)     updater lacks team:manage_members, targets
                                                   themselves, or allows an action it does
                                                   not hold or that only owners hold
            InvalidOperationError                  target is the owner
            NotFoundError(MEMBER_NOT_FOUND)        no live membership
        """
        rules = list(rules)
        with audited(self._audit, updater_id, "change_member_permissions", _TEAM, team_id):
            self._require_team(team_id)
            updater_rules = self.effective_rules(team_id, updater_id)
            require_permission(updater_rules, ResourceType.team, Action.manage_members, team_id)
            if member_id == updater_id:
                raise AuthorizationError("You cannot change your own permissions.", code="ACCESS_DENIED")
            target = self._teams.get_member(team_id, member_id)
            if target is None:
                raise NotFoundError("Team member not found.", code="MEMBER_NOT_FOUND")
            if target.role == TeamRole.owner:
                raise InvalidOperationError("The owner's permissions cannot be overridden.", code="INVALID_OPERATION")
            for rule in rules:
                if rule.effect == Effect.allow:
                    _check_grantable(updater_rules, rule)
            updated = self._teams.set_member_permissions(team_id, member_id, rules)
            if updated is None:
                raise NotFoundError("Team member not found.", code="MEMBER_NOT_FOUND")
        logger.info("Member %s of team %s: %d override(s) set by %s", member_id, team_id, len(rules), updater_id)
        return updated

    def remove_member(self, team_id: str, member_id: str, remover_id: str) -> None:
        """Tombstone member_id's membership. Allowed for member managers, or for oneself."""
        with audited(self._audit, remover_id, "remove_member", _TEAM, team_id):
            self._require_team(team_id)
            if remover_id != member_id:
                self.require_team_permission(remover_id, team_id, Action.manage_members)
            target = self._teams.get_member(team_id, member_id)
            if target is None:
                raise NotFoundError("Team member not found.", code="MEMBER_NOT_FOUND")
            if target.role == TeamRole.owner:
                raise InvalidOperationError("The team owner cannot be removed.", code="INVALID_OPERATION")
            if not self._teams.deactivate_member(team_id, member_id):
                raise NotFoundError("Team member not found.", code="MEMBER_NOT_FOUND")
        logger.info("Member %s removed from team %s by %s", member_id, team_id, remover_id)

    def leave_team(self, team_id: str, user_id: str) -> None:
        with audited(self._audit, user_id, "leave_team", _TEAM, team_id):
            self._require_team(team_id)
            member = self._teams.get_member(team_id, user_id)
            if member is None or member.status != MemberStatus.active:
                raise NotFoundError("You are not a member of this team.", code="NOT_MEMBER")
            if member.role == TeamRole.owner:
                raise InvalidOperationError(
                    "Team owner cannot leave. Transfer ownership first.", code="INVALID_OPERATION"
                )
            if not self._teams.deactivate_member(team_id, user_id):
                raise NotFoundError("You are not a member of this team.", code="NOT_MEMBER")
        logger.info("User %s left team %s", user_id, team_id)

    def transfer_ownership(self, team_id: str, new_owner_id: str, actor_id: str) -> Team:
        """Make new_owner_id the owner; the previous owner stays on as admin.

        Initiated by the current owner (or a system admin). The new owner must
        already be an active member; no acceptance step is required.
        """
        with audited(self._audit, actor_id, "transfer_ownership", _TEAM, team_id):
            team = self._require_team(team_id)
            self.require_team_permission(actor_id, team_id, Action.transfer_ownership)
            if new_owner_id == team.owner_id:
                raise InvalidOperationError("User already owns this team.", code="INVALID_OPERATION")
            target = self._teams.get_member(team_id, new_owner_id)
            if target is None or target.status != MemberStatus.active:
                raise NotFoundError("New owner must be an active team member.", code="MEMBER_NOT_FOUND")
            if not self._teams.transfer_ownership(team_id, team.owner_id, new_owner_id):
                raise InvalidOperationError(
                    "Ownership changed concurrently; reload and retry.", code="INVALID_OPERATION"
                )
        logger.info("Team %s ownership transferred %s -> %s by %s", team_id, team.owner_id, new_owner_id, actor_id)
        return self._require_team(team_id)

    def _require_team(self, team_id: str) -> Team:
        team = self._teams.get_team(team_id)
        if team is None:
            raise NotFoundError("Team not found.", code="TEAM_NOT_FOUND")
        return team


def _check_grantable(updater_rules: list[PermissionRule], rule: PermissionRule) -> None:
    label = f"{rule.resource_type.value}:{rule.action.value}"
    if is_owner_only(rule):
        raise AuthorizationError(f"{label} is reserved for the team owner.", code="ACCESS_DENIED")
    if not evaluate(updater_rules, rule.resource_type, rule.action, rule.resource_id):
        raise AuthorizationError(f"You cannot grant {label} without holding it.", code="ACCESS_DENIED")
