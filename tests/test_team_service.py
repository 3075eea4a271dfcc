"""Unit tests for teams/service.py -- the Team Membership Manager.

Covers:
- effective permissions: role tables, member overrides (deny wins), pending
  members hold nothing, system admins hold everything
- team lifecycle: create, private visibility, update, delete
- invitations: permission first, no owner invites, unknown users, duplicates,
  capacity, acceptance
- role changes: assign_admin is owner-only, the owner row is immutable
- override grants: never to oneself, never owner actions, never beyond what
  the updater holds; stored owner-action allows are ignored
- removal and leaving: self-removal, owner cannot leave or be removed
- ownership transfer: exactly one owner before and after
- audit events for allowed and refused mutations
"""

from dataclasses import dataclass

import pytest

from auth.models import User
from auth.permissions import SYSTEM_ADMIN_RULES, Action, Effect, PermissionRule, ResourceType, TeamRole, rules_for
from core.errors import AuthorizationError, ConflictError, InvalidOperationError, NotFoundError
from teams.models import MemberStatus, Team
from teams.service import TeamService


@dataclass
class Crew:
    """One team with a member in every role, plus people outside it."""

    team: Team
    owner: User
    admin: User
    member: User
    viewer: User
    outsider: User
    root: User


@pytest.fixture
def service(team_store, user_store, audit) -> TeamService:
    return TeamService(team_store, user_store, audit=audit)


def _join(service: TeamService, team: Team, user: User, role: TeamRole, inviter: User) -> None:
    service.invite_user(team.id, user.email, role, inviter.id)
    service.accept_invitation(team.id, user.id)


@pytest.fixture
def crew(service, make_user) -> Crew:
    owner = make_user("owner")
    team = service.create_team(owner.id, "core", description="Core platform", is_private=True)
    crew = Crew(
        team=team,
        owner=owner,
        admin=make_user("admin"),
        member=make_user("member"),
        viewer=make_user("viewer"),
        outsider=make_user("outsider"),
        root=make_user("root", is_system_admin=True),
    )
    _join(service, team, crew.admin, TeamRole.admin, owner)
    _join(service, team, crew.member, TeamRole.member, owner)
    _join(service, team, crew.viewer, TeamRole.viewer, owner)
    return crew


def _assert_single_owner(service: TeamService, team_store, team_id: str) -> None:
    owners = [m for m in team_store.list_members(team_id) if m.role == TeamRole.owner]
    assert len(owners) == 1, f"expected one owner, got {[m.user_id for m in owners]}"
    assert owners[0].status == MemberStatus.active
    assert team_store.get_team(team_id).owner_id == owners[0].user_id


# ---------------------------------------------------------------------------
# Effective permissions
# ---------------------------------------------------------------------------


class TestEffectivePermissions:
    def test_role_rules(self, service, crew) -> None:
        assert set(service.effective_rules(crew.team.id, crew.viewer.id)) == set(rules_for(TeamRole.viewer))
        assert set(service.effective_rules(crew.team.id, crew.owner.id)) == set(rules_for(TeamRole.owner))

    def test_outsider_has_nothing(self, service, crew) -> None:
        assert service.effective_rules(crew.team.id, crew.outsider.id) == []
        assert service.has_team_permission(crew.outsider.id, crew.team.id, Action.read) is False

    def test_pending_member_has_nothing(self, service, crew, make_user) -> None:
        invitee = make_user("invitee")
        service.invite_user(crew.team.id, invitee.email, TeamRole.admin, crew.owner.id)
        assert service.effective_rules(crew.team.id, invitee.id) == []

    def test_system_admin_has_everything(self, service, crew) -> None:
        assert service.effective_rules(crew.team.id, crew.root.id) == list(SYSTEM_ADMIN_RULES)
        assert service.has_team_permission(crew.root.id, crew.team.id, Action.transfer_ownership) is True

    def test_deny_override_beats_role(self, service, crew) -> None:
        deny = PermissionRule(ResourceType.project, Action.create, Effect.deny)
        service.set_member_permissions(crew.team.id, crew.member.id, [deny], crew.admin.id)
        assert (
            service.has_team_permission(crew.member.id, crew.team.id, Action.create, ResourceType.project) is False
        )
        assert service.has_team_permission(crew.member.id, crew.team.id, Action.read) is True

    def test_allow_override_extends_role(self, service, crew) -> None:
        grant = PermissionRule(ResourceType.team, Action.invite_members)
        service.set_member_permissions(crew.team.id, crew.member.id, [grant], crew.owner.id)
        assert service.has_team_permission(crew.member.id, crew.team.id, Action.invite_members) is True

    def test_get_member_permissions_unknown_team(self, service, crew) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            service.get_member_permissions("no-such-team", crew.owner.id)
        assert exc_info.value.code == "TEAM_NOT_FOUND"

    def test_require_team_permission(self, service, crew) -> None:
        service.require_team_permission(crew.admin.id, crew.team.id, Action.manage_members)
        with pytest.raises(AuthorizationError) as exc_info:
            service.require_team_permission(crew.viewer.id, crew.team.id, Action.manage_members)
        assert exc_info.value.code == "ACCESS_DENIED"


# ---------------------------------------------------------------------------
# Team lifecycle
# ---------------------------------------------------------------------------


class TestTeams:
    def test_create_team(self, service, team_store, audit, make_user) -> None:
        ada = make_user("ada", enterprise_id="ent-1")
        team = service.create_team(ada.id, "research", tags=["ml"], max_members=5)
        assert team.owner_id == ada.id
        assert team.enterprise_id == "ent-1"
        assert team.max_members == 5
        assert [t.id for t in service.list_user_teams(ada.id)] == [team.id]
        _assert_single_owner(service, team_store, team.id)
        assert audit.actions("success")[-1] == "create_team"

    def test_create_team_unknown_creator(self, service) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            service.create_team("no-such-user", "research")
        assert exc_info.value.code == "USER_NOT_FOUND"

    def test_duplicate_name(self, service, crew) -> None:
        with pytest.raises(ConflictError) as exc_info:
            service.create_team(crew.outsider.id, "core")
        assert exc_info.value.code == "TEAM_NAME_TAKEN"

    def test_private_team_hidden_from_outsiders(self, service, crew) -> None:
        assert service.get_team(crew.team.id, crew.viewer.id).id == crew.team.id
        with pytest.raises(AuthorizationError):
            service.get_team(crew.team.id, crew.outsider.id)

    def test_public_team_visible_to_anyone(self, service, make_user) -> None:
        ada = make_user("ada")
        team = service.create_team(ada.id, "open", is_private=False)
        assert service.get_team(team.id, "anyone").name == "open"

    def test_get_unknown_team(self, service, crew) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            service.get_team("no-such-team", crew.owner.id)
        assert exc_info.value.code == "TEAM_NOT_FOUND"

    def test_update_team(self, service, crew) -> None:
        updated = service.update_team(crew.team.id, crew.admin.id, description="New", name=None)
        assert updated.description == "New"
        assert updated.name == "core"

    def test_member_cannot_update(self, service, crew) -> None:
        with pytest.raises(AuthorizationError):
            service.update_team(crew.team.id, crew.member.id, description="New")

    def test_max_members_below_seated(self, service, crew) -> None:
        with pytest.raises(InvalidOperationError) as exc_info:
            service.update_team(crew.team.id, crew.owner.id, max_members=3)
        assert exc_info.value.code == "INVALID_OPERATION"
        assert service.update_team(crew.team.id, crew.owner.id, max_members=4).max_members == 4

    def test_only_owner_deletes(self, service, crew, audit) -> None:
        with pytest.raises(AuthorizationError):
            service.delete_team(crew.team.id, crew.admin.id)
        assert audit.actions("failure")[-1] == "delete_team"
        service.delete_team(crew.team.id, crew.owner.id)
        with pytest.raises(NotFoundError):
            service.get_team(crew.team.id, crew.owner.id)
        assert service.list_user_teams(crew.member.id) == []

    def test_members_need_read(self, service, crew) -> None:
        assert len(service.get_team_members(crew.team.id, crew.viewer.id)) == 4
        with pytest.raises(AuthorizationError):
            service.get_team_members(crew.team.id, crew.outsider.id)


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------


class TestInvitations:
    def test_member_cannot_invite(self, service, team_store, crew, audit) -> None:
        with pytest.raises(AuthorizationError) as exc_info:
            service.invite_user(crew.team.id, crew.outsider.email, TeamRole.member, crew.member.id)
        assert exc_info.value.code == "ACCESS_DENIED"
        assert team_store.get_member(crew.team.id, crew.outsider.id) is None
        assert audit.actions("failure") == ["invite_member"]

    def test_permission_is_checked_before_role(self, service, crew) -> None:
        with pytest.raises(AuthorizationError):
            service.invite_user(crew.team.id, crew.outsider.email, TeamRole.owner, crew.member.id)

    def test_cannot_invite_as_owner(self, service, crew) -> None:
        with pytest.raises(InvalidOperationError):
            service.invite_user(crew.team.id, crew.outsider.email, TeamRole.owner, crew.owner.id)

    def test_admin_invites(self, service, crew) -> None:
        member = service.invite_user(crew.team.id, crew.outsider.email, TeamRole.admin, crew.admin.id)
        assert member.status == MemberStatus.pending
        assert member.role == TeamRole.admin
        assert member.invited_by == crew.admin.id

    def test_unknown_email(self, service, crew) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            service.invite_user(crew.team.id, "ghost@example.com", TeamRole.member, crew.owner.id)
        assert exc_info.value.code == "USER_NOT_FOUND"

    def test_unknown_team(self, service, crew) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            service.invite_user("no-such-team", crew.outsider.email, TeamRole.member, crew.owner.id)
        assert exc_info.value.code == "TEAM_NOT_FOUND"

    def test_already_member(self, service, crew) -> None:
        with pytest.raises(ConflictError) as exc_info:
            service.invite_user(crew.team.id, crew.member.email, TeamRole.viewer, crew.owner.id)
        assert exc_info.value.code == "ALREADY_MEMBER"

    def test_team_full(self, service, crew) -> None:
        service.update_team(crew.team.id, crew.owner.id, max_members=4)
        with pytest.raises(InvalidOperationError) as exc_info:
            service.invite_user(crew.team.id, crew.outsider.email, TeamRole.member, crew.owner.id)
        assert exc_info.value.code == "TEAM_FULL"

    def test_accept_without_invitation(self, service, crew) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            service.accept_invitation(crew.team.id, crew.outsider.id)
        assert exc_info.value.code == "NOT_MEMBER"

    def test_accept_twice(self, service, crew) -> None:
        with pytest.raises(InvalidOperationError):
            service.accept_invitation(crew.team.id, crew.member.id)

    def test_accept_grants_the_invited_role(self, service, crew) -> None:
        service.invite_user(crew.team.id, crew.outsider.email, TeamRole.viewer, crew.owner.id)
        accepted = service.accept_invitation(crew.team.id, crew.outsider.id)
        assert accepted.status == MemberStatus.active
        assert accepted.joined_at is not None
        assert service.get_team(crew.team.id, crew.outsider.id).id == crew.team.id


# ---------------------------------------------------------------------------
# Role changes and overrides
# ---------------------------------------------------------------------------


class TestRoles:
    def test_admin_cannot_promote_to_admin(self, service, crew) -> None:
        with pytest.raises(AuthorizationError):
            service.update_member_role(crew.team.id, crew.member.id, TeamRole.admin, crew.admin.id)

    def test_owner_promotes_to_admin(self, service, crew, audit) -> None:
        updated = service.update_member_role(crew.team.id, crew.member.id, TeamRole.admin, crew.owner.id)
        assert updated.role == TeamRole.admin
        assert audit.actions("success")[-1] == "change_user_role"
        assert audit.events[-1].risk_level == "high"

    def test_admin_demotes_member(self, service, crew) -> None:
        updated = service.update_member_role(crew.team.id, crew.member.id, TeamRole.viewer, crew.admin.id)
        assert updated.role == TeamRole.viewer

    def test_member_cannot_change_roles(self, service, crew) -> None:
        with pytest.raises(AuthorizationError):
            service.update_member_role(crew.team.id, crew.viewer.id, TeamRole.member, crew.member.id)

    def test_owner_role_is_fixed(self, service, team_store, crew) -> None:
        for actor in (crew.owner, crew.admin, crew.root):
            with pytest.raises(InvalidOperationError):
                service.update_member_role(crew.team.id, crew.owner.id, TeamRole.admin, actor.id)
        _assert_single_owner(service, team_store, crew.team.id)

    def test_cannot_assign_owner_by_role_change(self, service, team_store, crew) -> None:
        with pytest.raises(InvalidOperationError):
            service.update_member_role(crew.team.id, crew.admin.id, TeamRole.owner, crew.owner.id)
        _assert_single_owner(service, team_store, crew.team.id)

    def test_unknown_member(self, service, crew) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            service.update_member_role(crew.team.id, crew.outsider.id, TeamRole.viewer, crew.owner.id)
        assert exc_info.value.code == "MEMBER_NOT_FOUND"

    def test_owner_overrides_rejected(self, service, crew) -> None:
        deny = PermissionRule(ResourceType.team, Action.delete, Effect.deny)
        with pytest.raises(InvalidOperationError):
            service.set_member_permissions(crew.team.id, crew.owner.id, [deny], crew.root.id)

    def test_viewer_cannot_set_overrides(self, service, crew) -> None:
        with pytest.raises(AuthorizationError):
            service.set_member_permissions(crew.team.id, crew.member.id, [], crew.viewer.id)


class TestOverrideGrants:
    @pytest.mark.parametrize("action", [Action.transfer_ownership, Action.assign_admin, Action.delete])
    def test_admin_cannot_grant_self_owner_actions(self, service, team_store, crew, audit, action) -> None:
        grant = PermissionRule(ResourceType.team, action)
        with pytest.raises(AuthorizationError) as exc_info:
            service.set_member_permissions(crew.team.id, crew.admin.id, [grant], crew.admin.id)
        assert exc_info.value.code == "ACCESS_DENIED"
        assert team_store.get_member(crew.team.id, crew.admin.id).permissions == []
        assert audit.actions("failure")[-1] == "change_member_permissions"

        with pytest.raises(AuthorizationError):
            service.transfer_ownership(crew.team.id, crew.admin.id, crew.admin.id)
        _assert_single_owner(service, team_store, crew.team.id)

    def test_admin_cannot_deny_self(self, service, crew) -> None:
        deny = PermissionRule(ResourceType.project, Action.delete, Effect.deny)
        with pytest.raises(AuthorizationError):
            service.set_member_permissions(crew.team.id, crew.admin.id, [deny], crew.admin.id)

    def test_admin_cannot_grant_assign_admin(self, service, team_store, crew) -> None:
        grants = [
            PermissionRule(ResourceType.team, Action.manage_members),
            PermissionRule(ResourceType.team, Action.assign_admin),
        ]
        with pytest.raises(AuthorizationError):
            service.set_member_permissions(crew.team.id, crew.member.id, grants, crew.admin.id)
        with pytest.raises(AuthorizationError):
            service.update_member_role(crew.team.id, crew.viewer.id, TeamRole.admin, crew.member.id)
        assert team_store.get_member(crew.team.id, crew.viewer.id).role == TeamRole.viewer

    def test_owner_cannot_grant_owner_actions_either(self, service, crew) -> None:
        grant = PermissionRule(ResourceType.team, Action.transfer_ownership)
        with pytest.raises(AuthorizationError):
            service.set_member_permissions(crew.team.id, crew.admin.id, [grant], crew.owner.id)

    def test_cannot_grant_what_updater_lacks(self, service, crew) -> None:
        grant = PermissionRule(ResourceType.dataset, Action.read)
        with pytest.raises(AuthorizationError) as exc_info:
            service.set_member_permissions(crew.team.id, crew.member.id, [grant], crew.admin.id)
        assert "without holding it" in exc_info.value.message

    def test_admin_grants_what_it_holds(self, service, crew) -> None:
        grants = [
            PermissionRule(ResourceType.team, Action.invite_members),
            PermissionRule(ResourceType.project, Action.delete, resource_id="proj-1"),
        ]
        updated = service.set_member_permissions(crew.team.id, crew.member.id, grants, crew.admin.id)
        assert updated.permissions == grants
        assert service.has_team_permission(crew.member.id, crew.team.id, Action.invite_members) is True

    def test_owner_actions_may_be_denied(self, service, crew) -> None:
        deny = PermissionRule(ResourceType.team, Action.delete, Effect.deny)
        updated = service.set_member_permissions(crew.team.id, crew.admin.id, [deny], crew.owner.id)
        assert updated.permissions == [deny]

    def test_stored_owner_action_allow_is_ignored(self, service, team_store, crew) -> None:
        grants = [
            PermissionRule(ResourceType.team, Action.assign_admin),
            PermissionRule(ResourceType.team, Action.transfer_ownership),
        ]
        team_store.set_member_permissions(crew.team.id, crew.admin.id, grants)

        assert service.has_team_permission(crew.admin.id, crew.team.id, Action.assign_admin) is False
        assert service.has_team_permission(crew.admin.id, crew.team.id, Action.transfer_ownership) is False
        with pytest.raises(AuthorizationError):
            service.update_member_role(crew.team.id, crew.member.id, TeamRole.admin, crew.admin.id)
        with pytest.raises(AuthorizationError):
            service.transfer_ownership(crew.team.id, crew.admin.id, crew.admin.id)
        _assert_single_owner(service, team_store, crew.team.id)


# ---------------------------------------------------------------------------
# Removal, leaving, transfer
# ---------------------------------------------------------------------------


class TestRemoval:
    def test_self_removal(self, service, crew) -> None:
        service.remove_member(crew.team.id, crew.viewer.id, crew.viewer.id)
        assert service.list_user_teams(crew.viewer.id) == []

    def test_admin_removes_member(self, service, crew, audit) -> None:
        service.remove_member(crew.team.id, crew.member.id, crew.admin.id)
        assert service.effective_rules(crew.team.id, crew.member.id) == []
        assert audit.actions("success")[-1] == "remove_member"

    def test_member_cannot_remove_others(self, service, crew) -> None:
        with pytest.raises(AuthorizationError):
            service.remove_member(crew.team.id, crew.viewer.id, crew.member.id)

    def test_owner_cannot_be_removed(self, service, team_store, crew) -> None:
        for actor in (crew.owner, crew.admin, crew.root):
            with pytest.raises(InvalidOperationError):
                service.remove_member(crew.team.id, crew.owner.id, actor.id)
        _assert_single_owner(service, team_store, crew.team.id)

    def test_remove_unknown_member(self, service, crew) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            service.remove_member(crew.team.id, crew.outsider.id, crew.owner.id)
        assert exc_info.value.code == "MEMBER_NOT_FOUND"

    def test_leave(self, service, crew) -> None:
        service.leave_team(crew.team.id, crew.member.id)
        assert service.list_user_teams(crew.member.id) == []
        with pytest.raises(NotFoundError) as exc_info:
            service.leave_team(crew.team.id, crew.member.id)
        assert exc_info.value.code == "NOT_MEMBER"

    def test_owner_cannot_leave(self, service, team_store, crew) -> None:
        with pytest.raises(InvalidOperationError) as exc_info:
            service.leave_team(crew.team.id, crew.owner.id)
        assert "Transfer ownership" in exc_info.value.message
        _assert_single_owner(service, team_store, crew.team.id)

    def test_pending_member_cannot_leave(self, service, crew) -> None:
        service.invite_user(crew.team.id, crew.outsider.email, TeamRole.member, crew.owner.id)
        with pytest.raises(NotFoundError):
            service.leave_team(crew.team.id, crew.outsider.id)


class TestTransferOwnership:
    def test_transfer(self, service, team_store, crew, audit) -> None:
        team = service.transfer_ownership(crew.team.id, crew.member.id, crew.owner.id)
        assert team.owner_id == crew.member.id
        assert team_store.get_member(crew.team.id, crew.owner.id).role == TeamRole.admin
        _assert_single_owner(service, team_store, crew.team.id)
        assert audit.actions("success")[-1] == "transfer_ownership"

    def test_old_owner_can_leave_after_transfer(self, service, crew) -> None:
        service.transfer_ownership(crew.team.id, crew.admin.id, crew.owner.id)
        service.leave_team(crew.team.id, crew.owner.id)
        assert service.list_user_teams(crew.owner.id) == []

    def test_admin_cannot_transfer(self, service, team_store, crew) -> None:
        with pytest.raises(AuthorizationError):
            service.transfer_ownership(crew.team.id, crew.admin.id, crew.admin.id)
        _assert_single_owner(service, team_store, crew.team.id)

    def test_system_admin_can_transfer(self, service, team_store, crew) -> None:
        service.transfer_ownership(crew.team.id, crew.viewer.id, crew.root.id)
        _assert_single_owner(service, team_store, crew.team.id)
        assert team_store.get_team(crew.team.id).owner_id == crew.viewer.id

    def test_transfer_to_current_owner(self, service, crew) -> None:
        with pytest.raises(InvalidOperationError):
            service.transfer_ownership(crew.team.id, crew.owner.id, crew.owner.id)

    @pytest.mark.parametrize("pending", [False, True])
    def test_target_must_be_active_member(self, service, team_store, crew, pending) -> None:
        if pending:
            service.invite_user(crew.team.id, crew.outsider.email, TeamRole.admin, crew.owner.id)
        with pytest.raises(NotFoundError) as exc_info:
            service.transfer_ownership(crew.team.id, crew.outsider.id, crew.owner.id)
        assert exc_info.value.code == "MEMBER_NOT_FOUND"
        _assert_single_owner(service, team_store, crew.team.id)
