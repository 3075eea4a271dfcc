"""Unit tests for auth/permissions.py -- rule evaluation, merging and role tables.

Covers:
- evaluate(): deny wins, default deny, wildcard vs. specific resource ids, purity
- merge_rules(): dedup by key, deny contaminates a key, order preserved
- rules_for(): total over TeamRole, strict owner ⊇ admin ⊇ member ⊇ viewer
- SYSTEM_ADMIN_RULES: every action on every resource type
- require_permission(): ACCESS_DENIED on refusal
- PermissionRule.to_dict()/from_dict() wire shape
"""

import pytest

from auth.permissions import (
    SYSTEM_ADMIN_RULES,
    Action,
    Effect,
    PermissionRule,
    ResourceType,
    TeamRole,
    evaluate,
    merge_rules,
    require_permission,
    rules_for,
)
from core.errors import AuthorizationError

T = ResourceType.team
P = ResourceType.project


def allow(resource_type, action, resource_id=None) -> PermissionRule:
    return PermissionRule(resource_type, action, Effect.allow, resource_id)


def deny(resource_type, action, resource_id=None) -> PermissionRule:
    return PermissionRule(resource_type, action, Effect.deny, resource_id)


class TestEvaluate:
    """Deny-wins, default-deny evaluation."""

    def test_empty_rules_deny(self) -> None:
        assert evaluate([], T, Action.read) is False

    @pytest.mark.parametrize("resource_type", list(ResourceType))
    def test_deny_beats_allow_for_every_resource_type(self, resource_type: ResourceType) -> None:
        rules = [allow(resource_type, Action.update), deny(resource_type, Action.update)]
        assert evaluate(rules, resource_type, Action.update) is False

    def test_deny_wins_regardless_of_order_or_count(self) -> None:
        rules = [deny(T, Action.read)] + [allow(T, Action.read)] * 5
        assert evaluate(rules, T, Action.read) is False
        assert evaluate(list(reversed(rules)), T, Action.read) is False

    def test_single_allow_grants(self) -> None:
        assert evaluate([allow(T, Action.read)], T, Action.read) is True

    def test_action_must_match_exactly(self) -> None:
        assert evaluate([allow(T, Action.manage)], T, Action.manage_members) is False

    def test_resource_type_must_match_exactly(self) -> None:
        assert evaluate([allow(P, Action.read)], T, Action.read) is False

    def test_wildcard_rule_matches_any_resource_id(self) -> None:
        assert evaluate([allow(T, Action.read)], T, Action.read, "team-1") is True
        assert evaluate([allow(T, Action.read)], T, Action.read) is True

    def test_specific_rule_only_matches_its_resource(self) -> None:
        rules = [allow(T, Action.update, "team-1")]
        assert evaluate(rules, T, Action.update, "team-1") is True
        assert evaluate(rules, T, Action.update, "team-2") is False
        assert evaluate(rules, T, Action.update) is False

    def test_specific_deny_carves_out_of_wildcard_allow(self) -> None:
        rules = [allow(P, Action.delete), deny(P, Action.delete, "p-9")]
        assert evaluate(rules, P, Action.delete, "p-1") is True
        assert evaluate(rules, P, Action.delete, "p-9") is False

    def test_non_matching_deny_is_ignored(self) -> None:
        rules = [allow(T, Action.read), deny(T, Action.update)]
        assert evaluate(rules, T, Action.read) is True

    def test_evaluate_is_pure(self) -> None:
        rules = [allow(T, Action.read), deny(T, Action.delete)]
        snapshot = list(rules)
        results = {evaluate(rules, T, Action.read) for _ in range(10)}
        assert results == {True}
        assert rules == snapshot

    def test_accepts_any_iterable(self) -> None:
        assert evaluate(iter([allow(T, Action.read)]), T, Action.read) is True


class TestMergeRules:
    def test_deduplicates_by_key(self) -> None:
        merged = merge_rules([allow(T, Action.read)], [allow(T, Action.read)])
        assert merged == [allow(T, Action.read)]

    def test_deny_in_any_source_makes_key_deny(self) -> None:
        merged = merge_rules([allow(T, Action.update)], [deny(T, Action.update)], [allow(T, Action.update)])
        assert merged == [deny(T, Action.update)]

    def test_wildcard_and_specific_are_different_keys(self) -> None:
        merged = merge_rules([allow(T, Action.read)], [deny(T, Action.read, "team-1")])
        assert len(merged) == 2
        assert evaluate(merged, T, Action.read, "team-2") is True
        assert evaluate(merged, T, Action.read, "team-1") is False

    def test_preserves_first_appearance_order(self) -> None:
        merged = merge_rules([allow(T, Action.read), allow(P, Action.read)], [allow(T, Action.update)])
        assert [r.key for r in merged] == [("team", "read", "*"), ("project", "read", "*"), ("team", "update", "*")]

    def test_no_sources(self) -> None:
        assert merge_rules() == []


class TestRoleTables:
    """owner ⊇ admin ⊇ member ⊇ viewer, and the separate system admin table."""

    @pytest.mark.parametrize(
        "higher,lower",
        [
            (TeamRole.owner, TeamRole.admin),
            (TeamRole.admin, TeamRole.member),
            (TeamRole.member, TeamRole.viewer),
        ],
    )
    def test_strict_superset(self, higher: TeamRole, lower: TeamRole) -> None:
        assert set(rules_for(lower)) < set(rules_for(higher))

    def test_rules_for_is_total(self) -> None:
        for role in TeamRole:
            assert rules_for(role), f"{role} has no rules"

    def test_rules_for_accepts_string_value(self) -> None:
        assert rules_for("viewer") == rules_for(TeamRole.viewer)

    def test_viewer_is_read_only(self) -> None:
        rules = rules_for(TeamRole.viewer)
        assert evaluate(rules, T, Action.read) is True
        assert evaluate(rules, P, Action.read) is True
        assert evaluate(rules, P, Action.create) is False

    def test_member_cannot_invite_or_manage(self) -> None:
        rules = rules_for(TeamRole.member)
        assert evaluate(rules, P, Action.create) is True
        assert evaluate(rules, T, Action.invite_members) is False
        assert evaluate(rules, T, Action.manage_members) is False

    def test_only_owner_assigns_admin_and_deletes_team(self) -> None:
        for action in (Action.assign_admin, Action.delete, Action.transfer_ownership):
            assert evaluate(rules_for(TeamRole.owner), T, action) is True
            assert evaluate(rules_for(TeamRole.admin), T, action) is False

    def test_admin_manages_members(self) -> None:
        rules = rules_for(TeamRole.admin)
        assert evaluate(rules, T, Action.manage_members) is True
        assert evaluate(rules, T, Action.invite_members) is True
        assert evaluate(rules, T, Action.update) is True

    def test_role_rules_are_all_allow(self) -> None:
        for role in TeamRole:
            assert all(r.effect == Effect.allow for r in rules_for(role))

    def test_system_admin_allows_everything(self) -> None:
        for resource_type in ResourceType:
            for action in Action:
                assert evaluate(SYSTEM_ADMIN_RULES, resource_type, action, "any-id") is True

    def test_system_admin_table_is_disjoint_from_team_roles(self) -> None:
        assert "system_admin" not in {r.value for r in TeamRole}


class TestRequirePermission:
    def test_passes_when_allowed(self) -> None:
        require_permission([allow(T, Action.read)], T, Action.read, "team-1")

    def test_raises_access_denied(self) -> None:
        with pytest.raises(AuthorizationError) as exc_info:
            require_permission(rules_for(TeamRole.member), T, Action.invite_members, "team-1")
        assert exc_info.value.code == "ACCESS_DENIED"
        assert exc_info.value.status_code == 403


class TestPermissionRuleSerialization:
    def test_to_dict_uses_camel_case_keys(self) -> None:
        assert deny(P, Action.delete, "p-1").to_dict() == {
            "resourceType": "project",
            "action": "delete",
            "effect": "deny",
            "resourceId": "p-1",
        }

    def test_from_dict_defaults_to_allow_wildcard(self) -> None:
        rule = PermissionRule.from_dict({"resourceType": "team", "action": "read"})
        assert rule == allow(T, Action.read)

    def test_from_dict_rejects_unknown_action(self) -> None:
        with pytest.raises(ValueError):
            PermissionRule.from_dict({"resourceType": "team", "action": "fly"})

    def test_rules_are_immutable(self) -> None:
        rule = allow(T, Action.read)
        with pytest.raises(AttributeError):
            rule.effect = Effect.deny  # type: ignore[misc]
