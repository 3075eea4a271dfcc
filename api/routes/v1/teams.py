"""
api/routes/v1/teams.py -- Team and membership REST endpoints.

Routes (all require a bearer token):
  POST   /api/v1/teams                                   -- create; caller becomes owner
  GET    /api/v1/teams                                   -- teams the caller is active in
  GET    /api/v1/teams/{team_id}                         -- private teams: members only
  PUT    /api/v1/teams/{team_id}                         -- team:update
  DELETE /api/v1/teams/{team_id}                         -- owner only (team:delete)
  GET    /api/v1/teams/{team_id}/members                 -- team:read
  GET    /api/v1/teams/{team_id}/permissions             -- caller's effective rules
  POST   /api/v1/teams/{team_id}/invite                  -- team:invite_members
  POST   /api/v1/teams/{team_id}/accept                  -- accept own pending invitation
  PUT    /api/v1/teams/{team_id}/members/{member_id}/role         -- team:manage_members
  PUT    /api/v1/teams/{team_id}/members/{member_id}/permissions  -- team:manage_members
  DELETE /api/v1/teams/{team_id}/members/{member_id}     -- team:manage_members, or self
  POST   /api/v1/teams/{team_id}/leave                   -- any non-owner member
  POST   /api/v1/teams/{team_id}/transfer-ownership      -- owner only

member_id is the member's user id. Authorization is decided by TeamService
through the Permission Engine, never in this module.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import (
    InviteRequest,
    MemberPermissionsUpdate,
    MemberResponse,
    MessageResponse,
    PermissionRuleModel,
    PermissionsResponse,
    RoleUpdate,
    TeamCreate,
    TeamResponse,
    TeamUpdate,
    TransferOwnershipRequest,
)
from auth.dependencies import get_current_user
from auth.models import User
from teams.service import TeamService

router = APIRouter()


def _service(request: Request) -> TeamService:
    return request.app.state.team_service


# ---------------------------------------------------------------------------
# Teams
# ---------------------------------------------------------------------------


@router.post("/teams", response_model=TeamResponse, status_code=201)
def create_team(request: Request, body: TeamCreate, user: User = Depends(get_current_user)) -> TeamResponse:
    team = _service(request).create_team(
        user.id,
        name=body.name,
        description=body.description,
        max_members=body.max_members,
        is_private=body.is_private,
        tags=body.tags,
    )
    return TeamResponse.from_team(team)


@router.get("/teams", response_model=list[TeamResponse])
def list_teams(request: Request, user: User = Depends(get_current_user)) -> list[TeamResponse]:
    return [TeamResponse.from_team(t) for t in _service(request).list_user_teams(user.id)]


@router.get("/teams/{team_id}", response_model=TeamResponse)
def get_team(team_id: str, request: Request, user: User = Depends(get_current_user)) -> TeamResponse:
    return TeamResponse.from_team(_service(request).get_team(team_id, user.id))


@router.put("/teams/{team_id}", response_model=TeamResponse)
def update_team(
    team_id: str,
    body: TeamUpdate,
    request: Request,
    user: User = Depends(get_current_user),
) -> TeamResponse:
    team = _service(request).update_team(team_id, user.id, **body.model_dump(exclude_unset=True))
    return TeamResponse.from_team(team)


@router.delete("/teams/{team_id}", response_model=MessageResponse)
def delete_team(team_id: str, request: Request, user: User = Depends(get_current_user)) -> MessageResponse:
    _service(request).delete_team(team_id, user.id)
    return MessageResponse(message="Team deleted.")


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------


@router.get("/teams/{team_id}/members", response_model=list[MemberResponse])
def list_members(team_id: str, request: Request, user: User = Depends(get_current_user)) -> list[MemberResponse]:
    return [MemberResponse.from_member(m) for m in _service(request).get_team_members(team_id, user.id)]


@router.get("/teams/{team_id}/permissions", response_model=PermissionsResponse)
def my_permissions(team_id: str, request: Request, user: User = Depends(get_current_user)) -> PermissionsResponse:
    rules = _service(request).get_member_permissions(team_id, user.id)
    return PermissionsResponse(
        team_id=team_id,
        user_id=user.id,
        rules=[PermissionRuleModel.from_rule(r) for r in rules],
    )


@router.post("/teams/{team_id}/invite", response_model=MemberResponse, status_code=201)
def invite(
    team_id: str,
    body: InviteRequest,
    request: Request,
    user: User = Depends(get_current_user),
) -> MemberResponse:
    member = _service(request).invite_user(team_id, body.email, body.role, user.id)
    return MemberResponse.from_member(member)


@router.post("/teams/{team_id}/accept", response_model=MemberResponse)
def accept_invitation(team_id: str, request: Request, user: User = Depends(get_current_user)) -> MemberResponse:
    return MemberResponse.from_member(_service(request).accept_invitation(team_id, user.id))


@router.put("/teams/{team_id}/members/{member_id}/role", response_model=MemberResponse)
def update_member_role(
    team_id: str,
    member_id: str,
    body: RoleUpdate,
    request: Request,
    user: User = Depends(get_current_user),
) -> MemberResponse:
    member = _service(request).update_member_role(team_id, member_id, body.role, user.id)
    return MemberResponse.from_member(member)


@router.put("/teams/{team_id}/members/{member_id}/permissions", response_model=MemberResponse)
def set_member_permissions(
    team_id: str,
    member_id: str,
    body: MemberPermissionsUpdate,
    request: Request,
    user: User = Depends(get_current_user),
) -> MemberResponse:
    member = _service(request).set_member_permissions(
        team_id, member_id, [r.to_rule() for r in body.rules], user.id
    )
    return MemberResponse.from_member(member)


@router.delete("/teams/{team_id}/members/{member_id}", response_model=MessageResponse)
def remove_member(
    team_id: str,
    member_id: str,
    request: Request,
    user: User = Depends(get_current_user),
) -> MessageResponse:
    _service(request).remove_member(team_id, member_id, user.id)
    return MessageResponse(message="Member removed.")


@router.post("/teams/{team_id}/leave", response_model=MessageResponse)
def leave_team(team_id: str, request: Request, user: User = Depends(get_current_user)) -> MessageResponse:
    _service(request).leave_team(team_id, user.id)
    return MessageResponse(message="You have left the team.")


@router.post("/teams/{team_id}/transfer-ownership", response_model=TeamResponse)
def transfer_ownership(
    team_id: str,
    body: TransferOwnershipRequest,
    request: Request,
    user: User = Depends(get_current_user),
) -> TeamResponse:
    team = _service(request).transfer_ownership(team_id, body.user_id, user.id)
    return TeamResponse.from_team(team)
