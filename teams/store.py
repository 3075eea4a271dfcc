"""
teams/store.py -- SQLAlchemy Core persistence for teams and memberships.

Pattern: Repository + Data Mapper, same as auth/store.py.

Transactional units (each one BEGIN ... COMMIT, never read-then-write across
separate transactions):
  create_team()        team row + owner membership row
  add_member()         team row lock + duplicate check + capacity check +
                       insert/reactivate; a unique-constraint race maps to
                       ALREADY_MEMBER
  transfer_ownership() team.owner_id + demote old owner + promote new owner

Tombstones:
  Teams are removed by status "deleted" and memberships by status
  "inactive". _live_teams() / _live_members() are the only SELECT entry
  points, so no query can forget the exclusion.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import JSON, Boolean, Column, Integer, MetaData, String, Table, Text, UniqueConstraint, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.permissions import PermissionRule, TeamRole
from core.config import get_settings
from core.db import create_store_engine, new_id, now_iso
from core.errors import ConflictError, InvalidOperationError
from teams.models import MemberStatus, Team, TeamMember, TeamStatus

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_teams = Table(
    "teams",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(128), nullable=False, unique=True),
    Column("owner_id", String(36), nullable=False, index=True),
    Column("description", Text),
    Column("status", String(16), nullable=False, server_default=TeamStatus.active.value),
    Column("max_members", Integer, nullable=False),
    Column("is_private", Boolean, nullable=False, server_default="0"),
    Column("tags", JSON, nullable=False),
    Column("enterprise_id", String(36)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_members = Table(
    "team_members",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("team_id", String(36), nullable=False, index=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("name", String(64)),
    Column("role", String(16), nullable=False),
    Column("status", String(16), nullable=False),
    Column("permissions", JSON, nullable=False),
    Column("invited_by", String(36)),
    Column("invited_at", String(32)),
    Column("joined_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("team_id", "user_id", name="uq_team_members_team_user"),
)

# Memberships that count against max_members.
_SEATED = (MemberStatus.active.value, MemberStatus.pending.value)


def _live_teams():
    return select(_teams).where(_teams.c.status != TeamStatus.deleted.value)


def _live_members():
    return select(_members).where(_members.c.status != MemberStatus.inactive.value)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class TeamStore:
    """Repository for Team and TeamMember records.

    Usage:
        store = TeamStore("sqlite:///:memory:")
        team = store.create_team(Team(name="core", owner_id=uid), owner_name="ada")
        members = store.list_members(team.id)
    """

    def __init__(self, db_url: Optional[str] = None) -> None:
        self.engine: Engine = create_store_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Teams
    # ------------------------------------------------------------------

    def create_team(self, team: Team, owner_name: Optional[str] = None) -> Team:
        """Insert the team and its owner membership together.

        Raises ConflictError(TEAM_NAME_TAKEN) if the name is in use; in that
        case neither row is written.
        """
        team_id = team.id or new_id()
        now = now_iso()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _teams.insert().values(
                        id=team_id,
                        name=team.name,
                        owner_id=team.owner_id,
                        description=team.description,
                        status=TeamStatus.active.value,
                        max_members=team.max_members,
                        is_private=team.is_private,
                        tags=list(team.tags),
                        enterprise_id=team.enterprise_id,
                        created_at=now,
                        updated_at=now,
                    )
                )
                conn.execute(
                    _members.insert().values(
                        id=new_id(),
                        team_id=team_id,
                        user_id=team.owner_id,
                        name=owner_name,
                        role=TeamRole.owner.value,
                        status=MemberStatus.active.value,
                        permissions=[],
                        joined_at=now,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError as exc:
            raise ConflictError(f"Team name '{team.name}' is already taken.", code="TEAM_NAME_TAKEN") from exc
        return self.get_team(team_id)

    def get_team(self, team_id: str) -> Optional[Team]:
        with self.engine.connect() as conn:
            row = conn.execute(_live_teams().where(_teams.c.id == team_id)).fetchone()
        return _row_to_team(row) if row is not None else None

    def list_teams_for_user(self, user_id: str) -> list[Team]:
        """Live teams in which user_id holds an active membership, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _live_teams()
                .join(_members, _members.c.team_id == _teams.c.id)
                .where((_members.c.user_id == user_id) & (_members.c.status == MemberStatus.active.value))
                .order_by(_teams.c.created_at)
            ).fetchall()
        return [_row_to_team(r) for r in rows]

    def update_team(self, team_id: str, **fields) -> Optional[Team]:
        """Update name, description, max_members, is_private or tags.

        Raises ConflictError(TEAM_NAME_TAKEN) on a rename collision.
        Returns the updated team, or None if no live team has that id.
        """
        if "tags" in fields:
            fields["tags"] = list(fields["tags"])
        fields["updated_at"] = now_iso()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(_teams)
                    .where((_teams.c.id == team_id) & (_teams.c.status != TeamStatus.deleted.value))
                    .values(**fields)
                )
        except IntegrityError as exc:
            raise ConflictError("Team name is already taken.", code="TEAM_NAME_TAKEN") from exc
        if result.rowcount == 0:
            return None
        return self.get_team(team_id)

    def delete_team(self, team_id: str) -> bool:
        """Tombstone the team. Membership rows are kept for audit references."""
        with self.engine.begin() as conn:
            result = conn.execute(
                update(_teams)
                .where((_teams.c.id == team_id) & (_teams.c.status != TeamStatus.deleted.value))
                .values(status=TeamStatus.deleted.value, updated_at=now_iso())
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    def get_member(self, team_id: str, user_id: str) -> Optional[TeamMember]:
        """Live (non-inactive) membership of user_id in team_id, or None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _live_members().where((_members.c.team_id == team_id) & (_members.c.user_id == user_id))
            ).fetchone()
        return _row_to_member(row) if row is not None else None

    def list_members(self, team_id: str) -> list[TeamMember]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _live_members().where(_members.c.team_id == team_id).order_by(_members.c.created_at)
            ).fetchall()
        return [_row_to_member(r) for r in rows]

    def count_seated(self, team_id: str) -> int:
        """Active plus pending memberships."""
        with self.engine.connect() as conn:
            return conn.execute(
                select(func.count())
                .select_from(_members)
                .where((_members.c.team_id == team_id) & _members.c.status.in_(_SEATED))
            ).scalar_one()

    def add_member(
        self,
        team_id: str,
        user_id: str,
        role: TeamRole,
        max_members: int,
        name: Optional[str] = None,
        invited_by: Optional[str] = None,
    ) -> TeamMember:
        """Create a pending membership, or revive an inactive one, in one transaction.

        The team row is locked first (SELECT ... FOR UPDATE where the backend
        supports it), so concurrent invitations to one team are serialized and
        the seat count cannot be overshot. The unique (team_id, user_id)
        constraint backs up the duplicate check.

        Raises:
            ConflictError(ALREADY_MEMBER)       live membership exists
            InvalidOperationError(TEAM_FULL)    seated members >= max_members
        """
        now = now_iso()
        values = dict(
            name=name,
            role=TeamRole(role).value,
            status=MemberStatus.pending.value,
            permissions=[],
            invited_by=invited_by,
            invited_at=now,
            joined_at=None,
            updated_at=now,
        )
        try:
            with self.engine.begin() as conn:
                conn.execute(select(_teams.c.id).where(_teams.c.id == team_id).with_for_update())
                existing = conn.execute(
                    select(_members.c.id, _members.c.status).where(
                        (_members.c.team_id == team_id) & (_members.c.user_id == user_id)
                    )
                ).fetchone()
                if existing is not None and existing.status != MemberStatus.inactive.value:
                    raise ConflictError("User is already a team member.", code="ALREADY_MEMBER")
                seated = conn.execute(
                    select(func.count())
                    .select_from(_members)
                    .where((_members.c.team_id == team_id) & _members.c.status.in_(_SEATED))
                ).scalar_one()
                if seated >= max_members:
                    raise InvalidOperationError("Team has reached its member limit.", code="TEAM_FULL")
                if existing is None:
                    conn.execute(
                        _members.insert().values(
                            id=new_id(), team_id=team_id, user_id=user_id, created_at=now, **values
                        )
                    )
                else:
                    revived = conn.execute(
                        update(_members)
                        .where((_members.c.id == existing.id) & (_members.c.status == MemberStatus.inactive.value))
                        .values(**values)
                    )
                    if revived.rowcount != 1:
                        raise ConflictError("User is already a team member.", code="ALREADY_MEMBER")
        except IntegrityError as exc:
            raise ConflictError("User is already a team member.", code="ALREADY_MEMBER") from exc
        return self.get_member(team_id, user_id)

    def activate_member(self, team_id: str, user_id: str) -> Optional[TeamMember]:
        """pending -> active, stamping joined_at. None if there was no pending row."""
        now = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                update(_members)
                .where(
                    (_members.c.team_id == team_id)
                    & (_members.c.user_id == user_id)
                    & (_members.c.status == MemberStatus.pending.value)
                )
                .values(status=MemberStatus.active.value, joined_at=now, updated_at=now)
            )
        if result.rowcount == 0:
            return None
        return self.get_member(team_id, user_id)

    def update_member_role(self, team_id: str, user_id: str, role: TeamRole) -> Optional[TeamMember]:
        """Change a non-owner member's role. Owner rows never match."""
        with self.engine.begin() as conn:
            result = conn.execute(
                update(_members)
                .where(
                    (_members.c.team_id == team_id)
                    & (_members.c.user_id == user_id)
                    & (_members.c.role != TeamRole.owner.value)
                    & (_members.c.status != MemberStatus.inactive.value)
                )
                .values(role=TeamRole(role).value, updated_at=now_iso())
            )
        if result.rowcount == 0:
            return None
        return self.get_member(team_id, user_id)

    def set_member_permissions(self, team_id: str, user_id: str, rules: list[PermissionRule]) -> Optional[TeamMember]:
        with self.engine.begin() as conn:
            result = conn.execute(
                update(_members)
                .where(
                    (_members.c.team_id == team_id)
                    & (_members.c.user_id == user_id)
                    & (_members.c.status != MemberStatus.inactive.value)
                )
                .values(permissions=[r.to_dict() for r in rules], updated_at=now_iso())
            )
        if result.rowcount == 0:
            return None
        return self.get_member(team_id, user_id)

    def deactivate_member(self, team_id: str, user_id: str) -> bool:
        """Tombstone a non-owner membership (status inactive). Owner rows never match."""
        with self.engine.begin() as conn:
            result = conn.execute(
                update(_members)
                .where(
                    (_members.c.team_id == team_id)
                    & (_members.c.user_id == user_id)
                    & (_members.c.role != TeamRole.owner.value)
                    & (_members.c.status != MemberStatus.inactive.value)
                )
                .values(status=MemberStatus.inactive.value, updated_at=now_iso())
            )
        return result.rowcount > 0

    def transfer_ownership(self, team_id: str, current_owner_id: str, new_owner_id: str) -> bool:
        """Move ownership from current_owner_id to new_owner_id atomically.

        The old owner becomes admin. Returns False, with nothing written, if
        current_owner_id no longer owns the team or new_owner_id is not an
        active member.
        """
        now = now_iso()
        with self.engine.connect() as conn:
            moved = conn.execute(
                update(_teams)
                .where(
                    (_teams.c.id == team_id)
                    & (_teams.c.owner_id == current_owner_id)
                    & (_teams.c.status != TeamStatus.deleted.value)
                )
                .values(owner_id=new_owner_id, updated_at=now)
            ).rowcount
            promoted = conn.execute(
                update(_members)
                .where(
                    (_members.c.team_id == team_id)
                    & (_members.c.user_id == new_owner_id)
                    & (_members.c.status == MemberStatus.active.value)
                )
                .values(role=TeamRole.owner.value, updated_at=now)
            ).rowcount
            demoted = conn.execute(
                update(_members)
                .where(
                    (_members.c.team_id == team_id)
                    & (_members.c.user_id == current_owner_id)
                    & (_members.c.role == TeamRole.owner.value)
                )
                .values(role=TeamRole.admin.value, updated_at=now)
            ).rowcount
            if (moved, promoted, demoted) != (1, 1, 1):
                conn.rollback()
                return False
            conn.commit()
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_team(row) -> Team:
    return Team(
        id=row.id,
        name=row.name,
        owner_id=row.owner_id,
        description=row.description,
        status=TeamStatus(row.status),
        max_members=row.max_members,
        is_private=bool(row.is_private),
        tags=list(row.tags or []),
        enterprise_id=row.enterprise_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_member(row) -> TeamMember:
    return TeamMember(
        id=row.id,
        team_id=row.team_id,
        user_id=row.user_id,
        name=row.name,
        role=TeamRole(row.role),
        status=MemberStatus(row.status),
        permissions=[PermissionRule.from_dict(d) for d in (row.permissions or [])],
        invited_by=row.invited_by,
        invited_at=row.invited_at,
        joined_at=row.joined_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
