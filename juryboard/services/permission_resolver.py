"""
Permission Resolver

Two-tier grant resolution for admins:

    SUPER_ADMIN                        -> always authorized
    competition-scoped grant, if set   -> that value
    global grant, if set               -> that value
    otherwise                          -> deny

Resolution itself is a pure function of explicitly passed snapshots
(resolve_permission). The async helpers only load those snapshots.
Public and judge voters never reach this module; they go through the
voting-window check in the score ledger.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from juryboard.errors import DeniedError, InvalidValueError, NotFoundError, ErrorCode
from juryboard.orm.competition import Competition
from juryboard.orm.permissions import (
    Admin, AdminRole, GlobalPermissionGrant, CompetitionPermissionGrant
)

logger = logging.getLogger(__name__)


class PermissionName(str, Enum):
    """Enumerated grant names. Anything else is rejected on write and denied on read."""
    CAN_MANAGE_JUDGES = "canManageJudges"
    CAN_MANAGE_PARTICIPANTS = "canManageParticipants"
    CAN_MANAGE_CATEGORIES = "canManageCategories"
    CAN_MANAGE_RUBRICS = "canManageRubrics"
    CAN_MANAGE_SCORES = "canManageScores"
    CAN_MANAGE_VOTING = "canManageVoting"
    CAN_PUBLISH_RESULTS = "canPublishResults"
    CAN_MANAGE_REPORTS = "canManageReports"
    CAN_VIEW_REPORTS = "canViewReports"
    CAN_MANAGE_AUTOMATION = "canManageAutomation"
    CAN_MANAGE_PERMISSIONS = "canManagePermissions"


KNOWN_PERMISSIONS = frozenset(p.value for p in PermissionName)

PermissionLike = Union[PermissionName, str]


@dataclass(frozen=True)
class Actor:
    """Identity on whose behalf a mutation runs."""
    admin_id: Optional[int]
    role: AdminRole
    is_system: bool = False

    @property
    def label(self) -> str:
        return "system" if self.is_system else f"admin:{self.admin_id}"


# Automation rules were authored by an authorized admin; their actions run elevated.
SYSTEM_ACTOR = Actor(admin_id=None, role=AdminRole.SUPER_ADMIN, is_system=True)


@dataclass(frozen=True)
class PermissionSnapshot:
    """
    Point-in-time view of one admin's grants for one competition.
    role is None when the admin is unknown or inactive.
    """
    admin_id: Optional[int]
    role: Optional[AdminRole]
    global_grants: Mapping[str, bool] = field(default_factory=dict)
    scoped_grants: Mapping[str, bool] = field(default_factory=dict)


def _name(permission: PermissionLike) -> str:
    return permission.value if isinstance(permission, PermissionName) else str(permission)


def resolve_permission(snapshot: PermissionSnapshot, permission: PermissionLike) -> bool:
    """Pure two-tier resolution, default deny."""
    if snapshot.role == AdminRole.SUPER_ADMIN:
        return True
    if snapshot.role is None:
        return False

    name = _name(permission)
    if name in snapshot.scoped_grants:
        return bool(snapshot.scoped_grants[name])
    if name in snapshot.global_grants:
        return bool(snapshot.global_grants[name])
    return False


async def load_permission_snapshot(
    db: AsyncSession,
    admin_id: int,
    competition_id: Optional[int]
) -> PermissionSnapshot:
    admin = await db.get(Admin, admin_id)
    if admin is None or not admin.is_active:
        return PermissionSnapshot(admin_id=admin_id, role=None)

    result = await db.execute(
        select(GlobalPermissionGrant.grants).where(GlobalPermissionGrant.admin_id == admin_id)
    )
    global_grants = result.scalar_one_or_none() or {}

    scoped_grants: Dict[str, bool] = {}
    if competition_id is not None:
        result = await db.execute(
            select(CompetitionPermissionGrant.grants).where(
                CompetitionPermissionGrant.admin_id == admin_id,
                CompetitionPermissionGrant.competition_id == competition_id,
            )
        )
        scoped_grants = result.scalar_one_or_none() or {}

    return PermissionSnapshot(
        admin_id=admin_id,
        role=admin.role,
        global_grants=dict(global_grants),
        scoped_grants=dict(scoped_grants),
    )


async def authorize(
    db: AsyncSession,
    admin_id: int,
    competition_id: Optional[int],
    permission: PermissionLike
) -> bool:
    snapshot = await load_permission_snapshot(db, admin_id, competition_id)
    return resolve_permission(snapshot, permission)


async def authorize_actor(
    db: AsyncSession,
    actor: Actor,
    competition_id: Optional[int],
    permission: PermissionLike
) -> bool:
    if actor.role == AdminRole.SUPER_ADMIN:
        return True
    if actor.admin_id is None:
        return False
    return await authorize(db, actor.admin_id, competition_id, permission)


async def require_permission(
    db: AsyncSession,
    actor: Actor,
    competition_id: Optional[int],
    permission: PermissionLike
) -> None:
    """Raise DeniedError unless the actor holds the permission."""
    if not await authorize_actor(db, actor, competition_id, permission):
        logger.warning(
            f"Permission denied: {actor.label} lacks {_name(permission)} "
            f"on competition {competition_id}"
        )
        raise DeniedError(
            f"Missing permission '{_name(permission)}'",
            details={"permission": _name(permission), "competition_id": competition_id},
        )


# =============================================================================
# Grant administration
# =============================================================================

def validate_grant_changes(changes: Mapping[str, Optional[bool]]) -> Dict[str, Optional[bool]]:
    """
    Changes map names to True/False (explicit) or None (remove the explicit
    entry so resolution falls through to the next tier).
    """
    unknown = sorted(name for name in changes if name not in KNOWN_PERMISSIONS)
    if unknown:
        raise InvalidValueError(
            "Unknown permission names",
            details={"unknown": unknown, "allowed": sorted(KNOWN_PERMISSIONS)},
        )
    malformed = sorted(name for name, value in changes.items() if value is not None and not isinstance(value, bool))
    if malformed:
        raise InvalidValueError("Grant values must be true, false or null", details={"fields": malformed})
    return dict(changes)


def apply_grant_changes(current: Mapping[str, bool], changes: Mapping[str, Optional[bool]]) -> Dict[str, bool]:
    merged = dict(current or {})
    for name, value in changes.items():
        if value is None:
            merged.pop(name, None)
        else:
            merged[name] = value
    return merged


async def _require_admin(db: AsyncSession, admin_id: int) -> Admin:
    admin = await db.get(Admin, admin_id)
    if admin is None:
        raise NotFoundError("Admin", admin_id)
    return admin


async def set_global_grants(
    db: AsyncSession,
    actor: Actor,
    admin_id: int,
    changes: Mapping[str, Optional[bool]]
) -> Dict[str, bool]:
    """Global grants span every competition, so only a super admin may change them."""
    changes = validate_grant_changes(changes)
    if actor.role != AdminRole.SUPER_ADMIN:
        raise DeniedError(
            "Only a super admin can change global grants",
            code=ErrorCode.ESCALATION_FORBIDDEN,
        )
    await _require_admin(db, admin_id)

    result = await db.execute(
        select(GlobalPermissionGrant).where(GlobalPermissionGrant.admin_id == admin_id)
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = GlobalPermissionGrant(admin_id=admin_id, grants={})
        db.add(row)

    # Reassign so the JSON column is flagged dirty
    row.grants = apply_grant_changes(row.grants, changes)
    await db.commit()

    logger.info(f"Global grants for admin {admin_id} updated by {actor.label}: {changes}")
    return dict(row.grants)


async def set_competition_grants(
    db: AsyncSession,
    actor: Actor,
    admin_id: int,
    competition_id: int,
    changes: Mapping[str, Optional[bool]]
) -> Dict[str, bool]:
    """
    Non-super actors need canManagePermissions on the competition, may not
    edit their own grants, and may only grant what they themselves hold.
    """
    changes = validate_grant_changes(changes)

    if await db.get(Competition, competition_id) is None:
        raise NotFoundError("Competition", competition_id)
    await _require_admin(db, admin_id)

    if actor.role != AdminRole.SUPER_ADMIN:
        if actor.admin_id == admin_id:
            raise DeniedError(
                "Admins cannot change their own grants",
                code=ErrorCode.ESCALATION_FORBIDDEN,
            )
        snapshot = await load_permission_snapshot(db, actor.admin_id, competition_id)
        if not resolve_permission(snapshot, PermissionName.CAN_MANAGE_PERMISSIONS):
            raise DeniedError(
                f"Missing permission '{PermissionName.CAN_MANAGE_PERMISSIONS.value}'",
                details={"competition_id": competition_id},
            )
        escalations = sorted(
            name for name, value in changes.items()
            if value is True and not resolve_permission(snapshot, name)
        )
        if escalations:
            raise DeniedError(
                "Cannot grant permissions you do not hold",
                code=ErrorCode.ESCALATION_FORBIDDEN,
                details={"permissions": escalations},
            )

    result = await db.execute(
        select(CompetitionPermissionGrant).where(
            CompetitionPermissionGrant.admin_id == admin_id,
            CompetitionPermissionGrant.competition_id == competition_id,
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = CompetitionPermissionGrant(admin_id=admin_id, competition_id=competition_id, grants={})
        db.add(row)

    row.grants = apply_grant_changes(row.grants, changes)
    await db.commit()

    logger.info(
        f"Competition {competition_id} grants for admin {admin_id} updated by {actor.label}: {changes}"
    )
    return dict(row.grants)
