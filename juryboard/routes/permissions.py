"""
Permission grant administration routes.
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from juryboard.database import get_db
from juryboard.errors import InvalidValueError
from juryboard.rbac import get_current_actor
from juryboard.schemas.permissions import GrantChanges, GrantSet, PermissionCheck
from juryboard.services.permission_resolver import (
    KNOWN_PERMISSIONS, Actor, PermissionName, authorize, require_permission,
    set_competition_grants, set_global_grants
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["permissions"])


@router.put("/permissions/{admin_id}", response_model=GrantSet)
async def update_global_grants(
    admin_id: int,
    payload: GrantChanges,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """Change an admin's global grants (super admin only)."""
    grants = await set_global_grants(db, actor, admin_id, payload.grants)
    return GrantSet(admin_id=admin_id, grants=grants)


@router.put("/competitions/{competition_id}/permissions/{admin_id}", response_model=GrantSet)
async def update_competition_grants(
    competition_id: int,
    admin_id: int,
    payload: GrantChanges,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """Change an admin's competition-scoped overrides."""
    grants = await set_competition_grants(db, actor, admin_id, competition_id, payload.grants)
    return GrantSet(admin_id=admin_id, competition_id=competition_id, grants=grants)


@router.get(
    "/competitions/{competition_id}/permissions/{admin_id}/{permission}",
    response_model=PermissionCheck,
)
async def check_permission(
    competition_id: int,
    admin_id: int,
    permission: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """Resolve one permission for one admin. Callers may always check themselves."""
    if permission not in KNOWN_PERMISSIONS:
        raise InvalidValueError(
            f"Unknown permission '{permission}'",
            details={"allowed": sorted(KNOWN_PERMISSIONS)},
        )
    if actor.admin_id != admin_id:
        await require_permission(db, actor, competition_id, PermissionName.CAN_MANAGE_PERMISSIONS)

    granted = await authorize(db, admin_id, competition_id, permission)
    return PermissionCheck(
        admin_id=admin_id,
        competition_id=competition_id,
        permission=permission,
        granted=granted,
    )
