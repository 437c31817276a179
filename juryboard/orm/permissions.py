"""
juryboard/orm/permissions.py
Admins and the two permission grant tiers
"""
from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, UniqueConstraint, Enum as SQLEnum
from enum import Enum as PyEnum
from juryboard.orm.base import BaseModel, UniversalJSON


class AdminRole(str, PyEnum):
    SUPER_ADMIN = "SUPER_ADMIN"
    ADMIN = "ADMIN"


class Admin(BaseModel):
    __tablename__ = "admins"

    email = Column(String(255), nullable=False, unique=True, index=True)
    display_name = Column(String(255), nullable=False)
    role = Column(SQLEnum(AdminRole), default=AdminRole.ADMIN, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)


class GlobalPermissionGrant(BaseModel):
    """Named booleans applying to every competition the admin can see."""
    __tablename__ = "global_permission_grants"

    admin_id = Column(Integer, ForeignKey("admins.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)
    grants = Column(UniversalJSON, nullable=False, default=dict)


class CompetitionPermissionGrant(BaseModel):
    """
    Per-(admin, competition) overrides. An explicitly set name here wins
    over the same name in the global grant.
    """
    __tablename__ = "competition_permission_grants"

    admin_id = Column(Integer, ForeignKey("admins.id", ondelete="CASCADE"), nullable=False, index=True)
    competition_id = Column(Integer, ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False, index=True)
    grants = Column(UniversalJSON, nullable=False, default=dict)

    __table_args__ = (
        # one override set per admin/competition pair
        UniqueConstraint("admin_id", "competition_id", name="uq_competition_grant"),
    )
