"""
Permission grant request/response schemas.
"""
from typing import Dict, Optional
from pydantic import BaseModel, Field, StrictBool


class GrantChanges(BaseModel):
    """
    Named grant changes. true/false set an explicit entry; null removes it
    so resolution falls through to the next tier.
    """
    grants: Dict[str, Optional[StrictBool]] = Field(..., min_length=1)


class GrantSet(BaseModel):
    success: bool = True
    admin_id: int
    competition_id: Optional[int] = None
    grants: Dict[str, bool]


class PermissionCheck(BaseModel):
    success: bool = True
    admin_id: int
    competition_id: int
    permission: str
    granted: bool
