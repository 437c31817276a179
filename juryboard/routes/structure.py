"""
Competition structure routes: category tree, criteria and rubric policy.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from juryboard.config import feature_flags
from juryboard.database import get_db
from juryboard.rbac import get_current_actor
from juryboard.schemas.rubrics import CriterionUpdate, RubricPolicyUpdate
from juryboard.services.aggregation_engine import get_aggregate_cache
from juryboard.services.broadcast_gateway import get_broadcast_gateway
from juryboard.services.category_tree import assign_participant_category, set_category_parent
from juryboard.services.permission_resolver import Actor
from juryboard.services.rubric_service import set_combination_policy, update_criterion

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["structure"])


def _live_gateway():
    return get_broadcast_gateway() if feature_flags.FEATURE_LIVE_REPORTS else None


class ParentChange(BaseModel):
    parent_id: Optional[int] = Field(None, gt=0)


@router.put("/categories/{category_id}/parent")
async def change_category_parent(
    category_id: int,
    payload: ParentChange,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """Re-parent a category; null makes it a root. Cycles are rejected."""
    category = await set_category_parent(db, actor, category_id, payload.parent_id)
    return {"success": True, "category_id": category.id, "parent_id": category.parent_id}


@router.put("/participants/{participant_id}/categories/{category_id}")
async def add_participant_to_category(
    participant_id: int,
    category_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    await assign_participant_category(db, actor, participant_id, category_id)
    return {"success": True, "participant_id": participant_id, "category_id": category_id}


@router.patch("/criteria/{criterion_id}")
async def patch_criterion(
    criterion_id: int,
    payload: CriterionUpdate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    criterion = await update_criterion(
        db, actor, criterion_id, payload, get_aggregate_cache(), _live_gateway()
    )
    return {
        "success": True,
        "criterion": {
            "id": criterion.id,
            "rubric_id": criterion.rubric_id,
            "name": criterion.name,
            "position": criterion.position,
            "max_score": criterion.max_score,
            "weight": criterion.weight,
            "qualitative_mapping": criterion.qualitative_mapping,
        },
    }


@router.put("/rubrics/{rubric_id}/policy")
async def change_rubric_policy(
    rubric_id: int,
    payload: RubricPolicyUpdate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    rubric = await set_combination_policy(
        db, actor, rubric_id, payload.combination_policy, get_aggregate_cache(), _live_gateway()
    )
    return {"success": True, "rubric_id": rubric.id, "combination_policy": rubric.combination_policy.value}
