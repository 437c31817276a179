"""
Competition control routes: voting windows and result publication.
"""
import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from juryboard.database import get_db
from juryboard.rbac import get_current_actor
from juryboard.services.competition_control import VotingAudience, set_results_published, set_voting_state
from juryboard.services.permission_resolver import Actor

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin/competitions", tags=["competitions"])


class VotingChange(BaseModel):
    audience: VotingAudience = VotingAudience.ALL


@router.post("/{competition_id}/voting/open")
async def open_voting(
    competition_id: int,
    payload: VotingChange = VotingChange(),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    competition = await set_voting_state(db, actor, competition_id, payload.audience, True)
    return {"success": True, "competition": competition.to_dict()}


@router.post("/{competition_id}/voting/close")
async def close_voting(
    competition_id: int,
    payload: VotingChange = VotingChange(),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    competition = await set_voting_state(db, actor, competition_id, payload.audience, False)
    return {"success": True, "competition": competition.to_dict()}


@router.post("/{competition_id}/results/publish")
async def publish_results(
    competition_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    competition = await set_results_published(db, actor, competition_id, True)
    return {"success": True, "competition": competition.to_dict()}
