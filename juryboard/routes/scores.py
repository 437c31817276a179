"""
Score submission routes

- POST /api/scores                                   judge or public voter
- POST /api/admin/competitions/{cid}/scores          admin correction for a judge
- POST /api/admin/scores/{fact_id}/retire            logical retirement
"""
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from juryboard.config import settings
from juryboard.core.rate_limit import limiter
from juryboard.database import get_db
from juryboard.errors import InvalidValueError, NotFoundError
from juryboard.orm.participant import Participant
from juryboard.rbac import get_current_actor, get_voter_identity
from juryboard.schemas.scoring import AdminScoreSubmission, ScoreAccepted, ScoreFactOut, ScoreSubmission
from juryboard.services.permission_resolver import Actor
from juryboard.services.score_ledger import VoterIdentity, get_score_ledger

logger = logging.getLogger(__name__)
router = APIRouter(tags=["scores"])


@router.post("/api/scores", response_model=ScoreAccepted)
@limiter.limit(settings.PUBLIC_VOTE_RATE_LIMIT)
async def submit_score(
    request: Request,
    submission: ScoreSubmission,
    voter: VoterIdentity = Depends(get_voter_identity),
    db: AsyncSession = Depends(get_db)
):
    """
    Record or replace the caller's score for one participant and criterion.

    A re-vote by the same voter updates the existing fact (created=false).
    """
    fact, created = await get_score_ledger().submit(db, submission, voter)
    return ScoreAccepted(created=created, score=ScoreFactOut.model_validate(fact))


@router.post("/api/admin/competitions/{competition_id}/scores", response_model=ScoreAccepted)
async def submit_score_as_admin(
    competition_id: int,
    submission: AdminScoreSubmission,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    participant = await db.get(Participant, submission.participant_id)
    if participant is None:
        raise NotFoundError("Participant", submission.participant_id)
    if participant.competition_id != competition_id:
        raise InvalidValueError(
            "Participant does not belong to this competition",
            details={"participant_id": submission.participant_id, "competition_id": competition_id},
        )

    fact, created = await get_score_ledger().submit(
        db, submission, VoterIdentity.for_judge(submission.judge_id), acting_admin=actor
    )
    logger.info(f"Admin correction by {actor.label} on behalf of judge {submission.judge_id}")
    return ScoreAccepted(created=created, score=ScoreFactOut.model_validate(fact))


@router.post("/api/admin/scores/{fact_id}/retire")
async def retire_score(
    fact_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    fact = await get_score_ledger().retire(db, actor, fact_id)
    return {"success": True, "score": ScoreFactOut.model_validate(fact).model_dump(mode="json")}
