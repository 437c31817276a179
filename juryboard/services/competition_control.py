"""
Competition control: voting windows and result publication.

Both admins and automation rules go through these functions. Every
operation is idempotent: applying a state the competition already has
is a no-op that still succeeds.
"""
import logging
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession

from juryboard.errors import InvalidStateError, NotFoundError
from juryboard.orm.competition import Competition, CompetitionStatus
from juryboard.services.permission_resolver import Actor, PermissionName, require_permission

logger = logging.getLogger(__name__)


class VotingAudience(str, Enum):
    PUBLIC = "public"
    JUDGES = "judges"
    ALL = "all"


async def _load_competition(db: AsyncSession, competition_id: int) -> Competition:
    competition = await db.get(Competition, competition_id)
    if competition is None:
        raise NotFoundError("Competition", competition_id)
    return competition


async def set_voting_state(
    db: AsyncSession,
    actor: Actor,
    competition_id: int,
    audience: VotingAudience,
    open_voting: bool
) -> Competition:
    """Open or close voting for an audience. Returns the competition."""
    competition = await _load_competition(db, competition_id)
    await require_permission(db, actor, competition_id, PermissionName.CAN_MANAGE_VOTING)

    audience = VotingAudience(audience)
    if open_voting and competition.status == CompetitionStatus.ARCHIVED:
        raise InvalidStateError("Cannot open voting on an archived competition")

    changed = False
    if audience in (VotingAudience.JUDGES, VotingAudience.ALL) and competition.judging_open != open_voting:
        competition.judging_open = open_voting
        changed = True
    if audience in (VotingAudience.PUBLIC, VotingAudience.ALL) and competition.public_voting_open != open_voting:
        competition.public_voting_open = open_voting
        changed = True

    if open_voting and competition.status == CompetitionStatus.DRAFT:
        competition.status = CompetitionStatus.ACTIVE
        changed = True

    if changed:
        await db.commit()
        logger.info(
            f"Voting {'opened' if open_voting else 'closed'} for {audience.value} "
            f"on competition {competition_id} by {actor.label}"
        )
    else:
        logger.debug(f"Voting state for competition {competition_id} already applied; no-op")
    return competition


async def set_results_published(
    db: AsyncSession,
    actor: Actor,
    competition_id: int,
    published: bool = True
) -> Competition:
    competition = await _load_competition(db, competition_id)
    await require_permission(db, actor, competition_id, PermissionName.CAN_PUBLISH_RESULTS)

    if competition.results_published != published:
        competition.results_published = published
        await db.commit()
        logger.info(
            f"Results {'published' if published else 'unpublished'} for competition "
            f"{competition_id} by {actor.label}"
        )
    return competition
