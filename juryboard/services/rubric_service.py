"""
Rubric and criterion administration.

Weight and policy edits are rubric-wide: every cached aggregate under the
rubric is invalidated and, given a gateway, the rubric's live reports are
republished. After results are published, score-affecting
criterion fields (max_score, weight, qualitative_mapping) are frozen once
facts exist for the criterion.
"""
import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from juryboard.errors import ErrorCode, InvalidStateError, InvalidValueError, NotFoundError
from juryboard.orm.competition import Competition
from juryboard.orm.scoring import CombinationPolicy, Criterion, Rubric, ScoreFact
from juryboard.schemas.rubrics import CriterionUpdate
from juryboard.services.aggregation_engine import AggregateCache
from juryboard.services.broadcast_gateway import BroadcastGateway, publish_live_reports
from juryboard.services.permission_resolver import Actor, PermissionName, require_permission

logger = logging.getLogger(__name__)

SCORE_AFFECTING_FIELDS = ("max_score", "weight", "qualitative_mapping")


async def update_criterion(
    db: AsyncSession,
    actor: Actor,
    criterion_id: int,
    changes: CriterionUpdate,
    cache: Optional[AggregateCache] = None,
    gateway: Optional[BroadcastGateway] = None
) -> Criterion:
    criterion = await db.get(Criterion, criterion_id)
    if criterion is None:
        raise NotFoundError("Criterion", criterion_id)
    rubric = await db.get(Rubric, criterion.rubric_id)
    competition = await db.get(Competition, rubric.competition_id)

    await require_permission(db, actor, competition.id, PermissionName.CAN_MANAGE_RUBRICS)

    updates = changes.model_dump(exclude_unset=True)
    score_affecting = [name for name in SCORE_AFFECTING_FIELDS if name in updates]

    if score_affecting and competition.results_published:
        result = await db.execute(
            select(func.count(ScoreFact.id)).where(ScoreFact.criterion_id == criterion_id)
        )
        if result.scalar_one() > 0:
            raise InvalidStateError(
                "Results are published; scored criteria can no longer change",
                code=ErrorCode.CRITERION_LOCKED,
                details={"fields": score_affecting},
            )

    max_score = updates.get("max_score", criterion.max_score)
    mapping = updates.get("qualitative_mapping", criterion.qualitative_mapping) or []
    over = [level["label"] for level in mapping if level["value"] > max_score]
    if over:
        raise InvalidValueError(
            "Qualitative values must not exceed max_score",
            details={"labels": over, "max_score": max_score},
        )

    for name, value in updates.items():
        setattr(criterion, name, value)
    await db.commit()

    if cache is not None and "weight" in updates:
        cache.invalidate_rubric(rubric.id)
        if gateway is not None:
            await publish_live_reports(db, cache, gateway, competition.id, rubric.id)

    logger.info(f"Criterion {criterion_id} updated by {actor.label}: {sorted(updates)}")
    return criterion


async def set_combination_policy(
    db: AsyncSession,
    actor: Actor,
    rubric_id: int,
    policy: CombinationPolicy,
    cache: Optional[AggregateCache] = None,
    gateway: Optional[BroadcastGateway] = None
) -> Rubric:
    rubric = await db.get(Rubric, rubric_id)
    if rubric is None:
        raise NotFoundError("Rubric", rubric_id)
    await require_permission(db, actor, rubric.competition_id, PermissionName.CAN_MANAGE_RUBRICS)

    competition = await db.get(Competition, rubric.competition_id)
    if competition.results_published:
        raise InvalidStateError(
            "Results are published; the combination policy can no longer change",
            code=ErrorCode.CRITERION_LOCKED,
        )

    if rubric.combination_policy != policy:
        rubric.combination_policy = policy
        await db.commit()
        if cache is not None:
            cache.invalidate_rubric(rubric_id)
            if gateway is not None:
                await publish_live_reports(db, cache, gateway, rubric.competition_id, rubric_id)
        logger.info(f"Rubric {rubric_id} policy set to {policy.value} by {actor.label}")
    return rubric
