"""
Automation routes

- POST  /api/automation/events                                   webhook ingress (202)
- POST  /api/admin/competitions/{cid}/automation/rules            create rule
- PATCH /api/admin/competitions/{cid}/automation/rules/{rule_id}  enable/disable
"""
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, status
from sqlalchemy.ext.asyncio import AsyncSession

from juryboard.config import feature_flags, settings
from juryboard.database import get_db
from juryboard.errors import ErrorCode, InvalidStateError, NotFoundError, UnauthorizedError
from juryboard.orm.competition import Competition
from juryboard.rbac import get_current_actor
from juryboard.schemas.automation import IncomingEvent, RuleCreate, RuleUpdate
from juryboard.services.automation_engine import (
    CompetitionEvent, create_rule, get_automation_engine, update_rule
)
from juryboard.services.permission_resolver import Actor

logger = logging.getLogger(__name__)
router = APIRouter(tags=["automation"])


@router.post("/api/automation/events", status_code=status.HTTP_202_ACCEPTED)
async def ingest_event(
    event: IncomingEvent,
    x_webhook_secret: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db)
):
    """Accept an external event; rules are evaluated asynchronously."""
    if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, settings.WEBHOOK_SECRET):
        raise UnauthorizedError("Invalid webhook secret", code=ErrorCode.AUTH_INVALID)

    engine = get_automation_engine()
    if engine is None or not feature_flags.FEATURE_AUTOMATION_ENGINE:
        raise InvalidStateError("Automation engine is not running")

    if await db.get(Competition, event.competition_id) is None:
        raise NotFoundError("Competition", event.competition_id)

    engine.dispatch(CompetitionEvent(
        competition_id=event.competition_id,
        event_type=event.event_type,
        payload=event.payload,
        source="webhook",
    ))
    return {"success": True, "accepted": True}


@router.post(
    "/api/admin/competitions/{competition_id}/automation/rules",
    status_code=status.HTTP_201_CREATED,
)
async def create_automation_rule(
    competition_id: int,
    payload: RuleCreate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    rule = await create_rule(db, actor, competition_id, payload)
    return {"success": True, "rule": rule.to_dict()}


@router.patch("/api/admin/competitions/{competition_id}/automation/rules/{rule_id}")
async def update_automation_rule(
    competition_id: int,
    rule_id: int,
    payload: RuleUpdate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    rule = await update_rule(db, actor, competition_id, rule_id, payload)
    return {"success": True, "rule": rule.to_dict()}
