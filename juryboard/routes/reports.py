"""
Report routes

- POST /api/competitions/{cid}/reports/query       compile an inline definition
- GET  /api/competitions/{cid}/reports/{report_id} compile a saved definition
- POST /api/admin/competitions/{cid}/reports       save a definition

Public reports are readable by anyone; everything else needs
canViewReports (reads) or canManageReports (writes).
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from juryboard.config import feature_flags
from juryboard.database import get_db
from juryboard.errors import NotFoundError, UnauthorizedError
from juryboard.rbac import get_current_actor, get_optional_actor
from juryboard.schemas.reports import ReportCreate, ReportCreated, ReportQuery, ReportResult
from juryboard.services.aggregation_engine import get_aggregate_cache
from juryboard.services.broadcast_gateway import get_broadcast_gateway
from juryboard.services.permission_resolver import Actor, PermissionName, require_permission
from juryboard.services.report_compiler import compile_report, compile_saved_report, create_report, load_report

logger = logging.getLogger(__name__)
router = APIRouter(tags=["reports"])


@router.post("/api/competitions/{competition_id}/reports/query", response_model=ReportResult)
async def query_report(
    competition_id: int,
    query: ReportQuery,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    await require_permission(db, actor, competition_id, PermissionName.CAN_VIEW_REPORTS)
    entries = await compile_report(db, get_aggregate_cache(), competition_id, query)
    return ReportResult(competition_id=competition_id, rubric_id=query.rubric_id, entries=entries)


@router.get("/api/competitions/{competition_id}/reports/{report_id}", response_model=ReportResult)
async def get_report(
    competition_id: int,
    report_id: int,
    actor: Optional[Actor] = Depends(get_optional_actor),
    db: AsyncSession = Depends(get_db)
):
    report = await load_report(db, report_id)
    if report.competition_id != competition_id:
        raise NotFoundError("Report", report_id)

    if not report.is_public:
        if actor is None:
            raise UnauthorizedError()
        await require_permission(db, actor, competition_id, PermissionName.CAN_VIEW_REPORTS)

    entries = await compile_saved_report(db, get_aggregate_cache(), report_id, competition_id)
    return ReportResult(
        competition_id=competition_id,
        report_id=report_id,
        rubric_id=report.rubric_id,
        entries=entries,
    )


@router.post(
    "/api/admin/competitions/{competition_id}/reports",
    response_model=ReportCreated,
    status_code=status.HTTP_201_CREATED,
)
async def create_report_definition(
    competition_id: int,
    payload: ReportCreate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    await require_permission(db, actor, competition_id, PermissionName.CAN_MANAGE_REPORTS)
    report = await create_report(db, competition_id, payload)

    if report.is_live and feature_flags.FEATURE_LIVE_REPORTS:
        # Seed the channel so the first subscriber has a snapshot to pull
        entries = await compile_saved_report(db, get_aggregate_cache(), report.id)
        await get_broadcast_gateway().publish(competition_id, report.id, entries)

    return ReportCreated(report_id=report.id, name=report.name)
