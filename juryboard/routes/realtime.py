"""
Live report WebSocket

URL: /ws/competitions/{competition_id}/reports/{report_id}?token={jwt}

Allowed client messages:
- {"type": "PING"}
- {"type": "REQUEST_SNAPSHOT"}

Server messages:
- {"type": "SNAPSHOT", "snapshot_sequence": n, "snapshot_hash": "...", "entries": [...]}
- {"type": "PONG"}
- {"type": "ERROR", "message": "..."}

Public reports need no token; others need an admin token with canViewReports.
"""
import json
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession

from juryboard.config import feature_flags
from juryboard.database import get_db
from juryboard.orm.permissions import Admin
from juryboard.orm.report import ReportDefinition
from juryboard.rbac import decode_token, parse_subject
from juryboard.realtime.connection_manager import ConnectionManager, get_connection_manager, set_connection_manager
from juryboard.services.aggregation_engine import get_aggregate_cache
from juryboard.services.broadcast_gateway import current_snapshot, get_broadcast_gateway, report_channel
from juryboard.services.permission_resolver import Actor, PermissionName, authorize_actor

logger = logging.getLogger(__name__)
router = APIRouter(tags=["realtime"])

ALLOWED_CLIENT_MESSAGES = {"PING", "REQUEST_SNAPSHOT"}


async def _resolve_viewer(db: AsyncSession, token: Optional[str], competition_id: int) -> Optional[str]:
    """Subscriber label if the token belongs to an admin allowed to view reports."""
    if not token:
        return None
    payload = decode_token(token)
    identity = parse_subject(payload.get("sub")) if payload else None
    if identity is None or identity.kind != "admin" or not identity.subject.isdigit():
        return None
    admin = await db.get(Admin, int(identity.subject))
    if admin is None or not admin.is_active:
        return None
    actor = Actor(admin_id=admin.id, role=admin.role)
    if not await authorize_actor(db, actor, competition_id, PermissionName.CAN_VIEW_REPORTS):
        return None
    return actor.label


async def _current_snapshot(db: AsyncSession, competition_id: int, report_id: int):
    return await current_snapshot(
        db, get_aggregate_cache(), get_broadcast_gateway(), competition_id, report_id
    )


@router.websocket("/ws/competitions/{competition_id}/reports/{report_id}")
async def report_socket(
    websocket: WebSocket,
    competition_id: int,
    report_id: int,
    token: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db)
):
    if not feature_flags.FEATURE_LIVE_REPORTS:
        await websocket.close(code=1008, reason="Live reports disabled")
        return

    report = await db.get(ReportDefinition, report_id)
    if report is None or report.competition_id != competition_id:
        await websocket.close(code=1008, reason="Report not found")
        return

    subscriber = await _resolve_viewer(db, token, competition_id)
    if not report.is_public and subscriber is None:
        await websocket.close(code=1008, reason="Not authorized")
        return

    manager = get_connection_manager()
    if manager is None:
        manager = ConnectionManager(get_broadcast_gateway().adapter)
        set_connection_manager(manager)

    channel = report_channel(competition_id, report_id)
    await manager.connect(websocket, channel, subscriber or "public")

    try:
        manager.enqueue(websocket, await _current_snapshot(db, competition_id, report_id))

        while True:
            try:
                data = await websocket.receive_text()
            except WebSocketDisconnect:
                break

            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                manager.enqueue(websocket, {"type": "ERROR", "message": "Invalid JSON"})
                continue

            msg_type = message.get("type") if isinstance(message, dict) else None
            if msg_type not in ALLOWED_CLIENT_MESSAGES:
                manager.enqueue(websocket, {
                    "type": "ERROR",
                    "message": f"Invalid message type. Allowed: {sorted(ALLOWED_CLIENT_MESSAGES)}"
                })
                continue

            if msg_type == "PING":
                manager.enqueue(websocket, {"type": "PONG", "timestamp": datetime.utcnow().isoformat()})
            elif msg_type == "REQUEST_SNAPSHOT":
                manager.enqueue(websocket, await _current_snapshot(db, competition_id, report_id))
    finally:
        await manager.disconnect(websocket, channel)
