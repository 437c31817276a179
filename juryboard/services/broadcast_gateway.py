"""
Broadcast Gateway

Publishes full ranked snapshots to report:{competition_id}:{report_id}.

- each snapshot carries a per-channel, monotonically increasing
  snapshot_sequence and a SHA-256 snapshot_hash of its entries
- the latest snapshot per channel is retained so a reconnecting client can
  pull it instead of waiting for the next write
- delivery is best-effort; a transport failure never reaches the writer
"""
import hashlib
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select

from juryboard.orm.report import ReportDefinition
from juryboard.realtime.broadcast_adapter import BroadcastAdapter
from juryboard.realtime.in_memory_adapter import InMemoryAdapter
from juryboard.services.aggregation_engine import AggregateCache
from juryboard.services.report_compiler import compile_saved_report

logger = logging.getLogger(__name__)


def report_channel(competition_id: int, report_id: int) -> str:
    return f"report:{competition_id}:{report_id}"


def snapshot_hash(entries: List[Dict[str, Any]]) -> str:
    """SHA-256 of the key-sorted, compact JSON of the entries."""
    serialized = json.dumps({"entries": entries}, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode()).hexdigest()


class BroadcastGateway:

    def __init__(self, adapter: Optional[BroadcastAdapter] = None):
        self.adapter = adapter or InMemoryAdapter()
        self._sequences: Dict[str, int] = {}
        self._latest: Dict[str, Dict[str, Any]] = {}

    async def publish(
        self,
        competition_id: int,
        report_id: int,
        entries: List[Dict[str, Any]]
    ) -> Dict[str, Any]:
        """Build, retain and fan out one snapshot. Returns the message."""
        channel = report_channel(competition_id, report_id)

        # No await between read and write, so sequence numbers never repeat
        sequence = self._sequences.get(channel, 0) + 1
        self._sequences[channel] = sequence

        message = {
            "type": "SNAPSHOT",
            "channel": channel,
            "competition_id": competition_id,
            "report_id": report_id,
            "snapshot_sequence": sequence,
            "snapshot_hash": snapshot_hash(entries),
            "published_at": datetime.utcnow().isoformat(),
            "entries": entries,
        }
        self._latest[channel] = message

        try:
            await self.adapter.publish(channel, message)
        except Exception as e:
            logger.warning(f"Snapshot {sequence} on {channel} not delivered: {e}")
        return message

    def latest(self, competition_id: int, report_id: int) -> Optional[Dict[str, Any]]:
        return self._latest.get(report_channel(competition_id, report_id))

    def sequence(self, competition_id: int, report_id: int) -> int:
        return self._sequences.get(report_channel(competition_id, report_id), 0)

    async def subscribe(self, competition_id: int, report_id: int):
        async for message in self.adapter.subscribe(report_channel(competition_id, report_id)):
            yield message

    async def close(self) -> None:
        await self.adapter.close()


async def current_snapshot(
    db,
    cache: AggregateCache,
    gateway: BroadcastGateway,
    competition_id: int,
    report_id: int
) -> Dict[str, Any]:
    """
    Recompile a report and return its snapshot. The retained snapshot is
    reused only while its hash still matches, otherwise a new one is
    published.
    """
    entries = await compile_saved_report(db, cache, report_id, competition_id)
    latest = gateway.latest(competition_id, report_id)
    if latest is not None and latest["snapshot_hash"] == snapshot_hash(entries):
        return latest
    return await gateway.publish(competition_id, report_id, entries)


async def publish_live_reports(
    db,
    cache: AggregateCache,
    gateway: BroadcastGateway,
    competition_id: int,
    rubric_id: Optional[int] = None
) -> int:
    """
    Republish every live report of a competition (optionally only those on
    one rubric) using the given session. A failing report is logged and
    skipped. Returns the number of snapshots published.
    """
    query = select(ReportDefinition.id).where(
        ReportDefinition.competition_id == competition_id,
        ReportDefinition.is_live.is_(True),
    )
    if rubric_id is not None:
        query = query.where(ReportDefinition.rubric_id == rubric_id)
    result = await db.execute(query.order_by(ReportDefinition.id))
    report_ids = list(result.scalars().all())

    published = 0
    for report_id in report_ids:
        try:
            entries = await compile_saved_report(db, cache, report_id, competition_id)
            await gateway.publish(competition_id, report_id, entries)
            published += 1
        except Exception:
            logger.exception(f"Live refresh of report {report_id} failed")
    return published


async def refresh_live_reports(
    session_factory: Callable[[], Any],
    cache: AggregateCache,
    gateway: BroadcastGateway,
    competition_id: int,
    rubric_id: Optional[int] = None
) -> int:
    """Open a session and republish the competition's live reports."""
    async with session_factory() as db:
        return await publish_live_reports(db, cache, gateway, competition_id, rubric_id)


def make_live_report_listener(
    session_factory: Callable[[], Any],
    cache: AggregateCache,
    gateway: BroadcastGateway
):
    """Score ledger listener that republishes the affected live reports."""
    async def refresh_on_score(event) -> None:
        await refresh_live_reports(
            session_factory, cache, gateway, event.competition_id, event.rubric_id
        )
    return refresh_on_score


# Global gateway instance (initialized on startup)
_gateway: Optional[BroadcastGateway] = None


def get_broadcast_gateway() -> BroadcastGateway:
    global _gateway
    if _gateway is None:
        _gateway = BroadcastGateway()
    return _gateway


def set_broadcast_gateway(gateway: Optional[BroadcastGateway]) -> None:
    global _gateway
    _gateway = gateway
