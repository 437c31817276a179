"""
Shared fixtures: a file-backed SQLite database per test, seed helpers and
the service singletons the routes resolve at request time.
"""
import itertools
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import juryboard.orm  # noqa: F401  registers every model on Base.metadata
from juryboard.core.rate_limit import limiter
from juryboard.orm.base import Base
from juryboard.orm.category import Category, ParticipantCategory
from juryboard.orm.competition import Competition, CompetitionStatus
from juryboard.orm.participant import Judge, Participant
from juryboard.orm.permissions import Admin, AdminRole, CompetitionPermissionGrant, GlobalPermissionGrant
from juryboard.orm.scoring import CombinationPolicy, Criterion, Rubric
from juryboard.realtime.connection_manager import set_connection_manager
from juryboard.realtime.in_memory_adapter import InMemoryAdapter
from juryboard.schemas.scoring import ScoreSubmission
from juryboard.services.aggregation_engine import AggregateCache, set_aggregate_cache
from juryboard.services.automation_engine import set_automation_engine
from juryboard.services.broadcast_gateway import BroadcastGateway, set_broadcast_gateway
from juryboard.services.score_ledger import ScoreLedger, VoterIdentity, set_score_ledger

BASE_TIME = datetime(2026, 3, 1, 12, 0, 0)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"timeout": 30.0},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def cache(session_factory):
    return AggregateCache(session_factory)


@pytest.fixture
def ledger(cache):
    return ScoreLedger(cache)


@pytest_asyncio.fixture
async def gateway():
    gateway = BroadcastGateway(InMemoryAdapter())
    yield gateway
    await gateway.close()


@pytest_asyncio.fixture
async def services(cache, ledger, gateway):
    """Install the singletons the routes look up; restore defaults afterwards."""
    set_aggregate_cache(cache)
    set_score_ledger(ledger)
    set_broadcast_gateway(gateway)
    limiter.enabled = False
    yield {"cache": cache, "ledger": ledger, "gateway": gateway}
    limiter.enabled = True
    set_aggregate_cache(None)
    set_score_ledger(None)
    set_broadcast_gateway(None)
    set_connection_manager(None)
    set_automation_engine(None)


class Seed:
    """Creates rows in their own committed sessions and returns them detached."""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self._counter = itertools.count(1)

    async def add(self, obj):
        async with self.session_factory() as db:
            db.add(obj)
            await db.commit()
        return obj

    async def competition(self, name: str = "Spring Showcase", **kwargs) -> Competition:
        kwargs.setdefault("status", CompetitionStatus.ACTIVE)
        kwargs.setdefault("judging_open", True)
        kwargs.setdefault("public_voting_open", True)
        return await self.add(Competition(name=name, **kwargs))

    async def participant(
        self,
        competition: Competition,
        name: Optional[str] = None,
        attributes: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None
    ) -> Participant:
        n = next(self._counter)
        return await self.add(Participant(
            competition_id=competition.id,
            display_name=name or f"Team {n}",
            attributes=attributes or {},
            created_at=created_at or BASE_TIME + timedelta(seconds=n),
        ))

    async def judge(self, competition: Competition, name: str = "Judge") -> Judge:
        return await self.add(Judge(competition_id=competition.id, display_name=name))

    async def rubric(self, competition: Competition, policy: CombinationPolicy = CombinationPolicy.MEAN) -> Rubric:
        return await self.add(Rubric(competition_id=competition.id, name="Main", combination_policy=policy))

    async def criterion(
        self,
        rubric: Rubric,
        name: str = "Impact",
        max_score: float = 10.0,
        weight: float = 1.0,
        mapping: Optional[List[Dict[str, Any]]] = None,
        position: int = 0
    ) -> Criterion:
        return await self.add(Criterion(
            rubric_id=rubric.id,
            name=name,
            max_score=max_score,
            weight=weight,
            qualitative_mapping=mapping,
            position=position,
        ))

    async def category(self, competition: Competition, name: str, parent: Optional[Category] = None) -> Category:
        return await self.add(Category(
            competition_id=competition.id,
            name=name,
            parent_id=parent.id if parent else None,
        ))

    async def member(self, participant: Participant, category: Category) -> ParticipantCategory:
        return await self.add(ParticipantCategory(participant_id=participant.id, category_id=category.id))

    async def admin(self, role: AdminRole = AdminRole.ADMIN, is_active: bool = True) -> Admin:
        n = next(self._counter)
        return await self.add(Admin(
            email=f"admin{n}@example.org",
            display_name=f"Admin {n}",
            role=role,
            is_active=is_active,
        ))

    async def global_grants(self, admin: Admin, grants: Dict[str, bool]) -> GlobalPermissionGrant:
        return await self.add(GlobalPermissionGrant(admin_id=admin.id, grants=grants))

    async def competition_grants(
        self,
        admin: Admin,
        competition: Competition,
        grants: Dict[str, bool]
    ) -> CompetitionPermissionGrant:
        return await self.add(CompetitionPermissionGrant(
            admin_id=admin.id,
            competition_id=competition.id,
            grants=grants,
        ))


@pytest.fixture
def seed(session_factory):
    return Seed(session_factory)


@pytest.fixture
def submit(session_factory, ledger):
    """Submit one score through the ledger in a fresh session."""
    async def _submit(participant, criterion, voter: VoterIdentity, value=None, label=None, **kwargs):
        async with session_factory() as db:
            return await ledger.submit(
                db,
                ScoreSubmission(
                    participant_id=participant.id,
                    criterion_id=criterion.id,
                    value=value,
                    qualitative_label=label,
                ),
                voter,
                **kwargs,
            )
    return _submit
