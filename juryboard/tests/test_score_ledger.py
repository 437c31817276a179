"""
Score ledger tests

- exactly one fact per (participant, criterion, voter), also under concurrency
- label resolution at write time, range checks, voting-window policy
- admin corrections and logical retirement
- listeners observe committed writes and never fail them
"""
import asyncio
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from juryboard.errors import (
    DeniedError, ErrorCode, InvalidValueError, OutOfRangeError, UnknownCriterionError
)
from juryboard.orm.competition import Competition, CompetitionStatus
from juryboard.orm.participant import Voter, VoterType
from juryboard.orm.permissions import AdminRole
from juryboard.orm.scoring import ScoreFact
from juryboard.services.permission_resolver import Actor
from juryboard.services.score_ledger import VoterIdentity, check_voting_window

LEVELS = [
    {"label": "poor", "value": 2.0},
    {"label": "good", "value": 7.0},
    {"label": "excellent", "value": 10.0},
]


async def count_facts(db, **filters):
    query = select(func.count(ScoreFact.id))
    for name, value in filters.items():
        query = query.where(getattr(ScoreFact, name) == value)
    result = await db.execute(query)
    return result.scalar_one()


@pytest_asyncio.fixture
async def scene(seed):
    competition = await seed.competition()
    rubric = await seed.rubric(competition)
    criterion = await seed.criterion(rubric, max_score=10.0, mapping=LEVELS)
    participant = await seed.participant(competition)
    judge = await seed.judge(competition)
    return {
        "competition": competition,
        "rubric": rubric,
        "criterion": criterion,
        "participant": participant,
        "judge": judge,
    }


# =============================================================================
# Idempotence
# =============================================================================

@pytest.mark.asyncio
async def test_revote_updates_in_place(db, scene, submit):
    voter = VoterIdentity.for_public("session-1")

    first, created = await submit(scene["participant"], scene["criterion"], voter, value=4.0)
    assert created is True
    assert first.revision == 1

    second, created = await submit(scene["participant"], scene["criterion"], voter, value=6.5)
    assert created is False
    assert second.id == first.id
    assert second.value == 6.5
    assert second.revision == 2

    assert await count_facts(db, participant_id=scene["participant"].id) == 1


@pytest.mark.asyncio
async def test_concurrent_resubmission_keeps_one_fact(db, scene, submit):
    voter = VoterIdentity.for_judge(scene["judge"].id)

    results = await asyncio.gather(*(
        submit(scene["participant"], scene["criterion"], voter, value=float(v))
        for v in range(1, 9)
    ))

    assert await count_facts(db, participant_id=scene["participant"].id) == 1
    assert sum(1 for _, created in results if created) == 1

    result = await db.execute(select(ScoreFact))
    stored = result.scalar_one()
    assert stored.revision == 8
    assert stored.value in {float(v) for v in range(1, 9)}

    result = await db.execute(select(func.count(Voter.id)))
    assert result.scalar_one() == 1


@pytest.mark.asyncio
async def test_distinct_voters_get_distinct_facts(db, scene, submit):
    await asyncio.gather(
        submit(scene["participant"], scene["criterion"], VoterIdentity.for_public("a"), value=1.0),
        submit(scene["participant"], scene["criterion"], VoterIdentity.for_public("b"), value=2.0),
        submit(scene["participant"], scene["criterion"], VoterIdentity.for_judge(scene["judge"].id), value=3.0),
    )
    assert await count_facts(db, criterion_id=scene["criterion"].id) == 3


# =============================================================================
# Validation
# =============================================================================

@pytest.mark.asyncio
async def test_label_resolved_at_write_time(scene, submit):
    fact, _ = await submit(scene["participant"], scene["criterion"], VoterIdentity.for_public("a"), label="good")
    assert fact.value == 7.0
    assert fact.qualitative_label == "good"


@pytest.mark.asyncio
async def test_unknown_label_out_of_range(scene, submit):
    with pytest.raises(OutOfRangeError) as exc:
        await submit(scene["participant"], scene["criterion"], VoterIdentity.for_public("a"), label="legendary")
    assert exc.value.details["allowed_labels"] == ["poor", "good", "excellent"]


@pytest.mark.asyncio
@pytest.mark.parametrize("value", [-0.5, 10.01])
async def test_value_outside_range(scene, submit, value):
    with pytest.raises(OutOfRangeError):
        await submit(scene["participant"], scene["criterion"], VoterIdentity.for_public("a"), value=value)


@pytest.mark.asyncio
async def test_boundaries_accepted(scene, submit):
    low, _ = await submit(scene["participant"], scene["criterion"], VoterIdentity.for_public("a"), value=0.0)
    high, _ = await submit(scene["participant"], scene["criterion"], VoterIdentity.for_public("b"), value=10.0)
    assert (low.value, high.value) == (0.0, 10.0)


@pytest.mark.asyncio
async def test_value_and_label_are_exclusive(scene, submit):
    voter = VoterIdentity.for_public("a")
    with pytest.raises(InvalidValueError):
        await submit(scene["participant"], scene["criterion"], voter, value=7.0, label="good")
    with pytest.raises(InvalidValueError):
        await submit(scene["participant"], scene["criterion"], voter)


@pytest.mark.asyncio
async def test_nan_rejected(scene, submit):
    with pytest.raises(InvalidValueError):
        await submit(scene["participant"], scene["criterion"], VoterIdentity.for_public("a"), value=float("nan"))


@pytest.mark.asyncio
async def test_criterion_from_other_competition(seed, scene, submit):
    other = await seed.competition("Other")
    foreign = await seed.criterion(await seed.rubric(other))

    with pytest.raises(UnknownCriterionError):
        await submit(scene["participant"], foreign, VoterIdentity.for_public("a"), value=1.0)


@pytest.mark.asyncio
async def test_judge_from_other_competition_denied(seed, scene, submit):
    outsider = await seed.judge(await seed.competition("Other"))
    with pytest.raises(DeniedError):
        await submit(scene["participant"], scene["criterion"], VoterIdentity.for_judge(outsider.id), value=1.0)


# =============================================================================
# Voting window
# =============================================================================

class TestVotingWindow:

    def _competition(self, **kwargs):
        defaults = dict(
            status=CompetitionStatus.ACTIVE,
            judging_open=True,
            public_voting_open=True,
            voting_opens_at=None,
            voting_closes_at=None,
        )
        defaults.update(kwargs)
        return Competition(name="c", **defaults)

    def test_audiences_checked_separately(self):
        competition = self._competition(public_voting_open=False)
        now = datetime(2026, 3, 1)

        check_voting_window(competition, VoterType.JUDGE, now)
        with pytest.raises(DeniedError) as exc:
            check_voting_window(competition, VoterType.PUBLIC, now)
        assert exc.value.code == ErrorCode.VOTING_CLOSED

    def test_time_bounds(self):
        opens = datetime(2026, 3, 1, 9)
        closes = datetime(2026, 3, 1, 17)
        competition = self._competition(voting_opens_at=opens, voting_closes_at=closes)

        with pytest.raises(DeniedError):
            check_voting_window(competition, VoterType.PUBLIC, opens - timedelta(seconds=1))
        check_voting_window(competition, VoterType.PUBLIC, opens)
        with pytest.raises(DeniedError):
            check_voting_window(competition, VoterType.PUBLIC, closes)

    def test_archived_rejects_everyone(self):
        competition = self._competition(status=CompetitionStatus.ARCHIVED)
        with pytest.raises(DeniedError):
            check_voting_window(competition, VoterType.JUDGE, datetime(2026, 3, 1))


@pytest.mark.asyncio
async def test_closed_window_rejects_and_stores_nothing(db, seed, submit):
    competition = await seed.competition(judging_open=False, public_voting_open=False)
    criterion = await seed.criterion(await seed.rubric(competition))
    participant = await seed.participant(competition)

    with pytest.raises(DeniedError) as exc:
        await submit(participant, criterion, VoterIdentity.for_public("a"), value=5.0)
    assert exc.value.code == ErrorCode.VOTING_CLOSED
    assert await count_facts(db) == 0


# =============================================================================
# Admin path
# =============================================================================

@pytest.mark.asyncio
async def test_admin_correction_bypasses_window_but_needs_permission(seed, submit):
    competition = await seed.competition(judging_open=False, public_voting_open=False)
    criterion = await seed.criterion(await seed.rubric(competition))
    participant = await seed.participant(competition)
    judge = await seed.judge(competition)
    plain = await seed.admin()
    scorer = await seed.admin()
    await seed.competition_grants(scorer, competition, {"canManageScores": True})
    voter = VoterIdentity.for_judge(judge.id)

    with pytest.raises(DeniedError):
        await submit(participant, criterion, voter, value=5.0, acting_admin=Actor(plain.id, plain.role))

    fact, created = await submit(participant, criterion, voter, value=5.0, acting_admin=Actor(scorer.id, scorer.role))
    assert created and fact.value == 5.0


@pytest.mark.asyncio
async def test_retire_is_idempotent_and_revote_revives(db, seed, scene, submit, ledger):
    root = await seed.admin(AdminRole.SUPER_ADMIN)
    actor = Actor(root.id, root.role)
    voter = VoterIdentity.for_public("a")

    fact, _ = await submit(scene["participant"], scene["criterion"], voter, value=3.0)
    retired = await ledger.retire(db, actor, fact.id)
    assert retired.is_retired
    again = await ledger.retire(db, actor, fact.id)
    assert again.is_retired

    revived, created = await submit(scene["participant"], scene["criterion"], voter, value=4.0)
    assert revived.id == fact.id
    assert created is False
    assert revived.is_retired is False


# =============================================================================
# Listeners
# =============================================================================

@pytest.mark.asyncio
async def test_listener_sees_write_and_failures_are_contained(scene, submit, ledger):
    seen = []

    async def broken(event):
        raise RuntimeError("downstream unavailable")

    async def recorder(event):
        seen.append(event)

    ledger.add_listener(broken)
    ledger.add_listener(recorder)

    fact, created = await submit(scene["participant"], scene["criterion"], VoterIdentity.for_public("a"), value=2.0)

    assert created
    assert len(seen) == 1
    assert seen[0].fact_id == fact.id
    assert seen[0].rubric_id == scene["rubric"].id
    assert seen[0].competition_id == scene["competition"].id
