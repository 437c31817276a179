"""
Report compiler tests

Filter -> resolve -> stable multi-key sort -> limit -> rank.
"""
from datetime import datetime

import pytest

from juryboard.errors import InvalidValueError, UnknownSortFieldError
from juryboard.orm.participant import VoterType
from juryboard.orm.report import SortDirection
from juryboard.schemas.reports import ReportCreate, ReportFilters, ReportQuery, SortSpec
from juryboard.services.report_compiler import (
    Candidate, FieldRef, compile_report, compile_saved_report, create_report, rank_candidates
)
from juryboard.services.score_ledger import VoterIdentity


def by_total(direction=SortDirection.DESC):
    return [SortSpec(field="weightedTotal", direction=direction)]


async def scored_field(seed, submit, totals, voter_prefix="public"):
    """One competition, one criterion, one participant per total, scored by a public voter."""
    competition = await seed.competition()
    rubric = await seed.rubric(competition)
    criterion = await seed.criterion(rubric)
    participants = []
    for total in totals:
        participant = await seed.participant(competition, f"Team {total}")
        await submit(participant, criterion, VoterIdentity.for_public(f"{voter_prefix}-1"), value=total)
        participants.append(participant)
    return competition, rubric, criterion, participants


# =============================================================================
# Ranking
# =============================================================================

@pytest.mark.asyncio
async def test_public_top_one(db, cache, seed, submit):
    competition, rubric, _, participants = await scored_field(seed, submit, [5.0, 9.0, 7.0])

    entries = await compile_report(db, cache, competition.id, ReportQuery(
        rubric_id=rubric.id,
        filters=ReportFilters(category_ids=[], voter_types=[VoterType.PUBLIC]),
        sort=by_total(),
        limit=1,
    ))

    assert len(entries) == 1
    assert entries[0]["participant_id"] == participants[1].id
    assert entries[0]["weighted_total"] == pytest.approx(9.0)
    assert entries[0]["rank"] == 1


@pytest.mark.asyncio
async def test_full_ranking_shape(db, cache, seed, submit):
    competition, rubric, criterion, participants = await scored_field(seed, submit, [5.0, 9.0, 7.0])

    entries = await compile_report(db, cache, competition.id, ReportQuery(rubric_id=rubric.id, sort=by_total()))

    assert [e["weighted_total"] for e in entries] == [9.0, 7.0, 5.0]
    assert [e["rank"] for e in entries] == [1, 2, 3]
    assert entries[0]["display_name"] == "Team 9.0"
    assert entries[0]["per_criterion_breakdown"] == {criterion.id: 9.0}


@pytest.mark.asyncio
async def test_ties_keep_creation_order(db, cache, seed, submit):
    competition, rubric, _, participants = await scored_field(seed, submit, [6.0, 8.0, 6.0, 6.0])
    query = ReportQuery(rubric_id=rubric.id, sort=by_total())

    first = await compile_report(db, cache, competition.id, query)
    second = await compile_report(db, cache, competition.id, query)

    expected = [participants[1].id, participants[0].id, participants[2].id, participants[3].id]
    assert [e["participant_id"] for e in first] == expected
    assert [e["participant_id"] for e in second] == expected


@pytest.mark.asyncio
async def test_ties_keep_creation_order_ascending(db, cache, seed, submit):
    competition, rubric, _, participants = await scored_field(seed, submit, [6.0, 2.0, 6.0])

    entries = await compile_report(db, cache, competition.id, ReportQuery(
        rubric_id=rubric.id, sort=by_total(SortDirection.ASC)
    ))
    assert [e["participant_id"] for e in entries] == [participants[1].id, participants[0].id, participants[2].id]


@pytest.mark.asyncio
async def test_secondary_sort_on_attribute(db, cache, seed, submit):
    competition = await seed.competition()
    rubric = await seed.rubric(competition)
    criterion = await seed.criterion(rubric)
    late = await seed.participant(competition, "Late", attributes={"seed": 3})
    early = await seed.participant(competition, "Early", attributes={"seed": 1})
    best = await seed.participant(competition, "Best", attributes={"seed": 2})
    for participant, value in ((late, 5.0), (early, 5.0), (best, 8.0)):
        await submit(participant, criterion, VoterIdentity.for_public("p"), value=value)

    entries = await compile_report(db, cache, competition.id, ReportQuery(
        rubric_id=rubric.id,
        sort=[
            SortSpec(field="weightedTotal", direction=SortDirection.DESC),
            SortSpec(field="attributes.seed", direction=SortDirection.ASC),
        ],
        display_fields=["attributes.seed", "displayName"],
    ))

    assert [e["participant_id"] for e in entries] == [best.id, early.id, late.id]
    assert entries[1]["display_fields"] == {"attributes.seed": 1, "displayName": "Early"}


@pytest.mark.asyncio
async def test_sort_by_single_criterion(db, cache, seed, submit):
    competition = await seed.competition()
    rubric = await seed.rubric(competition)
    craft = await seed.criterion(rubric, "Craft", weight=1.0)
    story = await seed.criterion(rubric, "Story", weight=3.0, position=1)
    a = await seed.participant(competition)
    b = await seed.participant(competition)
    voter = VoterIdentity.for_public("p")
    await submit(a, craft, voter, value=9.0)
    await submit(a, story, voter, value=1.0)
    await submit(b, craft, voter, value=2.0)
    await submit(b, story, voter, value=8.0)

    entries = await compile_report(db, cache, competition.id, ReportQuery(
        rubric_id=rubric.id, sort=[SortSpec(field=f"criterion.{craft.id}")]
    ))
    assert [e["participant_id"] for e in entries] == [a.id, b.id]

    entries = await compile_report(db, cache, competition.id, ReportQuery(rubric_id=rubric.id, sort=by_total()))
    assert [e["participant_id"] for e in entries] == [b.id, a.id]
    assert entries[0]["weighted_total"] == pytest.approx((2.0 + 8.0 * 3.0) / 4.0)


def test_missing_values_sort_last_both_ways():
    def candidate(pid, rating):
        return Candidate(
            participant_id=pid,
            display_name=str(pid),
            created_at=datetime(2026, 1, 1, 0, 0, pid),
            attributes={} if rating is None else {"rating": rating},
        )

    candidates = [candidate(1, None), candidate(2, 3), candidate(3, 7), candidate(4, None)]
    ref = FieldRef("attributes.rating", "attribute", "rating")

    descending = rank_candidates(candidates, [(ref, SortDirection.DESC)])
    ascending = rank_candidates(candidates, [(ref, SortDirection.ASC)])

    assert [c.participant_id for c in descending] == [3, 2, 1, 4]
    assert [c.participant_id for c in ascending] == [2, 3, 1, 4]


# =============================================================================
# Filters
# =============================================================================

@pytest.mark.asyncio
async def test_category_filter_includes_descendants(db, cache, seed, submit):
    competition = await seed.competition()
    rubric = await seed.rubric(competition)
    criterion = await seed.criterion(rubric)
    music = await seed.category(competition, "Music")
    jazz = await seed.category(competition, "Jazz", parent=music)
    dance = await seed.category(competition, "Dance")

    trio = await seed.participant(competition, "Trio")
    crew = await seed.participant(competition, "Crew")
    await seed.member(trio, jazz)
    await seed.member(crew, dance)
    for participant in (trio, crew):
        await submit(participant, criterion, VoterIdentity.for_public("p"), value=5.0)

    entries = await compile_report(db, cache, competition.id, ReportQuery(
        rubric_id=rubric.id,
        filters=ReportFilters(category_ids=[music.id]),
    ))
    assert [e["participant_id"] for e in entries] == [trio.id]


@pytest.mark.asyncio
async def test_voter_type_and_judge_filters(db, cache, seed, submit):
    competition = await seed.competition()
    rubric = await seed.rubric(competition)
    criterion = await seed.criterion(rubric)
    ada = await seed.judge(competition, "Ada")
    bo = await seed.judge(competition, "Bo")

    public_only = await seed.participant(competition, "Crowd favourite")
    judged_by_ada = await seed.participant(competition, "Ada's pick")
    judged_by_bo = await seed.participant(competition, "Bo's pick")
    await submit(public_only, criterion, VoterIdentity.for_public("p"), value=9.0)
    await submit(judged_by_ada, criterion, VoterIdentity.for_judge(ada.id), value=6.0)
    await submit(judged_by_bo, criterion, VoterIdentity.for_judge(bo.id), value=4.0)

    judges = await compile_report(db, cache, competition.id, ReportQuery(
        rubric_id=rubric.id,
        filters=ReportFilters(voter_types=[VoterType.JUDGE]),
        sort=by_total(),
    ))
    assert [e["participant_id"] for e in judges] == [judged_by_ada.id, judged_by_bo.id]

    only_bo = await compile_report(db, cache, competition.id, ReportQuery(
        rubric_id=rubric.id,
        filters=ReportFilters(judge_ids=[bo.id]),
    ))
    assert [e["participant_id"] for e in only_bo] == [judged_by_bo.id]


@pytest.mark.asyncio
async def test_no_matches_is_empty(db, cache, seed, submit):
    competition, rubric, _, _ = await scored_field(seed, submit, [5.0])
    empty = await seed.category(competition, "Nobody")

    entries = await compile_report(db, cache, competition.id, ReportQuery(
        rubric_id=rubric.id, filters=ReportFilters(category_ids=[empty.id])
    ))
    assert entries == []

    entries = await compile_report(db, cache, competition.id, ReportQuery(
        rubric_id=rubric.id, filters=ReportFilters(voter_types=[VoterType.JUDGE])
    ))
    assert entries == []


@pytest.mark.asyncio
async def test_unscored_participants_are_not_candidates(db, cache, seed, submit):
    competition, rubric, _, participants = await scored_field(seed, submit, [5.0])
    await seed.participant(competition, "Never scored")

    entries = await compile_report(db, cache, competition.id, ReportQuery(rubric_id=rubric.id))
    assert [e["participant_id"] for e in entries] == [participants[0].id]


# =============================================================================
# Configuration errors
# =============================================================================

@pytest.mark.asyncio
async def test_unknown_sort_field(db, cache, seed, submit):
    competition, rubric, _, _ = await scored_field(seed, submit, [5.0])

    with pytest.raises(UnknownSortFieldError) as exc:
        await compile_report(db, cache, competition.id, ReportQuery(
            rubric_id=rubric.id, sort=[SortSpec(field="popularity")]
        ))
    assert exc.value.details == {"field": "popularity"}


@pytest.mark.asyncio
async def test_criterion_field_from_other_rubric(db, cache, seed, submit):
    competition, rubric, _, _ = await scored_field(seed, submit, [5.0])
    foreign = await seed.criterion(await seed.rubric(competition))

    with pytest.raises(UnknownSortFieldError):
        await compile_report(db, cache, competition.id, ReportQuery(
            rubric_id=rubric.id, sort=[SortSpec(field=f"criterion.{foreign.id}")]
        ))


@pytest.mark.asyncio
async def test_unknown_display_field(db, cache, seed, submit):
    competition, rubric, _, _ = await scored_field(seed, submit, [5.0])

    with pytest.raises(InvalidValueError):
        await compile_report(db, cache, competition.id, ReportQuery(
            rubric_id=rubric.id, display_fields=["shoeSize"]
        ))


# =============================================================================
# Saved definitions
# =============================================================================

@pytest.mark.asyncio
async def test_saved_report_round_trip(db, cache, seed, submit):
    competition, rubric, _, participants = await scored_field(seed, submit, [5.0, 9.0, 7.0])

    report = await create_report(db, competition.id, ReportCreate(
        name="Leaderboard",
        rubric_id=rubric.id,
        filters=ReportFilters(voter_types=[VoterType.PUBLIC]),
        sort=[
            SortSpec(field="weightedTotal", direction=SortDirection.DESC),
            SortSpec(field="displayName", direction=SortDirection.ASC),
        ],
        limit=2,
    ))

    entries = await compile_saved_report(db, cache, report.id, competition.id)
    assert [e["participant_id"] for e in entries] == [participants[1].id, participants[2].id]


@pytest.mark.asyncio
async def test_saved_report_rejects_unknown_judges(db, seed):
    competition = await seed.competition()
    rubric = await seed.rubric(competition)

    with pytest.raises(InvalidValueError):
        await create_report(db, competition.id, ReportCreate(
            name="Judges",
            rubric_id=rubric.id,
            filters=ReportFilters(judge_ids=[4242]),
        ))
