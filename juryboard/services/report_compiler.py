"""
Report Compiler

Applies a declarative filter/sort/limit definition to produce a ranked list.
Fixed order:

1. candidates: participants in every filtered category (descendants included)
   who have at least one non-retired fact under the rubric from a qualifying
   voter (voter_types, judge_ids)
2. resolve each sort field to a stored attribute or an aggregate
3. stable multi-key sort; base order is creation order (created_at, id), so
   rows tied on every key keep creation order
4. truncate to limit; rank = 1-based position

None sorts last in both directions. Unknown sort fields fail before any
candidate work. Compilation never writes.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from juryboard.errors import InvalidValueError, NotFoundError, UnknownSortFieldError
from juryboard.orm.participant import Judge, Participant, Voter
from juryboard.orm.report import ReportDefinition, ReportSortOption, SortDirection, SortOption
from juryboard.orm.scoring import Criterion, Rubric, ScoreFact
from juryboard.schemas.reports import ReportFilters, ReportQuery, SortSpec
from juryboard.services.aggregation_engine import AggregateCache, AggregateResult
from juryboard.services.category_tree import participants_in_all

logger = logging.getLogger(__name__)

STORED_FIELDS = {
    "displayName": "display_name",
    "createdAt": "created_at",
    "participantId": "participant_id",
}
AGGREGATE_FIELDS = {
    "weightedTotal": "weighted_total",
    "totalWeightedScore": "weighted_total",
    "voteCount": "vote_count",
}
ATTRIBUTE_PREFIX = "attributes."
CRITERION_PREFIX = "criterion."


@dataclass
class Candidate:
    participant_id: int
    display_name: str
    created_at: datetime
    attributes: Dict[str, Any]
    aggregate: Optional[AggregateResult] = None


@dataclass(frozen=True)
class FieldRef:
    """A resolved field selector."""
    name: str
    kind: str          # stored | attribute | aggregate | criterion
    key: Any = None

    def value_of(self, candidate: Candidate) -> Any:
        if self.kind == "stored":
            return getattr(candidate, self.key)
        if self.kind == "attribute":
            return (candidate.attributes or {}).get(self.key)
        aggregate = candidate.aggregate
        if aggregate is None:
            return None
        if self.kind == "aggregate":
            return getattr(aggregate, self.key)
        return aggregate.per_criterion.get(self.key)


def resolve_field(name: str, criterion_ids: Set[int]) -> FieldRef:
    """Map a field selector to a FieldRef. Raises UnknownSortFieldError."""
    if name in STORED_FIELDS:
        return FieldRef(name, "stored", STORED_FIELDS[name])
    if name in AGGREGATE_FIELDS:
        return FieldRef(name, "aggregate", AGGREGATE_FIELDS[name])
    if name.startswith(ATTRIBUTE_PREFIX) and len(name) > len(ATTRIBUTE_PREFIX):
        return FieldRef(name, "attribute", name[len(ATTRIBUTE_PREFIX):])
    if name.startswith(CRITERION_PREFIX):
        raw = name[len(CRITERION_PREFIX):]
        if raw.isdigit() and int(raw) in criterion_ids:
            return FieldRef(name, "criterion", int(raw))
    raise UnknownSortFieldError(name)


def _comparable(value: Any) -> Any:
    """Order mixed attribute types consistently: numbers, then text, then the rest."""
    if isinstance(value, bool):
        return (0, int(value))
    if isinstance(value, (int, float)):
        return (0, value)
    if isinstance(value, str):
        return (1, value)
    if isinstance(value, datetime):
        return (2, value.isoformat())
    return (3, json.dumps(value, sort_keys=True, default=str))


def _sort_key(value: Any, descending: bool):
    # reverse=True flips group order too, so None's group is swapped for DESC
    if value is None:
        return (0,) if descending else (1,)
    return (1, _comparable(value)) if descending else (0, _comparable(value))


def rank_candidates(
    candidates: Sequence[Candidate],
    sort_keys: Sequence[tuple]
) -> List[Candidate]:
    """
    sort_keys: [(FieldRef, SortDirection), ...], primary first.

    Python's sort is stable, so sorting by the least significant key first
    and the primary key last yields the multi-key order.
    """
    ordered = sorted(candidates, key=lambda c: (c.created_at, c.participant_id))
    for ref, direction in reversed(list(sort_keys)):
        descending = direction == SortDirection.DESC
        ordered.sort(key=lambda c, ref=ref, d=descending: _sort_key(ref.value_of(c), d), reverse=descending)
    return ordered


async def _criterion_ids(db: AsyncSession, rubric_id: int) -> Set[int]:
    result = await db.execute(select(Criterion.id).where(Criterion.rubric_id == rubric_id))
    return set(result.scalars().all())


async def _voter_qualified_participants(
    db: AsyncSession,
    competition_id: int,
    rubric_id: int,
    filters: ReportFilters
) -> Set[int]:
    """Participants with at least one live fact under the rubric from a qualifying voter."""
    query = (
        select(ScoreFact.participant_id)
        .join(Criterion, Criterion.id == ScoreFact.criterion_id)
        .join(Voter, Voter.id == ScoreFact.voter_id)
        .where(
            Criterion.rubric_id == rubric_id,
            Voter.competition_id == competition_id,
            ScoreFact.is_retired.is_(False),
        )
        .distinct()
    )
    if filters.voter_types:
        query = query.where(Voter.voter_type.in_(filters.voter_types))
    if filters.judge_ids is not None:
        query = query.where(Voter.judge_id.in_(filters.judge_ids))

    result = await db.execute(query)
    return set(result.scalars().all())


async def compile_report(
    db: AsyncSession,
    cache: AggregateCache,
    competition_id: int,
    query: ReportQuery
) -> List[Dict[str, Any]]:
    """Compile an inline report definition into ranked entries."""
    rubric = await db.get(Rubric, query.rubric_id)
    if rubric is None or rubric.competition_id != competition_id:
        raise NotFoundError("Rubric", query.rubric_id)

    criterion_ids = await _criterion_ids(db, rubric.id)

    sort_keys = [(resolve_field(spec.field, criterion_ids), spec.direction) for spec in query.sort]
    display_refs = []
    for name in query.display_fields:
        try:
            display_refs.append(resolve_field(name, criterion_ids))
        except UnknownSortFieldError:
            raise InvalidValueError(f"Unknown display field '{name}'", details={"field": name})

    category_members = await participants_in_all(db, query.filters.category_ids)
    if category_members is not None and not category_members:
        return []

    qualified = await _voter_qualified_participants(db, competition_id, rubric.id, query.filters)
    if category_members is not None:
        qualified &= category_members
    if not qualified:
        return []

    result = await db.execute(
        select(Participant).where(
            Participant.competition_id == competition_id,
            Participant.id.in_(qualified),
        )
    )
    candidates = [
        Candidate(
            participant_id=p.id,
            display_name=p.display_name,
            created_at=p.created_at,
            attributes=dict(p.attributes or {}),
        )
        for p in result.scalars().all()
    ]

    aggregates = await cache.get_many([c.participant_id for c in candidates], rubric.id)
    for candidate in candidates:
        candidate.aggregate = aggregates.get(candidate.participant_id)

    ranked = rank_candidates(candidates, sort_keys)
    if query.limit is not None:
        ranked = ranked[:query.limit]

    entries = []
    for position, candidate in enumerate(ranked, start=1):
        aggregate = candidate.aggregate
        entries.append({
            "participant_id": candidate.participant_id,
            "display_name": candidate.display_name,
            "per_criterion_breakdown": dict(aggregate.per_criterion) if aggregate else {},
            "weighted_total": aggregate.weighted_total if aggregate else None,
            "rank": position,
            "display_fields": {ref.name: _jsonable(ref.value_of(candidate)) for ref in display_refs},
        })

    logger.debug(
        f"Compiled report for competition {competition_id} rubric {rubric.id}: "
        f"{len(candidates)} candidates, {len(entries)} entries"
    )
    return entries


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


async def load_report(db: AsyncSession, report_id: int) -> ReportDefinition:
    report = await db.get(ReportDefinition, report_id)
    if report is None:
        raise NotFoundError("Report", report_id)
    return report


async def query_for_report(db: AsyncSession, report: ReportDefinition) -> ReportQuery:
    """Rebuild the inline query from a stored definition and its ordered sort options."""
    result = await db.execute(
        select(SortOption.field, SortOption.direction)
        .join(ReportSortOption, ReportSortOption.sort_option_id == SortOption.id)
        .where(ReportSortOption.report_id == report.id)
        .order_by(ReportSortOption.position)
    )
    sort = [SortSpec(field=row.field, direction=row.direction) for row in result]
    return ReportQuery(
        rubric_id=report.rubric_id,
        filters=ReportFilters.model_validate(report.filters or {}),
        sort=sort,
        limit=report.result_limit,
        display_fields=list(report.display_fields or []),
    )


async def compile_saved_report(
    db: AsyncSession,
    cache: AggregateCache,
    report_id: int,
    competition_id: Optional[int] = None
) -> List[Dict[str, Any]]:
    report = await load_report(db, report_id)
    if competition_id is not None and report.competition_id != competition_id:
        raise NotFoundError("Report", report_id)
    query = await query_for_report(db, report)
    return await compile_report(db, cache, report.competition_id, query)


async def create_report(db: AsyncSession, competition_id: int, payload) -> ReportDefinition:
    """
    Persist a report definition with its ordered sort options.
    Sort and display fields are validated against the rubric first.
    Caller is responsible for the canManageReports check.
    """
    rubric = await db.get(Rubric, payload.rubric_id)
    if rubric is None or rubric.competition_id != competition_id:
        raise NotFoundError("Rubric", payload.rubric_id)

    criterion_ids = await _criterion_ids(db, rubric.id)
    for spec in payload.sort:
        resolve_field(spec.field, criterion_ids)
    for name in payload.display_fields:
        try:
            resolve_field(name, criterion_ids)
        except UnknownSortFieldError:
            raise InvalidValueError(f"Unknown display field '{name}'", details={"field": name})

    if payload.filters.judge_ids:
        result = await db.execute(
            select(Judge.id).where(Judge.id.in_(payload.filters.judge_ids), Judge.competition_id == competition_id)
        )
        missing = set(payload.filters.judge_ids) - set(result.scalars().all())
        if missing:
            raise InvalidValueError("Unknown judge ids in filter", details={"judge_ids": sorted(missing)})

    report = ReportDefinition(
        competition_id=competition_id,
        rubric_id=rubric.id,
        name=payload.name,
        filters=payload.filters.model_dump(mode="json"),
        display_fields=list(payload.display_fields),
        result_limit=payload.limit,
        is_public=payload.is_public,
        is_live=payload.is_live,
    )
    db.add(report)
    await db.flush()

    for position, spec in enumerate(payload.sort):
        option = SortOption(competition_id=competition_id, field=spec.field, direction=spec.direction)
        db.add(option)
        await db.flush()
        db.add(ReportSortOption(report_id=report.id, sort_option_id=option.id, position=position))

    await db.commit()
    logger.info(f"Report {report.id} created for competition {competition_id}")
    return report
