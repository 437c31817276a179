"""
Aggregation Engine

Turns raw score facts into per-criterion values and a weighted total.

Two levels, always in this order:
1. per criterion, combine the facts of distinct voters (rubric policy, mean by default)
2. across criteria, weighted mean over the criteria that have at least one fact

    weighted_total = sum(value_i * weight_i) / sum(weight_i)

Unscored criteria are excluded from both sums, never counted as zero.

Results are cached per (participant_id, rubric_id). Population runs as an
independent task with its own session; callers await it through
asyncio.shield so an abandoned request never leaves a half-built entry.
"""
import asyncio
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from juryboard.errors import NotFoundError
from juryboard.orm.scoring import CombinationPolicy, Criterion, Rubric, ScoreFact

logger = logging.getLogger(__name__)

AggregateKey = Tuple[int, int]


@dataclass(frozen=True)
class CriterionWeight:
    criterion_id: int
    weight: float


@dataclass(frozen=True)
class FactValue:
    criterion_id: int
    voter_id: int
    value: float
    submitted_at: Optional[datetime] = None


@dataclass(frozen=True)
class AggregateResult:
    participant_id: int
    rubric_id: int
    per_criterion: Dict[int, float] = field(default_factory=dict)
    weighted_total: Optional[float] = None
    vote_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participant_id": self.participant_id,
            "rubric_id": self.rubric_id,
            "per_criterion": dict(self.per_criterion),
            "weighted_total": self.weighted_total,
            "vote_count": self.vote_count,
        }


def combine_votes(facts: Sequence[FactValue], policy: CombinationPolicy = CombinationPolicy.MEAN) -> float:
    """Level 1: one value per (participant, criterion) from the distinct voters' facts."""
    if not facts:
        raise ValueError("combine_votes requires at least one fact")

    if policy == CombinationPolicy.SUM:
        return math.fsum(f.value for f in facts)
    if policy == CombinationPolicy.LATEST:
        latest = max(facts, key=lambda f: (f.submitted_at or datetime.min, f.voter_id))
        return latest.value
    return math.fsum(f.value for f in facts) / len(facts)


def weighted_total(per_criterion: Dict[int, float], weights: Dict[int, float]) -> Optional[float]:
    """Level 2: weighted mean over scored criteria only. None when nothing is scored."""
    if not per_criterion:
        return None
    weight_sum = math.fsum(weights[cid] for cid in per_criterion)
    if weight_sum <= 0:
        return None
    return math.fsum(value * weights[cid] for cid, value in per_criterion.items()) / weight_sum


def compute_aggregate(
    participant_id: int,
    rubric_id: int,
    criteria: Sequence[CriterionWeight],
    facts: Iterable[FactValue],
    policy: CombinationPolicy = CombinationPolicy.MEAN
) -> AggregateResult:
    weights = {c.criterion_id: c.weight for c in criteria}

    grouped: Dict[int, List[FactValue]] = defaultdict(list)
    vote_count = 0
    for fact in facts:
        # Facts against criteria outside the rubric are ignored
        if fact.criterion_id in weights:
            grouped[fact.criterion_id].append(fact)
            vote_count += 1

    per_criterion = {
        c.criterion_id: combine_votes(grouped[c.criterion_id], policy)
        for c in criteria
        if grouped.get(c.criterion_id)
    }

    return AggregateResult(
        participant_id=participant_id,
        rubric_id=rubric_id,
        per_criterion=per_criterion,
        weighted_total=weighted_total(per_criterion, weights),
        vote_count=vote_count,
    )


async def load_aggregate(db: AsyncSession, participant_id: int, rubric_id: int) -> AggregateResult:
    """Compute an aggregate straight from the ledger, bypassing any cache."""
    rubric = await db.get(Rubric, rubric_id)
    if rubric is None:
        raise NotFoundError("Rubric", rubric_id)

    result = await db.execute(
        select(Criterion.id, Criterion.weight)
        .where(Criterion.rubric_id == rubric_id)
        .order_by(Criterion.position, Criterion.id)
    )
    criteria = [CriterionWeight(criterion_id=row.id, weight=row.weight) for row in result]

    result = await db.execute(
        select(ScoreFact.criterion_id, ScoreFact.voter_id, ScoreFact.value, ScoreFact.submitted_at)
        .join(Criterion, Criterion.id == ScoreFact.criterion_id)
        .where(
            ScoreFact.participant_id == participant_id,
            Criterion.rubric_id == rubric_id,
            ScoreFact.is_retired.is_(False),
        )
    )
    facts = [
        FactValue(
            criterion_id=row.criterion_id,
            voter_id=row.voter_id,
            value=row.value,
            submitted_at=row.submitted_at,
        )
        for row in result
    ]

    return compute_aggregate(participant_id, rubric_id, criteria, facts, rubric.combination_policy)


class AggregateCache:
    """
    Read-mostly cache of AggregateResult keyed by (participant_id, rubric_id).

    - a miss starts exactly one population task per key; concurrent readers share it
    - invalidation bumps the key's generation while a population is running,
      so a result loaded before the invalidation is returned to its waiters
      but never stored; generations are dropped once no population runs
    - no global lock: keys never wait on each other
    """

    def __init__(self, session_factory: Callable[[], Any]):
        self._session_factory = session_factory
        self._entries: Dict[AggregateKey, AggregateResult] = {}
        self._inflight: Dict[AggregateKey, asyncio.Task] = {}
        self._generations: Dict[AggregateKey, int] = {}
        # Populations still running per key, including ones detached by invalidate
        self._running: Dict[AggregateKey, int] = {}
        self._rubric_generations: Dict[int, int] = {}

    def _generation(self, key: AggregateKey) -> Tuple[int, int]:
        return self._generations.get(key, 0), self._rubric_generations.get(key[1], 0)

    async def get(self, participant_id: int, rubric_id: int) -> AggregateResult:
        key = (participant_id, rubric_id)
        cached = self._entries.get(key)
        if cached is not None:
            return cached

        task = self._inflight.get(key)
        if task is None:
            self._running[key] = self._running.get(key, 0) + 1
            task = asyncio.ensure_future(self._populate(key, self._generation(key)))
            self._inflight[key] = task
            task.add_done_callback(lambda done, key=key: self._forget(key, done))

        return await asyncio.shield(task)

    async def get_many(self, participant_ids: Sequence[int], rubric_id: int) -> Dict[int, AggregateResult]:
        results = await asyncio.gather(*(self.get(pid, rubric_id) for pid in participant_ids))
        return {r.participant_id: r for r in results}

    async def _populate(self, key: AggregateKey, generation: Tuple[int, int]) -> AggregateResult:
        async with self._session_factory() as db:
            result = await load_aggregate(db, *key)
        if self._generation(key) == generation:
            self._entries[key] = result
        else:
            logger.debug(f"Aggregate {key} invalidated during computation; not cached")
        return result

    def _forget(self, key: AggregateKey, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        remaining = self._running.get(key, 1) - 1
        if remaining > 0:
            self._running[key] = remaining
        else:
            self._running.pop(key, None)
            self._generations.pop(key, None)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Aggregate population for {key} failed: {task.exception()}")

    def invalidate(self, participant_id: int, rubric_id: int) -> None:
        key = (participant_id, rubric_id)
        if self._running.get(key):
            self._generations[key] = self._generations.get(key, 0) + 1
        self._entries.pop(key, None)
        self._inflight.pop(key, None)

    def invalidate_rubric(self, rubric_id: int) -> None:
        """Weight or policy changes touch every participant under the rubric."""
        self._rubric_generations[rubric_id] = self._rubric_generations.get(rubric_id, 0) + 1
        for key in [k for k in self._entries if k[1] == rubric_id]:
            del self._entries[key]
        for key in [k for k in self._inflight if k[1] == rubric_id]:
            del self._inflight[key]

    def peek(self, participant_id: int, rubric_id: int) -> Optional[AggregateResult]:
        return self._entries.get((participant_id, rubric_id))

    def clear(self) -> None:
        for key in list(self._entries):
            self.invalidate(*key)
        self._inflight.clear()


# Global cache instance (initialized on startup)
_aggregate_cache: Optional[AggregateCache] = None


def get_aggregate_cache() -> AggregateCache:
    global _aggregate_cache
    if _aggregate_cache is None:
        from juryboard.database import AsyncSessionLocal
        _aggregate_cache = AggregateCache(AsyncSessionLocal)
    return _aggregate_cache


def set_aggregate_cache(cache: Optional[AggregateCache]) -> None:
    global _aggregate_cache
    _aggregate_cache = cache
