"""
Score Ledger

Accepts, validates and stores score facts.

Guarantees:
- at most one fact per (participant, criterion, voter); a re-vote is an
  in-place update (INSERT ... ON CONFLICT DO UPDATE), last write wins
- same-triple submissions are additionally serialized in-process; different
  triples never share a lock
- qualitative labels are resolved to numbers at write time, so later mapping
  edits never change stored facts
- every accepted write invalidates the (participant, rubric) aggregate before
  listeners are notified
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from juryboard.core.keyed_locks import KeyedLocks
from juryboard.errors import (
    DeniedError, ErrorCode, InvalidValueError, NotFoundError,
    OutOfRangeError, UnknownCriterionError
)
from juryboard.orm.competition import Competition, CompetitionStatus
from juryboard.orm.participant import Judge, Participant, Voter, VoterType
from juryboard.orm.scoring import Criterion, Rubric, ScoreFact
from juryboard.schemas.scoring import ScoreSubmission
from juryboard.services.aggregation_engine import AggregateCache
from juryboard.services.permission_resolver import Actor, PermissionName, require_permission

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VoterIdentity:
    """Resolved caller identity on the voting path."""
    voter_type: VoterType
    judge_id: Optional[int] = None
    public_token: Optional[str] = None

    @classmethod
    def for_judge(cls, judge_id: int) -> "VoterIdentity":
        return cls(voter_type=VoterType.JUDGE, judge_id=judge_id)

    @classmethod
    def for_public(cls, token: str) -> "VoterIdentity":
        return cls(voter_type=VoterType.PUBLIC, public_token=token)

    @property
    def identity_key(self) -> str:
        if self.voter_type == VoterType.JUDGE:
            return f"judge:{self.judge_id}"
        return f"public:{self.public_token}"


@dataclass(frozen=True)
class ScoreWritten:
    """Invalidation signal emitted after a committed ledger write."""
    competition_id: int
    participant_id: int
    rubric_id: int
    criterion_id: int
    fact_id: int
    created: bool
    retired: bool = False


ScoreListener = Callable[[ScoreWritten], Awaitable[None]]


def check_voting_window(competition: Competition, voter_type: VoterType, now: datetime) -> None:
    """Voting-window policy for judge and public voters. Raises DeniedError."""
    if competition.status == CompetitionStatus.ARCHIVED:
        raise DeniedError("Competition is archived", code=ErrorCode.VOTING_CLOSED)

    audience_open = competition.judging_open if voter_type == VoterType.JUDGE else competition.public_voting_open
    if not audience_open:
        raise DeniedError(
            f"Voting is closed for {voter_type.value.lower()} voters",
            code=ErrorCode.VOTING_CLOSED,
        )

    if competition.voting_opens_at is not None and now < competition.voting_opens_at:
        raise DeniedError(
            "Voting has not opened yet",
            code=ErrorCode.VOTING_CLOSED,
            details={"opens_at": competition.voting_opens_at.isoformat()},
        )
    if competition.voting_closes_at is not None and now >= competition.voting_closes_at:
        raise DeniedError(
            "Voting window has ended",
            code=ErrorCode.VOTING_CLOSED,
            details={"closed_at": competition.voting_closes_at.isoformat()},
        )


def resolve_score_value(
    criterion: Criterion,
    value: Optional[float],
    qualitative_label: Optional[str]
) -> Tuple[float, Optional[str]]:
    """Validate input and return the numeric value to store."""
    if (value is None) == (qualitative_label is None):
        raise InvalidValueError("Provide exactly one of value or qualitative_label")

    if qualitative_label is not None:
        mapped = criterion.resolve_label(qualitative_label)
        if mapped is None:
            raise OutOfRangeError(
                f"Label '{qualitative_label}' is not defined for criterion {criterion.id}",
                details={"allowed_labels": list(criterion.label_values())},
            )
        value = mapped
    elif not math.isfinite(value):
        raise InvalidValueError("Score value must be a finite number")

    if value < 0 or value > criterion.max_score:
        raise OutOfRangeError(
            f"Score {value} is outside [0, {criterion.max_score}]",
            details={"value": value, "min": 0, "max": criterion.max_score},
        )
    return float(value), qualitative_label


def _insert_for(db: AsyncSession):
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


class ScoreLedger:

    def __init__(self, aggregate_cache: Optional[AggregateCache] = None):
        self._cache = aggregate_cache
        self._triple_locks = KeyedLocks()
        self._listeners: List[ScoreListener] = []

    def add_listener(self, listener: ScoreListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ScoreListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def submit(
        self,
        db: AsyncSession,
        submission: ScoreSubmission,
        voter: VoterIdentity,
        acting_admin: Optional[Actor] = None,
        now: Optional[datetime] = None
    ) -> Tuple[ScoreFact, bool]:
        """
        Store one voter's score. Returns (fact, created).

        acting_admin switches to the admin correction path: the permission
        resolver decides instead of the voting window.
        """
        now = now or datetime.utcnow()

        participant = await db.get(Participant, submission.participant_id)
        if participant is None:
            raise NotFoundError("Participant", submission.participant_id)

        result = await db.execute(
            select(Criterion, Rubric)
            .join(Rubric, Rubric.id == Criterion.rubric_id)
            .where(Criterion.id == submission.criterion_id)
        )
        row = result.first()
        if row is None or row.Rubric.competition_id != participant.competition_id:
            raise UnknownCriterionError(submission.criterion_id)
        criterion, rubric = row.Criterion, row.Rubric

        competition = await db.get(Competition, participant.competition_id)

        if acting_admin is not None:
            await require_permission(db, acting_admin, competition.id, PermissionName.CAN_MANAGE_SCORES)
        else:
            check_voting_window(competition, voter.voter_type, now)

        if voter.voter_type == VoterType.JUDGE:
            judge = await db.get(Judge, voter.judge_id) if voter.judge_id else None
            if judge is None or judge.competition_id != competition.id:
                raise DeniedError("Judge is not registered for this competition")
        elif not voter.public_token:
            raise DeniedError("Public voters need an identifying token")

        value, label = resolve_score_value(criterion, submission.value, submission.qualitative_label)

        # Voter rows are committed on their own so no write transaction is
        # open while waiting for the triple lock below.
        voter_id = await self._resolve_voter(db, competition.id, voter)
        await db.commit()

        async with self._triple_locks.hold((participant.id, criterion.id, voter_id)):
            insert = _insert_for(db)
            stmt = insert(ScoreFact).values(
                participant_id=participant.id,
                criterion_id=criterion.id,
                voter_id=voter_id,
                value=value,
                qualitative_label=label,
                submitted_at=now,
                revision=1,
                is_retired=False,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["participant_id", "criterion_id", "voter_id"],
                set_={
                    "value": stmt.excluded.value,
                    "qualitative_label": stmt.excluded.qualitative_label,
                    "submitted_at": stmt.excluded.submitted_at,
                    "updated_at": stmt.excluded.updated_at,
                    "revision": ScoreFact.revision + 1,
                    "is_retired": False,
                },
            )
            await db.execute(stmt)

            result = await db.execute(
                select(ScoreFact)
                .where(
                    ScoreFact.participant_id == participant.id,
                    ScoreFact.criterion_id == criterion.id,
                    ScoreFact.voter_id == voter_id,
                )
                .execution_options(populate_existing=True)
            )
            fact = result.scalar_one()
            await db.commit()

        created = fact.revision == 1
        logger.info(
            f"Score {'recorded' if created else 'updated'}: participant={participant.id} "
            f"criterion={criterion.id} voter={voter_id} value={value} revision={fact.revision}"
        )

        await self._after_write(ScoreWritten(
            competition_id=competition.id,
            participant_id=participant.id,
            rubric_id=rubric.id,
            criterion_id=criterion.id,
            fact_id=fact.id,
            created=created,
        ))
        return fact, created

    async def retire(self, db: AsyncSession, actor: Actor, fact_id: int) -> ScoreFact:
        """Logically retire a fact. Idempotent."""
        result = await db.execute(
            select(ScoreFact, Criterion.rubric_id, Participant.competition_id)
            .join(Criterion, Criterion.id == ScoreFact.criterion_id)
            .join(Participant, Participant.id == ScoreFact.participant_id)
            .where(ScoreFact.id == fact_id)
        )
        row = result.first()
        if row is None:
            raise NotFoundError("Score", fact_id)
        fact, rubric_id, competition_id = row.ScoreFact, row.rubric_id, row.competition_id

        await require_permission(db, actor, competition_id, PermissionName.CAN_MANAGE_SCORES)
        if fact.is_retired:
            return fact

        fact.is_retired = True
        await db.commit()
        logger.info(f"Score {fact_id} retired by {actor.label}")

        await self._after_write(ScoreWritten(
            competition_id=competition_id,
            participant_id=fact.participant_id,
            rubric_id=rubric_id,
            criterion_id=fact.criterion_id,
            fact_id=fact.id,
            created=False,
            retired=True,
        ))
        return fact

    async def _resolve_voter(self, db: AsyncSession, competition_id: int, voter: VoterIdentity) -> int:
        """Get-or-create the voter row for this identity."""
        now = datetime.utcnow()
        insert = _insert_for(db)
        stmt = insert(Voter).values(
            competition_id=competition_id,
            voter_type=voter.voter_type,
            judge_id=voter.judge_id,
            identity_key=voter.identity_key,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=["competition_id", "identity_key"])
        await db.execute(stmt)

        result = await db.execute(
            select(Voter.id).where(
                Voter.competition_id == competition_id,
                Voter.identity_key == voter.identity_key,
            )
        )
        return result.scalar_one()

    async def _after_write(self, event: ScoreWritten) -> None:
        if self._cache is not None:
            self._cache.invalidate(event.participant_id, event.rubric_id)

        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception:
                # The write is committed; downstream refresh failures stay downstream
                logger.exception(f"Score listener {getattr(listener, '__name__', listener)} failed")


# Global ledger instance (initialized on startup)
_score_ledger: Optional[ScoreLedger] = None


def get_score_ledger() -> ScoreLedger:
    global _score_ledger
    if _score_ledger is None:
        from juryboard.services.aggregation_engine import get_aggregate_cache
        _score_ledger = ScoreLedger(get_aggregate_cache())
    return _score_ledger


def set_score_ledger(ledger: Optional[ScoreLedger]) -> None:
    global _score_ledger
    _score_ledger = ledger
