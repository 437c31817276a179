"""
Automation Engine

Per-rule state machine: Idle -> Evaluating -> (Fired | Idle)

- time-based rules (scheduled_at, interval) are evaluated on scheduler ticks
- event-based rules (event, score_threshold) are evaluated when an event for
  their competition arrives; score.updated events come from ledger writes
- a rule's evaluation is serialized against itself (per-rule lock) and runs
  in its own DB session; rules are evaluated concurrently and a failing rule
  never affects the others
- disabled rules are skipped at evaluation time, re-read from the database
- actions run as SYSTEM_ACTOR through the same functions admins use, and are
  idempotent; execution is at-least-once (a failed action is retried on the
  next qualifying evaluation; a failed threshold firing keeps the previous
  total, so the next write above the threshold crosses again)
- integration timeouts are retried with exponential backoff; exhaustion is a
  RuleActionFailure recorded in the audit log, never raised to the caller
- events ingested by a rule are dispatched after its lock is released and
  never re-trigger the rule that produced them
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional, Set, Tuple

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from juryboard.core.keyed_locks import KeyedLocks
from juryboard.errors import InvalidValueError, NotFoundError
from juryboard.orm.automation import AutomationAuditLog, AutomationRule, AutomationRuleState
from juryboard.orm.competition import Competition
from juryboard.orm.report import ReportDefinition
from juryboard.schemas.automation import (
    TIME_BASED_TRIGGERS, CloseVotingAction, EventTrigger, IngestIntegrationAction,
    IntervalTrigger, OpenVotingAction, PublishReportAction, PublishResultsAction,
    RuleCreate, RuleUpdate, ScheduledAtTrigger, ScoreThresholdTrigger,
    parse_action, parse_trigger
)
from juryboard.services.aggregation_engine import AggregateCache, load_aggregate
from juryboard.services.competition_control import set_results_published, set_voting_state
from juryboard.services.integration_client import IntegrationError, IntegrationTimeout, fetch_events
from juryboard.services.permission_resolver import (
    SYSTEM_ACTOR, Actor, PermissionName, require_permission
)
from juryboard.services.report_compiler import compile_saved_report

logger = logging.getLogger(__name__)

SCORE_UPDATED = "score.updated"
EVENT_TRIGGERS = {"event", "score_threshold"}


class RuleState(str, Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    FIRED = "fired"


class EvaluationOutcome(str, Enum):
    SKIPPED_DISABLED = "skipped_disabled"
    NOT_TRIGGERED = "not_triggered"
    FIRED = "fired"
    FAILED = "failed"


class RuleActionFailure(Exception):
    """An action could not be completed; recorded, never propagated."""

    def __init__(self, rule_id: int, message: str):
        super().__init__(message)
        self.rule_id = rule_id
        self.message = message


@dataclass(frozen=True)
class CompetitionEvent:
    competition_id: int
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    # "rule:<id>" when produced by a rule, so it can skip its producer
    source: Optional[str] = None


class _RuleRef(NamedTuple):
    id: int
    name: str
    competition_id: int
    action_type: str


def validate_rule_config(rule: AutomationRule):
    """Parse both configs and check each discriminator matches its declared column."""
    trigger = parse_trigger(rule.trigger_config or {})
    action = parse_action(rule.action_config or {})
    if trigger.type != rule.trigger_type:
        raise InvalidValueError(
            f"Trigger config type '{trigger.type}' does not match trigger_type '{rule.trigger_type}'"
        )
    if action.type != rule.action_type:
        raise InvalidValueError(
            f"Action config type '{action.type}' does not match action_type '{rule.action_type}'"
        )
    return trigger, action


def event_matches(trigger: EventTrigger, event: CompetitionEvent) -> bool:
    if event.event_type != trigger.event_type:
        return False
    return all(event.payload.get(key) == value for key, value in trigger.match.items())


def time_trigger_due(
    trigger,
    rule: AutomationRule,
    state: AutomationRuleState,
    now: datetime
) -> bool:
    if isinstance(trigger, ScheduledAtTrigger):
        # One-shot: due once run_at has passed, until a firing succeeds
        return state.last_fired_at is None and now >= trigger.run_at
    if isinstance(trigger, IntervalTrigger):
        anchor = state.last_fired_at or rule.created_at
        return anchor is None or now - anchor >= timedelta(seconds=trigger.every_seconds)
    return False


class AutomationEngine:

    def __init__(
        self,
        session_factory: Callable[[], Any],
        aggregate_cache: Optional[AggregateCache] = None,
        gateway=None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self._session_factory = session_factory
        self._cache = aggregate_cache
        self._gateway = gateway
        self._http_transport = http_transport
        self._sleep = sleep

        self._rule_locks = KeyedLocks()
        self._states: Dict[int, RuleState] = {}
        # Last settled weighted total per rule, keyed by (participant, rubric)
        self._observed_totals: Dict[int, Dict[Tuple[int, int], float]] = {}
        # Observation made during the rule's current evaluation, kept only if it does not fail
        self._pending_observations: Dict[int, Tuple[Tuple[int, int], Optional[float]]] = {}
        self._background: Set[asyncio.Task] = set()

    def state_of(self, rule_id: int) -> RuleState:
        return self._states.get(rule_id, RuleState.IDLE)

    def observed_total(self, rule_id: int, participant_id: int, rubric_id: int) -> Optional[float]:
        return self._observed_totals.get(rule_id, {}).get((participant_id, rubric_id))

    def forget_rule(self, rule_id: int) -> None:
        """Drop threshold observations of a disabled or removed rule."""
        self._observed_totals.pop(rule_id, None)

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def run_tick(self, now: Optional[datetime] = None) -> Dict[int, EvaluationOutcome]:
        """Evaluate every time-based rule once."""
        now = now or datetime.utcnow()
        rule_ids = await self._rule_ids(TIME_BASED_TRIGGERS)

        def due(rule, trigger, state):
            return time_trigger_due(trigger, rule, state, now)

        return await self._evaluate_many(rule_ids, due, now)

    async def handle_event(
        self,
        event: CompetitionEvent,
        now: Optional[datetime] = None
    ) -> Dict[int, EvaluationOutcome]:
        """Evaluate the competition's event-based rules against one event."""
        now = now or datetime.utcnow()
        rule_ids = [
            rule_id for rule_id in await self._rule_ids(EVENT_TRIGGERS, event.competition_id)
            if event.source != f"rule:{rule_id}"
        ]

        def matches(rule, trigger, state):
            if isinstance(trigger, EventTrigger):
                return event_matches(trigger, event)
            if isinstance(trigger, ScoreThresholdTrigger):
                return self._threshold_crossed(rule.id, trigger, event)
            return False

        return await self._evaluate_many(rule_ids, matches, now)

    def dispatch(self, event: CompetitionEvent) -> asyncio.Task:
        """Evaluate an event in the background."""
        task = asyncio.create_task(self.handle_event(event))
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background event evaluation failed: {task.exception()}")

    async def drain(self) -> None:
        """Wait for background evaluations, including ones they schedule."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def on_score_written(self, written) -> None:
        """Score ledger listener: turn an invalidation signal into a score.updated event."""
        if self._cache is not None:
            aggregate = await self._cache.get(written.participant_id, written.rubric_id)
        else:
            async with self._session_factory() as db:
                aggregate = await load_aggregate(db, written.participant_id, written.rubric_id)

        self.dispatch(CompetitionEvent(
            competition_id=written.competition_id,
            event_type=SCORE_UPDATED,
            payload={
                "participant_id": written.participant_id,
                "rubric_id": written.rubric_id,
                "criterion_id": written.criterion_id,
                "weighted_total": aggregate.weighted_total,
            },
            source="ledger",
        ))

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    async def _rule_ids(self, trigger_types: Set[str], competition_id: Optional[int] = None) -> List[int]:
        async with self._session_factory() as db:
            query = select(AutomationRule.id).where(AutomationRule.trigger_type.in_(trigger_types))
            if competition_id is not None:
                query = query.where(AutomationRule.competition_id == competition_id)
            result = await db.execute(query.order_by(AutomationRule.id))
            return list(result.scalars().all())

    async def _evaluate_many(self, rule_ids: List[int], should_fire, now: datetime) -> Dict[int, EvaluationOutcome]:
        results = await asyncio.gather(
            *(self.evaluate_rule(rule_id, should_fire, now) for rule_id in rule_ids),
            return_exceptions=True,
        )
        outcomes: Dict[int, EvaluationOutcome] = {}
        for rule_id, result in zip(rule_ids, results):
            if isinstance(result, BaseException):
                logger.error(f"Rule {rule_id} evaluation crashed: {type(result).__name__}: {result}")
                outcomes[rule_id] = EvaluationOutcome.FAILED
            else:
                outcomes[rule_id] = result
        return outcomes

    async def evaluate_rule(self, rule_id: int, should_fire, now: datetime) -> EvaluationOutcome:
        follow_up: List[CompetitionEvent] = []

        async with self._rule_locks.hold(rule_id):
            self._states[rule_id] = RuleState.EVALUATING
            outcome = EvaluationOutcome.FAILED
            try:
                async with self._session_factory() as db:
                    rule = await db.get(AutomationRule, rule_id)
                    if rule is None or not rule.enabled:
                        logger.debug(f"Rule {rule_id} disabled or removed; skipped")
                        self.forget_rule(rule_id)
                        outcome = EvaluationOutcome.SKIPPED_DISABLED
                        return outcome

                    # Plain values survive the rollback that follows a failed action
                    ref = _RuleRef(rule.id, rule.name, rule.competition_id, rule.action_type)

                    state = await self._load_state(db, rule_id)
                    state.last_evaluated_at = now

                    try:
                        trigger, action = validate_rule_config(rule)
                    except (ValueError, InvalidValueError) as e:
                        await self._record_failure(db, ref, now, f"Invalid rule configuration: {e}", state)
                        return outcome

                    if not should_fire(rule, trigger, state):
                        await db.commit()
                        outcome = EvaluationOutcome.NOT_TRIGGERED
                        return outcome

                    try:
                        follow_up = await self._execute_action(db, rule, action)
                    except RuleActionFailure as e:
                        await db.rollback()
                        await self._record_failure(db, ref, now, e.message)
                        return outcome
                    except Exception as e:
                        logger.exception(f"Rule {rule_id} action raised")
                        await db.rollback()
                        await self._record_failure(db, ref, now, f"{type(e).__name__}: {e}")
                        return outcome

                    state.last_fired_at = now
                    state.fire_count = (state.fire_count or 0) + 1
                    state.last_status = EvaluationOutcome.FIRED.value
                    state.last_error = None
                    db.add(AutomationAuditLog(
                        rule_id=ref.id,
                        competition_id=ref.competition_id,
                        status=EvaluationOutcome.FIRED.value,
                        message=f"{ref.action_type} executed",
                        created_at=now,
                    ))
                    await db.commit()
                    outcome = EvaluationOutcome.FIRED
                    logger.info(f"Rule {rule_id} ({ref.name}) fired: {ref.action_type}")
            finally:
                self._settle_observation(rule_id, outcome)
                self._states[rule_id] = RuleState.FIRED if outcome == EvaluationOutcome.FIRED else RuleState.IDLE

        # Lock released; ingested events may now reach other rules
        for event in follow_up:
            await self.handle_event(event, now)
        return outcome

    def _threshold_crossed(self, rule_id: int, trigger: ScoreThresholdTrigger, event: CompetitionEvent) -> bool:
        if event.event_type != SCORE_UPDATED:
            return False
        rubric_id = event.payload.get("rubric_id")
        if trigger.rubric_id is not None and rubric_id != trigger.rubric_id:
            return False

        key = (event.payload.get("participant_id"), rubric_id)
        previous = self._observed_totals.get(rule_id, {}).get(key)
        current = event.payload.get("weighted_total")
        self._pending_observations[rule_id] = (key, current)

        if current is None or current < trigger.threshold:
            return False
        return previous is None or previous < trigger.threshold

    def _settle_observation(self, rule_id: int, outcome: EvaluationOutcome) -> None:
        # A failed firing leaves the previous total, so the next write above
        # the threshold is still a crossing
        pending = self._pending_observations.pop(rule_id, None)
        if pending is None or outcome == EvaluationOutcome.FAILED:
            return
        key, current = pending
        observed = self._observed_totals.setdefault(rule_id, {})
        if current is None:
            observed.pop(key, None)
        else:
            observed[key] = current

    async def _load_state(self, db: AsyncSession, rule_id: int) -> AutomationRuleState:
        state = await db.get(AutomationRuleState, rule_id)
        if state is None:
            state = AutomationRuleState(rule_id=rule_id, fire_count=0)
            db.add(state)
        return state

    async def _record_failure(
        self,
        db: AsyncSession,
        ref: _RuleRef,
        now: datetime,
        message: str,
        state: Optional[AutomationRuleState] = None
    ) -> None:
        logger.warning(f"Rule {ref.id} ({ref.name}) failed: {message}")
        if state is None:
            # After a rollback the pending state is gone; reload it
            state = await self._load_state(db, ref.id)
        state.last_evaluated_at = now
        state.last_status = EvaluationOutcome.FAILED.value
        state.last_error = message
        db.add(AutomationAuditLog(
            rule_id=ref.id,
            competition_id=ref.competition_id,
            status=EvaluationOutcome.FAILED.value,
            message=message,
            created_at=now,
        ))
        await db.commit()

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    async def _execute_action(self, db: AsyncSession, rule: AutomationRule, action) -> List[CompetitionEvent]:
        competition_id = rule.competition_id

        if isinstance(action, OpenVotingAction):
            await set_voting_state(db, SYSTEM_ACTOR, competition_id, action.audience, True)
        elif isinstance(action, CloseVotingAction):
            await set_voting_state(db, SYSTEM_ACTOR, competition_id, action.audience, False)
        elif isinstance(action, PublishResultsAction):
            await set_results_published(db, SYSTEM_ACTOR, competition_id, True)
        elif isinstance(action, PublishReportAction):
            if self._gateway is None or self._cache is None:
                raise RuleActionFailure(rule.id, "Report publishing is not configured")
            entries = await compile_saved_report(db, self._cache, action.report_id, competition_id)
            await self._gateway.publish(competition_id, action.report_id, entries)
        elif isinstance(action, IngestIntegrationAction):
            return await self._ingest(rule, action)
        return []

    async def _ingest(self, rule: AutomationRule, action: IngestIntegrationAction) -> List[CompetitionEvent]:
        for attempt in range(1, action.max_attempts + 1):
            try:
                events = await fetch_events(action.url, action.timeout_seconds, transport=self._http_transport)
                break
            except IntegrationTimeout as e:
                if attempt == action.max_attempts:
                    raise RuleActionFailure(
                        rule.id, f"Integration timed out after {attempt} attempts: {e}"
                    ) from e
                delay = action.backoff_seconds * 2 ** (attempt - 1)
                logger.warning(f"Rule {rule.id} integration attempt {attempt} timed out; retrying in {delay}s")
                await self._sleep(delay)
            except IntegrationError as e:
                raise RuleActionFailure(rule.id, str(e)) from e

        return [
            CompetitionEvent(
                competition_id=rule.competition_id,
                event_type=event.event_type,
                payload=dict(event.payload),
                source=f"rule:{rule.id}",
            )
            for event in events
        ]


# =============================================================================
# Rule administration
# =============================================================================

async def create_rule(
    db: AsyncSession,
    actor: Actor,
    competition_id: int,
    payload: RuleCreate
) -> AutomationRule:
    if await db.get(Competition, competition_id) is None:
        raise NotFoundError("Competition", competition_id)
    await require_permission(db, actor, competition_id, PermissionName.CAN_MANAGE_AUTOMATION)

    if isinstance(payload.action, PublishReportAction):
        report = await db.get(ReportDefinition, payload.action.report_id)
        if report is None or report.competition_id != competition_id:
            raise InvalidValueError(
                "publish_report must reference a report of this competition",
                details={"report_id": payload.action.report_id},
            )

    rule = AutomationRule(
        competition_id=competition_id,
        name=payload.name,
        trigger_type=payload.trigger.type,
        trigger_config=payload.trigger.model_dump(mode="json"),
        action_type=payload.action.type,
        action_config=payload.action.model_dump(mode="json"),
        enabled=payload.enabled,
        created_by=actor.admin_id,
    )
    db.add(rule)
    await db.commit()
    logger.info(f"Automation rule {rule.id} created on competition {competition_id} by {actor.label}")
    return rule


async def update_rule(
    db: AsyncSession,
    actor: Actor,
    competition_id: int,
    rule_id: int,
    payload: RuleUpdate
) -> AutomationRule:
    rule = await db.get(AutomationRule, rule_id)
    if rule is None or rule.competition_id != competition_id:
        raise NotFoundError("Automation rule", rule_id)
    await require_permission(db, actor, competition_id, PermissionName.CAN_MANAGE_AUTOMATION)

    for name, value in payload.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(rule, name, value)
    await db.commit()

    engine = get_automation_engine()
    if engine is not None and not rule.enabled:
        engine.forget_rule(rule_id)
    logger.info(f"Automation rule {rule_id} updated by {actor.label}")
    return rule


# Global engine instance (initialized on startup)
_automation_engine: Optional[AutomationEngine] = None


def get_automation_engine() -> Optional[AutomationEngine]:
    return _automation_engine


def set_automation_engine(engine: Optional[AutomationEngine]) -> None:
    global _automation_engine
    _automation_engine = engine
