"""
Automation rule configuration variants.

Triggers and actions are tagged unions discriminated by `type`. Configs are
validated when a rule is written; the engine only ever reads validated
variants.
"""
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from juryboard.services.competition_control import VotingAudience


# ================================
# Triggers
# ================================

class ScheduledAtTrigger(BaseModel):
    type: Literal["scheduled_at"] = "scheduled_at"
    run_at: datetime

    @field_validator("run_at")
    @classmethod
    def naive_utc(cls, v: datetime) -> datetime:
        # Stored timestamps are naive UTC
        if v.tzinfo is not None:
            v = v.astimezone(timezone.utc).replace(tzinfo=None)
        return v


class IntervalTrigger(BaseModel):
    type: Literal["interval"] = "interval"
    every_seconds: int = Field(..., ge=1)


class EventTrigger(BaseModel):
    """Fires when an event of event_type arrives whose payload contains every `match` pair."""
    type: Literal["event"] = "event"
    event_type: str = Field(..., min_length=1, max_length=100)
    match: Dict[str, Any] = Field(default_factory=dict)


class ScoreThresholdTrigger(BaseModel):
    """Fires when a participant's weighted total crosses threshold upward."""
    type: Literal["score_threshold"] = "score_threshold"
    threshold: float
    rubric_id: Optional[int] = None


TriggerConfig = Annotated[
    Union[ScheduledAtTrigger, IntervalTrigger, EventTrigger, ScoreThresholdTrigger],
    Field(discriminator="type"),
]

TIME_BASED_TRIGGERS = {"scheduled_at", "interval"}


# ================================
# Actions
# ================================

class OpenVotingAction(BaseModel):
    type: Literal["open_voting"] = "open_voting"
    audience: VotingAudience = VotingAudience.ALL


class CloseVotingAction(BaseModel):
    type: Literal["close_voting"] = "close_voting"
    audience: VotingAudience = VotingAudience.ALL


class PublishResultsAction(BaseModel):
    type: Literal["publish_results"] = "publish_results"


class PublishReportAction(BaseModel):
    type: Literal["publish_report"] = "publish_report"
    report_id: int = Field(..., gt=0)


class IngestIntegrationAction(BaseModel):
    """Pull events from an external endpoint and dispatch them to the competition's rules."""
    type: Literal["ingest_integration"] = "ingest_integration"
    url: str = Field(..., min_length=1, max_length=2048)
    timeout_seconds: float = Field(10.0, gt=0, le=120)
    max_attempts: int = Field(3, ge=1, le=10)
    backoff_seconds: float = Field(1.0, ge=0)

    @field_validator("url")
    @classmethod
    def http_only(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("url must be http(s)")
        return v


ActionConfig = Annotated[
    Union[OpenVotingAction, CloseVotingAction, PublishResultsAction, PublishReportAction, IngestIntegrationAction],
    Field(discriminator="type"),
]

trigger_adapter = TypeAdapter(TriggerConfig)
action_adapter = TypeAdapter(ActionConfig)


def parse_trigger(config: Dict[str, Any]):
    return trigger_adapter.validate_python(config)


def parse_action(config: Dict[str, Any]):
    return action_adapter.validate_python(config)


# ================================
# Requests
# ================================

class RuleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    trigger: TriggerConfig
    action: ActionConfig
    enabled: bool = True


class RuleUpdate(BaseModel):
    enabled: Optional[bool] = None
    name: Optional[str] = Field(None, min_length=1, max_length=255)


class IncomingEvent(BaseModel):
    competition_id: int = Field(..., gt=0)
    event_type: str = Field(..., min_length=1, max_length=100)
    payload: Dict[str, Any] = Field(default_factory=dict)


class IntegrationEvent(BaseModel):
    """One event as returned by an integration endpoint."""
    event_type: str = Field(..., min_length=1, max_length=100)
    payload: Dict[str, Any] = Field(default_factory=dict)


class IntegrationBatch(BaseModel):
    events: List[IntegrationEvent] = Field(default_factory=list)
