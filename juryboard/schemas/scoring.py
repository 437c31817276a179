"""
Score submission request/response schemas.

Exactly-one-of value/qualitative_label is enforced by the ledger so the
caller receives the INVALID_VALUE envelope rather than a schema error.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class ScoreSubmission(BaseModel):
    """Voter-facing submission (judge or public)."""
    participant_id: int = Field(..., gt=0)
    criterion_id: int = Field(..., gt=0)
    value: Optional[float] = Field(None, description="Numeric score in [0, max_score]")
    qualitative_label: Optional[str] = Field(None, min_length=1, max_length=100)


class AdminScoreSubmission(ScoreSubmission):
    """Admin correction on behalf of a registered judge."""
    judge_id: int = Field(..., gt=0)


class ScoreFactOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    participant_id: int
    criterion_id: int
    voter_id: int
    value: float
    qualitative_label: Optional[str] = None
    submitted_at: datetime
    revision: int
    is_retired: bool


class ScoreAccepted(BaseModel):
    success: bool = True
    created: bool
    score: ScoreFactOut
