"""
Report definition and ranked output schemas.
"""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from juryboard.orm.participant import VoterType
from juryboard.orm.report import SortDirection


class ReportFilters(BaseModel):
    category_ids: List[int] = Field(default_factory=list)
    voter_types: List[VoterType] = Field(default_factory=list)
    judge_ids: Optional[List[int]] = None


class SortSpec(BaseModel):
    field: str = Field(..., min_length=1, max_length=100)
    direction: SortDirection = SortDirection.DESC


class ReportQuery(BaseModel):
    """Inline report definition; position 0 in `sort` is the primary key."""
    rubric_id: int = Field(..., gt=0)
    filters: ReportFilters = Field(default_factory=ReportFilters)
    sort: List[SortSpec] = Field(default_factory=list)
    limit: Optional[int] = Field(None, ge=1)
    display_fields: List[str] = Field(default_factory=list)


class ReportCreate(ReportQuery):
    name: str = Field(..., min_length=1, max_length=255)
    is_public: bool = False
    is_live: bool = True


class RankedEntry(BaseModel):
    participant_id: int
    display_name: str
    per_criterion_breakdown: Dict[int, float]
    weighted_total: Optional[float] = None
    rank: int
    display_fields: Dict[str, Any] = Field(default_factory=dict)


class ReportResult(BaseModel):
    success: bool = True
    competition_id: int
    report_id: Optional[int] = None
    rubric_id: int
    entries: List[RankedEntry]


class ReportCreated(BaseModel):
    success: bool = True
    report_id: int
    name: str
