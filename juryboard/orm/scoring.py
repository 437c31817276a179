"""
juryboard/orm/scoring.py
Rubrics, weighted criteria and the score fact ledger
"""
from datetime import datetime
from typing import Dict, Optional
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Float, ForeignKey,
    UniqueConstraint, Enum as SQLEnum
)
from enum import Enum as PyEnum
from juryboard.orm.base import BaseModel, UniversalJSON


class CombinationPolicy(str, PyEnum):
    """How the facts of distinct voters are combined for one (participant, criterion)"""
    MEAN = "mean"
    SUM = "sum"
    LATEST = "latest"


class Rubric(BaseModel):
    """Ordered set of criteria scoped to one competition."""
    __tablename__ = "rubrics"

    competition_id = Column(Integer, ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    combination_policy = Column(SQLEnum(CombinationPolicy), default=CombinationPolicy.MEAN, nullable=False)


class Criterion(BaseModel):
    """
    Weighted scoring criterion.

    qualitative_mapping is an ordered list of {"label": str, "value": float}
    validated on write (unique labels, 0 <= value <= max_score).
    """
    __tablename__ = "criteria"

    rubric_id = Column(Integer, ForeignKey("rubrics.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    position = Column(Integer, default=0, nullable=False)
    max_score = Column(Float, nullable=False)
    weight = Column(Float, default=1.0, nullable=False)
    qualitative_mapping = Column(UniversalJSON, nullable=True)

    def __repr__(self):
        return f"<Criterion(id={self.id}, rubric={self.rubric_id}, weight={self.weight})>"

    def label_values(self) -> Dict[str, float]:
        """Label -> numeric value lookup for the qualitative mapping."""
        return {
            entry["label"]: float(entry["value"])
            for entry in (self.qualitative_mapping or [])
        }

    def resolve_label(self, label: str) -> Optional[float]:
        return self.label_values().get(label)


class ScoreFact(BaseModel):
    """
    One voter's judgment of one participant on one criterion.

    At most one row per (participant, criterion, voter); a re-vote updates
    the row in place and bumps `revision`. Rows are never deleted, only
    logically retired.
    """
    __tablename__ = "score_facts"
    __table_args__ = (
        UniqueConstraint("participant_id", "criterion_id", "voter_id", name="uq_score_fact_triple"),
    )

    participant_id = Column(Integer, ForeignKey("participants.id", ondelete="CASCADE"), nullable=False, index=True)
    criterion_id = Column(Integer, ForeignKey("criteria.id", ondelete="CASCADE"), nullable=False, index=True)
    voter_id = Column(Integer, ForeignKey("voters.id", ondelete="CASCADE"), nullable=False, index=True)

    value = Column(Float, nullable=False)
    qualitative_label = Column(String(100), nullable=True)
    submitted_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    revision = Column(Integer, default=1, nullable=False)
    is_retired = Column(Boolean, default=False, nullable=False)

    def __repr__(self):
        return (
            f"<ScoreFact(id={self.id}, participant={self.participant_id}, "
            f"criterion={self.criterion_id}, voter={self.voter_id}, value={self.value})>"
        )

    def to_dict(self):
        return {
            "id": self.id,
            "participant_id": self.participant_id,
            "criterion_id": self.criterion_id,
            "voter_id": self.voter_id,
            "value": self.value,
            "qualitative_label": self.qualitative_label,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "revision": self.revision,
            "is_retired": self.is_retired,
        }
