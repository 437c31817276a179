"""
juryboard/orm/competition.py
Competition model with voting-window configuration
"""
from sqlalchemy import Column, String, Boolean, DateTime, Text, Enum as SQLEnum
from enum import Enum as PyEnum
from juryboard.orm.base import BaseModel


class CompetitionStatus(str, PyEnum):
    """Competition lifecycle status"""
    DRAFT = "draft"          # Being configured, no scoring
    ACTIVE = "active"        # Scoring possible while the audience window is open
    ARCHIVED = "archived"    # Read-only


class Competition(BaseModel):
    """
    A competition scored by judges and/or public voters.

    Voting windows are evaluated per audience: `judging_open` gates
    judge-backed voters, `public_voting_open` gates anonymous voters.
    Optional `voting_opens_at` / `voting_closes_at` bound both audiences.
    """
    __tablename__ = "competitions"

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    status = Column(SQLEnum(CompetitionStatus), default=CompetitionStatus.DRAFT, nullable=False, index=True)

    judging_open = Column(Boolean, default=False, nullable=False)
    public_voting_open = Column(Boolean, default=False, nullable=False)
    voting_opens_at = Column(DateTime, nullable=True)
    voting_closes_at = Column(DateTime, nullable=True)

    # Once published, score-affecting criterion fields are frozen
    results_published = Column(Boolean, default=False, nullable=False)

    def __repr__(self):
        return f"<Competition(id={self.id}, name={self.name!r}, status={self.status})>"

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value if self.status else None,
            "judging_open": self.judging_open,
            "public_voting_open": self.public_voting_open,
            "voting_opens_at": self.voting_opens_at.isoformat() if self.voting_opens_at else None,
            "voting_closes_at": self.voting_closes_at.isoformat() if self.voting_closes_at else None,
            "results_published": self.results_published,
        }
