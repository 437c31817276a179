"""
juryboard/orm/participant.py
Participants, judges and voter identities
"""
from sqlalchemy import Column, Integer, String, ForeignKey, UniqueConstraint, Enum as SQLEnum
from enum import Enum as PyEnum
from juryboard.orm.base import BaseModel, UniversalJSON


class VoterType(str, PyEnum):
    """Kinds of identities allowed to produce score facts"""
    JUDGE = "JUDGE"
    PUBLIC = "PUBLIC"


class Participant(BaseModel):
    """
    Scoring target. Aggregates are keyed by participant.
    Creation order (created_at, id) is the ranking tie-break.
    """
    __tablename__ = "participants"

    competition_id = Column(Integer, ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False, index=True)
    display_name = Column(String(255), nullable=False)

    # Free-form stored attributes addressable by report sort fields ("attributes.<key>")
    attributes = Column(UniversalJSON, nullable=False, default=dict)

    def __repr__(self):
        return f"<Participant(id={self.id}, competition={self.competition_id}, name={self.display_name!r})>"


class Judge(BaseModel):
    """Registered judging entity scoped to one competition."""
    __tablename__ = "judges"

    competition_id = Column(Integer, ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False, index=True)
    display_name = Column(String(255), nullable=False)


class Voter(BaseModel):
    """
    Uniform voter identity.

    identity_key is "judge:<judge_id>" for judge-backed voters and
    "public:<token>" for anonymous voters (session token or client address).
    """
    __tablename__ = "voters"
    __table_args__ = (
        UniqueConstraint("competition_id", "identity_key", name="uq_voter_identity"),
    )

    competition_id = Column(Integer, ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False, index=True)
    voter_type = Column(SQLEnum(VoterType), nullable=False, index=True)
    judge_id = Column(Integer, ForeignKey("judges.id", ondelete="CASCADE"), nullable=True, index=True)
    identity_key = Column(String(255), nullable=False)

    def __repr__(self):
        return f"<Voter(id={self.id}, type={self.voter_type}, key={self.identity_key!r})>"
