"""
juryboard/orm/category.py
Self-referencing category tree and the participant membership join entity
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from juryboard.orm.base import Base, BaseModel


class Category(BaseModel):
    """Category node. parent_id is assigned only through the cycle-checked tree service."""
    __tablename__ = "categories"

    competition_id = Column(Integer, ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False, index=True)
    parent_id = Column(Integer, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True, index=True)
    name = Column(String(255), nullable=False)

    def __repr__(self):
        return f"<Category(id={self.id}, parent={self.parent_id}, name={self.name!r})>"


class ParticipantCategory(Base):
    """Participant <-> category membership, composite identity."""
    __tablename__ = "participant_categories"

    participant_id = Column(Integer, ForeignKey("participants.id", ondelete="CASCADE"), primary_key=True)
    category_id = Column(Integer, ForeignKey("categories.id", ondelete="CASCADE"), primary_key=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
