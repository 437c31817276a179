"""
juryboard/orm/report.py
Declarative report definitions, sort options and their join entity
"""
from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, Enum as SQLEnum
from enum import Enum as PyEnum
from juryboard.orm.base import Base, BaseModel, UniversalJSON


class SortDirection(str, PyEnum):
    ASC = "ASC"
    DESC = "DESC"


class SortOption(BaseModel):
    """
    Field selector + direction. The field may name a stored participant
    attribute or a computed aggregate; the report compiler resolves both.
    """
    __tablename__ = "sort_options"

    competition_id = Column(Integer, ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False, index=True)
    field = Column(String(100), nullable=False)
    direction = Column(SQLEnum(SortDirection), default=SortDirection.DESC, nullable=False)


class ReportDefinition(BaseModel):
    """
    Declarative filter/sort/limit definition.

    filters: {"category_ids": [...], "voter_types": [...], "judge_ids": [...]}
    validated by schemas.reports.ReportFilters on write.
    """
    __tablename__ = "report_definitions"

    competition_id = Column(Integer, ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False, index=True)
    rubric_id = Column(Integer, ForeignKey("rubrics.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)

    filters = Column(UniversalJSON, nullable=False, default=dict)
    display_fields = Column(UniversalJSON, nullable=False, default=list)
    result_limit = Column(Integer, nullable=True)

    is_public = Column(Boolean, default=False, nullable=False)
    # Live reports are recompiled and broadcast after every relevant ledger write
    is_live = Column(Boolean, default=True, nullable=False)


class ReportSortOption(Base):
    """Report <-> sort option, composite identity. position 0 is the primary key."""
    __tablename__ = "report_sort_options"

    report_id = Column(Integer, ForeignKey("report_definitions.id", ondelete="CASCADE"), primary_key=True)
    sort_option_id = Column(Integer, ForeignKey("sort_options.id", ondelete="CASCADE"), primary_key=True)
    position = Column(Integer, default=0, nullable=False)
