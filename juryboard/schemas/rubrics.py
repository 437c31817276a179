"""
Rubric and criterion edit schemas.
"""
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

from juryboard.orm.scoring import CombinationPolicy


class QualitativeLevel(BaseModel):
    label: str = Field(..., min_length=1, max_length=100)
    value: float = Field(..., ge=0)


class CriterionUpdate(BaseModel):
    """Partial update. Omitted fields are left unchanged."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    position: Optional[int] = Field(None, ge=0)
    max_score: Optional[float] = Field(None, gt=0)
    weight: Optional[float] = Field(None, ge=0)
    qualitative_mapping: Optional[List[QualitativeLevel]] = None

    @field_validator("qualitative_mapping")
    @classmethod
    def labels_unique(cls, v):
        if v is not None:
            labels = [level.label for level in v]
            if len(labels) != len(set(labels)):
                raise ValueError("qualitative_mapping labels must be unique")
        return v


class RubricPolicyUpdate(BaseModel):
    combination_policy: CombinationPolicy
