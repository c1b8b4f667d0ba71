from typing import Any, List, Optional

from pydantic import Field, field_validator

from journeyflow.models.common import CamelModel


class SegmentCondition(CamelModel):
    # Kept permissive: malformed conditions are rejected at evaluation time, not load time.
    id: Optional[str] = None
    field: str = ""
    operator: str = ""
    value: Any = None


class ConditionGroup(CamelModel):
    id: Optional[str] = None
    group_operator: str = "AND"
    conditions: List[SegmentCondition] = Field(default_factory=list)

    @field_validator("group_operator", mode="before")
    @classmethod
    def _upper(cls, value):
        return str(value or "AND").upper()


class CustomerSegment(CamelModel):
    id: str
    name: str = ""
    description: Optional[str] = None
    condition_groups: List[ConditionGroup] = Field(default_factory=list)
