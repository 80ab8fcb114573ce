"""
Segment Schemas

Wire format is camelCase (metadataKey, evaluationSchedule, memberCount, ...);
snake_case field names are accepted on input as well.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class SegmentType(str, Enum):
    MANUAL = "manual"
    DYNAMIC = "dynamic"


class MembershipSource(str, Enum):
    MANUAL = "manual"
    DYNAMIC = "dynamic"


class RuleMatch(str, Enum):
    ALL = "all"
    ANY = "any"


class SegmentAttribute(str, Enum):
    EMAIL_DOMAIN = "email_domain"
    EMAIL_VERIFIED = "email_verified"
    PLAN = "plan"
    METADATA_KEY = "metadata_key"
    CREATED_AT_DAYS_AGO = "created_at_days_ago"
    POST_COUNT = "post_count"
    VOTE_COUNT = "vote_count"
    COMMENT_COUNT = "comment_count"


class SegmentOperator(str, Enum):
    EQUALS = "eq"
    NOT_EQUALS = "neq"
    LESS_THAN = "lt"
    LESS_THAN_OR_EQUALS = "lte"
    GREATER_THAN = "gt"
    GREATER_THAN_OR_EQUALS = "gte"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IN = "in"
    IS_SET = "is_set"
    IS_NOT_SET = "is_not_set"


PRESENCE_OPERATORS = frozenset({SegmentOperator.IS_SET, SegmentOperator.IS_NOT_SET})

# [second] minute hour day month weekday; month and weekday accept names (JAN, MON)
CRON_REGEX = re.compile(r"^[0-9A-Za-z*,\-/]+(\s+[0-9A-Za-z*,\-/]+){4,5}$")

ConditionValue = Union[bool, int, float, str, list[Union[str, int, float]]]


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class SegmentCondition(CamelModel):
    """One predicate over a principal's attributes."""
    attribute: SegmentAttribute
    operator: SegmentOperator
    value: Optional[ConditionValue] = Field(None, description="Omitted for is_set / is_not_set")
    metadata_key: Optional[str] = Field(None, description="Required when attribute is metadata_key")

    @model_validator(mode="after")
    def require_metadata_key(self) -> "SegmentCondition":
        if self.attribute == SegmentAttribute.METADATA_KEY and not (self.metadata_key or "").strip():
            raise ValueError("metadataKey is required for metadata_key conditions")
        return self


class SegmentRules(CamelModel):
    """Rule set combined with AND ("all") or OR ("any")."""
    match: RuleMatch = RuleMatch.ALL
    conditions: list[SegmentCondition] = Field(default_factory=list)


class EvaluationSchedule(CamelModel):
    enabled: bool = True
    pattern: str = Field(..., min_length=1, description="Cron expression, e.g. '0 * * * *'")

    @field_validator("pattern")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        v = v.strip()
        if not CRON_REGEX.match(v):
            raise ValueError("Must be a valid cron expression")
        return v


class SegmentCreate(CamelModel):
    """Schema for creating a segment."""
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    type: SegmentType = SegmentType.MANUAL
    color: Optional[str] = Field(None, max_length=7, description="Hex color for UI")
    rules: Optional[SegmentRules] = None
    evaluation_schedule: Optional[EvaluationSchedule] = None


class SegmentUpdate(CamelModel):
    """Partial update; only fields present in the payload are applied."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    color: Optional[str] = Field(None, max_length=7)
    rules: Optional[SegmentRules] = None
    evaluation_schedule: Optional[EvaluationSchedule] = None


class SegmentResponse(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    type: SegmentType
    color: str
    rules: Optional[SegmentRules] = None
    evaluation_schedule: Optional[EvaluationSchedule] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SegmentWithCount(SegmentResponse):
    member_count: int = 0


class SegmentSummary(CamelModel):
    id: str
    name: str
    color: str
    type: SegmentType


class SegmentMembersRequest(CamelModel):
    principal_ids: list[str] = Field(..., min_length=1)


class SegmentMembershipChange(CamelModel):
    segment_id: str
    count: int


class SegmentMembersResponse(CamelModel):
    segment_id: str
    principal_ids: list[str]


class EvaluationResult(CamelModel):
    segment_id: str
    added: int
    removed: int


class EvaluationScheduleInfo(CamelModel):
    segment_id: str
    pattern: str
    next_run_at: Optional[datetime] = None
