"""
Segment Models

- Segment: a named group of portal users, either curated by hand ("manual")
  or derived from a rule set ("dynamic")
- UserSegment: materialized membership, tagged with its provenance
"""

from sqlalchemy import (
    Column, String, Text, DateTime, ForeignKey, JSON, Index,
    Enum as SQLEnum, PrimaryKeyConstraint,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.database import Base
from app.models.user import new_id


class Segment(Base):
    """
    User segment definition.

    Invariants:
    - manual segments never carry rules or an evaluation schedule
    - dynamic segments are created with at least one rule condition
    - deletion is soft (deleted_at) and drops every membership row
    """
    __tablename__ = "segments"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    color = Column(String(7), nullable=False, default="#6b7280")

    type = Column(
        SQLEnum("manual", "dynamic", name="segment_type_enum"),
        nullable=False,
        default="manual",
    )

    # Dynamic segments only. Example:
    # {
    #   "match": "all",
    #   "conditions": [
    #     {"attribute": "email_domain", "operator": "eq", "value": "acme.com"},
    #     {"attribute": "created_at_days_ago", "operator": "gt", "value": 30},
    #     {"attribute": "metadata_key", "metadataKey": "plan", "operator": "neq", "value": "free"}
    #   ]
    # }
    rules = Column(JSON)

    # {"enabled": true, "pattern": "0 * * * *"}
    evaluation_schedule = Column(JSON)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    deleted_at = Column(DateTime(timezone=True), index=True)

    memberships = relationship("UserSegment", back_populates="segment", passive_deletes=True)

    def __repr__(self):
        return f"<Segment id={self.id} name='{self.name}' type={self.type}>"


class UserSegment(Base):
    """
    Membership edge between a principal and a segment.

    added_by records whether an admin ("manual") or the rule evaluator
    ("dynamic") created the row; reconciliation only ever touches "dynamic"
    rows.
    """
    __tablename__ = "user_segments"

    principal_id = Column(String(36), ForeignKey("principal.id", ondelete="CASCADE"), nullable=False)
    segment_id = Column(String(36), ForeignKey("segments.id", ondelete="CASCADE"), nullable=False)
    added_by = Column(
        SQLEnum("manual", "dynamic", name="segment_added_by_enum"),
        nullable=False,
        default="manual",
    )
    added_at = Column(DateTime(timezone=True), server_default=func.now())

    segment = relationship("Segment", back_populates="memberships")

    __table_args__ = (
        PrimaryKeyConstraint("principal_id", "segment_id", name="pk_user_segments"),
        Index("ix_user_segments_segment_added_by", "segment_id", "added_by"),
    )

    def __repr__(self):
        return f"<UserSegment principal_id={self.principal_id} segment_id={self.segment_id} added_by={self.added_by}>"
