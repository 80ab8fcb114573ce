from app.schemas.segment import (
    SegmentCreate,
    SegmentUpdate,
    SegmentResponse,
    SegmentWithCount,
    SegmentRules,
    SegmentCondition,
    EvaluationSchedule,
    EvaluationResult,
)

__all__ = [
    "SegmentCreate",
    "SegmentUpdate",
    "SegmentResponse",
    "SegmentWithCount",
    "SegmentRules",
    "SegmentCondition",
    "EvaluationSchedule",
    "EvaluationResult",
]
