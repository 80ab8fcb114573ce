"""
Segment API Endpoints

Admin surface for user segments:
- CRUD for manual and dynamic segments
- Manual membership management
- On-demand evaluation of one or all dynamic segments
- Evaluation schedule diagnostics
- Segment lookup for a single principal
"""

import logging
from typing import Optional

from fastapi import APIRouter, Response, status

from app.api.deps import SegmentServiceDep
from app.exceptions import NotFoundError
from app.schemas.segment import (
    EvaluationResult,
    EvaluationSchedule,
    EvaluationScheduleInfo,
    SegmentCreate,
    SegmentMembersRequest,
    SegmentMembersResponse,
    SegmentMembershipChange,
    SegmentResponse,
    SegmentSummary,
    SegmentType,
    SegmentUpdate,
    SegmentWithCount,
)
from app.tasks.segment_scheduler import (
    list_evaluation_schedules,
    remove_segment_evaluation_schedule,
    upsert_segment_evaluation_schedule,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _sync_schedule(segment_id: str, schedule: Optional[EvaluationSchedule]) -> None:
    """Register or drop the evaluation job. The segment write already succeeded."""
    try:
        if schedule is not None and schedule.enabled:
            upsert_segment_evaluation_schedule(segment_id, schedule)
        else:
            remove_segment_evaluation_schedule(segment_id)
    except Exception as e:
        logger.error(f"Failed to update evaluation schedule for segment {segment_id}: {e}", exc_info=True)


# ============================================
# Collection-level routes (before /{segment_id})
# ============================================


@router.get("/", response_model=list[SegmentWithCount])
async def list_segments(service: SegmentServiceDep):
    """List all segments with member counts."""
    return await service.list_segments()


@router.post("/", response_model=SegmentResponse, status_code=status.HTTP_201_CREATED)
async def create_segment(data: SegmentCreate, service: SegmentServiceDep):
    """Create a new segment."""
    segment = await service.create_segment(data)
    if segment.type == SegmentType.DYNAMIC and segment.evaluation_schedule is not None:
        _sync_schedule(segment.id, segment.evaluation_schedule)
    return segment


@router.post("/evaluate", response_model=list[EvaluationResult])
async def evaluate_all_segments(service: SegmentServiceDep):
    """Re-evaluate every dynamic segment."""
    return await service.evaluate_all_dynamic_segments()


@router.get("/schedules", response_model=list[EvaluationScheduleInfo])
async def list_schedules():
    """Registered evaluation schedules."""
    return list_evaluation_schedules()


@router.get("/users/{principal_id}", response_model=list[SegmentSummary])
async def get_user_segments(principal_id: str, service: SegmentServiceDep):
    """Segments a principal belongs to."""
    return await service.get_user_segments(principal_id)


# ============================================
# Single segment
# ============================================


@router.get("/{segment_id}", response_model=SegmentResponse)
async def get_segment(segment_id: str, service: SegmentServiceDep):
    """Get a specific segment."""
    segment = await service.get_segment(segment_id)
    if not segment:
        raise NotFoundError("Segment", segment_id)
    return segment


@router.patch("/{segment_id}", response_model=SegmentResponse)
async def update_segment(segment_id: str, data: SegmentUpdate, service: SegmentServiceDep):
    """Update a segment."""
    segment = await service.update_segment(segment_id, data)
    if "evaluation_schedule" in data.model_fields_set and segment.type == SegmentType.DYNAMIC:
        _sync_schedule(segment.id, segment.evaluation_schedule)
    return segment


@router.delete("/{segment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_segment(segment_id: str, service: SegmentServiceDep):
    """Delete a segment and all of its memberships."""
    await service.delete_segment(segment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================
# Membership
# ============================================


@router.get("/{segment_id}/members", response_model=SegmentMembersResponse)
async def get_segment_members(segment_id: str, service: SegmentServiceDep):
    """Principal IDs in a segment."""
    if not await service.get_segment(segment_id):
        raise NotFoundError("Segment", segment_id)
    principal_ids = await service.get_segment_members(segment_id)
    return SegmentMembersResponse(segment_id=segment_id, principal_ids=principal_ids)


@router.post("/{segment_id}/members", response_model=SegmentMembershipChange)
async def assign_members(segment_id: str, data: SegmentMembersRequest, service: SegmentServiceDep):
    """Add principals to a manual segment."""
    count = await service.assign_users_to_segment(segment_id, data.principal_ids)
    return SegmentMembershipChange(segment_id=segment_id, count=count)


@router.post("/{segment_id}/members/remove", response_model=SegmentMembershipChange)
async def remove_members(segment_id: str, data: SegmentMembersRequest, service: SegmentServiceDep):
    """Remove principals from a manual segment."""
    count = await service.remove_users_from_segment(segment_id, data.principal_ids)
    return SegmentMembershipChange(segment_id=segment_id, count=count)


# ============================================
# Evaluation
# ============================================


@router.post("/{segment_id}/evaluate", response_model=EvaluationResult)
async def evaluate_segment(segment_id: str, service: SegmentServiceDep):
    """Re-evaluate a dynamic segment now."""
    return await service.evaluate_dynamic_segment(segment_id)
