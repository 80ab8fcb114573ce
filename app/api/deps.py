"""
FastAPI Dependencies

Provides dependency injection for database sessions and services.
"""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.services.segments.segment_service import SegmentService

DbSession = Annotated[AsyncSession, Depends(get_db)]


def get_segment_service(db: DbSession) -> SegmentService:
    return SegmentService(db)


SegmentServiceDep = Annotated[SegmentService, Depends(get_segment_service)]
