# Services module
from app.services.segments import SegmentService
from app.services.user_sync_notify import notify_user_sync_integrations

__all__ = [
    "SegmentService",
    "notify_user_sync_integrations",
]
