"""Segment Evaluation Scheduler - cron-driven re-evaluation of dynamic segments.

Each dynamic segment with an enabled evaluation schedule gets its own cron
job keyed "segment-eval:<segment id>". When the job fires it re-evaluates
the segment's rules and syncs membership. Optionally, a periodic batch job
re-evaluates every dynamic segment
(SEGMENT_EVALUATION_INTERVAL_MINUTES > 0).

Jobs live in memory, so schedules are restored from the segments table on
startup.
"""

import logging
import re
from typing import Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select

from app.config import settings
from app.database import async_session_maker
from app.exceptions import NotFoundError, ValidationError
from app.models.segment import Segment
from app.schemas.segment import EvaluationSchedule, EvaluationScheduleInfo, SegmentType
from app.services.segments.segment_service import SegmentService

logger = logging.getLogger(__name__)

JOB_PREFIX = "segment-eval:"
BATCH_JOB_ID = "segment-eval-all"

WEEKDAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the scheduler instance."""
    global scheduler
    if scheduler is None:
        scheduler = AsyncIOScheduler(
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 300}
        )
    return scheduler


def job_id_for(segment_id: str) -> str:
    return f"{JOB_PREFIX}{segment_id}"


def _crontab_day_of_week(field: str) -> str:
    """Map crontab weekday numbers (0/7 = Sunday) to the names APScheduler reads.

    APScheduler numbers weekdays from Monday, so numeric crontab weekdays would
    otherwise fire a day late. Stepped parts are passed through unchanged.
    """
    parts = []
    for part in field.split(","):
        day_range = re.fullmatch(r"(\d+)(?:-(\d+))?", part)
        if day_range is None or int(day_range.group(1)) > 7:
            parts.append(part)
            continue
        first = int(day_range.group(1))
        if day_range.group(2) is None:
            parts.append(WEEKDAY_NAMES[first])
            continue
        last = int(day_range.group(2))
        if last > 7 or last < first:
            parts.append(part)
            continue
        # Sunday sorts last in APScheduler, so "0-N" splits into sun plus mon-N
        if first == 0:
            parts.append("sun")
            first = 1
        if first == last:
            parts.append(WEEKDAY_NAMES[first])
        elif first < last:
            parts.append(f"{WEEKDAY_NAMES[first]}-{WEEKDAY_NAMES[last]}")
    return ",".join(parts)


def build_trigger(pattern: str) -> CronTrigger:
    """Cron trigger for a 5-field or 6-field (leading seconds) pattern."""
    fields = pattern.lower().split()
    second = "0"
    if len(fields) == 6:
        second = fields.pop(0)
    minute, hour, day, month, day_of_week = fields
    return CronTrigger(
        second=second,
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=_crontab_day_of_week(day_of_week),
    )


# ============================================
# Jobs
# ============================================


async def run_segment_evaluation(segment_id: str):
    """Job body: evaluate one segment in its own session."""
    logger.info(f"Evaluating segment {segment_id}")
    try:
        async with async_session_maker() as db:
            result = await SegmentService(db).evaluate_dynamic_segment(segment_id)
        logger.info(f"Segment {segment_id}: added={result.added}, removed={result.removed}")
    except (NotFoundError, ValidationError) as e:
        # Deleted or no longer dynamic, retrying cannot succeed
        logger.warning(f"Evaluation permanently failed for segment {segment_id}: {e.detail}")
        remove_segment_evaluation_schedule(segment_id)
    except Exception as e:
        logger.error(f"Evaluation failed for segment {segment_id}: {e}", exc_info=True)


async def run_all_segment_evaluations():
    """Job body: evaluate every dynamic segment."""
    logger.info("Starting batch segment evaluation...")
    try:
        async with async_session_maker() as db:
            results = await SegmentService(db).evaluate_all_dynamic_segments()
    except Exception as e:
        logger.error(f"Fatal error in batch segment evaluation: {e}", exc_info=True)
        return

    added = sum(r.added for r in results)
    removed = sum(r.removed for r in results)
    logger.info(
        f"Batch segment evaluation complete. Segments: {len(results)}, added={added}, removed={removed}"
    )


# ============================================
# Schedule management
# ============================================


def upsert_segment_evaluation_schedule(segment_id: str, schedule: EvaluationSchedule) -> None:
    """Create or replace the evaluation job for a segment.

    A disabled schedule only removes the existing job.
    """
    remove_segment_evaluation_schedule(segment_id)
    if not schedule.enabled:
        return

    get_scheduler().add_job(
        run_segment_evaluation,
        build_trigger(schedule.pattern),
        args=[segment_id],
        id=job_id_for(segment_id),
        name=schedule.pattern,
        replace_existing=True,
    )
    logger.info(f"Scheduled evaluation for segment {segment_id} with pattern \"{schedule.pattern}\"")


def remove_segment_evaluation_schedule(segment_id: str) -> bool:
    """Remove the evaluation job for a segment. No-op if none exists."""
    try:
        get_scheduler().remove_job(job_id_for(segment_id))
    except JobLookupError:
        return False
    logger.info(f"Removed schedule for segment {segment_id}")
    return True


def list_evaluation_schedules() -> list[EvaluationScheduleInfo]:
    """Registered per-segment evaluation jobs, for admin diagnostics."""
    schedules = []
    for job in get_scheduler().get_jobs():
        if not job.id.startswith(JOB_PREFIX):
            continue
        schedules.append(
            EvaluationScheduleInfo(
                segment_id=job.id[len(JOB_PREFIX):],
                pattern=job.name,
                next_run_at=getattr(job, "next_run_time", None),
            )
        )
    return schedules


async def restore_all_evaluation_schedules() -> int:
    """Re-register jobs for every dynamic segment with an enabled schedule."""
    restored = 0
    try:
        async with async_session_maker() as db:
            result = await db.execute(
                select(Segment.id, Segment.evaluation_schedule).where(
                    Segment.type == SegmentType.DYNAMIC.value,
                    Segment.deleted_at.is_(None),
                )
            )
            rows = result.all()
    except Exception as e:
        logger.error(f"Failed to restore evaluation schedules: {e}", exc_info=True)
        return 0

    for segment_id, raw_schedule in rows:
        if not raw_schedule:
            continue
        try:
            schedule = EvaluationSchedule.model_validate(raw_schedule)
            if schedule.enabled:
                upsert_segment_evaluation_schedule(segment_id, schedule)
                restored += 1
        except Exception as e:
            logger.error(f"Skipping evaluation schedule for segment {segment_id}: {e}")

    if restored:
        logger.info(f"Restored {restored} evaluation schedule(s)")
    return restored


def start_segment_scheduler():
    """Start the scheduler and register the periodic batch job if configured."""
    sched = get_scheduler()

    if settings.SEGMENT_EVALUATION_INTERVAL_MINUTES > 0:
        sched.add_job(
            run_all_segment_evaluations,
            IntervalTrigger(minutes=settings.SEGMENT_EVALUATION_INTERVAL_MINUTES),
            id=BATCH_JOB_ID,
            name="Evaluate all dynamic segments",
            replace_existing=True,
        )

    if not sched.running:
        sched.start()
        logger.info("Segment evaluation scheduler started")


def shutdown_segment_scheduler():
    """Stop the scheduler without waiting for running jobs."""
    global scheduler
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Segment evaluation scheduler stopped")
    scheduler = None
