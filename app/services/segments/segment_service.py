"""
Segment Service

Business logic for user segmentation:
- CRUD for manual (admin-curated) and dynamic (rule-based) segments
- Manual membership management
- Dynamic evaluation: rules are compiled to SQL, the matching principals are
  diffed against the stored "dynamic" membership, and only the difference is
  written
- Best-effort notification of integrations when membership changes

Only the write step of a reconciliation is transactional. Reading current
membership and evaluating rules happen before it, so a concurrent
evaluation can act on a slightly stale view; inserts tolerate duplicates and
deletes are restricted to rule-derived rows, which bounds the effect.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Iterator, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import ForbiddenError, NotFoundError, ValidationError
from app.models.segment import Segment, UserSegment
from app.schemas.segment import (
    EvaluationResult,
    MembershipSource,
    SegmentCreate,
    SegmentResponse,
    SegmentRules,
    SegmentSummary,
    SegmentType,
    SegmentUpdate,
    SegmentWithCount,
)
from app.services.segments.rule_evaluator import resolve_matching_principals
from app.services.user_sync_notify import (
    Notifier,
    dispatch_notification,
    notify_user_sync_integrations,
)

logger = logging.getLogger(__name__)

# Rows per INSERT / IN (...) list, keeps us under driver parameter limits
WRITE_BATCH_SIZE = 1000

DIALECT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def _chunks(items: Sequence[str], size: int = WRITE_BATCH_SIZE) -> Iterator[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _unique(ids: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(ids))


def _dump(model) -> Optional[dict]:
    if model is None:
        return None
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def _clean_description(description: Optional[str]) -> Optional[str]:
    if description is None:
        return None
    return description.strip() or None


def _has_conditions(rules: Optional[SegmentRules]) -> bool:
    return rules is not None and len(rules.conditions) > 0


class SegmentService:
    """Segment CRUD, membership and dynamic evaluation for one session."""

    def __init__(self, db: AsyncSession, notifier: Optional[Notifier] = None):
        self.db = db
        self.notifier = notifier or notify_user_sync_integrations

    # ============================================
    # Helpers
    # ============================================

    async def _get_active_segment(self, segment_id: str) -> Optional[Segment]:
        result = await self.db.execute(
            select(Segment).where(Segment.id == segment_id, Segment.deleted_at.is_(None))
        )
        return result.scalar_one_or_none()

    async def _require_segment(self, segment_id: str) -> Segment:
        segment = await self._get_active_segment(segment_id)
        if not segment:
            raise NotFoundError("Segment", segment_id)
        return segment

    @staticmethod
    def _parse_rules(raw: Optional[dict]) -> Optional[SegmentRules]:
        if not raw:
            return None
        return SegmentRules.model_validate(raw)

    def _insert_memberships(self, rows: list[dict]):
        """INSERT that silently skips rows already present."""
        dialect = self.db.get_bind().dialect.name
        insert_fn = DIALECT_INSERTS.get(dialect)
        if insert_fn is None:
            raise RuntimeError(f"Conflict-tolerant insert not supported for dialect '{dialect}'")
        return (
            insert_fn(UserSegment)
            .values(rows)
            .on_conflict_do_nothing(index_elements=["principal_id", "segment_id"])
        )

    async def _commit(self) -> None:
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

    async def _execute_and_commit(self, statements) -> None:
        """Run statements as one transaction, rolling back on any failure."""
        try:
            for statement in statements:
                await self.db.execute(statement)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

    # ============================================
    # CRUD
    # ============================================

    async def list_segments(self) -> list[SegmentWithCount]:
        """List all active segments with member counts, ordered by name."""
        member_counts = (
            select(
                UserSegment.segment_id.label("segment_id"),
                func.count().label("member_count"),
            )
            .group_by(UserSegment.segment_id)
            .subquery("member_counts")
        )

        result = await self.db.execute(
            select(Segment, func.coalesce(member_counts.c.member_count, 0))
            .outerjoin(member_counts, member_counts.c.segment_id == Segment.id)
            .where(Segment.deleted_at.is_(None))
            .order_by(Segment.name)
        )

        segments = []
        for segment, member_count in result.all():
            data = SegmentResponse.model_validate(segment).model_dump()
            segments.append(SegmentWithCount(**data, member_count=int(member_count)))
        return segments

    async def get_segment(self, segment_id: str) -> Optional[SegmentResponse]:
        segment = await self._get_active_segment(segment_id)
        if not segment:
            return None
        return SegmentResponse.model_validate(segment)

    async def create_segment(self, data: SegmentCreate) -> SegmentResponse:
        name = (data.name or "").strip()
        if not name:
            raise ValidationError("Segment name is required")

        is_dynamic = data.type == SegmentType.DYNAMIC
        if is_dynamic and not _has_conditions(data.rules):
            raise ValidationError("Dynamic segments require at least one rule condition")

        segment = Segment(
            name=name,
            description=_clean_description(data.description),
            type=data.type.value,
            color=data.color or settings.DEFAULT_SEGMENT_COLOR,
            rules=_dump(data.rules) if is_dynamic else None,
            evaluation_schedule=_dump(data.evaluation_schedule) if is_dynamic else None,
        )
        self.db.add(segment)
        await self._commit()
        await self.db.refresh(segment)

        logger.info("Created %s segment %s (%s)", segment.type, segment.id, segment.name)
        return SegmentResponse.model_validate(segment)

    async def update_segment(self, segment_id: str, data: SegmentUpdate) -> SegmentResponse:
        """Apply only the fields present in the payload."""
        segment = await self._require_segment(segment_id)
        updates = data.model_dump(exclude_unset=True)
        if not updates:
            return SegmentResponse.model_validate(segment)

        is_dynamic = segment.type == SegmentType.DYNAMIC.value
        name = (data.name or "").strip()

        if "name" in updates and not name:
            raise ValidationError("Segment name is required")
        if "rules" in updates:
            if not is_dynamic and data.rules is not None:
                raise ValidationError("Manual segments cannot have rules")
            if is_dynamic and not _has_conditions(data.rules):
                raise ValidationError("Dynamic segments require at least one rule condition")
        if "evaluation_schedule" in updates and not is_dynamic and data.evaluation_schedule is not None:
            raise ValidationError("Only dynamic segments can have an evaluation schedule")

        if "name" in updates:
            segment.name = name
        if "description" in updates:
            segment.description = _clean_description(data.description)
        if "color" in updates and data.color:
            segment.color = data.color
        if "rules" in updates:
            segment.rules = _dump(data.rules)
        if "evaluation_schedule" in updates:
            segment.evaluation_schedule = _dump(data.evaluation_schedule)

        await self._commit()
        await self.db.refresh(segment)
        return SegmentResponse.model_validate(segment)

    async def delete_segment(self, segment_id: str) -> None:
        """Soft-delete a segment, drop its memberships and its evaluation schedule."""
        segment = await self._require_segment(segment_id)

        from app.tasks.segment_scheduler import remove_segment_evaluation_schedule

        try:
            remove_segment_evaluation_schedule(segment_id)
        except Exception:
            logger.exception("Failed to remove evaluation schedule for segment %s", segment_id)

        await self._execute_and_commit([
            delete(UserSegment).where(UserSegment.segment_id == segment_id),
            update(Segment)
            .where(Segment.id == segment_id)
            .values(deleted_at=datetime.now(timezone.utc)),
        ])
        await self.db.refresh(segment)
        logger.info("Deleted segment %s", segment_id)

    # ============================================
    # Manual Membership Management
    # ============================================

    async def assign_users_to_segment(self, segment_id: str, principal_ids: Sequence[str]) -> int:
        """Assign users to a manual segment. Existing members are skipped."""
        segment = await self._require_segment(segment_id)
        if segment.type != SegmentType.MANUAL.value:
            raise ForbiddenError("Cannot manually assign users to a dynamic segment")

        ids = _unique(principal_ids)
        if not ids:
            return 0

        await self._execute_and_commit(
            self._insert_memberships([
                {
                    "principal_id": pid,
                    "segment_id": segment_id,
                    "added_by": MembershipSource.MANUAL.value,
                }
                for pid in chunk
            ])
            for chunk in _chunks(ids)
        )
        return len(ids)

    async def remove_users_from_segment(self, segment_id: str, principal_ids: Sequence[str]) -> int:
        """Remove users from a manual segment."""
        segment = await self._require_segment(segment_id)
        if segment.type != SegmentType.MANUAL.value:
            raise ForbiddenError("Cannot manually remove users from a dynamic segment")

        ids = _unique(principal_ids)
        if not ids:
            return 0

        await self._execute_and_commit(
            delete(UserSegment).where(
                UserSegment.segment_id == segment_id,
                UserSegment.principal_id.in_(chunk),
            )
            for chunk in _chunks(ids)
        )
        return len(ids)

    # ============================================
    # Lookups
    # ============================================

    async def get_user_segments(self, principal_id: str) -> list[SegmentSummary]:
        """All active segments a principal belongs to."""
        result = await self.db.execute(
            select(Segment)
            .join(UserSegment, UserSegment.segment_id == Segment.id)
            .where(UserSegment.principal_id == principal_id, Segment.deleted_at.is_(None))
            .order_by(Segment.name)
        )
        return [SegmentSummary.model_validate(s) for s in result.scalars().all()]

    async def get_principal_ids_in_segments(self, segment_ids: Sequence[str]) -> Optional[set[str]]:
        """
        Principals belonging to any of the given segments.

        Returns None for an empty segment list, meaning "no filter".
        """
        if not segment_ids:
            return None

        result = await self.db.execute(
            select(UserSegment.principal_id).where(UserSegment.segment_id.in_(list(segment_ids)))
        )
        return {row[0] for row in result.all()}

    async def get_segment_members(self, segment_id: str) -> list[str]:
        """Principal IDs of every member, whatever added them."""
        result = await self.db.execute(
            select(UserSegment.principal_id)
            .where(UserSegment.segment_id == segment_id)
            .order_by(UserSegment.principal_id)
        )
        return [row[0] for row in result.all()]

    # ============================================
    # Dynamic Segment Evaluation
    # ============================================

    async def _current_dynamic_members(self, segment_id: str) -> set[str]:
        result = await self.db.execute(
            select(UserSegment.principal_id).where(
                UserSegment.segment_id == segment_id,
                UserSegment.added_by == MembershipSource.DYNAMIC.value,
            )
        )
        return {row[0] for row in result.all()}

    async def _apply_membership_diff(
        self, segment_id: str, to_add: list[str], to_remove: list[str]
    ) -> None:
        """Write inserts and deletes in one transaction."""
        for chunk in _chunks(to_add):
            await self.db.execute(
                self._insert_memberships([
                    {
                        "principal_id": pid,
                        "segment_id": segment_id,
                        "added_by": MembershipSource.DYNAMIC.value,
                    }
                    for pid in chunk
                ])
            )
        for chunk in _chunks(to_remove):
            await self.db.execute(
                delete(UserSegment).where(
                    UserSegment.segment_id == segment_id,
                    UserSegment.added_by == MembershipSource.DYNAMIC.value,
                    UserSegment.principal_id.in_(chunk),
                )
            )
        await self.db.commit()

    async def evaluate_dynamic_segment(
        self, segment_id: str, now: Optional[datetime] = None
    ) -> EvaluationResult:
        """
        Re-evaluate a dynamic segment and sync its stored membership.

        Args:
            segment_id: The segment to evaluate
            now: Reference time for age-based conditions

        Returns:
            Counts of principals added and removed
        """
        segment = await self._require_segment(segment_id)
        if segment.type != SegmentType.DYNAMIC.value:
            raise ValidationError("Segment is not dynamic")

        segment_name = segment.name
        rules = self._parse_rules(segment.rules)

        try:
            current_ids = await self._current_dynamic_members(segment_id)

            if not _has_conditions(rules):
                # No rules means no members by definition
                to_add: list[str] = []
                to_remove = sorted(current_ids)
                await self.db.execute(
                    delete(UserSegment).where(
                        UserSegment.segment_id == segment_id,
                        UserSegment.added_by == MembershipSource.DYNAMIC.value,
                    )
                )
                await self.db.commit()
            else:
                matching_ids = await resolve_matching_principals(self.db, rules, now)
                matching_set = set(matching_ids)
                to_add = [pid for pid in matching_ids if pid not in current_ids]
                to_remove = sorted(pid for pid in current_ids if pid not in matching_set)
                await self._apply_membership_diff(segment_id, to_add, to_remove)
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Evaluated segment %s (%s): added=%d, removed=%d",
            segment_id,
            segment_name,
            len(to_add),
            len(to_remove),
        )

        if to_add or to_remove:
            dispatch_notification(self.notifier, segment_name, to_add, to_remove)

        return EvaluationResult(segment_id=segment_id, added=len(to_add), removed=len(to_remove))

    async def evaluate_all_dynamic_segments(
        self, now: Optional[datetime] = None
    ) -> list[EvaluationResult]:
        """
        Evaluate every active dynamic segment, one after another.

        A segment that fails is logged and left out of the results; the
        remaining segments are still evaluated.
        """
        result = await self.db.execute(
            select(Segment.id)
            .where(
                Segment.type == SegmentType.DYNAMIC.value,
                Segment.deleted_at.is_(None),
            )
            .order_by(Segment.created_at, Segment.id)
        )
        segment_ids = [row[0] for row in result.all()]

        results = []
        for segment_id in segment_ids:
            try:
                results.append(await self.evaluate_dynamic_segment(segment_id, now))
            except Exception:
                logger.error("Evaluation failed for segment %s", segment_id, exc_info=True)

        logger.info("Evaluated %d/%d dynamic segments", len(results), len(segment_ids))
        return results
