"""
Tests for SegmentService

Covers segment CRUD, manual membership, lookups and dynamic
reconciliation (diffing, provenance separation, notifications).
"""

from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.dml import Delete, Insert

from app.exceptions import ForbiddenError, NotFoundError, ValidationError
from app.models.segment import Segment, UserSegment
from app.models.user import User
from app.schemas.segment import (
    EvaluationSchedule,
    SegmentCreate,
    SegmentType,
    SegmentUpdate,
)
from app.services.segments import rule_evaluator
from app.services.segments.segment_service import SegmentService
from app.services.user_sync_notify import wait_for_pending_notifications
from app.tasks import segment_scheduler


def plan_rules(*plans: str) -> dict:
    return {
        "match": "all",
        "conditions": [{"attribute": "plan", "operator": "in", "value": list(plans)}],
    }


async def members(db: AsyncSession, segment_id: str, added_by: str = None) -> set[str]:
    query = select(UserSegment.principal_id).where(UserSegment.segment_id == segment_id)
    if added_by:
        query = query.where(UserSegment.added_by == added_by)
    result = await db.execute(query)
    return {row[0] for row in result.all()}


async def set_plan(db: AsyncSession, principal, plan: str):
    await db.execute(
        update(User).where(User.id == principal.user_id).values(metadata_json={"plan": plan})
    )
    await db.commit()


# ============================================
# Fixtures
# ============================================


@pytest_asyncio.fixture
async def service(test_db: AsyncSession, notifier: AsyncMock):
    yield SegmentService(test_db, notifier=notifier)
    await wait_for_pending_notifications(timeout=5)


@pytest_asyncio.fixture
async def manual_segment(service: SegmentService):
    return await service.create_segment(SegmentCreate(name="Beta testers"))


@pytest_asyncio.fixture
async def enterprise_segment(service: SegmentService):
    return await service.create_segment(
        SegmentCreate.model_validate({
            "name": "Enterprise",
            "type": "dynamic",
            "rules": {
                "match": "all",
                "conditions": [{"attribute": "plan", "operator": "eq", "value": "enterprise"}],
            },
        })
    )


# ============================================
# CRUD
# ============================================


class TestSegmentCrud:

    @pytest.mark.asyncio
    async def test_create_manual_segment_defaults(self, service):
        segment = await service.create_segment(
            SegmentCreate(name="  VIPs  ", description="   ")
        )

        assert segment.name == "VIPs"
        assert segment.description is None
        assert segment.type == SegmentType.MANUAL
        assert segment.color == "#6b7280"
        assert segment.rules is None
        assert segment.evaluation_schedule is None

    @pytest.mark.asyncio
    async def test_manual_segment_drops_rules_and_schedule(self, service):
        segment = await service.create_segment(
            SegmentCreate.model_validate({
                "name": "Hand picked",
                "rules": plan_rules("pro"),
                "evaluationSchedule": {"pattern": "0 * * * *"},
            })
        )

        assert segment.rules is None
        assert segment.evaluation_schedule is None

    @pytest.mark.asyncio
    async def test_create_dynamic_segment_keeps_rules(self, service):
        segment = await service.create_segment(
            SegmentCreate.model_validate({
                "name": "Pro",
                "type": "dynamic",
                "color": "#ff0000",
                "rules": plan_rules("pro"),
                "evaluationSchedule": {"pattern": "*/15 * * * *"},
            })
        )

        assert segment.type == SegmentType.DYNAMIC
        assert segment.color == "#ff0000"
        assert segment.rules.conditions[0].value == ["pro"]
        assert segment.evaluation_schedule.pattern == "*/15 * * * *"

    @pytest.mark.asyncio
    async def test_dynamic_segment_requires_conditions(self, service):
        with pytest.raises(ValidationError):
            await service.create_segment(SegmentCreate(name="Empty", type="dynamic"))
        with pytest.raises(ValidationError):
            await service.create_segment(
                SegmentCreate.model_validate({
                    "name": "Empty",
                    "type": "dynamic",
                    "rules": {"match": "any", "conditions": []},
                })
            )

    @pytest.mark.asyncio
    async def test_blank_name_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.create_segment(SegmentCreate(name="   "))

    @pytest.mark.asyncio
    async def test_update_applies_only_present_fields(self, service, manual_segment):
        updated = await service.update_segment(
            manual_segment.id, SegmentUpdate(description="Early access users")
        )

        assert updated.name == "Beta testers"
        assert updated.description == "Early access users"

    @pytest.mark.asyncio
    async def test_update_rejects_rules_on_manual_segment(self, service, manual_segment):
        with pytest.raises(ValidationError):
            await service.update_segment(
                manual_segment.id, SegmentUpdate.model_validate({"rules": plan_rules("pro")})
            )

    @pytest.mark.asyncio
    async def test_update_rejects_emptying_dynamic_rules(self, service, enterprise_segment):
        with pytest.raises(ValidationError):
            await service.update_segment(
                enterprise_segment.id,
                SegmentUpdate.model_validate({"rules": {"match": "all", "conditions": []}}),
            )

        unchanged = await service.get_segment(enterprise_segment.id)
        assert len(unchanged.rules.conditions) == 1

    @pytest.mark.asyncio
    async def test_update_missing_segment(self, service):
        with pytest.raises(NotFoundError):
            await service.update_segment("missing", SegmentUpdate(name="x"))

    @pytest.mark.asyncio
    async def test_delete_is_soft_and_drops_memberships(
        self, test_db, service, manual_segment, make_principal
    ):
        principal = await make_principal()
        await service.assign_users_to_segment(manual_segment.id, [principal.id])

        await service.delete_segment(manual_segment.id)

        assert await service.get_segment(manual_segment.id) is None
        assert await members(test_db, manual_segment.id) == set()
        row = await test_db.get(Segment, manual_segment.id)
        assert row.deleted_at is not None
        assert manual_segment.id not in [s.id for s in await service.list_segments()]

    @pytest.mark.asyncio
    async def test_delete_removes_evaluation_schedule(self, service, enterprise_segment):
        segment_scheduler.upsert_segment_evaluation_schedule(
            enterprise_segment.id, EvaluationSchedule(pattern="0 * * * *")
        )

        await service.delete_segment(enterprise_segment.id)

        assert segment_scheduler.list_evaluation_schedules() == []

    @pytest.mark.asyncio
    async def test_delete_missing_segment(self, service):
        with pytest.raises(NotFoundError):
            await service.delete_segment("missing")

    @pytest.mark.asyncio
    async def test_list_segments_with_member_counts(self, service, manual_segment, make_principal):
        empty = await service.create_segment(SegmentCreate(name="Alpha"))
        a = await make_principal()
        b = await make_principal()
        await service.assign_users_to_segment(manual_segment.id, [a.id, b.id])

        segments = await service.list_segments()

        assert [s.name for s in segments] == ["Alpha", "Beta testers"]
        counts = {s.id: s.member_count for s in segments}
        assert counts == {empty.id: 0, manual_segment.id: 2}


# ============================================
# Manual Membership
# ============================================


class TestManualMembership:

    @pytest.mark.asyncio
    async def test_assign_is_idempotent(self, test_db, service, manual_segment, make_principal):
        a = await make_principal()
        b = await make_principal()

        assert await service.assign_users_to_segment(manual_segment.id, [a.id, b.id]) == 2
        assert await service.assign_users_to_segment(manual_segment.id, [a.id, b.id, a.id]) == 2

        assert await members(test_db, manual_segment.id, "manual") == {a.id, b.id}

    @pytest.mark.asyncio
    async def test_remove_members(self, test_db, service, manual_segment, make_principal):
        a = await make_principal()
        b = await make_principal()
        await service.assign_users_to_segment(manual_segment.id, [a.id, b.id])

        await service.remove_users_from_segment(manual_segment.id, [a.id, "not-a-member"])

        assert await members(test_db, manual_segment.id) == {b.id}

    @pytest.mark.asyncio
    async def test_dynamic_segments_reject_manual_changes(
        self, service, enterprise_segment, make_principal
    ):
        principal = await make_principal()

        with pytest.raises(ForbiddenError):
            await service.assign_users_to_segment(enterprise_segment.id, [principal.id])
        with pytest.raises(ForbiddenError):
            await service.remove_users_from_segment(enterprise_segment.id, [principal.id])

    @pytest.mark.asyncio
    async def test_assign_to_missing_segment(self, service):
        with pytest.raises(NotFoundError):
            await service.assign_users_to_segment("missing", ["p-1"])


# ============================================
# Lookups
# ============================================


class TestLookups:

    @pytest.mark.asyncio
    async def test_get_user_segments_skips_deleted(self, service, make_principal):
        principal = await make_principal()
        kept = await service.create_segment(SegmentCreate(name="Kept", color="#111111"))
        dropped = await service.create_segment(SegmentCreate(name="Dropped"))
        await service.assign_users_to_segment(kept.id, [principal.id])
        await service.assign_users_to_segment(dropped.id, [principal.id])
        await service.delete_segment(dropped.id)

        segments = await service.get_user_segments(principal.id)

        assert [(s.id, s.name, s.color) for s in segments] == [(kept.id, "Kept", "#111111")]

    @pytest.mark.asyncio
    async def test_principal_ids_in_segments(self, service, make_principal):
        a = await make_principal()
        b = await make_principal()
        c = await make_principal()
        first = await service.create_segment(SegmentCreate(name="First"))
        second = await service.create_segment(SegmentCreate(name="Second"))
        await service.assign_users_to_segment(first.id, [a.id, b.id])
        await service.assign_users_to_segment(second.id, [b.id, c.id])

        assert await service.get_principal_ids_in_segments([first.id, second.id]) == {a.id, b.id, c.id}
        assert await service.get_principal_ids_in_segments([first.id]) == {a.id, b.id}

    @pytest.mark.asyncio
    async def test_empty_segment_list_means_no_filter(self, service):
        assert await service.get_principal_ids_in_segments([]) is None

    @pytest.mark.asyncio
    async def test_unknown_segment_means_empty_set(self, service):
        assert await service.get_principal_ids_in_segments(["missing"]) == set()


# ============================================
# Dynamic Evaluation
# ============================================


class TestDynamicEvaluation:

    @pytest.mark.asyncio
    async def test_enterprise_reconciliation(
        self, test_db, service, notifier, enterprise_segment, make_principal
    ):
        e1 = await make_principal(metadata={"plan": "enterprise"})
        e2 = await make_principal(metadata={"plan": "enterprise"})
        e3 = await make_principal(metadata={"plan": "enterprise"})
        n1 = await make_principal(metadata={"plan": "free"})
        n2 = await make_principal(metadata={"plan": "pro"})

        first = await service.evaluate_dynamic_segment(enterprise_segment.id)
        assert (first.added, first.removed) == (3, 0)

        await set_plan(test_db, e1, "free")
        await set_plan(test_db, e2, "pro")
        await set_plan(test_db, n1, "enterprise")
        await set_plan(test_db, n2, "enterprise")
        await wait_for_pending_notifications()
        notifier.reset_mock()

        second = await service.evaluate_dynamic_segment(enterprise_segment.id)
        await wait_for_pending_notifications()

        assert (second.segment_id, second.added, second.removed) == (enterprise_segment.id, 2, 2)
        assert await members(test_db, enterprise_segment.id) == {e3.id, n1.id, n2.id}
        notifier.assert_awaited_once()
        name, added, removed = notifier.await_args.args
        assert name == "Enterprise"
        assert set(added) == {n1.id, n2.id}
        assert set(removed) == {e1.id, e2.id}

    @pytest.mark.asyncio
    async def test_reconciliation_converges_on_rule_change(
        self, test_db, service, make_principal
    ):
        a = await make_principal(metadata={"plan": "a"})
        b = await make_principal(metadata={"plan": "b"})
        c = await make_principal(metadata={"plan": "c"})
        segment = await service.create_segment(
            SegmentCreate.model_validate({"name": "Plans", "type": "dynamic", "rules": plan_rules("a", "b")})
        )

        await service.evaluate_dynamic_segment(segment.id)
        assert await members(test_db, segment.id) == {a.id, b.id}

        await service.update_segment(
            segment.id, SegmentUpdate.model_validate({"rules": plan_rules("b", "c")})
        )
        result = await service.evaluate_dynamic_segment(segment.id)

        assert (result.added, result.removed) == (1, 1)
        assert await members(test_db, segment.id, "dynamic") == {b.id, c.id}

    @pytest.mark.asyncio
    async def test_failed_write_leaves_membership_untouched(
        self, test_db, service, notifier, make_principal, monkeypatch
    ):
        a = await make_principal(metadata={"plan": "a"})
        await make_principal(metadata={"plan": "b"})
        segment = await service.create_segment(
            SegmentCreate.model_validate({"name": "Plans", "type": "dynamic", "rules": plan_rules("a")})
        )
        await service.evaluate_dynamic_segment(segment.id)
        await wait_for_pending_notifications()
        notifier.reset_mock()
        await service.update_segment(
            segment.id, SegmentUpdate.model_validate({"rules": plan_rules("b")})
        )

        original_execute = test_db.execute
        inserts = []

        async def failing_execute(statement, *args, **kwargs):
            if isinstance(statement, Delete):
                raise RuntimeError("connection lost")
            if isinstance(statement, Insert):
                inserts.append(statement)
            return await original_execute(statement, *args, **kwargs)

        monkeypatch.setattr(test_db, "execute", failing_execute)
        with pytest.raises(RuntimeError):
            await service.evaluate_dynamic_segment(segment.id)
        monkeypatch.undo()
        await wait_for_pending_notifications()

        assert inserts
        assert await members(test_db, segment.id) == {a.id}
        notifier.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unchanged_membership_sends_no_notification(
        self, service, notifier, enterprise_segment, make_principal
    ):
        await make_principal(metadata={"plan": "enterprise"})

        await service.evaluate_dynamic_segment(enterprise_segment.id)
        second = await service.evaluate_dynamic_segment(enterprise_segment.id)
        await wait_for_pending_notifications()

        assert (second.added, second.removed) == (0, 0)
        assert notifier.await_count == 1

    @pytest.mark.asyncio
    async def test_manual_rows_survive_evaluation(
        self, test_db, service, enterprise_segment, make_principal
    ):
        legacy = await make_principal(metadata={"plan": "free"})
        test_db.add(UserSegment(principal_id=legacy.id, segment_id=enterprise_segment.id, added_by="manual"))
        await test_db.commit()

        result = await service.evaluate_dynamic_segment(enterprise_segment.id)

        assert result.removed == 0
        assert await members(test_db, enterprise_segment.id, "manual") == {legacy.id}

    @pytest.mark.asyncio
    async def test_unsupported_rules_match_nobody(self, test_db, service, make_principal):
        await make_principal(email_verified=True)
        segment = await service.create_segment(
            SegmentCreate.model_validate({
                "name": "Broken",
                "type": "dynamic",
                "rules": {
                    "match": "all",
                    "conditions": [{"attribute": "email_verified", "operator": "gt", "value": True}],
                },
            })
        )

        result = await service.evaluate_dynamic_segment(segment.id)

        assert result.added == 0
        assert await members(test_db, segment.id) == set()

    @pytest.mark.asyncio
    async def test_empty_stored_rules_clear_membership(
        self, test_db, service, enterprise_segment, make_principal
    ):
        await make_principal(metadata={"plan": "enterprise"})
        await make_principal(metadata={"plan": "enterprise"})
        await service.evaluate_dynamic_segment(enterprise_segment.id)

        await test_db.execute(
            update(Segment)
            .where(Segment.id == enterprise_segment.id)
            .values(rules={"match": "all", "conditions": []})
        )
        await test_db.commit()
        test_db.expire_all()

        result = await service.evaluate_dynamic_segment(enterprise_segment.id)

        assert (result.added, result.removed) == (0, 2)
        assert await members(test_db, enterprise_segment.id) == set()

    @pytest.mark.asyncio
    async def test_manual_segment_cannot_be_evaluated(self, service, manual_segment):
        with pytest.raises(ValidationError):
            await service.evaluate_dynamic_segment(manual_segment.id)

    @pytest.mark.asyncio
    async def test_missing_segment(self, service):
        with pytest.raises(NotFoundError):
            await service.evaluate_dynamic_segment("missing")

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_fail_evaluation(
        self, test_db, enterprise_segment, make_principal
    ):
        principal = await make_principal(metadata={"plan": "enterprise"})
        failing = AsyncMock(side_effect=RuntimeError("webhook down"))

        result = await SegmentService(test_db, notifier=failing).evaluate_dynamic_segment(
            enterprise_segment.id
        )
        await wait_for_pending_notifications()

        assert result.added == 1
        failing.assert_awaited_once()
        assert await members(test_db, enterprise_segment.id) == {principal.id}


class TestEvaluateAll:

    @pytest.mark.asyncio
    async def test_evaluates_every_dynamic_segment(
        self, service, enterprise_segment, manual_segment, make_principal
    ):
        await make_principal(metadata={"plan": "enterprise"})
        await make_principal(metadata={"plan": "pro"})
        pro = await service.create_segment(
            SegmentCreate.model_validate({"name": "Pro", "type": "dynamic", "rules": plan_rules("pro")})
        )

        results = await service.evaluate_all_dynamic_segments()

        assert {(r.segment_id, r.added) for r in results} == {(enterprise_segment.id, 1), (pro.id, 1)}

    @pytest.mark.asyncio
    async def test_failing_segment_does_not_stop_batch(
        self, test_db, service, enterprise_segment, make_principal
    ):
        await make_principal(metadata={"plan": "enterprise"})
        await make_principal(metadata={"plan": "pro"})
        pro = await service.create_segment(
            SegmentCreate.model_validate({"name": "Pro", "type": "dynamic", "rules": plan_rules("pro")})
        )
        real_resolve = rule_evaluator.resolve_matching_principals

        async def flaky_resolve(db, rules, now=None):
            if rules.conditions[0].value == "enterprise":
                raise RuntimeError("query timeout")
            return await real_resolve(db, rules, now)

        with patch(
            "app.services.segments.segment_service.resolve_matching_principals",
            side_effect=flaky_resolve,
        ):
            results = await service.evaluate_all_dynamic_segments()

        assert [(r.segment_id, r.added) for r in results] == [(pro.id, 1)]
        assert await members(test_db, enterprise_segment.id) == set()
