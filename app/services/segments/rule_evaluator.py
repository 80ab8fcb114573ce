"""
Segment Rule Evaluator

Combines compiled conditions and runs them as one query, so the user table
is filtered by the database instead of being loaded into the process.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.principal import Principal, END_USER_ROLE
from app.models.user import User
from app.schemas.segment import RuleMatch, SegmentRules
from app.services.segments.condition_compiler import Predicate, compile_condition

logger = logging.getLogger(__name__)


def build_rules_predicate(
    rules: Optional[SegmentRules], now: Optional[datetime] = None
) -> Optional[Predicate]:
    """
    Compile and combine a rule set.

    Unsupported conditions are dropped. Returns None when nothing usable is
    left, which callers must treat as "matches nobody", never "matches all".
    """
    if rules is None:
        return None

    now = now or datetime.now(timezone.utc)
    predicates = [
        predicate
        for predicate in (compile_condition(c, now) for c in rules.conditions)
        if predicate is not None
    ]
    if not predicates:
        return None

    if rules.match == RuleMatch.ANY:
        return or_(*predicates)
    return and_(*predicates)


def matching_principals_query(predicate: Predicate):
    """Portal end-users with a linked user record that satisfy the predicate."""
    return (
        select(Principal.id)
        .join(User, User.id == Principal.user_id)
        .where(
            Principal.role == END_USER_ROLE,
            Principal.user_id.is_not(None),
            predicate,
        )
        .order_by(Principal.id)
    )


async def resolve_matching_principals(
    db: AsyncSession, rules: Optional[SegmentRules], now: Optional[datetime] = None
) -> list[str]:
    """
    Evaluate a rule set and return matching principal IDs.

    Args:
        db: Database session
        rules: The rule set to evaluate
        now: Reference time for age-based conditions

    Returns:
        Matching principal IDs in ascending order (empty when no condition compiles)
    """
    predicate = build_rules_predicate(rules, now)
    if predicate is None:
        logger.debug("Rule set has no usable conditions, matching nobody")
        return []

    result = await db.execute(matching_principals_query(predicate))
    return [row[0] for row in result.all()]
