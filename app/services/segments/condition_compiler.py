"""
Segment Condition Compiler

Turns one SegmentCondition into a SQLAlchemy boolean expression over
Principal joined to User. Every value ends up in a bound parameter; nothing
from the rule is spliced into SQL text.

An (attribute, operator) pair that has no meaning, or a value that cannot be
interpreted for the attribute, compiles to None. The rule evaluator drops
those conditions, and a rule set left with no conditions matches nobody.

ATTRIBUTES:
- email_domain: eq / neq / contains / starts_with / ends_with / in / is_set
- email_verified: eq / neq / is_set / is_not_set
- plan, metadata_key: text comparisons on the JSON metadata value,
  case-insensitive string operators, in, is_set / is_not_set
- created_at_days_ago: eq / neq / lt / lte / gt / gte on the principal's age
- post_count, vote_count, comment_count: relational operators on a correlated
  count; is_set means "at least one", is_not_set means "none"
"""

from __future__ import annotations

import logging
import math
import operator as op
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy import ColumnElement, and_, false, func, not_, or_, select

from app.models.activity import Comment, Post, Vote
from app.models.principal import Principal
from app.models.user import User
from app.schemas.segment import (
    SegmentAttribute,
    SegmentCondition,
    SegmentOperator,
    PRESENCE_OPERATORS,
)

logger = logging.getLogger(__name__)

Predicate = ColumnElement[bool]

LIKE_ESCAPE = "/"

RELATIONAL_OPERATORS: dict[SegmentOperator, Callable[[Any, Any], Any]] = {
    SegmentOperator.EQUALS: op.eq,
    SegmentOperator.NOT_EQUALS: op.ne,
    SegmentOperator.LESS_THAN: op.lt,
    SegmentOperator.LESS_THAN_OR_EQUALS: op.le,
    SegmentOperator.GREATER_THAN: op.gt,
    SegmentOperator.GREATER_THAN_OR_EQUALS: op.ge,
}

# (model, has soft delete)
ACTIVITY_SOURCES = {
    SegmentAttribute.POST_COUNT: (Post, True),
    SegmentAttribute.VOTE_COUNT: (Vote, False),
    SegmentAttribute.COMMENT_COUNT: (Comment, True),
}


# ============================================
# Value coercion
# ============================================


def _as_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, list):
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _as_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, (bool, list)):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _as_boolean(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes"):
            return True
        if lowered in ("false", "0", "no"):
            return False
    return None


def _as_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [text for text in (_as_text(v) for v in value) if text is not None]


def _escape_like(value: str) -> str:
    return (
        value.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


def _ilike(expr, pattern: str) -> Predicate:
    return expr.ilike(pattern, escape=LIKE_ESCAPE)


# ============================================
# Shared fragments
# ============================================


def _string_match(expr, operator: SegmentOperator, value: Any) -> Optional[Predicate]:
    """contains / starts_with / ends_with, case-insensitive."""
    text = _as_text(value)
    if text is None:
        return None
    escaped = _escape_like(text)
    if operator == SegmentOperator.CONTAINS:
        return _ilike(expr, f"%{escaped}%")
    if operator == SegmentOperator.STARTS_WITH:
        return _ilike(expr, f"{escaped}%")
    if operator == SegmentOperator.ENDS_WITH:
        return _ilike(expr, f"%{escaped}")
    return None


def _metadata_text(key: str):
    return User.metadata_json[key].as_string()


def _metadata_number(key: str):
    return User.metadata_json[key].as_float()


def _activity_count(attribute: SegmentAttribute):
    model, soft_delete = ACTIVITY_SOURCES[attribute]
    query = select(func.count(model.id)).where(model.principal_id == Principal.id)
    if soft_delete:
        query = query.where(model.deleted_at.is_(None))
    return query.correlate(Principal).scalar_subquery()


def _metadata_condition(
    field, numeric_field, condition: SegmentCondition
) -> Optional[Predicate]:
    """Text-valued metadata attribute (plan or an arbitrary key)."""
    operator = condition.operator
    value = condition.value

    if operator in PRESENCE_OPERATORS:
        return field.is_not(None) if operator == SegmentOperator.IS_SET else field.is_(None)

    if operator == SegmentOperator.IN:
        values = _as_list(value)
        return field.in_(values) if values else None

    string_match = _string_match(field, operator, value)
    if string_match is not None:
        return string_match

    compare = RELATIONAL_OPERATORS.get(operator)
    if compare is None:
        return None
    if numeric_field is not None and isinstance(value, (int, float)) and not isinstance(value, bool):
        return compare(numeric_field, value)
    text = _as_text(value)
    if text is None:
        return None
    return compare(field, text)


# ============================================
# Per-attribute compilers
# ============================================


def _compile_email_domain(condition: SegmentCondition, now: datetime) -> Optional[Predicate]:
    operator = condition.operator

    if operator in PRESENCE_OPERATORS:
        return User.email.is_not(None) if operator == SegmentOperator.IS_SET else User.email.is_(None)

    if operator == SegmentOperator.IN:
        domains = [d.strip().removeprefix("@").lower() for d in _as_list(condition.value)]
        domains = [d for d in domains if d]
        if not domains:
            return None
        return or_(*[_ilike(User.email, f"%@{_escape_like(d)}") for d in domains])

    text = _as_text(condition.value)
    if text is None:
        return None
    domain = _escape_like(text.strip().removeprefix("@"))
    if not domain:
        return None

    if operator == SegmentOperator.EQUALS:
        return _ilike(User.email, f"%@{domain}")
    if operator == SegmentOperator.NOT_EQUALS:
        return not_(_ilike(User.email, f"%@{domain}"))
    if operator == SegmentOperator.ENDS_WITH:
        return _ilike(User.email, f"%{domain}")
    # A single "@" separates local part and domain, so anything after it is the domain
    if operator == SegmentOperator.STARTS_WITH:
        return _ilike(User.email, f"%@{domain}%")
    if operator == SegmentOperator.CONTAINS:
        return _ilike(User.email, f"%@%{domain}%")
    return None


def _compile_email_verified(condition: SegmentCondition, now: datetime) -> Optional[Predicate]:
    operator = condition.operator
    if operator == SegmentOperator.IS_SET:
        return User.email_verified == True  # noqa: E712
    if operator == SegmentOperator.IS_NOT_SET:
        return User.email_verified == False  # noqa: E712

    expected = _as_boolean(condition.value)
    if expected is None:
        return None
    if operator == SegmentOperator.EQUALS:
        return User.email_verified == expected
    if operator == SegmentOperator.NOT_EQUALS:
        return User.email_verified != expected
    return None


def _compile_plan(condition: SegmentCondition, now: datetime) -> Optional[Predicate]:
    return _metadata_condition(_metadata_text("plan"), None, condition)


def _compile_metadata_key(condition: SegmentCondition, now: datetime) -> Optional[Predicate]:
    key = (condition.metadata_key or "").strip()
    if not key:
        return None
    return _metadata_condition(_metadata_text(key), _metadata_number(key), condition)


def _age_beyond_calendar(operator: SegmentOperator, older: bool) -> Predicate:
    """N days reaches past the representable date range.

    With a huge positive N every principal is younger than N days; with a
    huge negative N every principal is older.
    """
    created_at = Principal.created_at
    if older:
        always = (SegmentOperator.LESS_THAN, SegmentOperator.LESS_THAN_OR_EQUALS, SegmentOperator.NOT_EQUALS)
    else:
        always = (SegmentOperator.GREATER_THAN, SegmentOperator.GREATER_THAN_OR_EQUALS, SegmentOperator.NOT_EQUALS)
    return created_at.is_not(None) if operator in always else false()


def _compile_created_at_days_ago(condition: SegmentCondition, now: datetime) -> Optional[Predicate]:
    operator = condition.operator
    if operator not in RELATIONAL_OPERATORS:
        return None
    days = _as_number(condition.value)
    if days is None:
        return None

    created_at = Principal.created_at
    # age > N days  <=>  created before now - N days
    try:
        cutoff = now - timedelta(days=days)
        day_before = cutoff - timedelta(days=1)
    except OverflowError:
        return _age_beyond_calendar(operator, older=days > 0)

    if operator == SegmentOperator.GREATER_THAN:
        return created_at < cutoff
    if operator == SegmentOperator.GREATER_THAN_OR_EQUALS:
        return created_at <= cutoff
    if operator == SegmentOperator.LESS_THAN:
        return created_at > cutoff
    if operator == SegmentOperator.LESS_THAN_OR_EQUALS:
        return created_at >= cutoff

    # eq: the age in whole days is N, i.e. age falls in [N, N + 1) days
    same_day = and_(created_at > day_before, created_at <= cutoff)
    if operator == SegmentOperator.EQUALS:
        return same_day
    return or_(created_at <= day_before, created_at > cutoff)


def _compile_activity_count(condition: SegmentCondition, now: datetime) -> Optional[Predicate]:
    operator = condition.operator
    count = _activity_count(condition.attribute)

    if operator == SegmentOperator.IS_SET:
        return count > 0
    if operator == SegmentOperator.IS_NOT_SET:
        return count == 0

    compare = RELATIONAL_OPERATORS.get(operator)
    if compare is None:
        return None
    threshold = _as_number(condition.value)
    if threshold is None:
        return None
    return compare(count, threshold)


COMPILERS: dict[SegmentAttribute, Callable[[SegmentCondition, datetime], Optional[Predicate]]] = {
    SegmentAttribute.EMAIL_DOMAIN: _compile_email_domain,
    SegmentAttribute.EMAIL_VERIFIED: _compile_email_verified,
    SegmentAttribute.PLAN: _compile_plan,
    SegmentAttribute.METADATA_KEY: _compile_metadata_key,
    SegmentAttribute.CREATED_AT_DAYS_AGO: _compile_created_at_days_ago,
    SegmentAttribute.POST_COUNT: _compile_activity_count,
    SegmentAttribute.VOTE_COUNT: _compile_activity_count,
    SegmentAttribute.COMMENT_COUNT: _compile_activity_count,
}


def compile_condition(
    condition: SegmentCondition, now: Optional[datetime] = None
) -> Optional[Predicate]:
    """
    Compile a single condition.

    Args:
        condition: The condition to compile
        now: Reference time for age-based attributes (defaults to current UTC time)

    Returns:
        A boolean SQL expression, or None when the condition is not representable
    """
    compiler = COMPILERS.get(condition.attribute)
    if compiler is None:
        return None
    predicate = compiler(condition, now or datetime.now(timezone.utc))
    if predicate is None:
        logger.debug(
            "Skipping unsupported segment condition: %s %s",
            condition.attribute.value,
            condition.operator.value,
        )
    return predicate
