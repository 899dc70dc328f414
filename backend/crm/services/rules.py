"""Audience rule compiler.

Turns the dashboard's ``{field, operator, value, logic}`` rules into
SQLAlchemy boolean expressions over :class:`~crm.models.customer.Customer`
and groups them into a single filter.

Grouping is intentionally flat: the first rule and every ``AND`` rule form
one conjunction, every later ``OR`` rule forms one disjunction, and the two
buckets are ANDed. ``[A, B(OR), C(AND)]`` therefore means ``A AND C AND B``,
not ``(A OR B) AND C``. Saved campaigns rely on this.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from loguru import logger
from sqlalchemy import String, and_, cast, false, not_, or_, true
from sqlalchemy.sql.elements import ColumnElement

from crm.models.customer import Customer
from crm.schemas.audience import AudienceRule


class ValueKind(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"


class CustomerField(str, Enum):
    """Customer attributes a rule may reference, keyed by their API name."""

    NAME = "name"
    EMAIL = "email"
    PHONE = "phone"
    TOTAL_SPENDING = "totalSpending"
    VISITS = "visits"
    LAST_PURCHASE_DATE = "lastPurchaseDate"
    REGISTRATION_DATE = "registrationDate"
    STATUS = "status"
    CITY = "city"
    STATE = "state"
    COUNTRY = "country"

    @property
    def column(self):
        return getattr(Customer, _FIELD_ATTRS[self][0])

    @property
    def kind(self) -> ValueKind:
        return _FIELD_ATTRS[self][1]

    @classmethod
    def lookup(cls, name: str) -> Optional["CustomerField"]:
        """Resolve an API name (``totalSpending``) or column name (``total_spending``)."""

        try:
            return cls(name)
        except ValueError:
            return _BY_ATTR.get(name)


_FIELD_ATTRS = {
    CustomerField.NAME: ("name", ValueKind.TEXT),
    CustomerField.EMAIL: ("email", ValueKind.TEXT),
    CustomerField.PHONE: ("phone", ValueKind.TEXT),
    CustomerField.TOTAL_SPENDING: ("total_spending", ValueKind.NUMBER),
    CustomerField.VISITS: ("visits", ValueKind.NUMBER),
    CustomerField.LAST_PURCHASE_DATE: ("last_purchase_date", ValueKind.DATE),
    CustomerField.REGISTRATION_DATE: ("registration_date", ValueKind.DATE),
    CustomerField.STATUS: ("status", ValueKind.TEXT),
    CustomerField.CITY: ("city", ValueKind.TEXT),
    CustomerField.STATE: ("state", ValueKind.TEXT),
    CustomerField.COUNTRY: ("country", ValueKind.TEXT),
}
_BY_ATTR = {attr: member for member, (attr, _kind) in _FIELD_ATTRS.items()}


class Operator(str, Enum):
    GT = ">"
    LT = "<"
    GTE = ">="
    LTE = "<="
    EQ = "="
    NE = "!="
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"


_ORDERING = {
    Operator.GT: lambda col, v: col > v,
    Operator.LT: lambda col, v: col < v,
    Operator.GTE: lambda col, v: col >= v,
    Operator.LTE: lambda col, v: col <= v,
}

RuleLike = Union[AudienceRule, Mapping[str, Any]]


@dataclass(frozen=True)
class CompiledRule:
    rule: AudienceRule
    condition: ColumnElement[bool]


# Value coercion ------------------------------------------------------------

def to_number(value: Any) -> Optional[float]:
    """Numeric reading of ``value`` or ``None`` when it has none."""

    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def to_datetime(value: Any) -> Optional[datetime]:
    """Naive UTC datetime for an ISO string, date, datetime or epoch millis."""

    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _coerce(kind: ValueKind, value: Any):
    if kind is ValueKind.NUMBER:
        return to_number(value)
    if kind is ValueKind.DATE:
        return to_datetime(value)
    return to_text(value)


# Compilation ---------------------------------------------------------------

def _as_rule(rule: RuleLike) -> AudienceRule:
    if isinstance(rule, AudienceRule):
        return rule
    return AudienceRule.model_validate(rule)


def _text_of(field: CustomerField):
    col = field.column
    return col if field.kind is ValueKind.TEXT else cast(col, String)


def compile_rule(rule: RuleLike) -> Optional[ColumnElement[bool]]:
    """Compile one rule to a boolean expression.

    Returns ``None`` for an unrecognised operator; callers drop such rules.
    Unknown fields and values that cannot be read as the field's type yield
    a condition matching nothing.
    """

    rule = _as_rule(rule)
    try:
        op = Operator(rule.operator)
    except ValueError:
        logger.bind(field=rule.field, operator=rule.operator).debug("audience_rule_skipped")
        return None

    field = CustomerField.lookup(rule.field)
    if field is None:
        return false()
    col = field.column

    if op in _ORDERING:
        # Ordering comparisons read the value as a number (or date for date
        # fields); text columns never satisfy a numeric comparison.
        if field.kind is ValueKind.TEXT:
            return false()
        target = _coerce(field.kind, rule.value)
        if target is None:
            return false()
        return _ORDERING[op](col, target)

    if op is Operator.EQ:
        if field is CustomerField.LAST_PURCHASE_DATE:
            day = to_datetime(rule.value)
            if day is None:
                return false()
            start = day.replace(hour=0, minute=0, second=0, microsecond=0)
            return and_(col >= start, col < start + timedelta(days=1))
        target = _coerce(field.kind, rule.value)
        if target is None:
            return false()
        return col == target

    if op is Operator.NE:
        target = _coerce(field.kind, rule.value)
        if target is None:
            # Every stored value differs from one that cannot exist.
            return true()
        return or_(col.is_(None), col != target)

    needle = to_text(rule.value)
    match = _text_of(field).icontains(needle, autoescape=True)
    if op is Operator.CONTAINS:
        return match
    return or_(col.is_(None), not_(match))


def compile_rules(rules: Iterable[RuleLike]) -> list[CompiledRule]:
    compiled: list[CompiledRule] = []
    for raw in rules:
        rule = _as_rule(raw)
        condition = compile_rule(rule)
        if condition is not None:
            compiled.append(CompiledRule(rule=rule, condition=condition))
    return compiled


def group_conditions(compiled: Sequence[CompiledRule]) -> ColumnElement[bool]:
    """Combine compiled rules into one filter.

    The first compiled rule always joins the AND bucket whatever its
    ``logic``; later rules go to the OR bucket only when ``logic == "OR"``.
    With no conditions the filter matches every row.
    """

    and_bucket: list[ColumnElement[bool]] = []
    or_bucket: list[ColumnElement[bool]] = []
    for position, item in enumerate(compiled):
        if position > 0 and item.rule.logic == "OR":
            or_bucket.append(item.condition)
        else:
            and_bucket.append(item.condition)

    if and_bucket and or_bucket:
        return and_(*and_bucket, or_(*or_bucket))
    if or_bucket:
        return or_(*or_bucket)
    if and_bucket:
        return and_(*and_bucket)
    return true()


def build_filter(rules: Iterable[RuleLike]) -> ColumnElement[bool]:
    return group_conditions(compile_rules(rules))
