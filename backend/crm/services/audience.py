"""Audience evaluation against the customer table and segment insights."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from crm.models.customer import Customer
from crm.services.rules import RuleLike, build_filter

ACTIVE_STATUS = "active"


def round_half_up(value: float, ndigits: int = 0) -> float:
    """Round halves away from zero (``2.345 -> 2.35``), unlike ``round``."""

    quantum = Decimal(1).scaleb(-ndigits)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def audience_filter(rules: Iterable[RuleLike]) -> ColumnElement[bool]:
    """Grouped rule filter restricted to active customers."""

    return and_(build_filter(rules), Customer.status == ACTIVE_STATUS)


async def evaluate_audience(session: AsyncSession, rules: Iterable[RuleLike]) -> List[Customer]:
    """Every active customer matching ``rules``, ordered by id."""

    stmt = select(Customer).where(audience_filter(rules)).order_by(Customer.id)
    return list((await session.execute(stmt)).scalars().all())


async def count_audience(session: AsyncSession, rules: Iterable[RuleLike]) -> int:
    stmt = select(func.count()).select_from(Customer).where(audience_filter(rules))
    return int((await session.execute(stmt)).scalar_one())


async def sample_audience(
    session: AsyncSession, rules: Iterable[RuleLike], limit: int = 5
) -> List[Customer]:
    stmt = select(Customer).where(audience_filter(rules)).order_by(Customer.id).limit(limit)
    return list((await session.execute(stmt)).scalars().all())


async def count_active_customers(session: AsyncSession) -> int:
    stmt = select(func.count()).select_from(Customer).where(Customer.status == ACTIVE_STATUS)
    return int((await session.execute(stmt)).scalar_one())


@dataclass(frozen=True)
class SegmentStatistics:
    size: int
    total_spending: float
    average_spending: float
    total_visits: int
    average_visits: float

    def rounded(self) -> dict:
        """Figures as reported to the dashboard: whole-unit spend, visits to 2 dp."""

        return {
            "total_spending": round_half_up(self.total_spending),
            "average_spending": round_half_up(self.average_spending),
            "total_visits": self.total_visits,
            "average_visits": round_half_up(self.average_visits, 2),
        }


async def segment_statistics(session: AsyncSession, rules: Iterable[RuleLike]) -> SegmentStatistics:
    """Size, spending and visit aggregates of a segment in one query.

    Averages are zero for an empty segment. Values are unrounded; see
    :meth:`SegmentStatistics.rounded`.
    """

    stmt = select(
        func.count(),
        func.coalesce(func.sum(Customer.total_spending), 0),
        func.coalesce(func.sum(Customer.visits), 0),
    ).where(audience_filter(rules))
    size, spending, visits = (await session.execute(stmt)).one()
    size = int(size or 0)
    spending = float(spending or 0)
    visits = int(visits or 0)
    return SegmentStatistics(
        size=size,
        total_spending=spending,
        average_spending=spending / size if size else 0.0,
        total_visits=visits,
        average_visits=visits / size if size else 0.0,
    )


def segment_percentage(segment_size: int, total_customers: int) -> float:
    if total_customers <= 0:
        return 0.0
    return segment_size / total_customers * 100


def build_insights(percentage: float, average_spending: float, average_visits: float) -> List[str]:
    """One observation each for reach, spend and visit frequency.

    Each table is scanned top-down; the first threshold the value exceeds
    wins, and the trailing ``None`` entry is the fallback.
    """

    return [
        _first_exceeded(percentage, _REACH_INSIGHTS),
        _first_exceeded(average_spending, _SPEND_INSIGHTS),
        _first_exceeded(average_visits, _VISIT_INSIGHTS),
    ]


def _first_exceeded(value: float, table) -> str:
    for threshold, text in table:
        if threshold is None or value > threshold:
            return text
    raise ValueError("insight table has no fallback")


_REACH_INSIGHTS = (
    (50, "This segment represents a large portion of your customer base"),
    (20, "This is a moderately sized segment with good reach potential"),
    (5, "This is a focused segment ideal for targeted campaigns"),
    (None, "This is a highly specific segment with limited reach"),
)
_SPEND_INSIGHTS = (
    (10000, "High-value customers with strong purchasing power"),
    (5000, "Medium-value customers with moderate spending"),
    (None, "Budget-conscious customers with lower spending"),
)
_VISIT_INSIGHTS = (
    (10, "Highly engaged customers with frequent visits"),
    (5, "Moderately engaged customers"),
    (None, "Low engagement customers who may need re-activation"),
)
