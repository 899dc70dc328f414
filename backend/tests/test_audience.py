from datetime import datetime

import pytest

from crm.services.audience import (
    build_insights,
    count_active_customers,
    count_audience,
    evaluate_audience,
    round_half_up,
    sample_audience,
    segment_percentage,
    segment_statistics,
)


@pytest.fixture
async def population(make_customer):
    """Three active customers and one inactive big spender."""

    return {
        "a": await make_customer(
            name="Asha Rao",
            email="asha@example.com",
            total_spending=500,
            visits=2,
            city="Mumbai",
            last_purchase_date=datetime(2024, 1, 15, 9, 30),
        ),
        "b": await make_customer(
            name="Bala Iyer",
            email="bala@example.com",
            total_spending=1500,
            visits=6,
            city="Pune",
            last_purchase_date=datetime(2024, 1, 15, 23, 59),
        ),
        "c": await make_customer(
            name="Chitra Das",
            email="chitra@shop.in",
            total_spending=5000,
            visits=12,
            city=None,
            last_purchase_date=datetime(2024, 1, 16, 0, 0),
        ),
        "d": await make_customer(
            name="Dev Sen",
            email="dev@example.com",
            total_spending=9000,
            visits=20,
            city="Mumbai",
            status="inactive",
        ),
    }


async def _ids(session, rules):
    return [c.id for c in await evaluate_audience(session, rules)]


def _rule(field, operator, value, logic="AND"):
    return {"field": field, "operator": operator, "value": value, "logic": logic}


@pytest.mark.anyio
async def test_empty_rules_select_every_active_customer(session, population):
    assert await _ids(session, []) == [population["a"], population["b"], population["c"]]
    assert await count_active_customers(session) == 3


@pytest.mark.anyio
@pytest.mark.parametrize("value", [1000, "1000", 1000.0])
async def test_numeric_rule_accepts_string_or_number(session, population, value):
    ids = await _ids(session, [_rule("totalSpending", ">", value)])
    assert ids == [population["b"], population["c"]]


@pytest.mark.anyio
async def test_non_numeric_value_matches_nothing(session, population):
    assert await _ids(session, [_rule("totalSpending", ">", "abc")]) == []


@pytest.mark.anyio
async def test_last_purchase_date_equality_matches_whole_day(session, population):
    ids = await _ids(session, [_rule("lastPurchaseDate", "=", "2024-01-15")])
    assert ids == [population["a"], population["b"]]


@pytest.mark.anyio
async def test_not_equal_keeps_customers_without_value(session, population):
    ids = await _ids(session, [_rule("city", "!=", "Mumbai")])
    assert ids == [population["b"], population["c"]]


@pytest.mark.anyio
async def test_contains_is_case_insensitive(session, population):
    assert await _ids(session, [_rule("email", "contains", "EXAMPLE")]) == [population["a"], population["b"]]
    assert await _ids(session, [_rule("email", "not_contains", "example")]) == [population["c"]]


@pytest.mark.anyio
async def test_unknown_operator_is_ignored(session, population):
    rules = [_rule("visits", "between", 3), _rule("visits", ">=", 6)]
    assert await _ids(session, rules) == [population["b"], population["c"]]


@pytest.mark.anyio
async def test_or_rules_form_a_single_disjunction(session, population):
    rules = [
        _rule("totalSpending", ">", 100),
        _rule("city", "=", "Mumbai", "OR"),
        _rule("visits", ">", 10, "OR"),
    ]
    # spending > 100 AND (city = Mumbai OR visits > 10)
    assert await _ids(session, rules) == [population["a"], population["c"]]


@pytest.mark.anyio
async def test_first_rule_or_tag_is_ignored(session, population):
    rules = [_rule("visits", ">", 5, "OR"), _rule("totalSpending", "<", 2000)]
    assert await _ids(session, rules) == [population["b"]]


@pytest.mark.anyio
async def test_inactive_customers_never_match(session, population):
    ids = await _ids(session, [_rule("totalSpending", ">", 8000)])
    assert ids == []


@pytest.mark.anyio
async def test_evaluation_is_repeatable(session, population):
    rules = [_rule("visits", ">", 1), _rule("city", "contains", "mum", "OR")]
    first = await _ids(session, rules)
    assert first == await _ids(session, rules)
    assert await count_audience(session, rules) == len(first)


@pytest.mark.anyio
async def test_sample_is_ordered_and_capped(session, population):
    sample = await sample_audience(session, [], limit=2)
    assert [c.id for c in sample] == [population["a"], population["b"]]


@pytest.mark.anyio
async def test_segment_statistics(session, population):
    stats = await segment_statistics(session, [_rule("totalSpending", ">", 1000)])
    assert stats.size == 2
    assert stats.total_spending == 6500
    assert stats.average_spending == 3250
    assert stats.total_visits == 18
    assert stats.average_visits == 9
    assert stats.rounded()["average_visits"] == 9.0


@pytest.mark.anyio
async def test_segment_statistics_for_empty_segment(session, population):
    stats = await segment_statistics(session, [_rule("visits", ">", 100)])
    assert (stats.size, stats.average_spending, stats.average_visits) == (0, 0.0, 0.0)


def test_segment_percentage():
    assert segment_percentage(1, 3) == pytest.approx(33.3333, rel=1e-4)
    assert segment_percentage(5, 0) == 0.0


def test_round_half_up():
    assert round_half_up(2.345, 2) == 2.35
    assert round_half_up(2.5) == 3.0
    assert round_half_up(3250.4) == 3250.0


@pytest.mark.parametrize(
    "percentage, spend, visits, expected",
    [
        (
            60,
            12000,
            11,
            [
                "This segment represents a large portion of your customer base",
                "High-value customers with strong purchasing power",
                "Highly engaged customers with frequent visits",
            ],
        ),
        (
            20,
            5000.5,
            5.01,
            [
                "This is a focused segment ideal for targeted campaigns",
                "Medium-value customers with moderate spending",
                "Moderately engaged customers",
            ],
        ),
        (
            5,
            5000,
            5,
            [
                "This is a highly specific segment with limited reach",
                "Budget-conscious customers with lower spending",
                "Low engagement customers who may need re-activation",
            ],
        ),
    ],
)
def test_build_insights_thresholds_are_exclusive(percentage, spend, visits, expected):
    assert build_insights(percentage, spend, visits) == expected
