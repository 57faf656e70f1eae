from datetime import date

import pytest

from errors import InvalidInput
from models import TransactionType
from periods import Period, month_period, resolve_period
from schemas import EnvelopeIn, GoalIn, TransactionIn
from services import (
    AllocationService,
    LedgerService,
    RecapService,
    StatisticsService,
    TransactionService,
    percent_change,
)

from conftest import OTHER_OWNER, OWNER, seed_owner

JANUARY = Period("custom", date(2026, 1, 1), date(2026, 1, 31))


def _add(session, seed, kind, amount, on, category_id=None, note=None):
    if category_id is None:
        category_id = seed.salary_id if kind == TransactionType.income else seed.food_id
    return TransactionService(session, OWNER).create(
        TransactionIn(
            type=kind,
            amount=amount,
            category_id=category_id,
            account_id=seed.cash_id,
            date=on,
            note=note,
        )
    )


@pytest.fixture
def history(session, seed):
    _add(session, seed, TransactionType.income, 50_000, date(2026, 1, 1))
    _add(session, seed, TransactionType.expense, 200, date(2026, 1, 5))
    _add(session, seed, TransactionType.expense, 100, date(2026, 1, 5))
    _add(
        session, seed, TransactionType.expense, 100, date(2026, 1, 20), seed.transport_id
    )
    _add(session, seed, TransactionType.expense, 900, date(2025, 12, 24), note="Gifts")
    _add(session, seed, TransactionType.income, 40_000, date(2025, 12, 15))
    other = seed_owner(session, OTHER_OWNER)
    TransactionService(session, OTHER_OWNER).create(
        TransactionIn(
            type=TransactionType.expense,
            amount=99_999,
            category_id=other.food_id,
            account_id=other.cash_id,
            date=date(2026, 1, 5),
        )
    )
    return seed


def test_percent_change_special_cases():
    assert percent_change(150, 100) == 50
    assert percent_change(50, 100) == -50
    assert percent_change(10, 0) == 100
    assert percent_change(0, 0) == 0
    assert percent_change(-5, 0) == 0


def test_spending_by_category(session, history):
    rows = StatisticsService(session, OWNER).spending_by_category(JANUARY)
    assert [(r["category_name"], r["amount"]) for r in rows] == [
        ("Food", 300),
        ("Transport", 100),
    ]
    assert rows[0]["percentage"] == 75
    assert rows[0]["transaction_count"] == 2
    assert rows[1]["percentage"] == 25


def test_top_categories_percentages_use_returned_rows(session, history):
    rows = StatisticsService(session, OWNER).top_categories(JANUARY, limit=1)
    assert len(rows) == 1
    assert rows[0]["category_name"] == "Food"
    assert rows[0]["percentage"] == 100


def test_daily_spending_fills_every_day(session, history):
    days = StatisticsService(session, OWNER).daily_spending(JANUARY)
    assert len(days) == 31
    by_date = {d["date"]: d["amount"] for d in days}
    assert by_date["2026-01-05"] == 300
    assert by_date["2026-01-20"] == 100
    assert by_date["2026-01-06"] == 0


def test_monthly_cash_flow_and_trends(session, history):
    service = StatisticsService(session, OWNER)
    flow = service.monthly_cash_flow(months=2, today=date(2026, 1, 18))
    assert [f["month"] for f in flow] == ["2025-12", "2026-01"]
    assert flow[0]["net_cash_flow"] == 40_000 - 900
    assert flow[1]["income"] == 50_000
    assert flow[1]["expenses"] == 400

    trends = service.spending_trends(months=2, today=date(2026, 1, 18))
    assert trends[1]["total_spending"] == 400
    assert trends[1]["average_daily_spend"] == round(400 / 31)
    assert trends[1]["transaction_count"] == 3


def test_period_comparison(session, history):
    comparison = StatisticsService(session, OWNER).period_comparison(JANUARY)
    assert comparison["current_period"]["expenses"] == 400
    assert comparison["previous_period"]["expenses"] == 900
    assert comparison["changes"]["income"] == 25
    assert comparison["changes"]["expenses"] == pytest.approx(-55.555, rel=1e-3)
    assert comparison["current_period"]["transaction_count"] == 4


def test_monthly_recap(session, history):
    envelope = AllocationService(session, OWNER).create_envelope(
        EnvelopeIn(name="Food", target_amount=1_000), today=date(2026, 1, 1)
    )
    goal = AllocationService(session, OWNER).create_goal(GoalIn(name="Fund"))
    LedgerService(session, OWNER).contribute_to_goal(goal.id, 2_000)
    done = AllocationService(session, OWNER).create_goal(GoalIn(name="Phone"))
    AllocationService(session, OWNER).complete(done.id)

    recap = RecapService(session, OWNER).monthly_recap("2026-01")

    assert recap["month_name"] == "January 2026"
    assert recap["days_in_month"] == 31
    assert recap["days_logged"] == 3
    assert recap["total_income"] == 50_000
    assert recap["total_expenses"] == 400
    assert recap["net_savings"] == 49_600
    assert recap["savings_rate"] == pytest.approx(99.2)
    assert recap["top_category"]["name"] == "Food"
    assert recap["top_category"]["percentage"] == 75
    assert recap["biggest_expense"]["amount"] == 200
    assert recap["transaction_count"] == 4
    assert recap["envelope_highlights"] == {
        "total_envelopes": 1,
        "under_budget_count": 1,
        "total_budget": envelope.target_amount,
        "total_spent": 0,
    }
    assert recap["goal_highlights"] == {
        "total_goals": 1,
        "total_saved": 2_000,
        "goals_completed": 1,
    }


def test_recap_months_newest_first(session, history):
    assert RecapService(session, OWNER).recap_months() == ["2026-01", "2025-12"]


def test_recap_rejects_bad_month(session):
    with pytest.raises(InvalidInput):
        RecapService(session, OWNER).monthly_recap("January")


def test_resolve_period_presets():
    today = date(2026, 3, 14)
    assert resolve_period(None, None, None, today=today) == Period(
        "this_month", date(2026, 3, 1), date(2026, 3, 31)
    )
    last = resolve_period("last-month", None, None, today=today)
    assert (last.start, last.end) == (date(2026, 2, 1), date(2026, 2, 28))
    quarter = resolve_period("last_3_months", None, None, today=today)
    assert quarter.start == date(2026, 1, 1)
    year = resolve_period("this-year", None, None, today=today)
    assert (year.start, year.end) == (date(2026, 1, 1), date(2026, 3, 31))
    custom = resolve_period("custom", "2026-01-10", "2026-01-20", today=today)
    assert custom.days == 11
    assert custom.previous() == Period("previous", date(2025, 12, 30), date(2026, 1, 9))

    with pytest.raises(ValueError):
        resolve_period("custom", "2026-02-01", "2026-01-01", today=today)
    with pytest.raises(ValueError):
        resolve_period("custom", None, "2026-01-01", today=today)
    with pytest.raises(ValueError):
        resolve_period("fortnight", None, None, today=today)
    assert month_period("2024-02").end == date(2024, 2, 29)


@pytest.mark.parametrize("months", [0, -3, 61, 100_000])
def test_month_window_reports_reject_out_of_range_months(session, months):
    service = StatisticsService(session, OWNER)
    with pytest.raises(InvalidInput, match="months"):
        service.monthly_cash_flow(months=months, today=date(2026, 1, 18))
    with pytest.raises(InvalidInput, match="months"):
        service.spending_trends(months=months, today=date(2026, 1, 18))


@pytest.mark.parametrize("limit", [0, -1, 51])
def test_top_categories_rejects_out_of_range_limit(session, limit):
    with pytest.raises(InvalidInput, match="limit"):
        StatisticsService(session, OWNER).top_categories(JANUARY, limit=limit)
