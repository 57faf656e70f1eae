from datetime import date, datetime

import pytest
from sqlalchemy import update

from errors import InvalidInput
from models import Allocation, AllocationLink, TransactionType
from schemas import EnvelopeIn, GoalIn, TransactionIn
from services import AllocationService, LedgerService, TransactionService

from conftest import OWNER

TODAY = date(2026, 4, 15)


def _goal(session, **data):
    goal = AllocationService(session, OWNER).create_goal(GoalIn(name="Laptop", **data))
    session.execute(
        update(Allocation)
        .where(Allocation.id == goal.id)
        .values(created_at=datetime(2026, 1, 10, 4, 0))
    )
    session.commit()
    return goal


def _save(session, seed, goal, amount, on):
    TransactionService(session, OWNER).create(
        TransactionIn(
            type=TransactionType.income,
            amount=amount,
            category_id=seed.salary_id,
            account_id=seed.cash_id,
            date=on,
            allocation_id=goal.id,
        )
    )


def _history(session, seed, goal):
    _save(session, seed, goal, 20_000, date(2026, 3, 5))
    _save(session, seed, goal, 10_000, date(2026, 4, 2))
    link = LedgerService(session, OWNER).contribute_to_goal(goal.id, 6_000)
    session.execute(
        update(AllocationLink)
        .where(AllocationLink.id == link.id)
        .values(created_at=datetime(2026, 4, 10, 3, 0))
    )
    session.commit()


def test_stats_without_deadline(session, seed):
    goal = _goal(session, target_amount=100_000)
    _history(session, seed, goal)

    stats = AllocationService(session, OWNER).goal_savings_stats(goal.id, today=TODAY)

    assert stats == {
        "average_monthly_savings": 12_000,
        "current_month_savings": 16_000,
        "last_month_savings": 20_000,
        "projected_months_to_goal": 6,
        "required_monthly_savings": None,
    }


def test_stats_with_deadline(session, seed):
    goal = _goal(session, target_amount=100_000, deadline=date(2026, 8, 31))
    _history(session, seed, goal)

    stats = AllocationService(session, OWNER).goal_savings_stats(goal.id, today=TODAY)

    assert stats["projected_months_to_goal"] == 6
    assert stats["required_monthly_savings"] == 16_000


def test_reached_goal_needs_nothing_more(session):
    goal = _goal(session, target_amount=5_000, deadline=date(2026, 8, 31))
    LedgerService(session, OWNER).contribute_to_goal(goal.id, 5_000)

    stats = AllocationService(session, OWNER).goal_savings_stats(goal.id, today=TODAY)

    assert stats["projected_months_to_goal"] == 0
    assert stats["required_monthly_savings"] is None


def test_goal_without_target_has_no_projection(session):
    goal = _goal(session)

    stats = AllocationService(session, OWNER).goal_savings_stats(goal.id, today=TODAY)

    assert stats["average_monthly_savings"] == 0
    assert stats["projected_months_to_goal"] is None
    assert stats["required_monthly_savings"] is None


def test_envelopes_have_no_savings_stats(session):
    envelope = AllocationService(session, OWNER).create_envelope(
        EnvelopeIn(name="Food", target_amount=1_000), today=TODAY
    )
    with pytest.raises(InvalidInput):
        AllocationService(session, OWNER).goal_savings_stats(envelope.id)
