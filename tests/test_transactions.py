from datetime import date

import pytest
from sqlalchemy import func, select

from errors import Forbidden, InactiveAllocation, InvalidInput, NotFound, Unauthorized
from models import Allocation, AllocationLink, LinkSource, Transaction, TransactionType
from schemas import EnvelopeIn, GoalIn, TransactionIn, TransactionUpdate
from services import (
    AllocationService,
    LedgerAuditService,
    TransactionFilters,
    TransactionService,
)

from conftest import OTHER_OWNER, OWNER, seed_owner


def _envelope(session, name="Groceries", target=1000, category_ids=None):
    return AllocationService(session, OWNER).create_envelope(
        EnvelopeIn(name=name, target_amount=target, category_ids=category_ids or []),
        today=date(2026, 1, 1),
    )


def _expense(seed, amount, allocation_id=None, **overrides):
    data = {
        "type": TransactionType.expense,
        "amount": amount,
        "category_id": seed.food_id,
        "account_id": seed.cash_id,
        "date": date(2026, 1, 15),
        "allocation_id": allocation_id,
    }
    data.update(overrides)
    return TransactionIn(**data)


def _current(session, allocation_id) -> int:
    return session.scalar(
        select(Allocation.current_amount).where(Allocation.id == allocation_id)
    )


def _link_sum(session, allocation_id) -> int:
    return session.scalar(
        select(func.coalesce(func.sum(AllocationLink.amount), 0)).where(
            AllocationLink.allocation_id == allocation_id
        )
    )


def _links(session) -> list[AllocationLink]:
    return session.scalars(select(AllocationLink)).all()


def test_create_links_full_amount(session, seed):
    envelope = _envelope(session)
    txn = TransactionService(session, OWNER).create(_expense(seed, 500, envelope.id))

    assert _current(session, envelope.id) == 500
    links = _links(session)
    assert len(links) == 1
    assert links[0].transaction_id == txn.id
    assert links[0].amount == 500
    assert links[0].source == LinkSource.transaction
    assert txn.allocation_link.allocation_id == envelope.id


def test_amount_change_adjusts_by_difference(session, seed):
    envelope = _envelope(session)
    service = TransactionService(session, OWNER)
    txn = service.create(_expense(seed, 500, envelope.id))

    service.update(txn.id, TransactionUpdate(amount=300))

    assert _current(session, envelope.id) == 300
    assert _links(session)[0].amount == 300


def test_relink_moves_the_contribution(session, seed):
    x = _envelope(session, "X")
    y = _envelope(session, "Y")
    service = TransactionService(session, OWNER)
    txn = service.create(_expense(seed, 200, x.id))

    service.update(txn.id, TransactionUpdate(allocation_id=y.id))

    assert _current(session, x.id) == 0
    assert _current(session, y.id) == 200
    links = _links(session)
    assert len(links) == 1
    assert links[0].allocation_id == y.id


def test_relink_with_new_amount_uses_original_for_old_allocation(session, seed):
    x = _envelope(session, "X")
    y = _envelope(session, "Y")
    service = TransactionService(session, OWNER)
    txn = service.create(_expense(seed, 200, x.id))

    service.update(txn.id, TransactionUpdate(allocation_id=y.id, amount=750))

    assert _current(session, x.id) == 0
    assert _current(session, y.id) == 750


def test_remove_and_add_allocation(session, seed):
    envelope = _envelope(session)
    service = TransactionService(session, OWNER)
    txn = service.create(_expense(seed, 400, envelope.id))

    service.update(txn.id, TransactionUpdate(allocation_id=None, amount=900))
    assert _current(session, envelope.id) == 0
    assert _links(session) == []

    service.update(txn.id, TransactionUpdate(allocation_id=envelope.id))
    assert _current(session, envelope.id) == 900


def test_update_without_allocation_field_keeps_link(session, seed):
    envelope = _envelope(session)
    service = TransactionService(session, OWNER)
    txn = service.create(_expense(seed, 400, envelope.id))

    updated = service.update(txn.id, TransactionUpdate(note="lunch"))

    assert updated.note == "lunch"
    assert updated.allocation_link.allocation_id == envelope.id
    assert _current(session, envelope.id) == 400


def test_delete_subtracts_once(session, seed):
    envelope = _envelope(session)
    service = TransactionService(session, OWNER)
    keep = service.create(_expense(seed, 100, envelope.id))
    txn = service.create(_expense(seed, 250, envelope.id))

    service.delete(txn.id)
    assert _current(session, envelope.id) == 100

    with pytest.raises(NotFound):
        service.delete(txn.id)
    assert _current(session, envelope.id) == 100
    assert [link.transaction_id for link in _links(session)] == [keep.id]


def test_invariant_holds_after_mixed_operations(session, seed):
    a = _envelope(session, "A")
    b = _envelope(session, "B")
    service = TransactionService(session, OWNER)
    t1 = service.create(_expense(seed, 120, a.id))
    t2 = service.create(_expense(seed, 80, a.id))
    t3 = service.create(_expense(seed, 45, b.id))
    t4 = service.create(_expense(seed, 60))

    service.update(t1.id, TransactionUpdate(amount=20))
    service.update(t2.id, TransactionUpdate(allocation_id=b.id))
    service.update(t3.id, TransactionUpdate(allocation_id=None))
    service.update(t4.id, TransactionUpdate(allocation_id=a.id, amount=61))
    service.delete(t1.id)

    for allocation in (a, b):
        assert _current(session, allocation.id) == _link_sum(session, allocation.id)
    assert _current(session, a.id) == 61
    assert _current(session, b.id) == 80
    assert LedgerAuditService(session).audit(OWNER).is_clean


def test_expense_auto_assigns_matching_envelope(session, seed):
    envelope = _envelope(session, category_ids=[seed.food_id])
    service = TransactionService(session, OWNER)

    txn = service.create(_expense(seed, 300))
    other = service.create(_expense(seed, 50, category_id=seed.transport_id))

    assert txn.allocation_link.allocation_id == envelope.id
    assert other.allocation_link is None
    assert _current(session, envelope.id) == 300


def test_income_can_fund_a_goal(session, seed):
    goal = AllocationService(session, OWNER).create_goal(GoalIn(name="Fund"))
    TransactionService(session, OWNER).create(
        _expense(
            seed,
            10_000,
            goal.id,
            type=TransactionType.income,
            category_id=seed.salary_id,
        )
    )
    assert _current(session, goal.id) == 10_000


def test_create_rejects_inactive_allocation_without_writing(session, seed):
    envelope = _envelope(session)
    AllocationService(session, OWNER).pause(envelope.id)

    with pytest.raises(InactiveAllocation):
        TransactionService(session, OWNER).create(_expense(seed, 100, envelope.id))

    assert session.scalar(select(func.count(Transaction.id))) == 0
    assert _links(session) == []
    assert _current(session, envelope.id) == 0


def test_update_rejects_contribution_changes_on_inactive_allocation(session, seed):
    envelope = _envelope(session)
    other = _envelope(session, "Other")
    service = TransactionService(session, OWNER)
    linked = service.create(_expense(seed, 100, envelope.id))
    unlinked = service.create(_expense(seed, 70))
    AllocationService(session, OWNER).abandon(envelope.id)

    with pytest.raises(InactiveAllocation):
        service.update(linked.id, TransactionUpdate(amount=150))
    with pytest.raises(InactiveAllocation):
        service.update(unlinked.id, TransactionUpdate(allocation_id=envelope.id))

    session.refresh(linked)
    assert linked.amount == 100
    assert _current(session, envelope.id) == 100

    # Moving money out of an inactive allocation is always allowed.
    service.update(linked.id, TransactionUpdate(allocation_id=other.id))
    assert _current(session, envelope.id) == 0
    assert _current(session, other.id) == 100


def test_delete_from_inactive_allocation_is_allowed(session, seed):
    envelope = _envelope(session)
    service = TransactionService(session, OWNER)
    txn = service.create(_expense(seed, 100, envelope.id))
    AllocationService(session, OWNER).complete(envelope.id)

    service.delete(txn.id)
    assert _current(session, envelope.id) == 0


def test_ownership_checks(session, seed):
    other_seed = seed_owner(session, OTHER_OWNER)
    envelope = _envelope(session)
    service = TransactionService(session, OWNER)

    with pytest.raises(Forbidden):
        service.create(_expense(seed, 100, category_id=other_seed.food_id))
    with pytest.raises(Forbidden):
        TransactionService(session, OTHER_OWNER).create(
            _expense(other_seed, 100, envelope.id)
        )
    with pytest.raises(NotFound):
        service.create(_expense(seed, 100, "missing-allocation"))

    txn = service.create(_expense(seed, 100))
    with pytest.raises(Forbidden):
        TransactionService(session, OTHER_OWNER).delete(txn.id)
    with pytest.raises(Unauthorized):
        TransactionService(session, None)


def test_validation_rules(session, seed):
    service = TransactionService(session, OWNER)
    with pytest.raises(InvalidInput, match="greater than zero"):
        service.create(_expense(seed, 0))
    with pytest.raises(InvalidInput, match="Category type mismatch"):
        service.create(_expense(seed, 100, category_id=seed.salary_id))
    with pytest.raises(InvalidInput, match="destination"):
        service.create(_expense(seed, 100, type=TransactionType.transfer))
    with pytest.raises(InvalidInput, match="same account"):
        service.create(
            _expense(
                seed, 100, type=TransactionType.transfer, to_account_id=seed.cash_id
            )
        )
    with pytest.raises(InvalidInput, match="Only transfers"):
        service.create(_expense(seed, 100, to_account_id=seed.wallet_id))

    transfer = service.create(
        _expense(seed, 100, type=TransactionType.transfer, to_account_id=seed.wallet_id)
    )
    assert transfer.to_account_id == seed.wallet_id

    # Switching away from a transfer clears the destination account.
    updated = service.update(transfer.id, TransactionUpdate(type=TransactionType.expense))
    assert updated.to_account_id is None

    with pytest.raises(InvalidInput):
        service.update(transfer.id, TransactionUpdate(amount=-5))
    with pytest.raises(InvalidInput):
        service.update(transfer.id, TransactionUpdate(date=None))


def test_list_page_walks_every_row_once(session, seed):
    service = TransactionService(session, OWNER)
    created = []
    for day, amount in [(3, 100), (1, 200), (3, 300), (2, 400), (5, 500)]:
        created.append(service.create(_expense(seed, amount, date=date(2026, 1, day))))
    seen = []
    cursor = None
    pages = 0
    while True:
        page = service.list_page(cursor=cursor, limit=2)
        pages += 1
        seen.extend(page.items)
        if not page.has_more:
            assert page.next_cursor is None
            break
        cursor = page.next_cursor

    assert pages == 3
    assert sorted(t.id for t in seen) == sorted(t.id for t in created)
    dates = [t.date for t in seen]
    assert dates == sorted(dates, reverse=True)


def test_list_page_filters(session, seed):
    service = TransactionService(session, OWNER)
    service.create(_expense(seed, 100, note="Jollibee lunch"))
    service.create(_expense(seed, 200, category_id=seed.transport_id, note="Grab"))
    service.create(
        _expense(
            seed,
            5000,
            type=TransactionType.income,
            category_id=seed.salary_id,
            date=date(2026, 2, 1),
        )
    )

    by_type = service.list_page(TransactionFilters(type=TransactionType.income))
    assert [t.amount for t in by_type.items] == [5000]
    by_note = service.list_page(TransactionFilters(query="jollibee"))
    assert [t.amount for t in by_note.items] == [100]
    by_category = service.list_page(TransactionFilters(category_id=seed.transport_id))
    assert [t.amount for t in by_category.items] == [200]
    by_dates = service.list_page(
        TransactionFilters(date_from=date(2026, 1, 20), date_to=date(2026, 2, 28))
    )
    assert [t.amount for t in by_dates.items] == [5000]


def test_list_page_rejects_tampered_cursor(session, seed):
    service = TransactionService(session, OWNER)
    for _ in range(3):
        service.create(_expense(seed, 100))
    page = service.list_page(limit=1)
    with pytest.raises(InvalidInput, match="Invalid cursor"):
        service.list_page(cursor=page.next_cursor + "x", limit=1)
