from datetime import date

from sqlalchemy import select

from ledger import apply_allocation_delta
from models import Allocation
from schemas import EnvelopeIn
from services import AllocationService

from conftest import OWNER


def _current(session, allocation_id):
    return session.scalar(
        select(Allocation.current_amount).where(Allocation.id == allocation_id)
    )


def test_apply_allocation_delta_increments_in_place(session):
    envelope = AllocationService(session, OWNER).create_envelope(
        EnvelopeIn(name="Food", target_amount=1_000), today=date(2026, 1, 1)
    )

    apply_allocation_delta(session, envelope.id, 250)
    apply_allocation_delta(session, envelope.id, -100)
    apply_allocation_delta(session, envelope.id, 0)
    session.commit()

    assert _current(session, envelope.id) == 150
    assert envelope.current_amount == 150


def test_rollover_shares_the_ledger_write_path():
    import rollover

    assert rollover.apply_allocation_delta is apply_allocation_delta
