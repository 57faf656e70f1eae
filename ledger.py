from sqlalchemy import update
from sqlalchemy.orm import Session

from models import Allocation


def apply_allocation_delta(session: Session, allocation_id: str, delta: int) -> None:
    """Add ``delta`` to an allocation's running total in a single UPDATE.

    This is the only write path for ``Allocation.current_amount``.
    """
    if not delta:
        return
    session.execute(
        update(Allocation)
        .where(Allocation.id == allocation_id)
        .values(current_amount=Allocation.current_amount + delta)
        .execution_options(synchronize_session="fetch")
    )
