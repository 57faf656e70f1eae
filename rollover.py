import logging
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger import apply_allocation_delta
from models import (
    Allocation,
    AllocationKind,
    AllocationLink,
    AllocationPeriod,
    LinkSource,
)
from periods import local_today


logger = logging.getLogger(__name__)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int, *, desired_day: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(desired_day, days_in_month(year, month))
    return date(year, month, day)


def next_period_start(
    period: AllocationPeriod, from_date: date, *, anchor_day: Optional[int] = None
) -> date:
    """Start of the period following the one that began on ``from_date``.

    Monthly and yearly periods keep ``anchor_day``, snapping to the last day
    of shorter months.
    """
    anchor_day = anchor_day or from_date.day
    if period == AllocationPeriod.weekly:
        return from_date + timedelta(weeks=1)
    if period == AllocationPeriod.monthly:
        return _add_months(from_date, 1, desired_day=anchor_day)
    if period == AllocationPeriod.yearly:
        return _add_months(from_date, 12, desired_day=anchor_day)
    raise ValueError(f"Allocation period {period.value} does not recur")


def reset_amount(current: int, target: Optional[int], rollover_enabled: bool) -> int:
    """Current amount an envelope carries into its next period.

    Without rollover the envelope starts empty. With rollover the unused part
    of the budget carries over as negative spending (and an overspend carries
    over as positive spending).
    """
    if not rollover_enabled:
        return 0
    return current - (target or 0)


class RolloverEngine:
    def __init__(self, session: Session) -> None:
        self.session = session

    def roll_envelope(self, envelope: Allocation, today: Optional[date] = None) -> int:
        today = today or local_today()
        if envelope.period == AllocationPeriod.none or not envelope.is_active:
            return 0
        if envelope.period_start is None:
            envelope.period_start = today
            return 0

        anchor_day = envelope.period_start.day
        iterations = 0
        max_iterations = 520  # ten years of weekly periods
        current = envelope.current_amount
        start = envelope.period_start
        while iterations < max_iterations:
            following = next_period_start(
                envelope.period, start, anchor_day=anchor_day
            )
            if following > today:
                break
            new_amount = reset_amount(
                current, envelope.target_amount, envelope.rollover_enabled
            )
            delta = new_amount - current
            if delta:
                self.session.add(
                    AllocationLink(
                        allocation_id=envelope.id,
                        source=LinkSource.period_reset,
                        amount=delta,
                        note=f"Period reset for {start.isoformat()}",
                    )
                )
                apply_allocation_delta(self.session, envelope.id, delta)
            current = new_amount
            start = following
            iterations += 1

        if iterations:
            envelope.period_start = start
            self.session.flush()
            self.session.refresh(envelope)
            logger.info(
                f"envelope_rollover: allocation={envelope.id} periods={iterations} "
                f"current_amount={envelope.current_amount} "
                f"period_start={start.isoformat()}"
            )
        return iterations

    def roll_due_envelopes(
        self, today: Optional[date] = None, *, owner_id: Optional[str] = None
    ) -> int:
        today = today or local_today()
        stmt = (
            select(Allocation)
            .where(
                Allocation.kind == AllocationKind.envelope,
                Allocation.is_active.is_(True),
                Allocation.period != AllocationPeriod.none,
            )
            .order_by(Allocation.period_start, Allocation.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if owner_id is not None:
            stmt = stmt.where(Allocation.owner_id == owner_id)
        envelopes = self.session.scalars(stmt).all()
        count = 0
        for envelope in envelopes:
            if self.roll_envelope(envelope, today):
                count += 1
        return count
