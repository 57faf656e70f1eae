from __future__ import annotations

import json
import logging
import math
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterator, Optional

from itsdangerous import BadSignature, URLSafeSerializer
from sqlalchemy import func, select, tuple_, update
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from errors import Forbidden, InactiveAllocation, InvalidInput, NotFound, Unauthorized
from ledger import apply_allocation_delta
from models import (
    Account,
    Allocation,
    AllocationKind,
    AllocationLink,
    AllocationPeriod,
    AllocationStatus,
    Category,
    CategoryType,
    LinkSource,
    Transaction,
    TransactionType,
)
from money import format_minor_units
from periods import (
    Period,
    add_months,
    local_date,
    local_today,
    month_end,
    month_period,
    month_start,
    months_between,
)
from rollover import RolloverEngine
from schemas import (
    AccountIn,
    AllocationUpdate,
    CategoryIn,
    EnvelopeIn,
    GoalIn,
    TransactionIn,
    TransactionUpdate,
)


logger = logging.getLogger(__name__)

ENVELOPE_EDITABLE_FIELDS = frozenset(
    {"name", "icon", "color", "target_amount", "period", "rollover_enabled", "category_ids"}
)
GOAL_EDITABLE_FIELDS = frozenset({"name", "icon", "color", "target_amount", "deadline"})
CURSOR_SALT = "transaction-cursor"
MAX_PAGE_SIZE = 100
MAX_REPORT_MONTHS = 60
MAX_TOP_CATEGORIES = 50


def require_owner(owner_id: Optional[str]) -> str:
    if not owner_id:
        raise Unauthorized()
    return owner_id


def _check_owner(obj, owner_id: str, label: str):
    if obj is None:
        raise NotFound(f"{label} not found")
    if obj.owner_id != owner_id:
        raise Forbidden(f"{label} belongs to another user")
    return obj


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """Run a block as one database transaction: commit on success, roll back on error."""
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise


def percent_change(current: float, previous: float) -> float:
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return (current - previous) / previous * 100


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    account_id: Optional[str] = None
    category_id: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    query: Optional[str] = None


@dataclass
class TransactionPage:
    items: list[Transaction]
    has_more: bool
    next_cursor: Optional[str]


@dataclass
class AllocationDrift:
    allocation_id: str
    stored: int
    derived: int

    @property
    def drift(self) -> int:
        return self.stored - self.derived


@dataclass
class AuditReport:
    drifts: list[AllocationDrift] = field(default_factory=list)
    foreign_links: list[str] = field(default_factory=list)
    amount_mismatches: list[str] = field(default_factory=list)
    allocations_checked: int = 0

    @property
    def is_clean(self) -> bool:
        return not (self.drifts or self.foreign_links or self.amount_mismatches)


class AccountService:
    def __init__(self, session: Session, owner_id: Optional[str] = None) -> None:
        self.session = session
        self.owner_id = require_owner(owner_id)

    def list_all(self, include_archived: bool = False) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.owner_id == self.owner_id)
            .order_by(Account.name, Account.id)
        )
        if not include_archived:
            stmt = stmt.where(Account.is_archived.is_(False))
        return self.session.scalars(stmt).all()

    def get(self, account_id: str) -> Account:
        return _check_owner(
            self.session.get(Account, account_id), self.owner_id, "Account"
        )

    def create(self, data: AccountIn) -> Account:
        name = data.name.strip()
        if not name:
            raise InvalidInput("Account name cannot be empty")
        account = Account(
            owner_id=self.owner_id,
            name=name,
            type=data.type,
            currency=data.currency or get_settings().currency,
            initial_balance=data.initial_balance,
        )
        with atomic(self.session):
            self.session.add(account)
        self.session.refresh(account)
        return account

    def archive(self, account_id: str) -> None:
        with atomic(self.session):
            account = self.get(account_id)
            account.is_archived = True


class CategoryService:
    def __init__(self, session: Session, owner_id: Optional[str] = None) -> None:
        self.session = session
        self.owner_id = require_owner(owner_id)

    def list_all(
        self, type: Optional[CategoryType] = None, include_hidden: bool = False
    ) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.owner_id == self.owner_id)
            .order_by(Category.type, Category.name)
        )
        if type is not None:
            stmt = stmt.where(Category.type == type)
        if not include_hidden:
            stmt = stmt.where(Category.is_hidden.is_(False))
        return self.session.scalars(stmt).all()

    def get(self, category_id: str) -> Category:
        return _check_owner(
            self.session.get(Category, category_id), self.owner_id, "Category"
        )

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if not name:
            raise InvalidInput("Category name cannot be empty")
        existing = self.session.scalar(
            select(Category).where(
                Category.owner_id == self.owner_id,
                Category.type == data.type,
                func.lower(Category.name) == name.lower(),
            )
        )
        if existing:
            raise InvalidInput("Category already exists")
        category = Category(
            owner_id=self.owner_id,
            name=name,
            type=data.type,
            icon=data.icon,
            color=data.color,
        )
        with atomic(self.session):
            self.session.add(category)
        self.session.refresh(category)
        return category

    def hide(self, category_id: str) -> None:
        with atomic(self.session):
            category = self.get(category_id)
            category.is_hidden = True


class AllocationService:
    def __init__(self, session: Session, owner_id: Optional[str] = None) -> None:
        self.session = session
        self.owner_id = require_owner(owner_id)

    def get(self, allocation_id: str) -> Allocation:
        return _check_owner(
            self.session.get(Allocation, allocation_id), self.owner_id, "Allocation"
        )

    def list_all(
        self, kind: Optional[AllocationKind] = None, include_inactive: bool = False
    ) -> list[Allocation]:
        stmt = (
            select(Allocation)
            .where(Allocation.owner_id == self.owner_id)
            .order_by(Allocation.sort_order, Allocation.created_at, Allocation.id)
        )
        if kind is not None:
            stmt = stmt.where(Allocation.kind == kind)
        if not include_inactive:
            stmt = stmt.where(Allocation.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def _clean_name(self, name: Optional[str]) -> str:
        clean_name = (name or "").strip()
        if not clean_name:
            raise InvalidInput("Name cannot be empty")
        return clean_name

    def _check_target(self, target_amount: Optional[int], *, required: bool) -> None:
        if target_amount is None:
            if required:
                raise InvalidInput("Target amount is required")
            return
        if target_amount <= 0:
            raise InvalidInput("Target amount must be greater than zero")

    def _clean_category_ids(self, category_ids: list[str]) -> list[str]:
        cleaned: list[str] = []
        for category_id in category_ids:
            if category_id in cleaned:
                continue
            _check_owner(
                self.session.get(Category, category_id), self.owner_id, "Category"
            )
            cleaned.append(category_id)
        return cleaned

    def _next_sort_order(self, kind: AllocationKind) -> int:
        current = self.session.scalar(
            select(func.max(Allocation.sort_order)).where(
                Allocation.owner_id == self.owner_id, Allocation.kind == kind
            )
        )
        return (current or 0) + 1

    def create_envelope(self, data: EnvelopeIn, today: Optional[date] = None) -> Allocation:
        name = self._clean_name(data.name)
        self._check_target(data.target_amount, required=True)
        if data.period == AllocationPeriod.none:
            raise InvalidInput("Envelopes need a weekly, monthly or yearly period")
        with atomic(self.session):
            envelope = Allocation(
                owner_id=self.owner_id,
                kind=AllocationKind.envelope,
                name=name,
                icon=data.icon,
                color=data.color,
                target_amount=data.target_amount,
                current_amount=0,
                period=data.period,
                period_start=today or local_today(),
                rollover_enabled=data.rollover_enabled,
                category_ids=self._clean_category_ids(data.category_ids),
                is_active=True,
                status=AllocationStatus.active,
                sort_order=self._next_sort_order(AllocationKind.envelope),
            )
            self.session.add(envelope)
        self.session.refresh(envelope)
        logger.info(
            f"allocation_created: allocation={envelope.id} kind=envelope "
            f"target={envelope.target_amount} period={envelope.period.value}"
        )
        return envelope

    def create_goal(self, data: GoalIn) -> Allocation:
        name = self._clean_name(data.name)
        self._check_target(data.target_amount, required=False)
        with atomic(self.session):
            goal = Allocation(
                owner_id=self.owner_id,
                kind=AllocationKind.goal,
                name=name,
                icon=data.icon,
                color=data.color,
                target_amount=data.target_amount,
                current_amount=0,
                period=AllocationPeriod.none,
                deadline=data.deadline,
                category_ids=[],
                is_active=True,
                status=AllocationStatus.active,
                sort_order=self._next_sort_order(AllocationKind.goal),
            )
            self.session.add(goal)
        self.session.refresh(goal)
        logger.info(
            f"allocation_created: allocation={goal.id} kind=goal "
            f"target={goal.target_amount}"
        )
        return goal

    def update(self, allocation_id: str, data: AllocationUpdate) -> Allocation:
        fields = data.model_fields_set
        with atomic(self.session):
            allocation = self.get(allocation_id)
            permitted = (
                ENVELOPE_EDITABLE_FIELDS
                if allocation.kind == AllocationKind.envelope
                else GOAL_EDITABLE_FIELDS
            )
            rejected = sorted(fields - permitted)
            if rejected:
                raise InvalidInput(
                    f"Cannot change {', '.join(rejected)} on this {allocation.kind.value}"
                )

            if "name" in fields:
                allocation.name = self._clean_name(data.name)
            if "icon" in fields:
                allocation.icon = data.icon
            if "color" in fields:
                allocation.color = data.color
            if "target_amount" in fields:
                self._check_target(
                    data.target_amount,
                    required=allocation.kind == AllocationKind.envelope,
                )
                allocation.target_amount = data.target_amount
            if "period" in fields:
                if data.period in (None, AllocationPeriod.none):
                    raise InvalidInput(
                        "Envelopes need a weekly, monthly or yearly period"
                    )
                allocation.period = data.period
            if "rollover_enabled" in fields:
                allocation.rollover_enabled = bool(data.rollover_enabled)
            if "category_ids" in fields:
                allocation.category_ids = self._clean_category_ids(
                    data.category_ids or []
                )
            if "deadline" in fields:
                allocation.deadline = data.deadline
        self.session.refresh(allocation)
        return allocation

    def _set_status(self, allocation_id: str, status: AllocationStatus) -> Allocation:
        with atomic(self.session):
            allocation = self.get(allocation_id)
            if allocation.status in (
                AllocationStatus.abandoned,
                AllocationStatus.completed,
            ):
                raise InvalidInput(f"Allocation is already {allocation.status.value}")
            if status == AllocationStatus.active:
                if allocation.status != AllocationStatus.paused:
                    raise InvalidInput("Only paused allocations can be resumed")
                stamp_key = "resumedAt"
            else:
                stamp_key = f"{status.value}At"

            meta = json.loads(allocation.config_json) if allocation.config_json else {}
            meta["status"] = status.value
            meta[stamp_key] = datetime.utcnow().isoformat()
            allocation.config_json = json.dumps(meta)
            allocation.status = status
            allocation.is_active = status == AllocationStatus.active
        self.session.refresh(allocation)
        logger.info(
            f"allocation_status: allocation={allocation.id} status={status.value}"
        )
        return allocation

    def pause(self, allocation_id: str) -> Allocation:
        return self._set_status(allocation_id, AllocationStatus.paused)

    def resume(self, allocation_id: str) -> Allocation:
        return self._set_status(allocation_id, AllocationStatus.active)

    def abandon(self, allocation_id: str) -> Allocation:
        return self._set_status(allocation_id, AllocationStatus.abandoned)

    def complete(self, allocation_id: str) -> Allocation:
        return self._set_status(allocation_id, AllocationStatus.completed)

    def suggest_envelope(self, category_id: str) -> Optional[Allocation]:
        for envelope in self.list_all(AllocationKind.envelope):
            if category_id in (envelope.category_ids or []):
                return envelope
        return None

    def contributions(self, allocation_id: str) -> list[AllocationLink]:
        allocation = self.get(allocation_id)
        stmt = (
            select(AllocationLink)
            .options(joinedload(AllocationLink.transaction))
            .where(AllocationLink.allocation_id == allocation.id)
            .order_by(AllocationLink.created_at.desc(), AllocationLink.id.desc())
        )
        return self.session.scalars(stmt).all()

    def goal_savings_stats(
        self, goal_id: str, today: Optional[date] = None
    ) -> dict[str, Optional[int]]:
        """Savings pace for a goal, read from its contribution links.

        A transaction-backed contribution counts on the transaction's date, a
        manual one on the day it was recorded. Projections need a target and
        are ``None`` without one.
        """
        goal = self.get(goal_id)
        if goal.kind != AllocationKind.goal:
            raise InvalidInput("Savings stats are only available for goals")
        today = today or local_today()
        this_month = month_start(today)
        last_month = add_months(today, -1)

        current_month_savings = last_month_savings = 0
        for link in self.contributions(goal.id):
            if link.source not in (LinkSource.manual, LinkSource.transaction):
                continue
            if link.transaction is not None:
                on = link.transaction.date
            else:
                on = local_date(link.created_at)
            if month_start(on) == this_month:
                current_month_savings += link.amount
            elif month_start(on) == last_month:
                last_month_savings += link.amount

        months_active = max(1, months_between(local_date(goal.created_at), today))
        average = goal.current_amount / months_active

        projected_months = required_monthly = None
        if goal.target_amount is not None:
            remaining = max(0, goal.target_amount - goal.current_amount)
            if remaining == 0:
                projected_months = 0
            elif average > 0:
                projected_months = math.ceil(remaining / average)
            if goal.deadline is not None and remaining > 0:
                months_left = max(1, months_between(today, goal.deadline))
                required_monthly = math.ceil(remaining / months_left)

        return {
            "average_monthly_savings": round(average),
            "current_month_savings": current_month_savings,
            "last_month_savings": last_month_savings,
            "projected_months_to_goal": projected_months,
            "required_monthly_savings": required_monthly,
        }


class LedgerService:
    """Writes to the allocation ledger.

    Every change to ``current_amount`` goes through a link row plus an atomic
    increment, so the running total always equals the sum of its links.
    Callers own the surrounding database transaction.
    """

    def __init__(self, session: Session, owner_id: Optional[str] = None) -> None:
        self.session = session
        self.owner_id = require_owner(owner_id)

    def _lock_allocation(self, allocation_id: str, *, check_owner: bool = True) -> Allocation:
        stmt = (
            select(Allocation)
            .where(Allocation.id == allocation_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        allocation = self.session.scalar(stmt)
        if check_owner:
            return _check_owner(allocation, self.owner_id, "Allocation")
        if allocation is None:
            raise NotFound("Allocation not found")
        return allocation

    def _lock_allocations(self, ids: set[str]) -> dict[str, Allocation]:
        # Sorted order so two writers never wait on each other's rows.
        return {
            allocation_id: self._lock_allocation(allocation_id, check_owner=False)
            for allocation_id in sorted(ids)
        }

    @staticmethod
    def _require_active(allocation: Allocation) -> None:
        if not allocation.is_active:
            raise InactiveAllocation(
                f"{allocation.name} is {allocation.status.value} and cannot take contributions"
            )

    def _apply(self, allocation: Allocation, delta: int) -> None:
        apply_allocation_delta(self.session, allocation.id, delta)

    def link_for(self, transaction_id: str) -> Optional[AllocationLink]:
        return self.session.scalar(
            select(AllocationLink).where(AllocationLink.transaction_id == transaction_id)
        )

    def link_transaction(
        self, txn: Transaction, allocation: Allocation, amount: int
    ) -> AllocationLink:
        link = AllocationLink(
            allocation_id=allocation.id,
            transaction_id=txn.id,
            source=LinkSource.transaction,
            amount=amount,
        )
        self.session.add(link)
        self.session.flush()
        self._apply(allocation, amount)
        self.session.expire(txn, ["allocation_link"])
        logger.info(
            f"ledger_contribution: allocation={allocation.id} delta={amount} "
            f"source=transaction transaction={txn.id}"
        )
        return link

    def unlink_transaction(self, txn: Transaction, link: AllocationLink) -> None:
        allocation_id = link.allocation_id
        amount = link.amount
        self.session.delete(link)
        self.session.flush()
        apply_allocation_delta(self.session, allocation_id, -amount)
        self.session.expire(txn, ["allocation_link"])
        logger.info(
            f"ledger_contribution: allocation={allocation_id} delta={-amount} "
            f"source=transaction transaction={txn.id} action=unlink"
        )

    def relink_amount(self, link: AllocationLink, new_amount: int) -> None:
        delta = new_amount - link.amount
        if not delta:
            return
        link.amount = new_amount
        self.session.flush()
        apply_allocation_delta(self.session, link.allocation_id, delta)
        logger.info(
            f"ledger_contribution: allocation={link.allocation_id} delta={delta} "
            f"source=transaction transaction={link.transaction_id} action=amount_change"
        )

    def contribute_to_goal(
        self, goal_id: str, amount: int, note: Optional[str] = None
    ) -> AllocationLink:
        if amount <= 0:
            raise InvalidInput("Amount must be greater than zero")
        with atomic(self.session):
            goal = self._lock_allocation(goal_id)
            if goal.kind != AllocationKind.goal:
                raise InvalidInput("Contributions can only be added to goals")
            self._require_active(goal)
            link = AllocationLink(
                allocation_id=goal.id,
                source=LinkSource.manual,
                amount=amount,
                note=note,
            )
            self.session.add(link)
            self.session.flush()
            self._apply(goal, amount)
        self.session.refresh(goal)
        logger.info(
            f"ledger_contribution: allocation={goal.id} delta={amount} source=manual"
        )
        return link

    def transfer_budget(
        self, source_id: str, target_id: str, amount: int
    ) -> tuple[Allocation, Allocation]:
        """Move budget capacity between two envelopes.

        Only ``target_amount`` changes; spent totals and links stay as they are.
        """
        if source_id == target_id:
            raise InvalidInput("Cannot transfer to the same envelope")
        if amount <= 0:
            raise InvalidInput("Amount must be greater than zero")

        with atomic(self.session):
            locked = self._lock_allocations({source_id, target_id})
            source = _check_owner(locked[source_id], self.owner_id, "Allocation")
            target = _check_owner(locked[target_id], self.owner_id, "Allocation")
            for allocation in (source, target):
                if allocation.kind != AllocationKind.envelope:
                    raise InvalidInput("Budget can only be transferred between envelopes")
            self._require_active(source)
            self._require_active(target)
            if amount > (source.target_amount or 0):
                raise InvalidInput("Insufficient budget in source envelope")

            self.session.execute(
                update(Allocation)
                .where(Allocation.id == source.id)
                .values(target_amount=Allocation.target_amount - amount)
                .execution_options(synchronize_session="fetch")
            )
            self.session.execute(
                update(Allocation)
                .where(Allocation.id == target.id)
                .values(target_amount=func.coalesce(Allocation.target_amount, 0) + amount)
                .execution_options(synchronize_session="fetch")
            )
        self.session.refresh(source)
        self.session.refresh(target)
        logger.info(
            f"ledger_transfer: source={source.id} target={target.id} amount={amount}"
        )
        return source, target


class TransactionService:
    def __init__(self, session: Session, owner_id: Optional[str] = None) -> None:
        self.session = session
        self.owner_id = require_owner(owner_id)
        self.ledger = LedgerService(session, self.owner_id)

    def _validate_refs(
        self,
        type: TransactionType,
        category_id: str,
        account_id: str,
        to_account_id: Optional[str],
    ) -> None:
        category = _check_owner(
            self.session.get(Category, category_id), self.owner_id, "Category"
        )
        if type != TransactionType.transfer and category.type.value != type.value:
            raise InvalidInput("Category type mismatch")
        _check_owner(self.session.get(Account, account_id), self.owner_id, "Account")
        if type == TransactionType.transfer:
            if not to_account_id:
                raise InvalidInput("Transfers need a destination account")
            if to_account_id == account_id:
                raise InvalidInput("Cannot transfer to the same account")
            _check_owner(
                self.session.get(Account, to_account_id), self.owner_id, "Account"
            )
        elif to_account_id:
            raise InvalidInput("Only transfers can have a destination account")

    def _load(self, transaction_id: str) -> Transaction:
        stmt = (
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return _check_owner(self.session.scalar(stmt), self.owner_id, "Transaction")

    def get(self, transaction_id: str) -> Transaction:
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.category),
                joinedload(Transaction.allocation_link),
            )
            .where(Transaction.id == transaction_id)
        )
        return _check_owner(self.session.scalar(stmt), self.owner_id, "Transaction")

    def create(self, data: TransactionIn) -> Transaction:
        if data.amount <= 0:
            raise InvalidInput("Amount must be greater than zero")
        with atomic(self.session):
            self._validate_refs(
                data.type, data.category_id, data.account_id, data.to_account_id
            )
            allocation = None
            if data.allocation_id:
                allocation = self.ledger._lock_allocation(data.allocation_id)
                self.ledger._require_active(allocation)
            elif data.type == TransactionType.expense:
                suggested = AllocationService(
                    self.session, self.owner_id
                ).suggest_envelope(data.category_id)
                if suggested is not None:
                    allocation = self.ledger._lock_allocation(suggested.id)

            txn = Transaction(
                owner_id=self.owner_id,
                type=data.type,
                amount=data.amount,
                currency=get_settings().currency,
                category_id=data.category_id,
                account_id=data.account_id,
                to_account_id=data.to_account_id or None,
                date=data.date,
                note=data.note,
            )
            self.session.add(txn)
            self.session.flush()
            if allocation is not None:
                self.ledger.link_transaction(txn, allocation, txn.amount)
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: transaction={txn.id} type={txn.type.value} "
            f"amount={txn.amount} allocation={allocation.id if allocation else None}"
        )
        return txn

    def update(self, transaction_id: str, data: TransactionUpdate) -> Transaction:
        fields = data.model_fields_set
        for required in ("type", "amount", "category_id", "account_id", "date"):
            if required in fields and getattr(data, required) is None:
                raise InvalidInput(f"{required} cannot be empty")
        if "amount" in fields and data.amount <= 0:
            raise InvalidInput("Amount must be greater than zero")

        with atomic(self.session):
            txn = self._load(transaction_id)
            link = self.ledger.link_for(txn.id)

            new_type = data.type if "type" in fields else txn.type
            new_amount = data.amount if "amount" in fields else txn.amount
            category_id = data.category_id if "category_id" in fields else txn.category_id
            account_id = data.account_id if "account_id" in fields else txn.account_id
            if "to_account_id" in fields:
                to_account_id = data.to_account_id or None
            elif new_type == TransactionType.transfer:
                to_account_id = txn.to_account_id
            else:
                to_account_id = None
            self._validate_refs(new_type, category_id, account_id, to_account_id)

            old_allocation_id = link.allocation_id if link else None
            if "allocation_id" in fields:
                new_allocation_id = data.allocation_id or None
            else:
                new_allocation_id = old_allocation_id

            # Validate every allocation involved before the first write.
            involved = {i for i in (old_allocation_id, new_allocation_id) if i}
            locked = self.ledger._lock_allocations(involved)
            if new_allocation_id:
                new_allocation = _check_owner(
                    locked[new_allocation_id], self.owner_id, "Allocation"
                )
                relinked = new_allocation_id != old_allocation_id
                amount_changed = link is not None and new_amount != link.amount
                if relinked or amount_changed:
                    self.ledger._require_active(new_allocation)

            txn.type = new_type
            txn.amount = new_amount
            txn.category_id = category_id
            txn.account_id = account_id
            txn.to_account_id = to_account_id
            if "date" in fields:
                txn.date = data.date
            if "note" in fields:
                txn.note = data.note
            self.session.flush()

            if link is not None and old_allocation_id != new_allocation_id:
                self.ledger.unlink_transaction(txn, link)
                link = None
            if new_allocation_id and link is None:
                self.ledger.link_transaction(txn, locked[new_allocation_id], new_amount)
            elif link is not None:
                self.ledger.relink_amount(link, new_amount)
        self.session.refresh(txn)
        logger.info(
            f"transaction_updated: transaction={txn.id} amount={txn.amount} "
            f"allocation={new_allocation_id}"
        )
        return txn

    def delete(self, transaction_id: str) -> None:
        with atomic(self.session):
            txn = self._load(transaction_id)
            link = self.ledger.link_for(txn.id)
            if link is not None:
                self.ledger.unlink_transaction(txn, link)
            self.session.delete(txn)
        logger.info(f"transaction_deleted: transaction={transaction_id}")

    def _encode_cursor(self, txn: Transaction) -> str:
        serializer = URLSafeSerializer(get_settings().secret_key, salt=CURSOR_SALT)
        return serializer.dumps(
            [txn.date.isoformat(), txn.created_at.isoformat(), txn.id]
        )

    def _decode_cursor(self, cursor: str) -> tuple[date, datetime, str]:
        serializer = URLSafeSerializer(get_settings().secret_key, salt=CURSOR_SALT)
        try:
            raw_date, raw_created, txn_id = serializer.loads(cursor)
            return (
                date.fromisoformat(raw_date),
                datetime.fromisoformat(raw_created),
                str(txn_id),
            )
        except (BadSignature, TypeError, ValueError) as exc:
            raise InvalidInput("Invalid cursor") from exc

    def list_page(
        self,
        filters: Optional[TransactionFilters] = None,
        cursor: Optional[str] = None,
        limit: int = 50,
    ) -> TransactionPage:
        """Keyset page ordered newest first by (date, created_at, id)."""
        filters = filters or TransactionFilters()
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.category),
                joinedload(Transaction.allocation_link),
            )
            .where(Transaction.owner_id == self.owner_id)
            .order_by(
                Transaction.date.desc(),
                Transaction.created_at.desc(),
                Transaction.id.desc(),
            )
            .limit(limit + 1)
        )
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.account_id:
            stmt = stmt.where(
                (Transaction.account_id == filters.account_id)
                | (Transaction.to_account_id == filters.account_id)
            )
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.date_from:
            stmt = stmt.where(Transaction.date >= filters.date_from)
        if filters.date_to:
            stmt = stmt.where(Transaction.date <= filters.date_to)
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(func.lower(func.coalesce(Transaction.note, "")).like(like))
        if cursor:
            cursor_date, cursor_created, cursor_id = self._decode_cursor(cursor)
            stmt = stmt.where(
                tuple_(Transaction.date, Transaction.created_at, Transaction.id)
                < tuple_(cursor_date, cursor_created, cursor_id)
            )

        rows = self.session.scalars(stmt).unique().all()
        has_more = len(rows) > limit
        items = list(rows[:limit])
        next_cursor = self._encode_cursor(items[-1]) if has_more else None
        return TransactionPage(items=items, has_more=has_more, next_cursor=next_cursor)


class LedgerAuditService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _derived_totals(self, owner_id: Optional[str]) -> dict[str, int]:
        stmt = (
            select(
                AllocationLink.allocation_id,
                func.coalesce(func.sum(AllocationLink.amount), 0),
            )
            .join(Allocation, Allocation.id == AllocationLink.allocation_id)
            .group_by(AllocationLink.allocation_id)
        )
        if owner_id is not None:
            stmt = stmt.where(Allocation.owner_id == owner_id)
        return {row[0]: int(row[1]) for row in self.session.execute(stmt)}

    def audit(self, owner_id: Optional[str] = None) -> AuditReport:
        report = AuditReport()
        derived = self._derived_totals(owner_id)
        stmt = select(Allocation.id, Allocation.current_amount).order_by(Allocation.id)
        if owner_id is not None:
            stmt = stmt.where(Allocation.owner_id == owner_id)
        for allocation_id, stored in self.session.execute(stmt):
            report.allocations_checked += 1
            total = derived.get(allocation_id, 0)
            if stored != total:
                report.drifts.append(AllocationDrift(allocation_id, stored, total))

        link_stmt = (
            select(
                AllocationLink.id,
                AllocationLink.amount,
                Transaction.amount,
                Transaction.owner_id,
                Allocation.owner_id,
            )
            .join(Transaction, Transaction.id == AllocationLink.transaction_id)
            .join(Allocation, Allocation.id == AllocationLink.allocation_id)
            .order_by(AllocationLink.id)
        )
        if owner_id is not None:
            link_stmt = link_stmt.where(Transaction.owner_id == owner_id)
        for link_id, link_amount, txn_amount, txn_owner, allocation_owner in (
            self.session.execute(link_stmt)
        ):
            if txn_owner != allocation_owner:
                report.foreign_links.append(link_id)
            if link_amount != txn_amount:
                report.amount_mismatches.append(link_id)

        if not report.is_clean:
            logger.warning(
                f"ledger_audit: drifts={len(report.drifts)} "
                f"foreign_links={len(report.foreign_links)} "
                f"amount_mismatches={len(report.amount_mismatches)}"
            )
        return report

    def repair(self, owner_id: Optional[str] = None) -> int:
        """Reset drifted running totals to the sum of their links."""
        fixed = 0
        with atomic(self.session):
            for drift in self.audit(owner_id).drifts:
                allocation = self.session.scalar(
                    select(Allocation)
                    .where(Allocation.id == drift.allocation_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
                derived = self.session.scalar(
                    select(func.coalesce(func.sum(AllocationLink.amount), 0)).where(
                        AllocationLink.allocation_id == allocation.id
                    )
                )
                stored = allocation.current_amount
                delta = int(derived) - stored
                if not delta:
                    continue
                apply_allocation_delta(self.session, allocation.id, delta)
                fixed += 1
                logger.warning(
                    f"ledger_repair: allocation={allocation.id} "
                    f"stored={stored} derived={derived}"
                )
        return fixed


class PeriodRolloverService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def run(self, today: Optional[date] = None, owner_id: Optional[str] = None) -> int:
        today = today or local_today()
        with atomic(self.session):
            count = RolloverEngine(self.session).roll_due_envelopes(
                today, owner_id=owner_id
            )
        logger.info(f"period_rollover: today={today.isoformat()} envelopes={count}")
        return count


class StatisticsService:
    def __init__(self, session: Session, owner_id: Optional[str] = None) -> None:
        self.session = session
        self.owner_id = require_owner(owner_id)

    def _category_rows(self, period: Period, limit: Optional[int] = None):
        total = func.sum(Transaction.amount)
        stmt = (
            select(
                Category.id,
                Category.name,
                Category.icon,
                Category.color,
                total.label("amount"),
                func.count(Transaction.id).label("count"),
            )
            .join(Category, Category.id == Transaction.category_id)
            .where(
                Transaction.owner_id == self.owner_id,
                Transaction.type == TransactionType.expense,
                Transaction.date.between(period.start, period.end),
            )
            .group_by(Category.id, Category.name, Category.icon, Category.color)
            .order_by(total.desc(), Category.name)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return self.session.execute(stmt).all()

    @staticmethod
    def _with_percentages(rows) -> list[dict[str, object]]:
        grand_total = sum(int(row.amount or 0) for row in rows)
        return [
            {
                "category_id": row.id,
                "category_name": row.name,
                "category_icon": row.icon,
                "category_color": row.color,
                "amount": int(row.amount or 0),
                "percentage": (
                    int(row.amount or 0) / grand_total * 100 if grand_total > 0 else 0.0
                ),
                "transaction_count": int(row.count or 0),
            }
            for row in rows
        ]

    def spending_by_category(self, period: Period) -> list[dict[str, object]]:
        return self._with_percentages(self._category_rows(period))

    def top_categories(self, period: Period, limit: int = 5) -> list[dict[str, object]]:
        if not 1 <= limit <= MAX_TOP_CATEGORIES:
            raise InvalidInput(f"limit must be between 1 and {MAX_TOP_CATEGORIES}")
        return self._with_percentages(self._category_rows(period, limit=limit))

    def _totals(self, start: date, end: date) -> dict[str, int]:
        stmt = (
            select(
                Transaction.type,
                func.coalesce(func.sum(Transaction.amount), 0),
                func.count(Transaction.id),
            )
            .where(
                Transaction.owner_id == self.owner_id,
                Transaction.date.between(start, end),
            )
            .group_by(Transaction.type)
        )
        income = expenses = count = 0
        for txn_type, amount, rows in self.session.execute(stmt):
            count += int(rows)
            if txn_type == TransactionType.income:
                income = int(amount)
            elif txn_type == TransactionType.expense:
                expenses = int(amount)
        return {
            "income": income,
            "expenses": expenses,
            "net_cash_flow": income - expenses,
            "transaction_count": count,
        }

    def _month_windows(self, months: int, today: Optional[date]) -> list[date]:
        if not 1 <= months <= MAX_REPORT_MONTHS:
            raise InvalidInput(f"months must be between 1 and {MAX_REPORT_MONTHS}")
        today = today or local_today()
        return [add_months(today, -offset) for offset in range(months - 1, -1, -1)]

    def monthly_cash_flow(
        self, months: int = 6, today: Optional[date] = None
    ) -> list[dict[str, object]]:
        result = []
        for first in self._month_windows(months, today):
            totals = self._totals(first, month_end(first))
            result.append(
                {
                    "month": first.strftime("%Y-%m"),
                    "month_label": first.strftime("%b"),
                    "income": totals["income"],
                    "expenses": totals["expenses"],
                    "net_cash_flow": totals["net_cash_flow"],
                }
            )
        return result

    def daily_spending(self, period: Period) -> list[dict[str, object]]:
        stmt = (
            select(Transaction.date, func.sum(Transaction.amount))
            .where(
                Transaction.owner_id == self.owner_id,
                Transaction.type == TransactionType.expense,
                Transaction.date.between(period.start, period.end),
            )
            .group_by(Transaction.date)
        )
        by_day = {row[0]: int(row[1] or 0) for row in self.session.execute(stmt)}
        days = []
        current = period.start
        while current <= period.end:
            days.append({"date": current.isoformat(), "amount": by_day.get(current, 0)})
            current += timedelta(days=1)
        return days

    def spending_trends(
        self, months: int = 6, today: Optional[date] = None
    ) -> list[dict[str, object]]:
        result = []
        for first in self._month_windows(months, today):
            last = month_end(first)
            total, count = self.session.execute(
                select(
                    func.coalesce(func.sum(Transaction.amount), 0),
                    func.count(Transaction.id),
                ).where(
                    Transaction.owner_id == self.owner_id,
                    Transaction.type == TransactionType.expense,
                    Transaction.date.between(first, last),
                )
            ).one()
            days = (last - first).days + 1
            result.append(
                {
                    "month": first.strftime("%Y-%m"),
                    "month_label": first.strftime("%b"),
                    "total_spending": int(total),
                    "average_daily_spend": round(int(total) / days),
                    "transaction_count": int(count),
                }
            )
        return result

    def period_comparison(self, period: Period) -> dict[str, object]:
        previous = period.previous()
        current_totals = self._totals(period.start, period.end)
        previous_totals = self._totals(previous.start, previous.end)
        return {
            "current_period": current_totals,
            "previous_period": previous_totals,
            "changes": {
                key: percent_change(current_totals[key], previous_totals[key])
                for key in current_totals
            },
        }


class RecapService:
    def __init__(self, session: Session, owner_id: Optional[str] = None) -> None:
        self.session = session
        self.owner_id = require_owner(owner_id)

    def recap_months(self) -> list[str]:
        dates = self.session.scalars(
            select(Transaction.date)
            .where(Transaction.owner_id == self.owner_id)
            .distinct()
            .order_by(Transaction.date.desc())
        ).all()
        months: list[str] = []
        for d in dates:
            key = d.strftime("%Y-%m")
            if key not in months:
                months.append(key)
        return months

    def monthly_recap(self, month: str) -> dict[str, object]:
        try:
            period = month_period(month)
        except ValueError as exc:
            raise InvalidInput(str(exc)) from exc

        in_month = (
            Transaction.owner_id == self.owner_id,
            Transaction.date.between(period.start, period.end),
        )
        totals = StatisticsService(self.session, self.owner_id)._totals(
            period.start, period.end
        )
        income = totals["income"]
        expenses = totals["expenses"]
        net_savings = income - expenses
        currency = get_settings().currency

        days_logged = self.session.scalar(
            select(func.count(func.distinct(Transaction.date))).where(*in_month)
        )

        top_category = None
        top_rows = StatisticsService(self.session, self.owner_id)._category_rows(
            period, limit=1
        )
        if top_rows:
            row = top_rows[0]
            top_category = {
                "name": row.name,
                "icon": row.icon,
                "amount": int(row.amount),
                "percentage": int(row.amount) / expenses * 100 if expenses else 0.0,
            }

        biggest_expense = None
        biggest = self.session.scalar(
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(*in_month, Transaction.type == TransactionType.expense)
            .order_by(Transaction.amount.desc(), Transaction.date.desc())
            .limit(1)
        )
        if biggest is not None:
            biggest_expense = {
                "amount": biggest.amount,
                "category": biggest.category.name if biggest.category else "Uncategorized",
                "category_icon": biggest.category.icon if biggest.category else None,
                "note": biggest.note,
                "date": biggest.date.isoformat(),
            }

        envelopes = AllocationService(self.session, self.owner_id).list_all(
            AllocationKind.envelope
        )
        envelope_highlights = None
        if envelopes:
            envelope_highlights = {
                "total_envelopes": len(envelopes),
                "under_budget_count": sum(
                    1 for e in envelopes if e.current_amount <= (e.target_amount or 0)
                ),
                "total_budget": sum(e.target_amount or 0 for e in envelopes),
                "total_spent": sum(e.current_amount for e in envelopes),
            }

        goals = AllocationService(self.session, self.owner_id).list_all(
            AllocationKind.goal, include_inactive=True
        )
        goal_highlights = None
        if goals:
            active_goals = [g for g in goals if g.is_active]
            goal_highlights = {
                "total_goals": len(active_goals),
                "total_saved": sum(g.current_amount for g in active_goals),
                "goals_completed": sum(
                    1 for g in goals if g.status == AllocationStatus.completed
                ),
            }

        return {
            "month": month,
            "month_name": period.start.strftime("%B %Y"),
            "days_in_month": period.days,
            "days_logged": int(days_logged or 0),
            "total_income": income,
            "total_expenses": expenses,
            "net_savings": net_savings,
            "savings_rate": net_savings / income * 100 if income > 0 else 0.0,
            "top_category": top_category,
            "biggest_expense": biggest_expense,
            "transaction_count": totals["transaction_count"],
            "summary": (
                f"Saved {format_minor_units(net_savings, currency)} of "
                f"{format_minor_units(income, currency)} earned"
            ),
            "envelope_highlights": envelope_highlights,
            "goal_highlights": goal_highlights,
        }
