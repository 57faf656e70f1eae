"""Boundary between clients and the ledger services.

Payloads arrive in major units (pesos) and are converted to minor units
exactly once, here. Every call returns an ``ActionResult`` instead of raising
for expected failures; results carry major units on the way out.
"""

import logging
from datetime import date
from typing import Any, Callable, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from errors import InvalidInput, LedgerError
from models import (
    Account,
    Allocation,
    AllocationKind,
    AllocationLink,
    Category,
    Transaction,
    TransactionType,
)
from money import from_minor_units, to_minor_units
from periods import resolve_period
from schemas import (
    AccountIn,
    AccountPayload,
    ActionResult,
    AllocationUpdate,
    AllocationUpdatePayload,
    CategoryIn,
    ContributionPayload,
    EnvelopeIn,
    EnvelopePayload,
    GoalIn,
    GoalPayload,
    TransactionIn,
    TransactionPayload,
    TransactionUpdate,
    TransactionUpdatePayload,
    TransferPayload,
)
from services import (
    AccountService,
    AllocationService,
    CategoryService,
    LedgerAuditService,
    LedgerService,
    PeriodRolloverService,
    RecapService,
    StatisticsService,
    TransactionFilters,
    TransactionService,
    require_owner,
)


logger = logging.getLogger(__name__)

MONEY_KEYS = frozenset(
    {
        "amount",
        "income",
        "expenses",
        "net_cash_flow",
        "total_spending",
        "average_daily_spend",
        "total_income",
        "total_expenses",
        "net_savings",
        "total_budget",
        "total_spent",
        "total_saved",
        "average_monthly_savings",
        "current_month_savings",
        "last_month_savings",
        "required_monthly_savings",
    }
)
STATUS_ACTIONS = ("pause", "resume", "abandon", "complete")
STATISTICS_REPORTS = (
    "spending-by-category",
    "top-categories",
    "cash-flow",
    "daily",
    "trends",
    "period-comparison",
)


def _validation_message(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


def run_action(fn: Callable[[], Any]) -> ActionResult:
    try:
        return ActionResult(success=True, data=fn())
    except ValidationError as exc:
        error = InvalidInput(_validation_message(exc))
        return ActionResult(success=False, error_kind=error.kind, error=error.message)
    except LedgerError as exc:
        logger.info(f"action_rejected: kind={exc.kind.value} error={exc.message}")
        return ActionResult(success=False, error_kind=exc.kind, error=exc.message)


def _minor(amount) -> Optional[int]:
    return None if amount is None else to_minor_units(amount)


def money_out(value: Any, key: Optional[str] = None) -> Any:
    """Convert minor-unit amounts in a read model to major units."""
    if isinstance(value, dict):
        return {
            k: (v if k == "changes" else money_out(v, k)) for k, v in value.items()
        }
    if isinstance(value, list):
        return [money_out(item) for item in value]
    if key in MONEY_KEYS and isinstance(value, int) and not isinstance(value, bool):
        return from_minor_units(value)
    return value


def serialize_account(account: Account) -> dict[str, Any]:
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type.value,
        "currency": account.currency,
        "initial_balance": from_minor_units(account.initial_balance),
        "is_archived": account.is_archived,
    }


def serialize_category(category: Category) -> dict[str, Any]:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "icon": category.icon,
        "color": category.color,
        "is_hidden": category.is_hidden,
    }


def serialize_transaction(txn: Transaction) -> dict[str, Any]:
    link = txn.allocation_link
    return {
        "id": txn.id,
        "type": txn.type.value,
        "amount": from_minor_units(txn.amount),
        "currency": txn.currency,
        "category_id": txn.category_id,
        "account_id": txn.account_id,
        "to_account_id": txn.to_account_id,
        "date": txn.date.isoformat(),
        "note": txn.note,
        "allocation_id": link.allocation_id if link else None,
        "created_at": txn.created_at.isoformat(),
    }


def serialize_allocation(allocation: Allocation) -> dict[str, Any]:
    target = allocation.target_amount
    progress = None
    if target:
        progress = allocation.current_amount / target * 100
    return {
        "id": allocation.id,
        "kind": allocation.kind.value,
        "name": allocation.name,
        "icon": allocation.icon,
        "color": allocation.color,
        "target_amount": None if target is None else from_minor_units(target),
        "current_amount": from_minor_units(allocation.current_amount),
        "progress": progress,
        "period": allocation.period.value,
        "period_start": (
            allocation.period_start.isoformat() if allocation.period_start else None
        ),
        "rollover_enabled": allocation.rollover_enabled,
        "deadline": allocation.deadline.isoformat() if allocation.deadline else None,
        "category_ids": list(allocation.category_ids or []),
        "is_active": allocation.is_active,
        "status": allocation.status.value,
    }


def serialize_link(link: AllocationLink) -> dict[str, Any]:
    return {
        "id": link.id,
        "allocation_id": link.allocation_id,
        "source": link.source.value,
        "amount": from_minor_units(link.amount),
        "note": link.note,
        "created_at": link.created_at.isoformat(),
        "transaction": (
            serialize_transaction(link.transaction) if link.transaction else None
        ),
    }


# Accounts and categories


def create_account(session: Session, owner_id: Optional[str], payload: dict) -> ActionResult:
    def run():
        data = AccountPayload.model_validate(payload)
        account = AccountService(session, owner_id).create(
            AccountIn(
                name=data.name,
                type=data.type,
                initial_balance=to_minor_units(data.initial_balance),
                currency=data.currency,
            )
        )
        return serialize_account(account)

    return run_action(run)


def list_accounts(session: Session, owner_id: Optional[str]) -> ActionResult:
    return run_action(
        lambda: [serialize_account(a) for a in AccountService(session, owner_id).list_all()]
    )


def create_category(session: Session, owner_id: Optional[str], payload: dict) -> ActionResult:
    def run():
        data = CategoryIn.model_validate(payload)
        return serialize_category(CategoryService(session, owner_id).create(data))

    return run_action(run)


def list_categories(session: Session, owner_id: Optional[str]) -> ActionResult:
    return run_action(
        lambda: [
            serialize_category(c) for c in CategoryService(session, owner_id).list_all()
        ]
    )


# Transactions


def create_transaction(
    session: Session, owner_id: Optional[str], payload: dict
) -> ActionResult:
    def run():
        data = TransactionPayload.model_validate(payload)
        txn = TransactionService(session, owner_id).create(
            TransactionIn(
                type=data.type,
                amount=to_minor_units(data.amount),
                category_id=data.category_id,
                account_id=data.account_id,
                to_account_id=data.to_account_id,
                date=data.date,
                note=data.note,
                allocation_id=data.allocation_id,
            )
        )
        return serialize_transaction(txn)

    return run_action(run)


def update_transaction(
    session: Session, owner_id: Optional[str], transaction_id: str, payload: dict
) -> ActionResult:
    def run():
        data = TransactionUpdatePayload.model_validate(payload)
        changes = {name: getattr(data, name) for name in data.model_fields_set}
        if "amount" in changes:
            changes["amount"] = _minor(changes["amount"])
        txn = TransactionService(session, owner_id).update(
            transaction_id, TransactionUpdate(**changes)
        )
        return serialize_transaction(txn)

    return run_action(run)


def delete_transaction(
    session: Session, owner_id: Optional[str], transaction_id: str
) -> ActionResult:
    def run():
        TransactionService(session, owner_id).delete(transaction_id)
        return {"id": transaction_id}

    return run_action(run)


def get_transaction(
    session: Session, owner_id: Optional[str], transaction_id: str
) -> ActionResult:
    return run_action(
        lambda: serialize_transaction(
            TransactionService(session, owner_id).get(transaction_id)
        )
    )


def list_transactions(
    session: Session,
    owner_id: Optional[str],
    filters: Optional[dict] = None,
    cursor: Optional[str] = None,
    limit: int = 50,
) -> ActionResult:
    def run():
        raw = dict(filters or {})
        if raw.get("type"):
            try:
                raw["type"] = TransactionType(raw["type"])
            except ValueError as exc:
                raise InvalidInput(f"Unknown transaction type: {raw['type']}") from exc
        for key in ("date_from", "date_to"):
            if raw.get(key):
                try:
                    raw[key] = date.fromisoformat(raw[key])
                except ValueError as exc:
                    raise InvalidInput(f"{key} must be YYYY-MM-DD") from exc
        page = TransactionService(session, owner_id).list_page(
            TransactionFilters(**raw), cursor=cursor, limit=limit
        )
        return {
            "items": [serialize_transaction(t) for t in page.items],
            "has_more": page.has_more,
            "next_cursor": page.next_cursor,
        }

    return run_action(run)


# Allocations


def create_envelope(session: Session, owner_id: Optional[str], payload: dict) -> ActionResult:
    def run():
        data = EnvelopePayload.model_validate(payload)
        envelope = AllocationService(session, owner_id).create_envelope(
            EnvelopeIn(
                name=data.name,
                icon=data.icon,
                color=data.color,
                target_amount=to_minor_units(data.target_amount),
                period=data.period,
                rollover_enabled=data.rollover_enabled,
                category_ids=data.category_ids,
            )
        )
        return serialize_allocation(envelope)

    return run_action(run)


def create_goal(session: Session, owner_id: Optional[str], payload: dict) -> ActionResult:
    def run():
        data = GoalPayload.model_validate(payload)
        goal = AllocationService(session, owner_id).create_goal(
            GoalIn(
                name=data.name,
                icon=data.icon,
                color=data.color,
                target_amount=_minor(data.target_amount),
                deadline=data.deadline,
            )
        )
        return serialize_allocation(goal)

    return run_action(run)


def update_allocation(
    session: Session, owner_id: Optional[str], allocation_id: str, payload: dict
) -> ActionResult:
    def run():
        data = AllocationUpdatePayload.model_validate(payload)
        changes = {name: getattr(data, name) for name in data.model_fields_set}
        if "target_amount" in changes:
            changes["target_amount"] = _minor(changes["target_amount"])
        allocation = AllocationService(session, owner_id).update(
            allocation_id, AllocationUpdate(**changes)
        )
        return serialize_allocation(allocation)

    return run_action(run)


def set_allocation_status(
    session: Session, owner_id: Optional[str], allocation_id: str, action: str
) -> ActionResult:
    def run():
        if action not in STATUS_ACTIONS:
            raise InvalidInput(f"Unknown allocation action: {action}")
        service = AllocationService(session, owner_id)
        return serialize_allocation(getattr(service, action)(allocation_id))

    return run_action(run)


def get_allocation(
    session: Session, owner_id: Optional[str], allocation_id: str
) -> ActionResult:
    return run_action(
        lambda: serialize_allocation(
            AllocationService(session, owner_id).get(allocation_id)
        )
    )


def list_allocations(
    session: Session,
    owner_id: Optional[str],
    kind: Optional[str] = None,
    include_inactive: bool = False,
) -> ActionResult:
    def run():
        try:
            parsed_kind = AllocationKind(kind) if kind else None
        except ValueError as exc:
            raise InvalidInput(f"Unknown allocation kind: {kind}") from exc
        allocations = AllocationService(session, owner_id).list_all(
            parsed_kind, include_inactive=include_inactive
        )
        return [serialize_allocation(a) for a in allocations]

    return run_action(run)


def allocation_contributions(
    session: Session, owner_id: Optional[str], allocation_id: str
) -> ActionResult:
    return run_action(
        lambda: [
            serialize_link(link)
            for link in AllocationService(session, owner_id).contributions(allocation_id)
        ]
    )


def goal_savings_stats(
    session: Session, owner_id: Optional[str], goal_id: str
) -> ActionResult:
    return run_action(
        lambda: money_out(
            AllocationService(session, owner_id).goal_savings_stats(goal_id)
        )
    )


def contribute_to_goal(
    session: Session, owner_id: Optional[str], goal_id: str, payload: dict
) -> ActionResult:
    def run():
        data = ContributionPayload.model_validate(payload)
        link = LedgerService(session, owner_id).contribute_to_goal(
            goal_id, to_minor_units(data.amount), note=data.note
        )
        return serialize_link(link)

    return run_action(run)


def transfer_budget(session: Session, owner_id: Optional[str], payload: dict) -> ActionResult:
    def run():
        data = TransferPayload.model_validate(payload)
        source, target = LedgerService(session, owner_id).transfer_budget(
            data.source_id, data.target_id, to_minor_units(data.amount)
        )
        return {
            "source": serialize_allocation(source),
            "target": serialize_allocation(target),
        }

    return run_action(run)


# Read side


def statistics(
    session: Session,
    owner_id: Optional[str],
    report: str,
    period: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    months: int = 6,
    limit: int = 5,
) -> ActionResult:
    def run():
        service = StatisticsService(session, owner_id)
        if report == "cash-flow":
            return money_out(service.monthly_cash_flow(months))
        if report == "trends":
            return money_out(service.spending_trends(months))
        try:
            resolved = resolve_period(period, start, end)
        except ValueError as exc:
            raise InvalidInput(str(exc)) from exc
        if report == "spending-by-category":
            return money_out(service.spending_by_category(resolved))
        if report == "top-categories":
            return money_out(service.top_categories(resolved, limit=limit))
        if report == "daily":
            return money_out(service.daily_spending(resolved))
        if report == "period-comparison":
            return money_out(service.period_comparison(resolved))
        raise InvalidInput(f"Unknown statistics report: {report}")

    return run_action(run)


def monthly_recap(session: Session, owner_id: Optional[str], month: str) -> ActionResult:
    return run_action(
        lambda: money_out(RecapService(session, owner_id).monthly_recap(month))
    )


def recap_months(session: Session, owner_id: Optional[str]) -> ActionResult:
    return run_action(lambda: RecapService(session, owner_id).recap_months())


# Ledger maintenance


def audit_ledger(session: Session, owner_id: Optional[str]) -> ActionResult:
    def run():
        report = LedgerAuditService(session).audit(require_owner(owner_id))
        return {
            "is_clean": report.is_clean,
            "allocations_checked": report.allocations_checked,
            "drifts": [
                {
                    "allocation_id": d.allocation_id,
                    "stored": from_minor_units(d.stored),
                    "derived": from_minor_units(d.derived),
                    "drift": from_minor_units(d.drift),
                }
                for d in report.drifts
            ],
            "foreign_links": report.foreign_links,
            "amount_mismatches": report.amount_mismatches,
        }

    return run_action(run)


def repair_ledger(session: Session, owner_id: Optional[str]) -> ActionResult:
    return run_action(
        lambda: {"fixed": LedgerAuditService(session).repair(require_owner(owner_id))}
    )


def run_rollover(
    session: Session, owner_id: Optional[str], today: Optional[date] = None
) -> ActionResult:
    return run_action(
        lambda: {
            "rolled": PeriodRolloverService(session).run(
                today, owner_id=require_owner(owner_id)
            )
        }
    )
