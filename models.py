import uuid
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def new_id() -> str:
    return str(uuid.uuid4())


class TransactionType(str, Enum):
    expense = "expense"
    income = "income"
    transfer = "transfer"


class CategoryType(str, Enum):
    expense = "expense"
    income = "income"


class AccountType(str, Enum):
    cash = "cash"
    bank = "bank"
    e_wallet = "e_wallet"
    credit_card = "credit_card"


class AllocationKind(str, Enum):
    envelope = "envelope"
    goal = "goal"


class AllocationPeriod(str, Enum):
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"
    none = "none"


class AllocationStatus(str, Enum):
    active = "active"
    paused = "paused"
    abandoned = "abandoned"
    completed = "completed"


class LinkSource(str, Enum):
    transaction = "transaction"
    manual = "manual"
    period_reset = "period_reset"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="PHP")
    initial_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (Index("ix_accounts_owner", "owner_id"),)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)
    icon: Mapped[Optional[str]] = mapped_column(String(16))
    color: Mapped[Optional[str]] = mapped_column(String(9))
    is_hidden: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (Index("ix_categories_owner_type", "owner_id", "type"),)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="PHP")
    category_id: Mapped[str] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    to_account_id: Mapped[Optional[str]] = mapped_column(ForeignKey("accounts.id"))
    date: Mapped[date] = mapped_column(Date, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)

    category: Mapped["Category"] = relationship(
        "Category", back_populates="transactions"
    )
    account: Mapped["Account"] = relationship("Account", foreign_keys=[account_id])
    to_account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[to_account_id]
    )
    allocation_link: Mapped[Optional["AllocationLink"]] = relationship(
        "AllocationLink",
        back_populates="transaction",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_transactions_owner_date", "owner_id", "date"),
        Index("ix_transactions_owner_type_date", "owner_id", "type", "date"),
        Index("ix_transactions_category", "category_id"),
        Index("ix_transactions_account", "account_id"),
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
    )


class Allocation(Base, TimestampMixin):
    __tablename__ = "allocations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[AllocationKind] = mapped_column(
        SAEnum(AllocationKind), nullable=False
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    icon: Mapped[Optional[str]] = mapped_column(String(16))
    color: Mapped[Optional[str]] = mapped_column(String(9))
    target_amount: Mapped[Optional[int]] = mapped_column(Integer)
    current_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    period: Mapped[AllocationPeriod] = mapped_column(
        SAEnum(AllocationPeriod), nullable=False, default=AllocationPeriod.none
    )
    period_start: Mapped[Optional[date]] = mapped_column(Date)
    rollover_enabled: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    deadline: Mapped[Optional[date]] = mapped_column(Date)
    category_ids: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    status: Mapped[AllocationStatus] = mapped_column(
        SAEnum(AllocationStatus), nullable=False, default=AllocationStatus.active
    )
    config_json: Mapped[Optional[str]] = mapped_column(Text)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    links: Mapped[list["AllocationLink"]] = relationship(
        "AllocationLink", back_populates="allocation", passive_deletes=True
    )

    __table_args__ = (
        Index("ix_allocations_owner_kind", "owner_id", "kind"),
        Index("ix_allocations_active", "is_active"),
        CheckConstraint(
            "target_amount IS NULL OR target_amount >= 0",
            name="ck_allocations_target_non_negative",
        ),
    )


class AllocationLink(Base):
    """One ledger row: a signed change to an allocation's current amount.

    ``transaction`` rows carry the full amount of the linked transaction,
    ``manual`` rows are direct goal contributions, ``period_reset`` rows are
    written by the envelope rollover job.
    """

    __tablename__ = "allocation_links"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    allocation_id: Mapped[str] = mapped_column(
        ForeignKey("allocations.id", ondelete="CASCADE"), nullable=False
    )
    transaction_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE"), unique=True
    )
    source: Mapped[LinkSource] = mapped_column(SAEnum(LinkSource), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    allocation: Mapped["Allocation"] = relationship(
        "Allocation", back_populates="links"
    )
    transaction: Mapped[Optional["Transaction"]] = relationship(
        "Transaction", back_populates="allocation_link"
    )

    __table_args__ = (
        Index("ix_allocation_links_allocation", "allocation_id"),
        CheckConstraint(
            "(source = 'transaction') = (transaction_id IS NOT NULL)",
            name="ck_allocation_links_source_matches_transaction",
        ),
    )
