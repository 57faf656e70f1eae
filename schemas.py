import datetime as dt
from datetime import date
from decimal import Decimal
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from errors import ErrorKind
from models import (
    AccountType,
    AllocationPeriod,
    CategoryType,
    TransactionType,
)


# Service inputs. Amounts are minor units (centavos).


class AccountIn(BaseModel):
    name: str = Field(..., max_length=100)
    type: AccountType = AccountType.cash
    initial_balance: int = 0
    currency: Optional[str] = Field(default=None, max_length=3)


class CategoryIn(BaseModel):
    name: str = Field(..., max_length=100)
    type: CategoryType
    icon: Optional[str] = Field(default=None, max_length=16)
    color: Optional[str] = Field(default=None, max_length=9)


class TransactionIn(BaseModel):
    type: TransactionType
    amount: int
    category_id: str
    account_id: str
    to_account_id: Optional[str] = None
    date: date
    note: Optional[str] = Field(default=None, max_length=500)
    allocation_id: Optional[str] = None


class TransactionUpdate(BaseModel):
    """Partial update; only fields that were explicitly set are applied.

    ``allocation_id`` set to ``None`` removes the allocation link, leaving it
    unset keeps the current link.
    """

    type: Optional[TransactionType] = None
    amount: Optional[int] = None
    category_id: Optional[str] = None
    account_id: Optional[str] = None
    to_account_id: Optional[str] = None
    date: Optional[dt.date] = None
    note: Optional[str] = Field(default=None, max_length=500)
    allocation_id: Optional[str] = None


class EnvelopeIn(BaseModel):
    name: str = Field(..., max_length=120)
    icon: Optional[str] = Field(default=None, max_length=16)
    color: Optional[str] = Field(default=None, max_length=9)
    target_amount: int
    period: AllocationPeriod = AllocationPeriod.monthly
    rollover_enabled: bool = False
    category_ids: list[str] = Field(default_factory=list)


class GoalIn(BaseModel):
    name: str = Field(..., max_length=120)
    icon: Optional[str] = Field(default=None, max_length=16)
    color: Optional[str] = Field(default=None, max_length=9)
    target_amount: Optional[int] = None
    deadline: Optional[date] = None


class AllocationUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=120)
    icon: Optional[str] = Field(default=None, max_length=16)
    color: Optional[str] = Field(default=None, max_length=9)
    target_amount: Optional[int] = None
    period: Optional[AllocationPeriod] = None
    rollover_enabled: Optional[bool] = None
    category_ids: Optional[list[str]] = None
    deadline: Optional[date] = None


# Boundary payloads. Amounts are major units (pesos) as sent by clients.
# Strings keep their formatting ('₱1,234.50') until to_minor_units parses them.
MajorAmount = Union[Decimal, str]


class AccountPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    type: AccountType = AccountType.cash
    initial_balance: MajorAmount = Decimal("0")
    currency: Optional[str] = None


class TransactionPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: TransactionType
    amount: MajorAmount
    category_id: str
    account_id: str
    to_account_id: Optional[str] = None
    date: date
    note: Optional[str] = None
    allocation_id: Optional[str] = None


class TransactionUpdatePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Optional[TransactionType] = None
    amount: Optional[MajorAmount] = None
    category_id: Optional[str] = None
    account_id: Optional[str] = None
    to_account_id: Optional[str] = None
    date: Optional[dt.date] = None
    note: Optional[str] = None
    allocation_id: Optional[str] = None


class EnvelopePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    icon: Optional[str] = None
    color: Optional[str] = None
    target_amount: MajorAmount
    period: AllocationPeriod = AllocationPeriod.monthly
    rollover_enabled: bool = False
    category_ids: list[str] = Field(default_factory=list)


class GoalPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    icon: Optional[str] = None
    color: Optional[str] = None
    target_amount: Optional[MajorAmount] = None
    deadline: Optional[date] = None


class AllocationUpdatePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    icon: Optional[str] = None
    color: Optional[str] = None
    target_amount: Optional[MajorAmount] = None
    period: Optional[AllocationPeriod] = None
    rollover_enabled: Optional[bool] = None
    category_ids: Optional[list[str]] = None
    deadline: Optional[date] = None


class ContributionPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: MajorAmount
    note: Optional[str] = None


class TransferPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source_id: str
    target_id: str
    amount: MajorAmount


class ActionResult(BaseModel):
    success: bool
    data: Optional[Any] = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
