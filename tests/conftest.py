from dataclasses import dataclass

import pytest
from sqlalchemy.orm import sessionmaker

from database import Base, make_engine
from models import AccountType, CategoryType
from schemas import AccountIn, CategoryIn
from services import AccountService, CategoryService

OWNER = "owner-1"
OTHER_OWNER = "owner-2"


def make_session(url: str = "sqlite+pysqlite:///:memory:"):
    engine = make_engine(url)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


@dataclass
class Seed:
    cash_id: str
    wallet_id: str
    food_id: str
    transport_id: str
    salary_id: str


def seed_owner(session, owner_id: str = OWNER) -> Seed:
    accounts = AccountService(session, owner_id)
    categories = CategoryService(session, owner_id)
    cash = accounts.create(AccountIn(name="Cash", type=AccountType.cash))
    wallet = accounts.create(AccountIn(name="GCash", type=AccountType.e_wallet))
    food = categories.create(CategoryIn(name="Food", type=CategoryType.expense))
    transport = categories.create(
        CategoryIn(name="Transport", type=CategoryType.expense)
    )
    salary = categories.create(CategoryIn(name="Salary", type=CategoryType.income))
    return Seed(
        cash_id=cash.id,
        wallet_id=wallet.id,
        food_id=food.id,
        transport_id=transport.id,
        salary_id=salary.id,
    )


@pytest.fixture
def session():
    session = make_session()
    yield session
    session.close()


@pytest.fixture
def seed(session) -> Seed:
    return seed_owner(session)
