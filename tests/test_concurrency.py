import threading
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from database import Base, make_engine
from models import Allocation, TransactionType
from schemas import EnvelopeIn, TransactionIn
from services import AllocationService, LedgerAuditService, TransactionService

from conftest import OWNER, seed_owner


def test_parallel_creates_against_one_envelope(tmp_path):
    engine = make_engine(f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    with SessionLocal() as session:
        seed = seed_owner(session)
        envelope = AllocationService(session, OWNER).create_envelope(
            EnvelopeIn(name="Groceries", target_amount=10_000), today=date(2026, 1, 1)
        )

    barrier = threading.Barrier(2)
    errors = []

    def worker(amount: int) -> None:
        try:
            with SessionLocal() as session:
                barrier.wait(timeout=5)
                for _ in range(5):
                    TransactionService(session, OWNER).create(
                        TransactionIn(
                            type=TransactionType.expense,
                            amount=amount,
                            category_id=seed.food_id,
                            account_id=seed.cash_id,
                            date=date(2026, 1, 10),
                            allocation_id=envelope.id,
                        )
                    )
        except Exception as exc:  # surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(amount,)) for amount in (100, 200)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    with SessionLocal() as session:
        current = session.scalar(
            select(Allocation.current_amount).where(Allocation.id == envelope.id)
        )
        assert current == 5 * 100 + 5 * 200
        assert LedgerAuditService(session).audit(OWNER).is_clean
    engine.dispose()
