import logging
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

import rollup
from cache import TTLCache
from database import Base
from errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from locks import KeyedLock
from models import BudgetYear, Category, CategoryType, Transaction, YearSummary
from schemas import FiscalYearTransactionIn, TransactionIn, TransactionUpdate
from services import TransactionFilters, TransactionService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_service(session):
    return TransactionService(session, cache=TTLCache(), locks=KeyedLock())


def add(session, obj):
    session.add(obj)
    session.commit()
    session.refresh(obj)
    return obj


def seed(session):
    year = add(session, BudgetYear(year=2024))
    revenue = add(session, Category(name="Pendapatan", level=1, type=CategoryType.revenue))
    pad = add(
        session,
        Category(name="PAD", level=2, parent_id=revenue.id, type=CategoryType.revenue),
    )
    tax = add(
        session,
        Category(name="Pajak", level=3, parent_id=pad.id, type=CategoryType.revenue),
    )
    levy = add(
        session,
        Category(name="Retribusi", level=3, parent_id=pad.id, type=CategoryType.revenue),
    )
    spending = add(
        session, Category(name="Belanja", level=1, type=CategoryType.expenditure)
    )
    ops = add(
        session,
        Category(
            name="Belanja Operasi", level=2, parent_id=spending.id,
            type=CategoryType.expenditure,
        ),
    )
    salaries = add(
        session,
        Category(
            name="Belanja Pegawai", level=3, parent_id=ops.id,
            type=CategoryType.expenditure,
        ),
    )
    return {
        "year": year,
        "revenue": revenue,
        "pad": pad,
        "tax": tax,
        "levy": levy,
        "spending": spending,
        "ops": ops,
        "salaries": salaries,
    }


def amount_for(session, year_id, category_id):
    return session.scalar(
        select(Transaction.amount_cents).where(
            Transaction.year_id == year_id, Transaction.category_id == category_id
        )
    )


def test_create_level3_builds_parents_and_summary() -> None:
    session = make_session()
    data = seed(session)
    service = make_service(session)

    txn = service.create(
        TransactionIn(year_id=data["year"].id, category_id=data["tax"].id, amount="1.500,50")
    )

    assert txn.amount_cents == 150_050
    assert amount_for(session, data["year"].id, data["pad"].id) == 150_050
    assert amount_for(session, data["year"].id, data["revenue"].id) == 150_050
    summary = session.scalar(select(YearSummary))
    assert summary.total_revenue_cents == 150_050
    assert summary.ending_balance_cents == 150_050
    assert all(outcome.ok for outcome in service.last_outcomes)


def test_manual_entry_is_only_allowed_on_level3() -> None:
    session = make_session()
    data = seed(session)
    service = make_service(session)

    with pytest.raises(InvalidStateError, match="level 2"):
        service.create(
            TransactionIn(year_id=data["year"].id, category_id=data["pad"].id, amount=10)
        )
    with pytest.raises(InvalidStateError, match="level 1"):
        service.create(
            TransactionIn(year_id=data["year"].id, category_id=data["revenue"].id, amount=10)
        )

    service.create(
        TransactionIn(year_id=data["year"].id, category_id=data["tax"].id, amount=10)
    )
    derived = session.scalar(
        select(Transaction).where(Transaction.category_id == data["pad"].id)
    )
    with pytest.raises(InvalidStateError):
        service.update(derived.id, TransactionUpdate(amount=99))
    with pytest.raises(InvalidStateError):
        service.delete(derived.id)
    assert amount_for(session, data["year"].id, data["pad"].id) == 1_000


def test_duplicate_year_category_is_rejected() -> None:
    session = make_session()
    data = seed(session)
    service = make_service(session)
    service.create(
        TransactionIn(year_id=data["year"].id, category_id=data["tax"].id, amount=100)
    )

    with pytest.raises(ConflictError):
        service.create(
            TransactionIn(year_id=data["year"].id, category_id=data["tax"].id, amount=5)
        )
    assert amount_for(session, data["year"].id, data["tax"].id) == 10_000


def test_missing_references_raise_not_found() -> None:
    session = make_session()
    data = seed(session)
    service = make_service(session)

    with pytest.raises(NotFoundError):
        service.create(TransactionIn(year_id=999, category_id=data["tax"].id, amount=1))
    with pytest.raises(NotFoundError):
        service.create(TransactionIn(year_id=data["year"].id, category_id=999, amount=1))
    with pytest.raises(NotFoundError):
        service.update(999, TransactionUpdate(amount=1))
    with pytest.raises(NotFoundError):
        service.delete(999)


def test_update_amount_recomputes_parents() -> None:
    session = make_session()
    data = seed(session)
    service = make_service(session)
    year_id = data["year"].id
    tax_txn = service.create(
        TransactionIn(year_id=year_id, category_id=data["tax"].id, amount=100)
    )
    service.create(TransactionIn(year_id=year_id, category_id=data["levy"].id, amount=50))

    updated = service.update(tax_txn.id, TransactionUpdate(amount=300))

    assert updated.amount_cents == 30_000
    assert amount_for(session, year_id, data["pad"].id) == 35_000
    assert amount_for(session, year_id, data["revenue"].id) == 35_000
    assert session.scalar(select(YearSummary)).total_revenue_cents == 35_000


def test_update_across_types_recomputes_old_and_new_type() -> None:
    session = make_session()
    data = seed(session)
    service = make_service(session)
    year_id = data["year"].id
    txn = service.create(TransactionIn(year_id=year_id, category_id=data["tax"].id, amount=80))

    service.update(txn.id, TransactionUpdate(category_id=data["salaries"].id))

    assert amount_for(session, year_id, data["pad"].id) is None
    assert amount_for(session, year_id, data["revenue"].id) is None
    assert amount_for(session, year_id, data["ops"].id) == 8_000
    assert amount_for(session, year_id, data["spending"].id) == 8_000
    summary = session.scalar(select(YearSummary))
    assert summary.total_revenue_cents == 0
    assert summary.total_expenditure_cents == 8_000
    assert summary.ending_balance_cents == -8_000
    assert len(service.last_outcomes) == 2


def test_update_into_existing_pair_is_rejected() -> None:
    session = make_session()
    data = seed(session)
    service = make_service(session)
    year_id = data["year"].id
    service.create(TransactionIn(year_id=year_id, category_id=data["tax"].id, amount=1))
    levy_txn = service.create(
        TransactionIn(year_id=year_id, category_id=data["levy"].id, amount=2)
    )

    with pytest.raises(ConflictError):
        service.update(levy_txn.id, TransactionUpdate(category_id=data["tax"].id))


def test_delete_last_level3_clears_derived_rows_and_summary() -> None:
    session = make_session()
    data = seed(session)
    service = make_service(session)
    txn = service.create(
        TransactionIn(year_id=data["year"].id, category_id=data["tax"].id, amount=42)
    )

    service.delete(txn.id)

    assert session.scalars(select(Transaction)).all() == []
    assert session.scalar(select(YearSummary)) is None


def test_rollup_failure_does_not_fail_the_write(monkeypatch, caplog) -> None:
    session = make_session()
    data = seed(session)
    service = make_service(session)

    def boom(*args, **kwargs):
        raise RuntimeError("rollup exploded")

    monkeypatch.setattr(rollup, "recompute_rollup", boom)
    with caplog.at_level(logging.ERROR):
        txn = service.create(
            TransactionIn(year_id=data["year"].id, category_id=data["tax"].id, amount=10)
        )

    assert txn.id is not None
    assert amount_for(session, data["year"].id, data["tax"].id) == 1_000
    assert amount_for(session, data["year"].id, data["pad"].id) is None
    [outcome] = service.last_outcomes
    assert not outcome.ok
    assert isinstance(outcome.error.cause, RuntimeError)
    assert "recalculation_failed" in caplog.text

    monkeypatch.undo()
    outcomes = service.recalculate_all()
    assert all(o.ok for o in outcomes)
    assert amount_for(session, data["year"].id, data["pad"].id) == 1_000
    assert session.scalar(select(YearSummary)).total_revenue_cents == 1_000


def test_reads_are_cached_and_writes_invalidate() -> None:
    session = make_session()
    data = seed(session)
    service = make_service(session)
    year_id = data["year"].id

    assert service.list(TransactionFilters(fiscal_year=2024)) == []
    service.create(TransactionIn(year_id=year_id, category_id=data["tax"].id, amount=5))

    listed = service.list(TransactionFilters(fiscal_year=2024, level=3))
    assert [item["amount"] for item in listed] == [Decimal("5.00")]
    totals = service.totals(fiscal_year=2024)
    assert totals == {"2024": {"revenue": Decimal("5.00")}}
    assert service.cache.stats()["size"] >= 2


def test_create_for_fiscal_year_creates_the_year() -> None:
    session = make_session()
    data = seed(session)
    service = make_service(session)

    txn = service.create_for_fiscal_year(
        FiscalYearTransactionIn(year=2030, category_id=data["salaries"].id, amount=900),
        CategoryType.expenditure,
    )

    year = session.scalar(select(BudgetYear).where(BudgetYear.year == 2030))
    assert year is not None
    assert txn.year_id == year.id
    assert amount_for(session, year.id, data["spending"].id) == 90_000

    with pytest.raises(ValidationError, match="mismatch"):
        service.create_for_fiscal_year(
            FiscalYearTransactionIn(year=2031, category_id=data["tax"].id, amount=1),
            CategoryType.expenditure,
        )
    assert session.scalar(select(BudgetYear).where(BudgetYear.year == 2031)) is None
