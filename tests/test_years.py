from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from cache import TTLCache
from database import Base
from errors import ConflictError, InvalidStateError, NotFoundError
from locks import KeyedLock
from models import BudgetYear, Category, CategoryType, Transaction
from schemas import BudgetYearIn, BudgetYearUpdate, TransactionIn
from services import BudgetYearService, ReportService, TransactionService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_year_crud_and_uniqueness() -> None:
    session = make_session()
    service = BudgetYearService(session, cache=TTLCache())

    year = service.create(
        BudgetYearIn(year=2024, regulation_number="Perda 7/2023", enacted_on=date(2023, 12, 20))
    )
    with pytest.raises(ConflictError):
        service.create(BudgetYearIn(year=2024))

    updated = service.update(year.id, BudgetYearUpdate(regulation_number="Perda 8/2023"))
    assert updated.regulation_number == "Perda 8/2023"
    assert updated.enacted_on == date(2023, 12, 20)

    [listed] = service.list_all()
    assert listed["year"] == 2024
    assert listed["transactionCount"] == 0

    service.delete(year.id)
    with pytest.raises(NotFoundError):
        service.get(year.id)


def test_year_with_transactions_cannot_be_deleted() -> None:
    session = make_session()
    cache = TTLCache()
    years = BudgetYearService(session, cache=cache)
    year = years.create(BudgetYearIn(year=2025))
    root = Category(name="Belanja", level=1, type=CategoryType.expenditure)
    session.add(root)
    session.flush()
    mid = Category(name="Operasi", level=2, parent_id=root.id, type=CategoryType.expenditure)
    session.add(mid)
    session.flush()
    leaf = Category(name="Pegawai", level=3, parent_id=mid.id, type=CategoryType.expenditure)
    session.add(leaf)
    session.commit()
    TransactionService(session, cache=cache, locks=KeyedLock()).create(
        TransactionIn(year_id=year.id, category_id=leaf.id, amount=25)
    )

    with pytest.raises(InvalidStateError):
        years.delete(year.id)

    detail = years.get_detail(year.id)
    assert detail["transactionCount"] == 3
    assert str(detail["summary"]["endingBalance"]) == "-25.00"


def test_get_or_create_returns_existing_year() -> None:
    session = make_session()
    service = BudgetYearService(session, cache=TTLCache())
    first = service.get_or_create(2026)
    second = service.get_or_create(2026)
    assert first.id == second.id
    assert len(session.scalars(select(BudgetYear)).all()) == 1


def test_dashboard_falls_back_to_computed_figures_and_empty_years() -> None:
    session = make_session()
    cache = TTLCache()
    years = BudgetYearService(session, cache=cache)
    year = years.create(BudgetYearIn(year=2024))
    years.create(BudgetYearIn(year=2023))
    revenue = Category(name="Pendapatan", level=1, type=CategoryType.revenue)
    session.add(revenue)
    session.commit()
    # written directly, so no stored summary exists yet
    session.add(Transaction(year_id=year.id, category_id=revenue.id, amount_cents=12_345))
    session.commit()

    reports = ReportService(session, cache=cache)
    computed = reports.dashboard(2024)
    assert computed["source"] == "computed"
    assert str(computed["totalRevenue"]) == "123.45"

    empty = reports.dashboard(2023)
    assert empty["source"] == "empty"
    assert str(empty["endingBalance"]) == "0.00"

    with pytest.raises(NotFoundError):
        reports.dashboard(1999)
