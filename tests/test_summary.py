from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import BudgetYear, Category, CategoryType, Transaction, YearSummary
from rollup import classify_financing, derive_figures, recompute_summary


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def add(session, obj):
    session.add(obj)
    session.commit()
    session.refresh(obj)
    return obj


def test_surplus_and_net_financing_use_both_sides_when_present() -> None:
    figures = derive_figures(100_000, 80_000, 30_000, 10_000)
    assert figures.surplus_deficit_cents == 20_000
    assert figures.net_financing_cents == 20_000
    assert figures.ending_balance_cents == 40_000


def test_missing_side_falls_back_to_the_side_with_data() -> None:
    only_revenue = derive_figures(50_000, 0, 0, 0)
    assert only_revenue.surplus_deficit_cents == 50_000
    assert only_revenue.ending_balance_cents == 50_000

    only_expenditure = derive_figures(0, 70_000, 0, 0)
    assert only_expenditure.surplus_deficit_cents == -70_000
    assert only_expenditure.ending_balance_cents == -70_000

    only_financing_out = derive_figures(0, 0, 0, 12_000)
    assert only_financing_out.surplus_deficit_cents == 0
    assert only_financing_out.net_financing_cents == -12_000
    assert only_financing_out.ending_balance_cents == -12_000

    nothing = derive_figures(0, 0, 0, 0)
    assert nothing.ending_balance_cents == 0


def test_balanced_budget_with_financing_ends_on_net_financing() -> None:
    figures = derive_figures(40_000, 40_000, 5_000, 0)
    assert figures.surplus_deficit_cents == 0
    assert figures.ending_balance_cents == 5_000


def test_financing_code_prefix_wins_over_name() -> None:
    receipts = Category(
        id=1, name="Pengeluaran yang salah nama", code="6.1", level=2,
        type=CategoryType.financing,
    )
    disbursements = Category(
        id=2, name="Penerimaan", code="6.2.1", level=2, type=CategoryType.financing
    )
    assert classify_financing(receipts) == "in"
    assert classify_financing(disbursements) == "out"


def test_financing_name_keywords_and_ambiguity() -> None:
    assert classify_financing(
        Category(id=1, name="Penerimaan Pembiayaan", level=2, type=CategoryType.financing)
    ) == "in"
    assert classify_financing(
        Category(id=2, name="Financing Disbursement", level=2, type=CategoryType.financing)
    ) == "out"
    assert classify_financing(
        Category(
            id=3,
            name="Penerimaan dan Pengeluaran",
            level=2,
            type=CategoryType.financing,
        )
    ) is None
    assert classify_financing(
        Category(id=4, name="Lainnya", level=2, type=CategoryType.financing)
    ) is None


def test_no_summary_row_for_year_without_transactions() -> None:
    session = make_session()
    year = add(session, BudgetYear(year=2023))

    assert recompute_summary(session, year.id) is None
    session.commit()
    assert session.scalar(select(YearSummary)) is None


def test_summary_reads_level1_totals_and_level2_financing() -> None:
    session = make_session()
    year = add(session, BudgetYear(year=2024))
    revenue = add(session, Category(name="Pendapatan", level=1, type=CategoryType.revenue))
    spending = add(
        session, Category(name="Belanja", level=1, type=CategoryType.expenditure)
    )
    financing = add(
        session, Category(name="Pembiayaan", level=1, type=CategoryType.financing)
    )
    fin_in = add(
        session,
        Category(
            name="Penerimaan Pembiayaan", level=2, parent_id=financing.id,
            type=CategoryType.financing,
        ),
    )
    fin_out = add(
        session,
        Category(
            name="Pengeluaran Pembiayaan", level=2, parent_id=financing.id,
            type=CategoryType.financing,
        ),
    )
    session.add_all(
        [
            Transaction(year_id=year.id, category_id=revenue.id, amount_cents=1_000_000),
            Transaction(year_id=year.id, category_id=spending.id, amount_cents=800_000),
            Transaction(year_id=year.id, category_id=fin_in.id, amount_cents=300_000),
            Transaction(year_id=year.id, category_id=fin_out.id, amount_cents=100_000),
            Transaction(year_id=year.id, category_id=financing.id, amount_cents=400_000),
        ]
    )
    session.commit()

    summary = recompute_summary(session, year.id)
    session.commit()

    assert summary is not None
    assert summary.total_revenue_cents == 1_000_000
    assert summary.total_expenditure_cents == 800_000
    assert summary.surplus_deficit_cents == 200_000
    assert summary.financing_in_cents == 300_000
    assert summary.financing_out_cents == 100_000
    assert summary.net_financing_cents == 200_000
    assert summary.ending_balance_cents == 400_000

    again = recompute_summary(session, year.id)
    session.commit()
    assert again.id == summary.id
    assert len(session.scalars(select(YearSummary)).all()) == 1


def test_stale_summary_is_removed_when_year_loses_all_transactions() -> None:
    session = make_session()
    year = add(session, BudgetYear(year=2024))
    revenue = add(session, Category(name="Pendapatan", level=1, type=CategoryType.revenue))
    txn = add(
        session, Transaction(year_id=year.id, category_id=revenue.id, amount_cents=500)
    )
    recompute_summary(session, year.id)
    session.commit()
    assert session.scalar(select(YearSummary)) is not None

    session.delete(txn)
    session.commit()
    assert recompute_summary(session, year.id) is None
    session.commit()
    assert session.scalar(select(YearSummary)) is None
