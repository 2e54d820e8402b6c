"""Derived-state engines for the category hierarchy.

Level 3 transactions are the only facts entered by hand. Level 2 and level 1
transactions and the per-year ``YearSummary`` are recomputed from scratch
from those facts whenever they change:

* :func:`recompute_rollup` rebuilds the level 2 and level 1 rows for one
  ``(year, category type)`` pair.
* :func:`recompute_summary` rebuilds the year summary from the level 1
  revenue/expenditure rows and the level 2 financing rows.
* :func:`recalculate` runs both under a per-key lock and reports failures
  as a :class:`RecalculationOutcome` instead of raising.
"""

from __future__ import annotations

import logging
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Literal, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from errors import NonCriticalRollupFailure
from locks import KeyedLock
from models import Category, CategoryType, Transaction, YearSummary


logger = logging.getLogger(__name__)

FINANCING_IN_CODE_PREFIX = "6.1"
FINANCING_OUT_CODE_PREFIX = "6.2"
FINANCING_IN_KEYWORDS = ("receipt", "penerimaan")
FINANCING_OUT_KEYWORDS = ("disbursement", "pengeluaran")

FinancingSide = Literal["in", "out"]


@dataclass
class LevelRollup:
    level: int
    upserted: int = 0
    deleted: int = 0
    skipped_orphans: int = 0


@dataclass
class RollupResult:
    year_id: int
    category_type: CategoryType
    levels: list[LevelRollup] = field(default_factory=list)

    def for_level(self, level: int) -> LevelRollup:
        for item in self.levels:
            if item.level == level:
                return item
        raise KeyError(level)


@dataclass(frozen=True)
class SummaryFigures:
    total_revenue_cents: int
    total_expenditure_cents: int
    financing_in_cents: int
    financing_out_cents: int
    surplus_deficit_cents: int
    net_financing_cents: int
    ending_balance_cents: int


@dataclass
class RecalculationOutcome:
    year_id: int
    category_type: Optional[CategoryType]
    rollup: Optional[RollupResult] = None
    summary: Optional[YearSummary] = None
    error: Optional[NonCriticalRollupFailure] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _transactions_at_level(
    session: Session, year_id: int, category_type: CategoryType, level: int
) -> list[Transaction]:
    stmt = (
        select(Transaction)
        .join(Category, Transaction.category_id == Category.id)
        .where(
            Transaction.year_id == year_id,
            Category.type == category_type,
            Category.level == level,
        )
        .order_by(Transaction.id)
        .execution_options(populate_existing=True)
    )
    return list(session.scalars(stmt).all())


def _roll_up_level(
    session: Session, year_id: int, category_type: CategoryType, child_level: int
) -> LevelRollup:
    parent_level = child_level - 1
    result = LevelRollup(level=parent_level)

    totals: dict[int, int] = {}
    for txn in _transactions_at_level(session, year_id, category_type, child_level):
        parent_id = txn.category.parent_id
        if parent_id is None:
            result.skipped_orphans += 1
            logger.warning(
                f"rollup_orphan: year_id={year_id} type={category_type.value} "
                f"level={child_level} category_id={txn.category_id} has no parent"
            )
            continue
        totals[parent_id] = totals.get(parent_id, 0) + txn.amount_cents

    existing = {
        txn.category_id: txn
        for txn in _transactions_at_level(session, year_id, category_type, parent_level)
    }

    for parent_id, total in totals.items():
        if total <= 0:
            continue
        row = existing.get(parent_id)
        if row is None:
            session.add(
                Transaction(year_id=year_id, category_id=parent_id, amount_cents=total)
            )
        elif row.amount_cents != total:
            row.amount_cents = total
        result.upserted += 1

    for category_id, row in existing.items():
        if totals.get(category_id, 0) <= 0:
            session.delete(row)
            result.deleted += 1

    session.flush()
    return result


def recompute_rollup(
    session: Session, year_id: int, category_type: CategoryType
) -> RollupResult:
    """Rebuild level 2 from level 3, then level 1 from level 2.

    Parents whose children sum to zero lose their derived row entirely.
    Running it twice on unchanged level 3 data is a no-op.
    """
    result = RollupResult(year_id=year_id, category_type=category_type)
    result.levels.append(_roll_up_level(session, year_id, category_type, 3))
    result.levels.append(_roll_up_level(session, year_id, category_type, 2))
    logger.info(
        f"rollup: year_id={year_id} type={category_type.value} "
        + " ".join(
            f"l{lvl.level}_upserted={lvl.upserted} l{lvl.level}_deleted={lvl.deleted}"
            for lvl in result.levels
        )
    )
    return result


def classify_financing(category: Category) -> Optional[FinancingSide]:
    """Place a level 2 financing category on the receipt or disbursement side.

    A code prefix wins over the name. Names matching both keyword sets or
    neither are reported and left out of the totals.
    """
    code = (category.code or "").strip()
    if code.startswith(FINANCING_IN_CODE_PREFIX):
        return "in"
    if code.startswith(FINANCING_OUT_CODE_PREFIX):
        return "out"

    name = category.name.lower()
    is_in = any(word in name for word in FINANCING_IN_KEYWORDS)
    is_out = any(word in name for word in FINANCING_OUT_KEYWORDS)
    if is_in and not is_out:
        return "in"
    if is_out and not is_in:
        return "out"
    logger.warning(
        f"financing_unclassified: category_id={category.id} name={category.name!r} "
        f"code={category.code!r}"
    )
    return None


def _sum_level(
    session: Session, year_id: int, category_type: CategoryType, level: int
) -> int:
    total = session.execute(
        select(func.coalesce(func.sum(Transaction.amount_cents), 0))
        .join(Category, Transaction.category_id == Category.id)
        .where(
            Transaction.year_id == year_id,
            Category.type == category_type,
            Category.level == level,
        )
    ).scalar_one()
    return int(total or 0)


def _combine(positive: int, negative: int) -> int:
    if positive > 0 and negative > 0:
        return positive - negative
    if positive > 0:
        return positive
    if negative > 0:
        return -negative
    return 0


def derive_figures(
    total_revenue_cents: int,
    total_expenditure_cents: int,
    financing_in_cents: int,
    financing_out_cents: int,
) -> SummaryFigures:
    """Apply the "use whichever side has data" policy to the four inputs."""
    surplus_deficit = _combine(total_revenue_cents, total_expenditure_cents)
    net_financing = _combine(financing_in_cents, financing_out_cents)

    if surplus_deficit != 0 and net_financing != 0:
        ending_balance = surplus_deficit + net_financing
    elif surplus_deficit != 0:
        ending_balance = surplus_deficit
    elif net_financing != 0:
        ending_balance = net_financing
    else:
        ending_balance = 0

    return SummaryFigures(
        total_revenue_cents=total_revenue_cents,
        total_expenditure_cents=total_expenditure_cents,
        financing_in_cents=financing_in_cents,
        financing_out_cents=financing_out_cents,
        surplus_deficit_cents=surplus_deficit,
        net_financing_cents=net_financing,
        ending_balance_cents=ending_balance,
    )


def compute_figures(session: Session, year_id: int) -> SummaryFigures:
    revenue = _sum_level(session, year_id, CategoryType.revenue, 1)
    expenditure = _sum_level(session, year_id, CategoryType.expenditure, 1)

    financing_in = 0
    financing_out = 0
    for txn in _transactions_at_level(session, year_id, CategoryType.financing, 2):
        side = classify_financing(txn.category)
        if side == "in":
            financing_in += txn.amount_cents
        elif side == "out":
            financing_out += txn.amount_cents

    return derive_figures(revenue, expenditure, financing_in, financing_out)


def has_transactions(session: Session, year_id: int) -> bool:
    count = session.execute(
        select(func.count(Transaction.id)).where(Transaction.year_id == year_id)
    ).scalar_one()
    return (count or 0) > 0


def recompute_summary(session: Session, year_id: int) -> Optional[YearSummary]:
    """Recompute and upsert the single summary row for ``year_id``.

    A year without any transaction gets no summary row; a stale one is
    removed.
    """
    summary = session.scalar(
        select(YearSummary)
        .where(YearSummary.year_id == year_id)
        .execution_options(populate_existing=True)
    )
    if not has_transactions(session, year_id):
        if summary:
            session.delete(summary)
            session.flush()
        logger.info(f"summary: year_id={year_id} skipped (no transactions)")
        return None

    figures = compute_figures(session, year_id)
    if not summary:
        summary = YearSummary(year_id=year_id)
        session.add(summary)

    summary.total_revenue_cents = figures.total_revenue_cents
    summary.total_expenditure_cents = figures.total_expenditure_cents
    summary.surplus_deficit_cents = figures.surplus_deficit_cents
    summary.financing_in_cents = figures.financing_in_cents
    summary.financing_out_cents = figures.financing_out_cents
    summary.net_financing_cents = figures.net_financing_cents
    summary.ending_balance_cents = figures.ending_balance_cents
    session.flush()

    logger.info(
        f"summary: year_id={year_id} revenue={figures.total_revenue_cents} "
        f"expenditure={figures.total_expenditure_cents} "
        f"surplus_deficit={figures.surplus_deficit_cents} "
        f"net_financing={figures.net_financing_cents} "
        f"ending_balance={figures.ending_balance_cents}"
    )
    return summary


def recalculate(
    session: Session,
    locks: KeyedLock,
    year_id: int,
    category_type: Optional[CategoryType],
) -> RecalculationOutcome:
    """Run rollup then summary for one key and commit.

    Must be called after the primary write is committed. Never raises:
    failures are rolled back and returned on the outcome.

    Locks are taken as ``(year, type)`` then ``(year, None)``, both before
    the first flush. A thread holding the database write lock therefore never
    waits on one of these locks.
    """
    outcome = RecalculationOutcome(year_id=year_id, category_type=category_type)
    year_lock = nullcontext() if category_type is None else locks.hold((year_id, None))
    try:
        with locks.hold((year_id, category_type)), year_lock:
            if category_type is not None:
                outcome.rollup = recompute_rollup(session, year_id, category_type)
            outcome.summary = recompute_summary(session, year_id)
            session.commit()
    except Exception as exc:
        session.rollback()
        outcome.error = NonCriticalRollupFailure(year_id, category_type, exc)
    return outcome


def level3_keys(session: Session) -> list[tuple[int, CategoryType]]:
    rows = session.execute(
        select(Transaction.year_id, Category.type)
        .join(Category, Transaction.category_id == Category.id)
        .where(Category.level == 3)
        .group_by(Transaction.year_id, Category.type)
        .order_by(Transaction.year_id, Category.type)
    ).all()
    return [(row[0], row[1]) for row in rows]


def ensure_all(session: Session, locks: KeyedLock) -> list[RecalculationOutcome]:
    """Recalculate every ``(year, type)`` pair that has level 3 data.

    Years holding only derived rows (for example after all their level 3
    rows vanished while a recalculation failed) are refreshed too, so their
    stale derived rows and summary get cleaned up.
    """
    keys = level3_keys(session)
    key_set = set(keys)
    outcomes = [
        recalculate(session, locks, year_id, category_type)
        for year_id, category_type in keys
    ]

    covered = {year_id for year_id, _ in keys}
    stale_pairs = session.execute(
        select(Transaction.year_id, Category.type)
        .join(Category, Transaction.category_id == Category.id)
        .where(Category.level < 3)
        .group_by(Transaction.year_id, Category.type)
    ).all()
    for year_id, category_type in stale_pairs:
        if (year_id, category_type) not in key_set:
            outcomes.append(recalculate(session, locks, year_id, category_type))
            covered.add(year_id)

    orphan_summaries = session.scalars(
        select(YearSummary.year_id).where(YearSummary.year_id.not_in(covered))
    ).all()
    for year_id in orphan_summaries:
        outcomes.append(recalculate(session, locks, year_id, None))

    failed = sum(1 for o in outcomes if not o.ok)
    logger.info(f"ensure_all: recalculated={len(outcomes)} failed={failed}")
    return outcomes


def delete_summary(session: Session, year_id: int) -> None:
    session.execute(delete(YearSummary).where(YearSummary.year_id == year_id))
