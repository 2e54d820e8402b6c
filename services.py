from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

from sqlalchemy import func, select, tuple_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from amounts import cents_to_decimal
from cache import TTLCache, cache_key, cached, get_cache, invalidate
from errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PersistenceFailure,
    ValidationError,
    category_not_found,
    duplicate_transaction,
    fiscal_year_not_found,
    manual_entry_forbidden,
    transaction_not_found,
    year_not_found,
)
from locks import KeyedLock, get_rollup_locks
from models import BudgetYear, Category, CategoryType, Transaction, YearSummary
from rollup import (
    RecalculationOutcome,
    SummaryFigures,
    compute_figures,
    delete_summary,
    ensure_all,
    has_transactions,
    recalculate,
)
from schemas import (
    BudgetYearIn,
    BudgetYearUpdate,
    CategoryIn,
    CategoryUpdate,
    FiscalYearTransactionIn,
    TransactionIn,
    TransactionUpdate,
)


logger = logging.getLogger(__name__)

MANUAL_LEVEL = 3


def year_to_dict(year: BudgetYear) -> dict[str, object]:
    return {
        "id": year.id,
        "year": year.year,
        "regulationNumber": year.regulation_number,
        "enactedOn": year.enacted_on.isoformat() if year.enacted_on else None,
    }


def category_to_dict(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "parentId": category.parent_id,
        "type": category.type.value,
        "name": category.name,
        "code": category.code,
        "level": category.level,
    }


def transaction_to_dict(txn: Transaction) -> dict[str, object]:
    data: dict[str, object] = {
        "id": txn.id,
        "yearId": txn.year_id,
        "categoryId": txn.category_id,
        "amount": cents_to_decimal(txn.amount_cents),
        "amountCents": txn.amount_cents,
    }
    if txn.year is not None:
        data["year"] = txn.year.year
    if txn.category is not None:
        data["category"] = category_to_dict(txn.category)
    return data


def figures_to_dict(figures: SummaryFigures | YearSummary) -> dict[str, object]:
    return {
        "totalRevenue": cents_to_decimal(figures.total_revenue_cents),
        "totalExpenditure": cents_to_decimal(figures.total_expenditure_cents),
        "surplusDeficit": cents_to_decimal(figures.surplus_deficit_cents),
        "financingIn": cents_to_decimal(figures.financing_in_cents),
        "financingOut": cents_to_decimal(figures.financing_out_cents),
        "netFinancing": cents_to_decimal(figures.net_financing_cents),
        "endingBalance": cents_to_decimal(figures.ending_balance_cents),
    }


def _percentage(part: int, total: int) -> Decimal:
    if total <= 0:
        return Decimal("0.0")
    return (Decimal(part) * 100 / Decimal(total)).quantize(
        Decimal("0.1"), rounding=ROUND_HALF_UP
    )


class BudgetYearService:
    def __init__(self, session: Session, cache: Optional[TTLCache] = None) -> None:
        self.session = session
        self.cache = cache or get_cache()

    def list_all(self) -> list[dict[str, object]]:
        def load() -> list[dict[str, object]]:
            counts = dict(
                self.session.execute(
                    select(Transaction.year_id, func.count(Transaction.id)).group_by(
                        Transaction.year_id
                    )
                ).all()
            )
            years = self.session.scalars(
                select(BudgetYear).order_by(BudgetYear.year.desc())
            ).all()
            items = []
            for year in years:
                item = year_to_dict(year)
                item["transactionCount"] = int(counts.get(year.id, 0))
                items.append(item)
            return items

        return cached(self.cache, cache_key("years"), load)

    def get(self, year_id: int) -> BudgetYear:
        year = self.session.get(BudgetYear, year_id)
        if not year:
            raise NotFoundError(year_not_found(year_id))
        return year

    def get_detail(self, year_id: int) -> dict[str, object]:
        def load() -> dict[str, object]:
            year = self.get(year_id)
            item = year_to_dict(year)
            summary = self.session.scalar(
                select(YearSummary).where(YearSummary.year_id == year.id)
            )
            item["summary"] = figures_to_dict(summary) if summary else None
            item["transactionCount"] = int(
                self.session.execute(
                    select(func.count(Transaction.id)).where(
                        Transaction.year_id == year.id
                    )
                ).scalar_one()
                or 0
            )
            return item

        return cached(self.cache, cache_key("year", id=year_id), load)

    def by_fiscal_year(self, fiscal_year: int) -> Optional[BudgetYear]:
        return self.session.scalar(
            select(BudgetYear).where(BudgetYear.year == fiscal_year)
        )

    def get_or_create(self, fiscal_year: int) -> BudgetYear:
        year = self.by_fiscal_year(fiscal_year)
        if year:
            return year
        year = BudgetYear(year=fiscal_year)
        self.session.add(year)
        try:
            self.session.commit()
        except IntegrityError:
            # created concurrently by another request
            self.session.rollback()
            year = self.by_fiscal_year(fiscal_year)
            if year is None:
                raise
            return year
        self.session.refresh(year)
        logger.info(f"budget_year: implicitly created year={fiscal_year}")
        invalidate(self.cache)
        return year

    def _ensure_unique(self, fiscal_year: int, exclude_id: Optional[int] = None) -> None:
        stmt = select(BudgetYear.id).where(BudgetYear.year == fiscal_year)
        if exclude_id is not None:
            stmt = stmt.where(BudgetYear.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise ConflictError(f"Budget year {fiscal_year} already exists")

    def create(self, data: BudgetYearIn) -> BudgetYear:
        self._ensure_unique(data.year)
        year = BudgetYear(
            year=data.year,
            regulation_number=data.regulation_number,
            enacted_on=data.enacted_on,
        )
        self.session.add(year)
        self.session.commit()
        self.session.refresh(year)
        invalidate(self.cache)
        return year

    def update(self, year_id: int, data: BudgetYearUpdate) -> BudgetYear:
        year = self.get(year_id)
        provided = data.model_fields_set
        if data.year is not None and data.year != year.year:
            self._ensure_unique(data.year, exclude_id=year.id)
            year.year = data.year
        if "regulation_number" in provided:
            year.regulation_number = data.regulation_number
        if "enacted_on" in provided:
            year.enacted_on = data.enacted_on
        self.session.commit()
        invalidate(self.cache)
        return year

    def delete(self, year_id: int) -> None:
        year = self.get(year_id)
        count = int(
            self.session.execute(
                select(func.count(Transaction.id)).where(Transaction.year_id == year.id)
            ).scalar_one()
            or 0
        )
        if count:
            raise InvalidStateError(
                "Cannot delete a budget year that still has transactions"
            )
        delete_summary(self.session, year.id)
        self.session.delete(year)
        self.session.commit()
        invalidate(self.cache)


class CategoryService:
    def __init__(self, session: Session, cache: Optional[TTLCache] = None) -> None:
        self.session = session
        self.cache = cache or get_cache()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError(category_not_found(category_id))
        return category

    def get_detail(self, category_id: int) -> dict[str, object]:
        def load() -> dict[str, object]:
            category = self.get(category_id)
            item = category_to_dict(category)
            item["parent"] = (
                category_to_dict(category.parent) if category.parent else None
            )
            item["children"] = [
                category_to_dict(child)
                for child in sorted(category.children, key=lambda c: c.name.lower())
            ]
            txns = self.session.scalars(
                select(Transaction)
                .options(joinedload(Transaction.year))
                .where(Transaction.category_id == category.id)
            ).all()
            item["transactions"] = [
                {
                    "id": txn.id,
                    "yearId": txn.year_id,
                    "year": txn.year.year,
                    "amount": cents_to_decimal(txn.amount_cents),
                }
                for txn in sorted(txns, key=lambda t: t.year.year)
            ]
            return item

        return cached(self.cache, cache_key("category", id=category_id), load)

    def _transaction_counts(self) -> dict[int, int]:
        return dict(
            self.session.execute(
                select(Transaction.category_id, func.count(Transaction.id)).group_by(
                    Transaction.category_id
                )
            ).all()
        )

    def list(
        self,
        category_type: Optional[CategoryType] = None,
        level: Optional[int] = None,
        parent_id: Optional[int] = None,
    ) -> list[dict[str, object]]:
        """Categories ordered as a flattened hierarchy.

        Within each type: a level 1 category, then each of its level 2
        children followed by their level 3 children, names ascending.
        Categories whose parent is not part of the result are appended.
        """

        def load() -> list[dict[str, object]]:
            stmt = select(Category)
            if category_type is not None:
                stmt = stmt.where(Category.type == category_type)
            if level is not None:
                stmt = stmt.where(Category.level == level)
            if parent_id is not None:
                stmt = stmt.where(Category.parent_id == parent_id)
            categories = self.session.scalars(stmt).all()
            counts = self._transaction_counts()

            by_parent: dict[Optional[int], list[Category]] = {}
            present = {c.id for c in categories}
            for category in categories:
                key = category.parent_id if category.parent_id in present else None
                by_parent.setdefault(key, []).append(category)
            for children in by_parent.values():
                children.sort(key=lambda c: (c.type.value, c.level, c.name.lower()))

            ordered: list[Category] = []

            def walk(node: Category) -> None:
                ordered.append(node)
                for child in by_parent.get(node.id, []):
                    walk(child)

            for root in by_parent.get(None, []):
                walk(root)

            items = []
            for category in ordered:
                item = category_to_dict(category)
                item["transactionCount"] = int(counts.get(category.id, 0))
                items.append(item)
            return items

        key = cache_key(
            "categories", type=category_type, level=level, parent=parent_id
        )
        return cached(self.cache, key, load)

    def tree(self, category_type: Optional[CategoryType] = None) -> list[dict[str, object]]:
        def load() -> list[dict[str, object]]:
            stmt = select(Category)
            if category_type is not None:
                stmt = stmt.where(Category.type == category_type)
            categories = self.session.scalars(stmt.order_by(Category.id)).all()
            counts = self._transaction_counts()
            nodes = {}
            for category in categories:
                node = category_to_dict(category)
                node["transactionCount"] = int(counts.get(category.id, 0))
                node["children"] = []
                nodes[category.id] = node
            roots = []
            for category in categories:
                node = nodes[category.id]
                if category.level == 1:
                    roots.append(node)
                elif category.parent_id in nodes:
                    nodes[category.parent_id]["children"].append(node)
            return roots

        return cached(self.cache, cache_key("category_tree", type=category_type), load)

    def _validate_placement(
        self,
        category_type: CategoryType,
        level: int,
        parent_id: Optional[int],
    ) -> None:
        if level == 1:
            if parent_id is not None:
                raise ValidationError("Level 1 categories cannot have a parent")
            return
        if parent_id is None:
            raise ValidationError(
                "Categories at level 2 or deeper must have a parent category"
            )
        parent = self.session.get(Category, parent_id)
        if not parent:
            raise NotFoundError(category_not_found(parent_id))
        if parent.level != level - 1:
            raise InvalidStateError(
                f"Parent of a level {level} category must be level {level - 1}"
            )
        if parent.type != category_type:
            raise InvalidStateError("Parent category must have the same type")

    def _ensure_unique_name(
        self,
        name: str,
        category_type: CategoryType,
        level: int,
        parent_id: Optional[int],
        exclude_id: Optional[int] = None,
    ) -> None:
        stmt = select(Category.id).where(
            Category.type == category_type,
            Category.level == level,
            func.lower(Category.name) == name.lower(),
        )
        if parent_id is None:
            stmt = stmt.where(Category.parent_id.is_(None))
        else:
            stmt = stmt.where(Category.parent_id == parent_id)
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise ConflictError(
                "A category with the same name (case-insensitive) already exists "
                "at this level and parent"
            )

    def _ensure_unique_code(
        self,
        code: Optional[str],
        category_type: CategoryType,
        exclude_id: Optional[int] = None,
    ) -> None:
        if not code:
            return
        stmt = select(Category.id).where(
            Category.type == category_type,
            Category.code.is_not(None),
            func.lower(Category.code) == code.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise ConflictError(
                "Category code is already used for this type (case-insensitive)"
            )

    def create(self, data: CategoryIn) -> Category:
        self._validate_placement(data.type, data.level, data.parent_id)
        self._ensure_unique_name(data.name, data.type, data.level, data.parent_id)
        self._ensure_unique_code(data.code, data.type)
        category = Category(
            parent_id=data.parent_id,
            type=data.type,
            name=data.name,
            code=data.code,
            level=data.level,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        invalidate(self.cache)
        return category

    def _has_dependents(self, category_id: int) -> tuple[int, int]:
        children = int(
            self.session.execute(
                select(func.count(Category.id)).where(Category.parent_id == category_id)
            ).scalar_one()
            or 0
        )
        transactions = int(
            self.session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.category_id == category_id
                )
            ).scalar_one()
            or 0
        )
        return children, transactions

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        provided = data.model_fields_set

        new_type = data.type if data.type is not None else category.type
        new_level = data.level if data.level is not None else category.level
        new_parent_id = data.parent_id if "parent_id" in provided else category.parent_id
        new_name = data.name if data.name is not None else category.name
        new_code = data.code if "code" in provided else category.code

        moved = (
            new_type != category.type
            or new_level != category.level
            or new_parent_id != category.parent_id
        )
        if moved:
            children, transactions = self._has_dependents(category.id)
            if new_type != category.type or new_level != category.level:
                if children or transactions:
                    raise InvalidStateError(
                        "Cannot change type or level of a category that has "
                        "sub-categories or transactions"
                    )
            if new_parent_id == category.id:
                raise InvalidStateError("A category cannot be its own parent")
            self._validate_placement(new_type, new_level, new_parent_id)

        self._ensure_unique_name(
            new_name, new_type, new_level, new_parent_id, exclude_id=category.id
        )
        self._ensure_unique_code(new_code, new_type, exclude_id=category.id)

        moved_parent = new_parent_id != category.parent_id
        # financing sides are classified from name and code
        reclassified = new_type == CategoryType.financing and (
            new_name != category.name or new_code != category.code
        )
        category.type = new_type
        category.level = new_level
        category.parent_id = new_parent_id
        category.name = new_name
        category.code = new_code
        self.session.commit()

        if moved_parent or reclassified:
            recalculated = TransactionService(self.session, self.cache).recalculate_all()
            logger.info(
                f"category: changed category_id={category.id} "
                f"moved={moved_parent} reclassified={reclassified} "
                f"recalculated={len(recalculated)}"
            )
        invalidate(self.cache)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        children, transactions = self._has_dependents(category.id)
        if children:
            raise InvalidStateError("Cannot delete a category that has sub-categories")
        if transactions:
            raise InvalidStateError("Cannot delete a category that has transactions")
        self.session.delete(category)
        self.session.commit()
        invalidate(self.cache)


@dataclass
class TransactionFilters:
    fiscal_year: Optional[int] = None
    category_id: Optional[int] = None
    type: Optional[CategoryType] = None
    level: Optional[int] = None


@dataclass
class BulkCreateResult:
    count: int
    outcomes: list[RecalculationOutcome] = field(default_factory=list)


class TransactionService:
    def __init__(
        self,
        session: Session,
        cache: Optional[TTLCache] = None,
        locks: Optional[KeyedLock] = None,
    ) -> None:
        self.session = session
        self.cache = cache or get_cache()
        self.locks = locks or get_rollup_locks()
        self.last_outcomes: list[RecalculationOutcome] = []

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.year))
            .where(Transaction.id == transaction_id)
        )
        if not txn:
            raise NotFoundError(transaction_not_found(transaction_id))
        return txn

    def get_detail(self, transaction_id: int) -> dict[str, object]:
        return cached(
            self.cache,
            cache_key("transaction", id=transaction_id),
            lambda: transaction_to_dict(self.get(transaction_id)),
        )

    def list(self, filters: Optional[TransactionFilters] = None) -> list[dict[str, object]]:
        filters = filters or TransactionFilters()

        def load() -> list[dict[str, object]]:
            stmt = (
                select(Transaction)
                .join(Category, Transaction.category_id == Category.id)
                .join(BudgetYear, Transaction.year_id == BudgetYear.id)
                .options(joinedload(Transaction.category), joinedload(Transaction.year))
                .order_by(BudgetYear.year.desc(), Category.level, Transaction.id)
            )
            if filters.fiscal_year is not None:
                stmt = stmt.where(BudgetYear.year == filters.fiscal_year)
            if filters.category_id is not None:
                stmt = stmt.where(Transaction.category_id == filters.category_id)
            if filters.type is not None:
                stmt = stmt.where(Category.type == filters.type)
            if filters.level is not None:
                stmt = stmt.where(Category.level == filters.level)
            return [transaction_to_dict(txn) for txn in self.session.scalars(stmt).all()]

        return cached(self.cache, cache_key("transactions", **asdict(filters)), load)

    def totals(
        self,
        fiscal_year: Optional[int] = None,
        category_type: Optional[CategoryType] = None,
    ) -> dict[str, dict[str, Decimal]]:
        """Level 1 totals grouped by fiscal year, then by category type."""

        def load() -> dict[str, dict[str, Decimal]]:
            stmt = (
                select(
                    BudgetYear.year,
                    Category.type,
                    func.coalesce(func.sum(Transaction.amount_cents), 0),
                )
                .join(Category, Transaction.category_id == Category.id)
                .join(BudgetYear, Transaction.year_id == BudgetYear.id)
                .where(Category.level == 1)
                .group_by(BudgetYear.year, Category.type)
                .order_by(BudgetYear.year)
            )
            if fiscal_year is not None:
                stmt = stmt.where(BudgetYear.year == fiscal_year)
            if category_type is not None:
                stmt = stmt.where(Category.type == category_type)
            grouped: dict[str, dict[str, Decimal]] = {}
            for year, ctype, total in self.session.execute(stmt).all():
                grouped.setdefault(str(year), {})[ctype.value] = cents_to_decimal(
                    int(total)
                )
            return grouped

        key = cache_key("transaction_totals", year=fiscal_year, type=category_type)
        return cached(self.cache, key, load)

    def _require_year(self, year_id: int) -> BudgetYear:
        year = self.session.get(BudgetYear, year_id)
        if not year:
            raise NotFoundError(year_not_found(year_id))
        return year

    def _require_manual_category(self, category_id: int, action: str) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError(category_not_found(category_id))
        if category.level != MANUAL_LEVEL:
            raise InvalidStateError(manual_entry_forbidden(category.level, action))
        return category

    def _ensure_no_duplicate(
        self, year_id: int, category_id: int, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(Transaction.id).where(
            Transaction.year_id == year_id, Transaction.category_id == category_id
        )
        if exclude_id is not None:
            stmt = stmt.where(Transaction.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise ConflictError(duplicate_transaction())

    def _commit_primary(self) -> None:
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(duplicate_transaction()) from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception("transaction_write_failed")
            raise PersistenceFailure("Failed to save transaction") from exc

    def _recalculate(
        self, keys: Iterable[tuple[int, Optional[CategoryType]]]
    ) -> list[RecalculationOutcome]:
        outcomes = []
        for year_id, category_type in keys:
            outcome = recalculate(self.session, self.locks, year_id, category_type)
            if not outcome.ok:
                # derived rows may be stale until the next ensure run
                logger.error(
                    f"recalculation_failed (non-critical): {outcome.error}",
                    exc_info=outcome.error.cause if outcome.error else None,
                )
            outcomes.append(outcome)
        self.last_outcomes = outcomes
        return outcomes

    def create(self, data: TransactionIn) -> Transaction:
        self._require_year(data.year_id)
        category = self._require_manual_category(data.category_id, "enter")
        self._ensure_no_duplicate(data.year_id, data.category_id)

        txn = Transaction(
            year_id=data.year_id,
            category_id=data.category_id,
            amount_cents=data.amount_cents,
        )
        self.session.add(txn)
        self._commit_primary()
        logger.info(
            f"transaction: created id={txn.id} year_id={txn.year_id} "
            f"category_id={txn.category_id} amount_cents={txn.amount_cents}"
        )

        self._recalculate([(data.year_id, category.type)])
        invalidate(self.cache)
        return self.get(txn.id)

    def create_for_fiscal_year(
        self, data: FiscalYearTransactionIn, expected_type: CategoryType
    ) -> Transaction:
        category = self._require_manual_category(data.category_id, "enter")
        if category.type != expected_type:
            raise ValidationError("Category type mismatch")
        years = BudgetYearService(self.session, self.cache)
        existing = years.by_fiscal_year(data.year)
        if existing is not None:
            self._ensure_no_duplicate(existing.id, category.id)
        year = existing or years.get_or_create(data.year)
        return self.create(
            TransactionIn(year_id=year.id, category_id=category.id, amount=data.amount)
        )

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        if txn.category.level != MANUAL_LEVEL:
            raise InvalidStateError(manual_entry_forbidden(txn.category.level, "change"))

        old_key = (txn.year_id, txn.category.type)
        new_year = txn.year
        if data.year_id is not None and data.year_id != txn.year_id:
            new_year = self._require_year(data.year_id)
        new_category = txn.category
        if data.category_id is not None and data.category_id != txn.category_id:
            new_category = self._require_manual_category(data.category_id, "change")
        if new_year.id != txn.year_id or new_category.id != txn.category_id:
            self._ensure_no_duplicate(new_year.id, new_category.id, exclude_id=txn.id)

        txn.year = new_year
        txn.category = new_category
        if data.amount_cents is not None:
            txn.amount_cents = data.amount_cents
        self._commit_primary()
        logger.info(
            f"transaction: updated id={txn.id} year_id={txn.year_id} "
            f"category_id={txn.category_id} amount_cents={txn.amount_cents}"
        )

        new_key = (new_year.id, new_category.type)
        keys = [new_key] if new_key == old_key else [new_key, old_key]
        self._recalculate(keys)
        invalidate(self.cache)
        return self.get(txn.id)

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        if txn.category.level != MANUAL_LEVEL:
            raise InvalidStateError(manual_entry_forbidden(txn.category.level, "delete"))
        key = (txn.year_id, txn.category.type)
        self.session.delete(txn)
        self._commit_primary()
        logger.info(f"transaction: deleted id={transaction_id}")

        self._recalculate([key])
        invalidate(self.cache)

    def bulk_create(self, items: list[TransactionIn]) -> BulkCreateResult:
        """Insert many level 3 transactions at once, all or nothing.

        Every item is validated before anything is written. Derived rows are
        recalculated once per distinct ``(year, type)`` pair.
        """
        if not items:
            raise ValidationError("Transactions must be a non-empty list")

        year_ids = {item.year_id for item in items}
        found_years = set(
            self.session.scalars(
                select(BudgetYear.id).where(BudgetYear.id.in_(year_ids))
            ).all()
        )
        for item in items:
            if item.year_id not in found_years:
                raise NotFoundError(year_not_found(item.year_id))

        category_ids = {item.category_id for item in items}
        categories = {
            c.id: c
            for c in self.session.scalars(
                select(Category).where(Category.id.in_(category_ids))
            ).all()
        }
        for item in items:
            category = categories.get(item.category_id)
            if category is None:
                raise NotFoundError(category_not_found(item.category_id))
            if category.level != MANUAL_LEVEL:
                raise InvalidStateError(manual_entry_forbidden(category.level, "enter"))

        pairs: list[tuple[int, int]] = []
        seen: set[tuple[int, int]] = set()
        for item in items:
            pair = (item.year_id, item.category_id)
            if pair in seen:
                raise ConflictError(
                    f"Duplicate entry in batch for year {pair[0]}, category {pair[1]}"
                )
            seen.add(pair)
            pairs.append(pair)

        clash = self.session.execute(
            select(Transaction.year_id, Transaction.category_id)
            .where(tuple_(Transaction.year_id, Transaction.category_id).in_(pairs))
            .limit(1)
        ).first()
        if clash is not None:
            raise ConflictError(
                f"{duplicate_transaction()} (year {clash[0]}, category {clash[1]})"
            )

        rows = [
            Transaction(
                year_id=item.year_id,
                category_id=item.category_id,
                amount_cents=item.amount_cents,
            )
            for item in items
        ]
        self.session.add_all(rows)
        self._commit_primary()
        logger.info(f"transaction: bulk created count={len(rows)}")

        keys: list[tuple[int, CategoryType]] = []
        for item in items:
            key = (item.year_id, categories[item.category_id].type)
            if key not in keys:
                keys.append(key)
        outcomes = self._recalculate(keys)
        invalidate(self.cache)
        return BulkCreateResult(count=len(rows), outcomes=outcomes)

    def recalculate_all(self) -> list[RecalculationOutcome]:
        """Idempotent maintenance pass over every year with data."""
        outcomes = ensure_all(self.session, self.locks)
        for outcome in outcomes:
            if not outcome.ok:
                logger.error(f"ensure_failed (non-critical): {outcome.error}")
        self.last_outcomes = outcomes
        invalidate(self.cache)
        return outcomes


class ReportService:
    def __init__(self, session: Session, cache: Optional[TTLCache] = None) -> None:
        self.session = session
        self.cache = cache or get_cache()

    def _require_fiscal_year(self, fiscal_year: int) -> BudgetYear:
        year = BudgetYearService(self.session, self.cache).by_fiscal_year(fiscal_year)
        if not year:
            raise NotFoundError(fiscal_year_not_found(fiscal_year))
        return year

    def _amounts(self, year_id: int, category_type: CategoryType) -> dict[int, int]:
        return dict(
            self.session.execute(
                select(Transaction.category_id, Transaction.amount_cents)
                .join(Category, Transaction.category_id == Category.id)
                .where(Transaction.year_id == year_id, Category.type == category_type)
            ).all()
        )

    def dashboard(self, fiscal_year: int) -> dict[str, object]:
        """Year summary for the dashboard.

        Uses the stored summary when present; otherwise computes the figures
        from the transactions without persisting them.
        """

        def load() -> dict[str, object]:
            year = self._require_fiscal_year(fiscal_year)
            summary = self.session.scalar(
                select(YearSummary).where(YearSummary.year_id == year.id)
            )
            if summary:
                source = "stored"
                figures: SummaryFigures | YearSummary = summary
            elif has_transactions(self.session, year.id):
                source = "computed"
                figures = compute_figures(self.session, year.id)
            else:
                source = "empty"
                figures = SummaryFigures(0, 0, 0, 0, 0, 0, 0)

            categories: dict[str, list[dict[str, object]]] = {}
            for ctype in CategoryType:
                rows = self.session.execute(
                    select(Category, Transaction.amount_cents)
                    .join(Transaction, Transaction.category_id == Category.id)
                    .where(
                        Transaction.year_id == year.id,
                        Category.type == ctype,
                        Category.level == 2,
                    )
                    .order_by(Category.code, Category.name)
                ).all()
                categories[ctype.value] = [
                    {
                        "id": category.id,
                        "name": category.name,
                        "code": category.code,
                        "amount": cents_to_decimal(amount),
                    }
                    for category, amount in rows
                ]

            data = year_to_dict(year)
            data.update(figures_to_dict(figures))
            data["source"] = source
            data["categories"] = categories
            return data

        return cached(self.cache, cache_key("dashboard", year=fiscal_year), load)

    def breakdown(
        self, fiscal_year: int, category_type: CategoryType
    ) -> dict[str, object]:
        """Nested level 1 -> 2 -> 3 amounts of one type for a fiscal year."""

        def load() -> dict[str, object]:
            year = self._require_fiscal_year(fiscal_year)
            amounts = self._amounts(year.id, category_type)
            categories = self.session.scalars(
                select(Category)
                .where(Category.type == category_type)
                .order_by(Category.level, Category.code, Category.name)
            ).all()
            nodes: dict[int, dict[str, object]] = {}
            roots: list[dict[str, object]] = []
            for category in categories:
                node = category_to_dict(category)
                node["amount"] = cents_to_decimal(amounts.get(category.id, 0))
                node["children"] = []
                nodes[category.id] = node
                if category.level == 1:
                    roots.append(node)
                elif category.parent_id in nodes:
                    nodes[category.parent_id]["children"].append(node)
            total = sum(amounts.get(c.id, 0) for c in categories if c.level == 1)
            return {
                "year": year.year,
                "type": category_type.value,
                "total": cents_to_decimal(total),
                "categories": roots,
            }

        key = cache_key("breakdown", year=fiscal_year, type=category_type)
        return cached(self.cache, key, load)

    def comparison(
        self, category_type: CategoryType, level: int = 2
    ) -> dict[str, object]:
        """Per-category amounts for the two most recent fiscal years."""

        def load() -> dict[str, object]:
            years = self.session.scalars(
                select(BudgetYear).order_by(BudgetYear.year.desc()).limit(2)
            ).all()
            if len(years) < 2:
                return {
                    "years": [y.year for y in years],
                    "categories": [],
                    "message": "At least two budget years are needed for a comparison",
                }
            rows = self.session.execute(
                select(Category.name, BudgetYear.year, Transaction.amount_cents)
                .join(Transaction, Transaction.category_id == Category.id)
                .join(BudgetYear, Transaction.year_id == BudgetYear.id)
                .where(
                    Transaction.year_id.in_([y.id for y in years]),
                    Category.type == category_type,
                    Category.level == level,
                )
                .order_by(Category.name)
            ).all()
            by_name: dict[str, dict[int, int]] = {}
            for name, fiscal_year, amount in rows:
                by_name.setdefault(name, {})[fiscal_year] = amount
            return {
                "years": [y.year for y in years],
                "categories": [
                    {
                        "name": name,
                        **{
                            str(y.year): cents_to_decimal(values.get(y.year, 0))
                            for y in years
                        },
                    }
                    for name, values in by_name.items()
                ],
            }

        key = cache_key("comparison", type=category_type, level=level)
        return cached(self.cache, key, load)

    def composition(
        self,
        category_type: CategoryType,
        fiscal_year: Optional[int] = None,
        level: int = 2,
    ) -> dict[str, object]:
        """Share of each category in the total of one type and level."""

        def load() -> dict[str, object]:
            if fiscal_year is not None:
                year = self._require_fiscal_year(fiscal_year)
            else:
                year = self.session.scalar(
                    select(BudgetYear).order_by(BudgetYear.year.desc()).limit(1)
                )
                if year is None:
                    raise NotFoundError("No budget years recorded")
            rows = self.session.execute(
                select(Category, Transaction.amount_cents)
                .join(Transaction, Transaction.category_id == Category.id)
                .where(
                    Transaction.year_id == year.id,
                    Category.type == category_type,
                    Category.level == level,
                )
                .order_by(Transaction.amount_cents.desc())
            ).all()
            total = sum(amount for _, amount in rows)
            return {
                "year": year.year,
                "type": category_type.value,
                "total": cents_to_decimal(total),
                "categories": [
                    {
                        "name": category.name,
                        "code": category.code,
                        "value": cents_to_decimal(amount),
                        "percentage": _percentage(amount, total),
                    }
                    for category, amount in rows
                ],
            }

        key = cache_key(
            "composition", year=fiscal_year, type=category_type, level=level
        )
        return cached(self.cache, key, load)
