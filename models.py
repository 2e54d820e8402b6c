from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class CategoryType(str, Enum):
    revenue = "revenue"
    expenditure = "expenditure"
    financing = "financing"


CATEGORY_TYPE_ENUM = SAEnum(
    CategoryType,
    name="categorytype",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class BudgetYear(Base, TimestampMixin):
    __tablename__ = "budget_years"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    regulation_number: Mapped[Optional[str]] = mapped_column(String(100))
    enacted_on: Mapped[Optional[date]] = mapped_column(Date)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="year"
    )
    summary: Mapped[Optional["YearSummary"]] = relationship(
        "YearSummary", back_populates="year", uselist=False
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    parent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    type: Mapped[CategoryType] = mapped_column(CATEGORY_TYPE_ENUM, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    code: Mapped[Optional[str]] = mapped_column(String(50))
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    parent: Mapped[Optional["Category"]] = relationship(
        "Category", remote_side=[id], back_populates="children"
    )
    children: Mapped[list["Category"]] = relationship(
        "Category", back_populates="parent"
    )
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        CheckConstraint("level BETWEEN 1 AND 3", name="ck_category_level_range"),
        Index("ix_categories_type_level_parent", "type", "level", "parent_id"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    year_id: Mapped[int] = mapped_column(
        ForeignKey("budget_years.id"), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    year: Mapped["BudgetYear"] = relationship(
        "BudgetYear", back_populates="transactions"
    )
    category: Mapped["Category"] = relationship(
        "Category", back_populates="transactions"
    )

    __table_args__ = (
        UniqueConstraint("year_id", "category_id", name="uq_txn_year_category"),
        Index("ix_transactions_category", "category_id"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )


class YearSummary(Base, TimestampMixin):
    __tablename__ = "year_summaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    year_id: Mapped[int] = mapped_column(
        ForeignKey("budget_years.id"), nullable=False, unique=True
    )
    total_revenue_cents: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )
    total_expenditure_cents: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )
    surplus_deficit_cents: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )
    financing_in_cents: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )
    financing_out_cents: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )
    net_financing_cents: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )
    ending_balance_cents: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )

    year: Mapped["BudgetYear"] = relationship("BudgetYear", back_populates="summary")


class Admin(Base, TimestampMixin):
    __tablename__ = "admins"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(30), nullable=False, default="admin")
