"""initial schema

Revision ID: 202601150900
Revises:
Create Date: 2026-01-15 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202601150900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def _amount(name):
    return sa.Column(name, sa.BigInteger(), nullable=False, server_default="0")


def upgrade():
    category_type = sa.Enum(
        "revenue", "expenditure", "financing", name="categorytype"
    )

    op.create_table(
        "budget_years",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("regulation_number", sa.String(length=100)),
        sa.Column("enacted_on", sa.Date()),
        *_timestamps(),
        sa.UniqueConstraint("year"),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("parent_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("type", category_type, nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("code", sa.String(length=50)),
        sa.Column("level", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.CheckConstraint("level BETWEEN 1 AND 3", name="ck_category_level_range"),
    )
    op.create_index(
        "ix_categories_type_level_parent",
        "categories",
        ["type", "level", "parent_id"],
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "year_id", sa.Integer(), sa.ForeignKey("budget_years.id"), nullable=False
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        _amount("amount_cents"),
        *_timestamps(),
        sa.UniqueConstraint("year_id", "category_id", name="uq_txn_year_category"),
        sa.CheckConstraint(
            "amount_cents >= 0", name="ck_transactions_amount_positive"
        ),
    )
    op.create_index("ix_transactions_category", "transactions", ["category_id"])

    op.create_table(
        "year_summaries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "year_id", sa.Integer(), sa.ForeignKey("budget_years.id"), nullable=False
        ),
        _amount("total_revenue_cents"),
        _amount("total_expenditure_cents"),
        _amount("surplus_deficit_cents"),
        _amount("financing_in_cents"),
        _amount("financing_out_cents"),
        _amount("net_financing_cents"),
        _amount("ending_balance_cents"),
        *_timestamps(),
        sa.UniqueConstraint("year_id"),
    )

    op.create_table(
        "admins",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("username", sa.String(length=100), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=30), nullable=False, server_default="admin"),
        *_timestamps(),
        sa.UniqueConstraint("username"),
    )


def downgrade():
    op.drop_table("admins")
    op.drop_table("year_summaries")
    op.drop_index("ix_transactions_category", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_categories_type_level_parent", table_name="categories")
    op.drop_table("categories")
    sa.Enum(name="categorytype").drop(op.get_bind(), checkfirst=True)
