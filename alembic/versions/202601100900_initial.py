"""initial mess ledger schema

Revision ID: 202601100900
Revises:
Create Date: 2026-01-10 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202601100900"
down_revision = None
branch_labels = None
depends_on = None


def _record_table(name, value_column, *, unique_name, check, description=False):
    columns = [
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(value_column, sa.Integer(), nullable=False),
    ]
    if description:
        columns.append(sa.Column("description", sa.String(length=255)))
    columns += [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "date", name=unique_name),
        sa.CheckConstraint(check, name=f"ck_{name}_{value_column.split('_')[0]}_range"),
    ]
    op.create_table(name, *columns)
    op.create_index(f"ix_{name}_date", name, ["date"])


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_users_active_name", "users", ["active", "name"])

    _record_table(
        "meals",
        "count_tenths",
        unique_name="uq_meal_user_date",
        check="count_tenths >= 0 AND count_tenths <= 100",
    )
    _record_table(
        "deposits",
        "amount_cents",
        unique_name="uq_deposit_user_date",
        check="amount_cents >= 0 AND amount_cents <= 9999999",
    )
    _record_table(
        "shopping_expenses",
        "amount_cents",
        unique_name="uq_shopping_expense_user_date",
        check="amount_cents >= 0 AND amount_cents <= 9999999",
        description=True,
    )
    _record_table(
        "utilities",
        "amount_cents",
        unique_name="uq_utility_user_date",
        check="amount_cents >= 0 AND amount_cents <= 9999999",
        description=True,
    )


def downgrade():
    for name in ("utilities", "shopping_expenses", "deposits", "meals"):
        op.drop_index(f"ix_{name}_date", table_name=name)
        op.drop_table(name)
    op.drop_index("ix_users_active_name", table_name="users")
    op.drop_table("users")
