"""recurring rules and ledger entries

Revision ID: 202610170900
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610170900"
down_revision = None
branch_labels = None
depends_on = None


CATEGORY_VALUES = (
    "Food",
    "Entertainment",
    "Travel",
    "Shopping",
    "Savings",
    "Income",
    "Others",
    "Utilities",
)


def upgrade():
    op.create_table(
        "recurring_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "category",
            sa.Enum(*CATEGORY_VALUES, name="ledgercategory"),
            nullable=False,
            server_default="Others",
        ),
        sa.Column("note", sa.Text(), nullable=False, server_default=""),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column(
            "frequency",
            sa.Enum("daily", "weekly", "monthly", "yearly", name="frequency"),
            nullable=False,
        ),
        sa.Column("day_of_week", sa.Integer()),
        sa.Column("day_of_month", sa.Integer()),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_processed_date", sa.Date()),
        sa.Column("next_process_date", sa.Date()),
        sa.Column("cursor_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "day_of_week IS NULL OR (day_of_week >= 0 AND day_of_week <= 6)",
            name="ck_rule_day_of_week_range",
        ),
        sa.CheckConstraint(
            "day_of_month IS NULL OR (day_of_month >= 1 AND day_of_month <= 31)",
            name="ck_rule_day_of_month_range",
        ),
        sa.CheckConstraint(
            "end_date IS NULL OR end_date >= start_date",
            name="ck_rule_end_after_start",
        ),
    )
    op.create_index(
        "ix_rules_active_next", "recurring_rules", ["is_active", "next_process_date"]
    )
    op.create_index("ix_rules_user", "recurring_rules", ["user_id"])

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "category",
            sa.Enum(*CATEGORY_VALUES, name="ledgercategory"),
            nullable=False,
            server_default="Others",
        ),
        sa.Column("note", sa.Text(), nullable=False, server_default=""),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("entry_date", sa.Date(), nullable=False),
        sa.Column("origin_rule_id", sa.Integer()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_ledger_user_date", "ledger_entries", ["user_id", "entry_date"]
    )
    op.create_index(
        "ix_ledger_origin_rule", "ledger_entries", ["origin_rule_id", "entry_date"]
    )


def downgrade():
    op.drop_index("ix_ledger_origin_rule", table_name="ledger_entries")
    op.drop_index("ix_ledger_user_date", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_index("ix_rules_user", table_name="recurring_rules")
    op.drop_index("ix_rules_active_next", table_name="recurring_rules")
    op.drop_table("recurring_rules")
