"""period engine schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


PERIOD_TYPES = ("WEEKLY", "BI_MONTHLY", "MONTHLY")
FREQUENCIES = (
    "WEEKLY",
    "BIWEEKLY",
    "SEMI_MONTHLY",
    "MONTHLY",
    "QUARTERLY",
    "ANNUALLY",
    "CUSTOM",
)
STATUSES = (
    "NOT_EXPECTED",
    "PENDING",
    "DUE_SOON",
    "OVERDUE",
    "PARTIAL",
    "PAID",
    "RECEIVED",
    "PAID_EARLY",
    "OVER_BUDGET",
)
KINDS = ("budget", "outflow", "inflow")
PAYMENT_TYPES = (
    "regular",
    "catch_up",
    "advance",
    "extra_principal",
    "refund",
    "ignored",
)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "source_periods",
        sa.Column("id", sa.String(length=16), primary_key=True),
        sa.Column("type", sa.Enum(*PERIOD_TYPES, name="periodtype"), nullable=False),
        sa.Column("start_date", sa.DateTime(), nullable=False),
        sa.Column("end_date", sa.DateTime(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("index", sa.Integer(), nullable=False),
        sa.Column("is_current", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("month", sa.Integer()),
        sa.Column("bi_monthly_half", sa.Integer()),
        sa.Column("week_number", sa.Integer()),
        sa.Column("week_start_day", sa.Integer()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("type", "index", name="uq_source_period_type_index"),
    )
    op.create_index(
        "ix_source_periods_type_start", "source_periods", ["type", "start_date"]
    )
    op.create_index(
        "ix_source_periods_type_current", "source_periods", ["type", "is_current"]
    )

    op.create_table(
        "obligations",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("kind", sa.Enum(*KINDS, name="obligationkind"), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("group_id", sa.String(length=64)),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("frequency", sa.Enum(*FREQUENCIES, name="frequency"), nullable=False),
        sa.Column("category_ids", sa.JSON(), nullable=False),
        sa.Column("transaction_ids", sa.JSON(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("is_ongoing", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "is_system_catch_all",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("predicted_next_date", sa.Date()),
        sa.Column("last_date", sa.Date()),
        sa.Column("first_date", sa.Date()),
        sa.Column("active_period_start", sa.String(length=16)),
        sa.Column("active_period_end", sa.String(length=16)),
        sa.Column("last_extended", sa.DateTime()),
        sa.Column("periods_generated_until", sa.Date()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_obligation_amount_positive"),
    )
    op.create_index("ix_obligations_user_kind", "obligations", ["user_id", "kind"])
    op.create_index(
        "ix_obligations_ongoing_active", "obligations", ["is_ongoing", "is_active"]
    )

    op.create_table(
        "period_instances",
        sa.Column("id", sa.String(length=96), primary_key=True),
        sa.Column(
            "obligation_id",
            sa.String(length=64),
            sa.ForeignKey("obligations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("source_period_id", sa.String(length=16), nullable=False),
        sa.Column("kind", sa.Enum(*KINDS, name="obligationkind"), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("obligation_name", sa.String(length=200), nullable=False),
        sa.Column(
            "period_type", sa.Enum(*PERIOD_TYPES, name="periodtype"), nullable=False
        ),
        sa.Column("period_start", sa.DateTime(), nullable=False),
        sa.Column("period_end", sa.DateTime(), nullable=False),
        sa.Column("frequency", sa.Enum(*FREQUENCIES, name="frequency"), nullable=False),
        sa.Column("allocated_amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("original_amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_modified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "amount_per_occurrence_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("expected_amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("spent_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("remaining_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_paid_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_unpaid_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("extra_principal_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("number_of_occurrences", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "number_of_occurrences_paid", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("occurrence_due_dates", sa.JSON(), nullable=False),
        sa.Column("occurrence_paid_flags", sa.JSON(), nullable=False),
        sa.Column("occurrence_transaction_ids", sa.JSON(), nullable=False),
        sa.Column("occurrence_amounts", sa.JSON(), nullable=False),
        sa.Column("occurrence_draw_dates", sa.JSON(), nullable=False),
        sa.Column("transaction_ids", sa.JSON(), nullable=False),
        sa.Column("is_fully_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "is_partially_paid", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("status", sa.Enum(*STATUSES, name="periodstatus"), nullable=False),
        sa.Column("status_text", sa.String(length=100)),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_calculated", sa.DateTime()),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "obligation_id", "source_period_id", name="uq_period_obligation_source"
        ),
        sa.CheckConstraint(
            "allocated_amount_cents >= 0", name="ck_period_allocated_positive"
        ),
    )
    op.create_index(
        "ix_period_instances_obligation_type_start",
        "period_instances",
        ["obligation_id", "period_type", "period_start"],
    )
    op.create_index(
        "ix_period_instances_user_start", "period_instances", ["user_id", "period_start"]
    )
    op.create_index(
        "ix_period_instances_source_period_id", "period_instances", ["source_period_id"]
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("account_id", sa.String(length=64)),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "type", sa.Enum("income", "expense", name="transactiontype"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(length=100)),
        sa.Column("description", sa.String(length=200)),
        sa.Column("pending", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])

    op.create_table(
        "transaction_splits",
        sa.Column("id", sa.String(length=96), primary_key=True),
        sa.Column(
            "transaction_id",
            sa.String(length=64),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("category", sa.String(length=100)),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "payment_type",
            sa.Enum(*PAYMENT_TYPES, name="paymenttype"),
            nullable=False,
        ),
        sa.Column(
            "budget_id",
            sa.String(length=64),
            sa.ForeignKey("obligations.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "stream_id",
            sa.String(length=64),
            sa.ForeignKey("obligations.id", ondelete="SET NULL"),
        ),
        sa.Column("monthly_period_id", sa.String(length=16)),
        sa.Column("bi_monthly_period_id", sa.String(length=16)),
        sa.Column("weekly_period_id", sa.String(length=16)),
        *_timestamps(),
        sa.UniqueConstraint("transaction_id", "position", name="uq_split_position"),
        sa.CheckConstraint("amount_cents >= 0", name="ck_split_amount_positive"),
    )
    op.create_index("ix_transaction_splits_budget", "transaction_splits", ["budget_id"])
    op.create_index("ix_transaction_splits_stream", "transaction_splits", ["stream_id"])


def downgrade():
    op.drop_table("transaction_splits")
    op.drop_table("transactions")
    op.drop_table("period_instances")
    op.drop_table("obligations")
    op.drop_table("source_periods")
