"""initial ledger schema

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


TRANSACTION_TYPES = ("income", "allocation", "expense", "transfer", "debt_payment")
ENVELOPE_TYPES = ("regular", "savings", "debt")
SCHEDULE_TYPES = (
    "weekly",
    "biweekly",
    "monthly",
    "semi_monthly",
    "quarterly",
    "yearly",
    "one_time",
)


def _timestamps():
    return (
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )


def upgrade():
    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column(
            "available_amount_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_budgets_owner", "budgets", ["owner_id"])

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column("parent_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_income", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("display_order >= 0", name="ck_categories_order_positive"),
    )
    op.create_index(
        "ix_categories_scope_order",
        "categories",
        ["budget_id", "parent_id", "display_order"],
    )

    op.create_table(
        "envelopes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column(
            "envelope_type",
            sa.Enum(*ENVELOPE_TYPES, name="envelopetype"),
            nullable=False,
            server_default="regular",
        ),
        sa.Column(
            "current_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("target_amount_cents", sa.Integer()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "notify_on_low_balance",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("low_balance_threshold_cents", sa.Integer()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("display_order >= 0", name="ck_envelopes_order_positive"),
        sa.CheckConstraint(
            "target_amount_cents IS NULL OR target_amount_cents >= 0",
            name="ck_envelopes_target_positive",
        ),
    )
    op.create_index(
        "ix_envelopes_scope_order",
        "envelopes",
        ["budget_id", "category_id", "display_order"],
    )

    op.create_table(
        "payees",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("total_paid_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_payment_date", sa.Date()),
        sa.Column("last_payment_amount_cents", sa.Integer()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("budget_id", "name", name="uq_payee_budget_name"),
    )

    op.create_table(
        "income_sources",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("expected_amount_cents", sa.Integer()),
        sa.Column("schedule_type", sa.Enum(*SCHEDULE_TYPES, name="scheduletype")),
        sa.Column("schedule_config", sa.JSON()),
        sa.Column("next_expected_date", sa.Date()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint(
            "expected_amount_cents IS NULL OR expected_amount_cents >= 0",
            name="ck_income_sources_expected_positive",
        ),
    )
    op.create_index(
        "ix_income_sources_budget_next",
        "income_sources",
        ["budget_id", "next_expected_date"],
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column(
            "transaction_type",
            sa.Enum(*TRANSACTION_TYPES, name="transactiontype"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("transaction_date", sa.Date(), nullable=False),
        sa.Column("description", sa.String(length=500)),
        sa.Column("from_envelope_id", sa.Integer(), sa.ForeignKey("envelopes.id")),
        sa.Column("to_envelope_id", sa.Integer(), sa.ForeignKey("envelopes.id")),
        sa.Column("payee_id", sa.Integer(), sa.ForeignKey("payees.id")),
        sa.Column(
            "income_source_id", sa.Integer(), sa.ForeignKey("income_sources.id")
        ),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("is_cleared", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "is_reconciled", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime()),
        sa.Column("deleted_by", sa.Integer()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_budget_date",
        "transactions",
        ["budget_id", "is_deleted", "transaction_date"],
    )
    op.create_index(
        "ix_transactions_budget_type", "transactions", ["budget_id", "transaction_type"]
    )
    op.create_index(
        "ix_transactions_from_envelope", "transactions", ["from_envelope_id"]
    )
    op.create_index("ix_transactions_to_envelope", "transactions", ["to_envelope_id"])
    op.create_index("ix_transactions_payee", "transactions", ["payee_id"])


def downgrade():
    op.drop_table("transactions")
    op.drop_table("income_sources")
    op.drop_table("payees")
    op.drop_table("envelopes")
    op.drop_table("categories")
    op.drop_table("budgets")
    for name in ("transactiontype", "scheduletype", "envelopetype"):
        sa.Enum(name=name).drop(op.get_bind(), checkfirst=True)
