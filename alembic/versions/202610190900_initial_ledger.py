"""initial ledger schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum("cash", "bank", "e_wallet", "credit_card", name="accounttype"),
            nullable=False,
        ),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="PHP"),
        sa.Column("initial_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_accounts_owner", "accounts", ["owner_id"])

    op.create_table(
        "categories",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type", sa.Enum("expense", "income", name="categorytype"), nullable=False
        ),
        sa.Column("icon", sa.String(length=16)),
        sa.Column("color", sa.String(length=9)),
        sa.Column("is_hidden", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_categories_owner_type", "categories", ["owner_id", "type"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column(
            "type",
            sa.Enum("expense", "income", "transfer", name="transactiontype"),
            nullable=False,
        ),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="PHP"),
        sa.Column(
            "category_id",
            sa.String(length=36),
            sa.ForeignKey("categories.id"),
            nullable=False,
        ),
        sa.Column(
            "account_id", sa.String(length=36), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("to_account_id", sa.String(length=36), sa.ForeignKey("accounts.id")),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("note", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_owner_date", "transactions", ["owner_id", "date"])
    op.create_index(
        "ix_transactions_owner_type_date", "transactions", ["owner_id", "type", "date"]
    )
    op.create_index("ix_transactions_category", "transactions", ["category_id"])
    op.create_index("ix_transactions_account", "transactions", ["account_id"])

    op.create_table(
        "allocations",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column(
            "kind", sa.Enum("envelope", "goal", name="allocationkind"), nullable=False
        ),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("icon", sa.String(length=16)),
        sa.Column("color", sa.String(length=9)),
        sa.Column("target_amount", sa.Integer()),
        sa.Column("current_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "period",
            sa.Enum("weekly", "monthly", "yearly", "none", name="allocationperiod"),
            nullable=False,
            server_default="none",
        ),
        sa.Column("period_start", sa.Date()),
        sa.Column(
            "rollover_enabled", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("deadline", sa.Date()),
        sa.Column("category_ids", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "status",
            sa.Enum(
                "active", "paused", "abandoned", "completed", name="allocationstatus"
            ),
            nullable=False,
            server_default="active",
        ),
        sa.Column("config_json", sa.Text()),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "target_amount IS NULL OR target_amount >= 0",
            name="ck_allocations_target_non_negative",
        ),
    )
    op.create_index("ix_allocations_owner_kind", "allocations", ["owner_id", "kind"])
    op.create_index("ix_allocations_active", "allocations", ["is_active"])

    op.create_table(
        "allocation_links",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "allocation_id",
            sa.String(length=36),
            sa.ForeignKey("allocations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "transaction_id",
            sa.String(length=36),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            unique=True,
        ),
        sa.Column(
            "source",
            sa.Enum("transaction", "manual", "period_reset", name="linksource"),
            nullable=False,
        ),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("note", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "(source = 'transaction') = (transaction_id IS NOT NULL)",
            name="ck_allocation_links_source_matches_transaction",
        ),
    )
    op.create_index(
        "ix_allocation_links_allocation", "allocation_links", ["allocation_id"]
    )


def downgrade():
    op.drop_index("ix_allocation_links_allocation", table_name="allocation_links")
    op.drop_table("allocation_links")
    op.drop_index("ix_allocations_active", table_name="allocations")
    op.drop_index("ix_allocations_owner_kind", table_name="allocations")
    op.drop_table("allocations")
    op.drop_index("ix_transactions_account", table_name="transactions")
    op.drop_index("ix_transactions_category", table_name="transactions")
    op.drop_index("ix_transactions_owner_type_date", table_name="transactions")
    op.drop_index("ix_transactions_owner_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_categories_owner_type", table_name="categories")
    op.drop_table("categories")
    op.drop_index("ix_accounts_owner", table_name="accounts")
    op.drop_table("accounts")
