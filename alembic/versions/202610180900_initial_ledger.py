"""initial ledger schema

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


def _timestamps():
    return [
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
    ]


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=128), primary_key=True),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("default_wallet_id", sa.Integer()),
        sa.Column(
            "recent_transactions_limit",
            sa.Integer(),
            nullable=False,
            server_default="20",
        ),
        sa.Column("language", sa.String(length=10)),
        sa.Column("theme", sa.String(length=20)),
        sa.Column("gemini_api_key", sa.String(length=200)),
        sa.Column("gemini_model", sa.String(length=80)),
        *_timestamps(),
    )

    op.create_table(
        "wallets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column(
            "initial_balance", sa.BigInteger(), nullable=False, server_default="0"
        ),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="VND"),
        sa.Column(
            "type", sa.Enum("available", "credit", name="wallettype"), nullable=False
        ),
        sa.Column("order", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("icon", sa.String(length=40)),
        sa.Column("color", sa.String(length=9)),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint('"order" >= 1', name="ck_wallets_order_positive"),
    )
    op.create_index(
        "ix_wallets_user_type_order", "wallets", ["user_id", "type", "order"]
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type", sa.Enum("income", "expense", name="categorytype"), nullable=False
        ),
        sa.Column(
            "parent_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="CASCADE"),
        ),
        sa.Column("icon", sa.String(length=40)),
        sa.Column("color", sa.String(length=9)),
        sa.Column("order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index("ix_categories_user_type", "categories", ["user_id", "type"])

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=50), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_tag_user_name"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column(
            "wallet_id", sa.Integer(), sa.ForeignKey("wallets.id"), nullable=False
        ),
        sa.Column("category_id", sa.Integer()),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("note", sa.Text()),
        sa.Column(
            "type",
            sa.Enum("income", "expense", "debt", "loan", name="transactiontype"),
            nullable=False,
        ),
        sa.Column("is_transfer", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("linked_transaction_id", sa.Integer()),
        sa.Column("to_wallet_id", sa.Integer()),
        sa.Column(
            "exclude_from_report",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_user_wallet", "transactions", ["user_id", "wallet_id"]
    )

    op.create_table(
        "transaction_tags",
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "tag_id",
            sa.Integer(),
            sa.ForeignKey("tags.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )


def downgrade():
    op.drop_table("transaction_tags")
    op.drop_index("ix_transactions_user_wallet", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("tags")
    op.drop_index("ix_categories_user_type", table_name="categories")
    op.drop_table("categories")
    op.drop_index("ix_wallets_user_type_order", table_name="wallets")
    op.drop_table("wallets")
    op.drop_table("users")
