"""initial

Revision ID: 0001_initial
Revises: 
Create Date: 2026-10-17
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=False),
        sa.Column("balance", sa.Numeric(24, 6), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
    )
    op.create_index("ix_accounts_balance", "accounts", ["balance"], unique=False)

    # Treasury, reserve and unclaimed deposits.
    op.execute("INSERT INTO accounts (id, balance) VALUES (-1, 0), (-2, 0), (-3, 0)")

    op.create_table(
        "ledger_transactions",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "kind",
            sa.Enum("deposit", "withdrawal", "transfer", "fee", "credit_adjustment", "refund", name="transactionkind"),
            nullable=False,
        ),
        sa.Column("from_account_id", sa.BigInteger, nullable=True),
        sa.Column("to_account_id", sa.BigInteger, nullable=True),
        sa.Column("amount", sa.Numeric(24, 6), nullable=False),
        sa.Column("balance_after", sa.Numeric(24, 6), nullable=False),
        sa.Column("description", sa.String(255), nullable=False, server_default=""),
        sa.Column("reference", sa.String(128), nullable=True),
        sa.Column("external_ref", sa.String(128), nullable=True),
        sa.Column("external_address", sa.String(128), nullable=True),
        sa.Column("status", sa.Enum("pending", "completed", "failed", name="transactionstatus"), nullable=False),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_ledger_transactions_amount_positive"),
    )
    op.create_index("ix_ledger_transactions_from_account_id", "ledger_transactions", ["from_account_id"], unique=False)
    op.create_index("ix_ledger_transactions_to_account_id", "ledger_transactions", ["to_account_id"], unique=False)
    op.create_index("ix_ledger_transactions_reference", "ledger_transactions", ["reference"], unique=False)
    op.create_index("ix_ledger_transactions_external_ref", "ledger_transactions", ["external_ref"], unique=False)
    op.create_index("ix_ledger_transactions_kind_status", "ledger_transactions", ["kind", "status"], unique=False)

    op.create_table(
        "processed_deposits",
        sa.Column("external_tx_id", sa.String(128), primary_key=True),
        sa.Column("account_id", sa.BigInteger, nullable=True),
        sa.Column("amount", sa.Numeric(24, 6), nullable=False),
        sa.Column("source_address", sa.String(128), nullable=False, server_default=""),
        sa.Column("routing_token", sa.String(256), nullable=True),
        sa.Column("chain_height", sa.BigInteger, nullable=False),
        sa.Column("status", sa.Enum("pending", "credited", "failed", name="depositstatus"), nullable=False),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_processed_deposits_account_id", "processed_deposits", ["account_id"], unique=False)
    op.create_index("ix_processed_deposits_chain_height", "processed_deposits", ["chain_height"], unique=False)
    op.create_index(
        "ix_processed_deposits_status_account", "processed_deposits", ["status", "account_id"], unique=False
    )

    op.create_table(
        "account_locks",
        sa.Column("account_id", sa.BigInteger, primary_key=True, autoincrement=False),
        sa.Column("kind", sa.Enum("withdrawal", "transfer", "deposit_credit", name="lockkind"), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("external_ref", sa.String(128), nullable=True),
        sa.Column("token", sa.String(32), nullable=False),
    )
    op.create_index("ix_account_locks_expires_at", "account_locks", ["expires_at"], unique=False)


def downgrade():
    op.drop_table("account_locks")
    op.drop_table("processed_deposits")
    op.drop_table("ledger_transactions")
    op.drop_table("accounts")
    op.execute("DROP TYPE IF EXISTS lockkind")
    op.execute("DROP TYPE IF EXISTS depositstatus")
    op.execute("DROP TYPE IF EXISTS transactionstatus")
    op.execute("DROP TYPE IF EXISTS transactionkind")
