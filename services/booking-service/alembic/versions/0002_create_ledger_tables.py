from alembic import op
import sqlalchemy as sa

revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None

MONEY = sa.Numeric(18, 2)


def upgrade():
    op.create_table(
        "escrows",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("escrow_id", sa.String(), nullable=False),
        sa.Column("booking_id", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("worker_payout", MONEY, nullable=False),
        sa.Column("platform_fee", MONEY, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("disputed_from", sa.String(32), nullable=True),
        sa.Column("release_reason", sa.String(32), nullable=True),
        sa.Column("refund_reason", sa.String(32), nullable=True),
        sa.Column("refund_amount", MONEY, nullable=True),
        sa.Column("penalty_amount", MONEY, nullable=True),
        sa.Column("held_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disputed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount >= 0", name="ck_escrows_amount"),
        sa.CheckConstraint("worker_payout <= amount", name="ck_escrows_payout"),
    )
    op.create_index("ix_escrows_escrow_id", "escrows", ["escrow_id"], unique=True)
    op.create_index("ix_escrows_booking_id", "escrows", ["booking_id"], unique=True)
    op.create_index("ix_escrows_client_id", "escrows", ["client_id"], unique=False)
    op.create_index("ix_escrows_worker_id", "escrows", ["worker_id"], unique=False)
    op.create_index("ix_escrows_status", "escrows", ["status"], unique=False)

    op.create_table(
        "wallets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("balance", MONEY, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("balance >= 0", name="ck_wallets_balance"),
    )
    op.create_index("ix_wallets_user_id", "wallets", ["user_id"], unique=True)

    op.create_table(
        "wallet_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("transaction_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("balance_after", MONEY, nullable=True),
        sa.Column("reference", sa.String(), nullable=True, unique=True),
        sa.Column("gateway", sa.String(), nullable=True),
        sa.Column("gateway_transaction_id", sa.String(), nullable=True),
        sa.Column("booking_id", sa.String(), nullable=True),
        sa.Column("escrow_id", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_wallet_transactions_amount"),
    )
    op.create_index("ix_wallet_transactions_transaction_id", "wallet_transactions", ["transaction_id"], unique=True)
    op.create_index("ix_wallet_transactions_user_id", "wallet_transactions", ["user_id"], unique=False)
    op.create_index("ix_wallet_transactions_status", "wallet_transactions", ["status"], unique=False)
    op.create_index("ix_wallet_transactions_booking_id", "wallet_transactions", ["booking_id"], unique=False)

    op.create_table(
        "processed_events",
        sa.Column("event_id", sa.String(), primary_key=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade():
    op.drop_table("processed_events")
    op.drop_index("ix_wallet_transactions_booking_id", table_name="wallet_transactions")
    op.drop_index("ix_wallet_transactions_status", table_name="wallet_transactions")
    op.drop_index("ix_wallet_transactions_user_id", table_name="wallet_transactions")
    op.drop_index("ix_wallet_transactions_transaction_id", table_name="wallet_transactions")
    op.drop_table("wallet_transactions")
    op.drop_index("ix_wallets_user_id", table_name="wallets")
    op.drop_table("wallets")
    op.drop_index("ix_escrows_status", table_name="escrows")
    op.drop_index("ix_escrows_worker_id", table_name="escrows")
    op.drop_index("ix_escrows_client_id", table_name="escrows")
    op.drop_index("ix_escrows_booking_id", table_name="escrows")
    op.drop_index("ix_escrows_escrow_id", table_name="escrows")
    op.drop_table("escrows")
