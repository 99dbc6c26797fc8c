from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(18, 2)


def upgrade():
    op.create_table(
        "worker_services",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("worker_service_id", sa.String(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("service_code", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_worker_services_worker_service_id", "worker_services", ["worker_service_id"], unique=True)
    op.create_index("ix_worker_services_worker_id", "worker_services", ["worker_id"], unique=False)

    op.create_table(
        "worker_service_prices",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "worker_service_id",
            sa.String(),
            sa.ForeignKey("worker_services.worker_service_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("unit", sa.String(32), nullable=False),
        sa.Column("price", MONEY, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.UniqueConstraint("worker_service_id", "unit", name="uq_worker_service_prices_unit"),
        sa.CheckConstraint("price >= 0", name="ck_worker_service_prices_price"),
    )

    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("worker_service_id", sa.String(), nullable=False),
        sa.Column("service_code", sa.String(), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_hours", sa.Numeric(6, 1), nullable=False),
        sa.Column("pricing_unit", sa.String(32), nullable=False),
        sa.Column("unit_price", MONEY, nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("subtotal", MONEY, nullable=False),
        sa.Column("platform_fee", MONEY, nullable=False),
        sa.Column("total_amount", MONEY, nullable=False),
        sa.Column("worker_payout", MONEY, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("payment_status", sa.String(32), nullable=False),
        sa.Column("client_notes", sa.Text(), nullable=True),
        sa.Column("worker_response", sa.Text(), nullable=True),
        sa.Column("escrow_id", sa.String(), nullable=True),
        sa.Column("hold_transaction_id", sa.String(), nullable=True),
        sa.Column("cancelled_by", sa.String(32), nullable=True),
        sa.Column("cancellation_reason", sa.String(32), nullable=True),
        sa.Column("cancellation_notes", sa.Text(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refund_amount", MONEY, nullable=True),
        sa.Column("penalty_amount", MONEY, nullable=True),
        sa.Column("dispute_reason", sa.Text(), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disputed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("end_time > start_time", name="ck_bookings_schedule"),
    )
    op.create_index("ix_bookings_booking_id", "bookings", ["booking_id"], unique=True)
    op.create_index("ix_bookings_client_id", "bookings", ["client_id"], unique=False)
    op.create_index("ix_bookings_worker_id", "bookings", ["worker_id"], unique=False)
    op.create_index("ix_bookings_status", "bookings", ["status"], unique=False)


def downgrade():
    op.drop_index("ix_bookings_status", table_name="bookings")
    op.drop_index("ix_bookings_worker_id", table_name="bookings")
    op.drop_index("ix_bookings_client_id", table_name="bookings")
    op.drop_index("ix_bookings_booking_id", table_name="bookings")
    op.drop_table("bookings")
    op.drop_table("worker_service_prices")
    op.drop_index("ix_worker_services_worker_id", table_name="worker_services")
    op.drop_index("ix_worker_services_worker_service_id", table_name="worker_services")
    op.drop_table("worker_services")
