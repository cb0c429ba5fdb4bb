from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        "customers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False, unique=True),
        sa.Column("full_name", sa.String(), nullable=True),
    )
    op.create_index("ix_customers_customer_id", "customers", ["customer_id"], unique=True)

    op.create_table(
        "providers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("provider_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False, unique=True),
        sa.Column("services", sa.JSON(), nullable=False),
        sa.Column("hourly_rate", sa.Float(), nullable=False),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("location_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("hourly_rate >= 0", name="ck_providers_hourly_rate"),
    )
    op.create_index("ix_providers_provider_id", "providers", ["provider_id"], unique=True)
    op.create_index("ix_providers_verified_available", "providers", ["is_verified", "is_available"], unique=False)
    op.create_index("ix_providers_lat_lon", "providers", ["latitude", "longitude"], unique=False)

    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("provider_id", sa.String(), nullable=False),
        sa.Column("service", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("address", sa.String(), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("estimated_duration", sa.Integer(), nullable=False),
        sa.Column("actual_duration", sa.Integer(), nullable=True),
        sa.Column("total_amount", sa.Float(), nullable=False),
        sa.Column("payment_status", sa.String(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("estimated_duration >= 15", name="ck_bookings_min_duration"),
        sa.CheckConstraint("total_amount >= 0", name="ck_bookings_amount"),
    )
    op.create_index("ix_bookings_booking_id", "bookings", ["booking_id"], unique=True)
    op.create_index("ix_bookings_customer_id", "bookings", ["customer_id"], unique=False)
    op.create_index("ix_bookings_provider_id", "bookings", ["provider_id"], unique=False)
    op.create_index("ix_bookings_status", "bookings", ["status"], unique=False)
    op.create_index("ix_bookings_provider_status", "bookings", ["provider_id", "status"], unique=False)

    op.create_table(
        "provider_locks",
        sa.Column(
            "provider_id",
            sa.String(),
            sa.ForeignKey("providers.provider_id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("booking_id", sa.String(), nullable=True, unique=True),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_provider_locks_locked_until", "provider_locks", ["locked_until"], unique=False)

def downgrade():
    op.drop_index("ix_provider_locks_locked_until", table_name="provider_locks")
    op.drop_table("provider_locks")
    op.drop_index("ix_bookings_provider_status", table_name="bookings")
    op.drop_index("ix_bookings_status", table_name="bookings")
    op.drop_index("ix_bookings_provider_id", table_name="bookings")
    op.drop_index("ix_bookings_customer_id", table_name="bookings")
    op.drop_index("ix_bookings_booking_id", table_name="bookings")
    op.drop_table("bookings")
    op.drop_index("ix_providers_lat_lon", table_name="providers")
    op.drop_index("ix_providers_verified_available", table_name="providers")
    op.drop_index("ix_providers_provider_id", table_name="providers")
    op.drop_table("providers")
    op.drop_index("ix_customers_customer_id", table_name="customers")
    op.drop_table("customers")
