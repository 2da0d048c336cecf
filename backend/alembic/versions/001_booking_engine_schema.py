# backend/alembic/versions/001_booking_engine_schema.py
"""Booking engine schema - services, payout accounts, bookings, webhook ledger

Revision ID: 001_booking_engine_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the tables the booking engine owns. On PostgreSQL the bookings table
also gets a generated ``time_range`` column and an exclusion constraint so two
active bookings can never overlap for the same provider, whatever the
application layer does.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_booking_engine_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

BOOKING_STATUSES = "'pending', 'accepted', 'confirmed', 'declined', 'cancelled', 'expired'"
PAYMENT_STATUSES = "'none', 'authorized', 'captured', 'canceled', 'failed'"
ACTIVE_STATUSES = "'pending', 'accepted', 'confirmed'"


def _is_postgres() -> bool:
    bind = op.get_bind()
    dialect_name = bind.dialect.name if bind is not None else "postgresql"
    return dialect_name == "postgresql"


def upgrade() -> None:
    """Create booking engine tables."""
    print("Creating booking engine tables...")
    is_postgres = _is_postgres()

    op.create_table(
        "services",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("price_cents >= 0", name="ck_services_price_non_negative"),
        sa.CheckConstraint("duration_minutes > 0", name="ck_services_duration_positive"),
    )
    op.create_index("ix_services_provider_id", "services", ["provider_id"])

    op.create_table(
        "provider_payout_accounts",
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("stripe_account_id", sa.String(255), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.PrimaryKeyConstraint("provider_id"),
        sa.UniqueConstraint("stripe_account_id", name="uq_provider_payout_accounts_account"),
    )

    op.create_table(
        "payment_customers",
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("stripe_customer_id", sa.String(255), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.PrimaryKeyConstraint("customer_id"),
        sa.UniqueConstraint("stripe_customer_id", name="uq_payment_customers_stripe_customer"),
    )

    op.create_table(
        "bookings",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("service_id", sa.String(26), nullable=True),
        # Civil time; no timezone conversion anywhere
        sa.Column("booking_date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("service_price_cents", sa.Integer(), nullable=False),
        sa.Column("platform_fee_cents", sa.Integer(), nullable=False),
        sa.Column("amount_total_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("flow", sa.String(20), nullable=False, server_default="single_step"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="none"),
        sa.Column("deposit_status", sa.String(20), nullable=True),
        sa.Column("final_status", sa.String(20), nullable=True),
        sa.Column("final_payment_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payment_intent_id", sa.String(255), nullable=True),
        sa.Column("final_payment_intent_id", sa.String(255), nullable=True),
        sa.Column("checkout_session_id", sa.String(255), nullable=True),
        sa.Column("request_key", sa.String(255), nullable=True),
        sa.Column("decline_reason", sa.Text(), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["service_id"], ["services.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payment_intent_id", name="uq_bookings_payment_intent_id"),
        sa.UniqueConstraint("final_payment_intent_id", name="uq_bookings_final_payment_intent_id"),
        sa.UniqueConstraint("checkout_session_id", name="uq_bookings_checkout_session_id"),
        sa.CheckConstraint(f"status IN ({BOOKING_STATUSES})", name="ck_bookings_status"),
        sa.CheckConstraint(
            f"payment_status IN ({PAYMENT_STATUSES})", name="ck_bookings_payment_status"
        ),
        sa.CheckConstraint("flow IN ('single_step', 'two_step')", name="ck_bookings_flow"),
        sa.CheckConstraint("service_price_cents >= 0", name="ck_bookings_price_non_negative"),
        sa.CheckConstraint("platform_fee_cents >= 0", name="ck_bookings_fee_non_negative"),
        sa.CheckConstraint(
            "amount_total_cents = service_price_cents + platform_fee_cents",
            name="ck_bookings_amount_total",
        ),
        sa.CheckConstraint("start_time < end_time", name="ck_bookings_time_order"),
    )
    op.create_index("ix_bookings_customer_id", "bookings", ["customer_id"])
    op.create_index("ix_bookings_provider_id", "bookings", ["provider_id"])
    op.create_index("ix_bookings_booking_date", "bookings", ["booking_date"])
    op.create_index("ix_bookings_status", "bookings", ["status"])
    op.create_index("ix_bookings_request_key", "bookings", ["request_key"])
    op.create_index(
        "ix_bookings_provider_date_status",
        "bookings",
        ["provider_id", "booking_date", "status"],
    )

    if is_postgres:
        print("Adding provider overlap exclusion constraint...")
        op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")
        op.execute(
            """
            ALTER TABLE bookings
              ADD COLUMN IF NOT EXISTS time_range tsrange
              GENERATED ALWAYS AS (
                tsrange(
                  (booking_date::timestamp + start_time),
                  (booking_date::timestamp + end_time),
                  '[)'
                )
              ) STORED
            """
        )
        op.execute(
            f"""
            ALTER TABLE bookings
              ADD CONSTRAINT bookings_no_overlap_per_provider
              EXCLUDE USING gist (
                provider_id WITH =,
                time_range WITH &&
              )
              WHERE (status IN ({ACTIVE_STATUSES}))
            """
        )

    payload_type = (
        postgresql.JSONB(astext_type=sa.Text()) if is_postgres else sa.JSON()
    )
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("event_id", sa.String(255), nullable=True),
        sa.Column("idempotency_key", sa.String(512), nullable=False),
        sa.Column("payload", payload_type, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="processed"),
        sa.Column("processing_error", sa.Text(), nullable=True),
        sa.Column("related_entity_type", sa.String(50), nullable=True),
        sa.Column("related_entity_id", sa.String(26), nullable=True),
        sa.Column(
            "received_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("source", "event_id", name="uq_webhook_events_source_event_id"),
        sa.UniqueConstraint(
            "source", "idempotency_key", name="uq_webhook_events_source_idempotency_key"
        ),
    )
    op.create_index("ix_webhook_events_event_type", "webhook_events", ["event_type"])
    op.create_index("ix_webhook_events_status", "webhook_events", ["status"])
    op.create_index("ix_webhook_events_received_at", "webhook_events", ["received_at"])
    op.create_index(
        "ix_webhook_events_related_entity",
        "webhook_events",
        ["related_entity_type", "related_entity_id"],
    )

    print("Booking engine tables created")


def downgrade() -> None:
    """Drop booking engine tables."""
    print("Dropping booking engine tables...")

    op.drop_index("ix_webhook_events_related_entity", table_name="webhook_events")
    op.drop_index("ix_webhook_events_received_at", table_name="webhook_events")
    op.drop_index("ix_webhook_events_status", table_name="webhook_events")
    op.drop_index("ix_webhook_events_event_type", table_name="webhook_events")
    op.drop_table("webhook_events")

    if _is_postgres():
        op.execute(
            "ALTER TABLE bookings DROP CONSTRAINT IF EXISTS bookings_no_overlap_per_provider"
        )
        op.execute("ALTER TABLE bookings DROP COLUMN IF EXISTS time_range")

    op.drop_index("ix_bookings_provider_date_status", table_name="bookings")
    op.drop_index("ix_bookings_request_key", table_name="bookings")
    op.drop_index("ix_bookings_status", table_name="bookings")
    op.drop_index("ix_bookings_booking_date", table_name="bookings")
    op.drop_index("ix_bookings_provider_id", table_name="bookings")
    op.drop_index("ix_bookings_customer_id", table_name="bookings")
    op.drop_table("bookings")

    op.drop_table("payment_customers")
    op.drop_table("provider_payout_accounts")

    op.drop_index("ix_services_provider_id", table_name="services")
    op.drop_table("services")

    print("Booking engine tables dropped")
