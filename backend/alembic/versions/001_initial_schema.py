"""Initial schema: users, events, timeslots, bookings, transactions, refunds, preferences.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Users table (profile projection of the identity service)
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("name", sa.String(100), nullable=False, server_default=sa.text("''")),
        *_timestamps(),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("host_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_events_id", "events", ["id"])
    op.create_index("ix_events_host_id", "events", ["host_id"])

    # Timeslots table: the contended row
    op.create_table(
        "timeslots",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.Integer(), sa.ForeignKey("events.id"), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("price", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'NOK'")),
        sa.Column("capacity", sa.Integer(), nullable=False),
        sa.Column("remaining", sa.Integer(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.CheckConstraint("remaining >= 0", name="check_remaining_non_negative"),
        sa.CheckConstraint("capacity >= 0", name="check_capacity_non_negative"),
        sa.CheckConstraint("remaining <= capacity", name="check_remaining_lte_capacity"),
        sa.CheckConstraint("price >= 0", name="check_price_non_negative"),
    )
    op.create_index("ix_timeslots_id", "timeslots", ["id"])
    op.create_index("ix_timeslots_event_id", "timeslots", ["event_id"])
    op.create_index("ix_timeslots_event_starts_at", "timeslots", ["event_id", "starts_at"])

    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("timeslot_id", sa.Integer(), sa.ForeignKey("timeslots.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending_payment'")),
        sa.Column("access_token", sa.String(64), nullable=True, unique=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending_payment', 'confirmed', 'cancelled')",
            name="check_booking_status",
        ),
    )
    op.create_index("ix_bookings_id", "bookings", ["id"])
    op.create_index("ix_bookings_timeslot_id", "bookings", ["timeslot_id"])
    op.create_index("ix_bookings_user_id", "bookings", ["user_id"])
    # One live booking per user per timeslot; cancelled rows are kept for audit.
    op.create_index(
        "uq_bookings_active_user_timeslot",
        "bookings",
        ["timeslot_id", "user_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'cancelled'"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("reference", sa.String(64), nullable=False),
        sa.Column("psp_reference", sa.String(128), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'NOK'")),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("redirect_url", sa.String(1024), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount >= 0", name="check_transaction_amount_non_negative"),
        sa.CheckConstraint(
            "status IN ('pending', 'confirmed', 'cancelled')",
            name="check_transaction_status",
        ),
    )
    op.create_index("ix_transactions_id", "transactions", ["id"])
    op.create_index("ix_transactions_booking_id", "transactions", ["booking_id"])
    # Webhooks look transactions up by reference only.
    op.create_index("ix_transactions_reference", "transactions", ["reference"], unique=True)
    # Expiry sweep: pending transactions ordered by age.
    op.create_index("ix_transactions_status_created_at", "transactions", ["status", "created_at"])

    op.create_table(
        "refund_requests",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("transaction_id", sa.Integer(), sa.ForeignKey("transactions.id"), nullable=False, unique=True),
        sa.Column("reference", sa.String(64), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'NOK'")),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'succeeded', 'failed')",
            name="check_refund_status",
        ),
    )
    op.create_index("ix_refund_requests_id", "refund_requests", ["id"])
    op.create_index("ix_refund_requests_reference", "refund_requests", ["reference"])

    op.create_table(
        "notification_preferences",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False, unique=True),
        sa.Column("email_rsvp", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("email_comment", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("email_access_request", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("email_invitation", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("email_reminder", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("email_booking", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )


def downgrade() -> None:
    op.drop_table("notification_preferences")
    op.drop_table("refund_requests")
    op.drop_table("transactions")
    op.drop_table("bookings")
    op.drop_table("timeslots")
    op.drop_table("events")
    op.drop_table("users")
