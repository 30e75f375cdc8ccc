# backend/alembic/versions/001_consultbook_schema.py
"""Consultbook schema - consultants, availability, sessions, quotations, payments, outbox, webhooks

Revision ID: 001_consultbook_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000

The double-booking guard is the unique key on availability_slots plus the
partial unique indexes allowing one PENDING transaction per session or quotation.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001_consultbook_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = JSONB(astext_type=sa.Text()).with_variant(sa.JSON(), "sqlite")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "consultants",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("slug", sa.String(100), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("personal_session_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("webinar_session_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("personal_session_title", sa.String(200), nullable=True),
        sa.Column("webinar_session_title", sa.String(200), nullable=True),
        sa.Column("currency", sa.String(3), nullable=False, server_default="INR"),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="Asia/Kolkata"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("email", name="uq_consultants_email"),
        sa.CheckConstraint(
            "personal_session_price IS NULL OR personal_session_price >= 0",
            name="ck_consultants_personal_price_non_negative",
        ),
        sa.CheckConstraint(
            "webinar_session_price IS NULL OR webinar_session_price >= 0",
            name="ck_consultants_webinar_price_non_negative",
        ),
    )
    op.create_index("ix_consultants_id", "consultants", ["id"])
    op.create_index("ix_consultants_slug", "consultants", ["slug"], unique=True)

    op.create_table(
        "clients",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("consultant_id", sa.String(26), sa.ForeignKey("consultants.id"), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("total_sessions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_amount_paid", sa.Numeric(12, 2), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("consultant_id", "email", name="uq_clients_consultant_email"),
    )
    op.create_index("ix_clients_id", "clients", ["id"])
    op.create_index("ix_clients_consultant_id", "clients", ["consultant_id"])

    op.create_table(
        "weekly_availability_patterns",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("consultant_id", sa.String(26), sa.ForeignKey("consultants.id"), nullable=False),
        sa.Column("session_type", sa.String(20), nullable=False),
        sa.Column("day_of_week", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="Asia/Kolkata"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="ck_patterns_day_of_week"),
        sa.CheckConstraint("start_time < end_time", name="ck_patterns_time_order"),
        sa.CheckConstraint("session_type IN ('PERSONAL', 'WEBINAR')", name="ck_patterns_session_type"),
    )
    op.create_index("ix_weekly_availability_patterns_id", "weekly_availability_patterns", ["id"])
    op.create_index(
        "ix_patterns_consultant_type_day",
        "weekly_availability_patterns",
        ["consultant_id", "session_type", "day_of_week"],
    )

    op.create_table(
        "availability_slots",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("consultant_id", sa.String(26), sa.ForeignKey("consultants.id"), nullable=False),
        sa.Column("session_type", sa.String(20), nullable=False),
        sa.Column("slot_date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="Asia/Kolkata"),
        sa.Column("is_booked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_blocked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("session_id", sa.String(26), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "consultant_id", "session_type", "slot_date", "start_time", name="uq_availability_slots_key"
        ),
        sa.CheckConstraint("start_time < end_time", name="ck_slots_time_order"),
    )
    op.create_index("ix_availability_slots_id", "availability_slots", ["id"])
    op.create_index("ix_availability_slots_session_id", "availability_slots", ["session_id"])
    op.create_index(
        "ix_availability_slots_lookup",
        "availability_slots",
        ["consultant_id", "session_type", "slot_date"],
    )

    op.create_table(
        "sessions",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("consultant_id", sa.String(26), sa.ForeignKey("consultants.id"), nullable=False),
        sa.Column("client_id", sa.String(26), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column("slot_id", sa.String(26), sa.ForeignKey("availability_slots.id"), nullable=True),
        sa.Column("session_type", sa.String(20), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("scheduled_date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="Asia/Kolkata"),
        sa.Column("scheduled_start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="INR"),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("reservation_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("meeting_link", sa.String(500), nullable=True),
        sa.Column("meeting_id", sa.String(100), nullable=True),
        sa.Column("meeting_password", sa.String(100), nullable=True),
        sa.Column("meeting_platform", sa.String(30), nullable=True),
        sa.Column("client_notes", sa.Text(), nullable=True),
        sa.Column("consultant_notes", sa.Text(), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.String(20), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_sessions_id", "sessions", ["id"])
    op.create_index("ix_sessions_consultant_id", "sessions", ["consultant_id"])
    op.create_index("ix_sessions_client_id", "sessions", ["client_id"])
    op.create_index("ix_sessions_slot_id", "sessions", ["slot_id"])
    op.create_index("ix_sessions_status_expiry", "sessions", ["status", "reservation_expires_at"])
    op.create_index("ix_sessions_status_start", "sessions", ["status", "scheduled_start_at"])

    op.create_table(
        "quotations",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("consultant_id", sa.String(26), sa.ForeignKey("consultants.id"), nullable=False),
        sa.Column("client_name", sa.String(200), nullable=False),
        sa.Column("client_email", sa.String(255), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="INR"),
        sa.Column("status", sa.String(20), nullable=False, server_default="DRAFT"),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_quotations_amount_positive"),
    )
    op.create_index("ix_quotations_id", "quotations", ["id"])
    op.create_index("ix_quotations_consultant_id", "quotations", ["consultant_id"])
    op.create_index("ix_quotations_status", "quotations", ["status"])

    op.create_table(
        "payment_transactions",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("session_id", sa.String(26), sa.ForeignKey("sessions.id"), nullable=True),
        sa.Column("quotation_id", sa.String(26), sa.ForeignKey("quotations.id"), nullable=True),
        sa.Column("consultant_id", sa.String(26), sa.ForeignKey("consultants.id"), nullable=False),
        sa.Column("client_id", sa.String(26), sa.ForeignKey("clients.id"), nullable=True),
        sa.Column(
            "parent_transaction_id",
            sa.String(26),
            sa.ForeignKey("payment_transactions.id"),
            nullable=True,
        ),
        sa.Column("transaction_type", sa.String(20), nullable=False, server_default="PAYMENT"),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("amount_minor", sa.Integer(), nullable=False, comment="Amount in paise sent to the gateway"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="INR"),
        sa.Column("status", sa.String(30), nullable=False, server_default="PENDING"),
        sa.Column("gateway_order_id", sa.String(64), nullable=True),
        sa.Column("gateway_payment_id", sa.String(64), nullable=True),
        sa.Column("gateway_refund_id", sa.String(64), nullable=True),
        sa.Column("refunded_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("failure_code", sa.String(100), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("settled_by", sa.String(20), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("gateway_order_id", name="uq_payment_transactions_gateway_order_id"),
        sa.CheckConstraint("amount >= 0", name="ck_payment_transactions_amount_non_negative"),
        sa.CheckConstraint(
            "(session_id IS NULL) <> (quotation_id IS NULL)",
            name="ck_payment_transactions_one_payable",
        ),
    )
    op.create_index("ix_payment_transactions_id", "payment_transactions", ["id"])
    op.create_index("ix_payment_transactions_session_id", "payment_transactions", ["session_id"])
    op.create_index("ix_payment_transactions_quotation_id", "payment_transactions", ["quotation_id"])
    op.create_index("ix_payment_transactions_consultant_id", "payment_transactions", ["consultant_id"])
    op.create_index(
        "ix_payment_transactions_gateway_payment_id", "payment_transactions", ["gateway_payment_id"]
    )
    op.create_index(
        "ix_payment_transactions_status_created", "payment_transactions", ["status", "created_at"]
    )
    op.create_index(
        "uq_payment_transactions_one_pending",
        "payment_transactions",
        ["session_id"],
        unique=True,
        postgresql_where=sa.text("status = 'PENDING'"),
        sqlite_where=sa.text("status = 'PENDING'"),
    )
    op.create_index(
        "uq_payment_transactions_one_pending_quotation",
        "payment_transactions",
        ["quotation_id"],
        unique=True,
        postgresql_where=sa.text("status = 'PENDING'"),
        sqlite_where=sa.text("status = 'PENDING'"),
    )

    op.create_table(
        "event_outbox",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("aggregate_id", sa.String(64), nullable=False),
        sa.Column("idempotency_key", sa.String(255), nullable=False),
        sa.Column("payload", JSON_TYPE, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("idempotency_key", name="uq_event_outbox_idempotency_key"),
    )
    op.create_index("ix_event_outbox_event_type", "event_outbox", ["event_type"])
    op.create_index("ix_event_outbox_aggregate_id", "event_outbox", ["aggregate_id"])
    op.create_index("ix_event_outbox_status", "event_outbox", ["status"])
    op.create_index("ix_event_outbox_next_attempt_at", "event_outbox", ["next_attempt_at"])

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("event_id", sa.String(128), nullable=False),
        sa.Column("payload", JSON_TYPE, nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="received"),
        sa.Column("outcome", sa.String(32), nullable=True),
        sa.Column("processing_error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("related_order_id", sa.String(64), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("source", "event_id", name="uq_webhook_events_source_event_id"),
    )
    op.create_index("ix_webhook_events_order", "webhook_events", ["related_order_id"])
    op.create_index("ix_webhook_events_status_received", "webhook_events", ["status", "received_at"])


def downgrade() -> None:
    op.drop_table("webhook_events")
    op.drop_table("event_outbox")
    op.drop_table("payment_transactions")
    op.drop_table("quotations")
    op.drop_table("sessions")
    op.drop_table("availability_slots")
    op.drop_table("weekly_availability_patterns")
    op.drop_table("clients")
    op.drop_table("consultants")
