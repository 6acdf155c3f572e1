"""Booking schema: booking_pages, bookings, availability_cache.

Revision ID: 001_booking
Revises:
Create Date: 2025-02-22

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "001_booking"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "booking_pages",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("business_name", sa.String(), nullable=False),
        sa.Column("business_email", sa.String(), nullable=True),
        sa.Column("business_phone", sa.String(), nullable=True),
        sa.Column("business_logo_url", sa.String(), nullable=True),
        sa.Column("primary_color", sa.String(), nullable=False, server_default="#ff4500"),
        sa.Column("business_hours", sa.JSON(), nullable=False),
        sa.Column("slot_duration_minutes", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("buffer_time_minutes", sa.Integer(), nullable=False, server_default="15"),
        sa.Column("booking_notice_hours", sa.Integer(), nullable=False, server_default="24"),
        sa.Column("max_days_advance", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("timezone", sa.String(), nullable=False, server_default="Australia/Sydney"),
        sa.Column("auto_confirm", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("google_calendar_id", sa.String(), nullable=True),
        sa.Column("google_calendar_refresh_token", sa.String(), nullable=True),
        sa.Column("enabled_services", sa.JSON(), nullable=True),
        sa.Column("custom_questions", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("slot_duration_minutes > 0", name="ck_booking_pages_slot_duration_positive"),
        sa.CheckConstraint("buffer_time_minutes >= 0", name="ck_booking_pages_buffer_non_negative"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_booking_pages_org_id"), "booking_pages", ["org_id"], unique=True)
    op.create_index(op.f("ix_booking_pages_slug"), "booking_pages", ["slug"], unique=True)

    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("booking_page_id", sa.Integer(), nullable=False),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("customer_name", sa.String(), nullable=False),
        sa.Column("customer_phone", sa.String(), nullable=False),
        sa.Column("customer_email", sa.String(), nullable=True),
        sa.Column("service_type", sa.String(), nullable=True),
        sa.Column("notes", sa.String(), nullable=True),
        sa.Column("custom_responses", sa.JSON(), nullable=False),
        sa.Column("start_time", sa.DateTime(), nullable=False),
        sa.Column("end_time", sa.DateTime(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("google_event_id", sa.String(), nullable=True),
        sa.Column("confirmation_sent_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("cancellation_reason", sa.String(), nullable=True),
        sa.CheckConstraint("end_time > start_time", name="ck_bookings_window_not_empty"),
        sa.CheckConstraint(
            "status IN ('pending', 'confirmed', 'cancelled', 'completed', 'no_show')",
            name="ck_bookings_status",
        ),
        sa.ForeignKeyConstraint(["booking_page_id"], ["booking_pages.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_bookings_booking_page_id"), "bookings", ["booking_page_id"], unique=False)
    op.create_index(op.f("ix_bookings_org_id"), "bookings", ["org_id"], unique=False)
    op.create_index(op.f("ix_bookings_customer_phone"), "bookings", ["customer_phone"], unique=False)
    op.create_index(op.f("ix_bookings_status"), "bookings", ["status"], unique=False)
    op.create_index("ix_bookings_page_start", "bookings", ["booking_page_id", "start_time"], unique=False)

    # No two active bookings of one page may share an instant of [start_time, end_time)
    op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")
    op.create_exclude_constraint(
        "bookings_no_overlap_per_page",
        "bookings",
        ("booking_page_id", "="),
        (sa.text("tsrange(start_time, end_time, '[)')"), "&&"),
        where=sa.text("status IN ('pending', 'confirmed')"),
        using="gist",
    )

    op.create_table(
        "availability_cache",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("booking_page_id", sa.Integer(), nullable=False),
        sa.Column("slot_date", sa.Date(), nullable=False),
        sa.Column("slots", sa.JSON(), nullable=False),
        sa.Column("cached_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["booking_page_id"], ["booking_pages.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("booking_page_id", "slot_date", name="uq_availability_cache_page_date"),
    )
    op.create_index(
        op.f("ix_availability_cache_booking_page_id"), "availability_cache", ["booking_page_id"], unique=False
    )
    op.create_index(op.f("ix_availability_cache_cached_at"), "availability_cache", ["cached_at"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_availability_cache_cached_at"), table_name="availability_cache")
    op.drop_index(op.f("ix_availability_cache_booking_page_id"), table_name="availability_cache")
    op.drop_table("availability_cache")
    op.drop_constraint("bookings_no_overlap_per_page", "bookings", type_="exclude")
    op.drop_index("ix_bookings_page_start", table_name="bookings")
    op.drop_index(op.f("ix_bookings_status"), table_name="bookings")
    op.drop_index(op.f("ix_bookings_customer_phone"), table_name="bookings")
    op.drop_index(op.f("ix_bookings_org_id"), table_name="bookings")
    op.drop_index(op.f("ix_bookings_booking_page_id"), table_name="bookings")
    op.drop_table("bookings")
    op.drop_index(op.f("ix_booking_pages_slug"), table_name="booking_pages")
    op.drop_index(op.f("ix_booking_pages_org_id"), table_name="booking_pages")
    op.drop_table("booking_pages")
