"""Initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

_EVENT_STATUS = sa.Enum("confirmed", "tentative", "cancelled", name="eventstatus")
_ASSIGNMENT_STATUS = sa.Enum("pending", "accepted", "declined", name="assignmentstatus")
_SUBSCRIPTION_FILTER = sa.Enum("all", "event_categories", name="subscriptionfilter")


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="UTC"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=False, server_default=""),
        sa.Column("last_name", sa.String(length=100), nullable=False, server_default=""),
        sa.Column(
            "email_notifications", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["organization_id"], ["organizations.id"], name="fk_users_organization"
        ),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_organization_id", "users", ["organization_id"], unique=False)

    op.create_table(
        "event_categories",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("color", sa.String(length=20), nullable=True),
        sa.ForeignKeyConstraint(
            ["organization_id"], ["organizations.id"], name="fk_event_categories_organization"
        ),
    )
    op.create_index(
        "ix_event_categories_organization_id",
        "event_categories",
        ["organization_id"],
        unique=False,
    )

    op.create_table(
        "events",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("category_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("location", sa.String(length=300), nullable=True),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", _EVENT_STATUS, nullable=False, server_default="confirmed"),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_root_event", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("recurrence_pattern", sa.Text(), nullable=True),
        sa.Column("parent_event_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("generated_from", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("original_start_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_customized", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["organization_id"], ["organizations.id"], name="fk_events_organization"
        ),
        sa.ForeignKeyConstraint(
            ["category_id"], ["event_categories.id"], name="fk_events_category"
        ),
        sa.ForeignKeyConstraint(["parent_event_id"], ["events.id"], name="fk_events_parent"),
        sa.ForeignKeyConstraint(
            ["generated_from"], ["events.id"], name="fk_events_generated_from"
        ),
        sa.UniqueConstraint(
            "generated_from", "original_start_time", name="uq_events_generated_from_slot"
        ),
    )
    op.create_index("ix_events_organization_id", "events", ["organization_id"], unique=False)
    op.create_index("ix_events_category_id", "events", ["category_id"], unique=False)
    op.create_index("ix_events_start_time", "events", ["start_time"], unique=False)
    op.create_index("ix_events_generated_from", "events", ["generated_from"], unique=False)

    op.create_table(
        "event_assignments",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("event_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("role_name", sa.String(length=100), nullable=True),
        sa.Column("status", _ASSIGNMENT_STATUS, nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"], name="fk_assignments_event"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_assignments_user"),
    )
    op.create_index(
        "ix_event_assignments_event_id", "event_assignments", ["event_id"], unique=False
    )

    op.create_table(
        "music_items",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("event_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("title", sa.String(length=300), nullable=False, server_default=""),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("service_part", sa.String(length=100), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"], name="fk_music_items_event"),
    )
    op.create_index("ix_music_items_event_id", "music_items", ["event_id"], unique=False)

    op.create_table(
        "calendar_subscriptions",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("token", sa.String(length=64), nullable=False),
        sa.Column("filter_type", _SUBSCRIPTION_FILTER, nullable=False, server_default="all"),
        sa.Column("category_ids", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_fetched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["organization_id"], ["organizations.id"], name="fk_subscriptions_organization"
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_subscriptions_user"),
    )
    op.create_index(
        "ix_calendar_subscriptions_token", "calendar_subscriptions", ["token"], unique=True
    )
    op.create_index(
        "ix_calendar_subscriptions_organization_id",
        "calendar_subscriptions",
        ["organization_id"],
        unique=False,
    )

    op.create_table(
        "cancellation_notifications",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("event_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("cancelled_by_user_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("role_name", sa.String(length=100), nullable=True),
        sa.Column("batch_key", sa.String(length=100), nullable=False),
        sa.Column("process_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["event_id"], ["events.id"], name="fk_cancellation_notifications_event"
        ),
        sa.ForeignKeyConstraint(
            ["cancelled_by_user_id"], ["users.id"], name="fk_cancellation_notifications_user"
        ),
    )
    op.create_index(
        "ix_cancellation_notifications_event_id",
        "cancellation_notifications",
        ["event_id"],
        unique=False,
    )
    op.create_index(
        "ix_cancellation_notifications_batch_key",
        "cancellation_notifications",
        ["batch_key"],
        unique=False,
    )
    op.create_index(
        "ix_cancellation_notifications_process_after",
        "cancellation_notifications",
        ["process_after"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_table("cancellation_notifications")
    op.drop_table("calendar_subscriptions")
    op.drop_table("music_items")
    op.drop_table("event_assignments")
    op.drop_table("events")
    op.drop_table("event_categories")
    op.drop_table("users")
    op.drop_table("organizations")

    # Enum cleanup (Postgres only)
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute("DROP TYPE IF EXISTS subscriptionfilter")
        op.execute("DROP TYPE IF EXISTS assignmentstatus")
        op.execute("DROP TYPE IF EXISTS eventstatus")
