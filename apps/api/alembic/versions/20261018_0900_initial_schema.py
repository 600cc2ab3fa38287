"""Initial schema (identity, entities, tickets, notifications, jobs)

Revision ID: 20261018_0900
Revises:
Create Date: 2026-10-18

"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0900"
down_revision = None
branch_labels = None
depends_on = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
    )


def _permissions() -> sa.Column:
    return sa.Column("permissions", sa.JSON(), nullable=False, server_default=sa.text("'[]'"))


def _is_active() -> sa.Column:
    return sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true())


def _change_table(name: str, lookup_table: str) -> None:
    op.create_table(
        name,
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "ticket_id",
            sa.Integer(),
            sa.ForeignKey("tickets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "from_id",
            sa.Integer(),
            sa.ForeignKey(f"{lookup_table}.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "to_id",
            sa.Integer(),
            sa.ForeignKey(f"{lookup_table}.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "changed_by_id",
            sa.Integer(),
            sa.ForeignKey("entities.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "changed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index(f"ix_{name}_ticket_id", name, ["ticket_id"])


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.Text(), nullable=False, unique=True),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("mobile", sa.Text(), nullable=True),
        _permissions(),
        _is_active(),
        sa.Column("acting_user_team_id", sa.Integer(), nullable=True),
        sa.Column("email_notification_preferences", sa.JSON(), nullable=True),
        sa.Column("sms_notification_preferences", sa.JSON(), nullable=True),
        _created_at(),
    )
    op.create_table(
        "teams",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.Text(), nullable=False),
        _permissions(),
        _is_active(),
        _created_at(),
    )
    op.create_table(
        "user_teams",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column(
            "team_id", sa.Integer(), sa.ForeignKey("teams.id", ondelete="CASCADE"), nullable=False
        ),
        _permissions(),
        _is_active(),
        _created_at(),
    )
    op.create_index("ix_user_teams_user_id", "user_teams", ["user_id"])
    op.create_index("ix_user_teams_team_id", "user_teams", ["team_id"])

    op.create_table(
        "api_keys",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.Text(), nullable=False),
        _permissions(),
        _is_active(),
        _created_at(),
    )

    # Owner columns stay nullable; the resolver detects and purges rows without exactly one.
    op.create_table(
        "entities",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "team_id", sa.Integer(), sa.ForeignKey("teams.id", ondelete="CASCADE"), nullable=True
        ),
        sa.Column(
            "user_team_id",
            sa.Integer(),
            sa.ForeignKey("user_teams.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column(
            "api_key_id",
            sa.Integer(),
            sa.ForeignKey("api_keys.id", ondelete="CASCADE"),
            nullable=True,
        ),
        _created_at(),
    )
    op.create_index("ix_entities_team_id", "entities", ["team_id"])
    op.create_index("ix_entities_user_team_id", "entities", ["user_team_id"])
    op.create_index("ix_entities_api_key_id", "entities", ["api_key_id"])

    op.create_table(
        "ticket_categories",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column(
            "parent_id",
            sa.Integer(),
            sa.ForeignKey("ticket_categories.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _created_at(),
    )
    op.create_index("ix_ticket_categories_parent_id", "ticket_categories", ["parent_id"])
    op.create_table(
        "ticket_category_team_access",
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("ticket_categories.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "team_id",
            sa.Integer(),
            sa.ForeignKey("teams.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    op.create_table(
        "ticket_statuses",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("is_closed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )
    op.create_table(
        "ticket_priorities",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )

    op.create_table(
        "tickets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column(
            "current_status_id",
            sa.Integer(),
            sa.ForeignKey("ticket_statuses.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "current_priority_id",
            sa.Integer(),
            sa.ForeignKey("ticket_priorities.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "current_category_id",
            sa.Integer(),
            sa.ForeignKey("ticket_categories.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "current_assigned_to_id",
            sa.Integer(),
            sa.ForeignKey("entities.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "created_by_id",
            sa.Integer(),
            sa.ForeignKey("entities.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        _created_at(),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index("ix_tickets_current_assigned_to_id", "tickets", ["current_assigned_to_id"])
    op.create_index("ix_tickets_created_by_id", "tickets", ["created_by_id"])

    op.create_table(
        "ticket_threads",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "ticket_id",
            sa.Integer(),
            sa.ForeignKey("tickets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("body_encrypted", sa.LargeBinary(), nullable=False),
        sa.Column(
            "created_by_id",
            sa.Integer(),
            sa.ForeignKey("entities.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        _created_at(),
    )
    op.create_index("ix_ticket_threads_ticket_id", "ticket_threads", ["ticket_id"])

    op.create_table(
        "ticket_change_assignments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "ticket_id",
            sa.Integer(),
            sa.ForeignKey("tickets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "assigned_from_id",
            sa.Integer(),
            sa.ForeignKey("entities.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "assigned_to_id",
            sa.Integer(),
            sa.ForeignKey("entities.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "changed_by_id",
            sa.Integer(),
            sa.ForeignKey("entities.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "changed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index(
        "ix_ticket_change_assignments_ticket_id", "ticket_change_assignments", ["ticket_id"]
    )
    _change_table("ticket_change_categories", "ticket_categories")
    _change_table("ticket_change_priorities", "ticket_priorities")
    _change_table("ticket_change_statuses", "ticket_statuses")

    op.create_table(
        "notification_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column(
            "on_thread_id",
            sa.Integer(),
            sa.ForeignKey("ticket_threads.id", ondelete="CASCADE"),
            nullable=True,
            unique=True,
        ),
        sa.Column(
            "on_assignment_change_id",
            sa.Integer(),
            sa.ForeignKey("ticket_change_assignments.id", ondelete="CASCADE"),
            nullable=True,
            unique=True,
        ),
        sa.Column(
            "on_priority_change_id",
            sa.Integer(),
            sa.ForeignKey("ticket_change_priorities.id", ondelete="CASCADE"),
            nullable=True,
            unique=True,
        ),
        sa.Column(
            "on_status_change_id",
            sa.Integer(),
            sa.ForeignKey("ticket_change_statuses.id", ondelete="CASCADE"),
            nullable=True,
            unique=True,
        ),
        sa.Column(
            "on_category_change_id",
            sa.Integer(),
            sa.ForeignKey("ticket_change_categories.id", ondelete="CASCADE"),
            nullable=True,
            unique=True,
        ),
        _created_at(),
    )
    op.create_table(
        "notification_recipients",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "event_id",
            sa.Integer(),
            sa.ForeignKey("notification_events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("email_notified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sms_notified", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        sa.UniqueConstraint("event_id", "user_id", name="uq_notification_recipients_event_user"),
    )

    op.create_table(
        "bg_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column(
            "status", sa.String(length=32), nullable=False, server_default=sa.text("'queued'")
        ),
        sa.Column(
            "run_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("25")),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.Text(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("dedupe_key", sa.Text(), nullable=True, unique=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        _created_at(),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index("ix_bg_jobs_status_run_at", "bg_jobs", ["status", "run_at"])


def downgrade() -> None:
    op.drop_index("ix_bg_jobs_status_run_at", table_name="bg_jobs")
    for table in (
        "bg_jobs",
        "notification_recipients",
        "notification_events",
        "ticket_change_statuses",
        "ticket_change_priorities",
        "ticket_change_categories",
        "ticket_change_assignments",
        "ticket_threads",
        "tickets",
        "ticket_priorities",
        "ticket_statuses",
        "ticket_category_team_access",
        "ticket_categories",
        "entities",
        "api_keys",
        "user_teams",
        "teams",
        "users",
    ):
        op.drop_table(table)
