"""peloton_stack_schema

Revision ID: 001_peloton_stack
Revises:
Create Date: 2026-01-16

Creates profile, peloton_token, planned_workout, ftp_record and
stack_sync_log.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


revision = "001_peloton_stack"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "profile",
        sa.Column("id", UUID(as_uuid=True), nullable=False),
        *_timestamps(),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("avatar_url", sa.Text(), nullable=True),
        sa.Column("timezone", sa.Text(), nullable=True),
        sa.Column("peloton_user_id", sa.Text(), nullable=True),
        sa.Column("peloton_username", sa.Text(), nullable=True),
        sa.Column("current_ftp", sa.Integer(), nullable=True),
        sa.Column("estimated_ftp", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
        sa.UniqueConstraint("peloton_user_id"),
    )

    op.create_table(
        "peloton_token",
        sa.Column("id", UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        *_timestamps(),
        sa.Column("access_token_encrypted", sa.Text(), nullable=False),
        sa.Column("refresh_token_encrypted", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["profile.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
    )
    op.create_index("ix_peloton_token_expires_at", "peloton_token", ["expires_at"], unique=False)

    op.create_table(
        "planned_workout",
        sa.Column("id", UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        *_timestamps(),
        sa.Column("peloton_class_id", sa.Text(), nullable=True),
        sa.Column("ride_title", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("ride_image_url", sa.Text(), nullable=True),
        sa.Column("instructor_name", sa.Text(), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("discipline", sa.Text(), nullable=False, server_default=sa.text("'cycling'")),
        sa.Column("scheduled_date", sa.Date(), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'planned'")),
        sa.Column("pushed_to_stack", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("pushed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('planned', 'completed', 'skipped', 'postponed')",
            name="ck_planned_workout_status",
        ),
        sa.ForeignKeyConstraint(["user_id"], ["profile.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_planned_workout_user_date", "planned_workout", ["user_id", "scheduled_date"], unique=False)
    op.create_index("ix_planned_workout_user_status", "planned_workout", ["user_id", "status"], unique=False)

    op.create_table(
        "ftp_record",
        sa.Column("id", UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("workout_id", sa.Text(), nullable=False),
        sa.Column("workout_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ride_title", sa.Text(), nullable=True),
        sa.Column("avg_output", sa.Integer(), nullable=False),
        sa.Column("calculated_ftp", sa.Integer(), nullable=False),
        sa.Column("baseline_ftp", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("source", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["profile.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "workout_id", name="uq_ftp_record_user_workout"),
    )
    op.create_index("ix_ftp_record_user_date", "ftp_record", ["user_id", "workout_date"], unique=False)

    op.create_table(
        "stack_sync_log",
        sa.Column("id", UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("sync_type", sa.Text(), nullable=False),
        sa.Column("workouts_pushed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.CheckConstraint("sync_type IN ('manual', 'scheduled')", name="ck_stack_sync_log_type"),
        sa.ForeignKeyConstraint(["user_id"], ["profile.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_stack_sync_log_user_created", "stack_sync_log", ["user_id", "created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_stack_sync_log_user_created", table_name="stack_sync_log")
    op.drop_table("stack_sync_log")
    op.drop_index("ix_ftp_record_user_date", table_name="ftp_record")
    op.drop_table("ftp_record")
    op.drop_index("ix_planned_workout_user_status", table_name="planned_workout")
    op.drop_index("ix_planned_workout_user_date", table_name="planned_workout")
    op.drop_table("planned_workout")
    op.drop_index("ix_peloton_token_expires_at", table_name="peloton_token")
    op.drop_table("peloton_token")
    op.drop_table("profile")
