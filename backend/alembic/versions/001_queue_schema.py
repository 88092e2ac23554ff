"""Queue schema: per-resource settings and per-session queue entries.

Revision ID: 001
Revises: None
Create Date: 2026-10-17
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

DEFAULT_LANES = '{"group": {"max_concurrent": 10, "session_timeout": 600}, "individual": {"max_concurrent": 40, "session_timeout": 420}}'


def upgrade() -> None:
    op.create_table(
        "queue_settings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("resource_id", sa.String(64), nullable=False),
        sa.Column("queue_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("lanes", sa.JSON(), nullable=False, server_default=sa.text(f"'{DEFAULT_LANES}'")),
        sa.Column("allow_time_extension", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("extension_duration", sa.Integer(), nullable=False, server_default=sa.text("300")),
        sa.Column("active_window_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active_window_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("waiting_room_message", sa.String(2000), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("extension_duration > 0", name="check_extension_duration_positive"),
    )
    op.create_index("ix_queue_settings_id", "queue_settings", ["id"])
    op.create_index("ix_queue_settings_resource_id", "queue_settings", ["resource_id"], unique=True)

    op.create_table(
        "queue_entries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("session_id", sa.String(128), nullable=False),
        sa.Column("resource_id", sa.String(64), nullable=False),
        sa.Column("lane", sa.String(50), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'waiting'")),
        sa.Column("entered_queue_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("queue_position", sa.Integer(), nullable=True),
        sa.Column("admitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("extension_used", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('waiting', 'active', 'completed', 'expired', 'abandoned')",
            name="check_queue_entry_status",
        ),
    )
    op.create_index("ix_queue_entries_id", "queue_entries", ["id"])
    # One row per browser session; admission upserts on this key
    op.create_index("ix_queue_entries_session_id", "queue_entries", ["session_id"], unique=True)
    op.create_index("ix_queue_entries_resource_id", "queue_entries", ["resource_id"])
    # Live occupancy count, run on every admission check:
    # WHERE resource_id = ? AND lane = ? AND status = 'active' AND expires_at > now
    op.create_index(
        "ix_queue_entries_occupancy",
        "queue_entries",
        ["resource_id", "lane", "status", "expires_at"],
    )
    # Queue position and sweeper promotion order:
    # WHERE resource_id = ? AND lane = ? AND status = 'waiting' ORDER BY entered_queue_at
    op.create_index(
        "ix_queue_entries_fifo",
        "queue_entries",
        ["resource_id", "lane", "status", "entered_queue_at"],
    )


def downgrade() -> None:
    op.drop_table("queue_entries")
    op.drop_table("queue_settings")
