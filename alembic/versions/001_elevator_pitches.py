"""Elevator pitch table.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the elevator_pitches table, one row per owner.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "elevator_pitches",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("owner_role", sa.String(32), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="deactivate"),
        # Video references
        sa.Column("raw_key", sa.String(1024), nullable=True),
        sa.Column("raw_bucket", sa.String(255), nullable=True),
        sa.Column("hls_url", sa.String(2048), nullable=True),
        sa.Column("encryption_key_url", sa.String(2048), nullable=True),
        # Media metadata
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.Column("container_format", sa.String(100), nullable=True),
        sa.Column("video_codec", sa.String(50), nullable=True),
        sa.Column("rotation_degrees", sa.Integer(), nullable=True),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=True),
        # Processing
        sa.Column("processing_state", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processing_error", sa.Text(), nullable=True),
        sa.Column("file_name", sa.String(255), nullable=True),
        sa.Column("file_size", sa.BigInteger(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "modified_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_elevator_pitches_owner_id"),
        "elevator_pitches",
        ["owner_id"],
        unique=True,
    )
    op.create_index(
        op.f("ix_elevator_pitches_owner_role"),
        "elevator_pitches",
        ["owner_role"],
        unique=False,
    )
    op.create_index(
        op.f("ix_elevator_pitches_processing_state"),
        "elevator_pitches",
        ["processing_state"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index(op.f("ix_elevator_pitches_processing_state"), table_name="elevator_pitches")
    op.drop_index(op.f("ix_elevator_pitches_owner_role"), table_name="elevator_pitches")
    op.drop_index(op.f("ix_elevator_pitches_owner_id"), table_name="elevator_pitches")
    op.drop_table("elevator_pitches")
