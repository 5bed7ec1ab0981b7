"""Add next_attempt_at to pending writes, insertion order and kind to tombstones

Revision ID: 002_retry_schedule_tombstone_order
Revises: 001_initial_schema
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "002_retry_schedule_tombstone_order"
down_revision = "001_initial_schema"
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table("pending_memory_writes") as batch_op:
        batch_op.add_column(sa.Column("next_attempt_at", sa.DateTime(), nullable=True))
        batch_op.create_index("ix_pending_next_attempt", ["next_attempt_at"])

    # Existing tombstones are ordered by their boundary
    with op.batch_alter_table("history_tombstones") as batch_op:
        batch_op.add_column(sa.Column("created_at", sa.DateTime(), nullable=True))
        batch_op.add_column(sa.Column("kind", sa.String(20), nullable=False, server_default="clear"))
    op.execute("UPDATE history_tombstones SET created_at = deleted_at")
    with op.batch_alter_table("history_tombstones") as batch_op:
        batch_op.alter_column("created_at", existing_type=sa.DateTime(), nullable=False)
        batch_op.alter_column("deleted_at", existing_type=sa.DateTime(), nullable=True)
        batch_op.create_index("ix_tombstones_scope_created", ["channel_id", "character_id", "persona_id", "created_at"])


def downgrade():
    # A boundary of NULL (restored to the beginning) has no older equivalent
    op.execute("DELETE FROM history_tombstones WHERE deleted_at IS NULL")
    with op.batch_alter_table("history_tombstones") as batch_op:
        batch_op.drop_index("ix_tombstones_scope_created")
        batch_op.alter_column("deleted_at", existing_type=sa.DateTime(), nullable=False)
        batch_op.drop_column("kind")
        batch_op.drop_column("created_at")

    with op.batch_alter_table("pending_memory_writes") as batch_op:
        batch_op.drop_index("ix_pending_next_attempt")
        batch_op.drop_column("next_attempt_at")
