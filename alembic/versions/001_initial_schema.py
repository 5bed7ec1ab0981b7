"""Initial schema: turns, tombstones, memories, pending memory writes

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "conversation_turns",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("channel_id", sa.String(64), nullable=False),
        sa.Column("character_id", sa.String(64), nullable=False),
        sa.Column("persona_id", sa.String(64), nullable=False),
        sa.Column(
            "role",
            sa.Enum("user", "assistant", "system", name="turnrole"),
            nullable=False
        ),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("token_count", sa.Integer(), nullable=True),
        sa.Column("attachments", sa.JSON(), nullable=True),
        sa.Column("external_message_refs", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("edited_at", sa.DateTime(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
    )
    op.create_index(
        "ix_turns_scope_created",
        "conversation_turns",
        ["channel_id", "character_id", "persona_id", "created_at"]
    )
    op.create_index(
        "ix_turns_character_persona_created",
        "conversation_turns",
        ["character_id", "persona_id", "created_at"]
    )
    
    op.create_table(
        "history_tombstones",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("channel_id", sa.String(64), nullable=False),
        sa.Column("character_id", sa.String(64), nullable=False),
        sa.Column("persona_id", sa.String(64), nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_tombstones_scope_deleted",
        "history_tombstones",
        ["channel_id", "character_id", "persona_id", "deleted_at"]
    )
    
    op.create_table(
        "memories",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("character_id", sa.String(64), nullable=False),
        sa.Column("persona_id", sa.String(64), nullable=True),
        sa.Column("channel_id", sa.String(64), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("embedding", sa.JSON(), nullable=True),
        sa.Column("embedding_model", sa.String(100), nullable=True),
        sa.Column("chunk_group_id", sa.String(36), nullable=True),
        sa.Column("chunk_index", sa.Integer(), nullable=True),
        sa.Column("total_chunks", sa.Integer(), nullable=True),
        sa.Column(
            "visibility",
            sa.Enum("normal", "hidden", name="memoryvisibility"),
            nullable=False
        ),
        sa.Column("is_locked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("source_turn_id", sa.String(36), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_memories_character_id", "memories", ["character_id"])
    op.create_index("ix_memories_chunk_group_id", "memories", ["chunk_group_id"])
    op.create_index("ix_memories_source_turn_id", "memories", ["source_turn_id"])
    op.create_index("ix_memories_character_persona", "memories", ["character_id", "persona_id"])
    
    op.create_table(
        "pending_memory_writes",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("turn_id", sa.String(36), nullable=False, unique=True),
        sa.Column("channel_id", sa.String(64), nullable=False),
        sa.Column("character_id", sa.String(64), nullable=False),
        sa.Column("persona_id", sa.String(64), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_attempt_at", sa.DateTime(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("claimed_by", sa.String(100), nullable=True),
        sa.Column("claimed_at", sa.DateTime(), nullable=True),
        sa.Column("exhausted_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_pending_created", "pending_memory_writes", ["created_at"])


def downgrade():
    op.drop_index("ix_pending_created", table_name="pending_memory_writes")
    op.drop_table("pending_memory_writes")
    
    for index in (
        "ix_memories_character_persona",
        "ix_memories_source_turn_id",
        "ix_memories_chunk_group_id",
        "ix_memories_character_id",
    ):
        op.drop_index(index, table_name="memories")
    op.drop_table("memories")
    
    op.drop_index("ix_tombstones_scope_deleted", table_name="history_tombstones")
    op.drop_table("history_tombstones")
    
    op.drop_index("ix_turns_character_persona_created", table_name="conversation_turns")
    op.drop_index("ix_turns_scope_created", table_name="conversation_turns")
    op.drop_table("conversation_turns")
    
    sa.Enum(name="memoryvisibility").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="turnrole").drop(op.get_bind(), checkfirst=True)
