"""Database models for long-term memories and the pending-write queue."""

from sqlalchemy import Column, String, DateTime, Text, Enum, JSON, Integer, Boolean, Index
import enum

from lorekeeper.db.database import Base
from lorekeeper.models.conversation import generate_uuid
from lorekeeper.utils.clock import utcnow


class MemoryVisibility(str, enum.Enum):
    """Retrieval visibility of a memory."""
    NORMAL = "normal"
    HIDDEN = "hidden"  # Never returned by retrieval


class Memory(Base):
    """
    A long-term memory entry with its embedding.
    
    Long text is stored as a chunk group: rows sharing ``chunk_group_id``
    with contiguous 0-based ``chunk_index`` and a constant ``total_chunks``.
    Each chunk is embedded on its own and reassembled in index order when
    retrieved.
    
    ``is_locked`` memories are readable but refuse mutation.
    """
    __tablename__ = "memories"
    
    id = Column(String(36), primary_key=True, default=generate_uuid)
    
    character_id = Column(String(64), nullable=False, index=True)
    persona_id = Column(String(64), nullable=True)  # NULL for imported persona-less memories
    channel_id = Column(String(64), nullable=True)  # Origin channel, used for channel-prioritized retrieval
    
    content = Column(Text, nullable=False)
    embedding = Column(JSON, nullable=True)  # Kept so the vector index can be rebuilt
    embedding_model = Column(String(100), nullable=True)
    
    chunk_group_id = Column(String(36), nullable=True, index=True)
    chunk_index = Column(Integer, nullable=True)
    total_chunks = Column(Integer, nullable=True)
    
    visibility = Column(
        Enum(MemoryVisibility, values_callable=lambda obj: [e.value for e in obj]),
        nullable=False,
        default=MemoryVisibility.NORMAL
    )
    is_locked = Column(Boolean, nullable=False, default=False)
    
    source_turn_id = Column(String(36), nullable=True, index=True)
    meta_data = Column("metadata", JSON, nullable=True)
    
    created_at = Column(DateTime, nullable=False, default=utcnow)
    
    __table_args__ = (
        Index("ix_memories_character_persona", "character_id", "persona_id"),
    )
    
    @property
    def is_chunk(self) -> bool:
        return self.chunk_group_id is not None
    
    def __repr__(self):
        preview = self.content[:50] + "..." if len(self.content) > 50 else self.content
        chunk = f", chunk={self.chunk_index}/{self.total_chunks}" if self.is_chunk else ""
        return f"<Memory(id={self.id}, char={self.character_id}{chunk}, content={preview})>"


class PendingMemoryWrite(Base):
    """
    Durable queue entry for one turn's long-term memory.
    
    Exactly one row per turn (unique ``turn_id``). The row is deleted in the
    same transaction that inserts the resulting memories; failures bump
    ``attempts`` and keep the row. Rows that run out of attempts stay in the
    table with ``exhausted_at`` set for operator review.
    """
    __tablename__ = "pending_memory_writes"
    
    id = Column(String(36), primary_key=True, default=generate_uuid)
    turn_id = Column(String(36), nullable=False, unique=True)
    
    channel_id = Column(String(64), nullable=False)
    character_id = Column(String(64), nullable=False)
    persona_id = Column(String(64), nullable=False)
    
    text = Column(Text, nullable=False)
    meta_data = Column("metadata", JSON, nullable=False, default=dict)
    
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=True, default=None)
    error = Column(Text, nullable=True, default=None)
    
    claimed_by = Column(String(100), nullable=True, default=None)
    claimed_at = Column(DateTime, nullable=True, default=None)
    exhausted_at = Column(DateTime, nullable=True, default=None)
    # Earliest time the row may be claimed again; NULL for never-attempted rows
    next_attempt_at = Column(DateTime, nullable=True, default=None)
    
    created_at = Column(DateTime, nullable=False, default=utcnow)
    
    __table_args__ = (
        Index("ix_pending_created", "created_at"),
        Index("ix_pending_next_attempt", "next_attempt_at"),
    )
    
    def __repr__(self):
        return (
            f"<PendingMemoryWrite(id={self.id}, turn={self.turn_id}, attempts={self.attempts}, "
            f"claimed_by={self.claimed_by})>"
        )
