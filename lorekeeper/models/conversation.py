"""Database models for conversation turns and history tombstones."""

from dataclasses import dataclass
from typing import Optional
from sqlalchemy import Column, String, DateTime, Text, Enum, JSON, Integer, Index
import enum
import uuid

from lorekeeper.db.database import Base
from lorekeeper.utils.clock import utcnow


def generate_uuid():
    """Generate a UUID string."""
    return str(uuid.uuid4())


@dataclass(frozen=True)
class ConversationScope:
    """
    The (channel, character, persona) triple that short-term history and
    tombstones are keyed by.
    """
    channel_id: str
    character_id: str
    persona_id: str
    
    def __str__(self) -> str:
        return f"{self.channel_id}/{self.character_id}/{self.persona_id}"


class TurnRole(str, enum.Enum):
    """Speaker of a conversation turn."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class TombstoneKind(str, enum.Enum):
    """Operation that created a tombstone."""
    CLEAR = "clear"
    HARD_DELETE = "hard_delete"
    RESTORE = "restore"  # undo of a clear


class ConversationTurn(Base):
    """
    One persisted message in a scope's history.
    
    Turns are append-only. Edits set ``edited_at``; undo of an already
    embedded turn sets ``deleted_at``; only hard delete (and undo of a
    not-yet-embedded turn) physically removes rows.
    """
    __tablename__ = "conversation_turns"
    
    id = Column(String(36), primary_key=True, default=generate_uuid)
    channel_id = Column(String(64), nullable=False)
    character_id = Column(String(64), nullable=False)
    persona_id = Column(String(64), nullable=False)
    
    role = Column(Enum(TurnRole, values_callable=lambda obj: [e.value for e in obj]), nullable=False)
    content = Column(Text, nullable=False)
    token_count = Column(Integer, nullable=True)  # Estimated once at write time
    
    # List of {"url", "content_type", "name"} dicts
    attachments = Column(JSON, nullable=True)
    # Transport-layer message ids (one turn may span several delivered messages)
    external_message_refs = Column(JSON, nullable=True)
    
    created_at = Column(DateTime, nullable=False, default=utcnow)
    edited_at = Column(DateTime, nullable=True, default=None)
    deleted_at = Column(DateTime, nullable=True, default=None)  # NULL = visible
    
    __table_args__ = (
        Index("ix_turns_scope_created", "channel_id", "character_id", "persona_id", "created_at"),
        Index("ix_turns_character_persona_created", "character_id", "persona_id", "created_at"),
    )
    
    @property
    def scope(self) -> ConversationScope:
        return ConversationScope(self.channel_id, self.character_id, self.persona_id)
    
    @property
    def image_attachments(self) -> list:
        return [
            a for a in (self.attachments or [])
            if str(a.get("content_type") or "").startswith("image/")
        ]
    
    def __repr__(self):
        preview = self.content[:50] + "..." if len(self.content) > 50 else self.content
        return f"<ConversationTurn(id={self.id}, role={self.role}, content={preview})>"


class HistoryTombstone(Base):
    """
    Visibility boundary for a scope.
    
    Turns created at or before ``deleted_at`` are excluded from context.
    Tombstones are never mutated; the most recently inserted one (by
    ``created_at``) supersedes older ones, so an undo of a clear inserts a
    RESTORE tombstone carrying the earlier boundary. A NULL ``deleted_at``
    means no boundary.
    """
    __tablename__ = "history_tombstones"
    
    id = Column(String(36), primary_key=True, default=generate_uuid)
    channel_id = Column(String(64), nullable=False)
    character_id = Column(String(64), nullable=False)
    persona_id = Column(String(64), nullable=False)
    deleted_at = Column(DateTime, nullable=True)
    kind = Column(String(20), nullable=False, default=TombstoneKind.CLEAR.value)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    
    __table_args__ = (
        Index("ix_tombstones_scope_deleted", "channel_id", "character_id", "persona_id", "deleted_at"),
        Index("ix_tombstones_scope_created", "channel_id", "character_id", "persona_id", "created_at"),
    )
    
    @property
    def scope(self) -> ConversationScope:
        return ConversationScope(self.channel_id, self.character_id, self.persona_id)
    
    def __repr__(self):
        return f"<HistoryTombstone(scope={self.scope}, kind={self.kind}, deleted_at={self.deleted_at})>"
