"""Repository for conversation turn operations."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Dict, Any, Iterable
from sqlalchemy import String, and_, cast, func, or_
from sqlalchemy.orm import Session

from lorekeeper.models.conversation import (
    ConversationScope, ConversationTurn, HistoryTombstone, TurnRole
)
from lorekeeper.utils.clock import utcnow

logger = logging.getLogger(__name__)

# Rough estimate used for budgeting; exact counts are the generator's concern
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Estimate token count from character length."""
    if not text:
        return 0
    return max(1, (len(text) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN)


@dataclass
class HistoryStats:
    """Counts for a scope's history."""
    total_messages: int
    user_messages: int
    assistant_messages: int
    oldest_at: Optional[datetime]
    newest_at: Optional[datetime]


class TurnRepository:
    """Handle database operations for conversation turns."""
    
    def __init__(self, db: Session):
        self.db = db
    
    def _scope_filter(self, scope: ConversationScope):
        return and_(
            ConversationTurn.channel_id == scope.channel_id,
            ConversationTurn.character_id == scope.character_id,
            ConversationTurn.persona_id == scope.persona_id,
        )
    
    def create(
        self,
        scope: ConversationScope,
        role: TurnRole,
        content: str,
        attachments: Optional[List[Dict[str, Any]]] = None,
        external_refs: Optional[List[str]] = None,
        created_at: Optional[datetime] = None,
        commit: bool = True
    ) -> ConversationTurn:
        """
        Create a new turn.
        
        Args:
            scope: Channel/character/persona the turn belongs to
            role: Speaker role
            content: Message text
            attachments: Optional list of {url, content_type, name}
            external_refs: Transport message ids for this turn
            created_at: Explicit timestamp (defaults to now)
            commit: Commit immediately; pass False to join a larger transaction
        
        Returns:
            Created turn
        """
        turn = ConversationTurn(
            channel_id=scope.channel_id,
            character_id=scope.character_id,
            persona_id=scope.persona_id,
            role=role,
            content=content,
            token_count=estimate_tokens(content),
            attachments=list(attachments) if attachments else None,
            external_message_refs=list(external_refs) if external_refs else None,
            created_at=created_at or utcnow()
        )
        self.db.add(turn)
        if commit:
            self.db.commit()
            self.db.refresh(turn)
        else:
            self.db.flush()
        return turn
    
    def get_by_id(self, turn_id: str) -> Optional[ConversationTurn]:
        """Get turn by ID (including soft-deleted turns)."""
        return self.db.query(ConversationTurn).filter(ConversationTurn.id == turn_id).first()
    
    def find_by_external_ref(
        self,
        external_ref: str,
        scope: Optional[ConversationScope] = None
    ) -> Optional[ConversationTurn]:
        """
        Find the turn whose external message refs contain ``external_ref``.
        
        The JSON column is pre-filtered with a text match, then checked
        exactly so that one id being a substring of another cannot match.
        """
        query = self.db.query(ConversationTurn).filter(
            cast(ConversationTurn.external_message_refs, String).like(f'%"{external_ref}"%')
        )
        if scope is not None:
            query = query.filter(self._scope_filter(scope))
        
        for turn in query.order_by(ConversationTurn.created_at.desc()).all():
            if external_ref in (turn.external_message_refs or []):
                return turn
        return None
    
    def edit(self, turn_id: str, content: str, edited_at: Optional[datetime] = None) -> Optional[ConversationTurn]:
        """
        Replace a turn's content and stamp ``edited_at``.
        
        Returns:
            Updated turn or None if not found or soft-deleted
        """
        turn = self.get_by_id(turn_id)
        if not turn or turn.deleted_at is not None:
            return None
        
        turn.content = content
        turn.token_count = estimate_tokens(content)
        turn.edited_at = edited_at or utcnow()
        self.db.commit()
        self.db.refresh(turn)
        return turn
    
    def list_visible(
        self,
        scope: ConversationScope,
        after: Optional[datetime] = None,
        limit: int = 50,
        since: Optional[datetime] = None
    ) -> List[ConversationTurn]:
        """
        List the most recent visible turns of a scope.
        
        Args:
            scope: Conversation scope
            after: Exclusive lower bound (tombstone boundary)
            limit: Maximum number of turns
            since: Inclusive lower bound from the age window
        
        Returns:
            Turns ordered oldest first
        """
        if limit <= 0:
            return []
        
        query = (
            self.db.query(ConversationTurn)
            .filter(self._scope_filter(scope))
            .filter(ConversationTurn.deleted_at.is_(None))
        )
        if after is not None:
            query = query.filter(ConversationTurn.created_at > after)
        if since is not None:
            query = query.filter(ConversationTurn.created_at >= since)
        
        # Most recent N by ordering DESC, limiting, then reversing
        turns = (
            query.order_by(ConversationTurn.created_at.desc(), ConversationTurn.id.desc())
            .limit(limit)
            .all()
        )
        return list(reversed(turns))
    
    def list_cross_channel(
        self,
        character_id: str,
        persona_id: str,
        exclude_channel_id: str,
        limit: int,
        since: Optional[datetime] = None
    ) -> List[ConversationTurn]:
        """
        List recent visible turns for a character/persona in other channels.
        
        Each channel's own latest tombstone is respected.
        
        Returns:
            Turns ordered oldest first
        """
        if limit <= 0:
            return []
        
        ranked = (
            self.db.query(
                HistoryTombstone.channel_id.label("channel_id"),
                HistoryTombstone.deleted_at.label("boundary"),
                func.row_number().over(
                    partition_by=HistoryTombstone.channel_id,
                    order_by=(HistoryTombstone.created_at.desc(), HistoryTombstone.id.desc())
                ).label("rank")
            )
            .filter(HistoryTombstone.character_id == character_id)
            .filter(HistoryTombstone.persona_id == persona_id)
            .subquery()
        )
        # Newest inserted tombstone per channel
        boundaries = (
            self.db.query(ranked.c.channel_id, ranked.c.boundary)
            .filter(ranked.c.rank == 1)
            .subquery()
        )
        
        query = (
            self.db.query(ConversationTurn)
            .outerjoin(boundaries, boundaries.c.channel_id == ConversationTurn.channel_id)
            .filter(ConversationTurn.character_id == character_id)
            .filter(ConversationTurn.persona_id == persona_id)
            .filter(ConversationTurn.channel_id != exclude_channel_id)
            .filter(ConversationTurn.deleted_at.is_(None))
            .filter(or_(
                boundaries.c.boundary.is_(None),
                ConversationTurn.created_at > boundaries.c.boundary
            ))
        )
        if since is not None:
            query = query.filter(ConversationTurn.created_at >= since)
        
        turns = (
            query.order_by(ConversationTurn.created_at.desc(), ConversationTurn.id.desc())
            .limit(limit)
            .all()
        )
        return list(reversed(turns))
    
    def list_latest(self, scope: ConversationScope, after: Optional[datetime], count: int) -> List[ConversationTurn]:
        """Newest ``count`` visible turns after the boundary, newest first."""
        query = (
            self.db.query(ConversationTurn)
            .filter(self._scope_filter(scope))
            .filter(ConversationTurn.deleted_at.is_(None))
        )
        if after is not None:
            query = query.filter(ConversationTurn.created_at > after)
        return (
            query.order_by(ConversationTurn.created_at.desc(), ConversationTurn.id.desc())
            .limit(count)
            .all()
        )
    
    def list_ids_in_channel(
        self,
        channel_id: str,
        character_id: str,
        persona_id: Optional[str] = None
    ) -> List[str]:
        """
        List turn ids in a channel for a character.
        
        ``persona_id=None`` matches every persona.
        """
        query = (
            self.db.query(ConversationTurn.id)
            .filter(ConversationTurn.channel_id == channel_id)
            .filter(ConversationTurn.character_id == character_id)
        )
        if persona_id is not None:
            query = query.filter(ConversationTurn.persona_id == persona_id)
        return [row[0] for row in query.all()]
    
    def list_personas_in_channel(self, channel_id: str, character_id: str) -> List[str]:
        """Distinct persona ids with turns in a channel for a character."""
        rows = (
            self.db.query(ConversationTurn.persona_id)
            .filter(ConversationTurn.channel_id == channel_id)
            .filter(ConversationTurn.character_id == character_id)
            .distinct()
            .all()
        )
        return [row[0] for row in rows]
    
    def soft_delete(self, turn_ids: Iterable[str], deleted_at: Optional[datetime] = None, commit: bool = True) -> int:
        """
        Mark turns as deleted.
        
        Returns:
            Number of turns newly marked
        """
        turn_ids = list(turn_ids)
        if not turn_ids:
            return 0
        count = (
            self.db.query(ConversationTurn)
            .filter(ConversationTurn.id.in_(turn_ids))
            .filter(ConversationTurn.deleted_at.is_(None))
            .update({ConversationTurn.deleted_at: deleted_at or utcnow()}, synchronize_session=False)
        )
        if commit:
            self.db.commit()
        return count
    
    def hard_delete(self, turn_ids: Iterable[str], commit: bool = True) -> int:
        """
        Physically delete turns.
        
        Returns:
            Number of rows removed
        """
        turn_ids = list(turn_ids)
        if not turn_ids:
            return 0
        count = (
            self.db.query(ConversationTurn)
            .filter(ConversationTurn.id.in_(turn_ids))
            .delete(synchronize_session=False)
        )
        if commit:
            self.db.commit()
        return count
    
    def list_ids_created_before(self, cutoff: datetime) -> List[str]:
        """Ids of turns created before ``cutoff`` (retention cleanup)."""
        rows = self.db.query(ConversationTurn.id).filter(ConversationTurn.created_at < cutoff).all()
        return [row[0] for row in rows]
    
    def stats(
        self,
        scope: ConversationScope,
        after: Optional[datetime] = None,
        visible_only: bool = True
    ) -> HistoryStats:
        """
        Count a scope's turns by role.
        
        Args:
            scope: Conversation scope
            after: Tombstone boundary (only applied when visible_only)
            visible_only: Exclude soft-deleted and tombstoned turns
        """
        query = self.db.query(
            ConversationTurn.role,
            func.count(ConversationTurn.id),
            func.min(ConversationTurn.created_at),
            func.max(ConversationTurn.created_at)
        ).filter(self._scope_filter(scope))
        
        if visible_only:
            query = query.filter(ConversationTurn.deleted_at.is_(None))
            if after is not None:
                query = query.filter(ConversationTurn.created_at > after)
        
        by_role = {}
        oldest = None
        newest = None
        for role, count, first, last in query.group_by(ConversationTurn.role).all():
            by_role[role] = count
            if first is not None and (oldest is None or first < oldest):
                oldest = first
            if last is not None and (newest is None or last > newest):
                newest = last
        
        return HistoryStats(
            total_messages=sum(by_role.values()),
            user_messages=by_role.get(TurnRole.USER, 0),
            assistant_messages=by_role.get(TurnRole.ASSISTANT, 0),
            oldest_at=oldest,
            newest_at=newest
        )
