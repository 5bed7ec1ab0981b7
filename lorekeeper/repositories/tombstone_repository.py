"""Repository for history tombstones."""

from datetime import datetime
from typing import List, Optional
from sqlalchemy.orm import Session

from lorekeeper.models.conversation import ConversationScope, HistoryTombstone, TombstoneKind
from lorekeeper.utils.clock import utcnow


class TombstoneRepository:
    """Handle database operations for history tombstones."""
    
    def __init__(self, db: Session):
        self.db = db
    
    def create(
        self,
        scope: ConversationScope,
        deleted_at: Optional[datetime] = None,
        kind: TombstoneKind = TombstoneKind.CLEAR,
        created_at: Optional[datetime] = None,
        commit: bool = True
    ) -> HistoryTombstone:
        """Insert a new visibility boundary for a scope (``deleted_at`` defaults to now)."""
        now = created_at or utcnow()
        return self._insert(scope, deleted_at or now, kind, now, commit)
    
    def create_restore(
        self,
        scope: ConversationScope,
        boundary: Optional[datetime],
        created_at: Optional[datetime] = None,
        commit: bool = True
    ) -> HistoryTombstone:
        """Insert a tombstone that reinstates an earlier boundary (None for no boundary)."""
        return self._insert(scope, boundary, TombstoneKind.RESTORE, created_at or utcnow(), commit)
    
    def _insert(
        self,
        scope: ConversationScope,
        deleted_at: Optional[datetime],
        kind: TombstoneKind,
        created_at: datetime,
        commit: bool
    ) -> HistoryTombstone:
        tombstone = HistoryTombstone(
            channel_id=scope.channel_id,
            character_id=scope.character_id,
            persona_id=scope.persona_id,
            deleted_at=deleted_at,
            kind=kind.value,
            created_at=created_at
        )
        self.db.add(tombstone)
        if commit:
            self.db.commit()
            self.db.refresh(tombstone)
        else:
            self.db.flush()
        return tombstone
    
    def list_recent(self, scope: ConversationScope, limit: int = 2) -> List[HistoryTombstone]:
        """Most recently inserted tombstones of a scope, newest first."""
        return (
            self.db.query(HistoryTombstone)
            .filter(HistoryTombstone.channel_id == scope.channel_id)
            .filter(HistoryTombstone.character_id == scope.character_id)
            .filter(HistoryTombstone.persona_id == scope.persona_id)
            .order_by(HistoryTombstone.created_at.desc(), HistoryTombstone.id.desc())
            .limit(limit)
            .all()
        )
    
    def latest_boundary(self, scope: ConversationScope) -> Optional[datetime]:
        """
        Boundary of the most recently inserted tombstone for a scope.
        
        Returns:
            Boundary timestamp or None (beginning of time)
        """
        recent = self.list_recent(scope, limit=1)
        return recent[0].deleted_at if recent else None
