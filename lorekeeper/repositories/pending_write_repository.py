"""Repository for the pending memory write queue."""

import logging
from datetime import datetime
from typing import List, Optional, Dict, Any, Iterable
from sqlalchemy import or_
from sqlalchemy.orm import Session

from lorekeeper.models.conversation import ConversationTurn
from lorekeeper.models.memory import PendingMemoryWrite
from lorekeeper.utils.clock import utcnow

logger = logging.getLogger(__name__)


class PendingWriteRepository:
    """
    Handle database operations for pending memory writes.
    
    Ownership of a row is expressed in the row itself (``claimed_by`` and
    ``claimed_at``) so that workers in separate processes coordinate
    through the database alone. Every state change after a claim is
    conditioned on the caller still owning the row.
    """
    
    def __init__(self, db: Session):
        self.db = db
    
    def create(
        self,
        turn: ConversationTurn,
        text: str,
        metadata: Optional[Dict[str, Any]] = None,
        commit: bool = True
    ) -> PendingMemoryWrite:
        """
        Enqueue a turn for long-term memory.
        
        Args:
            turn: Source turn (one pending row per turn)
            text: Text to embed
            metadata: Extra metadata copied onto the resulting memories
            commit: Commit immediately; pass False to join the turn's transaction
        """
        pending = PendingMemoryWrite(
            turn_id=turn.id,
            channel_id=turn.channel_id,
            character_id=turn.character_id,
            persona_id=turn.persona_id,
            text=text,
            meta_data=metadata or {}
        )
        self.db.add(pending)
        if commit:
            self.db.commit()
            self.db.refresh(pending)
        else:
            self.db.flush()
        return pending
    
    def get_by_id(self, pending_id: str) -> Optional[PendingMemoryWrite]:
        return self.db.query(PendingMemoryWrite).filter(PendingMemoryWrite.id == pending_id).first()
    
    def get_by_turn(self, turn_id: str) -> Optional[PendingMemoryWrite]:
        return self.db.query(PendingMemoryWrite).filter(PendingMemoryWrite.turn_id == turn_id).first()
    
    def update_text_if_unclaimed(self, turn_id: str, text: str, commit: bool = True) -> bool:
        """
        Replace the text to embed, unless a worker has already claimed the row.
        
        Returns:
            True if the row was updated
        """
        count = (
            self.db.query(PendingMemoryWrite)
            .filter(PendingMemoryWrite.turn_id == turn_id)
            .filter(PendingMemoryWrite.claimed_by.is_(None))
            .update({PendingMemoryWrite.text: text}, synchronize_session=False)
        )
        if commit:
            self.db.commit()
        return count == 1
    
    def list_candidates(
        self,
        now: datetime,
        stale_before: datetime,
        limit: int
    ) -> List[PendingMemoryWrite]:
        """
        Rows that may be claimed at ``now``: not exhausted, past their retry
        backoff, and unclaimed or holding a claim older than ``stale_before``.
        
        Never-attempted rows come first, then retries in the order they
        became due. On dialects that support it rows locked by another
        transaction are skipped; SQLite ignores the lock clause and relies
        on the conditional claim update.
        """
        return (
            self.db.query(PendingMemoryWrite)
            .filter(PendingMemoryWrite.exhausted_at.is_(None))
            .filter(or_(
                PendingMemoryWrite.next_attempt_at.is_(None),
                PendingMemoryWrite.next_attempt_at <= now
            ))
            .filter(or_(
                PendingMemoryWrite.claimed_by.is_(None),
                PendingMemoryWrite.claimed_at < stale_before
            ))
            .order_by(
                PendingMemoryWrite.next_attempt_at.isnot(None),
                PendingMemoryWrite.next_attempt_at.asc(),
                PendingMemoryWrite.created_at.asc()
            )
            .limit(limit)
            .with_for_update(skip_locked=True)
            .all()
        )
    
    def claim(self, pending_id: str, worker_id: str, now: datetime, stale_before: datetime) -> bool:
        """
        Atomically take ownership of a row.
        
        Returns:
            True if this worker now owns the row
        """
        count = (
            self.db.query(PendingMemoryWrite)
            .filter(PendingMemoryWrite.id == pending_id)
            .filter(PendingMemoryWrite.exhausted_at.is_(None))
            .filter(or_(
                PendingMemoryWrite.claimed_by.is_(None),
                PendingMemoryWrite.claimed_at < stale_before
            ))
            .update(
                {
                    PendingMemoryWrite.claimed_by: worker_id,
                    PendingMemoryWrite.claimed_at: now
                },
                synchronize_session=False
            )
        )
        self.db.commit()
        return count == 1
    
    def delete_claimed(self, pending_id: str, worker_id: str) -> int:
        """
        Delete a row only if ``worker_id`` still owns it. Does not commit.
        
        Returns:
            Number of rows deleted (0 means the claim was lost)
        """
        return (
            self.db.query(PendingMemoryWrite)
            .filter(PendingMemoryWrite.id == pending_id)
            .filter(PendingMemoryWrite.claimed_by == worker_id)
            .delete(synchronize_session=False)
        )
    
    def record_failure(
        self,
        pending: PendingMemoryWrite,
        worker_id: str,
        error: str,
        now: datetime,
        attempts: int,
        exhausted: bool,
        next_attempt_at: Optional[datetime] = None
    ) -> bool:
        """
        Record a failed attempt and release the claim.
        
        Args:
            next_attempt_at: When the row becomes claimable again (None for now)
        
        Returns:
            False if the row was gone or owned by someone else
        """
        values = {
            PendingMemoryWrite.attempts: attempts,
            PendingMemoryWrite.last_attempt_at: now,
            PendingMemoryWrite.next_attempt_at: next_attempt_at,
            PendingMemoryWrite.error: error[:2000],
            PendingMemoryWrite.claimed_by: None,
            PendingMemoryWrite.claimed_at: None,
        }
        if exhausted:
            values[PendingMemoryWrite.exhausted_at] = now
        
        count = (
            self.db.query(PendingMemoryWrite)
            .filter(PendingMemoryWrite.id == pending.id)
            .filter(PendingMemoryWrite.claimed_by == worker_id)
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        return count == 1
    
    def delete_for_turn(self, turn_id: str) -> bool:
        """
        Delete a turn's pending row regardless of claim state. Does not commit.
        
        Returns:
            True if a row was deleted (the turn had not been embedded yet)
        """
        count = (
            self.db.query(PendingMemoryWrite)
            .filter(PendingMemoryWrite.turn_id == turn_id)
            .delete(synchronize_session=False)
        )
        return count == 1
    
    def delete_for_turns(self, turn_ids: Iterable[str], commit: bool = True) -> int:
        """Delete pending rows for the given turns regardless of claim state."""
        turn_ids = list(turn_ids)
        if not turn_ids:
            return 0
        count = (
            self.db.query(PendingMemoryWrite)
            .filter(PendingMemoryWrite.turn_id.in_(turn_ids))
            .delete(synchronize_session=False)
        )
        if commit:
            self.db.commit()
        return count
    
    def list_active(self) -> List[PendingMemoryWrite]:
        """Every row that is not exhausted."""
        return (
            self.db.query(PendingMemoryWrite)
            .filter(PendingMemoryWrite.exhausted_at.is_(None))
            .all()
        )
    
    def count_exhausted(self) -> int:
        return (
            self.db.query(PendingMemoryWrite)
            .filter(PendingMemoryWrite.exhausted_at.isnot(None))
            .count()
        )
    
    def list_exhausted(self, limit: int = 100) -> List[PendingMemoryWrite]:
        """Exhausted rows awaiting manual review, oldest failure first."""
        return (
            self.db.query(PendingMemoryWrite)
            .filter(PendingMemoryWrite.exhausted_at.isnot(None))
            .order_by(PendingMemoryWrite.exhausted_at.asc())
            .limit(limit)
            .all()
        )
    
    def requeue(self, pending_id: str) -> bool:
        """
        Reset a row for another round of attempts.
        
        Returns:
            True if the row existed
        """
        count = (
            self.db.query(PendingMemoryWrite)
            .filter(PendingMemoryWrite.id == pending_id)
            .update(
                {
                    PendingMemoryWrite.attempts: 0,
                    PendingMemoryWrite.last_attempt_at: None,
                    PendingMemoryWrite.next_attempt_at: None,
                    PendingMemoryWrite.error: None,
                    PendingMemoryWrite.claimed_by: None,
                    PendingMemoryWrite.claimed_at: None,
                    PendingMemoryWrite.exhausted_at: None,
                },
                synchronize_session=False
            )
        )
        self.db.commit()
        if count:
            logger.info(f"Requeued pending memory write {pending_id}")
        return count == 1
