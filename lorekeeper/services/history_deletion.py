"""Clear, undo and hard-delete operations on conversation history."""

import logging
from dataclasses import dataclass, asdict
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from lorekeeper.db.vector_store import VectorStore
from lorekeeper.models.conversation import ConversationScope, TombstoneKind
from lorekeeper.models.memory import Memory
from lorekeeper.repositories.memory_repository import MemoryRepository
from lorekeeper.repositories.pending_write_repository import PendingWriteRepository
from lorekeeper.repositories.tombstone_repository import TombstoneRepository
from lorekeeper.repositories.turn_repository import TurnRepository
from lorekeeper.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    """Row counts affected by a history operation."""
    turns_deleted: int = 0
    turns_soft_deleted: int = 0
    pending_deleted: int = 0
    tombstones_created: int = 0
    memories_deleted: int = 0
    memories_skipped_locked: int = 0
    
    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class HistoryDeletionService:
    """
    History removal for moderation and user tooling.
    
    - clear: new tombstone; nothing is deleted
    - undo_clear: reinstate the boundary that was current before the
      latest clear (single level)
    - undo: newest turns are removed; a turn whose memory has not been
      written yet is deleted outright together with its pending write,
      otherwise it is only marked deleted and its memory stays
    - hard_delete: turns are physically removed and a tombstone covers
      the scope; derived memories are kept unless ``purge_memories``
    """
    
    def __init__(self, db: Session, vector_store: Optional[VectorStore] = None, clock: Clock = utcnow):
        self.db = db
        self.vector_store = vector_store
        self.clock = clock
        self.turn_repo = TurnRepository(db)
        self.tombstone_repo = TombstoneRepository(db)
        self.pending_repo = PendingWriteRepository(db)
        self.memory_repo = MemoryRepository(db)
    
    def clear(self, scope: ConversationScope) -> OperationResult:
        """Hide all current history of a scope from context assembly."""
        now = self.clock()
        self.tombstone_repo.create(scope, deleted_at=now, created_at=now)
        logger.info(f"Cleared history for {scope}")
        return OperationResult(tombstones_created=1)
    
    def undo_clear(self, scope: ConversationScope) -> OperationResult:
        """
        Make history hidden by the latest clear visible again.
        
        Only a clear can be undone, and only once: when the newest
        tombstone is not a clear nothing happens. The earlier boundary is
        reinstated with a new RESTORE tombstone, or no boundary at all when
        the clear was the first one.
        """
        recent = self.tombstone_repo.list_recent(scope, limit=2)
        if not recent or recent[0].kind != TombstoneKind.CLEAR.value:
            logger.info(f"No clear to undo in {scope}")
            return OperationResult()
        
        previous = recent[1].deleted_at if len(recent) > 1 else None
        self.tombstone_repo.create_restore(scope, previous, created_at=self.clock())
        logger.info(f"Undid clear of {scope}, boundary restored to {previous}")
        return OperationResult(tombstones_created=1)
    
    def undo(self, scope: ConversationScope, count: int = 1) -> OperationResult:
        """
        Remove the newest ``count`` visible turns of a scope.
        
        Turns still waiting for their memory write are deleted along with
        the pending row. A worker already processing such a row then fails
        its ownership check at commit and writes nothing. Whether a turn
        was still waiting is decided by the pending-row delete itself, in
        the same transaction, so a memory committed just before that
        delete keeps its turn (marked deleted).
        """
        if count <= 0:
            return OperationResult()
        
        boundary = self.tombstone_repo.latest_boundary(scope)
        turns = self.turn_repo.list_latest(scope, after=boundary, count=count)
        if not turns:
            return OperationResult()
        
        unembedded: List[str] = []
        embedded: List[str] = []
        try:
            for turn in turns:
                if self.pending_repo.delete_for_turn(turn.id):
                    unembedded.append(turn.id)
                else:
                    embedded.append(turn.id)
            pending_deleted = len(unembedded)
            turns_deleted = self.turn_repo.hard_delete(unembedded, commit=False)
            soft_deleted = self.turn_repo.soft_delete(embedded, deleted_at=self.clock(), commit=False)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        
        logger.info(
            f"Undo in {scope}: {turns_deleted} turn(s) removed before memory write, "
            f"{soft_deleted} turn(s) marked deleted"
        )
        return OperationResult(
            turns_deleted=turns_deleted,
            turns_soft_deleted=soft_deleted,
            pending_deleted=pending_deleted
        )
    
    def hard_delete(
        self,
        scope: ConversationScope,
        all_personas: bool = False,
        purge_memories: bool = False
    ) -> OperationResult:
        """
        Physically delete a scope's turns.
        
        Args:
            scope: Channel, character and persona to delete
            all_personas: Delete every persona's turns in the channel for the character
            purge_memories: Also delete unlocked memories derived from the deleted turns
        
        Returns:
            OperationResult with row counts
        """
        persona_filter = None if all_personas else scope.persona_id
        personas = {scope.persona_id}
        if all_personas:
            personas.update(self.turn_repo.list_personas_in_channel(scope.channel_id, scope.character_id))
        
        turn_ids = self.turn_repo.list_ids_in_channel(scope.channel_id, scope.character_id, persona_filter)
        
        to_purge: List[Memory] = []
        skipped_locked = 0
        if purge_memories and turn_ids:
            to_purge, skipped_locked = self._purgeable_memories(turn_ids)
        
        now = self.clock()
        try:
            pending_deleted = self.pending_repo.delete_for_turns(turn_ids, commit=False)
            turns_deleted = self.turn_repo.hard_delete(turn_ids, commit=False)
            for persona_id in sorted(personas):
                self.tombstone_repo.create(
                    ConversationScope(scope.channel_id, scope.character_id, persona_id),
                    deleted_at=now,
                    kind=TombstoneKind.HARD_DELETE,
                    created_at=now,
                    commit=False
                )
            memories_deleted = self.memory_repo.delete_ids([m.id for m in to_purge], commit=False)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        
        if to_purge and self.vector_store is not None:
            by_character: Dict[str, List[str]] = {}
            for memory in to_purge:
                by_character.setdefault(memory.character_id, []).append(memory.id)
            for character_id, ids in by_character.items():
                # Leftover vectors are ignored at retrieval and removed by reconciliation
                self.vector_store.delete_memories(character_id, ids)
        
        logger.info(
            f"Hard delete in {scope} (all_personas={all_personas}): {turns_deleted} turn(s), "
            f"{pending_deleted} pending write(s), {memories_deleted} memory row(s) removed, "
            f"{skipped_locked} locked memory row(s) kept"
        )
        return OperationResult(
            turns_deleted=turns_deleted,
            pending_deleted=pending_deleted,
            tombstones_created=len(personas),
            memories_deleted=memories_deleted,
            memories_skipped_locked=skipped_locked
        )
    
    def _purgeable_memories(self, turn_ids: List[str]):
        """
        Memories derived from the turns, expanded to whole chunk groups.
        
        A group with any locked chunk is kept entirely.
        
        Returns:
            (memories to delete, number of locked rows kept)
        """
        direct = self.memory_repo.list_by_source_turns(turn_ids)
        groups = self.memory_repo.list_chunk_groups(m.chunk_group_id for m in direct if m.chunk_group_id)
        
        units: List[List[Memory]] = [members for members in groups.values() if members]
        units.extend([m] for m in direct if not m.chunk_group_id)
        
        purge: List[Memory] = []
        skipped = 0
        for unit in units:
            if any(m.is_locked for m in unit):
                skipped += len(unit)
            else:
                purge.extend(unit)
        return purge, skipped
    
    def purge_turns_older_than(self, days: int) -> int:
        """
        Retention cleanup: physically delete turns older than ``days``.
        
        Pending writes of those turns are dropped with them.
        
        Returns:
            Number of turns removed
        """
        if days <= 0:
            raise ValueError("days must be positive")
        cutoff = self.clock() - timedelta(days=days)
        
        old_ids = self.turn_repo.list_ids_created_before(cutoff)
        if not old_ids:
            return 0
        try:
            self.pending_repo.delete_for_turns(old_ids, commit=False)
            count = self.turn_repo.hard_delete(old_ids, commit=False)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        
        logger.info(f"Retention cleanup removed {count} turn(s) older than {days} day(s)")
        return count
