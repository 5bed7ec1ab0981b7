"""Repository for memory operations."""

from typing import List, Optional, Dict, Iterable
from sqlalchemy.orm import Session

from lorekeeper.models.memory import Memory


class MemoryRepository:
    """Handle database operations for memories."""
    
    def __init__(self, db: Session):
        self.db = db
    
    def add_all(self, memories: List[Memory], commit: bool = True) -> List[Memory]:
        """
        Insert prepared memory rows.
        
        The writeback pipeline passes ``commit=False`` so the insert shares a
        transaction with the pending-row delete.
        """
        self.db.add_all(memories)
        if commit:
            self.db.commit()
        else:
            self.db.flush()
        return memories
    
    def get_by_id(self, memory_id: str) -> Optional[Memory]:
        """
        Get memory by ID.
        
        Args:
            memory_id: Memory ID
        
        Returns:
            Memory or None if not found
        """
        return self.db.query(Memory).filter(Memory.id == memory_id).first()
    
    def get_many(self, memory_ids: Iterable[str]) -> Dict[str, Memory]:
        """Fetch memories by id, keyed by id. Missing ids are simply absent."""
        memory_ids = list(memory_ids)
        if not memory_ids:
            return {}
        rows = self.db.query(Memory).filter(Memory.id.in_(memory_ids)).all()
        return {m.id: m for m in rows}
    
    def list_chunk_groups(self, chunk_group_ids: Iterable[str]) -> Dict[str, List[Memory]]:
        """
        Fetch every sibling of the given chunk groups.
        
        Returns:
            Mapping of group id to its chunks (unordered)
        """
        chunk_group_ids = list(set(chunk_group_ids))
        if not chunk_group_ids:
            return {}
        groups: Dict[str, List[Memory]] = {gid: [] for gid in chunk_group_ids}
        rows = self.db.query(Memory).filter(Memory.chunk_group_id.in_(chunk_group_ids)).all()
        for memory in rows:
            groups[memory.chunk_group_id].append(memory)
        return groups
    
    def list_by_source_turns(self, turn_ids: Iterable[str]) -> List[Memory]:
        """List memories derived from the given turns."""
        turn_ids = list(turn_ids)
        if not turn_ids:
            return []
        return self.db.query(Memory).filter(Memory.source_turn_id.in_(turn_ids)).all()
    
    def list_ids_by_character(self, character_id: str) -> List[str]:
        rows = self.db.query(Memory.id).filter(Memory.character_id == character_id).all()
        return [row[0] for row in rows]
    
    def delete_ids(self, memory_ids: Iterable[str], commit: bool = True) -> int:
        """
        Delete memories by id.
        
        Returns:
            Number of rows removed
        """
        memory_ids = list(memory_ids)
        if not memory_ids:
            return 0
        count = (
            self.db.query(Memory)
            .filter(Memory.id.in_(memory_ids))
            .delete(synchronize_session=False)
        )
        if commit:
            self.db.commit()
        return count
