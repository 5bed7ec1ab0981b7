"""Administrative operations on stored memories."""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from lorekeeper.db.vector_store import VectorStore
from lorekeeper.models.memory import Memory, MemoryVisibility
from lorekeeper.repositories.memory_repository import MemoryRepository
from lorekeeper.services.embedding_service import Embedder

logger = logging.getLogger(__name__)


class MemoryLockedError(Exception):
    """A mutation was attempted on a locked memory."""
    
    def __init__(self, memory_id: str):
        self.memory_id = memory_id
        super().__init__(f"Memory {memory_id} is locked")


class MemoryNotFoundError(LookupError):
    pass


class MemoryAdminService:
    """
    Visibility, lock, edit and delete operations.
    
    Locked memories stay readable; every mutation except unlocking raises
    MemoryLockedError. Operations on a chunk address the whole group where
    a partial change would break the group (lock, visibility, delete).
    """
    
    def __init__(self, db: Session, vector_store: VectorStore, embedder: Optional[Embedder] = None):
        self.db = db
        self.vector_store = vector_store
        self.embedder = embedder
        self.memory_repo = MemoryRepository(db)
    
    def _load_group(self, memory_id: str) -> List[Memory]:
        memory = self.memory_repo.get_by_id(memory_id)
        if memory is None:
            raise MemoryNotFoundError(memory_id)
        if memory.chunk_group_id:
            return self.memory_repo.list_chunk_groups([memory.chunk_group_id])[memory.chunk_group_id]
        return [memory]
    
    @staticmethod
    def _ensure_unlocked(memories: List[Memory]) -> None:
        for memory in memories:
            if memory.is_locked:
                raise MemoryLockedError(memory.id)
    
    def set_visibility(self, memory_id: str, visibility: MemoryVisibility) -> int:
        """
        Hide or unhide a memory (whole chunk group).
        
        Returns:
            Number of rows updated
        """
        group = self._load_group(memory_id)
        self._ensure_unlocked(group)
        for memory in group:
            memory.visibility = visibility
        self.db.commit()
        logger.info(f"Set visibility={visibility.value} on {len(group)} memory row(s) for {memory_id}")
        return len(group)
    
    def set_locked(self, memory_id: str, locked: bool) -> int:
        """Lock or unlock a memory (whole chunk group). Unlocking is always allowed."""
        group = self._load_group(memory_id)
        for memory in group:
            memory.is_locked = locked
        self.db.commit()
        logger.info(f"Set is_locked={locked} on {len(group)} memory row(s) for {memory_id}")
        return len(group)
    
    def update_content(self, memory_id: str, content: str) -> Memory:
        """
        Replace one memory's text and re-embed it.
        
        The vector is upserted before the row is committed; the index is
        keyed by memory id so a failed commit leaves a vector that the next
        successful update overwrites.
        """
        if self.embedder is None:
            raise RuntimeError("update_content requires an embedder")
        
        memory = self.memory_repo.get_by_id(memory_id)
        if memory is None:
            raise MemoryNotFoundError(memory_id)
        self._ensure_unlocked([memory])
        
        embedding = self.embedder.embed(content)
        self.vector_store.upsert_memories(
            character_id=memory.character_id,
            memory_ids=[memory.id],
            contents=[content],
            embeddings=[embedding],
            metadatas=[vector_metadata(memory)]
        )
        memory.content = content
        memory.embedding = embedding
        memory.embedding_model = getattr(self.embedder, 'model_name', None)
        self.db.commit()
        self.db.refresh(memory)
        return memory
    
    def delete(self, memory_id: str) -> int:
        """
        Delete a memory (whole chunk group) and its vectors.
        
        Returns:
            Number of rows removed
        """
        group = self._load_group(memory_id)
        self._ensure_unlocked(group)
        
        ids = [m.id for m in group]
        character_id = group[0].character_id
        count = self.memory_repo.delete_ids(ids)
        self.vector_store.delete_memories(character_id, ids)
        logger.info(f"Deleted {count} memory row(s) for {memory_id}")
        return count


def vector_metadata(memory: Memory) -> dict:
    """Metadata stored alongside a memory's vector (used for filtering only)."""
    return {
        "memory_id": memory.id,
        "character_id": memory.character_id,
        "persona_id": memory.persona_id,
        "channel_id": memory.channel_id,
        "chunk_group_id": memory.chunk_group_id,
        "chunk_index": memory.chunk_index,
        "source_turn_id": memory.source_turn_id,
    }
