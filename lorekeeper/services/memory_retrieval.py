"""
Memory Retrieval Service

Semantic search over long-term memories, gated by resolved settings.

- ``memoryLimit == 0``, focus mode, or a blank query skip retrieval
  entirely (no embedding call, no vector query)
- similarity is cosine similarity; results below the resolved threshold
  are dropped
- hidden memories and vector hits without a memory row are ignored
- chunk groups collapse to one result whose content is the whole group
  reassembled in chunk order
- any read failure degrades to "no memories"
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from sqlalchemy.orm import Session

from lorekeeper.db.vector_store import VectorStore
from lorekeeper.models.conversation import ConversationScope
from lorekeeper.models.memory import Memory, MemoryVisibility
from lorekeeper.repositories.memory_repository import MemoryRepository
from lorekeeper.services.config_cascade import ResolvedSettings
from lorekeeper.services.embedding_service import Embedder
from lorekeeper.services.text_chunking import reassemble_chunks, sort_chunks_by_index

logger = logging.getLogger(__name__)


@dataclass
class RetrievedMemory:
    """A memory (or reassembled chunk group) with retrieval metadata."""
    memory_id: str
    content: str
    similarity: float
    character_id: str
    persona_id: Optional[str]
    channel_id: Optional[str]
    created_at: Optional[datetime]
    chunk_group_id: Optional[str] = None
    chunk_ids: List[str] = field(default_factory=list)
    is_locked: bool = False
    
    @property
    def result_key(self) -> str:
        return self.chunk_group_id or self.memory_id


@dataclass
class RetrievalResult:
    """Outcome of one retrieval call."""
    memories: List[RetrievedMemory] = field(default_factory=list)
    degraded: bool = False
    skipped: Optional[str] = None  # Reason retrieval did not run


def _where(conditions: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Build a Chroma where clause (multiple keys need an explicit $and)."""
    if not conditions:
        return None
    if len(conditions) == 1:
        return dict(conditions)
    return {"$and": [{key: value} for key, value in conditions.items()]}


class MemoryRetrievalService:
    """
    Retrieves relevant memories for a scope.
    
    The vector index only proposes candidates; every candidate is checked
    against the memories table, which decides visibility and scope.
    """
    
    def __init__(
        self,
        db: Session,
        vector_store: VectorStore,
        embedder: Embedder,
        candidate_multiplier: int = 3,
        channel_budget_ratio: float = 0.0
    ):
        """
        Initialize memory retrieval service.
        
        Args:
            db: Database session
            vector_store: Vector index for semantic search
            embedder: Embedder for query encoding
            candidate_multiplier: Vector candidates fetched per requested memory
            channel_budget_ratio: Share of the limit filled from the current channel first
        """
        self.db = db
        self.vector_store = vector_store
        self.embedder = embedder
        self.memory_repo = MemoryRepository(db)
        self.candidate_multiplier = max(1, candidate_multiplier)
        self.channel_budget_ratio = channel_budget_ratio
    
    def retrieve(
        self,
        settings: ResolvedSettings,
        scope: ConversationScope,
        query: str
    ) -> RetrievalResult:
        """
        Retrieve memories for a query.
        
        Args:
            settings: Resolved settings (limit, threshold, focus, sharing)
            scope: Conversation scope; its channel drives channel priority
            query: Text to search for
        
        Returns:
            RetrievalResult ordered by similarity (highest first)
        """
        limit = settings.memory_limit
        if limit <= 0:
            return RetrievalResult(skipped="memory_limit_zero")
        if settings.focus_mode_enabled:
            return RetrievalResult(skipped="focus_mode")
        if not query or not query.strip():
            return RetrievalResult(skipped="empty_query")
        
        try:
            query_embedding = self.embedder.embed(query)
        except Exception as e:
            logger.warning(f"Query embedding failed, continuing without memories: {e}", exc_info=True)
            return RetrievalResult(degraded=True)
        
        persona_id = None if settings.share_ltm_across_personalities else scope.persona_id
        
        try:
            memories = self._retrieve_with_channel_priority(
                query_embedding,
                scope,
                persona_id,
                limit,
                settings.memory_score_threshold
            )
        except Exception as e:
            logger.warning(f"Memory retrieval failed, continuing without memories: {e}", exc_info=True)
            self.db.rollback()
            return RetrievalResult(degraded=True)
        
        logger.info(
            f"Retrieved {len(memories)} memories for {scope} "
            f"(limit={limit}, threshold={settings.memory_score_threshold})"
        )
        return RetrievalResult(memories=memories)
    
    def _retrieve_with_channel_priority(
        self,
        query_embedding: List[float],
        scope: ConversationScope,
        persona_id: Optional[str],
        limit: int,
        threshold: float
    ) -> List[RetrievedMemory]:
        base_filter = {"persona_id": persona_id} if persona_id is not None else {}
        
        if self.channel_budget_ratio <= 0 or not scope.channel_id:
            return self._search(
                query_embedding, scope.character_id, persona_id, base_filter, limit, threshold, set()
            )
        
        channel_budget = max(1, math.floor(limit * self.channel_budget_ratio))
        channel_results = self._search(
            query_embedding,
            scope.character_id,
            persona_id,
            {**base_filter, "channel_id": scope.channel_id},
            channel_budget,
            threshold,
            set()
        )
        
        remaining = limit - len(channel_results)
        if remaining <= 0:
            return channel_results
        
        taken = {r.result_key for r in channel_results}
        global_results = self._search(
            query_embedding, scope.character_id, persona_id, base_filter, remaining, threshold, taken
        )
        
        logger.debug(
            f"Channel-prioritized retrieval: {len(channel_results)} from channel "
            f"{scope.channel_id}, {len(global_results)} global"
        )
        combined = channel_results + global_results
        combined.sort(key=lambda r: r.similarity, reverse=True)
        return combined
    
    def _search(
        self,
        query_embedding: List[float],
        character_id: str,
        persona_id: Optional[str],
        conditions: Dict[str, Any],
        limit: int,
        threshold: float,
        exclude_keys: Set[str]
    ) -> List[RetrievedMemory]:
        n_results = limit * self.candidate_multiplier + len(exclude_keys)
        results = self.vector_store.query_memories(
            character_id=character_id,
            query_embedding=query_embedding,
            n_results=n_results,
            where=_where(conditions)
        )
        
        ids = results['ids'][0] if results.get('ids') else []
        distances = results['distances'][0] if results.get('distances') else []
        if not ids:
            return []
        
        similarities = {}
        for vector_id, distance in zip(ids, distances):
            similarity = 1.0 - float(distance)
            if similarity >= threshold:
                similarities[vector_id] = similarity
        
        rows = self.memory_repo.get_many(similarities.keys())
        
        best: Dict[str, RetrievedMemory] = {}
        for vector_id in ids:
            if vector_id not in similarities:
                continue
            memory = rows.get(vector_id)
            if memory is None:
                logger.debug(f"Ignoring orphaned vector {vector_id}")
                continue
            if not self._visible_in_scope(memory, character_id, persona_id):
                continue
            
            key = memory.chunk_group_id or memory.id
            if key in exclude_keys:
                continue
            
            similarity = similarities[vector_id]
            current = best.get(key)
            if current is None or similarity > current.similarity:
                best[key] = self._to_result(memory, similarity)
        
        ranked = sorted(best.values(), key=lambda r: r.similarity, reverse=True)[:limit]
        self._expand_chunk_groups(ranked)
        return ranked
    
    @staticmethod
    def _visible_in_scope(memory: Memory, character_id: str, persona_id: Optional[str]) -> bool:
        if memory.visibility == MemoryVisibility.HIDDEN:
            return False
        if memory.character_id != character_id:
            return False
        if persona_id is not None and memory.persona_id != persona_id:
            return False
        return True
    
    @staticmethod
    def _to_result(memory: Memory, similarity: float) -> RetrievedMemory:
        return RetrievedMemory(
            memory_id=memory.id,
            content=memory.content,
            similarity=similarity,
            character_id=memory.character_id,
            persona_id=memory.persona_id,
            channel_id=memory.channel_id,
            created_at=memory.created_at,
            chunk_group_id=memory.chunk_group_id,
            chunk_ids=[memory.id],
            is_locked=bool(memory.is_locked)
        )
    
    def _expand_chunk_groups(self, results: List[RetrievedMemory]) -> None:
        """Replace chunk results' content with their whole group, in index order."""
        group_ids = [r.chunk_group_id for r in results if r.chunk_group_id]
        if not group_ids:
            return
        
        groups = self.memory_repo.list_chunk_groups(group_ids)
        for result in results:
            if not result.chunk_group_id:
                continue
            siblings = sort_chunks_by_index(groups.get(result.chunk_group_id, []))
            if not siblings:
                continue
            expected = siblings[0].total_chunks
            if expected and len(siblings) != expected:
                logger.warning(
                    f"Chunk group {result.chunk_group_id} has {len(siblings)} of {expected} chunks"
                )
            result.content = reassemble_chunks([m.content for m in siblings])
            result.chunk_ids = [m.id for m in siblings]
            result.is_locked = any(m.is_locked for m in siblings)
            result.created_at = siblings[0].created_at
