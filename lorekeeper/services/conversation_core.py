"""
Conversation core.

Single entry point used by transports and the generation layer: records
turns (and enqueues their memory writes), resolves settings, assembles
context, and exposes the history removal operations.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from lorekeeper.config.models import SystemConfig
from lorekeeper.db.database import SessionFactory
from lorekeeper.db.vector_store import VectorStore
from lorekeeper.models.conversation import ConversationScope, ConversationTurn, TurnRole
from lorekeeper.repositories.pending_write_repository import PendingWriteRepository
from lorekeeper.repositories.tombstone_repository import TombstoneRepository
from lorekeeper.repositories.turn_repository import HistoryStats, TurnRepository
from lorekeeper.services.config_cascade import ConfigCascadeResolver, ResolvedSettings
from lorekeeper.services.context_assembler import AssembledContext, ContextAssembler
from lorekeeper.services.embedding_service import Embedder
from lorekeeper.services.history_deletion import HistoryDeletionService, OperationResult
from lorekeeper.services.memory_retrieval import MemoryRetrievalService
from lorekeeper.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


def memory_text_for(role: TurnRole, content: str) -> str:
    """Text stored as long-term memory for a turn, with its speaker marker."""
    if role in (TurnRole.USER, TurnRole.ASSISTANT):
        return f"{{{role.value}}}: {content}"
    return content


class ConversationCore:
    """Facade over history, settings, retrieval and deletion."""
    
    def __init__(
        self,
        session_factory: SessionFactory,
        vector_store: VectorStore,
        embedder: Embedder,
        resolver: ConfigCascadeResolver,
        candidate_multiplier: int = 3,
        channel_budget_ratio: float = 0.0,
        on_enqueued: Optional[Callable[[], None]] = None,
        clock: Clock = utcnow
    ):
        self.session_factory = session_factory
        self.vector_store = vector_store
        self.embedder = embedder
        self.resolver = resolver
        self.candidate_multiplier = candidate_multiplier
        self.channel_budget_ratio = channel_budget_ratio
        self.on_enqueued = on_enqueued
        self.clock = clock
    
    @classmethod
    def from_config(
        cls,
        config: SystemConfig,
        session_factory: SessionFactory,
        vector_store: VectorStore,
        embedder: Embedder,
        resolver: ConfigCascadeResolver,
        on_enqueued: Optional[Callable[[], None]] = None
    ) -> "ConversationCore":
        return cls(
            session_factory=session_factory,
            vector_store=vector_store,
            embedder=embedder,
            resolver=resolver,
            candidate_multiplier=config.vector_store.candidate_multiplier,
            channel_budget_ratio=config.context.channel_budget_ratio,
            on_enqueued=on_enqueued
        )
    
    def record_turn(
        self,
        scope: ConversationScope,
        role: TurnRole,
        content: str,
        attachments: Optional[List[Dict[str, Any]]] = None,
        external_refs: Optional[List[str]] = None,
        remember: bool = True
    ) -> ConversationTurn:
        """
        Persist a completed turn and, when ``remember``, enqueue its memory write.
        
        Both rows are committed in one transaction, so a turn that should
        become a memory can never be stored without its pending write.
        """
        db = self.session_factory()
        try:
            turn = TurnRepository(db).create(
                scope,
                role,
                content,
                attachments=attachments,
                external_refs=external_refs,
                created_at=self.clock(),
                commit=False
            )
            if remember and content.strip():
                PendingWriteRepository(db).create(
                    turn,
                    memory_text_for(role, content),
                    metadata={"role": role.value},
                    commit=False
                )
            db.commit()
            db.refresh(turn)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        
        logger.debug(f"Recorded {role.value} turn {turn.id} in {scope} (remember={remember})")
        if remember and self.on_enqueued:
            self.on_enqueued()
        return turn
    
    def resolve(self, user_id: Optional[str], character_id: Optional[str]) -> ResolvedSettings:
        return self.resolver.resolve(user_id, character_id)
    
    def assemble_context(
        self,
        scope: ConversationScope,
        user_id: Optional[str] = None,
        query: Optional[str] = None
    ) -> AssembledContext:
        """
        Build the generation context for a scope.
        
        Args:
            scope: Conversation scope
            user_id: Account whose settings apply (None for anonymous)
            query: Text used for memory search (usually the new user message)
        """
        settings = self.resolve(user_id, scope.character_id)
        
        db = self.session_factory()
        try:
            window = ContextAssembler(db, clock=self.clock).assemble(settings, scope)
            retrieval = MemoryRetrievalService(
                db,
                self.vector_store,
                self.embedder,
                candidate_multiplier=self.candidate_multiplier,
                channel_budget_ratio=self.channel_budget_ratio
            ).retrieve(settings, scope, query or "")
        finally:
            db.close()
        
        return AssembledContext(
            turns=window.turns,
            images=window.images,
            cross_channel_turns=window.cross_channel_turns,
            memories=retrieval.memories,
            settings=settings,
            degraded=window.degraded or retrieval.degraded
        )
    
    def get_turn(self, turn_id: str) -> Optional[ConversationTurn]:
        db = self.session_factory()
        try:
            return TurnRepository(db).get_by_id(turn_id)
        finally:
            db.close()
    
    def find_by_external_ref(
        self,
        external_ref: str,
        scope: Optional[ConversationScope] = None
    ) -> Optional[ConversationTurn]:
        db = self.session_factory()
        try:
            return TurnRepository(db).find_by_external_ref(external_ref, scope)
        finally:
            db.close()
    
    def edit_turn(self, turn_id: str, content: str) -> Optional[ConversationTurn]:
        """
        Edit a turn's text.
        
        A memory write that has not run yet picks up the new text; memories
        already formed keep the original.
        """
        db = self.session_factory()
        try:
            turn = TurnRepository(db).edit(turn_id, content, edited_at=self.clock())
            if turn is not None:
                updated = PendingWriteRepository(db).update_text_if_unclaimed(
                    turn_id, memory_text_for(turn.role, content)
                )
                if not updated:
                    logger.debug(f"Turn {turn_id} edited after its memory write was claimed or done")
            return turn
        finally:
            db.close()
    
    def history_stats(self, scope: ConversationScope, visible_only: bool = True) -> HistoryStats:
        db = self.session_factory()
        try:
            boundary = TombstoneRepository(db).latest_boundary(scope)
            return TurnRepository(db).stats(scope, after=boundary, visible_only=visible_only)
        finally:
            db.close()
    
    def latest_tombstone(self, scope: ConversationScope):
        db = self.session_factory()
        try:
            return TombstoneRepository(db).latest_boundary(scope)
        finally:
            db.close()
    
    def _deletion(self, db) -> HistoryDeletionService:
        return HistoryDeletionService(db, vector_store=self.vector_store, clock=self.clock)
    
    def clear(self, scope: ConversationScope) -> OperationResult:
        db = self.session_factory()
        try:
            return self._deletion(db).clear(scope)
        finally:
            db.close()
    
    def undo(self, scope: ConversationScope, count: int = 1) -> OperationResult:
        db = self.session_factory()
        try:
            return self._deletion(db).undo(scope, count)
        finally:
            db.close()
    
    def undo_clear(self, scope: ConversationScope) -> OperationResult:
        db = self.session_factory()
        try:
            return self._deletion(db).undo_clear(scope)
        finally:
            db.close()
    
    def hard_delete(
        self,
        scope: ConversationScope,
        all_personas: bool = False,
        purge_memories: bool = False
    ) -> OperationResult:
        db = self.session_factory()
        try:
            return self._deletion(db).hard_delete(scope, all_personas=all_personas, purge_memories=purge_memories)
        finally:
            db.close()
    
    def purge_turns_older_than(self, days: int) -> int:
        db = self.session_factory()
        try:
            return self._deletion(db).purge_turns_older_than(days)
        finally:
            db.close()
