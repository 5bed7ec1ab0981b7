"""
Memory writeback pipeline.

Turns enqueued in ``pending_memory_writes`` are embedded and committed as
long-term memories. Each row moves through::

    pending -> claimed -> (embedding) -> succeeded (row deleted, memories inserted)
                                      -> failed (attempts + 1, back to pending after backoff)
                                      -> exhausted (kept for manual review)

A row is owned through its ``claimed_by`` column. Success deletes the row
conditioned on that ownership in the same transaction that inserts the
memories; if the row was re-claimed, undone or hard-deleted meanwhile the
delete matches nothing and the transaction is rolled back. Memory ids are
derived from the turn id, so a retry after a crash writes the same rows
and the same vector ids.
"""

import logging
import os
import socket
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError, InvalidRequestError, SQLAlchemyError
from sqlalchemy.orm import Session

from lorekeeper.config.models import WritebackConfig
from lorekeeper.db.database import SessionFactory
from lorekeeper.db.vector_store import VectorStore
from lorekeeper.models.memory import Memory, PendingMemoryWrite
from lorekeeper.repositories.memory_repository import MemoryRepository
from lorekeeper.repositories.pending_write_repository import PendingWriteRepository
from lorekeeper.services.embedding_service import Embedder, PermanentEmbeddingError
from lorekeeper.services.memory_admin import vector_metadata
from lorekeeper.services.text_chunking import TextChunker
from lorekeeper.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

# Namespace for deterministic memory ids
MEMORY_ID_NAMESPACE = uuid.UUID("7d1c5a52-3f0e-4b8e-9a44-2b7f0c6e9d13")


def memory_id_for(turn_id: str, chunk_index: int) -> str:
    """Stable memory id for one chunk of a turn."""
    return str(uuid.uuid5(MEMORY_ID_NAMESPACE, f"{turn_id}:{chunk_index}"))


def chunk_group_id_for(turn_id: str) -> str:
    """Stable chunk group id for a turn."""
    return str(uuid.uuid5(MEMORY_ID_NAMESPACE, f"{turn_id}:group"))


def default_worker_id(index: int = 0) -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{index}"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff."""
    max_attempts: int = 5
    backoff_base_seconds: float = 30.0
    backoff_factor: float = 2.0
    backoff_max_seconds: float = 3600.0
    
    @classmethod
    def from_config(cls, config: WritebackConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            backoff_base_seconds=config.backoff_base_seconds,
            backoff_factor=config.backoff_factor,
            backoff_max_seconds=config.backoff_max_seconds
        )
    
    def delay_after(self, attempts: int) -> timedelta:
        """Wait required after ``attempts`` failed attempts."""
        if attempts <= 0:
            return timedelta(0)
        seconds = self.backoff_base_seconds * (self.backoff_factor ** (attempts - 1))
        return timedelta(seconds=min(seconds, self.backoff_max_seconds))
    
    @staticmethod
    def is_eligible(pending: PendingMemoryWrite, now: datetime) -> bool:
        if pending.exhausted_at is not None:
            return False
        return pending.next_attempt_at is None or now >= pending.next_attempt_at


class ProcessOutcome(str, Enum):
    """Result of one ``process_next`` call."""
    IDLE = "idle"              # Nothing eligible to claim
    SUCCEEDED = "succeeded"
    RETRY = "retry"            # Failed, will be retried after backoff
    EXHAUSTED = "exhausted"    # Failed for the last time (or permanently)
    LOST_CLAIM = "lost_claim"  # Row vanished or was re-claimed before commit


@dataclass
class WritebackStats:
    """Queue snapshot for operators."""
    total: int
    ready: int
    claimed: int
    waiting_retry: int
    exhausted: int


class MemoryWritebackPipeline:
    """
    Claims pending writes and turns them into memories.
    
    Safe to run from many threads or processes at once: each call opens its
    own session and all coordination goes through the database.
    """
    
    def __init__(
        self,
        session_factory: SessionFactory,
        vector_store: VectorStore,
        embedder: Embedder,
        policy: Optional[RetryPolicy] = None,
        max_chunk_chars: int = TextChunker.DEFAULT_MAX_CHARS,
        claim_timeout_seconds: float = 300.0,
        batch_size: int = 10,
        clock: Clock = utcnow
    ):
        self.session_factory = session_factory
        self.vector_store = vector_store
        self.embedder = embedder
        self.policy = policy or RetryPolicy()
        self.chunker = TextChunker(max_chunk_chars)
        self.claim_timeout = timedelta(seconds=claim_timeout_seconds)
        self.batch_size = batch_size
        self.clock = clock
    
    @classmethod
    def from_config(
        cls,
        config: WritebackConfig,
        session_factory: SessionFactory,
        vector_store: VectorStore,
        embedder: Embedder
    ) -> "MemoryWritebackPipeline":
        return cls(
            session_factory=session_factory,
            vector_store=vector_store,
            embedder=embedder,
            policy=RetryPolicy.from_config(config),
            max_chunk_chars=config.max_chunk_chars,
            claim_timeout_seconds=config.claim_timeout_seconds,
            batch_size=config.batch_size
        )
    
    def process_next(self, worker_id: Optional[str] = None) -> ProcessOutcome:
        """
        Claim and process one eligible pending write.
        
        Returns:
            What happened; IDLE when nothing could be claimed
        """
        worker_id = worker_id or default_worker_id()
        db = self.session_factory()
        try:
            pending = self._claim_one(db, worker_id)
            if pending is None:
                return ProcessOutcome.IDLE
            return self._process_claimed(db, pending, worker_id)
        finally:
            db.close()
    
    def drain(self, worker_id: Optional[str] = None, max_items: Optional[int] = None) -> Dict[ProcessOutcome, int]:
        """
        Process eligible rows until none remain (or ``max_items`` were handled).
        
        Returns:
            Count per outcome
        """
        counts: Dict[ProcessOutcome, int] = {}
        handled = 0
        while max_items is None or handled < max_items:
            outcome = self.process_next(worker_id)
            if outcome == ProcessOutcome.IDLE:
                break
            counts[outcome] = counts.get(outcome, 0) + 1
            handled += 1
        return counts
    
    def _claim_one(self, db: Session, worker_id: str) -> Optional[PendingMemoryWrite]:
        repo = PendingWriteRepository(db)
        now = self.clock()
        stale_before = now - self.claim_timeout
        
        # Row locks taken here (where supported) are released by the claim commit
        candidates = repo.list_candidates(now, stale_before, self.batch_size)
        
        for candidate in candidates:
            if repo.claim(candidate.id, worker_id, now, stale_before):
                try:
                    db.refresh(candidate)
                except InvalidRequestError:
                    logger.info(f"Pending write {candidate.id} vanished right after being claimed")
                    continue
                logger.debug(f"Worker {worker_id} claimed pending write {candidate.id} (turn {candidate.turn_id})")
                return candidate
        return None
    
    def _process_claimed(self, db: Session, pending: PendingMemoryWrite, worker_id: str) -> ProcessOutcome:
        try:
            memories = self._build_memories(pending)
            self.vector_store.upsert_memories(
                character_id=pending.character_id,
                memory_ids=[m.id for m in memories],
                contents=[m.content for m in memories],
                embeddings=[m.embedding for m in memories],
                metadatas=[vector_metadata(m) for m in memories]
            )
        except PermanentEmbeddingError as e:
            return self._record_failure(db, pending, worker_id, e, permanent=True)
        except Exception as e:
            return self._record_failure(db, pending, worker_id, e, permanent=False)
        
        return self._commit_success(db, pending, worker_id, memories)
    
    def _build_memories(self, pending: PendingMemoryWrite) -> List[Memory]:
        result = self.chunker.split(pending.text)
        if not result.chunks:
            raise PermanentEmbeddingError("Pending write has no text to embed")
        
        embeddings = self.embedder.embed_batch(result.chunks)
        if len(embeddings) != len(result.chunks):
            raise PermanentEmbeddingError(
                f"Embedder returned {len(embeddings)} vectors for {len(result.chunks)} chunks"
            )
        
        now = self.clock()
        total = len(result.chunks)
        group_id = chunk_group_id_for(pending.turn_id) if total > 1 else None
        model_name = getattr(self.embedder, 'model_name', None)
        
        memories = []
        for index, (content, embedding) in enumerate(zip(result.chunks, embeddings)):
            memories.append(Memory(
                id=memory_id_for(pending.turn_id, index),
                character_id=pending.character_id,
                persona_id=pending.persona_id,
                channel_id=pending.channel_id,
                content=content,
                embedding=list(embedding),
                embedding_model=model_name,
                chunk_group_id=group_id,
                chunk_index=index if group_id else None,
                total_chunks=total if group_id else None,
                source_turn_id=pending.turn_id,
                meta_data=dict(pending.meta_data or {}),
                created_at=now
            ))
        return memories
    
    def _commit_success(
        self,
        db: Session,
        pending: PendingMemoryWrite,
        worker_id: str,
        memories: List[Memory]
    ) -> ProcessOutcome:
        pending_repo = PendingWriteRepository(db)
        memory_repo = MemoryRepository(db)
        
        try:
            if pending_repo.delete_claimed(pending.id, worker_id) != 1:
                db.rollback()
                logger.info(
                    f"Worker {worker_id} lost pending write {pending.id} (turn {pending.turn_id}) "
                    f"before commit; discarding result"
                )
                return ProcessOutcome.LOST_CLAIM
            memory_repo.add_all(memories, commit=False)
            db.commit()
        except IntegrityError as e:
            db.rollback()
            logger.error(
                f"Memories for turn {pending.turn_id} already exist; refusing duplicate write: {e}"
            )
            return self._record_failure(db, pending, worker_id, e, permanent=True)
        except SQLAlchemyError as e:
            db.rollback()
            return self._record_failure(db, pending, worker_id, e, permanent=False)
        
        logger.info(
            f"Committed {len(memories)} memory row(s) for turn {pending.turn_id} "
            f"(character={pending.character_id})"
        )
        return ProcessOutcome.SUCCEEDED
    
    def _record_failure(
        self,
        db: Session,
        pending: PendingMemoryWrite,
        worker_id: str,
        error: Exception,
        permanent: bool
    ) -> ProcessOutcome:
        now = self.clock()
        max_attempts = self.policy.max_attempts
        attempts = max_attempts if permanent else (pending.attempts or 0) + 1
        exhausted = attempts >= max_attempts
        message = f"{type(error).__name__}: {error}"
        
        try:
            recorded = PendingWriteRepository(db).record_failure(
                pending, worker_id, message, now, attempts, exhausted,
                next_attempt_at=None if exhausted else now + self.policy.delay_after(attempts)
            )
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to record failure for pending write {pending.id}: {e}", exc_info=True)
            return ProcessOutcome.RETRY
        
        if not recorded:
            logger.info(f"Pending write {pending.id} disappeared or was re-claimed while failing")
            return ProcessOutcome.LOST_CLAIM
        
        if exhausted:
            kind = "permanent failure" if permanent else f"{attempts} attempts"
            logger.error(
                f"Memory writeback exhausted for turn {pending.turn_id} "
                f"(pending {pending.id}, {kind}): {message}"
            )
            return ProcessOutcome.EXHAUSTED
        
        logger.warning(
            f"Memory writeback attempt {attempts}/{max_attempts} failed for turn {pending.turn_id}, "
            f"retrying in {self.policy.delay_after(attempts).total_seconds():.0f}s: {message}"
        )
        return ProcessOutcome.RETRY
    
    def get_stats(self) -> WritebackStats:
        """Snapshot of the queue."""
        db = self.session_factory()
        try:
            repo = PendingWriteRepository(db)
            now = self.clock()
            stale_before = now - self.claim_timeout
            
            ready = claimed = waiting = 0
            active = repo.list_active()
            for pending in active:
                if pending.claimed_by is not None and pending.claimed_at >= stale_before:
                    claimed += 1
                elif self.policy.is_eligible(pending, now):
                    ready += 1
                else:
                    waiting += 1
            exhausted = repo.count_exhausted()
            
            return WritebackStats(
                total=len(active) + exhausted,
                ready=ready,
                claimed=claimed,
                waiting_retry=waiting,
                exhausted=exhausted
            )
        finally:
            db.close()
    
    def list_exhausted(self, limit: int = 100) -> List[PendingMemoryWrite]:
        db = self.session_factory()
        try:
            return PendingWriteRepository(db).list_exhausted(limit)
        finally:
            db.close()
    
    def requeue(self, pending_id: str) -> bool:
        """Reset an exhausted (or failing) row so workers pick it up again."""
        db = self.session_factory()
        try:
            return PendingWriteRepository(db).requeue(pending_id)
        finally:
            db.close()
    
    def reconcile_vector_index(self, character_id: str) -> Dict[str, int]:
        """
        Bring a character's vector collection in line with the memories table.
        
        Memories missing from the index are re-added from their stored
        embedding (re-embedded if none was stored); vectors without a
        memory row are removed.
        
        Returns:
            {"added": n, "removed": n}
        """
        db = self.session_factory()
        try:
            memory_repo = MemoryRepository(db)
            sql_ids = set(memory_repo.list_ids_by_character(character_id))
            vector_ids = set(self.vector_store.list_ids(character_id))
            
            orphans = sorted(vector_ids - sql_ids)
            if orphans:
                self.vector_store.delete_memories(character_id, orphans)
            
            missing = memory_repo.get_many(sql_ids - vector_ids)
            if missing:
                rows = list(missing.values())
                needs_embedding = [m for m in rows if not m.embedding]
                if needs_embedding:
                    vectors = self.embedder.embed_batch([m.content for m in needs_embedding])
                    for memory, vector in zip(needs_embedding, vectors):
                        memory.embedding = list(vector)
                    db.commit()
                self.vector_store.upsert_memories(
                    character_id=character_id,
                    memory_ids=[m.id for m in rows],
                    contents=[m.content for m in rows],
                    embeddings=[m.embedding for m in rows],
                    metadatas=[vector_metadata(m) for m in rows]
                )
            
            logger.info(
                f"Reconciled vector index for '{character_id}': "
                f"added {len(missing)}, removed {len(orphans)}"
            )
            return {"added": len(missing), "removed": len(orphans)}
        finally:
            db.close()
