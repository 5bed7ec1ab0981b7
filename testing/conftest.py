"""Shared fixtures: temporary SQLite database, Chroma directory and test embedders."""

import hashlib
import math
import re
import threading
from datetime import datetime, timedelta
from typing import List, Optional

import pytest

from lorekeeper.db import VectorStore, create_db_engine, create_session_factory, init_db
from lorekeeper.models.conversation import ConversationScope
from lorekeeper.models.memory import Memory, MemoryVisibility
from lorekeeper.services.config_cascade import ConfigCascadeResolver, StaticPrecedenceStore
from lorekeeper.services.conversation_core import ConversationCore
from lorekeeper.services.memory_admin import vector_metadata
from lorekeeper.services.memory_writeback import MemoryWritebackPipeline, RetryPolicy

WORD = re.compile(r"[a-z0-9]+")


class FakeClock:
    """Controllable UTC clock that moves forward a little on every read."""
    
    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0), step: timedelta = timedelta(milliseconds=1)):
        self.now = start
        self.step = step
        self._lock = threading.Lock()
    
    def __call__(self) -> datetime:
        with self._lock:
            current = self.now
            self.now = self.now + self.step
            return current
    
    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now = self.now + timedelta(seconds=seconds)


class HashingEmbedder:
    """
    Deterministic bag-of-words embedder.
    
    Texts sharing words get a positive cosine similarity; unrelated texts
    are (almost) orthogonal. Counts calls so tests can assert that no
    embedding happened.
    """
    
    model_name = "hashing-test"
    
    def __init__(self, dimensions: int = 256):
        self.dimensions = dimensions
        self.calls = 0
        self.texts: List[str] = []
        self._lock = threading.Lock()
    
    def _vector(self, text: str) -> List[float]:
        vector = [0.0] * self.dimensions
        for word in WORD.findall(text.lower()):
            index = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.dimensions
            vector[index] += 1.0
        norm = math.sqrt(sum(v * v for v in vector)) or 1.0
        return [v / norm for v in vector]
    
    def embed(self, text: str) -> List[float]:
        with self._lock:
            self.calls += 1
            self.texts.append(text)
        return self._vector(text)
    
    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        with self._lock:
            self.calls += 1
            self.texts.extend(texts)
        return [self._vector(t) for t in texts]


class FailingEmbedder(HashingEmbedder):
    """Raises the given exception on every call."""
    
    def __init__(self, error: Exception):
        super().__init__()
        self.error = error
    
    def embed(self, text):
        with self._lock:
            self.calls += 1
        raise self.error
    
    def embed_batch(self, texts):
        with self._lock:
            self.calls += 1
        raise self.error


class BlockingEmbedder(HashingEmbedder):
    """Signals when a batch starts and waits for permission to return."""
    
    def __init__(self):
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()
    
    def embed_batch(self, texts):
        self.started.set()
        assert self.release.wait(timeout=10), "test never released the embedder"
        return super().embed_batch(texts)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'lorekeeper.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def vector_store(tmp_path):
    return VectorStore(tmp_path / "vectors")


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def store():
    return StaticPrecedenceStore()


@pytest.fixture
def resolver(store):
    return ConfigCascadeResolver(store, cache_enabled=False)


@pytest.fixture
def scope():
    return ConversationScope(channel_id="chan-1", character_id="nova", persona_id="persona-a")


@pytest.fixture
def core(session_factory, vector_store, embedder, resolver, clock):
    return ConversationCore(session_factory, vector_store, embedder, resolver, clock=clock)


@pytest.fixture
def pipeline_factory(session_factory, vector_store, clock):
    def make(embedder, **kwargs):
        kwargs.setdefault("policy", RetryPolicy(max_attempts=3, backoff_base_seconds=30, backoff_factor=2, backoff_max_seconds=3600))
        return MemoryWritebackPipeline(session_factory, vector_store, embedder, clock=clock, **kwargs)
    return make


@pytest.fixture
def pipeline(pipeline_factory, embedder):
    return pipeline_factory(embedder)


def store_memory(
    db,
    vector_store: VectorStore,
    embedder: HashingEmbedder,
    content: str,
    scope: ConversationScope,
    memory_id: Optional[str] = None,
    chunk_group_id: Optional[str] = None,
    chunk_index: Optional[int] = None,
    total_chunks: Optional[int] = None,
    visibility: MemoryVisibility = MemoryVisibility.NORMAL,
    is_locked: bool = False,
    source_turn_id: Optional[str] = None,
    index_text: Optional[str] = None
) -> Memory:
    """Insert a memory row and its vector the way the writeback pipeline does."""
    embedding = embedder._vector(index_text or content)
    memory = Memory(
        character_id=scope.character_id,
        persona_id=scope.persona_id,
        channel_id=scope.channel_id,
        content=content,
        embedding=embedding,
        embedding_model=embedder.model_name,
        chunk_group_id=chunk_group_id,
        chunk_index=chunk_index,
        total_chunks=total_chunks,
        visibility=visibility,
        is_locked=is_locked,
        source_turn_id=source_turn_id
    )
    if memory_id:
        memory.id = memory_id
    db.add(memory)
    db.commit()
    vector_store.upsert_memories(
        scope.character_id, [memory.id], [content], [embedding], [vector_metadata(memory)]
    )
    return memory
