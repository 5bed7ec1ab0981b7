"""
Tests for memory retrieval.

Uses the hashing embedder from conftest, so similarity is driven by shared
words between the query and the stored memory text.
"""

from dataclasses import replace

import pytest

from lorekeeper.models.memory import MemoryVisibility
from lorekeeper.services.config_cascade import merge_layers
from lorekeeper.services.memory_retrieval import MemoryRetrievalService

from conftest import FailingEmbedder, store_memory


@pytest.fixture
def settings():
    return replace(merge_layers({}), memory_score_threshold=0.3, memory_limit=5)


@pytest.fixture
def retrieval(db, vector_store, embedder):
    return MemoryRetrievalService(db, vector_store, embedder)


class TestRetrievalGates:
    """Cases where no search runs at all."""
    
    def test_zero_limit_makes_no_embedding_call(self, core, store, db, vector_store, embedder, scope):
        store_memory(db, vector_store, embedder, "the dragon guards gold", scope)
        store.set_admin({"memoryLimit": 0})
        
        context = core.assemble_context(scope, user_id="u1", query="dragon gold")
        
        assert context.memories == []
        assert embedder.calls == 0
    
    def test_cleared_limit_disables_retrieval(self, core, store, embedder, scope):
        store.set_admin({"memoryLimit": 20})
        store.set_user_default("u1", {"memoryLimit": None})
        
        context = core.assemble_context(scope, user_id="u1", query="dragon gold")
        
        assert context.settings.memory_limit == 0
        assert embedder.calls == 0
    
    def test_focus_mode_skips(self, retrieval, embedder, scope, settings):
        result = retrieval.retrieve(replace(settings, focus_mode_enabled=True), scope, "dragon")
        
        assert result.skipped == "focus_mode"
        assert embedder.calls == 0
    
    def test_blank_query_skips(self, retrieval, embedder, scope, settings):
        result = retrieval.retrieve(settings, scope, "   ")
        
        assert result.skipped == "empty_query"
        assert embedder.calls == 0


class TestRanking:
    """Threshold, ordering and limits."""
    
    def test_threshold_drops_weak_matches(self, db, vector_store, embedder, retrieval, scope, settings):
        dragon = store_memory(db, vector_store, embedder, "the dragon guards gold", scope)
        store_memory(db, vector_store, embedder, "bananas are yellow fruit", scope)
        
        result = retrieval.retrieve(replace(settings, memory_score_threshold=0.5), scope, "dragon gold")
        
        assert [m.memory_id for m in result.memories] == [dragon.id]
        assert result.memories[0].similarity > 0.5
    
    def test_ordered_by_similarity_and_limited(self, db, vector_store, embedder, retrieval, scope, settings):
        exact = store_memory(db, vector_store, embedder, "dragon gold hoard", scope)
        close = store_memory(db, vector_store, embedder, "dragon gold hoard cave", scope)
        store_memory(db, vector_store, embedder, "dragon song of the northern mountains", scope)
        
        result = retrieval.retrieve(replace(settings, memory_limit=2), scope, "dragon gold hoard")
        
        assert [m.memory_id for m in result.memories] == [exact.id, close.id]
        assert result.memories[0].similarity >= result.memories[1].similarity
    
    def test_hidden_memories_excluded(self, db, vector_store, embedder, retrieval, scope, settings):
        store_memory(db, vector_store, embedder, "dragon gold", scope, visibility=MemoryVisibility.HIDDEN)
        
        result = retrieval.retrieve(settings, scope, "dragon gold")
        
        assert result.memories == []
    
    def test_locked_memories_still_retrieved(self, db, vector_store, embedder, retrieval, scope, settings):
        locked = store_memory(db, vector_store, embedder, "dragon gold", scope, is_locked=True)
        
        result = retrieval.retrieve(settings, scope, "dragon gold")
        
        assert [m.memory_id for m in result.memories] == [locked.id]
        assert result.memories[0].is_locked is True
    
    def test_orphaned_vectors_ignored(self, vector_store, embedder, retrieval, scope, settings):
        vector_store.upsert_memories(
            scope.character_id,
            ["ghost"],
            ["dragon gold"],
            [embedder._vector("dragon gold")],
            [{"persona_id": scope.persona_id}]
        )
        
        result = retrieval.retrieve(settings, scope, "dragon gold")
        
        assert result.memories == []
        assert result.degraded is False


class TestChunkGroups:
    """Multi-chunk memories come back whole."""
    
    def test_group_reassembled_in_index_order(self, db, vector_store, embedder, retrieval, scope, settings):
        texts = {
            0: "{user}: the journey began at dawn",
            1: "{user} (continued): we crossed the river",
            2: "{user} (continued): and found the dragon gold",
        }
        for index in (2, 0, 1):
            store_memory(
                db, vector_store, embedder, texts[index], scope,
                chunk_group_id="group-1", chunk_index=index, total_chunks=3
            )
        
        result = retrieval.retrieve(settings, scope, "dragon gold")
        
        assert len(result.memories) == 1
        memory = result.memories[0]
        assert memory.chunk_group_id == "group-1"
        assert memory.content == (
            "{user}: the journey began at dawn\n\n"
            "we crossed the river\n\n"
            "and found the dragon gold"
        )
        assert len(memory.chunk_ids) == 3
    
    def test_group_counts_once_against_limit(self, db, vector_store, embedder, retrieval, scope, settings):
        for index in range(2):
            store_memory(
                db, vector_store, embedder, f"dragon gold part {index}", scope,
                chunk_group_id="group-2", chunk_index=index, total_chunks=2
            )
        single = store_memory(db, vector_store, embedder, "dragon gold alone", scope)
        
        result = retrieval.retrieve(replace(settings, memory_limit=2), scope, "dragon gold")
        
        keys = {m.result_key for m in result.memories}
        assert keys == {"group-2", single.id}


class TestScoping:
    """Persona sharing and channel priority."""
    
    def test_other_persona_excluded_unless_shared(self, db, vector_store, embedder, retrieval, scope, settings):
        other = store_memory(db, vector_store, embedder, "dragon gold", replace(scope, persona_id="persona-b"))
        
        isolated = retrieval.retrieve(settings, scope, "dragon gold")
        shared = retrieval.retrieve(replace(settings, share_ltm_across_personalities=True), scope, "dragon gold")
        
        assert isolated.memories == []
        assert [m.memory_id for m in shared.memories] == [other.id]
    
    def test_channel_priority_reserves_budget(self, db, vector_store, embedder, scope, settings):
        elsewhere = replace(scope, channel_id="chan-2")
        exact = store_memory(db, vector_store, embedder, "dragon gold hoard", elsewhere)
        store_memory(db, vector_store, embedder, "dragon gold hoard cave", elsewhere)
        local = store_memory(db, vector_store, embedder, "dragon gold forest trees", scope)
        limited = replace(settings, memory_limit=2)
        
        plain = MemoryRetrievalService(db, vector_store, embedder).retrieve(limited, scope, "dragon gold hoard")
        prioritized = MemoryRetrievalService(
            db, vector_store, embedder, channel_budget_ratio=0.5
        ).retrieve(limited, scope, "dragon gold hoard")
        
        assert local.id not in [m.memory_id for m in plain.memories]
        assert [m.memory_id for m in prioritized.memories] == [exact.id, local.id]


class TestDegradation:
    """Failures never surface."""
    
    def test_embedding_failure_returns_no_memories(self, db, vector_store, embedder, scope, settings):
        store_memory(db, vector_store, embedder, "dragon gold", scope)
        failing = FailingEmbedder(RuntimeError("model unavailable"))
        
        result = MemoryRetrievalService(db, vector_store, failing).retrieve(settings, scope, "dragon gold")
        
        assert result.degraded is True
        assert result.memories == []
    
    def test_degraded_context_keeps_history(self, session_factory, vector_store, resolver, clock, scope):
        from lorekeeper.models.conversation import TurnRole
        from lorekeeper.services.conversation_core import ConversationCore
        
        core = ConversationCore(
            session_factory, vector_store, FailingEmbedder(RuntimeError("down")), resolver, clock=clock
        )
        core.record_turn(scope, TurnRole.USER, "hello there", remember=False)
        
        context = core.assemble_context(scope, query="hello")
        
        assert context.degraded is True
        assert [t.content for t in context.turns] == ["hello there"]
        assert context.memories == []
