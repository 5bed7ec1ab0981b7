"""Tests for memory visibility, locking, editing and deletion."""

import pytest

from lorekeeper.models.memory import MemoryVisibility
from lorekeeper.services.memory_admin import MemoryAdminService, MemoryLockedError, MemoryNotFoundError

from conftest import store_memory


@pytest.fixture
def admin(db, vector_store, embedder):
    return MemoryAdminService(db, vector_store, embedder)


class TestLocking:
    
    def test_locked_memory_rejects_mutations(self, admin, db, vector_store, embedder, scope):
        memory = store_memory(db, vector_store, embedder, "favourite colour is green", scope, is_locked=True)
        
        with pytest.raises(MemoryLockedError):
            admin.update_content(memory.id, "favourite colour is blue")
        with pytest.raises(MemoryLockedError):
            admin.set_visibility(memory.id, MemoryVisibility.HIDDEN)
        with pytest.raises(MemoryLockedError):
            admin.delete(memory.id)
        
        db.expire_all()
        assert admin.memory_repo.get_by_id(memory.id).content == "favourite colour is green"
    
    def test_unlock_is_always_allowed(self, admin, db, vector_store, embedder, scope):
        memory = store_memory(db, vector_store, embedder, "birthday in May", scope, is_locked=True)
        
        admin.set_locked(memory.id, False)
        
        assert admin.delete(memory.id) == 1
        assert vector_store.list_ids(scope.character_id) == []
    
    def test_lock_applies_to_whole_chunk_group(self, admin, db, vector_store, embedder, scope):
        first = store_memory(db, vector_store, embedder, "part one", scope, chunk_group_id="g", chunk_index=0, total_chunks=2)
        second = store_memory(db, vector_store, embedder, "part two", scope, chunk_group_id="g", chunk_index=1, total_chunks=2)
        
        assert admin.set_locked(first.id, True) == 2
        
        with pytest.raises(MemoryLockedError):
            admin.delete(second.id)


class TestMutations:
    
    def test_hide_and_unhide(self, admin, db, vector_store, embedder, scope):
        memory = store_memory(db, vector_store, embedder, "secret", scope)
        
        admin.set_visibility(memory.id, MemoryVisibility.HIDDEN)
        assert admin.memory_repo.get_by_id(memory.id).visibility == MemoryVisibility.HIDDEN
        
        admin.set_visibility(memory.id, MemoryVisibility.NORMAL)
        assert admin.memory_repo.get_by_id(memory.id).visibility == MemoryVisibility.NORMAL
    
    def test_update_content_reembeds(self, admin, db, vector_store, embedder, scope):
        memory = store_memory(db, vector_store, embedder, "lives in Porto", scope)
        
        updated = admin.update_content(memory.id, "lives in Madrid")
        
        assert updated.content == "lives in Madrid"
        assert updated.embedding == embedder._vector("lives in Madrid")
        assert embedder.texts == ["lives in Madrid"]
    
    def test_delete_removes_group_and_vectors(self, admin, db, vector_store, embedder, scope):
        first = store_memory(db, vector_store, embedder, "part one", scope, chunk_group_id="g", chunk_index=0, total_chunks=2)
        store_memory(db, vector_store, embedder, "part two", scope, chunk_group_id="g", chunk_index=1, total_chunks=2)
        
        assert admin.delete(first.id) == 2
        assert vector_store.list_ids(scope.character_id) == []
    
    def test_missing_memory(self, admin):
        with pytest.raises(MemoryNotFoundError):
            admin.delete("missing")
