"""
Tests for short-term context assembly.

Tests cover:
- Tombstone boundaries (including a turn stamped exactly at the boundary)
- maxMessages windowing and chronological ordering
- maxAge filtering, with null and 0 both disabling it
- Soft-deleted turns
- Image selection preferring recent turns
- Cross-channel back-fill
- Degrading to an empty context on read failures
"""

from dataclasses import replace
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from lorekeeper.models.conversation import TurnRole
from lorekeeper.repositories import TombstoneRepository, TurnRepository
from lorekeeper.services.config_cascade import merge_layers
from lorekeeper.services.context_assembler import ContextAssembler, age_window_start

BASE = datetime(2026, 1, 1, 12, 0, 0)


def at(minutes: float) -> datetime:
    return BASE + timedelta(minutes=minutes)


@pytest.fixture
def settings():
    return merge_layers({})


@pytest.fixture
def turns(db):
    return TurnRepository(db)


@pytest.fixture
def tombstones(db):
    return TombstoneRepository(db)


def add(turns, scope, minutes, content=None, role=TurnRole.USER, attachments=None):
    return turns.create(scope, role, content or f"turn at {minutes}", attachments=attachments, created_at=at(minutes))


class TestTombstones:
    """Visibility boundaries."""
    
    def test_clear_turn_clear_sequence(self, db, turns, tombstones, scope, settings):
        add(turns, scope, 0, "before first clear")
        tombstones.create(scope, deleted_at=at(1))
        t2 = add(turns, scope, 2, "between clears")
        assembler = ContextAssembler(db, clock=lambda: at(2.5))
        
        window = assembler.assemble(settings, scope)
        assert [t.id for t in window.turns] == [t2.id]
        
        tombstones.create(scope, deleted_at=at(3))
        window = assembler.assemble(settings, scope)
        assert window.turns == []
        assert window.boundary == at(3)
    
    def test_turn_at_boundary_is_excluded(self, db, turns, tombstones, scope, settings):
        add(turns, scope, 5, "same instant as clear")
        tombstones.create(scope, deleted_at=at(5))
        later = add(turns, scope, 5.001, "just after")
        
        window = ContextAssembler(db, clock=lambda: at(6)).assemble(settings, scope)
        
        assert [t.id for t in window.turns] == [later.id]
    
    def test_tombstones_are_scoped(self, db, turns, tombstones, scope, settings):
        other_persona = replace(scope, persona_id="persona-b")
        kept = add(turns, other_persona, 0)
        tombstones.create(scope, deleted_at=at(1))
        
        window = ContextAssembler(db, clock=lambda: at(2)).assemble(settings, other_persona)
        
        assert [t.id for t in window.turns] == [kept.id]


class TestWindow:
    """Message count and age limits."""
    
    def test_newest_turns_in_chronological_order(self, db, turns, scope, settings):
        created = [add(turns, scope, m) for m in range(10)]
        
        window = ContextAssembler(db, clock=lambda: at(20)).assemble(
            replace(settings, max_messages=3), scope
        )
        
        assert [t.id for t in window.turns] == [t.id for t in created[-3:]]
    
    def test_zero_max_messages_yields_nothing(self, db, turns, scope, settings):
        add(turns, scope, 0, attachments=[{"url": "u", "content_type": "image/png"}])
        
        window = ContextAssembler(db, clock=lambda: at(1)).assemble(
            replace(settings, max_messages=0), scope
        )
        
        assert window.turns == [] and window.images == []
    
    def test_max_age_excludes_old_turns(self, db, turns, scope, settings):
        add(turns, scope, 0, "two hours ago")
        recent = add(turns, scope, 90, "thirty minutes ago")
        
        window = ContextAssembler(db, clock=lambda: at(120)).assemble(
            replace(settings, max_age=3600), scope
        )
        
        assert [t.id for t in window.turns] == [recent.id]
    
    @pytest.mark.parametrize("max_age", [None, 0])
    def test_null_and_zero_max_age_disable_filter(self, db, turns, scope, settings, max_age):
        add(turns, scope, 0)
        add(turns, scope, 60 * 24 * 30)
        
        window = ContextAssembler(db, clock=lambda: at(60 * 24 * 31)).assemble(
            replace(settings, max_age=max_age), scope
        )
        
        assert len(window.turns) == 2
    
    def test_age_window_start(self):
        now = at(0)
        assert age_window_start(None, now) is None
        assert age_window_start(0, now) is None
        assert age_window_start(60, now) == now - timedelta(seconds=60)
    
    def test_soft_deleted_turns_are_skipped(self, db, turns, scope, settings):
        gone = add(turns, scope, 0)
        kept = add(turns, scope, 1)
        turns.soft_delete([gone.id], deleted_at=at(2))
        
        window = ContextAssembler(db, clock=lambda: at(3)).assemble(settings, scope)
        
        assert [t.id for t in window.turns] == [kept.id]


class TestImages:
    """Image attachment selection."""
    
    def test_prefers_most_recent_turns(self, db, turns, scope, settings):
        add(turns, scope, 0, attachments=[{"url": "old.png", "content_type": "image/png"}])
        add(turns, scope, 1, attachments=[
            {"url": "doc.pdf", "content_type": "application/pdf"},
            {"url": "mid.png", "content_type": "image/png"},
        ])
        add(turns, scope, 2, attachments=[{"url": "new.jpg", "content_type": "image/jpeg", "name": "new"}])
        
        window = ContextAssembler(db, clock=lambda: at(3)).assemble(
            replace(settings, max_images=2), scope
        )
        
        assert [img.url for img in window.images] == ["mid.png", "new.jpg"]
        assert window.images[-1].name == "new"
    
    def test_zero_max_images(self, db, turns, scope, settings):
        add(turns, scope, 0, attachments=[{"url": "a.png", "content_type": "image/png"}])
        
        window = ContextAssembler(db, clock=lambda: at(1)).assemble(
            replace(settings, max_images=0), scope
        )
        
        assert len(window.turns) == 1
        assert window.images == []


class TestCrossChannel:
    """Back-filling from the same persona's other channels."""
    
    def test_backfills_remaining_budget(self, db, turns, tombstones, scope, settings):
        elsewhere = replace(scope, channel_id="chan-2")
        third = replace(scope, channel_id="chan-3")
        here = add(turns, scope, 10)
        add(turns, elsewhere, 0, "cleared away")
        tombstones.create(elsewhere, deleted_at=at(1))
        visible = add(turns, elsewhere, 2)
        also = add(turns, third, 3)
        add(turns, replace(elsewhere, persona_id="persona-b"), 4, "other persona")
        
        window = ContextAssembler(db, clock=lambda: at(11)).assemble(
            replace(settings, max_messages=5, cross_channel_history_enabled=True), scope
        )
        
        assert [t.id for t in window.turns] == [here.id]
        assert [t.id for t in window.cross_channel_turns] == [visible.id, also.id]
    
    def test_disabled_by_default(self, db, turns, scope, settings):
        add(turns, replace(scope, channel_id="chan-2"), 0)
        
        window = ContextAssembler(db, clock=lambda: at(1)).assemble(settings, scope)
        
        assert window.cross_channel_turns == []
    
    def test_no_backfill_when_window_full(self, db, turns, scope, settings):
        add(turns, scope, 0)
        add(turns, replace(scope, channel_id="chan-2"), 1)
        
        window = ContextAssembler(db, clock=lambda: at(2)).assemble(
            replace(settings, max_messages=1, cross_channel_history_enabled=True), scope
        )
        
        assert window.cross_channel_turns == []


class TestDegradation:
    """Read failures never surface."""
    
    def test_database_error_returns_empty_degraded_window(self, db, turns, scope, settings, monkeypatch):
        add(turns, scope, 0)
        assembler = ContextAssembler(db, clock=lambda: at(1))
        
        def boom(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("disk I/O error"))
        
        monkeypatch.setattr(assembler.turn_repo, "list_visible", boom)
        
        window = assembler.assemble(settings, scope)
        
        assert window.degraded is True
        assert window.turns == []
