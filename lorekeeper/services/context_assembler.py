"""
Short-term context assembly.

Builds the bounded, time-windowed slice of a scope's history that goes
into a generation request. Only turns created strictly after the scope's
latest tombstone and not soft-deleted are considered.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lorekeeper.models.conversation import ConversationScope, ConversationTurn
from lorekeeper.repositories.tombstone_repository import TombstoneRepository
from lorekeeper.repositories.turn_repository import TurnRepository
from lorekeeper.services.config_cascade import ResolvedSettings
from lorekeeper.services.memory_retrieval import RetrievedMemory
from lorekeeper.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ContextImage:
    """An image attachment selected for the prompt."""
    turn_id: str
    url: str
    content_type: str
    name: Optional[str] = None


@dataclass
class HistoryWindow:
    """History part of a context."""
    turns: List[ConversationTurn] = field(default_factory=list)
    images: List[ContextImage] = field(default_factory=list)
    cross_channel_turns: List[ConversationTurn] = field(default_factory=list)
    boundary: Optional[datetime] = None
    degraded: bool = False


@dataclass
class AssembledContext:
    """Everything the generation layer gets for one request."""
    turns: List[ConversationTurn]
    images: List[ContextImage]
    cross_channel_turns: List[ConversationTurn]
    memories: List[RetrievedMemory]
    settings: ResolvedSettings
    degraded: bool = False
    
    def history_as_messages(self) -> List[Dict[str, Any]]:
        """Turns in LLM message format, oldest first."""
        return [{"role": t.role.value, "content": t.content} for t in self.turns]


def age_window_start(max_age: Optional[int], now: datetime) -> Optional[datetime]:
    """
    Earliest creation time allowed by ``max_age`` seconds.
    
    None and 0 both disable the age filter.
    """
    if not max_age:
        return None
    return now - timedelta(seconds=max_age)


class ContextAssembler:
    """Builds history windows from resolved settings."""
    
    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock
        self.turn_repo = TurnRepository(db)
        self.tombstone_repo = TombstoneRepository(db)
    
    def assemble(self, settings: ResolvedSettings, scope: ConversationScope) -> HistoryWindow:
        """
        Select turns and images for a scope.
        
        Read failures return an empty, degraded window instead of raising.
        """
        try:
            return self._assemble(settings, scope)
        except SQLAlchemyError as e:
            logger.error(f"Context assembly failed for {scope}, using empty history: {e}", exc_info=True)
            self.db.rollback()
            return HistoryWindow(degraded=True)
    
    def _assemble(self, settings: ResolvedSettings, scope: ConversationScope) -> HistoryWindow:
        boundary = self.tombstone_repo.latest_boundary(scope)
        since = age_window_start(settings.max_age, self.clock())
        
        turns = self.turn_repo.list_visible(
            scope,
            after=boundary,
            limit=settings.max_messages,
            since=since
        )
        images = self.select_images(turns, settings.max_images)
        
        cross_channel = []
        remaining = settings.max_messages - len(turns)
        if settings.cross_channel_history_enabled and remaining > 0:
            cross_channel = self.turn_repo.list_cross_channel(
                character_id=scope.character_id,
                persona_id=scope.persona_id,
                exclude_channel_id=scope.channel_id,
                limit=remaining,
                since=since
            )
        
        logger.debug(
            f"Assembled {len(turns)} turns, {len(images)} images, "
            f"{len(cross_channel)} cross-channel turns for {scope} (boundary={boundary})"
        )
        return HistoryWindow(
            turns=turns,
            images=images,
            cross_channel_turns=cross_channel,
            boundary=boundary
        )
    
    @staticmethod
    def select_images(turns: List[ConversationTurn], max_images: int) -> List[ContextImage]:
        """
        Pick up to ``max_images`` image attachments, most recent turns first.
        
        Returns:
            Images in chronological order
        """
        if max_images <= 0:
            return []
        
        selected: List[ContextImage] = []
        for turn in reversed(turns):
            # Newest first; reversed back to chronological order below
            for attachment in reversed(turn.image_attachments):
                if len(selected) >= max_images:
                    break
                selected.append(ContextImage(
                    turn_id=turn.id,
                    url=attachment.get("url", ""),
                    content_type=attachment.get("content_type", ""),
                    name=attachment.get("name")
                ))
            if len(selected) >= max_images:
                break
        
        selected.reverse()
        return selected
