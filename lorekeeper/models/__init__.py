"""Models package for Lorekeeper."""

from .conversation import (
    ConversationScope, ConversationTurn, HistoryTombstone, TombstoneKind, TurnRole
)
from .memory import Memory, MemoryVisibility, PendingMemoryWrite

__all__ = [
    "ConversationScope",
    "ConversationTurn",
    "HistoryTombstone",
    "TombstoneKind",
    "TurnRole",
    "Memory",
    "MemoryVisibility",
    "PendingMemoryWrite",
]
