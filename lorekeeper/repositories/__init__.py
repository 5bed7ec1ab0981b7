"""Repository layer for database operations."""

from .turn_repository import TurnRepository, HistoryStats, estimate_tokens
from .tombstone_repository import TombstoneRepository
from .memory_repository import MemoryRepository
from .pending_write_repository import PendingWriteRepository

__all__ = [
    "TurnRepository",
    "HistoryStats",
    "estimate_tokens",
    "TombstoneRepository",
    "MemoryRepository",
    "PendingWriteRepository",
]
