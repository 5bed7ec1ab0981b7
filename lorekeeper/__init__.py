"""
Lorekeeper - Conversation memory core for character chat backends

Resolves per-user, per-character runtime settings through a five-tier
override cascade, assembles bounded short-term conversation context, and
maintains vector-searchable long-term memory with an asynchronous,
retryable writeback pipeline.
"""

__version__ = "0.1.0"
