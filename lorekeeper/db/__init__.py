"""Database package for Lorekeeper."""

from .database import Base, create_db_engine, create_session_factory, get_db, init_db
from .vector_store import VectorStore

__all__ = ["Base", "create_db_engine", "create_session_factory", "get_db", "init_db", "VectorStore"]
