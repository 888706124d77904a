"""Relational mirror persistence layer.

Provides the SQLite connection manager, the repository interface the
engine depends on, and its aiosqlite implementation.
"""

from indexer.store.database import MirrorDatabase
from indexer.store.repository import MirrorRepository
from indexer.store.sqlite_store import SqliteMirrorStore

__all__ = ["MirrorDatabase", "MirrorRepository", "SqliteMirrorStore"]
