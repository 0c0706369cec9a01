"""
Persistence layer for EdgeForge state.

SQLite-backed storage for sites, settings history, builds, build events
and pipeline checkpoints.
"""

from .manager import PersistenceManager
from .errors import PersistenceError, RecordNotFoundError, SchemaError

__all__ = ["PersistenceManager", "PersistenceError", "RecordNotFoundError", "SchemaError"]
