"""Repository package for database access."""

from .books import SqliteBookRepository
from .cache_entries import SqliteCacheEntryRepository
from .entries import SqliteEntryRepository
from .folders import SqliteFolderRepository

__all__ = [
    "SqliteBookRepository",
    "SqliteCacheEntryRepository",
    "SqliteEntryRepository",
    "SqliteFolderRepository",
]
