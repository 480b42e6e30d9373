"""Domain block registry and its persistence backends."""

from .registry import BlockRegistry, BlockStats, classify_error
from .store import BlockStore, JsonFileBlockStore, MemoryBlockStore, SQLiteBlockStore, open_store

__all__ = [
    "BlockRegistry",
    "BlockStats",
    "classify_error",
    "BlockStore",
    "MemoryBlockStore",
    "JsonFileBlockStore",
    "SQLiteBlockStore",
    "open_store",
]
