"""
clearpass storage module.
"""

from clearpass.storage.kv_store import KeyValueStore, MemoryKeyValueStore, SqliteKeyValueStore

__all__ = ["KeyValueStore", "MemoryKeyValueStore", "SqliteKeyValueStore"]
