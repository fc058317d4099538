from __future__ import annotations

from turnflow.config import StorageConfig
from turnflow.storage.base import ExecutionStore
from turnflow.storage.memory import MemoryStore
from turnflow.storage.sqlite import SqliteStore


def open_store(config: StorageConfig) -> ExecutionStore:
    if config.backend == "memory":
        return MemoryStore()
    return SqliteStore(config.sqlite_path)
