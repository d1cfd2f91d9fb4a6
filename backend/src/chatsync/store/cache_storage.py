"""Durable storage for cached AI results."""

from abc import ABC, abstractmethod
from typing import Any

from chatsync.db import Database


class CacheStorage(ABC):
    """Key/value storage for one cache namespace.

    Values are JSON-compatible dicts stored with a creation timestamp (ms).
    """

    @abstractmethod
    async def get(self, key: str) -> tuple[dict[str, Any], int] | None: ...

    @abstractmethod
    async def set(self, key: str, value: dict[str, Any], timestamp: int) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...


class InMemoryCacheStorage(CacheStorage):
    def __init__(self):
        self._entries: dict[str, tuple[dict[str, Any], int]] = {}

    async def get(self, key: str) -> tuple[dict[str, Any], int] | None:
        return self._entries.get(key)

    async def set(self, key: str, value: dict[str, Any], timestamp: int) -> None:
        self._entries[key] = (value, timestamp)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


class PostgresCacheStorage(CacheStorage):
    """Cache namespace stored in the ``cache_entries`` table."""

    def __init__(self, database: Database, namespace: str):
        self.database = database
        self.namespace = namespace

    async def get(self, key: str) -> tuple[dict[str, Any], int] | None:
        return await self.database.get_cache_entry(self.namespace, key)

    async def set(self, key: str, value: dict[str, Any], timestamp: int) -> None:
        await self.database.set_cache_entry(self.namespace, key, value, timestamp)

    async def delete(self, key: str) -> None:
        await self.database.delete_cache_entry(self.namespace, key)
