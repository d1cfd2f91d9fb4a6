from chatsync.store.cache_storage import CacheStorage, InMemoryCacheStorage, PostgresCacheStorage
from chatsync.store.entities import CONVERSATIONS, MESSAGES, TRANSLATIONS, create_local_store
from chatsync.store.local import EntitySpec, InMemoryLocalStore, LocalStore, PostgresLocalStore
from chatsync.store.rate_limit_storage import (
    InMemoryRateLimitStorage,
    PostgresRateLimitStorage,
    RateLimitStorage,
    WindowCounter,
)

__all__ = [
    "CacheStorage",
    "InMemoryCacheStorage",
    "PostgresCacheStorage",
    "EntitySpec",
    "LocalStore",
    "InMemoryLocalStore",
    "PostgresLocalStore",
    "CONVERSATIONS",
    "MESSAGES",
    "TRANSLATIONS",
    "create_local_store",
    "RateLimitStorage",
    "InMemoryRateLimitStorage",
    "PostgresRateLimitStorage",
    "WindowCounter",
]
