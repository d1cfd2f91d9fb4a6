"""Local store: durable, key-indexed tables of synced entities.

Every entity type gets its own ``LocalStore``. Reads are plain awaits; the
``observe_*`` methods return async iterators that emit the current value
first and then every change, driven by in-process watcher queues that are
notified after each committed write.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Generic, Iterable, TypeVar

from pydantic import BaseModel

from chatsync.db import Database

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


@dataclass(frozen=True)
class EntitySpec(Generic[T]):
    """How one entity type is stored, scoped and ordered."""

    name: str
    model: type[T]
    scope_keys: Callable[[T], Iterable[str]]
    sort_key: Callable[[T], Any]

    def scopes_of(self, entity: T) -> set[str]:
        return set(self.scope_keys(entity))


class LocalStore(ABC, Generic[T]):
    """Base local store with change notification."""

    def __init__(self, spec: EntitySpec[T]):
        self.spec = spec
        # entity id -> watcher queues
        self._id_watchers: dict[str, list[asyncio.Queue]] = defaultdict(list)
        # scope key -> watcher queues
        self._scope_watchers: dict[str, list[asyncio.Queue]] = defaultdict(list)
        self._write_lock = asyncio.Lock()

    # ----- backend hooks -----

    @abstractmethod
    async def _write(self, entities: list[T]) -> None: ...

    @abstractmethod
    async def _read(self, entity_id: str) -> T | None: ...

    @abstractmethod
    async def _read_scope(self, scope_key: str) -> list[T]: ...

    @abstractmethod
    async def _remove(self, entity_id: str) -> None: ...

    # ----- writes -----

    async def upsert(self, entity: T) -> None:
        await self.upsert_all([entity])

    async def upsert_all(self, entities: list[T]) -> None:
        """Write a batch of entities, replacing existing rows."""
        if not entities:
            return
        async with self._write_lock:
            await self._write_batch(entities)

    async def merge_all(self, entities: list[T], merge: Callable[[T | None, T], T]) -> list[T]:
        """Merge incoming entities into existing rows and write them as one batch.

        ``merge(existing, incoming)`` returns the row to store. Rows whose merge
        result equals what is already stored are not rewritten.

        Returns:
            The rows that actually changed

        """
        if not entities:
            return []
        async with self._write_lock:
            changed: list[T] = []
            previous: dict[str, T | None] = {}
            for incoming in entities:
                entity_id = incoming.id  # type: ignore[attr-defined]
                existing = await self._read(entity_id)
                merged = merge(existing, incoming)
                if merged != existing:
                    changed.append(merged)
                    previous[entity_id] = existing
            if changed:
                await self._write(changed)
                self._notify(changed, previous)
            return changed

    async def modify(self, entity_id: str, change: Callable[[T], T | None]) -> T | None:
        """Atomically read-modify-write one row.

        ``change`` returns the new row, or None to leave it untouched. Missing
        rows are skipped.

        Returns:
            The stored row after the call (None if the row does not exist)

        """
        async with self._write_lock:
            existing = await self._read(entity_id)
            if existing is None:
                return None
            updated = change(existing.model_copy(deep=True))
            if updated is None or updated == existing:
                return existing
            await self._write([updated])
            self._notify([updated], {entity_id: existing})
            return updated

    async def delete(self, entity_id: str) -> None:
        async with self._write_lock:
            existing = await self._read(entity_id)
            if existing is None:
                return
            await self._remove(entity_id)
            self._notify_ids([entity_id], self.spec.scopes_of(existing))

    async def delete_scope(self, scope_key: str) -> int:
        """Delete every row in a scope. Returns the number removed."""
        async with self._write_lock:
            rows = await self._read_scope(scope_key)
            for row in rows:
                await self._remove(row.id)  # type: ignore[attr-defined]
            if rows:
                scopes: set[str] = set()
                for row in rows:
                    scopes |= self.spec.scopes_of(row)
                self._notify_ids([row.id for row in rows], scopes)  # type: ignore[attr-defined]
            return len(rows)

    async def _write_batch(self, entities: list[T]) -> None:
        previous = {e.id: await self._read(e.id) for e in entities}  # type: ignore[attr-defined]
        await self._write(entities)
        self._notify(entities, previous)

    # ----- reads -----

    async def get_by_id(self, entity_id: str) -> T | None:
        return await self._read(entity_id)

    async def get_all(self, scope_key: str) -> list[T]:
        """Every row in a scope, in the entity's display order."""
        rows = await self._read_scope(scope_key)
        return sorted(rows, key=self.spec.sort_key)

    async def observe_by_id(self, entity_id: str) -> AsyncIterator[T | None]:
        """Emit the current row (or None), then every distinct change."""
        async with self.watch(entity_id=entity_id) as changes:
            last = await self.get_by_id(entity_id)
            yield last
            while True:
                await changes.get()
                current = await self.get_by_id(entity_id)
                if current != last:
                    last = current
                    yield current

    async def observe_all(self, scope_key: str) -> AsyncIterator[list[T]]:
        """Emit the ordered rows of a scope, then the new list after every change."""
        async with self.watch(scope_key=scope_key) as changes:
            last = await self.get_all(scope_key)
            yield last
            while True:
                await changes.get()
                current = await self.get_all(scope_key)
                if current != last:
                    last = current
                    yield current

    @asynccontextmanager
    async def watch(self, *, entity_id: str | None = None, scope_key: str | None = None):
        """Register a change queue for an entity or a scope.

        The queue receives a token after every write that touches the target;
        pending tokens are coalesced, so readers should re-read on wake-up.
        """
        if (entity_id is None) == (scope_key is None):
            raise ValueError("watch() takes exactly one of entity_id or scope_key")
        registry, key = (
            (self._id_watchers, entity_id) if entity_id is not None else (self._scope_watchers, scope_key)
        )
        queue: asyncio.Queue = asyncio.Queue()
        registry[key].append(queue)
        try:
            yield queue
        finally:
            queues = registry.get(key)
            if queues is not None:
                try:
                    queues.remove(queue)
                except ValueError:
                    pass
                if not queues:
                    del registry[key]

    # ----- notification -----

    def _notify(self, entities: list[T], previous: dict[str, T | None]) -> None:
        scopes: set[str] = set()
        for entity in entities:
            scopes |= self.spec.scopes_of(entity)
            old = previous.get(entity.id)  # type: ignore[attr-defined]
            if old is not None:
                # a row that left a scope must refresh that scope too
                scopes |= self.spec.scopes_of(old)
        self._notify_ids([e.id for e in entities], scopes)  # type: ignore[attr-defined]

    def _notify_ids(self, entity_ids: Iterable[str], scopes: Iterable[str]) -> None:
        for entity_id in entity_ids:
            for queue in self._id_watchers.get(entity_id, []):
                self._signal(queue)
        for scope in scopes:
            for queue in self._scope_watchers.get(scope, []):
                self._signal(queue)

    @staticmethod
    def _signal(queue: asyncio.Queue) -> None:
        if queue.empty():
            queue.put_nowait(None)


class InMemoryLocalStore(LocalStore[T]):
    """Local store kept in process memory."""

    def __init__(self, spec: EntitySpec[T]):
        super().__init__(spec)
        self._rows: dict[str, T] = {}

    async def _write(self, entities: list[T]) -> None:
        for entity in entities:
            self._rows[entity.id] = entity.model_copy(deep=True)  # type: ignore[attr-defined]

    async def _read(self, entity_id: str) -> T | None:
        row = self._rows.get(entity_id)
        return row.model_copy(deep=True) if row is not None else None

    async def _read_scope(self, scope_key: str) -> list[T]:
        return [
            row.model_copy(deep=True)
            for row in self._rows.values()
            if scope_key in self.spec.scopes_of(row)
        ]

    async def _remove(self, entity_id: str) -> None:
        self._rows.pop(entity_id, None)


class PostgresLocalStore(LocalStore[T]):
    """Local store persisted in the ``local_rows`` table."""

    def __init__(self, spec: EntitySpec[T], database: Database):
        super().__init__(spec)
        self.database = database

    async def _write(self, entities: list[T]) -> None:
        await self.database.upsert_rows(
            self.spec.name,
            [
                (e.id, sorted(self.spec.scopes_of(e)), e.model_dump_json())  # type: ignore[attr-defined]
                for e in entities
            ],
        )

    async def _read(self, entity_id: str) -> T | None:
        payload = await self.database.get_row(self.spec.name, entity_id)
        if payload is None:
            return None
        return self.spec.model.model_validate(payload)

    async def _read_scope(self, scope_key: str) -> list[T]:
        payloads = await self.database.list_rows(self.spec.name, scope_key)
        return [self.spec.model.model_validate(p) for p in payloads]

    async def _remove(self, entity_id: str) -> None:
        await self.database.delete_row(self.spec.name, entity_id)
