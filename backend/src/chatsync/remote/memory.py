"""In-process remote source.

Holds documents in a dict, versions every path for optimistic transactions and
fans snapshots out to listener queues the same way the SSE event bus does.
Used by tests and by single-process deployments; it also exposes fault
injection hooks so callers can exercise offline and permission-loss paths.
"""

import asyncio
import copy
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

from chatsync.config import settings
from chatsync.errors import (
    NotFoundError,
    PermissionDeniedError,
    TransactionConflictError,
)
from chatsync.remote.base import (
    DELETE_FIELD,
    DocumentSnapshot,
    Query,
    QuerySnapshot,
    R,
    RemoteSource,
    Transaction,
    parent_collection,
)

logger = logging.getLogger(__name__)

_CLOSED = object()


def _apply_update(data: dict[str, Any], fields: dict[str, Any]) -> None:
    for key, value in fields.items():
        parts = key.split(".")
        target = data
        for part in parts[:-1]:
            nested = target.get(part)
            if not isinstance(nested, dict):
                nested = {}
                target[part] = nested
            target = nested
        if value is DELETE_FIELD:
            target.pop(parts[-1], None)
        else:
            target[parts[-1]] = copy.deepcopy(value)


def _sort_key(value: Any) -> tuple[bool, Any]:
    return (value is None, value if value is not None else 0)


@dataclass
class _Listener:
    queue: asyncio.Queue
    query: Query | None = None
    path: str | None = None

    def watches(self, path: str) -> bool:
        if self.path is not None:
            return self.path == path
        return self.query is not None and parent_collection(path) == self.query.collection


@dataclass
class _Write:
    op: str
    path: str
    data: dict[str, Any] = field(default_factory=dict)


class _MemoryTransaction(Transaction):
    def __init__(self, source: "InMemoryRemoteSource"):
        self._source = source
        self.reads: dict[str, int] = {}
        self.writes: list[_Write] = []

    async def get(self, path: str) -> DocumentSnapshot:
        self._source._check("transaction")
        self.reads[path] = self._source._versions.get(path, 0)
        return self._source._snapshot(path)

    def set(self, path: str, data: dict[str, Any]) -> None:
        self.writes.append(_Write("set", path, copy.deepcopy(data)))

    def update(self, path: str, fields: dict[str, Any]) -> None:
        self.writes.append(_Write("update", path, dict(fields)))

    def delete(self, path: str) -> None:
        self.writes.append(_Write("delete", path))


class InMemoryRemoteSource(RemoteSource):
    """Dict-backed remote source with real-time listeners."""

    def __init__(self, transaction_max_attempts: int | None = None):
        self._docs: dict[str, dict[str, Any]] = {}
        self._versions: dict[str, int] = {}
        self._listeners: list[_Listener] = []
        self._commit_lock = asyncio.Lock()
        self._failures: list[tuple[str | None, Exception]] = []
        self._access_revoked = False
        self.max_attempts = transaction_max_attempts or settings.transaction_max_attempts

    # ============= Fault injection =============

    def fail_next(self, error: Exception, operation: str | None = None) -> None:
        """Make the next matching operation raise error.

        operation is one of get, set, update, delete, query, transaction;
        None matches any of them.
        """
        self._failures.append((operation, error))

    def revoke_access(self) -> None:
        """Deny every further call and end live listeners with PERMISSION_DENIED."""
        self._access_revoked = True
        self.break_listeners(PermissionDeniedError("Missing or insufficient permissions"))

    def restore_access(self) -> None:
        self._access_revoked = False

    def break_listeners(self, error: Exception) -> None:
        """Deliver error to every live listener, ending its stream."""
        for listener in list(self._listeners):
            listener.queue.put_nowait(error)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _check(self, operation: str) -> None:
        if self._access_revoked:
            raise PermissionDeniedError("Missing or insufficient permissions")
        for index, (op, error) in enumerate(self._failures):
            if op is None or op == operation:
                del self._failures[index]
                raise error

    # ============= Reads =============

    def _snapshot(self, path: str) -> DocumentSnapshot:
        data = self._docs.get(path)
        return DocumentSnapshot(path=path, data=copy.deepcopy(data) if data is not None else None)

    def _run_query(self, query: Query) -> QuerySnapshot:
        matches = [
            (path, data)
            for path, data in self._docs.items()
            if parent_collection(path) == query.collection
            and all(f.matches(data) for f in query.filters)
        ]
        # ties on the order field fall back to document path, ascending
        matches.sort(key=lambda item: item[0])
        if query.order_by:
            matches.sort(
                key=lambda item: _sort_key(item[1].get(query.order_by)),
                reverse=query.descending,
            )
        if query.limit is not None:
            matches = matches[: query.limit]
        return QuerySnapshot(
            documents=[DocumentSnapshot(path=path, data=copy.deepcopy(data)) for path, data in matches]
        )

    async def get(self, path: str) -> DocumentSnapshot:
        self._check("get")
        return self._snapshot(path)

    async def query(self, query: Query) -> QuerySnapshot:
        self._check("query")
        return self._run_query(query)

    # ============= Writes =============

    def _apply(self, writes: list[_Write]) -> None:
        for write in writes:
            if write.op == "update" and write.path not in self._docs:
                raise NotFoundError(f"No document to update: {write.path}")

        for write in writes:
            if write.op == "set":
                self._docs[write.path] = copy.deepcopy(write.data)
            elif write.op == "update":
                _apply_update(self._docs[write.path], write.data)
            else:
                self._docs.pop(write.path, None)
            self._versions[write.path] = self._versions.get(write.path, 0) + 1

        self._publish({write.path for write in writes})

    def _publish(self, paths: set[str]) -> None:
        for listener in self._listeners:
            if not any(listener.watches(path) for path in paths):
                continue
            if listener.path is not None:
                listener.queue.put_nowait(self._snapshot(listener.path))
            else:
                listener.queue.put_nowait(self._run_query(listener.query))

    async def _commit(self, operation: str, writes: list[_Write]) -> None:
        self._check(operation)
        async with self._commit_lock:
            self._apply(writes)

    async def set(self, path: str, data: dict[str, Any]) -> None:
        await self._commit("set", [_Write("set", path, copy.deepcopy(data))])

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        await self._commit("update", [_Write("update", path, dict(fields))])

    async def delete(self, path: str) -> None:
        await self._commit("delete", [_Write("delete", path)])

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[R]]) -> R:
        for attempt in range(1, self.max_attempts + 1):
            txn = _MemoryTransaction(self)
            result = await fn(txn)
            self._check("transaction")
            async with self._commit_lock:
                stale = [
                    path for path, version in txn.reads.items()
                    if self._versions.get(path, 0) != version
                ]
                if not stale:
                    self._apply(txn.writes)
                    return result
            logger.debug(f"Transaction attempt {attempt} conflicted on {stale}, retrying")

        raise TransactionConflictError(
            f"Transaction gave up after {self.max_attempts} conflicting attempts"
        )

    # ============= Listeners =============

    async def _listen(self, listener: _Listener, initial: Any) -> AsyncIterator[Any]:
        self._check("query" if listener.query is not None else "get")
        self._listeners.append(listener)
        try:
            yield initial
            while True:
                item = await listener.queue.get()
                if isinstance(item, Exception):
                    raise item
                if item is _CLOSED:
                    return
                yield item
        finally:
            self._listeners.remove(listener)

    async def subscribe(self, query: Query) -> AsyncIterator[QuerySnapshot]:
        listener = _Listener(queue=asyncio.Queue(), query=query)
        async with aclosing(self._listen(listener, self._run_query(query))) as snapshots:
            async for snapshot in snapshots:
                yield snapshot

    async def subscribe_document(self, path: str) -> AsyncIterator[DocumentSnapshot]:
        listener = _Listener(queue=asyncio.Queue(), path=path)
        async with aclosing(self._listen(listener, self._snapshot(path))) as snapshots:
            async for snapshot in snapshots:
                yield snapshot

    def close_listeners(self) -> None:
        """End every live listener cleanly."""
        for listener in list(self._listeners):
            listener.queue.put_nowait(_CLOSED)
