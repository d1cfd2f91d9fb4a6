"""Remote source: the real-time document store the sync engine reconciles with.

Documents live at slash-separated paths (``conversations/{id}``,
``conversations/{id}/messages/{message_id}``). Implementations raise the typed
errors from ``chatsync.errors``; in particular a revoked permission must
surface as ``PermissionDeniedError`` so subscriptions can end quietly.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Awaitable, Callable, Literal, TypeVar

R = TypeVar("R")

# Value for update() that removes the field instead of setting it
DELETE_FIELD = object()

CONVERSATIONS_COLLECTION = "conversations"


def conversation_path(conversation_id: str) -> str:
    return f"{CONVERSATIONS_COLLECTION}/{conversation_id}"


def messages_collection(conversation_id: str) -> str:
    return f"{CONVERSATIONS_COLLECTION}/{conversation_id}/messages"


def message_path(conversation_id: str, message_id: str) -> str:
    return f"{messages_collection(conversation_id)}/{message_id}"


def parent_collection(path: str) -> str:
    return path.rsplit("/", 1)[0]


@dataclass(frozen=True)
class DocumentSnapshot:
    """A document read at one point in time."""

    path: str
    data: dict[str, Any] | None
    from_cache: bool = False
    has_pending_writes: bool = False

    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def exists(self) -> bool:
        return self.data is not None


@dataclass(frozen=True)
class QuerySnapshot:
    """The result set of a query at one point in time."""

    documents: list[DocumentSnapshot]
    from_cache: bool = False
    has_pending_writes: bool = False


@dataclass(frozen=True)
class Filter:
    field: str
    op: Literal["==", "array_contains"]
    value: Any

    def matches(self, data: dict[str, Any]) -> bool:
        actual = data.get(self.field)
        if self.op == "==":
            return actual == self.value
        return isinstance(actual, list) and self.value in actual


@dataclass(frozen=True)
class Query:
    """A collection query with optional filters, one ordering and a limit."""

    collection: str
    filters: tuple[Filter, ...] = field(default_factory=tuple)
    order_by: str | None = None
    descending: bool = False
    limit: int | None = None

    def where(self, field_name: str, op: Literal["==", "array_contains"], value: Any) -> "Query":
        return replace(self, filters=self.filters + (Filter(field_name, op, value),))

    def order(self, field_name: str, descending: bool = False) -> "Query":
        return replace(self, order_by=field_name, descending=descending)

    def limited(self, limit: int) -> "Query":
        return replace(self, limit=limit)


class Transaction(ABC):
    """Reads and buffered writes that commit atomically or not at all."""

    @abstractmethod
    async def get(self, path: str) -> DocumentSnapshot: ...

    @abstractmethod
    def set(self, path: str, data: dict[str, Any]) -> None: ...

    @abstractmethod
    def update(self, path: str, fields: dict[str, Any]) -> None: ...

    @abstractmethod
    def delete(self, path: str) -> None: ...


class RemoteSource(ABC):
    """Abstract real-time document store."""

    @abstractmethod
    async def get(self, path: str) -> DocumentSnapshot: ...

    @abstractmethod
    async def set(self, path: str, data: dict[str, Any]) -> None: ...

    @abstractmethod
    async def update(self, path: str, fields: dict[str, Any]) -> None:
        """Update fields of an existing document.

        Keys may be dotted paths into nested maps (``deletedAt.<uid>``).

        Raises:
            NotFoundError: If the document does not exist

        """

    @abstractmethod
    async def delete(self, path: str) -> None: ...

    @abstractmethod
    async def query(self, query: Query) -> QuerySnapshot: ...

    @abstractmethod
    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[R]]) -> R:
        """Run fn against a transaction, retrying it on write conflicts.

        Raises:
            TransactionConflictError: If every attempt conflicted

        """

    @abstractmethod
    def subscribe(self, query: Query) -> AsyncIterator[QuerySnapshot]:
        """Stream query snapshots, starting with the current result set.

        The listener is released when the iterator is closed or cancelled.
        """

    @abstractmethod
    def subscribe_document(self, path: str) -> AsyncIterator[DocumentSnapshot]:
        """Stream snapshots of one document, starting with its current state."""
