from chatsync.remote.base import (
    CONVERSATIONS_COLLECTION,
    DELETE_FIELD,
    DocumentSnapshot,
    Filter,
    Query,
    QuerySnapshot,
    RemoteSource,
    Transaction,
    conversation_path,
    message_path,
    messages_collection,
)
from chatsync.remote.memory import InMemoryRemoteSource

__all__ = [
    "CONVERSATIONS_COLLECTION",
    "DELETE_FIELD",
    "DocumentSnapshot",
    "Filter",
    "InMemoryRemoteSource",
    "Query",
    "QuerySnapshot",
    "RemoteSource",
    "Transaction",
    "conversation_path",
    "message_path",
    "messages_collection",
]
