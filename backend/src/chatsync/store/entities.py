"""Storage specs for the synced entity types."""

from models import Conversation, Message, Translation

from chatsync.config import settings
from chatsync.db import Database, db
from chatsync.store.local import EntitySpec, InMemoryLocalStore, LocalStore, PostgresLocalStore

# Conversation list: newest activity first
CONVERSATIONS: EntitySpec[Conversation] = EntitySpec(
    name="conversations",
    model=Conversation,
    scope_keys=lambda c: c.participants,
    sort_key=lambda c: (-c.updated_at, c.id),
)

# Messages: chronological, ties broken by ID
MESSAGES: EntitySpec[Message] = EntitySpec(
    name="messages",
    model=Message,
    scope_keys=lambda m: [m.conversation_id],
    sort_key=lambda m: (m.timestamp, m.id),
)

TRANSLATIONS: EntitySpec[Translation] = EntitySpec(
    name="translations",
    model=Translation,
    scope_keys=lambda t: [t.message_id],
    sort_key=lambda t: (t.created_at, t.id),
)


def create_local_store(spec: EntitySpec, database: Database | None = None) -> LocalStore:
    """Build a local store for the configured backend."""
    if settings.store_backend == "postgres":
        return PostgresLocalStore(spec, database or db)
    return InMemoryLocalStore(spec)
