"""Shared fixtures: in-memory remote, local stores and sessions."""

import pytest

from models import Conversation, ConversationType

from chatsync.remote import InMemoryRemoteSource
from chatsync.store import CONVERSATIONS, MESSAGES, TRANSLATIONS, InMemoryLocalStore
from chatsync.sync import SyncSession
from chatsync.sync.schema import conversation_to_document


@pytest.fixture
def remote():
    return InMemoryRemoteSource()


@pytest.fixture
def stores():
    """One device's local tables."""
    return {
        "conversation_store": InMemoryLocalStore(CONVERSATIONS),
        "message_store": InMemoryLocalStore(MESSAGES),
        "translation_store": InMemoryLocalStore(TRANSLATIONS),
    }


@pytest.fixture
def make_session(remote):
    """Build sessions against the shared remote; each call is a separate device."""

    def _make(user_id, device_stores=None):
        return SyncSession(
            user_id,
            remote,
            **(
                device_stores
                or {
                    "conversation_store": InMemoryLocalStore(CONVERSATIONS),
                    "message_store": InMemoryLocalStore(MESSAGES),
                    "translation_store": InMemoryLocalStore(TRANSLATIONS),
                }
            ),
        )

    return _make


def conversation_doc(participants, type=ConversationType.ONE_ON_ONE, updated_at=1000, **fields):
    """Canonical remote document for a conversation."""
    conversation = Conversation(
        id="unused",
        type=type,
        participants=participants,
        creator_id=participants[0],
        group_admins=[participants[0]] if type == ConversationType.GROUP else [],
        updated_at=updated_at,
        created_at=updated_at,
        **fields,
    )
    return conversation_to_document(conversation)
