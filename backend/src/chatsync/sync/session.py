"""Per-user sync session.

A session is the scope that owns the local stores, the live subscriptions
and any pending remote commits for one signed-in user. Closing it cancels all
of them; optimistic local rows are left in place and can be re-committed by
the next session with ``messages.retry_pending()``.
"""

import asyncio
import logging
from typing import Any, Coroutine

from models import Conversation, Message, Translation

from chatsync.ai.cache import MemoryResultCache
from chatsync.errors import NotAuthenticatedError
from chatsync.remote import RemoteSource
from chatsync.store import CONVERSATIONS, MESSAGES, TRANSLATIONS, LocalStore, create_local_store
from chatsync.sync.conversations import ConversationSync
from chatsync.sync.messages import MessageSync
from chatsync.sync.subscriptions import SubscriptionRegistry

logger = logging.getLogger(__name__)


class SyncSession:
    """Sync scope for one user."""

    def __init__(
        self,
        user_id: str | None,
        remote: RemoteSource,
        *,
        conversation_store: LocalStore[Conversation] | None = None,
        message_store: LocalStore[Message] | None = None,
        translation_store: LocalStore[Translation] | None = None,
        ai_cache: MemoryResultCache | None = None,
    ):
        if not user_id:
            raise NotAuthenticatedError()
        self.user_id = user_id
        self.remote = remote
        self.conversation_store = conversation_store or create_local_store(CONVERSATIONS)
        self.message_store = message_store or create_local_store(MESSAGES)
        self.translation_store = translation_store or create_local_store(TRANSLATIONS)
        self.ai_cache = ai_cache
        self.subscriptions = SubscriptionRegistry()
        self._pending: set[asyncio.Task] = set()
        self._closed = False

        self.conversations = ConversationSync(self)
        self.messages = MessageSync(self)

    @property
    def closed(self) -> bool:
        return self._closed

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task:
        """Run a remote commit in the background, tracked by the session."""
        task = asyncio.create_task(coro, name=name)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    @property
    def pending_commits(self) -> int:
        return len(self._pending)

    async def close(self) -> None:
        """Cancel subscriptions and pending commits, and drop in-process AI results."""
        if self._closed:
            return
        self._closed = True
        await self.subscriptions.close()
        pending = list(self._pending)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if self.ai_cache is not None:
            await self.ai_cache.clear()
        logger.info(
            f"Sync session for {self.user_id} closed "
            f"({len(pending)} pending commit(s) abandoned)"
        )

    async def __aenter__(self) -> "SyncSession":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
