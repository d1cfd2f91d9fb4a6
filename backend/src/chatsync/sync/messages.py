"""Message sync: remote message stream into the local store, and message writes."""

import asyncio
import logging
from contextlib import aclosing
from typing import TYPE_CHECKING, AsyncIterator

from models import (
    SUPPORTED_REACTIONS,
    Message,
    MessageStatus,
    MessageType,
    Translation,
    TranslationResult,
    new_id,
    now_ms,
)

from chatsync.config import settings
from chatsync.errors import (
    DeadlineExceededError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
    RemoteUnavailableError,
)
from chatsync.remote import Query, Transaction, message_path, messages_collection
from chatsync.sync.merge import (
    add_read_receipt,
    advance_status,
    apply_reaction,
    merge_message,
    remove_reaction as drop_reaction,
)
from chatsync.sync.schema import message_to_document, parse_batch, parse_message
from chatsync.sync.subscriptions import follow

if TYPE_CHECKING:
    from chatsync.sync.session import SyncSession

logger = logging.getLogger(__name__)

# Errors after which a one-shot read falls back to the local store
OFFLINE_ERRORS = (RemoteUnavailableError, DeadlineExceededError)


def _with_status(status: MessageStatus):
    def change(message: Message) -> Message | None:
        new_status = advance_status(message.status, status)
        if new_status == message.status:
            return None
        return message.model_copy(update={"status": new_status})

    return change


class MessageSync:
    """Message operations for one session."""

    def __init__(self, session: "SyncSession"):
        self.session = session
        self.remote = session.remote
        self.store = session.message_store
        self.translations = session.translation_store
        self.user_id = session.user_id

    # ============= Read path =============

    def _query(self, conversation_id: str) -> Query:
        # newest page first; the local store orders rows chronologically
        return (
            Query(messages_collection(conversation_id))
            .order("timestamp", descending=True)
            .limited(settings.message_page_size)
        )

    async def _apply(self, snapshots) -> list[Message]:
        messages = parse_batch(snapshots, parse_message)
        return await self.store.merge_all(messages, merge_message)

    async def _sync(self, conversation_id: str) -> None:
        async with aclosing(self.remote.subscribe(self._query(conversation_id))) as snapshots:
            async for snapshot in snapshots:
                changed = await self._apply(snapshot.documents)
                logger.debug(
                    f"Synced {len(snapshot.documents)} message(s) for {conversation_id}, "
                    f"{len(changed)} changed (from_cache={snapshot.from_cache})"
                )

    async def _subscription(self, conversation_id: str) -> None:
        try:
            await self._sync(conversation_id)
        except PermissionDeniedError:
            logger.info(f"Message subscription for {conversation_id} lost permission, closing")

    def _hold_sync(self, conversation_id: str):
        """Hold the conversation's remote message subscription, starting it if none is live."""
        return self.session.subscriptions.held(
            ("messages", conversation_id), lambda: self._subscription(conversation_id)
        )

    async def observe_messages(self, conversation_id: str) -> AsyncIterator[list[Message]]:
        """Stream a conversation's messages in chronological order.

        The cached rows come first, before the remote subscription has
        delivered anything; every later change follows.
        """
        stream = self.store.observe_all(conversation_id)
        async with aclosing(stream):
            first = await stream.__anext__()
            async with self._hold_sync(conversation_id) as subscription:
                yield first
                async with aclosing(follow(stream, subscription)) as updates:
                    async for messages in updates:
                        yield messages

    async def get_messages(self, conversation_id: str) -> list[Message]:
        """One-shot read: refresh from the remote, falling back to local rows offline."""
        try:
            snapshot = await self.remote.query(self._query(conversation_id))
        except OFFLINE_ERRORS as e:
            logger.warning(f"Remote read of {conversation_id} messages failed, using local: {e}")
        else:
            await self._apply(snapshot.documents)
        return await self.store.get_all(conversation_id)

    # ============= Write path =============

    async def send_message(
        self,
        conversation_id: str,
        text: str | None = None,
        *,
        type: MessageType = MessageType.TEXT,
        media_url: str | None = None,
        audio_duration: int | None = None,
        audio_waveform: list[float] | None = None,
        message_id: str | None = None,
    ) -> asyncio.Task:
        """Write the message locally as SENDING and commit it in the background.

        The local row exists when this returns. The returned task resolves to
        the final local row: SENT on success, FAILED if the remote write fails.
        """
        if type == MessageType.TEXT and not (text and text.strip()):
            raise InvalidArgumentError("Text message must not be empty")
        if type in (MessageType.IMAGE, MessageType.AUDIO) and not media_url:
            raise InvalidArgumentError(f"{type.value} message needs a media URL")

        message = Message(
            id=message_id or new_id(),
            conversation_id=conversation_id,
            sender_id=self.user_id,
            type=type,
            text=text,
            media_url=media_url,
            audio_duration=audio_duration,
            audio_waveform=audio_waveform,
            timestamp=now_ms(),
            status=MessageStatus.SENDING,
        )
        await self.store.upsert(message)
        return self.session.spawn(self._commit(message), name=f"commit:{message.id}")

    async def _commit(self, message: Message) -> Message | None:
        sent = message.model_copy(update={"status": MessageStatus.SENT})
        try:
            await self.remote.set(
                message_path(message.conversation_id, message.id), message_to_document(sent)
            )
        except Exception as e:
            logger.error(f"Failed to send message {message.id}: {e!r}")
            return await self.store.modify(message.id, _with_status(MessageStatus.FAILED))

        row = await self.store.modify(message.id, _with_status(MessageStatus.SENT))
        await self.session.conversations.update_last_message(sent)
        return row

    async def retry_pending(self, conversation_id: str) -> list[asyncio.Task]:
        """Re-commit this user's rows still in SENDING, e.g. after a closed session."""
        pending = [
            m
            for m in await self.store.get_all(conversation_id)
            if m.status == MessageStatus.SENDING and m.sender_id == self.user_id
        ]
        if pending:
            logger.info(f"Retrying {len(pending)} unsent message(s) in {conversation_id}")
        return [self.session.spawn(self._commit(m), name=f"commit:{m.id}") for m in pending]

    async def _transact(self, conversation_id: str, message_id: str, change) -> Message:
        """Read-modify-write one message document atomically, then mirror it locally.

        ``change(message)`` returns the updated message, or None when
        nothing needs writing. A change rewrites the whole document in the
        canonical shape, which migrates legacy documents.
        """
        path = message_path(conversation_id, message_id)

        async def fn(txn: Transaction) -> Message:
            snapshot = await txn.get(path)
            if not snapshot.exists:
                raise NotFoundError(f"Message {message_id} not found")
            message = parse_message(snapshot)
            updated = change(message)
            if updated is None:
                return message
            txn.set(path, message_to_document(updated))
            return updated

        message = await self.remote.run_transaction(fn)
        await self.store.merge_all([message], merge_message)
        return await self.store.get_by_id(message_id) or message

    async def update_status(
        self, conversation_id: str, message_id: str, status: MessageStatus
    ) -> Message:
        """Move a message forward to status; regressions are ignored."""
        return await self._transact(conversation_id, message_id, _with_status(status))

    async def mark_as_read(self, conversation_id: str, message_id: str) -> Message:
        """Record this user's read receipt.

        The status becomes READ once every participant other than the sender
        has a receipt. Reading your own message is a no-op.
        """
        participants = await self._participants(conversation_id)

        def change(message: Message) -> Message | None:
            if message.sender_id == self.user_id:
                return None
            read_by = add_read_receipt(message.read_by, self.user_id, now_ms())
            if read_by is None:
                return None
            status = message.status
            readers = participants or [message.sender_id, self.user_id]
            if all(p in read_by for p in readers if p != message.sender_id):
                status = advance_status(status, MessageStatus.READ)
            return message.model_copy(update={"read_by": read_by, "status": status})

        return await self._transact(conversation_id, message_id, change)

    async def _participants(self, conversation_id: str) -> list[str]:
        conversation = await self.session.conversation_store.get_by_id(conversation_id)
        return conversation.participants if conversation is not None else []

    async def add_reaction(self, conversation_id: str, message_id: str, emoji: str) -> Message:
        """React with emoji, replacing any earlier reaction by this user."""
        if emoji not in SUPPORTED_REACTIONS:
            raise InvalidArgumentError(f"Unsupported reaction {emoji!r}")

        def change(message: Message) -> Message | None:
            reactions = apply_reaction(message.reactions, self.user_id, emoji)
            if reactions == message.reactions:
                return None
            return message.model_copy(update={"reactions": reactions})

        return await self._transact(conversation_id, message_id, change)

    async def remove_reaction(self, conversation_id: str, message_id: str) -> Message:
        def change(message: Message) -> Message | None:
            reactions = drop_reaction(message.reactions, self.user_id)
            if reactions == message.reactions:
                return None
            return message.model_copy(update={"reactions": reactions})

        return await self._transact(conversation_id, message_id, change)

    async def delete_message(self, conversation_id: str, message_id: str) -> None:
        """Delete locally, then remotely. A remote failure is raised to the caller."""
        await self.store.delete(message_id)
        await self.remote.delete(message_path(conversation_id, message_id))

    # ============= Translations =============

    async def record_translation(self, message: Message, result: TranslationResult) -> Translation:
        """Keep an AI translation of a message in the local store."""
        translation = Translation(
            id=Translation.make_id(message.id, result.target_language),
            message_id=message.id,
            original_text=message.text or "",
            translated_text=result.translated_text,
            source_language=result.source_language,
            target_language=result.target_language,
        )
        await self.translations.upsert(translation)
        return translation

    def observe_translation(
        self, message_id: str, target_language: str
    ) -> AsyncIterator[Translation | None]:
        return self.translations.observe_by_id(Translation.make_id(message_id, target_language))
