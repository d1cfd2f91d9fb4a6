"""Conversation sync: the user's conversation list, single conversations and their writes."""

import asyncio
import logging
from contextlib import aclosing
from typing import TYPE_CHECKING, AsyncIterator, Callable

from models import Conversation, ConversationType, LastMessage, Message, now_ms

from chatsync.errors import (
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
)
from chatsync.remote import (
    CONVERSATIONS_COLLECTION,
    DELETE_FIELD,
    Query,
    Transaction,
    conversation_path,
    messages_collection,
)
from chatsync.sync.merge import merge_conversation
from chatsync.sync.messages import OFFLINE_ERRORS
from chatsync.sync.schema import (
    conversation_to_document,
    last_message_to_document,
    parse_batch,
    parse_conversation,
)
from chatsync.sync.subscriptions import follow

if TYPE_CHECKING:
    from chatsync.sync.session import SyncSession

logger = logging.getLogger(__name__)

# Creator plus 49 others
MAX_GROUP_SIZE = 50
MIN_GROUP_OTHERS = 2


def _unique(user_ids: list[str]) -> list[str]:
    return list(dict.fromkeys(u for u in user_ids if u))


class ConversationSync:
    """Conversation operations for one session."""

    def __init__(self, session: "SyncSession"):
        self.session = session
        self.remote = session.remote
        self.store = session.conversation_store
        self.user_id = session.user_id

    # ============= Read path =============

    def _list_query(self) -> Query:
        return (
            Query(CONVERSATIONS_COLLECTION)
            .where("participants", "array_contains", self.user_id)
            .order("updatedAt", descending=True)
        )

    async def _apply(self, snapshots) -> list[Conversation]:
        conversations = parse_batch(snapshots, parse_conversation)
        return await self.store.merge_all(conversations, merge_conversation)

    async def _quietly(self, scope: str, sync) -> None:
        try:
            await sync
        except PermissionDeniedError:
            logger.info(f"Conversation subscription {scope} lost permission, closing")

    async def _sync_list(self) -> None:
        async with aclosing(self.remote.subscribe(self._list_query())) as snapshots:
            async for snapshot in snapshots:
                changed = await self._apply(snapshot.documents)
                logger.debug(
                    f"Synced {len(snapshot.documents)} conversation(s) for {self.user_id}, "
                    f"{len(changed)} changed (from_cache={snapshot.from_cache})"
                )

    async def _sync_one(self, conversation_id: str) -> None:
        path = conversation_path(conversation_id)
        async with aclosing(self.remote.subscribe_document(path)) as snapshots:
            async for snapshot in snapshots:
                await self._apply([snapshot])

    def _visible(self, rows: list[Conversation]) -> list[Conversation]:
        return [c for c in rows if not c.is_hidden_for(self.user_id)]

    async def _visible_stream(self) -> AsyncIterator[list[Conversation]]:
        stream = self.store.observe_all(self.user_id)
        last = None
        async with aclosing(stream):
            async for rows in stream:
                visible = self._visible(rows)
                if visible != last:
                    last = visible
                    yield visible

    async def observe_conversations(self) -> AsyncIterator[list[Conversation]]:
        """Stream the user's conversations, newest activity first.

        Conversations the user deleted stay hidden until newer activity
        arrives after the deletion.
        """
        stream = self._visible_stream()
        async with aclosing(stream):
            first = await stream.__anext__()
            async with self.session.subscriptions.held(
                ("conversations", self.user_id),
                lambda: self._quietly(self.user_id, self._sync_list()),
            ) as subscription:
                yield first
                async with aclosing(follow(stream, subscription)) as updates:
                    async for conversations in updates:
                        yield conversations

    async def observe_conversation(self, conversation_id: str) -> AsyncIterator[Conversation | None]:
        """Stream one conversation: the cached row (or None) first, then every change."""
        stream = self.store.observe_by_id(conversation_id)
        async with aclosing(stream):
            first = await stream.__anext__()
            async with self.session.subscriptions.held(
                ("conversation", conversation_id),
                lambda: self._quietly(conversation_id, self._sync_one(conversation_id)),
            ) as subscription:
                yield first
                async with aclosing(follow(stream, subscription)) as updates:
                    async for conversation in updates:
                        yield conversation

    async def get_conversations(self) -> list[Conversation]:
        try:
            snapshot = await self.remote.query(self._list_query())
        except OFFLINE_ERRORS as e:
            logger.warning(f"Remote read of conversations failed, using local: {e}")
        else:
            await self._apply(snapshot.documents)
        return self._visible(await self.store.get_all(self.user_id))

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        """One-shot read. A conversation missing remotely falls back to the local row."""
        try:
            snapshot = await self.remote.get(conversation_path(conversation_id))
        except OFFLINE_ERRORS as e:
            logger.warning(f"Remote read of {conversation_id} failed, using local: {e}")
        else:
            if snapshot.exists:
                await self._apply([snapshot])
        return await self.store.get_by_id(conversation_id)

    async def _load(self, conversation_id: str) -> Conversation:
        conversation = await self.store.get_by_id(conversation_id)
        if conversation is None:
            conversation = await self.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    # ============= Create =============

    async def _create(self, conversation: Conversation) -> Conversation:
        await self.store.upsert(conversation)
        try:
            await self.remote.set(
                conversation_path(conversation.id), conversation_to_document(conversation)
            )
        except Exception as e:
            logger.error(f"Failed to create conversation {conversation.id}: {e!r}")
            raise
        logger.info(f"Created {conversation.type.value} conversation {conversation.id}")
        return conversation

    async def create_conversation(
        self,
        participants: list[str],
        *,
        type: ConversationType = ConversationType.ONE_ON_ONE,
        name: str | None = None,
        icon_url: str | None = None,
    ) -> Conversation:
        """Create a conversation that includes the current user.

        The row is in the local store before the remote write starts; a
        remote failure is raised and the local row is kept.
        """
        members = _unique([self.user_id, *participants])
        if type == ConversationType.ONE_ON_ONE and len(members) != 2:
            raise InvalidArgumentError("A one-on-one conversation needs exactly one other user")
        if len(members) < 2:
            raise InvalidArgumentError("A conversation needs at least one other user")

        now = now_ms()
        return await self._create(
            Conversation(
                type=type,
                participants=members,
                name=name,
                icon_url=icon_url,
                creator_id=self.user_id,
                group_admins=[self.user_id] if type == ConversationType.GROUP else [],
                updated_at=now,
                created_at=now,
            )
        )

    async def find_or_create_one_on_one(self, other_user_id: str) -> Conversation:
        """Return the existing one-on-one with other_user_id, or create it."""
        if not other_user_id or other_user_id == self.user_id:
            raise InvalidArgumentError("Pick another user to chat with")

        query = (
            Query(CONVERSATIONS_COLLECTION)
            .where("participants", "array_contains", self.user_id)
            .where("type", "==", ConversationType.ONE_ON_ONE.value)
        )
        try:
            snapshot = await self.remote.query(query)
        except OFFLINE_ERRORS as e:
            logger.warning(f"Remote lookup of one-on-one failed, using local: {e}")
            candidates = await self.store.get_all(self.user_id)
        else:
            candidates = parse_batch(snapshot.documents, parse_conversation)
            await self.store.merge_all(candidates, merge_conversation)

        pair = {self.user_id, other_user_id}
        matches = sorted(
            (
                c
                for c in candidates
                if c.type == ConversationType.ONE_ON_ONE and set(c.participants) == pair
            ),
            key=lambda c: (c.created_at, c.id),
        )
        if matches:
            return await self.store.get_by_id(matches[0].id) or matches[0]
        return await self.create_conversation([other_user_id])

    async def create_group(
        self, participant_ids: list[str], name: str, icon_url: str | None = None
    ) -> Conversation:
        """Create a group with the current user as its only admin."""
        name = (name or "").strip()
        if not name:
            raise InvalidArgumentError("Group name is required")
        others = [u for u in _unique(participant_ids) if u != self.user_id]
        if len(others) < MIN_GROUP_OTHERS:
            raise InvalidArgumentError(f"A group needs at least {MIN_GROUP_OTHERS} other members")
        if len(others) > MAX_GROUP_SIZE - 1:
            raise InvalidArgumentError(f"A group can have at most {MAX_GROUP_SIZE} members")

        return await self.create_conversation(
            others, type=ConversationType.GROUP, name=name, icon_url=icon_url
        )

    # ============= Updates =============

    async def _update(
        self,
        conversation_id: str,
        change: Callable[[Conversation], Conversation],
        fields: dict,
        touch: bool = True,
    ) -> Conversation:
        """Apply change locally, then send fields to the remote document.

        touch bumps ``updated_at``, which also reorders the conversation list.
        """
        now = now_ms()

        def local_change(conversation: Conversation) -> Conversation:
            updated = change(conversation)
            if touch:
                updated = updated.model_copy(update={"updated_at": max(conversation.updated_at, now)})
            return updated

        row = await self.store.modify(conversation_id, local_change)
        if row is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        if touch:
            fields = {**fields, "updatedAt": row.updated_at}
        try:
            await self.remote.update(conversation_path(conversation_id), fields)
        except Exception as e:
            logger.error(f"Failed to update conversation {conversation_id}: {e!r}")
            raise
        return row

    def _require_group_admin(self, conversation: Conversation) -> None:
        if conversation.type != ConversationType.GROUP:
            raise InvalidArgumentError(f"Conversation {conversation.id} is not a group")
        if self.user_id not in conversation.group_admins:
            raise PermissionDeniedError("Only group admins can do that")

    async def update_group(
        self, conversation_id: str, *, name: str | None = None, icon_url: str | None = None
    ) -> Conversation:
        conversation = await self._load(conversation_id)
        self._require_group_admin(conversation)

        changes: dict = {}
        if name is not None:
            name = name.strip()
            if not name:
                raise InvalidArgumentError("Group name is required")
            changes["name"] = name
        if icon_url is not None:
            changes["icon_url"] = icon_url
        if not changes:
            return conversation

        fields = {
            "name": changes.get("name", conversation.name),
            "iconUrl": changes.get("icon_url", conversation.icon_url),
        }
        return await self._update(
            conversation_id, lambda c: c.model_copy(update=changes), fields
        )

    async def _membership(
        self, conversation_id: str, change: Callable[[Conversation], Conversation | None]
    ) -> Conversation:
        """Change participants/admins in a transaction so concurrent edits are not lost."""
        path = conversation_path(conversation_id)

        async def fn(txn: Transaction) -> Conversation:
            snapshot = await txn.get(path)
            if not snapshot.exists:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            conversation = parse_conversation(snapshot)
            updated = change(conversation)
            if updated is None:
                return conversation
            updated = updated.model_copy(update={"updated_at": max(conversation.updated_at, now_ms())})
            txn.update(
                path,
                {
                    "participants": updated.participants,
                    "groupAdmins": updated.group_admins,
                    "updatedAt": updated.updated_at,
                },
            )
            return updated

        conversation = await self.remote.run_transaction(fn)
        await self.store.merge_all([conversation], merge_conversation)
        return conversation

    async def add_participants(self, conversation_id: str, user_ids: list[str]) -> Conversation:
        def change(conversation: Conversation) -> Conversation | None:
            self._require_group_admin(conversation)
            new = [u for u in _unique(user_ids) if u not in conversation.participants]
            if not new:
                return None
            if len(conversation.participants) + len(new) > MAX_GROUP_SIZE:
                raise InvalidArgumentError(f"A group can have at most {MAX_GROUP_SIZE} members")
            return conversation.model_copy(update={"participants": conversation.participants + new})

        return await self._membership(conversation_id, change)

    async def remove_participant(self, conversation_id: str, user_id: str) -> Conversation:
        """Remove a member (admins only) or leave the group (anyone, for themselves).

        The member loses admin rights too. If no admin is left, the longest
        standing remaining member is promoted.
        """

        def change(conversation: Conversation) -> Conversation | None:
            if conversation.type != ConversationType.GROUP:
                raise InvalidArgumentError(f"Conversation {conversation.id} is not a group")
            if user_id != self.user_id:
                self._require_group_admin(conversation)
            if user_id not in conversation.participants:
                return None
            participants = [p for p in conversation.participants if p != user_id]
            if not participants:
                raise InvalidArgumentError("Cannot remove the last member; delete the group instead")
            admins = [a for a in conversation.group_admins if a != user_id] or participants[:1]
            return conversation.model_copy(update={"participants": participants, "group_admins": admins})

        return await self._membership(conversation_id, change)

    async def set_nickname(self, conversation_id: str, user_id: str, nickname: str | None) -> Conversation:
        """Set or clear (None or blank) a participant's nickname in this conversation."""
        conversation = await self._load(conversation_id)
        if user_id not in conversation.participants:
            raise InvalidArgumentError(f"{user_id} is not in conversation {conversation_id}")
        nickname = (nickname or "").strip() or None

        def change(c: Conversation) -> Conversation:
            nicknames = {k: v for k, v in c.nicknames.items() if k != user_id}
            if nickname is not None:
                nicknames[user_id] = nickname
            return c.model_copy(update={"nicknames": nicknames})

        return await self._update(
            conversation_id,
            change,
            {f"nicknames.{user_id}": nickname if nickname is not None else DELETE_FIELD},
            touch=False,
        )

    async def set_auto_translate(self, conversation_id: str, enabled: bool) -> Conversation:
        """Local preference; never sent to the remote."""
        row = await self.store.modify(
            conversation_id, lambda c: c.model_copy(update={"auto_translate_enabled": enabled})
        )
        if row is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return row

    async def delete_for_user(self, conversation_id: str) -> Conversation:
        """Hide the conversation for this user until new activity arrives."""
        conversation = await self._load(conversation_id)
        deleted_at = max(now_ms(), conversation.updated_at)
        return await self._update(
            conversation_id,
            lambda c: c.model_copy(update={"deleted_at": {**c.deleted_at, self.user_id: deleted_at}}),
            {f"deletedAt.{self.user_id}": deleted_at},
            touch=False,
        )

    async def delete(self, conversation_id: str) -> None:
        """Delete the conversation and its messages for everyone."""
        conversation = await self._load(conversation_id)
        if conversation.type == ConversationType.GROUP:
            self._require_group_admin(conversation)

        await self.session.subscriptions.stop(("messages", conversation_id))
        await self.session.subscriptions.stop(("conversation", conversation_id))
        await self.store.delete(conversation_id)
        removed = await self.session.message_store.delete_scope(conversation_id)

        snapshot = await self.remote.query(Query(messages_collection(conversation_id)))
        await asyncio.gather(*(self.remote.delete(doc.path) for doc in snapshot.documents))
        await self.remote.delete(conversation_path(conversation_id))
        logger.info(
            f"Deleted conversation {conversation_id} "
            f"({len(snapshot.documents)} remote, {removed} local message(s))"
        )

    async def update_last_message(self, message: Message) -> Conversation | None:
        """Point the conversation preview at message after it was sent.

        Best effort: a failure is logged and the message stays sent. An older
        message never replaces a newer preview.
        """
        summary = LastMessage(
            id=message.id,
            sender_id=message.sender_id,
            text=message.text,
            type=message.type.value,
            media_url=message.media_url,
            timestamp=message.timestamp,
        )
        path = conversation_path(message.conversation_id)

        async def fn(txn: Transaction) -> Conversation | None:
            snapshot = await txn.get(path)
            if not snapshot.exists:
                return None
            conversation = parse_conversation(snapshot)
            current = conversation.last_message
            if current is not None and current.timestamp > summary.timestamp:
                return conversation
            updated = conversation.model_copy(
                update={
                    "last_message": summary,
                    "updated_at": max(conversation.updated_at, summary.timestamp),
                }
            )
            txn.update(
                path,
                {"lastMessage": last_message_to_document(summary), "updatedAt": updated.updated_at},
            )
            return updated

        try:
            conversation = await self.remote.run_transaction(fn)
        except Exception as e:
            logger.warning(f"Could not update preview of {message.conversation_id}: {e!r}")
            return None
        if conversation is not None:
            await self.store.merge_all([conversation], merge_conversation)
        return conversation
