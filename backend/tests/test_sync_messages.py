"""Tests for message sync: optimistic sends, streams and transactional updates."""

import asyncio

import pytest

from models import ConversationType, Message, MessageStatus, MessageType, TranslationResult

from chatsync.errors import (
    InvalidArgumentError,
    NotAuthenticatedError,
    NotFoundError,
    PermissionDeniedError,
    RemoteUnavailableError,
)
from chatsync.remote import conversation_path, message_path
from chatsync.sync import SyncSession

from conftest import conversation_doc


async def next_item(stream, timeout: float = 1.0):
    return await asyncio.wait_for(stream.__anext__(), timeout=timeout)


def message_doc(sender="bob", text="hi", timestamp=1000, status="SENT", **fields):
    return {
        "conversationId": "c1",
        "senderId": sender,
        "type": "TEXT",
        "text": text,
        "timestamp": timestamp,
        "status": status,
        **fields,
    }


class TestSession:
    def test_requires_user(self, remote):
        with pytest.raises(NotAuthenticatedError):
            SyncSession(None, remote)
        with pytest.raises(NotAuthenticatedError):
            SyncSession("", remote)


class TestSendMessage:
    """Test the optimistic send path."""

    @pytest.mark.asyncio
    async def test_send_writes_sending_then_sent(self, remote, make_session):
        await remote.set(conversation_path("c1"), conversation_doc(["alice", "bob"]))
        session = make_session("alice")

        task = await session.messages.send_message("c1", "hello")

        local = await session.message_store.get_all("c1")
        assert [(m.text, m.status) for m in local] == [("hello", MessageStatus.SENDING)]

        sent = await task

        assert sent.status == MessageStatus.SENT
        assert (await session.message_store.get_by_id(sent.id)).status == MessageStatus.SENT
        document = (await remote.get(message_path("c1", sent.id))).data
        assert document["status"] == "SENT"
        assert document["senderId"] == "alice"
        await session.close()

    @pytest.mark.asyncio
    async def test_send_updates_conversation_preview(self, remote, make_session):
        await remote.set(conversation_path("c1"), conversation_doc(["alice", "bob"], updated_at=1000))
        session = make_session("alice")

        sent = await (await session.messages.send_message("c1", "hello"))

        conversation = (await remote.get(conversation_path("c1"))).data
        assert conversation["lastMessage"]["id"] == sent.id
        assert conversation["lastMessage"]["text"] == "hello"
        assert conversation["updatedAt"] == sent.timestamp
        await session.close()

    @pytest.mark.asyncio
    async def test_remote_failure_marks_failed(self, remote, make_session):
        """The row ends FAILED and keeps its text for a resend."""
        session = make_session("alice")
        remote.fail_next(RemoteUnavailableError("network unreachable"), operation="set")

        task = await session.messages.send_message("c1", "hi")
        failed = await task

        assert failed.status == MessageStatus.FAILED
        assert failed.text == "hi"
        assert not (await remote.get(message_path("c1", failed.id))).exists
        await session.close()

    @pytest.mark.asyncio
    async def test_validation(self, make_session):
        session = make_session("alice")

        with pytest.raises(InvalidArgumentError):
            await session.messages.send_message("c1", "   ")
        with pytest.raises(InvalidArgumentError):
            await session.messages.send_message("c1", type=MessageType.IMAGE)

        assert await session.message_store.get_all("c1") == []
        await session.close()

    @pytest.mark.asyncio
    async def test_media_message(self, remote, make_session):
        session = make_session("alice")

        sent = await (
            await session.messages.send_message(
                "c1",
                type=MessageType.AUDIO,
                media_url="https://cdn.example.com/a.m4a",
                audio_duration=4,
                audio_waveform=[0.1, 0.5],
            )
        )

        document = (await remote.get(message_path("c1", sent.id))).data
        assert document["type"] == "AUDIO"
        assert document["audioDuration"] == 4
        await session.close()

    @pytest.mark.asyncio
    async def test_close_abandons_commit_and_retry_resends(self, remote, stores, make_session):
        session = make_session("alice", stores)
        task = await session.messages.send_message("c1", "queued")

        await session.close()

        assert task.cancelled()
        pending = await stores["message_store"].get_all("c1")
        assert [m.status for m in pending] == [MessageStatus.SENDING]

        next_session = make_session("alice", stores)
        results = await asyncio.gather(*await next_session.messages.retry_pending("c1"))

        assert [m.status for m in results] == [MessageStatus.SENT]
        assert (await remote.get(message_path("c1", pending[0].id))).exists
        await next_session.close()


class TestObserveMessages:
    """Test the local-first message stream."""

    @pytest.mark.asyncio
    async def test_cached_rows_come_first(self, remote, stores, make_session):
        await stores["message_store"].upsert(
            Message(
                id="m1",
                conversation_id="c1",
                sender_id="bob",
                text="cached",
                timestamp=1000,
                status=MessageStatus.SENT,
            )
        )
        await remote.set(message_path("c1", "m1"), message_doc(text="fresh"))
        session = make_session("alice", stores)

        stream = session.messages.observe_messages("c1")
        first = await next_item(stream)
        second = await next_item(stream)

        assert [m.text for m in first] == ["cached"]
        assert [m.text for m in second] == ["fresh"]
        await stream.aclose()
        await session.close()

    @pytest.mark.asyncio
    async def test_follows_remote_changes_in_order(self, remote, make_session):
        session = make_session("alice")
        stream = session.messages.observe_messages("c1")
        assert await next_item(stream) == []

        await remote.set(message_path("c1", "m2"), message_doc(text="second", timestamp=2000))
        assert [m.id for m in await next_item(stream)] == ["m2"]

        await remote.set(message_path("c1", "m1"), message_doc(text="first", timestamp=1000))
        assert [m.id for m in await next_item(stream)] == ["m1", "m2"]

        await stream.aclose()
        await session.close()

    @pytest.mark.asyncio
    async def test_one_subscription_per_conversation(self, remote, make_session):
        await remote.set(message_path("c1", "m1"), message_doc())
        session = make_session("alice")
        first = session.messages.observe_messages("c1")
        second = session.messages.observe_messages("c1")

        await next_item(first)
        await next_item(first)
        await next_item(second)

        assert len(session.subscriptions) == 1
        assert remote.listener_count == 1
        await first.aclose()
        await second.aclose()
        await session.close()

    @pytest.mark.asyncio
    async def test_last_observer_stops_the_subscription(self, remote, make_session):
        await remote.set(message_path("c1", "m1"), message_doc())
        session = make_session("alice")
        first = session.messages.observe_messages("c1")
        second = session.messages.observe_messages("c1")
        await next_item(first)
        await next_item(first)
        await next_item(second)

        await first.aclose()
        assert len(session.subscriptions) == 1
        assert remote.listener_count == 1

        await second.aclose()
        assert len(session.subscriptions) == 0
        assert remote.listener_count == 0
        await session.close()

    @pytest.mark.asyncio
    async def test_reopening_starts_a_fresh_subscription(self, remote, make_session):
        session = make_session("alice")
        stream = session.messages.observe_messages("c1")
        await next_item(stream)
        await stream.aclose()

        await remote.set(message_path("c1", "m1"), message_doc(text="while closed"))
        stream = session.messages.observe_messages("c1")
        assert await next_item(stream) == []
        assert [m.text for m in await next_item(stream)] == ["while closed"]

        await stream.aclose()
        await session.close()

    @pytest.mark.asyncio
    async def test_permission_loss_ends_quietly(self, remote, make_session):
        await remote.set(message_path("c1", "m1"), message_doc())
        session = make_session("alice")
        stream = session.messages.observe_messages("c1")
        await next_item(stream)
        await next_item(stream)

        remote.revoke_access()

        with pytest.raises(StopAsyncIteration):
            await next_item(stream)
        await session.close()

    @pytest.mark.asyncio
    async def test_other_errors_reach_the_observer(self, remote, make_session):
        await remote.set(message_path("c1", "m1"), message_doc())
        session = make_session("alice")
        stream = session.messages.observe_messages("c1")
        await next_item(stream)
        await next_item(stream)

        remote.break_listeners(RemoteUnavailableError("connection reset"))

        with pytest.raises(RemoteUnavailableError):
            await next_item(stream)
        await session.close()


class TestGetMessages:
    @pytest.mark.asyncio
    async def test_refreshes_from_remote(self, remote, make_session):
        await remote.set(message_path("c1", "m1"), message_doc(text="one", timestamp=1))
        await remote.set(message_path("c1", "m2"), message_doc(text="two", timestamp=2))
        session = make_session("alice")

        messages = await session.messages.get_messages("c1")

        assert [m.text for m in messages] == ["one", "two"]
        await session.close()

    @pytest.mark.asyncio
    async def test_applying_same_state_twice_is_stable(self, remote, make_session):
        await remote.set(
            message_path("c1", "m1"),
            message_doc(readBy={"alice": 1500}, reactions={"👍": ["alice"]}),
        )
        session = make_session("alice")

        first = await session.messages.get_messages("c1")
        second = await session.messages.get_messages("c1")

        assert first == second
        await session.close()

    @pytest.mark.asyncio
    async def test_local_status_never_regresses(self, remote, stores, make_session):
        await stores["message_store"].upsert(
            Message(
                id="m1",
                conversation_id="c1",
                sender_id="bob",
                text="hi",
                timestamp=1000,
                status=MessageStatus.READ,
            )
        )
        await remote.set(message_path("c1", "m1"), message_doc(status="SENT"))
        session = make_session("alice", stores)

        messages = await session.messages.get_messages("c1")

        assert messages[0].status == MessageStatus.READ
        await session.close()

    @pytest.mark.asyncio
    async def test_malformed_documents_are_skipped(self, remote, make_session):
        await remote.set(message_path("c1", "good"), message_doc())
        await remote.set(message_path("c1", "bad"), {"text": "no sender", "timestamp": 5})
        session = make_session("alice")

        messages = await session.messages.get_messages("c1")

        assert [m.id for m in messages] == ["good"]
        await session.close()

    @pytest.mark.asyncio
    async def test_offline_falls_back_to_local(self, remote, stores, make_session):
        await stores["message_store"].upsert(
            Message(id="m1", conversation_id="c1", sender_id="bob", text="cached", timestamp=1)
        )
        session = make_session("alice", stores)
        remote.fail_next(RemoteUnavailableError("offline"), operation="query")

        messages = await session.messages.get_messages("c1")

        assert [m.text for m in messages] == ["cached"]
        await session.close()

    @pytest.mark.asyncio
    async def test_permission_denied_propagates(self, remote, make_session):
        session = make_session("alice")
        remote.revoke_access()

        with pytest.raises(PermissionDeniedError):
            await session.messages.get_messages("c1")
        await session.close()


class TestMessageUpdates:
    """Test transactional status, read and reaction updates."""

    @pytest.mark.asyncio
    async def test_update_status_forward_only(self, remote, make_session):
        await remote.set(message_path("c1", "m1"), message_doc())
        session = make_session("alice")

        delivered = await session.messages.update_status("c1", "m1", MessageStatus.DELIVERED)
        again = await session.messages.update_status("c1", "m1", MessageStatus.SENT)

        assert delivered.status == MessageStatus.DELIVERED
        assert again.status == MessageStatus.DELIVERED
        assert (await remote.get(message_path("c1", "m1"))).data["status"] == "DELIVERED"
        await session.close()

    @pytest.mark.asyncio
    async def test_missing_message(self, make_session):
        session = make_session("alice")
        with pytest.raises(NotFoundError):
            await session.messages.update_status("c1", "nope", MessageStatus.DELIVERED)
        await session.close()

    @pytest.mark.asyncio
    async def test_mark_as_read_one_on_one(self, remote, make_session):
        await remote.set(conversation_path("c1"), conversation_doc(["alice", "bob"]))
        await remote.set(message_path("c1", "m1"), message_doc(sender="bob"))
        session = make_session("alice")
        await session.conversations.get_conversation("c1")

        message = await session.messages.mark_as_read("c1", "m1")

        assert "alice" in message.read_by
        assert message.status == MessageStatus.READ
        await session.close()

    @pytest.mark.asyncio
    async def test_mark_as_read_migrates_legacy_receipts(self, remote, make_session):
        """A readBy list is rewritten as a map; the group reads as READ once everyone has."""
        await remote.set(
            conversation_path("c1"),
            conversation_doc(["bob", "alice", "carol"], type=ConversationType.GROUP),
        )
        await remote.set(message_path("c1", "m1"), message_doc(sender="bob", readBy=["carol"]))
        session = make_session("alice")
        await session.conversations.get_conversation("c1")

        message = await session.messages.mark_as_read("c1", "m1")

        document = (await remote.get(message_path("c1", "m1"))).data
        assert isinstance(document["readBy"], dict)
        assert document["readBy"]["carol"] == 1000
        assert set(document["readBy"]) == {"alice", "carol"}
        assert message.status == MessageStatus.READ
        await session.close()

    @pytest.mark.asyncio
    async def test_group_not_read_until_everyone_has(self, remote, make_session):
        await remote.set(
            conversation_path("c1"),
            conversation_doc(["bob", "alice", "carol"], type=ConversationType.GROUP),
        )
        await remote.set(message_path("c1", "m1"), message_doc(sender="bob"))
        session = make_session("alice")
        await session.conversations.get_conversation("c1")

        message = await session.messages.mark_as_read("c1", "m1")

        assert message.status == MessageStatus.SENT
        await session.close()

    @pytest.mark.asyncio
    async def test_reading_own_message_is_a_no_op(self, remote, make_session):
        await remote.set(message_path("c1", "m1"), message_doc(sender="alice"))
        session = make_session("alice")

        message = await session.messages.mark_as_read("c1", "m1")

        assert message.read_by == {}
        assert message.status == MessageStatus.SENT
        await session.close()

    @pytest.mark.asyncio
    async def test_second_read_keeps_first_time(self, remote, make_session):
        await remote.set(message_path("c1", "m1"), message_doc(readBy={"alice": 1234}))
        session = make_session("alice")

        message = await session.messages.mark_as_read("c1", "m1")

        assert message.read_by == {"alice": 1234}
        await session.close()

    @pytest.mark.asyncio
    async def test_reaction_replaces_previous(self, remote, make_session):
        await remote.set(message_path("c1", "m1"), message_doc(reactions={"👍": ["alice"]}))
        session = make_session("alice")

        message = await session.messages.add_reaction("c1", "m1", "❤️")

        assert message.reactions == {"❤️": ["alice"]}
        assert message.user_reaction("alice") == "❤️"
        document = (await remote.get(message_path("c1", "m1"))).data
        assert document["reactions"] == {"❤️": ["alice"]}
        await session.close()

    @pytest.mark.asyncio
    async def test_concurrent_reactions_from_two_users(self, remote, make_session):
        await remote.set(message_path("c1", "m1"), message_doc())
        alice = make_session("alice")
        carol = make_session("carol")

        await asyncio.gather(
            alice.messages.add_reaction("c1", "m1", "👍"),
            carol.messages.add_reaction("c1", "m1", "👍"),
        )

        document = (await remote.get(message_path("c1", "m1"))).data
        assert document["reactions"] == {"👍": ["alice", "carol"]}
        await alice.close()
        await carol.close()

    @pytest.mark.asyncio
    async def test_remove_reaction(self, remote, make_session):
        await remote.set(message_path("c1", "m1"), message_doc(reactions={"😂": ["alice", "bob"]}))
        session = make_session("alice")

        message = await session.messages.remove_reaction("c1", "m1")

        assert message.reactions == {"😂": ["bob"]}
        await session.close()

    @pytest.mark.asyncio
    async def test_unsupported_reaction(self, make_session):
        session = make_session("alice")
        with pytest.raises(InvalidArgumentError):
            await session.messages.add_reaction("c1", "m1", "🦄")
        await session.close()

    @pytest.mark.asyncio
    async def test_delete_message(self, remote, make_session):
        await remote.set(message_path("c1", "m1"), message_doc())
        session = make_session("alice")
        await session.messages.get_messages("c1")

        await session.messages.delete_message("c1", "m1")

        assert await session.message_store.get_by_id("m1") is None
        assert not (await remote.get(message_path("c1", "m1"))).exists
        await session.close()


class TestTranslations:
    @pytest.mark.asyncio
    async def test_record_and_observe(self, make_session):
        session = make_session("alice")
        message = Message(id="m1", conversation_id="c1", sender_id="bob", text="Hello", timestamp=1)
        stream = session.messages.observe_translation("m1", "es")
        assert await next_item(stream) is None

        await session.messages.record_translation(
            message,
            TranslationResult(translated_text="Hola", source_language="en", target_language="es"),
        )

        translation = await next_item(stream)
        assert translation.id == "m1:es"
        assert translation.original_text == "Hello"
        assert translation.translated_text == "Hola"
        await stream.aclose()
        await session.close()
