"""Deterministic merge rules for remote state arriving at the local store.

Every function here is pure and idempotent: merging the same incoming value
twice leaves the same result as merging it once.
"""

from models import Conversation, Message, MessageStatus


def advance_status(current: MessageStatus, incoming: MessageStatus) -> MessageStatus:
    """Resolve a status transition without ever regressing.

    FAILED only replaces SENDING, and nothing replaces FAILED.
    """
    if current == incoming or current == MessageStatus.FAILED:
        return current
    if incoming == MessageStatus.FAILED:
        return incoming if current == MessageStatus.SENDING else current
    return incoming if incoming.rank > current.rank else current


def add_read_receipt(read_by: dict[str, int], user_id: str, read_at: int) -> dict[str, int] | None:
    """Return read_by with the user's receipt added, or None if it is already there."""
    if user_id in read_by:
        return None
    return {**read_by, user_id: read_at}


def merge_read_receipts(existing: dict[str, int], incoming: dict[str, int]) -> dict[str, int]:
    # receipts are write-once per user: the first recorded time wins
    return {**incoming, **existing}


def apply_reaction(reactions: dict[str, list[str]], user_id: str, emoji: str) -> dict[str, list[str]]:
    """Give the user exactly one reaction, dropping sets that become empty."""
    updated = remove_reaction(reactions, user_id)
    updated[emoji] = sorted({*updated.get(emoji, []), user_id})
    return updated


def remove_reaction(reactions: dict[str, list[str]], user_id: str) -> dict[str, list[str]]:
    updated = {}
    for emoji, users in reactions.items():
        remaining = sorted({u for u in users if u != user_id})
        if remaining:
            updated[emoji] = remaining
    return updated


def merge_message(existing: Message | None, incoming: Message) -> Message:
    """Fold a remote message into the local row.

    Remote content wins, except that status never regresses, read receipts
    are only ever added, and locally attached transcription and cultural
    context survive a remote copy that lacks them.
    """
    if existing is None:
        return incoming
    return incoming.model_copy(
        update={
            "status": advance_status(existing.status, incoming.status),
            "read_by": merge_read_receipts(existing.read_by, incoming.read_by),
            "transcription": incoming.transcription or existing.transcription,
            "cultural_context": incoming.cultural_context or existing.cultural_context,
        }
    )


def merge_conversation(existing: Conversation | None, incoming: Conversation) -> Conversation:
    """Fold a remote conversation into the local row.

    A remote copy older than the local row is ignored so ``updated_at`` never
    decreases. Soft deletions are kept at their latest time per user, and the
    auto-translate preference is local and always kept.
    """
    if existing is None:
        return incoming
    if incoming.updated_at < existing.updated_at:
        return existing
    deleted_at = dict(incoming.deleted_at)
    for user_id, ts in existing.deleted_at.items():
        deleted_at[user_id] = max(ts, deleted_at.get(user_id, ts))
    return incoming.model_copy(
        update={
            "auto_translate_enabled": existing.auto_translate_enabled,
            "deleted_at": deleted_at,
        }
    )
