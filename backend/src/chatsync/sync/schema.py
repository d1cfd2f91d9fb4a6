"""Versioned parsers for remote documents.

Remote documents use camelCase field names. Several shapes coexist in the
wild, so each entity has an ordered list of schemas: the current one first,
then named legacy shapes. Every schema produces the same canonical model;
a document that matches none of them is reported as malformed.
"""

import logging
from datetime import datetime, timezone
from typing import Annotated, Any, Callable

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from models import (
    Conversation,
    ConversationType,
    LastMessage,
    Message,
    MessageStatus,
    MessageType,
)

from chatsync.errors import MalformedRemoteDataError
from chatsync.remote import DocumentSnapshot

logger = logging.getLogger(__name__)


def to_millis(value: Any) -> int | None:
    """Convert a remote timestamp to ms since the epoch.

    Accepts ms numbers (or their decimal strings), datetimes (naive ones are
    UTC), ISO-8601 strings and ``{"seconds", "nanoseconds"}`` maps as written
    by older clients.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("boolean is not a timestamp")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, str):
        value = value.strip()
        if value.lstrip("-").isdigit():
            return int(value)
        return to_millis(datetime.fromisoformat(value))
    if isinstance(value, dict) and "seconds" in value:
        return int(value["seconds"]) * 1000 + int(value.get("nanoseconds", 0)) // 1_000_000
    raise ValueError(f"unsupported timestamp {value!r}")


Millis = Annotated[int, BeforeValidator(to_millis)]


class _Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ============= Messages =============


class MessageDocument(_Document):
    """Current message shape: ``readBy`` is a userId -> ms map."""

    conversation_id: str
    sender_id: str
    type: MessageType = MessageType.TEXT
    text: str | None = None
    media_url: str | None = None
    audio_duration: int | None = None
    audio_waveform: list[float] | None = None
    transcription: str | None = None
    cultural_context: str | None = None
    timestamp: Millis | None = None
    # a document that exists remotely has at least been sent
    status: MessageStatus = MessageStatus.SENT
    read_by: dict[str, Millis] = Field(default_factory=dict)
    reactions: dict[str, list[str]] = Field(default_factory=dict)

    @field_validator("read_by", "reactions", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    def read_receipts(self) -> dict[str, int]:
        return dict(self.read_by)


class LegacyMessageDocument(MessageDocument):
    """Older message shape: ``readBy`` is a bare list of user IDs."""

    read_by: list[str] = Field(default_factory=list)  # type: ignore[assignment]

    @field_validator("read_by", "reactions", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return [] if info.field_name == "read_by" else {}
        return value

    def read_receipts(self) -> dict[str, int]:
        # No read time was recorded; the send time keeps repeated merges stable
        ts = self.timestamp or 0
        return {user_id: ts for user_id in self.read_by}


MESSAGE_SCHEMAS: list[tuple[str, type[MessageDocument]]] = [
    ("current", MessageDocument),
    ("legacy-readby-list", LegacyMessageDocument),
]


# ============= Conversations =============


class LastMessageDocument(_Document):
    id: str
    sender_id: str
    text: str | None = None
    type: str | None = None
    media_url: str | None = None
    timestamp: Millis | None = None


class ConversationDocument(_Document):
    """Current conversation shape. Groups always carry ``groupAdmins``."""

    type: ConversationType = ConversationType.ONE_ON_ONE
    participants: list[str] = Field(..., min_length=1)
    name: str | None = None
    icon_url: str | None = None
    creator_id: str | None = None
    group_admins: list[str] = Field(default_factory=list)
    nicknames: dict[str, str] = Field(default_factory=dict)
    last_message: LastMessageDocument | None = None
    deleted_at: dict[str, Millis] = Field(default_factory=dict)
    updated_at: Millis | None = None
    created_at: Millis | None = None

    @field_validator("group_admins", "nicknames", "deleted_at", mode="before")
    @classmethod
    def _none_as_default(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return [] if info.field_name == "group_admins" else {}
        return value

    @model_validator(mode="after")
    def _check_admins(self) -> "ConversationDocument":
        if self.type == ConversationType.GROUP and "group_admins" not in self.model_fields_set:
            raise ValueError("group conversation without groupAdmins")
        return self


class LegacyConversationDocument(ConversationDocument):
    """Conversation written before admins, nicknames and soft deletes existed.

    The creator is taken as the only admin, and a partial ``lastMessage``
    summary is dropped rather than failing the whole document.
    """

    @field_validator("last_message", mode="before")
    @classmethod
    def _partial_summary(cls, value: Any) -> Any:
        if not isinstance(value, dict) or "id" not in value or "senderId" not in value:
            return None
        return value

    @model_validator(mode="after")
    def _check_admins(self) -> "LegacyConversationDocument":
        if self.type == ConversationType.GROUP and not self.group_admins and self.creator_id:
            self.group_admins = [self.creator_id]
        return self


CONVERSATION_SCHEMAS: list[tuple[str, type[ConversationDocument]]] = [
    ("current", ConversationDocument),
    ("legacy-v1", LegacyConversationDocument),
]


# ============= Parsing =============


def _parse(path: str, data: dict[str, Any], schemas: list[tuple[str, type[_Document]]]) -> _Document:
    problems = []
    for version, schema in schemas:
        try:
            document = schema.model_validate(data)
        except ValidationError as e:
            problems.append(f"{version}: {e.error_count()} error(s), first: {e.errors()[0]['msg']}")
            continue
        if version != schemas[0][0]:
            logger.debug(f"Read {path} with {version} schema")
        return document
    raise MalformedRemoteDataError(path, "; ".join(problems))


def _unique(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


def conversation_id_from_path(path: str) -> str:
    # conversations/{conversation_id}/messages/{message_id}
    return path.split("/")[1]


def parse_message(snapshot: DocumentSnapshot) -> Message:
    """Map a message document to the canonical model.

    Raises:
        MalformedRemoteDataError: If no known schema accepts the document

    """
    if snapshot.data is None:
        raise MalformedRemoteDataError(snapshot.path, "document does not exist")
    data = {"conversationId": conversation_id_from_path(snapshot.path), **snapshot.data}
    document: MessageDocument = _parse(snapshot.path, data, MESSAGE_SCHEMAS)  # type: ignore[assignment]

    return Message(
        id=snapshot.id,
        conversation_id=document.conversation_id,
        sender_id=document.sender_id,
        type=document.type,
        text=document.text,
        media_url=document.media_url,
        audio_duration=document.audio_duration,
        audio_waveform=document.audio_waveform,
        transcription=document.transcription,
        cultural_context=document.cultural_context,
        timestamp=document.timestamp or 0,
        status=document.status,
        read_by=document.read_receipts(),
        reactions={
            emoji: sorted(set(users)) for emoji, users in document.reactions.items() if users
        },
    )


def parse_conversation(snapshot: DocumentSnapshot) -> Conversation:
    """Map a conversation document to the canonical model.

    Missing timestamps fall back to each other, then to 0, so the result
    does not depend on when the document was read.

    Raises:
        MalformedRemoteDataError: If no known schema accepts the document

    """
    if snapshot.data is None:
        raise MalformedRemoteDataError(snapshot.path, "document does not exist")
    document: ConversationDocument = _parse(
        snapshot.path, snapshot.data, CONVERSATION_SCHEMAS
    )  # type: ignore[assignment]

    participants = _unique(document.participants)
    last = document.last_message
    return Conversation(
        id=snapshot.id,
        type=document.type,
        participants=participants,
        name=document.name,
        icon_url=document.icon_url,
        creator_id=document.creator_id,
        group_admins=[a for a in _unique(document.group_admins) if a in participants],
        nicknames=document.nicknames,
        last_message=(
            LastMessage(
                id=last.id,
                sender_id=last.sender_id,
                text=last.text,
                type=last.type,
                media_url=last.media_url,
                timestamp=last.timestamp or 0,
            )
            if last is not None
            else None
        ),
        deleted_at=document.deleted_at,
        updated_at=document.updated_at or document.created_at or 0,
        created_at=document.created_at or document.updated_at or 0,
    )


def parse_batch(
    snapshots: list[DocumentSnapshot], parse: Callable[[DocumentSnapshot], Any]
) -> list[Any]:
    """Parse every document that exists, skipping malformed ones with a warning."""
    entities = []
    for snapshot in snapshots:
        if not snapshot.exists:
            continue
        try:
            entities.append(parse(snapshot))
        except MalformedRemoteDataError as e:
            logger.warning(f"Skipping document: {e}")
    return entities


# ============= Serialization =============


def message_to_document(message: Message) -> dict[str, Any]:
    """Canonical remote shape of a message (the ID lives in the path)."""
    document = MessageDocument.model_validate(message.model_dump(exclude={"id"}))
    return document.model_dump(by_alias=True, mode="json")


def last_message_to_document(summary: LastMessage) -> dict[str, Any]:
    return LastMessageDocument.model_validate(summary.model_dump()).model_dump(
        by_alias=True, mode="json"
    )


def conversation_to_document(conversation: Conversation) -> dict[str, Any]:
    """Canonical remote shape of a conversation.

    ``auto_translate_enabled`` is a local preference and never leaves the device.
    """
    document = ConversationDocument.model_validate(
        conversation.model_dump(exclude={"id", "auto_translate_enabled"})
    )
    return document.model_dump(by_alias=True, mode="json")
