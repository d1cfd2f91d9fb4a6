"""Message models."""

from enum import Enum

from pydantic import BaseModel, Field

from models.common import new_id, now_ms

# Reactions offered by the client picker
SUPPORTED_REACTIONS = frozenset({"👍", "❤️", "😂", "😮", "😢", "🙏"})


class MessageType(str, Enum):
    """Kind of message payload."""

    TEXT = "TEXT"
    IMAGE = "IMAGE"
    AUDIO = "AUDIO"
    SYSTEM = "SYSTEM"  # "User joined", "Group created", ...


class MessageStatus(str, Enum):
    """Delivery status of a message."""

    SENDING = "SENDING"  # Optimistic local write, not yet committed
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"
    FAILED = "FAILED"  # Terminal; a resend uses a new message ID

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    MessageStatus.SENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
    MessageStatus.FAILED: -1,
}


class Message(BaseModel):
    """A single message in a conversation."""

    id: str = Field(default_factory=new_id, description="Unique message ID")
    conversation_id: str = Field(..., description="Parent conversation ID")
    sender_id: str = Field(..., description="Sender user ID")
    type: MessageType = Field(default=MessageType.TEXT)
    text: str | None = Field(None, description="Message text")
    media_url: str | None = Field(None, description="Image or audio reference")
    audio_duration: int | None = Field(None, description="Audio duration in seconds")
    audio_waveform: list[float] | None = Field(None, description="Waveform samples")
    transcription: str | None = Field(None, description="Voice message transcription")
    cultural_context: str | None = Field(None, description="Cached cultural context note")
    timestamp: int = Field(default_factory=now_ms, description="Send timestamp (ms)")
    status: MessageStatus = Field(default=MessageStatus.SENDING)
    read_by: dict[str, int] = Field(
        default_factory=dict, description="User ID -> read timestamp (ms)"
    )
    reactions: dict[str, list[str]] = Field(
        default_factory=dict, description="Emoji -> user IDs"
    )

    def is_read_by(self, user_id: str) -> bool:
        return user_id in self.read_by

    def is_read_by_all(self, participants: list[str]) -> bool:
        """True when every participant other than the sender has read it."""
        return all(p in self.read_by for p in participants if p != self.sender_id)

    def user_reaction(self, user_id: str) -> str | None:
        """The emoji the user currently reacts with, if any."""
        for emoji, users in self.reactions.items():
            if user_id in users:
                return emoji
        return None

    def reaction_counts(self) -> dict[str, int]:
        return {emoji: len(users) for emoji, users in self.reactions.items()}
