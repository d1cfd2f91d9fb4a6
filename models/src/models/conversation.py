"""Conversation models."""

from enum import Enum

from pydantic import BaseModel, Field

from models.common import new_id, now_ms


class ConversationType(str, Enum):
    """Kind of conversation."""

    ONE_ON_ONE = "ONE_ON_ONE"
    GROUP = "GROUP"


class LastMessage(BaseModel):
    """Denormalized summary of the newest message, for list display."""

    id: str = Field(..., description="Message ID")
    sender_id: str = Field(..., description="Sender user ID")
    text: str | None = Field(None, description="Message text, if any")
    type: str | None = Field(None, description="Message type name")
    media_url: str | None = Field(None, description="Media reference for image/audio messages")
    timestamp: int = Field(..., description="Message timestamp (ms)")


class Conversation(BaseModel):
    """A one-on-one or group conversation."""

    id: str = Field(default_factory=new_id, description="Unique conversation ID")
    type: ConversationType = Field(default=ConversationType.ONE_ON_ONE)
    participants: list[str] = Field(default_factory=list, description="Participant user IDs")
    name: str | None = Field(None, description="Group name")
    icon_url: str | None = Field(None, description="Group icon")
    creator_id: str | None = Field(None, description="User who created the conversation")
    group_admins: list[str] = Field(default_factory=list, description="Admin user IDs (subset of participants)")
    nicknames: dict[str, str] = Field(default_factory=dict, description="User ID -> nickname")
    last_message: LastMessage | None = Field(None, description="Newest message summary")
    deleted_at: dict[str, int] = Field(
        default_factory=dict, description="User ID -> soft deletion timestamp (ms)"
    )
    auto_translate_enabled: bool = Field(default=False, description="Local-only preference")
    updated_at: int = Field(default_factory=now_ms, description="Last update timestamp (ms)")
    created_at: int = Field(default_factory=now_ms, description="Creation timestamp (ms)")

    def other_participant(self, user_id: str) -> str | None:
        """The other user in a one-on-one conversation."""
        if self.type != ConversationType.ONE_ON_ONE:
            return None
        return next((p for p in self.participants if p != user_id), None)

    def is_hidden_for(self, user_id: str) -> bool:
        """True when the user deleted the conversation and nothing happened since."""
        deleted = self.deleted_at.get(user_id)
        return deleted is not None and deleted >= self.updated_at

    def display_name(self, user_id: str, names: dict[str, str] | None = None) -> str:
        if self.type == ConversationType.GROUP:
            return self.name or "Group Chat"
        other = self.other_participant(user_id)
        if other is None:
            return "Unknown User"
        if other in self.nicknames:
            return self.nicknames[other]
        return (names or {}).get(other, "Unknown User")
