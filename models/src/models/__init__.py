"""Shared Pydantic models for chatsync."""

from models.common import new_id, now_ms
from models.conversation import Conversation, ConversationType, LastMessage
from models.message import (
    SUPPORTED_REACTIONS,
    Message,
    MessageStatus,
    MessageType,
)
from models.ai import (
    AIResult,
    ActionItem,
    ContactEntity,
    ContextMessage,
    CulturalContextResult,
    CulturalInsight,
    DateTimeEntity,
    EmojiUsage,
    EntityType,
    ExtractedEntity,
    ExtractionResult,
    Formality,
    FormalityLevel,
    FormalityResult,
    LanguageDetectionResult,
    LocationEntity,
    ReplyCategory,
    SmartReply,
    SmartReplySet,
    Tone,
    TranscriptionResult,
    Translation,
    TranslationResult,
    UserCommunicationStyle,
)

__all__ = [
    "new_id",
    "now_ms",
    # Sync entities
    "Conversation",
    "ConversationType",
    "LastMessage",
    "Message",
    "MessageStatus",
    "MessageType",
    "SUPPORTED_REACTIONS",
    "Translation",
    # AI results
    "AIResult",
    "ActionItem",
    "ContactEntity",
    "ContextMessage",
    "CulturalContextResult",
    "CulturalInsight",
    "DateTimeEntity",
    "EmojiUsage",
    "EntityType",
    "ExtractedEntity",
    "ExtractionResult",
    "Formality",
    "FormalityLevel",
    "FormalityResult",
    "LanguageDetectionResult",
    "LocationEntity",
    "ReplyCategory",
    "SmartReply",
    "SmartReplySet",
    "Tone",
    "TranscriptionResult",
    "TranslationResult",
    "UserCommunicationStyle",
]
