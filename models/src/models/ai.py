"""Results of the AI text features.

Every result carries ``cached`` so callers can tell a cache hit from a fresh
Language Service call. The value stored in the cache never includes it.
"""

from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, Field

from models.common import now_ms


class AIResult(BaseModel):
    """Base for cacheable AI results."""

    cached: bool = Field(default=False, description="Served from cache")


class TranslationResult(AIResult):
    translated_text: str
    source_language: str = Field(default="auto", description="ISO 639-1 code or 'auto'")
    target_language: str


class LanguageDetectionResult(AIResult):
    language_code: str = Field(..., description="ISO 639-1 code")


class Formality(str, Enum):
    FORMAL = "formal"
    CASUAL = "casual"
    SLANG = "slang"


class CulturalInsight(BaseModel):
    """An idiom, slang term, or cultural reference found in a text."""

    phrase: str
    literal_translation: str | None = None
    actual_meaning: str
    context: str = ""
    formality: Formality = Formality.CASUAL


class CulturalContextResult(AIResult):
    language: str
    insights: list[CulturalInsight] = Field(default_factory=list)

    @property
    def has_insights(self) -> bool:
        return bool(self.insights)


class FormalityLevel(str, Enum):
    FORMAL = "formal"
    NEUTRAL = "neutral"
    CASUAL = "casual"


class FormalityResult(AIResult):
    original_text: str
    adjusted_text: str
    source_language: str
    target_language: str
    formality_level: FormalityLevel


class ReplyCategory(str, Enum):
    AFFIRMATIVE = "AFFIRMATIVE"
    NEGATIVE = "NEGATIVE"
    QUESTION = "QUESTION"
    NEUTRAL = "NEUTRAL"


class SmartReply(BaseModel):
    reply_text: str
    confidence: float = Field(default=0.9, ge=0.0, le=1.0)
    category: ReplyCategory = ReplyCategory.NEUTRAL


class EmojiUsage(str, Enum):
    FREQUENT = "FREQUENT"
    OCCASIONAL = "OCCASIONAL"
    RARE = "RARE"


class Tone(str, Enum):
    CASUAL = "CASUAL"
    CONVERSATIONAL = "CONVERSATIONAL"
    FORMAL = "FORMAL"


class UserCommunicationStyle(BaseModel):
    """How a user tends to write, derived from their recent messages."""

    avg_message_length: int = 10  # words
    emoji_usage: EmojiUsage = EmojiUsage.OCCASIONAL
    tone: Tone = Tone.CONVERSATIONAL
    common_phrases: list[str] = Field(default_factory=list)
    uses_contractions: bool = True
    punctuation_style: Literal["minimal", "standard", "expressive"] = "standard"


class ContextMessage(BaseModel):
    """A message from the recent conversation window sent with a smart reply request."""

    id: str
    sender_id: str
    text: str
    timestamp: int


class SmartReplySet(AIResult):
    replies: list[SmartReply] = Field(default_factory=list, max_length=3)
    user_style: UserCommunicationStyle = Field(default_factory=UserCommunicationStyle)


class TranscriptionResult(AIResult):
    text: str
    language: str = "unknown"
    message_id: str


class EntityType(str, Enum):
    ACTION_ITEM = "ACTION_ITEM"
    DATE_TIME = "DATE_TIME"
    CONTACT = "CONTACT"
    LOCATION = "LOCATION"


class _Entity(BaseModel):
    text: str = Field(..., description="Exact text from the message")
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)


class ActionItem(_Entity):
    type: Literal["ACTION_ITEM"] = "ACTION_ITEM"
    task: str
    priority: Literal["low", "medium", "high"] = "medium"
    assigned_to: str | None = None
    due_date: str | None = None


class DateTimeEntity(_Entity):
    type: Literal["DATE_TIME"] = "DATE_TIME"
    date_time: str = Field(..., description="ISO 8601")
    is_range: bool = False
    end_date_time: str | None = None
    description: str | None = None


class ContactEntity(_Entity):
    type: Literal["CONTACT"] = "CONTACT"
    name: str | None = None
    email: str | None = None
    phone: str | None = None


class LocationEntity(_Entity):
    type: Literal["LOCATION"] = "LOCATION"
    address: str
    place_name: str | None = None
    latitude: float | None = None
    longitude: float | None = None


ExtractedEntity = Annotated[
    ActionItem | DateTimeEntity | ContactEntity | LocationEntity,
    Field(discriminator="type"),
]


class ExtractionResult(AIResult):
    entities: list[ExtractedEntity] = Field(default_factory=list)
    message_id: str | None = None
    conversation_id: str | None = None
    extracted_at: int = Field(default_factory=now_ms)


class Translation(BaseModel):
    """A translation of one message kept in the local store."""

    id: str = Field(..., description="'{message_id}:{target_language}'")
    message_id: str
    original_text: str
    translated_text: str
    source_language: str
    target_language: str
    created_at: int = Field(default_factory=now_ms)

    @staticmethod
    def make_id(message_id: str, target_language: str) -> str:
        return f"{message_id}:{target_language}"
